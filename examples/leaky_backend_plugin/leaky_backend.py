"""Example backend plugin with a deliberate pool accounting bug.

    POOLSIM_PLUGINS=leaky_backend PYTHONPATH=examples/leaky_backend_plugin \
        poolsim run --generate --seed 3 --steps 200 --backend sqlite-leaky
"""
from poolsim.backends import ConnHandle, backend_manager
from poolsim.backends.sqlite import SqliteAdapter


class LeakyAdapter(SqliteAdapter):
    """Every tenth return is not counted, so the pool slowly looks exhausted."""

    def __init__(self) -> None:
        super().__init__(pool_kind="null")
        self.name = "sqlite-leaky"
        self._returns = 0

    def return_connection(self, handle: ConnHandle) -> None:
        super().return_connection(handle)
        self._returns += 1
        if self._returns % 10 == 0:
            self._checked_out += 1


def register() -> None:
    if "sqlite-leaky" not in backend_manager:
        backend_manager.register("sqlite-leaky", LeakyAdapter)
