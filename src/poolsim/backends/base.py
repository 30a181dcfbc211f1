"""Backend adapter contract and registry."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Sequence, Tuple, Union

from poolsim.errors import PoolsimError
from poolsim.plan.models import FAULT_KINDS, ErrorClass, WorkloadConfig

RESET_MODES = ("truncate", "delete", "recreate")


class AdapterError(PoolsimError):
    """A target-system error translated into the shared taxonomy."""

    def __init__(self, error_class: ErrorClass, message: str) -> None:
        super().__init__(message)
        self.error_class = error_class
        self.message = message

    def __str__(self) -> str:
        return f"[{self.error_class.value}] {self.message}"


@dataclass(eq=False)
class ConnHandle:
    """A checked-out connection as seen by the runner.

    Faults are armed on the handle, so one task's injected fault never leaks
    into another task's connection.
    """

    conn_id: int
    raw: Any = field(default=None, repr=False)
    broken: bool = False
    armed_fault: Optional[str] = None


@dataclass(frozen=True)
class TxHandle:
    conn: ConnHandle


Target = Union[ConnHandle, TxHandle]


def connection_of(target: Target) -> ConnHandle:
    return target.conn if isinstance(target, TxHandle) else target


@dataclass(frozen=True)
class RowSet:
    columns: Tuple[str, ...]
    rows: Tuple[Tuple[Any, ...], ...]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_count(self) -> int:
        return len(self.columns)


@dataclass(frozen=True)
class PoolSnapshot:
    """The pool library's own view of its connections.

    ``checked_out`` is None when the library does not expose a count.
    """

    size: int
    checked_out: Optional[int]
    idle_ids: FrozenSet[int] = frozenset()
    broken_ids: FrozenSet[int] = frozenset()


class BackendAdapter:
    """Capability interface over one concrete pool + database."""

    name: str = ""

    def open_pool(self, config: WorkloadConfig) -> None:
        raise NotImplementedError

    def checkout(self) -> ConnHandle:
        raise NotImplementedError

    def return_connection(self, handle: ConnHandle) -> None:
        """Hand a connection back; broken handles must be discarded, not pooled."""
        raise NotImplementedError

    def begin(self, handle: ConnHandle) -> TxHandle:
        raise NotImplementedError

    def commit(self, tx: TxHandle) -> None:
        raise NotImplementedError

    def rollback(self, tx: TxHandle) -> None:
        raise NotImplementedError

    def execute(self, target: Target, sql: str, params: Sequence[Any] = ()) -> int:
        raise NotImplementedError

    def query(self, target: Target, sql: str, params: Sequence[Any] = ()) -> RowSet:
        raise NotImplementedError

    def sleep(self, ms: int) -> None:
        """Simulated delay; adapters with real timers may override."""

    def inject_fault(self, handle: ConnHandle, kind: str) -> None:
        """Arm ``busy`` for the next statement, or break the connection now."""

        if kind not in FAULT_KINDS:
            raise ValueError(f"Unknown fault kind '{kind}'")
        if kind == "busy":
            handle.armed_fault = kind
            return
        handle.broken = True
        raise AdapterError(ErrorClass(kind), f"injected {kind} fault")

    def reset(self, tables: Sequence[str], mode: str) -> None:
        raise NotImplementedError

    def pool_snapshot(self) -> PoolSnapshot:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def _consume_fault(self, handle: ConnHandle) -> None:
        if handle.armed_fault == "busy":
            handle.armed_fault = None
            raise AdapterError(ErrorClass.BUSY, "database is locked (injected fault)")


AdapterFactory = Callable[[], BackendAdapter]


class BackendManager:
    """Registry for backend adapter factories keyed by name."""

    def __init__(self) -> None:
        self._factories: Dict[str, AdapterFactory] = {}

    def register(self, name: str, factory: AdapterFactory) -> None:
        if name in self._factories:
            raise ValueError(f"Backend '{name}' already registered")
        self._factories[name] = factory

    def factory(self, name: str) -> AdapterFactory:
        try:
            return self._factories[name]
        except KeyError as exc:
            known = ", ".join(sorted(self._factories)) or "none"
            raise KeyError(f"No backend registered under {name!r} (known: {known})") from exc

    def create(self, name: str) -> BackendAdapter:
        return self.factory(name)()

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> Iterable[str]:
        return tuple(self._factories.keys())


backend_manager = BackendManager()
