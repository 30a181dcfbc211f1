"""Backend adapters and their registry."""
from .base import (
    RESET_MODES,
    AdapterError,
    BackendAdapter,
    BackendManager,
    ConnHandle,
    PoolSnapshot,
    RowSet,
    TxHandle,
    backend_manager,
)

__all__ = [
    "RESET_MODES",
    "AdapterError",
    "BackendAdapter",
    "BackendManager",
    "ConnHandle",
    "PoolSnapshot",
    "RowSet",
    "TxHandle",
    "backend_manager",
    "register_builtin_backends",
]


def register_builtin_backends() -> None:
    from .sqlite import create_null_adapter, create_queue_adapter

    for name, factory in (("sqlite", create_queue_adapter), ("sqlite-nullpool", create_null_adapter)):
        if name not in backend_manager:
            backend_manager.register(name, factory)
