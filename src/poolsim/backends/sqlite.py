"""SQLite targets pooled through SQLAlchemy's pool implementations."""
from __future__ import annotations

import logging
import sqlite3
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import NullPool, Pool, QueuePool

from poolsim.plan.models import BREAKING_ERRORS, ErrorClass, WorkloadConfig

from .base import (
    RESET_MODES,
    AdapterError,
    BackendAdapter,
    ConnHandle,
    PoolSnapshot,
    RowSet,
    Target,
    TxHandle,
    connection_of,
)

logger = logging.getLogger(__name__)


def classify_error(error: BaseException) -> ErrorClass:
    """Map a sqlite3 / SQLAlchemy pool error onto the shared taxonomy."""

    if isinstance(error, sa_exc.TimeoutError):
        return ErrorClass.POOL_TIMEOUT
    if isinstance(error, sqlite3.IntegrityError):
        return ErrorClass.CONSTRAINT
    message = str(error).lower()
    if "locked" in message or "busy" in message:
        return ErrorClass.BUSY
    if "i/o" in message or "disk image is malformed" in message:
        return ErrorClass.IO
    if "within a transaction" in message or "no transaction is active" in message:
        return ErrorClass.PROTOCOL
    if isinstance(error, (sqlite3.ProgrammingError, sqlite3.InterfaceError, sqlite3.NotSupportedError)):
        return ErrorClass.PROTOCOL
    return ErrorClass.EXECUTION


class SqliteAdapter(BackendAdapter):
    """WAL-mode SQLite file behind a SQLAlchemy connection pool.

    ``pool_kind="queue"`` uses a fixed-size ``QueuePool`` that fails a checkout
    immediately when exhausted. ``pool_kind="null"`` opens a fresh connection
    per checkout and enforces the size limit itself.
    """

    def __init__(self, pool_kind: str = "queue", database: Optional[str] = None) -> None:
        if pool_kind not in {"queue", "null"}:
            raise ValueError(f"Unsupported pool kind '{pool_kind}'")
        self.pool_kind = pool_kind
        self.name = "sqlite" if pool_kind == "queue" else "sqlite-nullpool"
        self._database = database
        self._tmpdir: Optional[tempfile.TemporaryDirectory] = None
        self._path: Optional[Path] = None
        self._pool: Optional[Pool] = None
        self._pool_size = 0
        self._checked_out = 0
        # Strong references keep id() values unique for the adapter's lifetime.
        self._known: List[sqlite3.Connection] = []
        self._conn_ids: Dict[int, int] = {}
        self._broken_ids: set[int] = set()
        self._idle_ids: set[int] = set()

    def open_pool(self, config: WorkloadConfig) -> None:
        if self._pool is not None:
            raise RuntimeError(f"{self.name}: pool already open")
        if self._database:
            self._path = Path(self._database).expanduser()
        else:
            self._tmpdir = tempfile.TemporaryDirectory(prefix="poolsim-")
            self._path = Path(self._tmpdir.name) / "sim.db"
        bootstrap = sqlite3.connect(str(self._path), isolation_level=None)
        try:
            bootstrap.execute("PRAGMA journal_mode=WAL")
        finally:
            bootstrap.close()
        self._pool_size = config.pool_size
        if self.pool_kind == "queue":
            self._pool = QueuePool(
                self._connect,
                pool_size=config.pool_size,
                max_overflow=0,
                timeout=0,
                reset_on_return="rollback",
            )
            event.listen(self._pool, "checkout", self._on_checkout)
            event.listen(self._pool, "checkin", self._on_checkin)
            event.listen(self._pool, "close", self._on_close)
        else:
            self._pool = NullPool(self._connect, reset_on_return="rollback")
        logger.debug("%s: opened pool size=%s at %s", self.name, config.pool_size, self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=0, isolation_level=None, check_same_thread=False)
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=0")
        return conn

    def _on_checkout(self, dbapi_connection: sqlite3.Connection, record: Any, proxy: Any) -> None:
        self._idle_ids.discard(self._conn_id(dbapi_connection))

    def _on_checkin(self, dbapi_connection: Optional[sqlite3.Connection], record: Any) -> None:
        # An invalidated connection comes back without its DBAPI connection.
        if dbapi_connection is not None:
            self._idle_ids.add(self._conn_id(dbapi_connection))

    def _on_close(self, dbapi_connection: sqlite3.Connection, record: Any) -> None:
        self._idle_ids.discard(self._conn_id(dbapi_connection))

    def _conn_id(self, dbapi_connection: sqlite3.Connection) -> int:
        key = id(dbapi_connection)
        if key not in self._conn_ids:
            self._known.append(dbapi_connection)
            self._conn_ids[key] = len(self._conn_ids) + 1
        return self._conn_ids[key]

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise RuntimeError(f"{self.name}: pool is not open")
        return self._pool

    @contextmanager
    def _translate(self, handle: Optional[ConnHandle] = None) -> Iterator[None]:
        try:
            yield
        except (sqlite3.Error, sa_exc.SQLAlchemyError) as error:
            error_class = classify_error(error)
            if handle is not None and error_class in BREAKING_ERRORS:
                handle.broken = True
            raise AdapterError(error_class, str(error)) from error

    def checkout(self) -> ConnHandle:
        if self.pool_kind == "null" and self._checked_out >= self._pool_size:
            raise AdapterError(
                ErrorClass.POOL_TIMEOUT,
                f"pool limit of size {self._pool_size} reached, connection timed out",
            )
        with self._translate():
            fairy = self.pool.connect()
        self._checked_out += 1
        return ConnHandle(conn_id=self._conn_id(fairy.dbapi_connection), raw=fairy)

    def return_connection(self, handle: ConnHandle) -> None:
        fairy = handle.raw
        handle.armed_fault = None
        self._checked_out -= 1
        if handle.broken:
            self._broken_ids.add(handle.conn_id)
            logger.debug("%s: invalidating broken connection %s", self.name, handle.conn_id)
            fairy.invalidate()
            return
        with self._translate(handle):
            fairy.close()

    def _run(self, handle: ConnHandle, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        self._consume_fault(handle)
        with self._translate(handle):
            cursor = handle.raw.cursor()
            cursor.execute(sql, tuple(params))
        return cursor

    def begin(self, handle: ConnHandle) -> TxHandle:
        self._run(handle, "BEGIN").close()
        return TxHandle(conn=handle)

    def commit(self, tx: TxHandle) -> None:
        self._run(tx.conn, "COMMIT").close()

    def rollback(self, tx: TxHandle) -> None:
        self._run(tx.conn, "ROLLBACK").close()

    def execute(self, target: Target, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self._run(connection_of(target), sql, params)
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    def query(self, target: Target, sql: str, params: Sequence[Any] = ()) -> RowSet:
        handle = connection_of(target)
        cursor = self._run(handle, sql, params)
        try:
            with self._translate(handle):
                rows = cursor.fetchall()
            columns = tuple(item[0] for item in cursor.description or ())
        finally:
            cursor.close()
        return RowSet(columns=columns, rows=tuple(tuple(row) for row in rows))

    def reset(self, tables: Sequence[str], mode: str) -> None:
        if mode not in RESET_MODES:
            raise ValueError(f"Unknown reset mode '{mode}'")
        conn = self._connect()
        try:
            with self._translate():
                for table in tables:
                    if mode == "recreate":
                        conn.execute(f'DROP TABLE IF EXISTS "{table}"')
                        continue
                    exists = conn.execute(
                        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
                    ).fetchone()
                    if exists:
                        # SQLite has no TRUNCATE; an unqualified DELETE takes the truncate path.
                        conn.execute(f'DELETE FROM "{table}"')
        finally:
            conn.close()
        logger.debug("%s: reset %s (%s)", self.name, ", ".join(tables) or "-", mode)

    def pool_snapshot(self) -> PoolSnapshot:
        if isinstance(self._pool, QueuePool):
            return PoolSnapshot(
                size=self._pool_size,
                checked_out=self._pool.checkedout(),
                idle_ids=frozenset(self._idle_ids),
                broken_ids=frozenset(self._broken_ids),
            )
        return PoolSnapshot(
            size=self._pool_size,
            checked_out=self._checked_out,
            broken_ids=frozenset(self._broken_ids),
        )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.dispose()
            self._pool = None
        for conn in self._known:
            conn.close()
        self._known.clear()
        self._conn_ids.clear()
        self._idle_ids.clear()
        if self._tmpdir is not None:
            self._tmpdir.cleanup()
            self._tmpdir = None


def create_queue_adapter() -> SqliteAdapter:
    return SqliteAdapter(pool_kind="queue")


def create_null_adapter() -> SqliteAdapter:
    return SqliteAdapter(pool_kind="null")
