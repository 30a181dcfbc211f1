from __future__ import annotations

import pytest

from poolsim.backends import AdapterError
from poolsim.backends.sqlite import SqliteAdapter
from poolsim.plan.models import ErrorClass, WorkloadConfig


@pytest.fixture()
def adapter():
    adapter = SqliteAdapter(pool_kind="queue")
    adapter.open_pool(WorkloadConfig(pool_size=2, tasks=2))
    yield adapter
    adapter.close()


def test_snapshot_tracks_idle_connections(adapter: SqliteAdapter) -> None:
    first = adapter.checkout()
    second = adapter.checkout()
    snapshot = adapter.pool_snapshot()
    assert snapshot.checked_out == 2
    assert snapshot.idle_ids == frozenset()

    adapter.return_connection(first)
    snapshot = adapter.pool_snapshot()
    assert snapshot.checked_out == 1
    assert snapshot.idle_ids == {first.conn_id}

    again = adapter.checkout()
    assert again.conn_id == first.conn_id
    assert adapter.pool_snapshot().idle_ids == frozenset()

    adapter.return_connection(again)
    adapter.return_connection(second)
    assert adapter.pool_snapshot().idle_ids == {first.conn_id, second.conn_id}


def test_broken_connection_is_never_idle(adapter: SqliteAdapter) -> None:
    handle = adapter.checkout()
    handle.broken = True
    adapter.return_connection(handle)
    snapshot = adapter.pool_snapshot()
    assert snapshot.broken_ids == {handle.conn_id}
    assert handle.conn_id not in snapshot.idle_ids
    assert snapshot.checked_out == 0

    replacement = adapter.checkout()
    assert replacement.conn_id != handle.conn_id


def test_exhausted_pool_times_out_immediately(adapter: SqliteAdapter) -> None:
    adapter.checkout()
    adapter.checkout()
    with pytest.raises(AdapterError) as exc:
        adapter.checkout()
    assert exc.value.error_class is ErrorClass.POOL_TIMEOUT
