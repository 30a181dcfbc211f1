"""Invariant checks evaluated after every step."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Mapping, Optional

from poolsim.backends.base import AdapterError, PoolSnapshot
from poolsim.plan.models import Expectation

if TYPE_CHECKING:
    from .runner import TaskState


@dataclass(frozen=True)
class Violation:
    check: str
    reason: str


def check_pool_invariants(tasks: Mapping[int, "TaskState"], snapshot: PoolSnapshot) -> Optional[Violation]:
    """Compare the runner's ownership table with the pool's own view."""

    owners: Dict[int, int] = {}
    for task_id in sorted(tasks):
        state = tasks[task_id]
        handle = state.handle
        if handle is None:
            if state.in_transaction:
                return Violation("tx_without_connection", f"task {task_id} is in a transaction without a connection")
            continue
        if handle.broken:
            return Violation("held_broken", f"task {task_id} still holds broken connection {handle.conn_id}")
        if handle.conn_id in owners:
            return Violation(
                "duplicate_owner",
                f"connection {handle.conn_id} is checked out by tasks {owners[handle.conn_id]} and {task_id}",
            )
        owners[handle.conn_id] = task_id
    held = len(owners)
    if held > snapshot.size:
        return Violation("pool_overcommit", f"{held} connections checked out from a pool of {snapshot.size}")
    idle_and_held = sorted(snapshot.idle_ids & set(owners))
    if idle_and_held:
        conn_id = idle_and_held[0]
        return Violation(
            "duplicate_owner",
            f"connection {conn_id} is idle in the pool while task {owners[conn_id]} holds it",
        )
    returned_broken = sorted(snapshot.idle_ids & snapshot.broken_ids)
    if returned_broken:
        return Violation("broken_returned", f"broken connection(s) {returned_broken} returned to the idle pool")
    if snapshot.checked_out is not None and snapshot.checked_out != held:
        return Violation(
            "leaked_connection",
            f"pool reports {snapshot.checked_out} checked out but tasks hold {held}",
        )
    return None


def check_expectation(
    expectation: Expectation,
    *,
    row_count: Optional[int] = None,
    column_count: Optional[int] = None,
    error: Optional[AdapterError] = None,
) -> Optional[Violation]:
    """Compare one step's declared expectation against what happened."""

    if expectation.error is not None:
        wanted = expectation.error.describe()
        if error is None:
            return Violation("expected_error", f"expected {wanted} but the step succeeded")
        if not expectation.error.matches(error.error_class, error.message):
            return Violation("expected_error", f"expected {wanted}, got {error}")
        return None
    if expectation.row_count is not None and row_count != expectation.row_count:
        return Violation(
            "row_count", f"query row_count mismatch: expected {expectation.row_count}, got {row_count}"
        )
    if expectation.column_count is not None and column_count != expectation.column_count:
        return Violation(
            "column_count",
            f"query column_count mismatch: expected {expectation.column_count}, got {column_count}",
        )
    if expectation.min_rows is not None and (row_count is None or row_count < expectation.min_rows):
        return Violation("min_rows", f"expected at least {expectation.min_rows} rows, got {row_count}")
    if expectation.max_rows is not None and (row_count is None or row_count > expectation.max_rows):
        return Violation("max_rows", f"expected at most {expectation.max_rows} rows, got {row_count}")
    return None
