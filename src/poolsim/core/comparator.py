"""Result normalization and trace comparison."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from poolsim.backends.base import RowSet

from .results import QueryObservation, TraceEvent


def normalize_value(value: Any) -> str:
    """Render a cell as a type-tagged string so values compare across drivers."""

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "b:true" if value else "b:false"
    if isinstance(value, int):
        return f"i:{value}"
    if isinstance(value, float):
        return f"f:{value!r}"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "blob:" + bytes(value).hex()
    if isinstance(value, (dict, list)):
        return "j:" + json.dumps(value, sort_keys=True)
    return f"s:{value}"


def normalize_rowset(rowset: RowSet) -> QueryObservation:
    """Lower-case column names, tag values and sort rows."""

    columns = tuple(str(column).lower() for column in rowset.columns)
    rows = tuple(sorted(tuple(normalize_value(value) for value in row) for row in rowset.rows))
    return QueryObservation(columns=columns, rows=rows)


@dataclass(frozen=True)
class Divergence:
    """First point where two traces disagree."""

    step: Optional[int]
    field: str
    left: Any
    right: Any

    @property
    def message(self) -> str:
        where = f"step {self.step}" if self.step is not None else "trace"
        return f"{where}: {self.field} differs (left={self.left!r}, right={self.right!r})"


def compare_events(left: TraceEvent, right: TraceEvent, *, compare_messages: bool = False) -> Optional[Divergence]:
    step = left.step
    if left.step != right.step:
        return Divergence(step, "step", left.step, right.step)
    if left.task_id != right.task_id:
        return Divergence(step, "task_id", left.task_id, right.task_id)
    if left.operation != right.operation:
        return Divergence(step, "operation", left.operation, right.operation)
    if left.outcome != right.outcome:
        return Divergence(step, "outcome", left.outcome, right.outcome)
    if left.error_class != right.error_class:
        return Divergence(
            step,
            "error_class",
            left.error_class.value if left.error_class else None,
            right.error_class.value if right.error_class else None,
        )
    if compare_messages and left.message != right.message:
        return Divergence(step, "message", left.message, right.message)
    if left.affected_rows != right.affected_rows:
        return Divergence(step, "affected_rows", left.affected_rows, right.affected_rows)
    lobs, robs = left.observation, right.observation
    if (lobs is None) != (robs is None):
        return Divergence(step, "observation", lobs, robs)
    if lobs is not None and robs is not None:
        if lobs.columns != robs.columns:
            return Divergence(step, "columns", lobs.columns, robs.columns)
        if lobs.row_count != robs.row_count:
            return Divergence(step, "row_count", lobs.row_count, robs.row_count)
        if lobs.rows != robs.rows:
            return Divergence(step, "rows", lobs.rows, robs.rows)
    return None


def compare_traces(
    left: Sequence[TraceEvent],
    right: Sequence[TraceEvent],
    *,
    compare_messages: bool = False,
) -> Optional[Divergence]:
    """Return the first divergence between two traces, or None when they agree.

    Differential runs compare error classes only; doublecheck runs also
    compare error message text. Connection ids and timings never count.
    """

    for left_event, right_event in zip(left, right):
        divergence = compare_events(left_event, right_event, compare_messages=compare_messages)
        if divergence is not None:
            return divergence
    if len(left) != len(right):
        return Divergence(min(len(left), len(right)), "length", len(left), len(right))
    return None
