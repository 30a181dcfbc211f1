"""Result data structures produced by the runner."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from poolsim.plan.loader import operation_to_dict
from poolsim.plan.models import ErrorClass, Operation, Plan, WorkloadConfig

OUTCOMES = ("ok", "error", "panic")
FAILURE_KINDS = (
    "protocol",
    "assertion",
    "oracle",
    "adapter",
    "retry_exhausted",
    "panic",
    "mismatch",
    "aborted",
)


@dataclass(frozen=True)
class QueryObservation:
    """A result set after normalization (see ``core.comparator.normalize_rowset``)."""

    columns: Tuple[str, ...]
    rows: Tuple[Tuple[str, ...], ...]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_count(self) -> int:
        return len(self.columns)

    def to_dict(self) -> Dict[str, Any]:
        return {"columns": list(self.columns), "rows": [list(row) for row in self.rows]}


@dataclass(frozen=True)
class TraceEvent:
    step: int
    task_id: int
    operation: Operation
    outcome: str
    error_class: Optional[ErrorClass] = None
    message: str = ""
    observation: Optional[QueryObservation] = None
    affected_rows: Optional[int] = None
    clock_ms: int = 0
    attempts: int = 1
    conn_id: Optional[int] = field(default=None, compare=False)
    duration_s: float = field(default=0.0, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "step": self.step,
            "task_id": self.task_id,
            "operation": operation_to_dict(self.operation),
            "outcome": self.outcome,
            "clock_ms": self.clock_ms,
            "attempts": self.attempts,
            "conn_id": self.conn_id,
        }
        if self.error_class is not None:
            record["error_class"] = self.error_class.value
        if self.message:
            record["message"] = self.message
        if self.observation is not None:
            record["observation"] = self.observation.to_dict()
        if self.affected_rows is not None:
            record["affected_rows"] = self.affected_rows
        return record


class Trace:
    """Append-only event log owned by one runner invocation."""

    def __init__(self) -> None:
        self._events: List[TraceEvent] = []
        self._frozen = False

    def append(self, event: TraceEvent) -> None:
        if self._frozen:
            raise RuntimeError("trace is frozen; the plan has finished")
        self._events.append(event)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def events(self) -> Tuple[TraceEvent, ...]:
        return tuple(self._events)

    def tail(self, count: int) -> Tuple[TraceEvent, ...]:
        if count <= 0:
            return ()
        return tuple(self._events[-count:])

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[TraceEvent]:
        return iter(self._events)


@dataclass(frozen=True)
class FailureRecord:
    """First violation of a run; what the shrinker preserves and the bug base stores."""

    kind: str
    check: str
    reason: str
    step: Optional[int] = None
    task_id: Optional[int] = None
    operation: Optional[str] = None
    error_class: Optional[ErrorClass] = None
    seed: Optional[int] = None
    config: WorkloadConfig = field(default_factory=WorkloadConfig)
    backend: str = ""
    plan_digest: str = ""
    tail: Tuple[TraceEvent, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)

    def signature(self) -> Tuple[str, str, Optional[str]]:
        return (self.kind, self.check, self.error_class.value if self.error_class else None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "check": self.check,
            "reason": self.reason,
            "step": self.step,
            "task_id": self.task_id,
            "operation": self.operation,
            "error_class": self.error_class.value if self.error_class else None,
            "seed": self.seed,
            "config": self.config.to_dict(),
            "backend": self.backend,
            "plan_digest": self.plan_digest,
            "tail": [event.to_dict() for event in self.tail],
            "details": _jsonify(self.details),
        }


@dataclass
class RunResult:
    """Outcome of executing one plan against one adapter."""

    backend: str
    plan: Plan
    trace: Trace
    failure: Optional[FailureRecord] = None
    duration_s: float = 0.0
    label: str = ""

    @property
    def passed(self) -> bool:
        return self.failure is None

    @property
    def steps_executed(self) -> int:
        return len(self.trace)


def _jsonify(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _jsonify(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonify(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
