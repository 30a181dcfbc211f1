"""Data models for simulation plans."""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence, Tuple, Union

from poolsim.errors import ConfigError


class ErrorClass(str, Enum):
    """Shared error taxonomy every backend maps its native errors into."""

    BUSY = "busy"
    IO = "io"
    CONSTRAINT = "constraint"
    PROTOCOL = "protocol"
    EXECUTION = "execution"
    POOL_TIMEOUT = "pool_timeout"
    PANIC = "panic"


RETRYABLE_ERRORS = frozenset({ErrorClass.BUSY})
# Errors after which the connection cannot be reused.
BREAKING_ERRORS = frozenset({ErrorClass.IO, ErrorClass.PANIC})
FAULT_KINDS = ("busy", "io", "panic")

_TRANSACTION_CONTROL = re.compile(r"^\s*(BEGIN|COMMIT|END|ROLLBACK|SAVEPOINT|RELEASE)\b", re.IGNORECASE)
_WRITE_STATEMENT = re.compile(r"^\s*(INSERT|UPDATE|DELETE|REPLACE|CREATE|DROP|ALTER)\b", re.IGNORECASE)


def is_transaction_control(sql: str) -> bool:
    return bool(_TRANSACTION_CONTROL.match(sql))


def is_write(sql: str) -> bool:
    return bool(_WRITE_STATEMENT.match(sql))


@dataclass(frozen=True)
class Checkout:
    kind: ClassVar[str] = "checkout"


@dataclass(frozen=True)
class Return:
    kind: ClassVar[str] = "return"


@dataclass(frozen=True)
class Begin:
    kind: ClassVar[str] = "begin"


@dataclass(frozen=True)
class Commit:
    kind: ClassVar[str] = "commit"


@dataclass(frozen=True)
class Rollback:
    kind: ClassVar[str] = "rollback"


@dataclass(frozen=True)
class Execute:
    kind: ClassVar[str] = "execute"
    sql: str
    params: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Query:
    kind: ClassVar[str] = "query"
    sql: str
    params: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Sleep:
    kind: ClassVar[str] = "sleep"
    ms: int


@dataclass(frozen=True)
class InjectFault:
    """Arm a fault on the issuing task's own connection."""

    kind: ClassVar[str] = "inject_fault"
    fault: str


Operation = Union[Checkout, Return, Begin, Commit, Rollback, Execute, Query, Sleep, InjectFault]

OPERATION_TYPES: Dict[str, type] = {
    cls.kind: cls
    for cls in (Checkout, Return, Begin, Commit, Rollback, Execute, Query, Sleep, InjectFault)
}

# Operations that need a checked-out connection.
CONNECTED_OPERATIONS = (Return, Begin, Commit, Rollback, Execute, Query, InjectFault)


def describe_operation(operation: Operation) -> str:
    """Short human readable form used in logs and reports."""

    if isinstance(operation, (Execute, Query)):
        text = f"{operation.kind}({operation.sql.strip()}"
        if operation.params:
            text += f" params={list(operation.params)}"
        return text + ")"
    if isinstance(operation, Sleep):
        return f"sleep({operation.ms}ms)"
    if isinstance(operation, InjectFault):
        return f"inject_fault({operation.fault})"
    return operation.kind


@dataclass(frozen=True)
class ErrorExpectation:
    """The step must fail; class and/or message fragment narrow the match."""

    error_class: Optional[ErrorClass] = None
    contains: Optional[str] = None

    def matches(self, error_class: Optional[ErrorClass], message: str) -> bool:
        if self.error_class is not None and error_class != self.error_class:
            return False
        if self.contains and self.contains.lower() not in (message or "").lower():
            return False
        return True

    def describe(self) -> str:
        parts = []
        if self.error_class is not None:
            parts.append(f"class={self.error_class.value}")
        if self.contains:
            parts.append(f"contains={self.contains!r}")
        return "error(" + (", ".join(parts) or "any") + ")"


@dataclass(frozen=True)
class Expectation:
    row_count: Optional[int] = None
    column_count: Optional[int] = None
    min_rows: Optional[int] = None
    max_rows: Optional[int] = None
    error: Optional[ErrorExpectation] = None

    @property
    def expects_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Interaction:
    task_id: int
    operation: Operation
    expectation: Optional[Expectation] = None


@dataclass(frozen=True)
class WorkloadConfig:
    pool_size: int = 8
    tasks: int = 16
    steps: int = 1000
    ddl_rate: float = 0.02
    busy_rate: float = 0.01
    panic_rate: float = 0.001
    sleep_rate: float = 0.05
    fault_rate: float = 0.0
    max_in_flight_tx: int = 4
    property: Optional[str] = None

    _RATES: ClassVar[Tuple[str, ...]] = ("ddl_rate", "busy_rate", "panic_rate", "sleep_rate", "fault_rate")

    def validate(self) -> "WorkloadConfig":
        if self.pool_size < 1:
            raise ConfigError("pool_size must be at least 1")
        if self.tasks < 1:
            raise ConfigError("tasks must be at least 1")
        if self.steps < 1:
            raise ConfigError("steps must be at least 1")
        if self.max_in_flight_tx < 0:
            raise ConfigError("max_in_flight_tx cannot be negative")
        for name in self._RATES:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}")
        return self

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "WorkloadConfig":
        if not raw:
            return cls()
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(raw) - set(known))
        if unknown:
            raise ConfigError(f"Unknown workload setting(s): {', '.join(unknown)}")
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            if value is None:
                continue
            try:
                if key == "property":
                    values[key] = str(value)
                elif key in cls._RATES:
                    values[key] = float(value)
                else:
                    values[key] = int(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for workload setting '{key}': {value!r}") from exc
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merged(self, **overrides: Any) -> "WorkloadConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(frozen=True)
class Plan:
    """Ordered interactions plus the seed and workload that produced them."""

    interactions: Tuple[Interaction, ...]
    seed: Optional[int] = None
    config: WorkloadConfig = field(default_factory=WorkloadConfig)

    def __len__(self) -> int:
        return len(self.interactions)

    def with_interactions(self, interactions: Sequence[Interaction]) -> "Plan":
        return replace(self, interactions=tuple(interactions))

    def task_ids(self) -> Tuple[int, ...]:
        return tuple(sorted({item.task_id for item in self.interactions}))
