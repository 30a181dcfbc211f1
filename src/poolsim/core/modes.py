"""Single, differential and doublecheck execution."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from poolsim.backends.base import RESET_MODES, AdapterFactory, BackendAdapter
from poolsim.errors import ConfigError
from poolsim.plan.loader import plan_digest
from poolsim.plan.models import Execute, Plan, describe_operation

from .comparator import Divergence, compare_traces
from .results import FailureRecord, RunResult, TraceEvent
from .runner import DEFAULT_MAX_RETRIES, DEFAULT_TAIL_SIZE, Runner

logger = logging.getLogger(__name__)

MODES = ("single", "differential", "doublecheck")
_CREATE_TABLE = re.compile(r"^\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[\"`\[]?(\w+)", re.IGNORECASE)


@dataclass(frozen=True)
class ResetConfig:
    """Tables to clear before every run; empty means the tables the plan creates."""

    tables: Tuple[str, ...] = ()
    mode: str = "recreate"

    def __post_init__(self) -> None:
        if self.mode not in RESET_MODES:
            raise ConfigError(f"reset mode must be one of {', '.join(RESET_MODES)}, got '{self.mode}'")

    def tables_for(self, plan: Plan) -> Tuple[str, ...]:
        return self.tables or created_tables(plan)


def created_tables(plan: Plan) -> Tuple[str, ...]:
    seen: List[str] = []
    for item in plan.interactions:
        if isinstance(item.operation, Execute):
            match = _CREATE_TABLE.match(item.operation.sql)
            if match and match.group(1) not in seen:
                seen.append(match.group(1))
    return tuple(seen)


@dataclass(frozen=True)
class RunnerOptions:
    max_retries: int = DEFAULT_MAX_RETRIES
    return_policy: str = "fatal"
    tail_size: int = DEFAULT_TAIL_SIZE
    timeout_s: Optional[float] = None

    def build(self, adapter: BackendAdapter, should_stop: Optional[Callable[[], bool]] = None) -> Runner:
        return Runner(
            adapter,
            max_retries=self.max_retries,
            return_policy=self.return_policy,
            tail_size=self.tail_size,
            timeout_s=self.timeout_s,
            should_stop=should_stop,
        )


@dataclass
class ModeResult:
    mode: str
    runs: List[RunResult] = field(default_factory=list)
    failure: Optional[FailureRecord] = None
    divergence: Optional[Divergence] = None

    @property
    def passed(self) -> bool:
        return self.failure is None


class Executor:
    """Runs a plan in one mode, on freshly created adapters every time.

    The same executor drives normal runs, replays and every shrink attempt,
    so a replayed plan goes through exactly the code path that found it.
    """

    def __init__(
        self,
        primary: AdapterFactory,
        *,
        mode: str = "single",
        secondary: Optional[AdapterFactory] = None,
        doublecheck_runs: int = 2,
        options: RunnerOptions = RunnerOptions(),
        reset: ResetConfig = ResetConfig(),
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        if mode not in MODES:
            raise ConfigError(f"mode must be one of {', '.join(MODES)}")
        if mode == "differential" and secondary is None:
            raise ConfigError("differential mode needs a second backend")
        if mode == "doublecheck" and doublecheck_runs < 2:
            raise ConfigError("doublecheck needs at least 2 runs")
        self.primary = primary
        self.secondary = secondary
        self.mode = mode
        self.doublecheck_runs = doublecheck_runs
        self.options = options
        self.reset = reset
        self.should_stop = should_stop

    def run(self, plan: Plan) -> ModeResult:
        if self.mode == "differential":
            return run_differential(self.primary, self.secondary, plan, self.options, self.reset, self.should_stop)
        if self.mode == "doublecheck":
            return run_doublecheck(
                self.primary, plan, self.options, self.reset, self.doublecheck_runs, self.should_stop
            )
        result = run_single(self.primary, plan, self.options, self.should_stop)
        return ModeResult(mode="single", runs=[result], failure=result.failure)

    def failure_predicate(self, failure: FailureRecord) -> Callable[[Plan], bool]:
        """Predicate for the shrinker: the plan still fails the same way."""

        signature = failure.signature()

        def is_failing(plan: Plan) -> bool:
            outcome = self.run(plan)
            return outcome.failure is not None and outcome.failure.signature() == signature

        return is_failing


def _open(factory: AdapterFactory, plan: Plan) -> BackendAdapter:
    adapter = factory()
    adapter.open_pool(plan.config)
    return adapter


def run_single(
    factory: AdapterFactory,
    plan: Plan,
    options: RunnerOptions = RunnerOptions(),
    should_stop: Optional[Callable[[], bool]] = None,
) -> RunResult:
    adapter = _open(factory, plan)
    try:
        result = options.build(adapter, should_stop).run(plan)
    finally:
        adapter.close()
    result.label = "run"
    return result


def run_differential(
    primary: AdapterFactory,
    secondary: AdapterFactory,
    plan: Plan,
    options: RunnerOptions = RunnerOptions(),
    reset: ResetConfig = ResetConfig(),
    should_stop: Optional[Callable[[], bool]] = None,
) -> ModeResult:
    """Same plan on two targets; results and error classes must agree."""

    tables = reset.tables_for(plan)
    runs: List[RunResult] = []
    for label, factory in (("primary", primary), ("secondary", secondary)):
        adapter = _open(factory, plan)
        try:
            adapter.reset(tables, reset.mode)
            result = options.build(adapter, should_stop).run(plan)
        finally:
            adapter.close()
        result.label = label
        runs.append(result)
    return _judge("differential", plan, runs, compare_messages=False, tail_size=options.tail_size)


def run_doublecheck(
    factory: AdapterFactory,
    plan: Plan,
    options: RunnerOptions = RunnerOptions(),
    reset: ResetConfig = ResetConfig(),
    runs: int = 2,
    should_stop: Optional[Callable[[], bool]] = None,
) -> ModeResult:
    """Same plan repeatedly on one target; everything including messages must agree."""

    tables = reset.tables_for(plan)
    results: List[RunResult] = []
    adapter = _open(factory, plan)
    try:
        for index in range(runs):
            adapter.reset(tables, reset.mode)
            result = options.build(adapter, should_stop).run(plan)
            result.label = f"run{index + 1}"
            results.append(result)
            outcome = _judge("doublecheck", plan, results, compare_messages=True, tail_size=options.tail_size)
            if not outcome.passed:
                return outcome
    finally:
        adapter.close()
    return ModeResult(mode="doublecheck", runs=results)


def _judge(
    mode: str, plan: Plan, runs: Sequence[RunResult], *, compare_messages: bool, tail_size: int = DEFAULT_TAIL_SIZE
) -> ModeResult:
    first = runs[0]
    for run in runs:
        if run.failure is not None:
            return ModeResult(mode=mode, runs=list(runs), failure=run.failure)
    for other in runs[1:]:
        divergence = compare_traces(first.trace.events, other.trace.events, compare_messages=compare_messages)
        if divergence is not None:
            logger.info("%s mismatch between %s and %s: %s", mode, first.label, other.label, divergence.message)
            return ModeResult(
                mode=mode,
                runs=list(runs),
                failure=_mismatch_failure(mode, plan, first, other, divergence, tail_size),
                divergence=divergence,
            )
    return ModeResult(mode=mode, runs=list(runs))


def _mismatch_failure(
    mode: str,
    plan: Plan,
    left: RunResult,
    right: RunResult,
    divergence: Divergence,
    tail_size: int = DEFAULT_TAIL_SIZE,
) -> FailureRecord:
    events = left.trace.events
    step = divergence.step
    interaction = plan.interactions[step] if step is not None and step < len(plan.interactions) else None

    def side(result: RunResult) -> dict:
        event = next((item for item in result.trace.events if item.step == step), None)
        return {
            "label": result.label,
            "backend": result.backend,
            "steps_executed": result.steps_executed,
            "event": event.to_dict() if event is not None else None,
        }

    return FailureRecord(
        kind="mismatch",
        check=f"{mode}_{divergence.field}",
        reason=f"{mode} mismatch: {divergence.message}",
        step=step,
        task_id=interaction.task_id if interaction else None,
        operation=describe_operation(interaction.operation) if interaction else None,
        seed=plan.seed,
        config=plan.config,
        backend=f"{left.backend} vs {right.backend}",
        plan_digest=plan_digest(plan),
        tail=_tail(events, step, tail_size),
        details={"left": side(left), "right": side(right)},
    )


def _tail(events: Sequence[TraceEvent], step: Optional[int], count: int) -> Tuple[TraceEvent, ...]:
    if count <= 0:
        return ()
    return tuple(event for event in events if step is None or event.step <= step)[-count:]
