"""Deterministic, single-threaded plan runner."""
from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from poolsim.backends.base import AdapterError, BackendAdapter, ConnHandle, RowSet, TxHandle
from poolsim.plan.loader import plan_digest
from poolsim.plan.models import (
    BREAKING_ERRORS,
    CONNECTED_OPERATIONS,
    RETRYABLE_ERRORS,
    Begin,
    Checkout,
    Commit,
    ErrorClass,
    Execute,
    InjectFault,
    Interaction,
    Operation,
    Plan,
    Query,
    Return,
    Rollback,
    Sleep,
    describe_operation,
    is_transaction_control,
)

from .comparator import normalize_rowset
from .oracle import Violation, check_expectation, check_pool_invariants
from .results import FailureRecord, QueryObservation, RunResult, Trace, TraceEvent

logger = logging.getLogger(__name__)

RETURN_POLICIES = ("fatal", "rollback")
BACKOFF_START_MS = 5
BACKOFF_CAP_MS = 100
DEFAULT_MAX_RETRIES = 8
DEFAULT_TAIL_SIZE = 20


@dataclass
class TaskState:
    """Per-task runner state; one entry per task id, reset when the plan ends."""

    handle: Optional[ConnHandle] = None
    tx: Optional[TxHandle] = None
    prepared: List[str] = field(default_factory=list)

    @property
    def in_transaction(self) -> bool:
        return self.tx is not None

    @property
    def label(self) -> str:
        if self.handle is None:
            return "no_connection"
        return "in_transaction" if self.tx is not None else "idle"


class SimClock:
    """Logical clock; sleeps and retry backoff advance it, nothing waits."""

    def __init__(self) -> None:
        self.now_ms = 0

    def advance(self, ms: int) -> None:
        self.now_ms += max(int(ms), 0)


class _Halt(Exception):
    """Stops the plan at the current step."""

    def __init__(
        self,
        kind: str,
        check: str,
        reason: str,
        *,
        error_class: Optional[ErrorClass] = None,
        event: Optional[TraceEvent] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(reason)
        self.kind = kind
        self.check = check
        self.reason = reason
        self.error_class = error_class
        self.event = event
        self.details = dict(details or {})


class Runner:
    """Executes a plan one interaction at a time against one adapter.

    The adapter's pool must already be open. Any violation stops the plan at
    the offending step and is reported as the run's single ``FailureRecord``;
    nothing is raised to the caller.
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        return_policy: str = "fatal",
        tail_size: int = DEFAULT_TAIL_SIZE,
        timeout_s: Optional[float] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        if return_policy not in RETURN_POLICIES:
            raise ValueError(f"return_policy must be one of {', '.join(RETURN_POLICIES)}")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.adapter = adapter
        self.max_retries = max_retries
        self.return_policy = return_policy
        self.tail_size = tail_size
        self.timeout_s = timeout_s
        self.should_stop = should_stop

    def run(self, plan: Plan) -> RunResult:
        tasks: Dict[int, TaskState] = {}
        trace = Trace()
        clock = SimClock()
        digest = plan_digest(plan)
        started = time.perf_counter()
        failure: Optional[FailureRecord] = None
        for step, interaction in enumerate(plan.interactions):
            abort_reason = self._abort_reason(started)
            if abort_reason:
                failure = self._failure(
                    plan, digest, trace, _Halt("aborted", "aborted", abort_reason), step, interaction
                )
                break
            state = tasks.setdefault(interaction.task_id, TaskState())
            try:
                event = self._execute(step, interaction, state, clock)
                trace.append(event)
                violation = check_pool_invariants(tasks, self.adapter.pool_snapshot())
                if violation is not None:
                    raise _Halt("oracle", violation.check, violation.reason)
            except _Halt as halt:
                if halt.event is not None:
                    trace.append(halt.event)
                failure = self._failure(plan, digest, trace, halt, step, interaction)
                break
        release_failure = self._release(tasks)
        if failure is None and release_failure is not None:
            failure = self._failure(plan, digest, trace, release_failure, None, None)
        if failure is None:
            leftover = self.adapter.pool_snapshot().checked_out
            if leftover:
                halt = _Halt(
                    "oracle",
                    "leaked_connection",
                    f"{leftover} connection(s) still checked out after every task was released",
                )
                failure = self._failure(plan, digest, trace, halt, None, None)
        trace.freeze()
        duration = time.perf_counter() - started
        if failure is None:
            logger.info("%s: plan passed (%d steps, %.3fs)", self.adapter.name, len(trace), duration)
        else:
            logger.info(
                "%s: %s failure at step %s: %s", self.adapter.name, failure.kind, failure.step, failure.reason
            )
            for event in failure.tail:
                logger.debug(
                    "  step=%s task=%s %s -> %s %s",
                    event.step,
                    event.task_id,
                    describe_operation(event.operation),
                    event.outcome,
                    event.message,
                )
        return RunResult(
            backend=self.adapter.name,
            plan=plan,
            trace=trace,
            failure=failure,
            duration_s=duration,
        )

    def _abort_reason(self, started: float) -> Optional[str]:
        if self.timeout_s is not None and time.perf_counter() - started > self.timeout_s:
            return f"run exceeded timeout of {self.timeout_s}s"
        if self.should_stop is not None and self.should_stop():
            return "stop requested"
        return None

    def _failure(
        self,
        plan: Plan,
        digest: str,
        trace: Trace,
        halt: _Halt,
        step: Optional[int],
        interaction: Optional[Interaction],
    ) -> FailureRecord:
        return FailureRecord(
            kind=halt.kind,
            check=halt.check,
            reason=halt.reason,
            step=step,
            task_id=interaction.task_id if interaction else None,
            operation=describe_operation(interaction.operation) if interaction else None,
            error_class=halt.error_class,
            seed=plan.seed,
            config=plan.config,
            backend=self.adapter.name,
            plan_digest=digest,
            tail=trace.tail(self.tail_size),
            details=halt.details,
        )

    def _check_protocol(self, interaction: Interaction, state: TaskState) -> None:
        operation = interaction.operation
        task_id = interaction.task_id
        if isinstance(operation, Checkout) and state.handle is not None:
            raise _Halt(
                "protocol",
                "double_checkout",
                f"task {task_id} checked out while already holding connection {state.handle.conn_id}",
            )
        if isinstance(operation, CONNECTED_OPERATIONS) and state.handle is None:
            raise _Halt("protocol", "no_connection", f"task {task_id} issued {operation.kind} without a connection")
        if isinstance(operation, Begin) and state.in_transaction:
            raise _Halt("protocol", "nested_begin", f"task {task_id} issued begin inside an open transaction")
        if isinstance(operation, (Commit, Rollback)) and not state.in_transaction:
            raise _Halt("protocol", "no_transaction", f"task {task_id} issued {operation.kind} outside a transaction")
        if isinstance(operation, Return) and state.in_transaction and self.return_policy == "fatal":
            raise _Halt(
                "protocol",
                "return_in_transaction",
                f"task {task_id} returned connection {state.handle.conn_id} with an open transaction",
            )
        if isinstance(operation, (Execute, Query)) and is_transaction_control(operation.sql):
            raise _Halt(
                "protocol",
                "raw_transaction_control",
                f"task {task_id} sent transaction control through {operation.kind}: {operation.sql.strip()}",
            )

    def _execute(self, step: int, interaction: Interaction, state: TaskState, clock: SimClock) -> TraceEvent:
        operation = interaction.operation
        expectation = interaction.expectation
        expects_error = expectation is not None and expectation.expects_error
        self._check_protocol(interaction, state)
        conn_id = state.handle.conn_id if state.handle else None
        started = time.perf_counter()

        def event(outcome: str, attempts: int = 1, **extra: Any) -> TraceEvent:
            return TraceEvent(
                step=step,
                task_id=interaction.task_id,
                operation=operation,
                outcome=outcome,
                clock_ms=clock.now_ms,
                attempts=attempts,
                conn_id=state.handle.conn_id if state.handle else conn_id,
                duration_s=time.perf_counter() - started,
                **extra,
            )

        if isinstance(operation, Sleep):
            clock.advance(operation.ms)
            self.adapter.sleep(operation.ms)
            return event("ok")

        attempts = 0
        delay_ms = BACKOFF_START_MS
        while True:
            attempts += 1
            error: Optional[AdapterError] = None
            affected: Optional[int] = None
            rowset: Optional[RowSet] = None
            try:
                affected, rowset = self._dispatch(operation, state)
            except AdapterError as exc:
                error = exc
            except Exception as exc:  # adapter panic
                message = f"{type(exc).__name__}: {exc}"
                raise _Halt(
                    "panic",
                    "adapter_panic",
                    message,
                    error_class=ErrorClass.PANIC,
                    event=event("panic", attempts, error_class=ErrorClass.PANIC, message=message),
                    details={"traceback": traceback.format_exc()},
                ) from exc
            if error is None or error.error_class not in RETRYABLE_ERRORS or expects_error:
                break
            if attempts > self.max_retries:
                raise _Halt(
                    "retry_exhausted",
                    "retry_exhausted",
                    f"{operation.kind} still failing after {self.max_retries} retries: {error}",
                    error_class=error.error_class,
                    event=event("error", attempts, error_class=error.error_class, message=error.message),
                )
            logger.debug("step=%s task=%s busy, retrying in %sms", step, interaction.task_id, delay_ms)
            clock.advance(delay_ms)
            delay_ms = min(delay_ms * 2, BACKOFF_CAP_MS)

        if error is not None:
            failed = event("error", attempts, error_class=error.error_class, message=error.message)
            self._discard_if_broken(state, error)
            if expects_error:
                violation = check_expectation(expectation, error=error)
                if violation is not None:
                    raise _Halt("assertion", violation.check, violation.reason,
                                error_class=error.error_class, event=failed)
                return failed
            if isinstance(operation, InjectFault) and error.error_class.value == operation.fault:
                return failed
            raise _Halt(
                "adapter",
                f"unexpected_{error.error_class.value}",
                f"{describe_operation(operation)} failed: {error}",
                error_class=error.error_class,
                event=failed,
            )

        observation: Optional[QueryObservation] = normalize_rowset(rowset) if rowset is not None else None
        done = event("ok", attempts, observation=observation, affected_rows=affected)
        logger.debug("step=%s task=%s %s -> ok", step, interaction.task_id, describe_operation(operation))
        if expectation is not None:
            violation = self._check_result(expectation, observation, affected)
            if violation is not None:
                raise _Halt("assertion", violation.check, violation.reason, event=done)
        return done

    def _check_result(
        self, expectation, observation: Optional[QueryObservation], affected: Optional[int]
    ) -> Optional[Violation]:
        if observation is not None:
            return check_expectation(
                expectation, row_count=observation.row_count, column_count=observation.column_count
            )
        return check_expectation(expectation, row_count=affected)

    def _dispatch(self, operation: Operation, state: TaskState) -> Tuple[Optional[int], Optional[RowSet]]:
        adapter = self.adapter
        if isinstance(operation, Checkout):
            state.handle = adapter.checkout()
        elif isinstance(operation, Return):
            if state.tx is not None:
                adapter.rollback(state.tx)
                state.tx = None
            self._return(state)
        elif isinstance(operation, Begin):
            state.tx = adapter.begin(state.handle)
        elif isinstance(operation, Commit):
            adapter.commit(state.tx)
            state.tx = None
        elif isinstance(operation, Rollback):
            adapter.rollback(state.tx)
            state.tx = None
        elif isinstance(operation, Execute):
            state.prepared.append(operation.sql)
            return adapter.execute(state.tx or state.handle, operation.sql, operation.params), None
        elif isinstance(operation, Query):
            state.prepared.append(operation.sql)
            return None, adapter.query(state.tx or state.handle, operation.sql, operation.params)
        elif isinstance(operation, InjectFault):
            adapter.inject_fault(state.handle, operation.fault)
        else:
            raise TypeError(f"Unsupported operation {operation!r}")
        return None, None

    def _return(self, state: TaskState) -> None:
        handle = state.handle
        state.handle = None
        state.tx = None
        state.prepared.clear()
        if handle is not None:
            self.adapter.return_connection(handle)

    def _discard_if_broken(self, state: TaskState, error: AdapterError) -> None:
        handle = state.handle
        if handle is None:
            return
        if error.error_class in BREAKING_ERRORS:
            handle.broken = True
        if not handle.broken:
            return
        logger.debug("discarding broken connection %s", handle.conn_id)
        try:
            self._return(state)
        except AdapterError as exc:
            raise _Halt(
                "adapter",
                "discard_failed",
                f"discarding broken connection {handle.conn_id} failed: {exc}",
                error_class=exc.error_class,
            ) from exc

    def _release(self, tasks: Dict[int, TaskState]) -> Optional[_Halt]:
        """Roll back and return whatever tasks still hold; not traced."""

        first: Optional[_Halt] = None
        for task_id in sorted(tasks):
            state = tasks[task_id]
            if state.handle is None:
                continue
            try:
                if state.tx is not None and not state.handle.broken:
                    self.adapter.rollback(state.tx)
                self._return(state)
            except AdapterError as exc:
                logger.warning("releasing task %s failed: %s", task_id, exc)
                state.handle = None
                state.tx = None
                if first is None:
                    first = _Halt("adapter", "release_failed", f"releasing task {task_id} failed: {exc}",
                                  error_class=exc.error_class)
        tasks.clear()
        return first
