"""Seeded plan generator.

The generator keeps a small model of what the runner will see (who holds a
connection, who is inside a transaction, who holds SQLite's single write slot)
and only emits operations that are legal in that model. Every random choice
comes from one ``numpy`` generator seeded with the plan seed, so the same
seed and workload always produce the same plan.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from poolsim.errors import ConfigError
from poolsim.plan.models import (
    Begin,
    Checkout,
    Commit,
    Execute,
    InjectFault,
    Interaction,
    Operation,
    Plan,
    Query,
    Return,
    Rollback,
    Sleep,
    WorkloadConfig,
    is_transaction_control,
    is_write,
)
from poolsim.plan.properties import resolve_property

logger = logging.getLogger(__name__)

GEN_TABLE = "sim_gen"
CREATE_GEN_TABLE = f"CREATE TABLE IF NOT EXISTS {GEN_TABLE} (id INTEGER, value TEXT);"
SELECT_GEN = f"SELECT id, value FROM {GEN_TABLE} ORDER BY id LIMIT 5;"
BOOTSTRAP_TASK = 0
POOL_WAIT_MS = 5
FAULT_WEIGHTS: Tuple[Tuple[str, float], ...] = (("busy", 0.6), ("io", 0.3), ("panic", 0.1))


@dataclass
class TaskModel:
    has_conn: bool = False
    in_tx: bool = False
    has_read: bool = False


class WorkloadModel:
    """Generator-side table of task state, indexed by task id."""

    def __init__(self, config: WorkloadConfig) -> None:
        self.pool_size = config.pool_size
        self.max_in_flight_tx = config.max_in_flight_tx
        self.tasks: Dict[int, TaskModel] = {task_id: TaskModel() for task_id in range(config.tasks)}
        self.checked_out = 0
        self.in_flight_tx = 0
        self.writer: Optional[int] = None

    def task(self, task_id: int) -> TaskModel:
        return self.tasks.setdefault(task_id, TaskModel())

    def has_capacity(self) -> bool:
        return self.checked_out < self.pool_size

    def can_begin(self) -> bool:
        return self.in_flight_tx < self.max_in_flight_tx

    def can_write(self, task_id: int) -> bool:
        state = self.task(task_id)
        if state.in_tx:
            if self.writer == task_id:
                return True
            # A transaction that already took a read snapshot cannot upgrade in WAL mode.
            return self.writer is None and not state.has_read
        return self.writer is None

    def closing_cost(self) -> int:
        return sum(int(state.in_tx) + int(state.has_conn) for state in self.tasks.values())

    def apply(self, interaction: Interaction) -> None:
        if interaction.expectation is not None and interaction.expectation.expects_error:
            return
        task_id = interaction.task_id
        state = self.task(task_id)
        operation = interaction.operation
        if isinstance(operation, Checkout):
            state.has_conn = True
            self.checked_out += 1
        elif isinstance(operation, Return):
            self._end_transaction(task_id)
            state.has_conn = False
            self.checked_out -= 1
        elif isinstance(operation, Begin):
            state.in_tx = True
            state.has_read = False
            self.in_flight_tx += 1
        elif isinstance(operation, (Commit, Rollback)):
            self._end_transaction(task_id)
        elif isinstance(operation, Execute):
            if state.in_tx and is_write(operation.sql):
                self.writer = task_id
        elif isinstance(operation, Query):
            if state.in_tx:
                state.has_read = True
        elif isinstance(operation, InjectFault):
            if operation.fault in {"io", "panic"} and state.has_conn:
                self._end_transaction(task_id)
                state.has_conn = False
                self.checked_out -= 1

    def _end_transaction(self, task_id: int) -> None:
        state = self.task(task_id)
        if state.in_tx:
            state.in_tx = False
            state.has_read = False
            self.in_flight_tx -= 1
        if self.writer == task_id:
            self.writer = None


class PlanGenerator:
    """Builds one plan; instances are single use."""

    def __init__(self, seed: int, config: WorkloadConfig) -> None:
        self.seed = seed
        self.config = config
        self.rng = np.random.default_rng(seed)
        self.model = WorkloadModel(config)
        self.interactions: List[Interaction] = []
        self.next_id = 1

    def build(self, prefix: Sequence[Interaction] = ()) -> Plan:
        for item in bootstrap_prefix():
            self._push(item)
        for item in prefix:
            self._push(item)
        while len(self.interactions) + self.model.closing_cost() + 2 <= self.config.steps:
            task_id = int(self.rng.integers(0, self.config.tasks))
            operation = guard_operation(self.model, task_id, self._next_operation(task_id))
            self._push(Interaction(task_id=task_id, operation=operation))
        self._close_open_work()
        return Plan(interactions=tuple(self.interactions), seed=self.seed, config=self.config)

    def _push(self, interaction: Interaction) -> None:
        self.model.apply(interaction)
        self.interactions.append(interaction)

    def _sleep(self) -> Sleep:
        return Sleep(ms=int(self.rng.integers(1, 51)))

    def _next_operation(self, task_id: int) -> Operation:
        config = self.config
        state = self.model.task(task_id)
        if state.has_conn and self.rng.random() < config.busy_rate:
            return self._sleep()
        if self.rng.random() < config.sleep_rate:
            return self._sleep()
        if not state.has_conn:
            return Checkout()
        if config.fault_rate > 0 and self.rng.random() < config.fault_rate:
            return InjectFault(fault=choose_weighted(self.rng, FAULT_WEIGHTS))
        if state.in_tx:
            choices = [
                ("execute", 0.45),
                ("query", 0.25),
                ("commit", max(0.15 - config.panic_rate, 0.0)),
                ("rollback", 0.10 + config.panic_rate),
                ("ddl", config.ddl_rate),
            ]
        else:
            choices = [
                ("execute", 0.35),
                ("query", 0.25),
                ("return", 0.15),
                ("ddl", config.ddl_rate),
            ]
            if self.model.can_begin():
                choices.append(("begin", 0.20))
        choice = choose_weighted(self.rng, choices)
        if choice in {"execute", "ddl"} and not self.model.can_write(task_id):
            choice = "query"
        if choice == "execute":
            row_id = self.next_id
            self.next_id += 1
            return Execute(sql=f"INSERT INTO {GEN_TABLE} (id, value) VALUES ({row_id}, 'v{row_id}');")
        if choice == "ddl":
            return Execute(sql=CREATE_GEN_TABLE)
        if choice == "query":
            return Query(sql=SELECT_GEN)
        return {"commit": Commit, "rollback": Rollback, "return": Return, "begin": Begin}[choice]()

    def _close_open_work(self) -> None:
        for task_id in sorted(self.model.tasks):
            if self.model.tasks[task_id].in_tx:
                self._push(Interaction(task_id=task_id, operation=Commit()))
        for task_id in sorted(self.model.tasks):
            if self.model.tasks[task_id].has_conn:
                self._push(Interaction(task_id=task_id, operation=Return()))


def guard_operation(model: WorkloadModel, task_id: int, operation: Operation) -> Operation:
    """Rewrite a candidate operation into one that is legal for the task right now."""

    state = model.task(task_id)
    if isinstance(operation, Sleep):
        return operation
    if isinstance(operation, Checkout):
        if state.has_conn:
            return Query(sql=SELECT_GEN)
        return operation if model.has_capacity() else Sleep(ms=POOL_WAIT_MS)
    if not state.has_conn:
        return Checkout() if model.has_capacity() else Sleep(ms=POOL_WAIT_MS)
    if isinstance(operation, Begin):
        if state.in_tx or not model.can_begin():
            return Query(sql=SELECT_GEN)
        return operation
    if isinstance(operation, (Commit, Rollback)) and not state.in_tx:
        return Query(sql=SELECT_GEN)
    if isinstance(operation, Return) and state.in_tx:
        return Commit()
    if isinstance(operation, Execute):
        if is_transaction_control(operation.sql):
            return Query(sql=SELECT_GEN)
        if is_write(operation.sql) and not model.can_write(task_id):
            return Query(sql=SELECT_GEN)
    return operation


def choose_weighted(rng: np.random.Generator, choices: Sequence[Tuple[str, float]]) -> str:
    total = sum(weight for _, weight in choices if weight > 0)
    if total <= 0:
        return choices[0][0]
    target = rng.random() * total
    for name, weight in choices:
        if weight <= 0:
            continue
        if target < weight:
            return name
        target -= weight
    return choices[-1][0]


def bootstrap_prefix() -> Tuple[Interaction, ...]:
    return (
        Interaction(task_id=BOOTSTRAP_TASK, operation=Checkout()),
        Interaction(task_id=BOOTSTRAP_TASK, operation=Execute(sql=CREATE_GEN_TABLE)),
        Interaction(task_id=BOOTSTRAP_TASK, operation=Return()),
    )


def generate(seed: int, config: WorkloadConfig, property_name: Optional[str] = None) -> Plan:
    """Build the plan for ``seed`` and ``config``; a pure function of its inputs.

    The bootstrap steps and any property prefix count towards ``config.steps``;
    a budget too small to hold them is rejected.
    """

    config.validate()
    if seed < 0:
        raise ConfigError(f"seed must be non-negative, got {seed}")
    property_name = property_name or config.property
    prefix: Tuple[Interaction, ...] = ()
    if property_name:
        prop = resolve_property(property_name, config)
        config = config.merged(property=prop.name)
        prefix = prop.build(seed, config)
    fixed = len(bootstrap_prefix()) + len(prefix)
    if config.steps < fixed:
        raise ConfigError(f"steps must be at least {fixed} to hold the plan prefix, got {config.steps}")
    logger.debug("generating plan seed=%s config=%s", seed, config)
    return PlanGenerator(seed, config).build(prefix)
