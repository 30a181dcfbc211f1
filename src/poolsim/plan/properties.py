"""Named plan prefixes that each pin down one pool or transaction invariant."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

from poolsim.errors import ConfigError

from .models import (
    Begin,
    Checkout,
    Commit,
    ErrorClass,
    ErrorExpectation,
    Execute,
    Expectation,
    Interaction,
    Plan,
    Query,
    Return,
    Rollback,
    Sleep,
    WorkloadConfig,
)

PrefixBuilder = Callable[[Optional[int], WorkloadConfig], Tuple[Interaction, ...]]

TASK_A = 0
TASK_B = 1


@dataclass(frozen=True)
class Property:
    name: str
    description: str
    required_tasks: int
    builder: PrefixBuilder
    min_pool_size: int = 1

    def build(self, seed: Optional[int], config: WorkloadConfig) -> Tuple[Interaction, ...]:
        return self.builder(seed, config)


class PropertyRegistry:
    """Stores properties by kebab-case name; CamelCase lookups are accepted."""

    def __init__(self) -> None:
        self._properties: Dict[str, Property] = {}

    def register(self, prop: Property) -> Property:
        if prop.name in self._properties:
            raise ValueError(f"Property '{prop.name}' already registered")
        self._properties[prop.name] = prop
        return prop

    def get(self, name: str) -> Property:
        key = normalize_property_name(name)
        try:
            return self._properties[key]
        except KeyError as exc:
            known = ", ".join(sorted(self._properties))
            raise KeyError(f"Unknown property '{name}'. Known properties: {known}") from exc

    def __contains__(self, name: str) -> bool:
        return normalize_property_name(name) in self._properties

    def __iter__(self) -> Iterator[Property]:
        return iter(self._properties.values())

    def names(self) -> Iterable[str]:
        return tuple(self._properties.keys())


registry = PropertyRegistry()


def normalize_property_name(name: str) -> str:
    text = name.strip()
    text = re.sub(r"(?<=[a-z0-9])([A-Z])", r"-\1", text)
    return text.replace("_", "-").lower()


def get_property(name: str) -> Property:
    return registry.get(name)


def resolve_property(name: str, config: WorkloadConfig) -> Property:
    """Look up ``name`` and check that ``config`` can host it."""

    try:
        prop = registry.get(name)
    except KeyError as exc:
        raise ConfigError(str(exc.args[0])) from exc
    if prop.required_tasks > config.tasks:
        raise ConfigError(f"Property '{prop.name}' needs {prop.required_tasks} tasks, config has {config.tasks}")
    if prop.min_pool_size > config.pool_size:
        raise ConfigError(
            f"Property '{prop.name}' needs a pool of at least {prop.min_pool_size}, config has {config.pool_size}"
        )
    return prop


def build_property_plan(name: str, seed: Optional[int], config: WorkloadConfig) -> Plan:
    """Return the property's prefix as a standalone plan."""

    prop = resolve_property(name, config)
    config = config.merged(property=prop.name)
    return Plan(interactions=prop.build(seed, config), seed=seed, config=config)


def _create(table: str) -> Execute:
    return Execute(sql=f"CREATE TABLE IF NOT EXISTS {table} (id INTEGER, value TEXT);")


def _insert(table: str, row_id: int) -> Execute:
    return Execute(sql=f"INSERT INTO {table} (id, value) VALUES ({row_id}, 'v{row_id}');")


def _select_ids(table: str) -> Query:
    return Query(sql=f"SELECT id FROM {table} ORDER BY id;")


def _step(task_id: int, operation, expectation: Optional[Expectation] = None) -> Interaction:
    return Interaction(task_id=task_id, operation=operation, expectation=expectation)


def _pool_checkout_return(seed: Optional[int], config: WorkloadConfig) -> Tuple[Interaction, ...]:
    table = "sim_pool_checkout_return"
    steps = [_step(TASK_A, Checkout())]
    if config.pool_size == 1:
        # A owns the only connection, so B's attempt has to be turned away.
        steps.append(
            _step(TASK_B, Checkout(), Expectation(error=ErrorExpectation(error_class=ErrorClass.POOL_TIMEOUT)))
        )
    else:
        steps.append(_step(TASK_B, Sleep(ms=10)))
    steps.extend(
        [
            _step(TASK_A, _create(table)),
            _step(TASK_A, _insert(table, 1)),
            _step(TASK_A, Return()),
            _step(TASK_B, Checkout()),
            _step(TASK_B, _select_ids(table), Expectation(row_count=1, column_count=1)),
            _step(TASK_B, Return()),
        ]
    )
    return tuple(steps)


def _transaction_visibility(table: str, finish, expected_rows: int) -> PrefixBuilder:
    def build(seed: Optional[int], config: WorkloadConfig) -> Tuple[Interaction, ...]:
        return (
            _step(TASK_A, Checkout()),
            _step(TASK_A, _create(table)),
            _step(TASK_A, Begin()),
            _step(TASK_A, _insert(table, 1)),
            _step(TASK_A, finish()),
            _step(TASK_A, Return()),
            _step(TASK_B, Checkout()),
            _step(TASK_B, _select_ids(table), Expectation(row_count=expected_rows, column_count=1)),
            _step(TASK_B, Return()),
        )

    return build


def _retry_after_busy(seed: Optional[int], config: WorkloadConfig) -> Tuple[Interaction, ...]:
    table = "sim_retry_after_busy"
    locked = Expectation(error=ErrorExpectation(error_class=ErrorClass.BUSY, contains="locked"))
    return (
        _step(TASK_A, Checkout()),
        _step(TASK_A, _create(table)),
        _step(TASK_A, Begin()),
        _step(TASK_A, _insert(table, 1)),
        _step(TASK_B, Checkout()),
        _step(TASK_B, _insert(table, 2), locked),
        _step(TASK_A, Commit()),
        _step(TASK_B, _insert(table, 2)),
        _step(TASK_B, Query(sql=f"SELECT COUNT(*) FROM {table};"), Expectation(row_count=1, column_count=1)),
        _step(TASK_A, Return()),
        _step(TASK_B, Return()),
    )


registry.register(
    Property(
        name="pool-checkout-return",
        description="A connection returned by one task can be checked out by another and sees its writes.",
        required_tasks=2,
        builder=_pool_checkout_return,
    )
)
registry.register(
    Property(
        name="tx-commit-visible",
        description="Rows inserted in a committed transaction are visible from another connection.",
        required_tasks=2,
        builder=_transaction_visibility("sim_tx_commit_visible", Commit, 1),
    )
)
registry.register(
    Property(
        name="tx-rollback-invisible",
        description="Rows inserted in a rolled back transaction are never visible.",
        required_tasks=2,
        builder=_transaction_visibility("sim_tx_rollback_invisible", Rollback, 0),
    )
)
registry.register(
    Property(
        name="retry-after-busy",
        description="A write blocked by another task's open transaction succeeds once that transaction commits.",
        required_tasks=2,
        builder=_retry_after_busy,
        min_pool_size=2,
    )
)
