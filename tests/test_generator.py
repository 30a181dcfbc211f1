from __future__ import annotations

from typing import Dict

import pytest

from poolsim.core.modes import run_single
from poolsim.backends import backend_manager
from poolsim.errors import ConfigError
from poolsim.generators import WorkloadModel, generate, guard_operation
from poolsim.generators.planner import SELECT_GEN, bootstrap_prefix
from poolsim.plan.models import (
    Begin,
    Checkout,
    Commit,
    Execute,
    InjectFault,
    Interaction,
    Plan,
    Query,
    Return,
    Rollback,
    Sleep,
    WorkloadConfig,
)


def _walk(plan: Plan):
    """Replay the plan's bookkeeping and yield (interaction, held, open_tx) after each step."""

    has_conn: Dict[int, bool] = {}
    in_tx: Dict[int, bool] = {}
    for item in plan.interactions:
        if item.expectation is not None and item.expectation.expects_error:
            yield item, has_conn, in_tx
            continue
        task = item.task_id
        op = item.operation
        if isinstance(op, Checkout):
            has_conn[task] = True
        elif isinstance(op, Return):
            has_conn[task] = False
            in_tx[task] = False
        elif isinstance(op, Begin):
            in_tx[task] = True
        elif isinstance(op, (Commit, Rollback)):
            in_tx[task] = False
        elif isinstance(op, InjectFault) and op.fault in {"io", "panic"}:
            has_conn[task] = False
            in_tx[task] = False
        yield item, has_conn, in_tx


def test_generate_is_deterministic() -> None:
    config = WorkloadConfig(steps=300, tasks=5, pool_size=3, fault_rate=0.05)
    first = generate(1234, config)
    second = generate(1234, config)
    assert first == second
    assert generate(1235, config) != first


def test_plan_starts_with_bootstrap_and_fits_steps() -> None:
    config = WorkloadConfig(steps=200, tasks=4)
    plan = generate(5, config)
    assert plan.interactions[: len(bootstrap_prefix())] == bootstrap_prefix()
    assert len(plan) <= config.steps
    assert plan.seed == 5
    assert plan.config == config


def test_no_consecutive_begin_and_everything_closed() -> None:
    config = WorkloadConfig(steps=800, tasks=6, pool_size=3, max_in_flight_tx=2)
    plan = generate(99, config)
    open_tx: Dict[int, bool] = {}
    for item, has_conn, in_tx in _walk(plan):
        if isinstance(item.operation, Begin):
            assert not open_tx.get(item.task_id), f"nested begin for task {item.task_id}"
        open_tx = dict(in_tx)
        assert sum(1 for held in has_conn.values() if held) <= config.pool_size
        assert sum(1 for active in in_tx.values() if active) <= config.max_in_flight_tx
    assert not any(has_conn.values())
    assert not any(in_tx.values())


def test_operations_without_connection_never_emitted() -> None:
    plan = generate(7, WorkloadConfig(steps=400, tasks=8, pool_size=2))
    held: Dict[int, bool] = {}
    for item, has_conn, _ in _walk(plan):
        if not isinstance(item.operation, (Checkout, Sleep)):
            assert held.get(item.task_id), f"{item.operation.kind} without a connection"
        held = dict(has_conn)


def test_property_prefix_is_kept_whole() -> None:
    config = WorkloadConfig(steps=12, tasks=2)
    plan = generate(1, config, property_name="tx-commit-visible")
    assert plan.config.property == "tx-commit-visible"
    assert len(plan) == 12
    assert any(
        isinstance(item.operation, Query) and "sim_tx_commit_visible" in item.operation.sql
        for item in plan.interactions
    )


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"seed": -1}, "seed"),
        ({"property_name": "no-such-thing"}, "Unknown property"),
        ({"property_name": "tx-commit-visible", "config": WorkloadConfig(tasks=1)}, "needs 2 tasks"),
        ({"property_name": "retry-after-busy", "config": WorkloadConfig(pool_size=1)}, "pool of at least 2"),
        ({"config": WorkloadConfig(busy_rate=1.5)}, "busy_rate"),
        ({"config": WorkloadConfig(steps=2)}, "steps must be at least 3"),
        ({"property_name": "tx-commit-visible", "config": WorkloadConfig(steps=11, tasks=2)}, "at least 12"),
    ],
)
def test_generate_rejects_bad_input(kwargs, message) -> None:
    seed = kwargs.pop("seed", 1)
    config = kwargs.pop("config", WorkloadConfig())
    with pytest.raises(ConfigError) as exc:
        generate(seed, config, **kwargs)
    assert message in str(exc.value)


def test_guard_operation_rewrites_illegal_steps() -> None:
    model = WorkloadModel(WorkloadConfig(pool_size=1, tasks=2))
    assert guard_operation(model, 0, Query(sql="SELECT 1;")) == Checkout()
    model.apply(Interaction(0, Checkout()))
    assert guard_operation(model, 1, Checkout()) == Sleep(ms=5)
    assert guard_operation(model, 0, Commit()) == Query(sql=SELECT_GEN)
    assert guard_operation(model, 0, Execute(sql="BEGIN")) == Query(sql=SELECT_GEN)
    model.apply(Interaction(0, Begin()))
    assert guard_operation(model, 0, Begin()) == Query(sql=SELECT_GEN)
    assert guard_operation(model, 0, Return()) == Commit()


def test_writer_slot_is_exclusive() -> None:
    model = WorkloadModel(WorkloadConfig(pool_size=2, tasks=2))
    insert = Execute(sql="INSERT INTO sim_gen (id, value) VALUES (1, 'v1');")
    for task in (0, 1):
        model.apply(Interaction(task, Checkout()))
        model.apply(Interaction(task, Begin()))
    model.apply(Interaction(0, insert))
    assert guard_operation(model, 1, insert) == Query(sql=SELECT_GEN)
    model.apply(Interaction(0, Commit()))
    assert guard_operation(model, 1, insert) == insert


def test_generated_plan_runs_clean_on_sqlite() -> None:
    plan = generate(42, WorkloadConfig(steps=500, tasks=8))
    result = run_single(backend_manager.factory("sqlite"), plan)
    assert result.failure is None, result.failure
    assert result.steps_executed == len(plan)
    messages = [event.message for event in result.trace]
    assert not any("cannot start a transaction within a transaction" in message for message in messages)
