from __future__ import annotations

from poolsim.backends import backend_manager
from poolsim.core.modes import Executor
from poolsim.core.shrinker import close_open_transactions, dependent_steps, remove_steps, shrink, shrink_with_report
from poolsim.plan.models import (
    Begin,
    Checkout,
    Commit,
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

MARKER = Interaction(3, Query(sql="SELECT 'marker';"))


def _noise(count: int):
    return [Interaction(index % 3, Sleep(ms=index + 1)) for index in range(count)]


def _contains_marker(plan: Plan) -> bool:
    return MARKER in plan.interactions


def test_shrinks_to_single_culprit() -> None:
    plan = Plan(interactions=tuple(_noise(20) + [MARKER] + _noise(11)), seed=1)
    result = shrink_with_report(plan, _contains_marker)
    assert result.plan.interactions == (MARKER,)
    assert result.original_steps == 32
    assert result.shrunk_steps == 1
    assert result.attempts >= result.rounds > 0


def test_shrink_is_idempotent() -> None:
    plan = Plan(interactions=tuple(_noise(9) + [MARKER] + _noise(4)), seed=1)
    once = shrink(plan, _contains_marker)
    twice = shrink(once, _contains_marker)
    assert twice == once


def test_max_rounds_is_respected() -> None:
    plan = Plan(interactions=tuple(_noise(40) + [MARKER]), seed=1)
    result = shrink_with_report(plan, _contains_marker, max_rounds=1)
    assert result.rounds == 1
    assert len(result.plan) < len(plan)
    assert MARKER in result.plan.interactions


def test_repair_appends_rollback_for_open_transactions() -> None:
    steps = [
        Interaction(0, Checkout()),
        Interaction(0, Begin()),
        Interaction(1, Checkout()),
        Interaction(1, Begin()),
        Interaction(1, Commit()),
        Interaction(2, Begin()),
    ]
    repaired = close_open_transactions(steps)
    assert repaired[: len(steps)] == steps
    assert repaired[len(steps):] == [Interaction(0, Rollback())]


def _balanced_transactions(plan: Plan) -> bool:
    open_tasks = set()
    for item in plan.interactions:
        if isinstance(item.operation, Begin):
            open_tasks.add(item.task_id)
        elif isinstance(item.operation, (Commit, Rollback)):
            if item.task_id not in open_tasks:
                return False
            open_tasks.discard(item.task_id)
    return True


def test_dependent_steps_follow_sessions_and_transactions() -> None:
    steps = [
        Interaction(0, Checkout()),
        Interaction(0, Begin()),
        Interaction(1, Sleep(ms=1)),
        Interaction(0, Query(sql="SELECT 1;")),
        Interaction(0, Commit()),
        Interaction(0, Return()),
        Interaction(0, Checkout()),
    ]
    assert dependent_steps(steps) == {0: [1, 3, 4, 5], 1: [4], 6: []}
    assert remove_steps(steps, 1, 2) == [steps[0], steps[2], steps[3], steps[5], steps[6]]
    assert remove_steps(steps, 0, 1) == [steps[2], steps[6]]


def test_removes_transaction_wrapped_around_culprit() -> None:
    plan = Plan(
        interactions=(
            Interaction(0, Checkout()),
            Interaction(0, Begin()),
            MARKER,
            Interaction(0, Commit()),
            Interaction(0, Return()),
        ),
        seed=1,
    )

    shrunk = shrink(plan, lambda candidate: _contains_marker(candidate) and _balanced_transactions(candidate))

    assert shrunk.interactions == (MARKER,)


def test_shrinks_real_failure_with_same_signature() -> None:
    executor = Executor(backend_manager.factory("sqlite"))
    noise = [
        Interaction(0, Checkout()),
        Interaction(0, Execute(sql="CREATE TABLE IF NOT EXISTS sim_noise (id INTEGER, value TEXT);")),
        Interaction(0, Begin()),
        Interaction(0, Execute(sql="INSERT INTO sim_noise (id, value) VALUES (1, 'x');")),
        Interaction(0, Commit()),
        Interaction(1, Sleep(ms=3)),
        Interaction(0, Query(sql="SELECT id FROM sim_noise;")),
        Interaction(0, Return()),
    ]
    culprit = [
        Interaction(2, Checkout()),
        Interaction(2, Query(sql="SELECT 1;"), Expectation(row_count=2)),
        Interaction(2, Return()),
    ]
    plan = Plan(
        interactions=tuple(noise[:4] + culprit[:1] + noise[4:] + culprit[1:]),
        seed=5,
        config=WorkloadConfig(pool_size=2, tasks=3),
    )
    failure = executor.run(plan).failure
    assert failure.check == "row_count"

    shrunk = shrink(plan, executor.failure_predicate(failure))

    assert shrunk.interactions == tuple(culprit[:2])
    replayed = executor.run(shrunk).failure
    assert replayed.signature() == failure.signature()
