"""Delta-debugging minimizer for failing plans."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Sequence, Set

from poolsim.plan.models import (
    CONNECTED_OPERATIONS,
    Begin,
    Checkout,
    Commit,
    InjectFault,
    Interaction,
    Plan,
    Return,
    Rollback,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 64


@dataclass(frozen=True)
class ShrinkResult:
    plan: Plan
    original_steps: int
    shrunk_steps: int
    rounds: int
    attempts: int


def close_open_transactions(interactions: Sequence[Interaction]) -> List[Interaction]:
    """Append a Rollback for every transaction the surviving steps leave open."""

    has_conn: Dict[int, bool] = {}
    in_tx: Dict[int, bool] = {}
    for item in interactions:
        if item.expectation is not None and item.expectation.expects_error:
            continue
        task_id = item.task_id
        operation = item.operation
        if isinstance(operation, Checkout):
            has_conn[task_id] = True
        elif isinstance(operation, Return):
            has_conn[task_id] = False
            in_tx[task_id] = False
        elif isinstance(operation, Begin) and has_conn.get(task_id):
            in_tx[task_id] = True
        elif isinstance(operation, (Commit, Rollback)):
            in_tx[task_id] = False
        elif isinstance(operation, InjectFault) and operation.fault in {"io", "panic"}:
            has_conn[task_id] = False
            in_tx[task_id] = False
    repaired = list(interactions)
    for task_id in sorted(in_tx):
        if in_tx[task_id] and has_conn.get(task_id):
            repaired.append(Interaction(task_id=task_id, operation=Rollback()))
    return repaired


def dependent_steps(interactions: Sequence[Interaction]) -> Dict[int, List[int]]:
    """Map each opening step to the later steps that only make sense with it.

    A Checkout owns every connected step of its task up to the matching
    Return; a Begin owns the Commit or Rollback that ends it.
    """

    dependents: Dict[int, List[int]] = {}
    open_checkout: Dict[int, int] = {}
    open_begin: Dict[int, int] = {}
    for index, item in enumerate(interactions):
        task_id = item.task_id
        operation = item.operation
        session = open_checkout.get(task_id)
        if item.expectation is not None and item.expectation.expects_error:
            if session is not None:
                dependents[session].append(index)
            continue
        if isinstance(operation, Checkout):
            if session is None:
                open_checkout[task_id] = index
                dependents[index] = []
            else:
                dependents[session].append(index)
            continue
        if session is None or not isinstance(operation, CONNECTED_OPERATIONS):
            continue
        dependents[session].append(index)
        if isinstance(operation, Begin) and task_id not in open_begin:
            open_begin[task_id] = index
            dependents[index] = []
        elif isinstance(operation, (Commit, Rollback)) and task_id in open_begin:
            dependents[open_begin.pop(task_id)].append(index)
        elif isinstance(operation, Return):
            open_begin.pop(task_id, None)
            del open_checkout[task_id]
    return dependents


def removal_closure(removed: Iterable[int], dependents: Dict[int, List[int]]) -> Set[int]:
    closure: Set[int] = set()
    pending = list(removed)
    while pending:
        index = pending.pop()
        if index in closure:
            continue
        closure.add(index)
        pending.extend(dependents.get(index, ()))
    return closure


def remove_steps(interactions: Sequence[Interaction], start: int, stop: int) -> List[Interaction]:
    """Drop ``[start, stop)`` plus the steps orphaned by it, then close open transactions."""

    dropped = removal_closure(range(start, stop), dependent_steps(interactions))
    kept = [item for index, item in enumerate(interactions) if index not in dropped]
    return close_open_transactions(kept)


def shrink_with_report(
    plan: Plan,
    is_failing: Callable[[Plan], bool],
    max_rounds: int = DEFAULT_MAX_ROUNDS,
) -> ShrinkResult:
    """Remove ever smaller contiguous blocks while ``is_failing`` still holds.

    Granularity starts at two halves and doubles after a round with no
    accepted removal; any accepted removal resets it to two. Removing an
    opening step also removes the steps that depend on it, so either end of
    a Begin/Commit or Checkout/Return pair can go. A candidate is only tried
    when, after transaction repair, it is strictly shorter than the current
    plan.
    """

    original_steps = len(plan)
    current = list(plan.interactions)
    rounds = 0
    attempts = 0
    n = 2
    while rounds < max_rounds:
        total = len(current)
        if total <= 1:
            break
        chunk_size = -(-total // n)
        reduced = False
        for start in range(0, total, chunk_size):
            candidate = remove_steps(current, start, start + chunk_size)
            if not candidate or len(candidate) >= total:
                continue
            attempts += 1
            if is_failing(plan.with_interactions(candidate)):
                logger.debug("shrink round %d: %d -> %d steps", rounds + 1, total, len(candidate))
                current = candidate
                n = 2
                reduced = True
                break
        rounds += 1
        if reduced:
            continue
        if n >= total:
            break
        n = min(n * 2, total)
    logger.info(
        "shrunk plan from %d to %d steps in %d rounds (%d attempts)", original_steps, len(current), rounds, attempts
    )
    return ShrinkResult(
        plan=plan.with_interactions(current),
        original_steps=original_steps,
        shrunk_steps=len(current),
        rounds=rounds,
        attempts=attempts,
    )


def shrink(plan: Plan, is_failing: Callable[[Plan], bool], max_rounds: int = DEFAULT_MAX_ROUNDS) -> Plan:
    return shrink_with_report(plan, is_failing, max_rounds).plan
