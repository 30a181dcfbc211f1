from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from poolsim.config import RunOptions, RunSettings, build_run_settings
from poolsim.core.bugbase import BugBase
from poolsim.core.session import SimulationSession, replay_entry
from poolsim.errors import ConfigError
from poolsim.plan.loader import dump_plan, load_plan
from poolsim.plan.models import (
    Checkout,
    Execute,
    Expectation,
    Interaction,
    Plan,
    Query,
    Return,
    Sleep,
    WorkloadConfig,
)

FAILING_PLAN = Plan(
    interactions=(
        Interaction(0, Checkout()),
        Interaction(0, Execute(sql="CREATE TABLE IF NOT EXISTS sim_session (id INTEGER);")),
        Interaction(1, Checkout()),
        Interaction(0, Execute(sql="INSERT INTO sim_session (id) VALUES (1);")),
        Interaction(2, Sleep(ms=2)),
        Interaction(1, Query(sql="SELECT id FROM sim_session;"), Expectation(row_count=2)),
        Interaction(0, Return()),
        Interaction(1, Return()),
    ),
    seed=31,
    config=WorkloadConfig(pool_size=2, tasks=3),
)


class RecordingReporter:
    def __init__(self) -> None:
        self.calls = []

    def start(self, settings, plan) -> None:
        self.calls.append(("start", len(plan)))

    def complete(self, result) -> None:
        self.calls.append(("complete", result.passed))


def _failing_settings(tmp_path: Path, **overrides) -> RunSettings:
    plan_path = dump_plan(FAILING_PLAN, tmp_path / "failing.json")
    options = dict(plan_path=str(plan_path), seed=FAILING_PLAN.seed, bugbase=str(tmp_path / "bugs"))
    options.update(overrides)
    return build_run_settings(RunOptions(**options))


def test_property_session_passes() -> None:
    reporter = RecordingReporter()
    settings = build_run_settings(RunOptions(property_name="tx-commit-visible", seed=1))
    result = SimulationSession(settings, reporter=reporter).run()
    assert result.passed
    assert result.exit_code == 0
    assert result.entry is None
    assert result.shrink is None
    assert reporter.calls == [("start", len(result.plan)), ("complete", True)]


def test_generated_session_passes_in_doublecheck_mode() -> None:
    settings = build_run_settings(
        RunOptions(seed=4, doublecheck=True, workload={"steps": 200, "tasks": 4, "pool_size": 2})
    )
    result = SimulationSession(settings).run()
    assert result.passed, result.outcome.failure
    assert len(result.outcome.runs) == 2


def test_failing_session_shrinks_and_records(tmp_path: Path) -> None:
    settings = _failing_settings(tmp_path, dump_plan_on_failure=str(tmp_path / "dump" / "plan.json"))
    result = SimulationSession(settings).run()

    assert not result.passed
    assert result.exit_code == 1
    assert result.outcome.failure.check == "row_count"
    assert result.shrink is not None
    assert result.shrink.shrunk_steps < len(FAILING_PLAN)
    assert load_plan(result.dumped_plan) == FAILING_PLAN
    assert result.entry is not None
    assert BugBase(tmp_path / "bugs").entries() == [result.entry.path]


@pytest.mark.parametrize("use_shrunk", [False, True])
def test_replay_reproduces_recorded_failure(tmp_path: Path, use_shrunk: bool) -> None:
    result = SimulationSession(_failing_settings(tmp_path)).run()
    entry = BugBase.load(result.entry.path)

    replay = replay_entry(entry, use_shrunk=use_shrunk)

    assert replay.reproduced
    assert replay.shrunk is use_shrunk
    assert replay.exit_code == 1
    expected_plan = entry.shrunk_plan if use_shrunk else FAILING_PLAN
    assert replay.plan == expected_plan


def test_replay_of_fixed_failure_is_not_reproduced(tmp_path: Path) -> None:
    result = SimulationSession(_failing_settings(tmp_path, shrink=False)).run()
    entry = BugBase.load(result.entry.path)
    assert entry.shrunk_plan is None
    entry = replace(entry, failure={**entry.failure, "check": "column_count"})

    replay = replay_entry(entry)

    assert not replay.reproduced
    assert replay.exit_code == 1


def test_stored_plan_cannot_be_combined_with_property(tmp_path: Path) -> None:
    settings = RunSettings(seed=1, plan_path=str(tmp_path / "plan.json"), property_name="tx-commit-visible")
    with pytest.raises(ConfigError):
        SimulationSession(settings).build_plan()


def test_unknown_backend_is_a_config_error() -> None:
    settings = RunSettings(seed=1, backend="postgres")
    with pytest.raises(ConfigError):
        SimulationSession(settings).executor()


def test_example_plan_passes() -> None:
    example = Path(__file__).resolve().parents[1] / "examples" / "plans" / "commit_visible.yaml"
    settings = build_run_settings(RunOptions(plan_path=str(example), seed=1))
    result = SimulationSession(settings).run()
    assert result.passed, result.outcome.failure
    assert len(result.plan) == 10
