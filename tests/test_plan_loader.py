from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest

from poolsim.errors import PlanFormatError
from poolsim.plan import (
    Begin,
    Checkout,
    Commit,
    ErrorClass,
    ErrorExpectation,
    Execute,
    Expectation,
    InjectFault,
    Interaction,
    Plan,
    Query,
    Return,
    Sleep,
    WorkloadConfig,
    dump_plan,
    load_plan,
    plan_digest,
    plan_from_dict,
    plan_to_dict,
)


def _write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


def _sample_plan() -> Plan:
    return Plan(
        interactions=(
            Interaction(0, Checkout()),
            Interaction(0, Execute(sql="CREATE TABLE IF NOT EXISTS t (id INTEGER, value TEXT);")),
            Interaction(0, Begin()),
            Interaction(0, Execute(sql="INSERT INTO t (id, value) VALUES (?, ?);", params=(1, "a"))),
            Interaction(0, Commit()),
            Interaction(1, Sleep(ms=7)),
            Interaction(1, Checkout(), Expectation(error=ErrorExpectation(error_class=ErrorClass.POOL_TIMEOUT))),
            Interaction(0, InjectFault(fault="busy")),
            Interaction(0, Query(sql="SELECT id FROM t;"), Expectation(row_count=1, column_count=1)),
            Interaction(0, Return()),
        ),
        seed=11,
        config=WorkloadConfig(pool_size=1, tasks=2, steps=10),
    )


def test_dump_and_load_preserve_plan(tmp_path: Path) -> None:
    plan = _sample_plan()
    path = dump_plan(plan, tmp_path / "nested" / "plan.json")

    loaded = load_plan(path)

    assert loaded == plan
    assert plan_digest(loaded) == plan_digest(plan)
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["format_version"] == 1
    assert raw["interactions"][6]["expectation"] == {"error": {"class": "pool_timeout"}}


def test_yaml_plan_is_accepted(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "plan.yaml",
        """
        seed: 3
        config: {pool_size: 2, tasks: 2}
        interactions:
          - {task_id: 0, operation: {type: checkout}}
          - task_id: 0
            operation: {type: query, sql: "SELECT 1;"}
            expectation: {row_count: 1}
          - {task_id: 0, operation: {type: return}}
        """,
    )

    plan = load_plan(path)

    assert plan.seed == 3
    assert plan.config.pool_size == 2
    assert plan.interactions[1].operation == Query(sql="SELECT 1;")
    assert plan.interactions[1].expectation == Expectation(row_count=1)


def test_schema_missing_task_id(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "plan.json",
        """
        {"interactions": [{"operation": {"type": "checkout"}}]}
        """,
    )
    with pytest.raises(PlanFormatError) as exc:
        load_plan(path)
    assert "Plan schema validation failed" in str(exc.value)
    assert "task_id" in str(exc.value)


def test_schema_rejects_unknown_operation() -> None:
    with pytest.raises(PlanFormatError) as exc:
        plan_from_dict({"interactions": [{"task_id": 0, "operation": {"type": "teleport"}}]})
    assert "teleport" in str(exc.value)


def test_execute_requires_sql() -> None:
    with pytest.raises(PlanFormatError) as exc:
        plan_from_dict({"interactions": [{"task_id": 0, "operation": {"type": "execute", "sql": "  "}}]})
    assert "cannot be empty" in str(exc.value)


def test_sleep_requires_ms() -> None:
    with pytest.raises(PlanFormatError) as exc:
        plan_from_dict({"interactions": [{"task_id": 0, "operation": {"type": "sleep"}}]})
    assert "'ms'" in str(exc.value)


def test_unknown_config_key_is_rejected() -> None:
    with pytest.raises(PlanFormatError) as exc:
        plan_from_dict({"config": {"pool_sise": 3}, "interactions": []})
    assert "pool_sise" in str(exc.value)


@pytest.mark.parametrize(
    "config, message",
    [
        ({"pool_size": 0}, "pool_size must be at least 1"),
        ({"busy_rate": 7.0}, "busy_rate must be within"),
        ({"tasks": 0}, "tasks must be at least 1"),
    ],
)
def test_out_of_range_config_is_rejected(config, message) -> None:
    with pytest.raises(PlanFormatError) as exc:
        plan_from_dict({"config": config, "interactions": []})
    assert message in str(exc.value)


def test_invalid_json_reports_path(tmp_path: Path) -> None:
    path = _write(tmp_path, "broken.json", "{not json")
    with pytest.raises(PlanFormatError) as exc:
        load_plan(path)
    assert "broken.json" in str(exc.value)


def test_digest_changes_with_content() -> None:
    plan = _sample_plan()
    shorter = plan.with_interactions(plan.interactions[:-1])
    assert plan_digest(plan) != plan_digest(shorter)
    assert plan_to_dict(shorter)["seed"] == 11
