from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from poolsim import __version__
from poolsim.cli.main import cli, main
from poolsim.plan.loader import dump_plan, load_plan
from poolsim.plan.models import Checkout, Expectation, Interaction, Plan, Query, Return, WorkloadConfig


def _failing_plan(tmp_path: Path) -> Path:
    plan = Plan(
        interactions=(
            Interaction(0, Checkout()),
            Interaction(1, Checkout()),
            Interaction(1, Query(sql="SELECT 1;"), Expectation(row_count=3)),
            Interaction(1, Return()),
            Interaction(0, Return()),
        ),
        seed=12,
        config=WorkloadConfig(pool_size=2, tasks=2),
    )
    return dump_plan(plan, tmp_path / "failing.json")


def test_cli_help_short_flag() -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["-h"])
    assert result.exit_code == 0
    assert "Usage:" in result.output
    for command in ("run", "generate", "replay", "list"):
        assert command in result.output


def test_cli_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert result.output.strip() == f"poolsim {__version__}"


def test_cli_list_shows_properties_and_backends(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["list", "--bugbase", str(tmp_path / "bugs")])
    assert result.exit_code == 0, result.output
    assert "tx-commit-visible" in result.output
    assert "retry-after-busy" in result.output
    assert "sqlite-nullpool" in result.output
    assert "Bug base entries (0):" in result.output


def test_cli_run_property_passes() -> None:
    result = CliRunner().invoke(cli, ["run", "--property", "tx-commit-visible", "--seed", "1", "--no-color"])
    assert result.exit_code == 0, result.output
    assert "PASS" in result.output
    assert "Summary: PASS" in result.output


def test_cli_run_generated_plan_passes() -> None:
    result = CliRunner().invoke(
        cli,
        ["run", "--generate", "--seed", "4", "--steps", "200", "--tasks", "4", "--pool-size", "2", "--no-color"],
    )
    assert result.exit_code == 0, result.output
    assert "seed=4 " in result.output


def test_cli_generate_writes_plan(tmp_path: Path) -> None:
    out = tmp_path / "plans" / "gen.json"
    result = CliRunner().invoke(cli, ["generate", "--seed", "5", "--steps", "40", "--tasks", "3", "--out", str(out)])
    assert result.exit_code == 0, result.output
    plan = load_plan(out)
    assert plan.seed == 5
    assert 0 < len(plan) <= 40
    assert f"Wrote {len(plan)} step(s) seed=5" in result.output


def test_cli_run_failure_records_and_replays(tmp_path: Path) -> None:
    bugs = tmp_path / "bugs"
    runner = CliRunner()
    result = runner.invoke(
        cli, ["run", "--plan", str(_failing_plan(tmp_path)), "--bugbase", str(bugs), "--no-color"]
    )
    assert result.exit_code == 1, result.output
    assert "Failure: assertion/row_count" in result.output
    assert "replay with: poolsim replay" in result.output

    entries = sorted(path for path in bugs.iterdir() if path.is_dir())
    assert len(entries) == 1
    for extra in ([], ["--shrunk"]):
        replayed = runner.invoke(cli, ["replay", str(entries[0]), "--no-color", *extra])
        assert replayed.exit_code == 1, replayed.output
        assert "reproduced: assertion/row_count" in replayed.output


def test_cli_run_json_report(tmp_path: Path) -> None:
    report_path = tmp_path / "report.json"
    result = CliRunner().invoke(
        cli,
        [
            "run",
            "--plan",
            str(_failing_plan(tmp_path)),
            "--no-shrink",
            "--report",
            "json",
            "--report-path",
            str(report_path),
            "--no-color",
        ],
    )
    assert result.exit_code == 1, result.output
    assert f"JSON report written to {report_path}" in result.output
    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["schema_version"] == "1.0.0"
    assert report["summary"]["passed"] is False
    assert report["summary"]["seed"] == 12
    assert report["failure"]["check"] == "row_count"
    assert report["shrink"] is None
    assert report["bugbase_entry"] is None


def test_cli_rejects_conflicting_shrink_flags(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--plan", str(_failing_plan(tmp_path)), "--shrink", "--no-shrink"])
    assert result.exit_code == 2
    assert "mutually exclusive" in result.output


def test_cli_reports_config_errors(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--backend", "postgres", "--seed", "1", "--steps", "10"])
    assert result.exit_code == 1
    assert "Error:" in result.output
    assert "postgres" in result.output


def test_main_entry_point_runs_property(capsys) -> None:
    assert main(["run", "--property", "tx-rollback-invisible", "--seed", "2", "--no-color"]) == 0
    assert "Summary: PASS" in capsys.readouterr().out


def test_cli_rejects_stored_plan_with_bad_config(tmp_path: Path) -> None:
    plan_path = tmp_path / "bad.json"
    plan_path.write_text(
        json.dumps(
            {
                "config": {"pool_size": 0, "busy_rate": 7.0},
                "interactions": [{"task_id": 0, "operation": {"type": "checkout"}}],
            }
        ),
        encoding="utf-8",
    )
    result = CliRunner().invoke(cli, ["run", "--plan", str(plan_path), "--no-color"])
    assert result.exit_code == 1
    assert "pool_size must be at least 1" in result.output
    assert "checkout -> ok" not in result.output
