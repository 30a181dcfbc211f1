"""JSON reporter emitting a schema-validated session report."""
from __future__ import annotations

import datetime as dt
import json
import pathlib
from typing import TYPE_CHECKING, Any, Dict, Optional

import click
from jsonschema import validate

from poolsim.plan.loader import plan_digest
from poolsim.plan.models import Plan

from .base import Reporter

if TYPE_CHECKING:
    from poolsim.config import RunSettings
    from poolsim.core.session import SessionResult

SCHEMA_VERSION = "1.0.0"

REPORT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "poolsim report",
    "type": "object",
    "required": ["schema_version", "generated_at", "summary", "runs", "failure"],
    "properties": {
        "schema_version": {"type": "string"},
        "generated_at": {"type": "string", "format": "date-time"},
        "summary": {
            "type": "object",
            "required": ["passed", "exit_code", "seed", "backend", "mode", "steps", "plan_digest", "duration_s"],
            "properties": {
                "passed": {"type": "boolean"},
                "exit_code": {"type": "integer"},
                "seed": {"type": ["integer", "null"]},
                "backend": {"type": "string"},
                "differential_backend": {"type": ["string", "null"]},
                "mode": {"enum": ["single", "differential", "doublecheck"]},
                "property": {"type": ["string", "null"]},
                "steps": {"type": "integer"},
                "plan_digest": {"type": "string"},
                "duration_s": {"type": "number"},
            },
        },
        "runs": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["label", "backend", "passed", "steps_executed", "duration_s"],
                "properties": {
                    "label": {"type": "string"},
                    "backend": {"type": "string"},
                    "passed": {"type": "boolean"},
                    "steps_executed": {"type": "integer"},
                    "duration_s": {"type": "number"},
                },
            },
        },
        "failure": {"type": ["object", "null"]},
        "shrink": {
            "type": ["object", "null"],
            "properties": {
                "original_steps": {"type": "integer"},
                "shrunk_steps": {"type": "integer"},
                "rounds": {"type": "integer"},
                "attempts": {"type": "integer"},
            },
        },
        "bugbase_entry": {"type": ["string", "null"]},
        "dumped_plan": {"type": ["string", "null"]},
    },
}


class JsonReporter(Reporter):
    """Writes the session report to ``path``, or to stdout when no path is given."""

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = pathlib.Path(path) if path else None

    def on_start(self, settings: "RunSettings", plan: Plan) -> None:
        return None

    def on_complete(self, result: "SessionResult") -> None:
        payload = build_report(result)
        validate(instance=payload, schema=REPORT_SCHEMA)
        text = json.dumps(payload, indent=2)
        if self._path is None:
            click.echo(text)
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(text + "\n", encoding="utf-8")
        except OSError as exc:  # pragma: no cover - filesystem protection
            raise RuntimeError(f"Failed to write JSON report to {self._path}: {exc}") from exc
        click.echo(f"JSON report written to {self._path}")


def build_report(result: "SessionResult") -> Dict[str, Any]:
    settings = result.settings
    plan = result.plan
    failure = result.outcome.failure
    shrink = result.shrink
    return {
        "schema_version": SCHEMA_VERSION,
        "generated_at": dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds"),
        "summary": {
            "passed": result.passed,
            "exit_code": result.exit_code,
            "seed": plan.seed,
            "backend": settings.backend,
            "differential_backend": settings.differential_backend,
            "mode": settings.mode,
            "property": plan.config.property,
            "steps": len(plan),
            "plan_digest": plan_digest(plan),
            "duration_s": result.duration_s,
        },
        "runs": [
            {
                "label": run.label,
                "backend": run.backend,
                "passed": run.passed,
                "steps_executed": run.steps_executed,
                "duration_s": run.duration_s,
            }
            for run in result.outcome.runs
        ],
        "failure": failure.to_dict() if failure is not None else None,
        "shrink": (
            {
                "original_steps": shrink.original_steps,
                "shrunk_steps": shrink.shrunk_steps,
                "rounds": shrink.rounds,
                "attempts": shrink.attempts,
            }
            if shrink is not None
            else None
        ),
        "bugbase_entry": str(result.entry.path) if result.entry is not None else None,
        "dumped_plan": str(result.dumped_plan) if result.dumped_plan is not None else None,
    }
