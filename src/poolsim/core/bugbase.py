"""Write-once on-disk store of failing plans."""
from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import ValidationError, validate

from poolsim.errors import BugBaseError, PlanFormatError
from poolsim.plan.loader import load_plan, plan_to_dict
from poolsim.plan.models import Plan, WorkloadConfig

from .results import FailureRecord

logger = logging.getLogger(__name__)

PLAN_FILE = "plan.json"
CONFIG_FILE = "config.json"
FAILURE_FILE = "failure.json"
SHRUNK_PLAN_FILE = "shrunk_plan.json"
MAX_SUFFIX = 1000

FAILURE_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "poolsim failure record",
    "type": "object",
    "required": ["run_id", "timestamp", "kind", "check", "reason", "step", "seed", "config", "plan_digest"],
    "properties": {
        "run_id": {"type": "string"},
        "timestamp": {"type": "string"},
        "kind": {"type": "string"},
        "check": {"type": "string"},
        "reason": {"type": "string"},
        "step": {"type": ["integer", "null"]},
        "task_id": {"type": ["integer", "null"]},
        "operation": {"type": ["string", "null"]},
        "error_class": {"type": ["string", "null"]},
        "seed": {"type": ["integer", "null"]},
        "config": {"type": "object"},
        "backend": {"type": "string"},
        "plan_digest": {"type": "string"},
        "tail": {"type": "array", "items": {"type": "object"}},
        "details": {"type": "object"},
        "shrink": {
            "type": "object",
            "required": ["original_steps", "shrunk_steps", "rounds", "attempts"],
            "properties": {
                "original_steps": {"type": "integer"},
                "shrunk_steps": {"type": "integer"},
                "rounds": {"type": "integer"},
                "attempts": {"type": "integer"},
            },
        },
    },
}


@dataclass(frozen=True)
class BugBaseEntry:
    run_id: str
    path: Path
    plan: Plan
    config: WorkloadConfig
    failure: Mapping[str, Any]
    shrunk_plan: Optional[Plan] = None
    run_settings: Mapping[str, Any] = field(default_factory=dict)

    @property
    def replay_plan(self) -> Plan:
        return self.shrunk_plan or self.plan


class BugBase:
    """One directory per failure under ``root``; entries are never rewritten."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    def record(
        self,
        failure: FailureRecord,
        plan: Plan,
        config: WorkloadConfig,
        shrunk: Optional[Plan] = None,
        *,
        run_settings: Optional[Mapping[str, Any]] = None,
        shrink_report: Optional[Mapping[str, int]] = None,
    ) -> BugBaseEntry:
        now = dt.datetime.now(dt.timezone.utc)
        path = self._create_entry_dir(now, plan.seed)
        run_id = path.name
        failure_payload = failure.to_dict()
        failure_payload["run_id"] = run_id
        failure_payload["timestamp"] = now.isoformat(timespec="microseconds")
        if shrink_report:
            failure_payload["shrink"] = dict(shrink_report)
        try:
            validate(instance=failure_payload, schema=FAILURE_SCHEMA)
        except ValidationError as exc:
            raise BugBaseError(f"Failure record does not match schema: {exc.message}") from exc
        config_payload = {"workload": config.to_dict(), "run": dict(run_settings or {})}
        self._write(path / PLAN_FILE, plan_to_dict(plan))
        self._write(path / CONFIG_FILE, config_payload)
        self._write(path / FAILURE_FILE, failure_payload)
        if shrunk is not None:
            self._write(path / SHRUNK_PLAN_FILE, plan_to_dict(shrunk))
        logger.info("recorded failure %s in %s", run_id, path)
        return BugBaseEntry(
            run_id=run_id,
            path=path,
            plan=plan,
            config=config,
            failure=failure_payload,
            shrunk_plan=shrunk,
            run_settings=dict(run_settings or {}),
        )

    def _create_entry_dir(self, now: dt.datetime, seed: Optional[int]) -> Path:
        stamp = now.strftime("%Y%m%dT%H%M%S_%fZ")
        base = f"bug-{stamp}-seed{seed if seed is not None else 'none'}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BugBaseError(f"Cannot create bug base at {self.root}: {exc}") from exc
        for attempt in range(1, MAX_SUFFIX + 1):
            name = base if attempt == 1 else f"{base}-{attempt}"
            path = self.root / name
            try:
                path.mkdir()
            except FileExistsError:
                continue
            except OSError as exc:
                raise BugBaseError(f"Cannot create bug base entry {path}: {exc}") from exc
            return path
        raise BugBaseError(f"Could not allocate a unique entry name for {base}")

    def _write(self, path: Path, payload: Mapping[str, Any]) -> None:
        try:
            with path.open("x", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
        except FileExistsError as exc:
            raise BugBaseError(f"Refusing to overwrite existing bug base file {path}") from exc
        except OSError as exc:
            raise BugBaseError(f"Failed to write {path}: {exc}") from exc

    def entries(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(path for path in self.root.iterdir() if (path / PLAN_FILE).is_file())

    @staticmethod
    def load(path: str | Path) -> BugBaseEntry:
        entry_dir = Path(path).expanduser()
        if not (entry_dir / PLAN_FILE).is_file():
            raise BugBaseError(f"{entry_dir} is not a bug base entry (missing {PLAN_FILE})")
        try:
            plan = load_plan(entry_dir / PLAN_FILE)
            shrunk_path = entry_dir / SHRUNK_PLAN_FILE
            shrunk = load_plan(shrunk_path) if shrunk_path.is_file() else None
            config_raw = _read_json(entry_dir / CONFIG_FILE)
            failure = _read_json(entry_dir / FAILURE_FILE)
            config = WorkloadConfig.from_mapping(config_raw.get("workload"))
        except (PlanFormatError, ValueError, OSError) as exc:
            raise BugBaseError(f"Cannot load bug base entry {entry_dir}: {exc}") from exc
        return BugBaseEntry(
            run_id=entry_dir.name,
            path=entry_dir,
            plan=plan,
            config=config,
            failure=failure,
            shrunk_plan=shrunk,
            run_settings=config_raw.get("run") or {},
        )


def _read_json(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain a JSON object")
    return data
