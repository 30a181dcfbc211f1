"""Plan file codec (JSON, YAML accepted on load) with schema validation."""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from jsonschema import Draft7Validator

from poolsim.errors import ConfigError, PlanFormatError

from .models import (
    OPERATION_TYPES,
    FAULT_KINDS,
    ErrorClass,
    ErrorExpectation,
    Execute,
    Expectation,
    InjectFault,
    Interaction,
    Operation,
    Plan,
    Query,
    Sleep,
    WorkloadConfig,
)

FORMAT_VERSION = 1

_SCALAR = {"type": ["string", "integer", "number", "boolean", "null"]}

PLAN_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "poolsim plan",
    "type": "object",
    "required": ["interactions"],
    "properties": {
        "format_version": {"type": "integer", "enum": [FORMAT_VERSION]},
        "seed": {"type": ["integer", "null"], "minimum": 0},
        "config": {"type": "object"},
        "interactions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["task_id", "operation"],
                "additionalProperties": False,
                "properties": {
                    "task_id": {"type": "integer", "minimum": 0},
                    "operation": {
                        "type": "object",
                        "required": ["type"],
                        "additionalProperties": False,
                        "properties": {
                            "type": {"type": "string", "enum": sorted(OPERATION_TYPES)},
                            "sql": {"type": "string"},
                            "params": {"type": "array", "items": _SCALAR},
                            "ms": {"type": "integer", "minimum": 0},
                            "fault": {"type": "string", "enum": list(FAULT_KINDS)},
                        },
                    },
                    "expectation": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "row_count": {"type": "integer", "minimum": 0},
                            "column_count": {"type": "integer", "minimum": 0},
                            "min_rows": {"type": "integer", "minimum": 0},
                            "max_rows": {"type": "integer", "minimum": 0},
                            "error": {
                                "type": "object",
                                "additionalProperties": False,
                                "properties": {
                                    "class": {"type": "string", "enum": [item.value for item in ErrorClass]},
                                    "contains": {"type": "string"},
                                },
                            },
                        },
                    },
                },
            },
        },
    },
}

_validator = Draft7Validator(PLAN_SCHEMA)


def load_plan(path: str | Path) -> Plan:
    """Load and validate a stored plan."""

    plan_path = Path(path).expanduser()
    try:
        text = plan_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanFormatError(f"Cannot read plan file {plan_path}: {exc}") from exc
    if plan_path.suffix.lower() in {".yaml", ".yml"}:
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise PlanFormatError(f"Plan file {plan_path} is not valid YAML: {exc}") from exc
    else:
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PlanFormatError(f"Plan file {plan_path} is not valid JSON: {exc}") from exc
    return plan_from_dict(raw)


def dump_plan(plan: Plan, path: str | Path) -> Path:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(plan_to_dict(plan), indent=2) + "\n", encoding="utf-8")
    return target


def plan_digest(plan: Plan) -> str:
    """Stable content hash used to tie failures back to the plan they came from."""

    canonical = json.dumps(plan_to_dict(plan), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def plan_from_dict(raw: Any) -> Plan:
    if not isinstance(raw, Mapping):
        raise PlanFormatError("Plan file must contain a mapping at the top level")
    errors = sorted(_validator.iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        messages = "; ".join(f"{'/'.join(map(str, err.path)) or 'root'}: {err.message}" for err in errors)
        raise PlanFormatError(f"Plan schema validation failed: {messages}")
    try:
        config = WorkloadConfig.from_mapping(raw.get("config")).validate()
    except ConfigError as exc:
        raise PlanFormatError(f"Invalid plan config: {exc}") from exc
    interactions = tuple(_parse_interaction(entry, index) for index, entry in enumerate(raw["interactions"]))
    seed = raw.get("seed")
    return Plan(interactions=interactions, seed=int(seed) if seed is not None else None, config=config)


def plan_to_dict(plan: Plan) -> Dict[str, Any]:
    return {
        "format_version": FORMAT_VERSION,
        "seed": plan.seed,
        "config": plan.config.to_dict(),
        "interactions": [interaction_to_dict(item) for item in plan.interactions],
    }


def interaction_to_dict(interaction: Interaction) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "task_id": interaction.task_id,
        "operation": operation_to_dict(interaction.operation),
    }
    if interaction.expectation is not None:
        record["expectation"] = _expectation_to_dict(interaction.expectation)
    return record


def operation_to_dict(operation: Operation) -> Dict[str, Any]:
    record: Dict[str, Any] = {"type": operation.kind}
    if isinstance(operation, (Execute, Query)):
        record["sql"] = operation.sql
        if operation.params:
            record["params"] = list(operation.params)
    elif isinstance(operation, Sleep):
        record["ms"] = operation.ms
    elif isinstance(operation, InjectFault):
        record["fault"] = operation.fault
    return record


def _expectation_to_dict(expectation: Expectation) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for key in ("row_count", "column_count", "min_rows", "max_rows"):
        value = getattr(expectation, key)
        if value is not None:
            record[key] = value
    if expectation.error is not None:
        error: Dict[str, Any] = {}
        if expectation.error.error_class is not None:
            error["class"] = expectation.error.error_class.value
        if expectation.error.contains:
            error["contains"] = expectation.error.contains
        record["error"] = error
    return record


def _parse_interaction(raw: Mapping[str, Any], index: int) -> Interaction:
    operation = _parse_operation(raw["operation"], index)
    expectation = _parse_expectation(raw.get("expectation"))
    return Interaction(task_id=int(raw["task_id"]), operation=operation, expectation=expectation)


def _parse_operation(raw: Mapping[str, Any], index: int) -> Operation:
    kind = raw["type"]
    cls = OPERATION_TYPES[kind]
    if cls in (Execute, Query):
        sql = _require_str(raw, "sql", index)
        return cls(sql=sql, params=tuple(raw.get("params") or ()))
    if cls is Sleep:
        if "ms" not in raw:
            raise PlanFormatError(f"interactions/{index}: sleep requires 'ms'")
        return Sleep(ms=int(raw["ms"]))
    if cls is InjectFault:
        return InjectFault(fault=_require_str(raw, "fault", index))
    extra = sorted(set(raw) - {"type"})
    if extra:
        raise PlanFormatError(f"interactions/{index}: '{kind}' takes no fields, got {', '.join(extra)}")
    return cls()


def _parse_expectation(raw: Optional[Mapping[str, Any]]) -> Optional[Expectation]:
    if raw is None:
        return None
    error = None
    error_raw = raw.get("error")
    if error_raw is not None:
        error_class = error_raw.get("class")
        error = ErrorExpectation(
            error_class=ErrorClass(error_class) if error_class else None,
            contains=error_raw.get("contains"),
        )
    return Expectation(
        row_count=raw.get("row_count"),
        column_count=raw.get("column_count"),
        min_rows=raw.get("min_rows"),
        max_rows=raw.get("max_rows"),
        error=error,
    )


def _require_str(raw: Mapping[str, Any], key: str, index: int) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise PlanFormatError(f"interactions/{index}: missing required string field '{key}'")
    if not value.strip():
        raise PlanFormatError(f"interactions/{index}: field '{key}' cannot be empty")
    return value
