"""Run settings combining CLI options with an optional YAML config file."""
from __future__ import annotations

import pathlib
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

from poolsim.core.modes import ResetConfig, RunnerOptions
from poolsim.core.runner import DEFAULT_MAX_RETRIES, RETURN_POLICIES
from poolsim.core.shrinker import DEFAULT_MAX_ROUNDS
from poolsim.errors import ConfigError
from poolsim.plan.models import WorkloadConfig

REPORT_FORMATS = ("terminal", "json")
_TOP_LEVEL_KEYS = {
    "backend",
    "seed",
    "workload",
    "differential_backend",
    "doublecheck",
    "reset",
    "shrink",
    "bugbase",
    "dump_plan_on_failure",
    "runner",
    "report",
}


@dataclass(frozen=True)
class RunOptions:
    """Values given on the command line; None means "not given"."""

    config_path: Optional[str] = None
    plan_path: Optional[str] = None
    generate: bool = False
    property_name: Optional[str] = None
    seed: Optional[int] = None
    workload: Mapping[str, Any] = field(default_factory=dict)
    backend: Optional[str] = None
    differential_backend: Optional[str] = None
    doublecheck: Optional[bool] = None
    doublecheck_runs: Optional[int] = None
    reset_tables: Sequence[str] = field(default_factory=tuple)
    reset_mode: Optional[str] = None
    shrink: Optional[bool] = None
    max_shrink_rounds: Optional[int] = None
    bugbase: Optional[str] = None
    dump_plan_on_failure: Optional[str] = None
    max_retries: Optional[int] = None
    return_policy: Optional[str] = None
    timeout_s: Optional[float] = None
    report_format: Optional[str] = None
    report_path: Optional[str] = None
    color: Optional[bool] = None


@dataclass(frozen=True)
class RunSettings:
    """Fully resolved settings for one session."""

    seed: int
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    plan_path: Optional[str] = None
    generate: bool = False
    property_name: Optional[str] = None
    backend: str = "sqlite"
    differential_backend: Optional[str] = None
    doublecheck: bool = False
    doublecheck_runs: int = 2
    reset: ResetConfig = field(default_factory=ResetConfig)
    shrink: bool = True
    max_shrink_rounds: int = DEFAULT_MAX_ROUNDS
    bugbase: Optional[str] = None
    dump_plan_on_failure: Optional[str] = None
    runner: RunnerOptions = field(default_factory=RunnerOptions)
    report_format: str = "terminal"
    report_path: Optional[str] = None
    color: bool = True

    @property
    def mode(self) -> str:
        if self.differential_backend:
            return "differential"
        if self.doublecheck:
            return "doublecheck"
        return "single"

    def replay_settings(self) -> Dict[str, Any]:
        """The subset stored next to a failure so a replay runs the same way."""

        return {
            "backend": self.backend,
            "mode": self.mode,
            "differential_backend": self.differential_backend,
            "doublecheck_runs": self.doublecheck_runs,
            "reset": {"tables": list(self.reset.tables), "mode": self.reset.mode},
            "max_retries": self.runner.max_retries,
            "return_policy": self.runner.return_policy,
        }


def build_run_settings(options: RunOptions) -> RunSettings:
    """CLI values win over the config file, which wins over defaults."""

    raw = _load_yaml(options.config_path)
    unknown = sorted(set(raw) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
    workload_raw = dict(_section(raw, "workload"))
    workload_raw.update({k: v for k, v in options.workload.items() if v is not None})
    if options.property_name:
        workload_raw["property"] = options.property_name
    workload = WorkloadConfig.from_mapping(workload_raw).validate()

    seed = options.seed if options.seed is not None else raw.get("seed")
    seed_value = _int(seed, "seed") if seed is not None else default_seed()
    if seed_value < 0:
        raise ConfigError("seed must be non-negative")

    doublecheck_raw = raw.get("doublecheck")
    if isinstance(doublecheck_raw, Mapping):
        file_doublecheck = bool(doublecheck_raw.get("enabled", True))
        file_runs = doublecheck_raw.get("runs")
    else:
        file_doublecheck = bool(doublecheck_raw)
        file_runs = None
    doublecheck = options.doublecheck if options.doublecheck is not None else file_doublecheck
    doublecheck_runs = _int(_first(options.doublecheck_runs, file_runs, 2), "doublecheck.runs")
    differential = options.differential_backend or raw.get("differential_backend")
    if differential and doublecheck:
        raise ConfigError("Choose either a differential backend or doublecheck, not both")
    if doublecheck and doublecheck_runs < 2:
        raise ConfigError("doublecheck.runs must be at least 2")

    reset_raw = _section(raw, "reset")
    tables = tuple(options.reset_tables) or tuple(str(t) for t in reset_raw.get("tables", []) or [])
    reset = ResetConfig(tables=tables, mode=str(_first(options.reset_mode, reset_raw.get("mode"), "recreate")))

    shrink_raw = raw.get("shrink")
    if isinstance(shrink_raw, Mapping):
        file_shrink = bool(shrink_raw.get("enabled", True))
        file_rounds = shrink_raw.get("max_rounds")
    else:
        file_shrink = True if shrink_raw is None else bool(shrink_raw)
        file_rounds = None
    shrink = options.shrink if options.shrink is not None else file_shrink
    max_rounds = _int(_first(options.max_shrink_rounds, file_rounds, DEFAULT_MAX_ROUNDS), "shrink.max_rounds")

    runner_raw = _section(raw, "runner")
    return_policy = str(_first(options.return_policy, runner_raw.get("return_policy"), "fatal"))
    if return_policy not in RETURN_POLICIES:
        raise ConfigError(f"return_policy must be one of {', '.join(RETURN_POLICIES)}")
    max_retries = _int(_first(options.max_retries, runner_raw.get("max_retries"), DEFAULT_MAX_RETRIES), "max_retries")
    if max_retries < 0:
        raise ConfigError("max_retries cannot be negative")
    timeout = _first(options.timeout_s, runner_raw.get("timeout"))
    runner = RunnerOptions(
        max_retries=max_retries,
        return_policy=return_policy,
        timeout_s=float(timeout) if timeout is not None else None,
    )

    report_raw = _section(raw, "report")
    report_format = str(_first(options.report_format, report_raw.get("format"), "terminal"))
    if report_format not in REPORT_FORMATS:
        raise ConfigError(f"report format must be one of {', '.join(REPORT_FORMATS)}")
    color = options.color if options.color is not None else bool(report_raw.get("color", True))

    return RunSettings(
        seed=seed_value,
        workload=workload,
        plan_path=options.plan_path,
        generate=options.generate,
        property_name=workload.property,
        backend=str(_first(options.backend, raw.get("backend"), "sqlite")),
        differential_backend=differential,
        doublecheck=bool(doublecheck),
        doublecheck_runs=doublecheck_runs,
        reset=reset,
        shrink=bool(shrink),
        max_shrink_rounds=max_rounds,
        bugbase=options.bugbase or raw.get("bugbase"),
        dump_plan_on_failure=options.dump_plan_on_failure or raw.get("dump_plan_on_failure"),
        runner=runner,
        report_format=report_format,
        report_path=options.report_path or report_raw.get("path"),
        color=color,
    )


def default_seed() -> int:
    return time.time_ns() % (2**63)


def _load_yaml(path: Optional[str]) -> Mapping[str, Any]:
    if not path:
        return {}
    try:
        text = pathlib.Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Config file must contain a mapping at the top level")
    return data


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{name}' must be an integer, got {value!r}") from exc
