"""Session orchestration: build a plan, run it in a mode, shrink and record failures."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from poolsim.backends.base import BackendManager, backend_manager
from poolsim.config import RunSettings
from poolsim.errors import ConfigError
from poolsim.generators import generate
from poolsim.plan.loader import dump_plan, load_plan
from poolsim.plan.models import Plan
from poolsim.plan.properties import build_property_plan

from .bugbase import BugBase, BugBaseEntry
from .modes import Executor, ModeResult, ResetConfig, RunnerOptions
from .shrinker import ShrinkResult, shrink_with_report

logger = logging.getLogger(__name__)


@dataclass
class SessionResult:
    settings: RunSettings
    plan: Plan
    outcome: ModeResult
    shrink: Optional[ShrinkResult] = None
    entry: Optional[BugBaseEntry] = None
    dumped_plan: Optional[Path] = None
    duration_s: float = 0.0

    @property
    def passed(self) -> bool:
        return self.outcome.passed

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1


@dataclass
class ReplayResult:
    entry: BugBaseEntry
    plan: Plan
    outcome: ModeResult
    reproduced: bool
    shrunk: bool = False

    @property
    def passed(self) -> bool:
        return self.outcome.passed

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1


def build_executor(
    manager: BackendManager,
    *,
    backend: str,
    mode: str = "single",
    differential_backend: Optional[str] = None,
    doublecheck_runs: int = 2,
    reset: ResetConfig = ResetConfig(),
    runner: RunnerOptions = RunnerOptions(),
    should_stop: Optional[Callable[[], bool]] = None,
) -> Executor:
    try:
        primary = manager.factory(backend)
        secondary = manager.factory(differential_backend) if differential_backend else None
    except KeyError as exc:
        raise ConfigError(str(exc.args[0])) from exc
    return Executor(
        primary,
        mode=mode,
        secondary=secondary,
        doublecheck_runs=doublecheck_runs,
        options=runner,
        reset=reset,
        should_stop=should_stop,
    )


class SimulationSession:
    """Drives one ``poolsim run`` from resolved settings to a verdict."""

    def __init__(
        self,
        settings: RunSettings,
        manager: BackendManager = backend_manager,
        *,
        reporter: Any = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.settings = settings
        self.manager = manager
        self.reporter = reporter
        self.should_stop = should_stop

    def build_plan(self) -> Plan:
        settings = self.settings
        if settings.plan_path:
            if settings.generate or settings.property_name:
                raise ConfigError("A stored plan cannot be combined with --generate or --property")
            return load_plan(settings.plan_path)
        if settings.property_name and not settings.generate:
            return build_property_plan(settings.property_name, settings.seed, settings.workload)
        return generate(settings.seed, settings.workload, settings.property_name)

    def executor(self) -> Executor:
        settings = self.settings
        return build_executor(
            self.manager,
            backend=settings.backend,
            mode=settings.mode,
            differential_backend=settings.differential_backend,
            doublecheck_runs=settings.doublecheck_runs,
            reset=settings.reset,
            runner=settings.runner,
            should_stop=self.should_stop,
        )

    def run(self, plan: Optional[Plan] = None) -> SessionResult:
        settings = self.settings
        started = time.perf_counter()
        plan = plan if plan is not None else self.build_plan()
        executor = self.executor()
        if self.reporter is not None:
            self.reporter.start(settings, plan)
        logger.info(
            "running %d step(s) seed=%s backend=%s mode=%s", len(plan), plan.seed, settings.backend, settings.mode
        )
        outcome = executor.run(plan)
        result = SessionResult(settings=settings, plan=plan, outcome=outcome)
        failure = outcome.failure
        if failure is not None and failure.kind != "aborted":
            if settings.shrink:
                result.shrink = shrink_with_report(
                    plan, executor.failure_predicate(failure), settings.max_shrink_rounds
                )
            if settings.dump_plan_on_failure:
                result.dumped_plan = dump_plan(plan, settings.dump_plan_on_failure)
                logger.info("failing plan written to %s", result.dumped_plan)
            if settings.bugbase:
                shrink = result.shrink
                result.entry = BugBase(settings.bugbase).record(
                    failure,
                    plan,
                    plan.config,
                    shrink.plan if shrink is not None else None,
                    run_settings=settings.replay_settings(),
                    shrink_report=_shrink_report(shrink),
                )
        result.duration_s = time.perf_counter() - started
        if self.reporter is not None:
            self.reporter.complete(result)
        return result


def replay_entry(
    entry: BugBaseEntry,
    *,
    use_shrunk: bool = False,
    manager: BackendManager = backend_manager,
    should_stop: Optional[Callable[[], bool]] = None,
) -> ReplayResult:
    """Re-run a stored failure the way it was originally run."""

    stored = entry.run_settings
    reset_raw: Mapping[str, Any] = stored.get("reset") or {}
    defaults = RunnerOptions()
    executor = build_executor(
        manager,
        backend=stored.get("backend", "sqlite"),
        mode=stored.get("mode", "single"),
        differential_backend=stored.get("differential_backend"),
        doublecheck_runs=int(stored.get("doublecheck_runs") or 2),
        reset=ResetConfig(tables=tuple(reset_raw.get("tables") or ()), mode=reset_raw.get("mode", "recreate")),
        runner=RunnerOptions(
            max_retries=int(stored.get("max_retries", defaults.max_retries)),
            return_policy=stored.get("return_policy", defaults.return_policy),
        ),
        should_stop=should_stop,
    )
    shrunk = use_shrunk and entry.shrunk_plan is not None
    plan = entry.shrunk_plan if shrunk else entry.plan
    outcome = executor.run(plan)
    reproduced = _same_failure(entry.failure, outcome, compare_step=not shrunk)
    if reproduced:
        logger.info("replay of %s reproduced %s/%s", entry.run_id, entry.failure.get("kind"), entry.failure.get("check"))
    else:
        logger.warning("replay of %s did not reproduce the recorded failure", entry.run_id)
    return ReplayResult(entry=entry, plan=plan, outcome=outcome, reproduced=reproduced, shrunk=shrunk)


def _same_failure(recorded: Mapping[str, Any], outcome: ModeResult, *, compare_step: bool) -> bool:
    failure = outcome.failure
    if failure is None:
        return False
    expected = (recorded.get("kind"), recorded.get("check"), recorded.get("error_class"))
    if failure.signature() != expected:
        return False
    return not compare_step or failure.step == recorded.get("step")


def _shrink_report(shrink: Optional[ShrinkResult]) -> Optional[Mapping[str, int]]:
    if shrink is None:
        return None
    return {
        "original_steps": shrink.original_steps,
        "shrunk_steps": shrink.shrunk_steps,
        "rounds": shrink.rounds,
        "attempts": shrink.attempts,
    }
