"""Terminal reporter rendering run verdicts and failure details."""
from __future__ import annotations

from typing import TYPE_CHECKING

from colorama import Fore, Style, init as colorama_init

from poolsim.core.results import FailureRecord, RunResult, TraceEvent
from poolsim.plan.models import Plan, describe_operation

from .base import Reporter

if TYPE_CHECKING:
    from poolsim.config import RunSettings
    from poolsim.core.session import ReplayResult, SessionResult


class TerminalReporter(Reporter):
    """Human-readable reporter that prints to stdout."""

    def __init__(self, *, use_color: bool = True) -> None:
        self._use_color = use_color
        if use_color:
            colorama_init()

    def on_start(self, settings: "RunSettings", plan: Plan) -> None:
        config = plan.config
        source = settings.plan_path or (f"property {config.property}" if config.property else "generated")
        print(
            f"poolsim: {len(plan)} step(s) from {source} seed={plan.seed} backend={settings.backend} "
            f"mode={settings.mode} tasks={config.tasks} pool_size={config.pool_size}"
        )

    def on_complete(self, result: "SessionResult") -> None:
        for run in result.outcome.runs:
            _print_run(run, use_color=self._use_color)
        failure = result.outcome.failure
        if failure is not None:
            _print_failure(failure, use_color=self._use_color)
        shrink = result.shrink
        if shrink is not None:
            print(
                f"    shrunk: {shrink.original_steps} -> {shrink.shrunk_steps} step(s) "
                f"(rounds={shrink.rounds}, attempts={shrink.attempts})"
            )
        if result.dumped_plan is not None:
            print(f"    plan written to {result.dumped_plan}")
        if result.entry is not None:
            print(f"    bug base entry: {result.entry.path}")
            print(f"    replay with: poolsim replay {result.entry.path}")
        _print_summary(result.passed, result.plan, result.duration_s, use_color=self._use_color)


def print_replay(result: "ReplayResult", *, use_color: bool = True) -> None:
    if use_color:
        colorama_init()
    which = "shrunk plan" if result.shrunk else "plan"
    print(f"replaying {which} of {result.entry.run_id} ({len(result.plan)} step(s))")
    for run in result.outcome.runs:
        _print_run(run, use_color=use_color)
    if result.outcome.failure is not None:
        _print_failure(result.outcome.failure, use_color=use_color)
    recorded = result.entry.failure
    if result.reproduced:
        print(f"reproduced: {recorded.get('kind')}/{recorded.get('check')}")
    else:
        label, color = _format_status("error", use_color=use_color)
        reset = Style.RESET_ALL if use_color else ""
        print(
            f"{color}{label}{reset} recorded failure {recorded.get('kind')}/{recorded.get('check')} "
            f"at step {recorded.get('step')} was not reproduced (nondeterminism or fixed)"
        )


def _print_run(run: RunResult, *, use_color: bool) -> None:
    label, color = _format_status("passed" if run.passed else "failed", use_color=use_color)
    reset = Style.RESET_ALL if use_color else ""
    status_block = f"{color}{label:<6}{reset}"
    print(f"{status_block} {run.label or 'run'} {run.backend} ({run.steps_executed} step(s), {run.duration_s:.3f}s)")


def _print_failure(failure: FailureRecord, *, use_color: bool) -> None:
    color = Fore.RED if use_color else ""
    reset = Style.RESET_ALL if use_color else ""
    print(f"{color}Failure{reset}: {failure.kind}/{failure.check}")
    location = f"step={failure.step} task={failure.task_id}"
    if failure.operation:
        location += f" op={failure.operation}"
    print(f"    {location}")
    print(f"    reason: {failure.reason}")
    if failure.error_class is not None:
        print(f"    error_class: {failure.error_class.value}")
    print(f"    seed={failure.seed} backend={failure.backend} plan={failure.plan_digest[:12]}")
    if failure.tail:
        print("    trace tail:")
        for event in failure.tail:
            print(f"      {_format_event(event)}")


def _format_event(event: TraceEvent) -> str:
    text = f"step={event.step} task={event.task_id} {describe_operation(event.operation)} -> {event.outcome}"
    if event.error_class is not None:
        text += f" [{event.error_class.value}]"
    if event.message:
        text += f" {event.message}"
    if event.observation is not None:
        text += f" rows={event.observation.row_count}"
    elif event.affected_rows is not None:
        text += f" affected={event.affected_rows}"
    return text


def _print_summary(passed: bool, plan: Plan, duration_s: float, *, use_color: bool) -> None:
    summary_color = Fore.GREEN if passed and use_color else Fore.RED if use_color else ""
    reset = Style.RESET_ALL if use_color else ""
    label, _ = _format_status("passed" if passed else "failed", use_color=False)
    print(f"{summary_color}Summary{reset}: {label} steps={len(plan)} seed={plan.seed} duration={duration_s:.2f}s")


def _format_status(status: str, *, use_color: bool) -> tuple[str, str]:
    label = {"passed": "PASS", "failed": "FAIL", "error": "ERROR"}.get(status, status.upper())
    if not use_color:
        return label, ""
    if status == "passed":
        return label, Fore.GREEN
    if status == "failed":
        return label, Fore.RED
    return label, Fore.YELLOW
