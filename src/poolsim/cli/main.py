"""CLI entry point for poolsim."""
from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional

import click

from poolsim import __version__, bootstrap
from poolsim.backends.base import RESET_MODES, backend_manager
from poolsim.config import REPORT_FORMATS, RunOptions, build_run_settings
from poolsim.core.bugbase import BugBase
from poolsim.core.runner import RETURN_POLICIES
from poolsim.core.session import SimulationSession, replay_entry
from poolsim.errors import PoolsimError
from poolsim.logging_config import configure_logging
from poolsim.plan.loader import dump_plan
from poolsim.plan.properties import registry as property_registry
from poolsim.reporting import build_report_manager, print_replay

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


class CliState:
    """Holds global CLI state."""

    def __init__(self, verbose: bool, log_file: Optional[str] = None) -> None:
        self.verbose = verbose
        self.log_file = log_file


def _print_version(_: click.Context, __: click.Parameter, value: bool) -> None:
    if not value or click.get_current_context().resilient_parsing:
        return
    click.echo(f"poolsim {__version__}")
    raise click.exceptions.Exit()


def workload_options(func):
    """Flags shared by ``run`` and ``generate`` that shape the workload."""

    options = [
        click.option("--seed", type=int, help="Seed for plan generation (time-based when omitted)."),
        click.option("--steps", type=int, help="Number of interactions to generate."),
        click.option("--tasks", type=int, help="Number of simulated tasks."),
        click.option("--pool-size", type=int, help="Connection pool capacity."),
        click.option("--ddl-rate", type=float, help="Probability of a DDL step."),
        click.option("--busy-rate", type=float, help="Probability a connected task idles instead of acting."),
        click.option("--panic-rate", type=float, help="Extra weight moved from commit to rollback."),
        click.option("--sleep-rate", type=float, help="Probability of a sleep step."),
        click.option("--fault-rate", type=float, help="Probability of an injected fault step."),
        click.option("--max-in-flight-tx", type=int, help="Maximum concurrently open transactions."),
        click.option("--property", "property_name", type=str, help="Named property whose prefix starts the plan."),
        click.option(
            "--config",
            "config_path",
            type=click.Path(exists=True, dir_okay=False),
            help="YAML config file; command line flags override it.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _workload_overrides(params: Dict[str, Any]) -> Dict[str, Any]:
    keys = (
        "steps",
        "tasks",
        "pool_size",
        "ddl_rate",
        "busy_rate",
        "panic_rate",
        "sleep_rate",
        "fault_rate",
        "max_in_flight_tx",
    )
    return {key: params[key] for key in keys if params.get(key) is not None}


def _tristate(on: bool, off: bool) -> Optional[bool]:
    if on and off:
        raise click.UsageError("--shrink and --no-shrink are mutually exclusive")
    if on:
        return True
    if off:
        return False
    return None


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("--verbose", is_flag=True, help="Enable verbose logging output.")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write log records to this file.")
@click.option(
    "--version",
    is_flag=True,
    callback=_print_version,
    expose_value=False,
    is_eager=True,
    help="Show the poolsim version and exit.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_file: Optional[str]) -> None:
    """Deterministic simulation testing for connection pools and transactions."""

    configure_logging(logging.DEBUG if verbose else logging.WARNING, log_file)
    bootstrap()
    ctx.obj = CliState(verbose=verbose, log_file=log_file)


@cli.command()
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Stored plan file (JSON or YAML) to execute.",
)
@click.option("--generate", "generate_plan", is_flag=True, help="Generate a random plan from the seed.")
@workload_options
@click.option("--backend", type=str, help="Backend to run against (default: sqlite).")
@click.option("--differential-backend", type=str, help="Run the plan on this backend too and compare.")
@click.option("--doublecheck", is_flag=True, help="Run the plan repeatedly and compare the runs.")
@click.option("--doublecheck-runs", type=int, help="Number of doublecheck runs (default: 2).")
@click.option("--reset-table", "reset_tables", multiple=True, help="Table to reset before each run (repeatable).")
@click.option("--reset-mode", type=click.Choice(RESET_MODES), help="How tables are reset between runs.")
@click.option("--shrink", "shrink_on", is_flag=True, help="Minimize failing plans (the default).")
@click.option("--no-shrink", "shrink_off", is_flag=True, help="Report failing plans without minimizing them.")
@click.option("--max-shrink-rounds", type=int, help="Upper bound on shrinker rounds.")
@click.option("--bugbase", type=click.Path(file_okay=False), help="Directory where failures are recorded.")
@click.option(
    "--dump-plan-on-failure",
    type=click.Path(dir_okay=False),
    help="Write the failing plan to this path.",
)
@click.option("--max-retries", type=int, help="Retries for busy errors before giving up.")
@click.option("--return-policy", type=click.Choice(RETURN_POLICIES), help="Returning inside a transaction.")
@click.option("--timeout", "timeout_s", type=float, help="Abort a run after this many seconds.")
@click.option(
    "--report",
    "report_format",
    type=click.Choice(REPORT_FORMATS),
    help="Report format (terminal by default).",
)
@click.option("--report-path", type=str, help="When --report json, write to this path.")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors in terminal output.")
@click.pass_obj
def run(state: CliState, **params: Any) -> None:
    """Execute a stored, property or generated plan."""

    options = RunOptions(
        config_path=params["config_path"],
        plan_path=params["plan_path"],
        generate=bool(params["generate_plan"]),
        property_name=params["property_name"],
        seed=params["seed"],
        workload=_workload_overrides(params),
        backend=params["backend"],
        differential_backend=params["differential_backend"],
        doublecheck=True if params["doublecheck"] else None,
        doublecheck_runs=params["doublecheck_runs"],
        reset_tables=tuple(params["reset_tables"]),
        reset_mode=params["reset_mode"],
        shrink=_tristate(params["shrink_on"], params["shrink_off"]),
        max_shrink_rounds=params["max_shrink_rounds"],
        bugbase=params["bugbase"],
        dump_plan_on_failure=params["dump_plan_on_failure"],
        max_retries=params["max_retries"],
        return_policy=params["return_policy"],
        timeout_s=params["timeout_s"],
        report_format=params["report_format"],
        report_path=params["report_path"],
        color=False if params["no_color"] else None,
    )
    try:
        settings = build_run_settings(options)
        reporter = build_report_manager(settings.report_format, settings.report_path, use_color=settings.color)
        result = SimulationSession(settings, reporter=reporter).run()
    except PoolsimError as exc:
        raise click.ClickException(str(exc)) from exc
    raise click.exceptions.Exit(result.exit_code)


@cli.command()
@workload_options
@click.option("--out", "out_path", type=click.Path(dir_okay=False), required=True, help="Where to write the plan.")
@click.pass_obj
def generate(state: CliState, out_path: str, **params: Any) -> None:
    """Write a generated plan without running it."""

    options = RunOptions(
        config_path=params["config_path"],
        generate=True,
        property_name=params["property_name"],
        seed=params["seed"],
        workload=_workload_overrides(params),
    )
    try:
        settings = build_run_settings(options)
        plan = SimulationSession(settings).build_plan()
        target = dump_plan(plan, out_path)
    except PoolsimError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Wrote {len(plan)} step(s) seed={plan.seed} to {target}")


@cli.command()
@click.argument("entry_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--shrunk", "use_shrunk", is_flag=True, help="Replay the shrunk plan when the entry has one.")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors in terminal output.")
@click.pass_obj
def replay(state: CliState, entry_dir: str, use_shrunk: bool, no_color: bool) -> None:
    """Re-run a recorded bug base entry."""

    try:
        entry = BugBase.load(entry_dir)
        result = replay_entry(entry, use_shrunk=use_shrunk)
    except PoolsimError as exc:
        raise click.ClickException(str(exc)) from exc
    print_replay(result, use_color=not no_color)
    raise click.exceptions.Exit(result.exit_code)


@cli.command(name="list")
@click.option("--bugbase", type=click.Path(file_okay=False), help="Also list entries in this bug base.")
def list_cmd(bugbase: Optional[str]) -> None:
    """List properties, backends and recorded failures."""

    click.echo("Properties:")
    for prop in property_registry:
        click.echo(f"  {prop.name:<24} {prop.description}")
    click.echo("Backends:")
    for name in backend_manager.names():
        click.echo(f"  {name}")
    if bugbase:
        entries = BugBase(bugbase).entries()
        click.echo(f"Bug base entries ({len(entries)}):")
        for path in entries:
            click.echo(f"  {path.name}")


def main(argv: Optional[list[str]] = None) -> int:
    """Program entry point for console_scripts shim."""

    argv = argv if argv is not None else sys.argv[1:]
    try:
        cli.main(args=argv, prog_name="poolsim", standalone_mode=True)
    except click.ClickException as err:  # pragma: no cover - click handles display
        err.show()
        return err.exit_code
    except SystemExit as exc:  # click may raise exit code
        return int(exc.code or 0)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
