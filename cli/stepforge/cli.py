"""stepforge CLI.

Main command-line interface for planning and driving step pipelines.
"""

from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from cli.stepforge.output import (
    console,
    print_config,
    print_error,
    print_info,
    print_json,
    print_outcome,
    print_plan_status,
    print_success,
    print_warning,
    setup_logging,
)
from local_storage.git_versioner import GitError
from orchestrator.errors import (
    OrchestratorError,
    PersistenceError,
    RollbackFailure,
)
from orchestrator.runner import Orchestrator, PlanStatusReport, RunOutcome, build_orchestrator
from pipeline.config import CONFIG_FILENAME, DEFAULT_CONFIG_TOML, Config, load_config
from schemas.plan import StepBudget

app = typer.Typer(
    name="stepforge",
    help="stepforge - drive features through small, budgeted, reviewable steps",
    no_args_is_help=True,
)

# Config sub-app
config_app = typer.Typer(
    name="config",
    help="Manage configuration settings.",
)
app.add_typer(config_app, name="config")

EXIT_OK = 0
EXIT_STOPPED = 1  # blocked, needs re-planning, or a rejected request
EXIT_FATAL = 2  # persistence or rollback failure
EXIT_INTERRUPTED = 130

OUTCOME_EXIT_CODES = {
    RunOutcome.COMPLETED: EXIT_OK,
    RunOutcome.STEP_COMPLETED: EXIT_OK,
    RunOutcome.AWAITING_APPROVAL: EXIT_OK,
    RunOutcome.CANCELLED: EXIT_OK,
    RunOutcome.BLOCKED: EXIT_STOPPED,
    RunOutcome.NEEDS_REPLAN: EXIT_STOPPED,
}


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to {CONFIG_FILENAME} (default: search cwd and parents)",
    ),
    repo: Optional[Path] = typer.Option(
        None,
        "--repo",
        "-r",
        help="Target repository path (default: [pipeline] repo_path)",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Override [pipeline] log_level",
    ),
) -> None:
    """Load configuration and set up logging for every command."""
    try:
        config = load_config(config_path)
    except (ValueError, TypeError) as e:
        print_error(f"Invalid configuration: {e}")
        raise typer.Exit(EXIT_STOPPED)

    if repo is not None:
        config.pipeline.repo_path = str(repo)
    if log_level:
        config.pipeline.log_level = log_level

    ctx.obj = {"config": config, "config_path": config_path}
    if ctx.invoked_subcommand not in ("config", "version"):
        setup_logging(config.pipeline.log_level, log_file=config.state_path / "stepforge.log")


def _config(ctx: typer.Context) -> Config:
    return ctx.obj["config"]


def _orchestrator(ctx: typer.Context, auto_approve: Optional[bool] = None) -> Orchestrator:
    config = _config(ctx)
    if not config.repo_dir.exists():
        print_error(f"Repository path does not exist: {config.repo_dir}")
        raise typer.Exit(EXIT_STOPPED)
    try:
        return build_orchestrator(config, console=console, auto_approve=auto_approve)
    except GitError as e:
        print_error(f"Failed to initialize: {e}")
        print_info("Set [git] enabled = false to run without checkpoints")
        raise typer.Exit(EXIT_STOPPED)


def _plan_id(orchestrator: Orchestrator, plan_id: Optional[str]) -> str:
    if plan_id:
        return plan_id
    latest = orchestrator.latest_plan_id()
    if latest is None:
        print_error("No plans found. Create one with 'stepforge plan'.")
        raise typer.Exit(EXIT_STOPPED)
    return latest


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Map orchestrator errors to exit codes."""
    try:
        yield
    except (PersistenceError, RollbackFailure) as e:
        print_error(f"Fatal: {e}")
        raise typer.Exit(EXIT_FATAL)
    except OrchestratorError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_STOPPED)
    except KeyboardInterrupt:
        print_warning("Interrupted by user; state is saved, run 'stepforge resume' to continue")
        raise typer.Exit(EXIT_INTERRUPTED)


def _report_dict(report: PlanStatusReport) -> dict:
    data = asdict(report)
    for row, step in zip(data["steps"], report.steps):
        row["budget"] = step.budget.model_dump()
        row["metrics"] = step.metrics.model_dump()
    data["completed_count"] = report.completed_count
    return data


def _budget_options(
    base: StepBudget,
    max_files: Optional[int],
    max_lines: Optional[int],
    max_new_files: Optional[int],
    max_test_files: Optional[int],
) -> StepBudget:
    updates = {
        "max_files_changed": max_files,
        "max_lines_added": max_lines,
        "max_files_created": max_new_files,
        "max_test_files": max_test_files,
    }
    return base.model_copy(update={k: v for k, v in updates.items() if v is not None})


def _drive(orchestrator: Orchestrator, plan_id: str, review_each_step: bool, resume: bool) -> None:
    with _handle_errors():
        if resume:
            outcome = orchestrator.resume(plan_id, review_each_step=review_each_step)
        else:
            outcome = orchestrator.execute(plan_id, review_each_step=review_each_step)

    print_outcome(outcome)
    if outcome != RunOutcome.COMPLETED:
        print_plan_status(orchestrator.status(plan_id))
    raise typer.Exit(OUTCOME_EXIT_CODES[outcome])


@app.command()
def plan(
    ctx: typer.Context,
    description: str = typer.Argument(..., help="Feature request to plan"),
    steps: Optional[List[str]] = typer.Option(
        None,
        "--step",
        "-s",
        help="Explicit step description (repeatable, in order)",
    ),
    max_files: Optional[int] = typer.Option(None, "--max-files", help="Max files changed per step"),
    max_lines: Optional[int] = typer.Option(None, "--max-lines", help="Max lines added per step"),
    max_new_files: Optional[int] = typer.Option(None, "--max-new-files", help="Max files created per step"),
    max_test_files: Optional[int] = typer.Option(None, "--max-test-files", help="Max test files per step"),
) -> None:
    """Plan a feature as ordered, size-bounded steps.

    Examples:
        stepforge plan "Add login rate-limit"
        stepforge plan "Add export" -s "Add CSV writer" -s "Wire export command"
    """
    orchestrator = _orchestrator(ctx)
    budget = _budget_options(_config(ctx).budget.to_budget(), max_files, max_lines, max_new_files, max_test_files)

    with _handle_errors():
        try:
            snapshot = orchestrator.create_plan(description, steps, budget)
        except ValueError as e:
            print_error(str(e))
            raise typer.Exit(EXIT_STOPPED)

    print_success(f"Created plan {snapshot.plan.id} with {len(snapshot.steps)} steps")
    print_plan_status(orchestrator.status(snapshot.plan.id))


@app.command()
def execute(
    ctx: typer.Context,
    plan_id: Optional[str] = typer.Argument(None, help="Plan to execute (default: latest)"),
    review_each_step: bool = typer.Option(
        False,
        "--review-each-step",
        help="Stop after every completed step",
    ),
    auto_approve: bool = typer.Option(
        False,
        "--auto-approve",
        "-y",
        help="Approve every step without asking",
    ),
) -> None:
    """Drive a plan until it completes or needs a human."""
    orchestrator = _orchestrator(ctx, auto_approve=True if auto_approve else None)
    _drive(orchestrator, _plan_id(orchestrator, plan_id), review_each_step, resume=False)


@app.command()
def resume(
    ctx: typer.Context,
    plan_id: Optional[str] = typer.Argument(None, help="Plan to resume (default: latest)"),
    review_each_step: bool = typer.Option(False, "--review-each-step", help="Stop after every completed step"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Approve every step without asking"),
) -> None:
    """Resume a plan from its last persisted state."""
    orchestrator = _orchestrator(ctx, auto_approve=True if auto_approve else None)
    _drive(orchestrator, _plan_id(orchestrator, plan_id), review_each_step, resume=True)


@app.command()
def status(
    ctx: typer.Context,
    plan_id: Optional[str] = typer.Argument(None, help="Plan to show (default: latest)"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Show the persisted state of a plan."""
    orchestrator = _orchestrator(ctx)
    with _handle_errors():
        report = orchestrator.status(_plan_id(orchestrator, plan_id))

    if as_json:
        print_json(_report_dict(report))
    else:
        print_plan_status(report)


@app.command()
def retry(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., help="Blocked step to retry"),
    plan_id: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan id (default: latest)"),
    run: bool = typer.Option(True, "--run/--no-run", help="Continue executing after unblocking"),
) -> None:
    """Force the current stage of a blocked step to run again."""
    orchestrator = _orchestrator(ctx)
    plan_id = _plan_id(orchestrator, plan_id)
    with _handle_errors():
        step = orchestrator.retry_step(plan_id, step_id)
    print_success(f"{step.id} is {step.status.value}")
    if run:
        _drive(orchestrator, plan_id, review_each_step=False, resume=False)


@app.command()
def rebudget(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., help="Step to give a new budget"),
    plan_id: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan id (default: latest)"),
    max_files: Optional[int] = typer.Option(None, "--max-files", help="Max files changed"),
    max_lines: Optional[int] = typer.Option(None, "--max-lines", help="Max lines added"),
    max_new_files: Optional[int] = typer.Option(None, "--max-new-files", help="Max files created"),
    max_test_files: Optional[int] = typer.Option(None, "--max-test-files", help="Max test files touched"),
) -> None:
    """Set a new budget for a step; a blocked step resumes only if it now fits."""
    orchestrator = _orchestrator(ctx)
    plan_id = _plan_id(orchestrator, plan_id)
    with _handle_errors():
        step = orchestrator.store.get_step(plan_id, step_id)
        budget = _budget_options(step.budget, max_files, max_lines, max_new_files, max_test_files)
        gate = orchestrator.rebudget_step(plan_id, step_id, budget)

    if gate.passed:
        print_success(f"{step_id} is within its new budget")
    else:
        print_error(f"{step_id} still over budget: {gate.detail}")
        raise typer.Exit(EXIT_STOPPED)


@app.command()
def rollback(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., help="Step to roll back"),
    plan_id: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan id (default: latest)"),
    reason: str = typer.Option("operator rollback", "--reason", help="Recorded reason"),
) -> None:
    """Restore a step's PreStep checkpoint and discard its stage results."""
    orchestrator = _orchestrator(ctx)
    with _handle_errors():
        record = orchestrator.rollback_step(_plan_id(orchestrator, plan_id), step_id, reason)
    print_success(f"Rolled back {step_id} to {record.to_ref or 'its starting state'}")
    print_info("Re-plan it with 'stepforge replan' or drop it with 'stepforge abandon'")


@app.command()
def cancel(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., help="Blocked or awaiting-approval step"),
    plan_id: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan id (default: latest)"),
    note: Optional[str] = typer.Option(None, "--note", help="Why it was cancelled"),
) -> None:
    """Cancel a step: roll it back and re-plan it, like a rejection."""
    orchestrator = _orchestrator(ctx)
    with _handle_errors():
        added = orchestrator.cancel_step(_plan_id(orchestrator, plan_id), step_id, note)
    print_success(f"Cancelled {step_id}; {len(added)} replacement step(s) planned")


@app.command()
def replan(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., help="Rolled-back step to re-plan"),
    plan_id: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan id (default: latest)"),
    split: bool = typer.Option(False, "--split", help="Split into smaller steps"),
    note: Optional[str] = typer.Option(None, "--note", help="Guidance for the planner"),
) -> None:
    """Ask the planner for replacement steps."""
    orchestrator = _orchestrator(ctx)
    with _handle_errors():
        added = orchestrator.replan_step(_plan_id(orchestrator, plan_id), step_id, note=note, split=split)
    if not added:
        print_warning("Planner produced no replacement steps")
        raise typer.Exit(EXIT_STOPPED)
    for step in added:
        print_info(f"{step.id}: {step.description}")


@app.command()
def abandon(
    ctx: typer.Context,
    step_id: Optional[str] = typer.Argument(None, help="Step to abandon (omit with --all for the whole plan)"),
    plan_id: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan id (default: latest)"),
    all_steps: bool = typer.Option(False, "--all", help="Abandon the whole plan"),
    reason: str = typer.Option("abandoned by operator", "--reason", help="Recorded reason"),
) -> None:
    """Roll back partial work and abandon a step or the whole plan."""
    if not step_id and not all_steps:
        print_error("Give a step id or --all")
        raise typer.Exit(EXIT_STOPPED)

    orchestrator = _orchestrator(ctx)
    plan_id = _plan_id(orchestrator, plan_id)
    with _handle_errors():
        if all_steps:
            orchestrator.abandon_plan(plan_id, reason)
            print_success(f"Abandoned plan {plan_id}")
        else:
            orchestrator.abandon_step(plan_id, step_id, reason)
            print_success(f"Abandoned {step_id}")


@app.command()
def export(
    ctx: typer.Context,
    plan_id: Optional[str] = typer.Argument(None, help="Plan to export (default: latest)"),
) -> None:
    """Write PROGRESS.md for a plan."""
    orchestrator = _orchestrator(ctx)
    with _handle_errors():
        path = orchestrator.export_progress(_plan_id(orchestrator, plan_id))
    print_success(f"Wrote {path}")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    section: Optional[str] = typer.Argument(
        None,
        help="Config section to show (pipeline, budget, executor, ...)",
    ),
) -> None:
    """Show current configuration.

    Examples:
        stepforge config show
        stepforge config show executor
    """
    from pipeline.config import find_config_file

    config_path = ctx.obj.get("config_path") or find_config_file()
    if config_path:
        print_info(f"Config file: {config_path}")
    else:
        print_warning(f"No {CONFIG_FILENAME} found (using defaults)")

    data = _config(ctx).to_dict()

    if section:
        section_lower = section.lower()
        if section_lower not in data:
            print_error(f"Unknown section: {section}")
            print_info(f"Available: {', '.join(data.keys())}")
            raise typer.Exit(EXIT_STOPPED)
        console.print(f"\n[bold][{section_lower}][/bold]")
        print_config(data[section_lower])
        return

    for name, values in data.items():
        console.print(f"\n[bold][{name}][/bold]")
        for key, value in values.items():
            # Truncate long values
            value_str = str(value)
            if len(value_str) > 60:
                value_str = value_str[:57] + "..."
            console.print(f"  {key} = {value_str}")


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Config key (e.g., executor.retry_limit or stages.implementation.command)"),
    value: str = typer.Argument(..., help="Value to set"),
) -> None:
    """Set a configuration value in stepforge.toml.

    Examples:
        stepforge config set executor.retry_limit 3
        stepforge config set approval.auto_approve true
        stepforge config set verification.commands '["pytest -q", "ruff check ."]'
        stepforge config set stages.implementation.command ./scripts/implement.sh
    """
    import sys

    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib
    import tomli_w

    from pipeline.config import find_config_file, parse_setting, reload_config

    config_path = ctx.obj.get("config_path") or find_config_file()
    if not config_path:
        print_error(f"No {CONFIG_FILENAME} found. Run 'stepforge config init' first.")
        raise typer.Exit(EXIT_STOPPED)

    try:
        path, parsed = parse_setting(key, value)
    except KeyError as e:
        print_error(f"Unknown setting {key}: {e.args[0]}")
        raise typer.Exit(EXIT_STOPPED)
    except ValueError as e:
        print_error(f"Invalid value for {key}: {e}")
        raise typer.Exit(EXIT_STOPPED)

    with open(config_path, "rb") as f:
        config_data = tomllib.load(f)

    table = config_data
    for name in path[:-1]:
        table = table.setdefault(name, {})
    table[path[-1]] = parsed

    # The rest of the file must still load
    try:
        Config.from_dict(config_data)
    except (TypeError, ValueError) as e:
        print_error(f"{config_path} would not load after setting {key}: {e}")
        raise typer.Exit(EXIT_STOPPED)

    with open(config_path, "wb") as f:
        tomli_w.dump(config_data, f)

    print_success(f"Set {key} = {parsed!r}")
    reload_config()


@config_app.command("init")
def config_init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help=f"Overwrite existing {CONFIG_FILENAME}",
    ),
) -> None:
    """Create a default stepforge.toml file.

    Example:
        stepforge config init
        stepforge config init --force
    """
    config_path = Path.cwd() / CONFIG_FILENAME

    if config_path.exists() and not force:
        print_warning(f"Config file already exists: {config_path}")
        print_info("Use --force to overwrite")
        raise typer.Exit(EXIT_STOPPED)

    config_path.write_text(DEFAULT_CONFIG_TOML)
    print_success(f"Created config file: {config_path}")


@app.command()
def version() -> None:
    """Show stepforge version."""
    from cli.stepforge import __version__

    console.print(f"stepforge v{__version__}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
