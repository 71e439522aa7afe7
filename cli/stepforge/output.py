"""Rich console output utilities for the stepforge CLI."""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from orchestrator.runner import PlanStatusReport, RunOutcome, StepReport
from schemas.execution import STAGE_SEQUENCE, StageKind
from schemas.plan import StepStatus

console = Console()
error_console = Console(stderr=True)


# Stages shown in the pipeline line, in order
PIPELINE_STAGES = [
    (StageKind.DESIGN, "Design"),
    (StageKind.TEST_AUTHORING, "Tests"),
    (StageKind.IMPLEMENTATION, "Implement"),
    (StageKind.VERIFICATION, "Verify"),
    (StageKind.REVIEW, "Review"),
    (StageKind.HUMAN_APPROVAL, "Approve"),
]

STATUS_STYLES = {
    StepStatus.PENDING: "dim",
    StepStatus.IN_PROGRESS: "cyan",
    StepStatus.AWAITING_APPROVAL: "yellow",
    StepStatus.APPROVED: "green",
    StepStatus.REJECTED: "magenta",
    StepStatus.COMPLETED: "green",
    StepStatus.BLOCKED: "red",
    StepStatus.ROLLED_BACK: "magenta",
    StepStatus.ABANDONED: "dim",
}

OUTCOME_MESSAGES = {
    RunOutcome.COMPLETED: "Plan completed",
    RunOutcome.BLOCKED: "Stopped: a step is blocked",
    RunOutcome.AWAITING_APPROVAL: "Paused: step awaiting approval",
    RunOutcome.NEEDS_REPLAN: "Stopped: rolled-back step needs re-planning",
    RunOutcome.CANCELLED: "Stopped: stage cancelled",
    RunOutcome.STEP_COMPLETED: "Step completed; run again for the next one",
}


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Route log records to a rich stderr handler and, optionally, a file.

    Existing handlers of the same type are left in place, so calling this
    more than once does not duplicate output.
    """
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=error_console, show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)

    if log_file is not None and not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root.addHandler(file_handler)

    root.setLevel(numeric_level)


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]![/yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]→[/blue] {message}")


def print_json(data: Any) -> None:
    """Print formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def print_key_value(key: str, value: Any, key_style: str = "bold") -> None:
    """Print a key-value pair."""
    console.print(f"[{key_style}]{key}:[/{key_style}] {value}")


def print_outcome(outcome: RunOutcome) -> None:
    """Print why the control loop stopped."""
    message = OUTCOME_MESSAGES.get(outcome, outcome.value)
    if outcome in (RunOutcome.COMPLETED, RunOutcome.STEP_COMPLETED):
        print_success(message)
    elif outcome in (RunOutcome.AWAITING_APPROVAL, RunOutcome.CANCELLED):
        print_warning(message)
    else:
        print_error(message)


def render_stage_line(step: StepReport) -> Text:
    """Render a step's progress through the stage pipeline as a single line."""
    if step.status in (StepStatus.COMPLETED, StepStatus.APPROVED):
        current = len(PIPELINE_STAGES)
    elif step.stage is not None:
        current = STAGE_SEQUENCE.index(StageKind(step.stage))
    else:
        current = 0
    if step.status == StepStatus.AWAITING_APPROVAL:
        current = STAGE_SEQUENCE.index(StageKind.HUMAN_APPROVAL)

    parts = []
    for i, (kind, name) in enumerate(PIPELINE_STAGES):
        index = STAGE_SEQUENCE.index(kind)
        if index < current:
            parts.append(f"[green]✓ {name}[/green]")
        elif index == current and step.status == StepStatus.BLOCKED:
            parts.append(f"[red]✗ {name}[/red]")
        elif index == current and step.status in (StepStatus.IN_PROGRESS, StepStatus.AWAITING_APPROVAL):
            parts.append(f"[cyan bold]● {name}[/cyan bold]")
        else:
            parts.append(f"[dim]○ {name}[/dim]")

        # Add arrow between stages (except last)
        if i < len(PIPELINE_STAGES) - 1:
            parts.append(" [green]→[/green] " if index < current else " [dim]→[/dim] ")

    return Text.from_markup("".join(parts))


def print_plan_status(report: PlanStatusReport) -> None:
    """Print a plan status report."""
    console.print(
        Panel(
            f"[bold]{report.feature_description}[/bold]",
            title=f"Plan {report.plan_id}",
            subtitle=f"{report.status.value} · {report.completed_count}/{len(report.steps)} steps completed",
            border_style="cyan",
        )
    )

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Description")
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Diff")
    table.add_column("Budget", style="dim")
    table.add_column("Retries", justify="right")

    for step in report.steps:
        style = STATUS_STYLES.get(step.status, "white")
        marker = "▶ " if step.id == report.cursor_step_id else ""
        budget = step.budget
        table.add_row(
            str(step.position),
            f"{marker}{step.id}",
            "  " * step.depth + step.description,
            f"[{style}]{step.status.value}[/{style}]",
            step.stage or "-",
            step.metrics.summary(),
            f"{budget.max_files_changed}f/{budget.max_files_created}n/{budget.max_test_files}t/{budget.max_lines_added}l",
            str(step.retry_count),
        )

    console.print(table)

    cursor = report.cursor
    if cursor is not None and cursor.status not in (StepStatus.PENDING, StepStatus.ROLLED_BACK):
        console.print()
        console.print(render_stage_line(cursor))

    for step in report.blocked_steps:
        kind = step.blocked_kind.value if step.blocked_kind else "blocked"
        console.print()
        console.print(
            Panel(
                step.blocked_reason or "",
                title=f"[red]{step.id} blocked: {kind}[/red]",
                border_style="red",
            )
        )


def print_config(data: dict[str, Any]) -> None:
    """Print a configuration section as a table."""
    table = Table(show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
