"""PROGRESS.md export.

A human-readable view of a plan. Written from the state store on request;
nothing ever reads it back.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from schemas.plan import StepStatus

from .errors import PersistenceError
from .state_store import StateStore

if TYPE_CHECKING:
    from .runner import PlanStatusReport, StepReport

PROGRESS_FILE = "PROGRESS.md"

STATUS_MARKS = {
    StepStatus.COMPLETED: "[x]",
    StepStatus.ABANDONED: "[-]",
    StepStatus.ROLLED_BACK: "[~]",
    StepStatus.BLOCKED: "[!]",
}


def render_progress(report: PlanStatusReport) -> str:
    """Render a plan status report as markdown."""
    lines = [
        f"# Progress: {report.feature_description}",
        "",
        f"- Plan: `{report.plan_id}`",
        f"- Status: {report.status.value}",
        f"- Steps completed: {report.completed_count}/{len(report.steps)}",
        f"- Current step: `{report.cursor_step_id}`" if report.cursor_step_id else "- Current step: none",
        f"- Updated: {datetime.now().isoformat(timespec='seconds')}",
        "",
        "## Steps",
        "",
    ]

    for step in report.steps:
        lines.append(_step_line(step))

    blocked = report.blocked_steps
    if blocked:
        lines.extend(["", "## Blocked", ""])
        for step in blocked:
            kind = step.blocked_kind.value if step.blocked_kind else "blocked"
            lines.append(f"- `{step.id}` ({kind}, {step.retry_count} retries): {step.blocked_reason}")

    lines.append("")
    return "\n".join(lines)


def _step_line(step: StepReport) -> str:
    mark = STATUS_MARKS.get(step.status, "[ ]")
    indent = "  " * step.depth
    detail = step.status.value
    if step.stage:
        detail += f" @ {step.stage}"
    if step.metrics.files_changed or step.metrics.lines_added:
        detail += f"; {step.metrics.summary()}"
    if step.replaced_by:
        detail += f"; replaced by {', '.join(step.replaced_by)}"
    return f"{indent}- {mark} {step.position}. {step.description} (`{step.id}`, {detail})"


def write_progress(store: StateStore, report: PlanStatusReport) -> Path:
    """Write PROGRESS.md into the plan directory.

    Raises:
        PersistenceError: If the file cannot be written
    """
    path = store.plan_dir(report.plan_id) / PROGRESS_FILE
    tmp = path.with_suffix(".md.tmp")
    try:
        tmp.write_text(render_progress(report))
        os.replace(tmp, path)
    except OSError as e:
        raise PersistenceError(f"Could not write {path}: {e}") from e
    return path
