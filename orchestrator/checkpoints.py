"""Human approval of finished steps."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from schemas.checkpoint import Decision
from schemas.execution import DiffMetrics, StageExecution
from schemas.plan import Step

from .state_store import PlanSnapshot


class ApprovalResult(Enum):
    """Result of an approval request."""

    APPROVED = "approved"
    REJECTED = "rejected"
    SPLIT = "split"  # Reject and re-plan as smaller steps
    DEFERRED = "deferred"  # User wants to review later

    @property
    def decision(self) -> Decision | None:
        """Persisted decision, or ``None`` for a deferral."""
        return {
            ApprovalResult.APPROVED: Decision.APPROVE,
            ApprovalResult.REJECTED: Decision.REJECT,
            ApprovalResult.SPLIT: Decision.REQUEST_SPLIT,
        }.get(self)


@dataclass
class ApprovalResponse:
    """Response from approval prompt."""

    result: ApprovalResult
    notes: str | None = None
    approved_by: str = "user"


ApprovalCallback = Callable[[Step, PlanSnapshot], ApprovalResponse]


class ApprovalManager:
    """Blocking approval requests for steps awaiting approval.

    Supports:
    - CLI prompts (blocking)
    - A custom callback (tests, other front ends)
    - Auto-approval
    """

    def __init__(
        self,
        console: Console | None = None,
        auto_approve: bool = False,
        approval_callback: ApprovalCallback | None = None,
    ) -> None:
        """Initialize approval manager.

        Args:
            console: Rich console for output
            auto_approve: If True, approve every step without asking
            approval_callback: Custom approval handler
        """
        self.console = console or Console()
        self.auto_approve = auto_approve
        self.approval_callback = approval_callback

    def request(
        self,
        step: Step,
        snapshot: PlanSnapshot,
        executions: list[StageExecution] | None = None,
        metrics: DiffMetrics | None = None,
    ) -> ApprovalResponse:
        """Request a decision for a step. Blocks until one is given.

        Args:
            step: Step awaiting approval
            snapshot: Current plan snapshot
            executions: The step's stage executions, shown to the reviewer
            metrics: Measured diff of the step against its PreStep checkpoint

        Returns:
            ApprovalResponse with the decision
        """
        if self.auto_approve:
            return ApprovalResponse(
                result=ApprovalResult.APPROVED,
                notes="Auto-approved",
                approved_by="auto",
            )

        if self.approval_callback:
            return self.approval_callback(step, snapshot)

        return self._cli_approval(step, snapshot, executions or [], metrics)

    def _cli_approval(
        self,
        step: Step,
        snapshot: PlanSnapshot,
        executions: list[StageExecution],
        metrics: DiffMetrics | None,
    ) -> ApprovalResponse:
        """Interactive CLI approval prompt."""
        position = snapshot.plan.step_ids.index(step.id) + 1 if step.id in snapshot.plan.step_ids else "?"
        self.console.print()
        self.console.print(
            Panel(
                f"[bold yellow]Approval Required: step {position} of {len(snapshot.plan.step_ids)}[/bold yellow]",
                title="Checkpoint",
                border_style="yellow",
            )
        )

        self.console.print()
        self.console.print(Markdown(f"**{step.id}**: {step.description}"))
        if metrics is not None:
            budget = step.budget
            self.console.print(
                f"[bold]Diff:[/bold] {metrics.summary()}  "
                f"[dim](budget: {budget.max_files_changed} files, {budget.max_files_created} new, "
                f"{budget.max_test_files} test files, {budget.max_lines_added} lines)[/dim]"
            )
        self.console.print()

        self.console.print("[bold]Options:[/bold]")
        self.console.print("  [green]y/yes[/green] - Approve and continue")
        self.console.print("  [red]n/no[/red] - Reject, roll back and re-plan")
        self.console.print("  [magenta]s/split[/magenta] - Roll back and split into smaller steps")
        self.console.print("  [yellow]d/defer[/yellow] - Save state and exit (resume later)")
        self.console.print("  [blue]v/view[/blue] - View stage results")
        self.console.print()

        while True:
            choice = Prompt.ask(
                "Your decision",
                choices=["y", "yes", "n", "no", "s", "split", "d", "defer", "v", "view"],
                default="y",
            )

            if choice in ("y", "yes"):
                notes = Prompt.ask("Any notes? (optional)", default="")
                return ApprovalResponse(
                    result=ApprovalResult.APPROVED,
                    notes=notes if notes else None,
                )

            elif choice in ("n", "no"):
                reason = Prompt.ask("Reason for rejection")
                return ApprovalResponse(
                    result=ApprovalResult.REJECTED,
                    notes=reason,
                )

            elif choice in ("s", "split"):
                reason = Prompt.ask("How should it be split? (optional)", default="")
                return ApprovalResponse(
                    result=ApprovalResult.SPLIT,
                    notes=reason if reason else None,
                )

            elif choice in ("d", "defer"):
                self.console.print(
                    "[yellow]State saved. Run `stepforge resume` to continue.[/yellow]"
                )
                return ApprovalResponse(result=ApprovalResult.DEFERRED)

            elif choice in ("v", "view"):
                self._view_executions(executions)

    def _view_executions(self, executions: list[StageExecution]) -> None:
        """Display stage results for the step."""
        if not executions:
            self.console.print("[dim]No stage results to view[/dim]")
            return

        table = Table(title="Stage results", border_style="blue")
        table.add_column("Stage")
        table.add_column("Attempt", justify="right")
        table.add_column("Result")
        table.add_column("Gate")
        table.add_column("Artifact")
        table.add_column("Diff")

        for execution in executions:
            if execution.gate is None:
                gate = "-"
            elif execution.gate.passed:
                gate = "[green]pass[/green]"
            else:
                gate = f"[red]{execution.gate.kind.value if execution.gate.kind else 'violation'}[/red]"
            table.add_row(
                execution.stage.value,
                str(execution.attempt),
                execution.result.value,
                gate,
                execution.artifact or "",
                execution.metrics.summary(),
            )

        self.console.print()
        self.console.print(table)
