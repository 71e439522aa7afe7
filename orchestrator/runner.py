"""Orchestrator control loop.

Drives a plan one step at a time: checkpoint, run the stage pipeline, gate
the measured diff, ask for approval, then either commit the step or roll it
back and re-plan. All state lives in the state store, so ``execute`` can be
interrupted at any point and resumed from the last persisted state.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, TypeVar

from rich.console import Console

from agents import (
    CommandStageProcessor,
    FeaturePlanner,
    RepoState,
    SimpleFeaturePlanner,
    StageRegistry,
    VerificationStageProcessor,
)
from local_storage.git_versioner import GitError, LocalGitVersioner, VersionControl
from pipeline.config import Config
from schemas.checkpoint import ApprovalDecision, Checkpoint, CheckpointKind, Decision, RollbackRecord
from schemas.execution import STAGE_SEQUENCE, DiffMetrics, GateOutcome, StageKind, stage_index
from schemas.plan import BlockedKind, Plan, PlanStatus, Step, StepBudget, StepStatus
from tools.verification import CommandVerificationRunner

from .budget import BudgetValidator
from .checkpoints import ApprovalCallback, ApprovalManager
from .errors import InvalidTransition, OrchestratorError, StageCancelled, StageError
from .executor import APPROVAL_INDEX, StagePipelineExecutor
from .report import write_progress
from .rollback import RollbackController
from .state_machine import StepStateMachine
from .state_store import PlanSnapshot, StateStore

logger = logging.getLogger(__name__)

POST_APPROVAL_INDEX = stage_index(StageKind.SCHEMA_MIGRATION_PLANNING)

_T = TypeVar("_T")


class RunOutcome(str, Enum):
    """Why ``execute`` returned."""

    COMPLETED = "completed"  # Every step completed or abandoned
    BLOCKED = "blocked"  # Cursor step needs operator action
    AWAITING_APPROVAL = "awaiting_approval"  # Approval deferred
    NEEDS_REPLAN = "needs_replan"  # Rolled back, re-planning produced nothing
    CANCELLED = "cancelled"  # In-flight stage cancelled
    STEP_COMPLETED = "step_completed"  # One step finished (review-each-step mode)


@dataclass
class StepReport:
    """One row of a plan status report."""

    id: str
    position: int
    depth: int
    description: str
    status: StepStatus
    stage: str | None
    retry_count: int
    budget: StepBudget
    metrics: DiffMetrics
    blocked_kind: BlockedKind | None = None
    blocked_reason: str | None = None
    parent_step_id: str | None = None
    replaced_by: list[str] = field(default_factory=list)


@dataclass
class PlanStatusReport:
    """Last durably persisted state of a plan."""

    plan_id: str
    feature_description: str
    status: PlanStatus
    cursor_step_id: str | None
    steps: list[StepReport]

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)

    @property
    def blocked_steps(self) -> list[StepReport]:
        return [s for s in self.steps if s.status == StepStatus.BLOCKED]

    @property
    def cursor(self) -> StepReport | None:
        for step in self.steps:
            if step.id == self.cursor_step_id:
                return step
        return None


class Orchestrator:
    """Control loop and operator actions for plans.

    Manages:
    - Step ordering and the plan cursor
    - PreStep/PostStep checkpoints
    - The final diff gate before approval
    - Approval, rejection, re-planning and rollback
    - Operator recovery of blocked steps
    """

    def __init__(
        self,
        store: StateStore,
        executor: StagePipelineExecutor,
        approvals: ApprovalManager,
        planner: FeaturePlanner | None = None,
        vcs: VersionControl | None = None,
        rollback: RollbackController | None = None,
        repo_root: Path | None = None,
        rollback_on_budget_violation: bool = False,
        max_split_depth: int = 2,
        schema_migration_planning: bool = False,
        console: Console | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            store: State store
            executor: Stage pipeline executor
            approvals: Approval interface
            planner: Feature planner
            vcs: Version control collaborator (``None`` runs without checkpoints)
            rollback: Rollback controller
            repo_root: Repository the stages work in
            rollback_on_budget_violation: Roll back and split steps that exceed their budget
            max_split_depth: Re-planning depth past which over-budget steps stay blocked
            schema_migration_planning: Run the optional post-approval stage
            console: Rich console for output
            cancel_event: Set to cancel the in-flight stage
        """
        self.store = store
        self.executor = executor
        self.machine = executor.machine
        self.validator = executor.validator
        self.approvals = approvals
        self.planner = planner or SimpleFeaturePlanner()
        self.vcs = vcs
        self.rollback = rollback or RollbackController(store, vcs, self.machine)
        self.repo_root = Path(repo_root or Path.cwd())
        self.rollback_on_budget_violation = rollback_on_budget_violation
        self.max_split_depth = max_split_depth
        self.schema_migration_planning = schema_migration_planning
        self.console = console or Console()
        self.cancel_event = cancel_event or threading.Event()

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def create_plan(
        self,
        description: str,
        step_descriptions: list[str] | None = None,
        budget: StepBudget | None = None,
    ) -> PlanSnapshot:
        """Plan a feature request and persist it as an active plan."""
        if not description.strip():
            raise ValueError("Feature description is empty")

        drafts = self.planner.plan(description, step_descriptions, budget)
        if not drafts:
            raise OrchestratorError("Planner produced no steps")

        plan = Plan(feature_description=description, status=PlanStatus.ACTIVE)
        steps = [
            Step(plan_id=plan.id, sequence_index=i, description=d.description, budget=d.budget)
            for i, d in enumerate(drafts)
        ]
        plan.cursor_step_id = steps[0].id
        snapshot = self.store.create_plan(plan, steps)
        logger.info("PIPELINE: Created plan %s with %d steps", plan.id, len(steps))
        return snapshot

    def latest_plan_id(self) -> str | None:
        plans = self.store.list_plans()
        return plans[0] if plans else None

    def status(self, plan_id: str) -> PlanStatusReport:
        """Report the last durably persisted state of a plan."""
        snapshot = self.store.load(plan_id)
        cursor = snapshot.cursor()
        rows = []
        for position, step in enumerate(snapshot.execution_order(), start=1):
            executions = self.store.stage_executions(plan_id, step_id=step.id)
            rows.append(
                StepReport(
                    id=step.id,
                    position=position,
                    depth=snapshot.depth(step),
                    description=step.description,
                    status=step.status,
                    stage=_stage_name(step),
                    retry_count=step.retry_count,
                    budget=step.budget,
                    metrics=self.validator.step_metrics(step, executions),
                    blocked_kind=step.blocked_kind,
                    blocked_reason=step.blocked_reason,
                    parent_step_id=step.parent_step_id,
                    replaced_by=list(step.replaced_by),
                )
            )
        return PlanStatusReport(
            plan_id=snapshot.plan.id,
            feature_description=snapshot.plan.feature_description,
            status=snapshot.plan.status,
            cursor_step_id=cursor.id if cursor else None,
            steps=rows,
        )

    def export_progress(self, plan_id: str) -> Path:
        """Write PROGRESS.md for a plan."""
        return write_progress(self.store, self.status(plan_id))

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def execute(self, plan_id: str, review_each_step: bool = False) -> RunOutcome:
        """Drive the plan cursor until the plan finishes or needs a human.

        Args:
            plan_id: Plan to drive
            review_each_step: Return after each completed step

        Returns:
            Why the loop stopped

        Raises:
            PersistenceError: If the state store fails
            RollbackFailure: If a rollback could not restore the repository
        """
        self.cancel_event.clear()
        snapshot = self.store.load(plan_id)
        if snapshot.plan.status == PlanStatus.ABANDONED:
            raise InvalidTransition(f"Plan {plan_id} is abandoned")

        logger.info("PIPELINE: Executing plan %s", plan_id)
        while True:
            snapshot = self.store.load(plan_id)
            step = snapshot.cursor()
            self._sync_plan(plan_id, step)

            if step is None:
                self.console.print("[bold green]Plan completed.[/bold green]")
                logger.info("PIPELINE: Plan %s completed", plan_id)
                return RunOutcome.COMPLETED

            try:
                outcome = self._drive_step(snapshot, step)
            except StageCancelled:
                self.console.print("[yellow]Stage cancelled; resume to continue.[/yellow]")
                return RunOutcome.CANCELLED

            if outcome is not None:
                if outcome == RunOutcome.BLOCKED:
                    self._print_blocked(step)
                return outcome

            if review_each_step and step.status == StepStatus.COMPLETED:
                self._sync_plan(plan_id, self.store.load(plan_id).cursor())
                return RunOutcome.STEP_COMPLETED

    def resume(self, plan_id: str, review_each_step: bool = False) -> RunOutcome:
        """Reload the persisted plan and continue from where it stopped."""
        logger.info("PIPELINE: Resuming plan %s", plan_id)
        return self.execute(plan_id, review_each_step=review_each_step)

    def request_cancel(self) -> None:
        """Cancel the stage currently in flight (from another thread)."""
        self.cancel_event.set()

    def _drive_step(self, snapshot: PlanSnapshot, step: Step) -> RunOutcome | None:
        """Advance one step as far as it can go.

        Returns ``None`` once the step no longer holds the cursor (completed, or
        rolled back with replacements appended), otherwise the reason to stop.
        """
        if step.status == StepStatus.PENDING:
            self._start_step(snapshot, step)

        if step.status == StepStatus.IN_PROGRESS and self._ensure_pre_checkpoint(step):
            self.executor.run(step, self._repo_state(step))
            if step.status == StepStatus.IN_PROGRESS:
                self._gate_measured_diff(step)
            if step.status == StepStatus.IN_PROGRESS:
                self.machine.transition(step, StepStatus.AWAITING_APPROVAL)
            if step.status == StepStatus.BLOCKED:
                return self._handle_blocked(step)

        if step.status == StepStatus.AWAITING_APPROVAL:
            return self._await_approval(self.store.load(step.plan_id), step)

        if step.status == StepStatus.APPROVED:
            return self._finish_approved(step)

        if step.status == StepStatus.REJECTED:
            decision = self._last_decision(step)
            return self._rollback_and_replan(
                step,
                decision.decision if decision else Decision.REJECT,
                decision.note if decision else None,
            )

        if step.status == StepStatus.ROLLED_BACK:
            decision = self._last_decision(step)
            if decision is None or decision.decision == Decision.APPROVE:
                logger.warning("PIPELINE: %s is rolled back and has no replacement steps", step.id)
                return RunOutcome.NEEDS_REPLAN
            return self._replan(step, decision.decision, decision.note)

        if step.status == StepStatus.BLOCKED:
            return RunOutcome.BLOCKED

        return None

    def _start_step(self, snapshot: PlanSnapshot, step: Step) -> None:
        position = snapshot.execution_order().index(step) + 1
        self.console.print(f"\n[bold blue]>>> Step {position}: {step.description}[/bold blue]")
        self.machine.transition(step, StepStatus.IN_PROGRESS, current_stage_index=0, retry_count=0)

    def _ensure_pre_checkpoint(self, step: Step) -> bool:
        """Take the PreStep checkpoint of a started step that has none yet.

        Returns False if the step was blocked because the checkpoint failed.
        """
        if self.vcs is None or step.pre_checkpoint_id:
            return True
        checkpoint = self._retry_vcs(
            step, "pre-step checkpoint", lambda: self._checkpoint(step, CheckpointKind.PRE_STEP)
        )
        if checkpoint is None:
            return False
        self.machine.update(step, pre_checkpoint_id=checkpoint.id, last_checkpoint_id=checkpoint.id)
        return True

    def _gate_measured_diff(self, step: Step) -> None:
        """Gate the real diff against the PreStep checkpoint before approval."""
        metrics = self._retry_vcs(step, "diff measurement", lambda: self._measure(step))
        if metrics is None:
            return
        gate = self.validator.evaluate_metrics(step.budget, metrics)
        if gate.passed:
            logger.info("PIPELINE: Measured diff for %s within budget (%s)", step.id, metrics.summary())
            return
        logger.warning("PIPELINE: Measured diff for %s over budget: %s", step.id, gate.detail)
        self.machine.block(step, BlockedKind.BUDGET_EXCEEDED, gate.detail or "budget exceeded")

    def _measure(self, step: Step) -> DiffMetrics | None:
        """Diff of the working tree against the step's PreStep checkpoint."""
        checkpoint = self._pre_checkpoint(step)
        if checkpoint is None or self.vcs is None:
            return None
        try:
            return self.vcs.diff_stats(checkpoint.ref, None)
        except GitError as e:
            logger.warning("PIPELINE: Could not measure diff for %s: %s", step.id, e)
            raise StageError(f"Could not measure diff for {step.id}: {e}") from e

    def _handle_blocked(self, step: Step) -> RunOutcome | None:
        if (
            self.rollback_on_budget_violation
            and step.blocked_kind == BlockedKind.BUDGET_EXCEEDED
            and self.store.load(step.plan_id).depth(step) < self.max_split_depth
        ):
            logger.info("PIPELINE: Rolling back %s after budget violation", step.id)
            self.rollback.rollback(step, f"budget exceeded: {step.blocked_reason}")
            return self._replan(step, Decision.REQUEST_SPLIT, "over budget")
        return RunOutcome.BLOCKED

    def _await_approval(self, snapshot: PlanSnapshot, step: Step) -> RunOutcome | None:
        executions = self.store.stage_executions(step.plan_id, step_id=step.id)
        try:
            metrics = self._measure(step)
        except StageError:
            metrics = None
        response = self.approvals.request(step, snapshot, executions=executions, metrics=metrics)

        decision = response.result.decision
        if decision is None:
            logger.info("PIPELINE: Approval of %s deferred", step.id)
            return RunOutcome.AWAITING_APPROVAL
        return self._apply_decision(step, decision, response.notes, response.approved_by)

    def _apply_decision(
        self,
        step: Step,
        decision: Decision,
        note: str | None,
        decided_by: str = "user",
    ) -> RunOutcome | None:
        self.store.append_approval(
            step.plan_id,
            ApprovalDecision(step_id=step.id, decision=decision, note=note, decided_by=decided_by),
        )
        logger.info("PIPELINE: %s decided %s by %s", step.id, decision.value, decided_by)

        if decision == Decision.APPROVE:
            self.machine.transition(step, StepStatus.APPROVED, current_stage_index=POST_APPROVAL_INDEX, retry_count=0)
            return self._finish_approved(step)

        self.machine.transition(step, StepStatus.REJECTED)
        return self._rollback_and_replan(step, decision, note)

    def _finish_approved(self, step: Step) -> RunOutcome | None:
        """Post-approval tail: optional migration planning, PostStep checkpoint, completion."""
        if (
            self.schema_migration_planning
            and step.current_stage_index <= POST_APPROVAL_INDEX
            and self.executor.recorded_success(step, StageKind.SCHEMA_MIGRATION_PLANNING) is None
        ):
            self.executor.run_stage(step, StageKind.SCHEMA_MIGRATION_PLANNING, self._repo_state(step))
            if step.status == StepStatus.BLOCKED:
                return RunOutcome.BLOCKED

        checkpoint = self._retry_vcs(
            step, "post-step checkpoint", lambda: self._checkpoint(step, CheckpointKind.POST_STEP)
        )
        if step.status == StepStatus.BLOCKED:
            return RunOutcome.BLOCKED
        self.machine.transition(
            step,
            StepStatus.COMPLETED,
            last_checkpoint_id=checkpoint.id if checkpoint else step.last_checkpoint_id,
        )
        self.console.print(f"[green]Step completed: {step.description}[/green]")
        return None

    def _rollback_and_replan(self, step: Step, decision: Decision, note: str | None) -> RunOutcome | None:
        reason = f"{decision.value}" + (f": {note}" if note else "")
        self.rollback.rollback(step, reason)
        return self._replan(step, decision, note)

    def _replan(self, step: Step, decision: Decision, note: str | None) -> RunOutcome | None:
        added = self._append_replacements(step, decision, note)
        if not added:
            return RunOutcome.NEEDS_REPLAN
        return None

    def _append_replacements(self, step: Step, decision: Decision, note: str | None) -> list[Step]:
        drafts = self.planner.replan(step, decision, note)
        if not drafts:
            logger.warning("PIPELINE: Re-planning %s produced no steps", step.id)
            return []

        plan = self.store.load(step.plan_id).plan
        start = len(plan.step_ids)
        new_steps = [
            Step(
                plan_id=plan.id,
                sequence_index=start + i,
                description=d.description,
                budget=d.budget,
                parent_step_id=step.id,
            )
            for i, d in enumerate(drafts)
        ]
        self.store.append_steps(plan, new_steps)
        self.machine.update(step, replaced_by=[*step.replaced_by, *(s.id for s in new_steps)])
        logger.info("PIPELINE: Re-planned %s into %d steps", step.id, len(new_steps))
        return new_steps

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def retry_step(self, plan_id: str, step_id: str) -> Step:
        """Unblock a step and force its current stage to run again."""
        step = self.store.get_step(plan_id, step_id)
        self._require(step, StepStatus.BLOCKED, "retry")

        if step.blocked_kind == BlockedKind.ROLLBACK_FAILURE:
            self.rollback.rollback(step, f"retry after rollback failure: {step.blocked_reason}")
            return step

        target = StepStatus.APPROVED if step.current_stage_index > APPROVAL_INDEX else StepStatus.IN_PROGRESS
        self.machine.transition(step, target, retry_count=0)
        logger.info("PIPELINE: Operator retry of %s at %s", step.id, _stage_name(step))
        return step

    def rebudget_step(self, plan_id: str, step_id: str, budget: StepBudget) -> GateOutcome:
        """Set a new budget and re-evaluate the gate.

        A blocked step resumes only if the gate now passes.
        """
        step = self.store.get_step(plan_id, step_id)
        if step.status == StepStatus.PENDING:
            self.machine.update(step, budget=budget)
            return self.validator.evaluate_metrics(budget, DiffMetrics())
        self._require(step, StepStatus.BLOCKED, "rebudget")

        self.machine.update(step, budget=budget)
        if step.blocked_kind != BlockedKind.BUDGET_EXCEEDED:
            logger.info("PIPELINE: %s budget updated; still blocked (%s)", step.id, step.blocked_kind)
            return self.validator.evaluate_metrics(budget, DiffMetrics())

        if step.current_stage_index > APPROVAL_INDEX:
            executions = self.store.stage_executions(plan_id, step_id=step.id)
            gate = self.validator.evaluate(step, executions)
            next_index = POST_APPROVAL_INDEX + 1  # post-approval stage done
        elif step.current_stage_index == APPROVAL_INDEX:
            metrics = self._measure(step) or DiffMetrics()
            gate = self.validator.evaluate_metrics(budget, metrics)
            next_index = step.current_stage_index
        else:
            executions = self.store.stage_executions(plan_id, step_id=step.id)
            gate = self.validator.evaluate(step, executions)
            next_index = step.current_stage_index + 1

        if not gate.passed:
            logger.info("PIPELINE: %s still over budget: %s", step.id, gate.detail)
            self.machine.update(step, blocked_reason=gate.detail)
            return gate

        target = StepStatus.APPROVED if step.current_stage_index > APPROVAL_INDEX else StepStatus.IN_PROGRESS
        self.machine.transition(step, target, current_stage_index=next_index, retry_count=0)
        logger.info("PIPELINE: %s within new budget; resuming at %s", step.id, _stage_name(step))
        return gate

    def rollback_step(self, plan_id: str, step_id: str, reason: str = "operator rollback") -> RollbackRecord:
        """Roll a step back on operator request."""
        step = self.store.get_step(plan_id, step_id)
        if step.status not in (StepStatus.BLOCKED, StepStatus.ROLLED_BACK, StepStatus.REJECTED):
            raise InvalidTransition(f"Cannot roll back {step.id} while {step.status.value}")
        return self.rollback.rollback(step, reason)

    def cancel_step(self, plan_id: str, step_id: str, note: str | None = None) -> list[Step]:
        """Cancel a blocked or awaiting-approval step.

        Same as a reject decision: the step is rolled back and re-planned.
        Returns the replacement steps.
        """
        step = self.store.get_step(plan_id, step_id)
        if step.status not in (StepStatus.BLOCKED, StepStatus.AWAITING_APPROVAL):
            raise InvalidTransition(f"Cannot cancel {step.id} while {step.status.value}")

        note = note or "cancelled by operator"
        self.store.append_approval(
            plan_id,
            ApprovalDecision(step_id=step.id, decision=Decision.REJECT, note=note, decided_by="operator"),
        )
        if step.status == StepStatus.AWAITING_APPROVAL:
            self.machine.transition(step, StepStatus.REJECTED)
        self.rollback.rollback(step, f"cancelled: {note}")
        return self._append_replacements(step, Decision.REJECT, note)

    def abandon_step(self, plan_id: str, step_id: str, reason: str = "abandoned by operator") -> Step:
        """Roll back any partial work and mark the step abandoned."""
        step = self.store.get_step(plan_id, step_id)
        if step.is_terminal:
            raise InvalidTransition(f"Cannot abandon {step.id} while {step.status.value}")

        if step.status not in (StepStatus.PENDING, StepStatus.ROLLED_BACK):
            self.rollback.rollback(step, reason)
        self.machine.transition(step, StepStatus.ABANDONED)
        self._sync_plan(plan_id, self.store.load(plan_id).cursor())
        return step

    def replan_step(
        self,
        plan_id: str,
        step_id: str,
        note: str | None = None,
        split: bool = False,
    ) -> list[Step]:
        """Ask the planner again for a rolled-back step without replacements."""
        step = self.store.get_step(plan_id, step_id)
        self._require(step, StepStatus.ROLLED_BACK, "replan")
        if self.store.load(plan_id).replacements(step.id):
            raise InvalidTransition(f"{step.id} has already been re-planned")
        return self._append_replacements(step, Decision.REQUEST_SPLIT if split else Decision.REJECT, note)

    def abandon_plan(self, plan_id: str, reason: str = "plan abandoned") -> PlanSnapshot:
        """Abandon every unfinished step and the plan itself."""
        snapshot = self.store.load(plan_id)
        for step in snapshot.execution_order():
            if step.is_terminal:
                continue
            if step.status == StepStatus.APPROVED:
                # Approved work stays; only the post-approval tail is skipped
                continue
            self.abandon_step(plan_id, step.id, reason)

        plan = self.store.load(plan_id).plan
        plan.status = PlanStatus.ABANDONED
        plan.cursor_step_id = None
        self.store.save_plan(plan)
        logger.info("PIPELINE: Plan %s abandoned", plan_id)
        return self.store.load(plan_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, step: Step, status: StepStatus, action: str) -> None:
        if step.status != status:
            raise InvalidTransition(
                f"Cannot {action} {step.id}: it is {step.status.value}, expected {status.value}"
            )

    def _repo_state(self, step: Step) -> RepoState:
        checkpoint = self._pre_checkpoint(step)
        return RepoState(root=self.repo_root, base_ref=checkpoint.ref if checkpoint else None)

    def _pre_checkpoint(self, step: Step) -> Checkpoint | None:
        if not step.pre_checkpoint_id:
            return None
        return self.store.get_checkpoint(step.plan_id, step.pre_checkpoint_id)

    def _checkpoint(self, step: Step, kind: CheckpointKind) -> Checkpoint | None:
        """Take (or, after a crash, reuse) the step's checkpoint of this kind."""
        if self.vcs is None:
            return None

        # A step takes at most one checkpoint of each kind; reuse it after a crash
        for existing in self.store.checkpoints(step.plan_id, step_id=step.id):
            if existing.kind == kind:
                logger.info("PIPELINE: Reusing %s checkpoint %s for %s", kind.value, existing.id, step.id)
                return existing

        label = "pre-step" if kind == CheckpointKind.PRE_STEP else "post-step"
        try:
            ref = self.vcs.checkpoint(
                f"{label} {step.id}: {step.description}",
                metadata={"plan_id": step.plan_id, "step_id": step.id, "kind": kind.value},
            )
        except GitError as e:
            logger.warning("PIPELINE: %s checkpoint failed for %s: %s", label, step.id, e)
            raise StageError(f"Could not take {label} checkpoint for {step.id}: {e}") from e

        checkpoint = Checkpoint(step_id=step.id, kind=kind, ref=ref)
        self.store.append_checkpoint(step.plan_id, checkpoint)
        logger.info("PIPELINE: %s checkpoint %s for %s at %s", label, checkpoint.id, step.id, ref[:12])
        return checkpoint

    def _retry_vcs(self, step: Step, label: str, call: Callable[[], _T]) -> _T | None:
        """Run a version-control call under the stage retry policy.

        When every attempt fails the step is blocked with ``stage_error`` and
        None is returned.
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                return call()
            except StageError as e:
                error = e
            if attempts >= self.executor.retry_limit:
                break
            delay = self.executor.backoff_seconds * (self.executor.backoff_multiplier ** (attempts - 1))
            logger.warning(
                "PIPELINE: %s failed for %s (attempt %d/%d); retrying in %.1fs",
                label,
                step.id,
                attempts,
                self.executor.retry_limit,
                delay,
            )
            self.executor.sleep(delay)

        self.machine.update(step, retry_count=attempts)
        self.machine.block(step, BlockedKind.STAGE_ERROR, f"{label} failed after {attempts} attempts: {error}")
        return None

    def _last_decision(self, step: Step) -> ApprovalDecision | None:
        decisions = self.store.approvals(step.plan_id, step_id=step.id)
        return decisions[-1] if decisions else None

    def _sync_plan(self, plan_id: str, cursor: Step | None) -> None:
        """Persist the plan cursor and status if they changed."""
        plan = self.store.load(plan_id).plan
        cursor_id = cursor.id if cursor else None
        status = plan.status
        if status in (PlanStatus.DRAFT, PlanStatus.ACTIVE):
            status = PlanStatus.COMPLETED if cursor is None else PlanStatus.ACTIVE
        if plan.cursor_step_id == cursor_id and plan.status == status:
            return
        plan.cursor_step_id = cursor_id
        plan.status = status
        self.store.save_plan(plan)

    def _print_blocked(self, step: Step) -> None:
        kind = step.blocked_kind.value if step.blocked_kind else "blocked"
        self.console.print(f"[red]Step blocked ({kind}) at {_stage_name(step)}: {step.blocked_reason}[/red]")
        self.console.print("[dim]Use retry, rebudget, rollback, cancel or abandon to continue.[/dim]")


def _stage_name(step: Step) -> str | None:
    if step.status in (StepStatus.PENDING, StepStatus.COMPLETED, StepStatus.ABANDONED, StepStatus.ROLLED_BACK):
        return None
    if step.current_stage_index < len(STAGE_SEQUENCE):
        return STAGE_SEQUENCE[step.current_stage_index].value
    return None


def build_orchestrator(
    config: Config,
    console: Console | None = None,
    auto_approve: bool | None = None,
    approval_callback: ApprovalCallback | None = None,
    planner: FeaturePlanner | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Orchestrator:
    """Wire an orchestrator from configuration.

    Args:
        config: Loaded configuration
        console: Rich console for output
        auto_approve: Override ``[approval] auto_approve``
        approval_callback: Custom approval handler
        planner: Feature planner (defaults to SimpleFeaturePlanner)
        sleep: Sleep function used for retry backoff

    Returns:
        Ready-to-use Orchestrator
    """
    console = console or Console()
    repo_root = config.repo_dir
    state_dir = config.state_path
    store = StateStore(state_dir)

    vcs: VersionControl | None = None
    if config.git.enabled:
        exclude = []
        try:
            exclude.append(str(state_dir.resolve().relative_to(repo_root)))
        except ValueError:
            pass  # State directory lives outside the repository
        vcs = LocalGitVersioner(
            repo_root,
            commit_prefix=config.git.commit_prefix,
            exclude=exclude,
            test_patterns=config.verification.test_file_patterns,
        )

    registry = StageRegistry()
    for kind, stage in config.stages.items():
        if stage.command:
            registry.register(
                CommandStageProcessor(
                    kind,
                    stage.command,
                    vcs=vcs,
                    timeout=int(config.executor.stage_timeout_seconds),
                    allowed_commands=set(stage.allowed_commands),
                )
            )
    if StageKind.VERIFICATION not in registry:
        registry.register(
            VerificationStageProcessor(
                CommandVerificationRunner(
                    config.verification.commands,
                    timeout=config.verification.timeout_seconds,
                )
            )
        )

    cancel_event = threading.Event()
    machine = StepStateMachine(store)
    executor = StagePipelineExecutor(
        store,
        registry,
        machine=machine,
        validator=BudgetValidator(),
        retry_limit=config.executor.retry_limit,
        stage_timeout=config.executor.stage_timeout_seconds,
        backoff_seconds=config.executor.backoff_seconds,
        backoff_multiplier=config.executor.backoff_multiplier,
        verification_fix_attempts=config.executor.verification_fix_attempts,
        sleep=sleep,
        cancellation_check=cancel_event.is_set,
    )
    approvals = ApprovalManager(
        console=console,
        auto_approve=config.approval.auto_approve if auto_approve is None else auto_approve,
        approval_callback=approval_callback,
    )
    return Orchestrator(
        store,
        executor,
        approvals,
        planner=planner,
        vcs=vcs,
        rollback=RollbackController(store, vcs, machine),
        repo_root=repo_root,
        rollback_on_budget_violation=config.rollback.on_budget_violation,
        max_split_depth=config.rollback.max_split_depth,
        schema_migration_planning=config.executor.schema_migration_planning,
        console=console,
        cancel_event=cancel_event,
    )
