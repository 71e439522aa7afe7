"""Stage pipeline executor.

Drives one step through its fixed stage sequence, one stage at a time:
invoke the processor with a bounded timeout, record every attempt, retry
failures with backoff, gate successful stages against the budget and advance
the step's stage index only when the gate passes.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime
from typing import Callable

from agents.base import RepoState, StageOutput, StageRegistry, StageRequest
from schemas.execution import (
    STAGE_SEQUENCE,
    UNGATED_STAGES,
    DiffMetrics,
    GateOutcome,
    StageExecution,
    StageKind,
    StageResult,
    ViolationKind,
    stage_index,
)
from schemas.plan import BlockedKind, Step, StepStatus

from .budget import BudgetValidator
from .errors import StageCancelled, StageTimeout
from .state_machine import StepStateMachine
from .state_store import StateStore

logger = logging.getLogger(__name__)

APPROVAL_INDEX = stage_index(StageKind.HUMAN_APPROVAL)


class StagePipelineExecutor:
    """Sequences stage processors for a single step."""

    def __init__(
        self,
        store: StateStore,
        registry: StageRegistry,
        machine: StepStateMachine | None = None,
        validator: BudgetValidator | None = None,
        retry_limit: int = 2,
        stage_timeout: float = 600.0,
        backoff_seconds: float = 1.0,
        backoff_multiplier: float = 2.0,
        verification_fix_attempts: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        cancellation_check: Callable[[], bool] | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        """Initialize executor.

        Args:
            store: State store for stage execution records
            registry: Stage processors by kind
            machine: Step state machine (built from the store if omitted)
            validator: Budget gate
            retry_limit: Total attempts per stage before the step is blocked
            stage_timeout: Seconds to wait for a processor
            backoff_seconds: Delay before the second attempt
            backoff_multiplier: Growth factor for later delays
            verification_fix_attempts: Implementation re-runs after dirty verification
            sleep: Sleep function (injectable for tests)
            cancellation_check: Returns True when the in-flight stage should be aborted
            poll_interval: Seconds between cancellation checks while waiting
        """
        if retry_limit < 1:
            raise ValueError("retry_limit must be at least 1")
        self.store = store
        self.registry = registry
        self.machine = machine or StepStateMachine(store)
        self.validator = validator or BudgetValidator()
        self.retry_limit = retry_limit
        self.stage_timeout = stage_timeout
        self.backoff_seconds = backoff_seconds
        self.backoff_multiplier = backoff_multiplier
        self.verification_fix_attempts = verification_fix_attempts
        self.sleep = sleep
        self.cancellation_check = cancellation_check
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Step-level driving
    # ------------------------------------------------------------------

    def run(self, step: Step, repo: RepoState) -> Step:
        """Run the step from its current stage through review.

        Returns the step either still ``in_progress`` with its stage index at
        human approval (ready for the approval request) or ``blocked``.

        Raises:
            StageCancelled: If the cancellation check fired mid-stage
        """
        prior = self.prior_artifacts(step)

        while step.status == StepStatus.IN_PROGRESS and step.current_stage_index < APPROVAL_INDEX:
            kind = STAGE_SEQUENCE[step.current_stage_index]

            recorded = self.recorded_success(step, kind)
            if recorded is not None:
                logger.info("PIPELINE: %s already succeeded for %s; not re-running", kind.value, step.id)
            else:
                execution = self.run_stage(step, kind, repo, prior)
                if step.status != StepStatus.IN_PROGRESS or not execution.succeeded:
                    return step

            self.machine.transition(
                step,
                StepStatus.IN_PROGRESS,
                current_stage_index=step.current_stage_index + 1,
                retry_count=0,
            )

        return step

    def run_stage(
        self,
        step: Step,
        kind: StageKind,
        repo: RepoState,
        prior: dict[StageKind, StageOutput] | None = None,
    ) -> StageExecution:
        """Run one stage with retries, gating and the verification fix loop.

        On success the passing execution is returned and ``prior`` gains the
        stage output. Otherwise the step is blocked and the last execution is
        returned.
        """
        prior = prior if prior is not None else self.prior_artifacts(step)
        fixes_used = 0

        while True:
            execution = self._attempt_with_retries(step, kind, repo, prior, track_retries=True)
            if execution.result != StageResult.SUCCESS:
                return execution

            gate = execution.gate
            if gate is None or gate.passed:
                return execution

            if (
                gate.kind == ViolationKind.VERIFICATION_FAILED
                and fixes_used < self.verification_fix_attempts
            ):
                fixes_used += 1
                logger.info(
                    "PIPELINE: Verification failed for %s; implementation fix %d/%d",
                    step.id,
                    fixes_used,
                    self.verification_fix_attempts,
                )
                fix = self._attempt_with_retries(
                    step, StageKind.IMPLEMENTATION, repo, prior, track_retries=False
                )
                if fix.result != StageResult.SUCCESS:
                    return fix
                if fix.gate is not None and not fix.gate.passed:
                    return fix
                continue

            if gate.kind == ViolationKind.VERIFICATION_FAILED:
                self.machine.block(
                    step,
                    BlockedKind.VERIFICATION_FAILED,
                    f"Verification failed after {fixes_used} fix attempt(s): {_last_line(gate.detail)}",
                )
            return execution

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def recorded_success(self, step: Step, kind: StageKind) -> StageExecution | None:
        """Latest execution of a stage, if it succeeded and passed its gate."""
        executions = self.store.stage_executions(step.plan_id, step_id=step.id, stage=kind)
        if executions and executions[-1].succeeded:
            return executions[-1]
        return None

    def prior_artifacts(self, step: Step) -> dict[StageKind, StageOutput]:
        """Latest successful output of each stage this step has run."""
        prior: dict[StageKind, StageOutput] = {}
        for execution in self.store.stage_executions(step.plan_id, step_id=step.id):
            if execution.result == StageResult.SUCCESS:
                prior[execution.stage] = StageOutput(
                    success=True,
                    artifact=execution.artifact,
                    metrics=execution.metrics,
                )
        return prior

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _attempt_with_retries(
        self,
        step: Step,
        kind: StageKind,
        repo: RepoState,
        prior: dict[StageKind, StageOutput],
        track_retries: bool,
    ) -> StageExecution:
        attempts = step.retry_count if track_retries else 0

        while True:
            attempts += 1
            request = StageRequest(step=step, repo=repo, prior_artifacts=dict(prior), attempt=attempts)
            execution, output = self._invoke(step, kind, request)

            if execution.result == StageResult.SUCCESS and output is not None:
                execution.gate = self._gate(step, kind, execution, output)
                self.store.append_stage(step.plan_id, execution)
                if execution.gate is None or execution.gate.passed:
                    prior[kind] = output
                    if track_retries and step.retry_count:
                        self.machine.update(step, retry_count=0)
                    logger.info("PIPELINE: %s passed for %s (%s)", kind.value, step.id, execution.metrics.summary())
                    return execution

                logger.warning(
                    "PIPELINE: Gate violation at %s for %s: %s",
                    kind.value,
                    step.id,
                    execution.gate.detail,
                )
                if execution.gate.kind == ViolationKind.VERIFICATION_FAILED:
                    # The fix attempt reads the verification log from here
                    prior[kind] = output
                else:
                    self.machine.block(step, BlockedKind.BUDGET_EXCEEDED, execution.gate.detail or "budget exceeded")
                return execution

            self.store.append_stage(step.plan_id, execution)

            if execution.result == StageResult.CANCELLED:
                logger.warning("PIPELINE: %s cancelled for %s", kind.value, step.id)
                raise StageCancelled(f"Stage {kind.value} cancelled for {step.id}")

            if track_retries:
                self.machine.update(step, retry_count=attempts)

            if attempts >= self.retry_limit:
                blocked_kind = (
                    BlockedKind.STAGE_TIMEOUT
                    if execution.result == StageResult.TIMEOUT
                    else BlockedKind.STAGE_ERROR
                )
                self.machine.block(
                    step,
                    blocked_kind,
                    f"{kind.value} {execution.result.value} after {attempts} attempts: {execution.error}",
                )
                return execution

            delay = self.backoff_seconds * (self.backoff_multiplier ** (attempts - 1))
            logger.warning(
                "PIPELINE: %s %s for %s (attempt %d/%d); retrying in %.1fs",
                kind.value,
                execution.result.value,
                step.id,
                attempts,
                self.retry_limit,
                delay,
            )
            self.sleep(delay)

    def _gate(
        self,
        step: Step,
        kind: StageKind,
        execution: StageExecution,
        output: StageOutput,
    ) -> GateOutcome | None:
        if kind in UNGATED_STAGES:
            return None
        if kind == StageKind.VERIFICATION and output.clean is False:
            return self.validator.verification_failed(output.log)
        recorded = self.store.stage_executions(step.plan_id, step_id=step.id)
        return self.validator.evaluate(step, recorded, pending=execution)

    def _invoke(
        self,
        step: Step,
        kind: StageKind,
        request: StageRequest,
    ) -> tuple[StageExecution, StageOutput | None]:
        """Invoke the processor in a worker thread and wait with a deadline.

        A timed-out or cancelled attempt returns only after its worker has
        exited, so two attempts never write to the working tree at once.
        """
        processor = self.registry.get(kind)
        started = datetime.now()
        logger.info("PIPELINE: Starting %s for %s (attempt %d)", kind.value, step.id, request.attempt)

        def finish(result: StageResult, output: StageOutput | None = None, error: str | None = None) -> tuple[StageExecution, StageOutput | None]:
            execution = StageExecution(
                step_id=step.id,
                stage=kind,
                attempt=request.attempt,
                started_at=started,
                finished_at=datetime.now(),
                result=result,
                artifact=output.artifact if output else None,
                metrics=output.metrics if output and result == StageResult.SUCCESS else DiffMetrics(),
                error=error,
            )
            return execution, output

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{kind.value}")
        future = pool.submit(processor.invoke, request)
        deadline = time.monotonic() + self.stage_timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._abandon(step, kind, request, future, "timed out")
                    return finish(StageResult.TIMEOUT, error=f"timed out after {self.stage_timeout}s")
                if self.cancellation_check is not None and self.cancellation_check():
                    self._abandon(step, kind, request, future, "cancelled")
                    return finish(StageResult.CANCELLED, error="cancelled by operator")
                try:
                    output = future.result(timeout=min(self.poll_interval, remaining))
                except FuturesTimeout:
                    continue
                except StageTimeout as e:
                    return finish(StageResult.TIMEOUT, error=str(e) or "stage reported timeout")
                except Exception as e:
                    logger.exception("PIPELINE: %s raised for %s", kind.value, step.id)
                    return finish(StageResult.FAILURE, error=f"{type(e).__name__}: {e}")

                if not isinstance(output, StageOutput):
                    return finish(StageResult.FAILURE, error=f"processor returned {type(output).__name__}")
                if not output.success:
                    return finish(StageResult.FAILURE, output, error=output.error or "stage failed")
                return finish(StageResult.SUCCESS, output)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _abandon(
        self,
        step: Step,
        kind: StageKind,
        request: StageRequest,
        future: Future,
        why: str,
    ) -> None:
        """Signal the in-flight processor to stop and wait until it has."""
        request.cancel_event.set()
        if future.cancel():
            return
        logger.warning("PIPELINE: %s %s for %s; waiting for the processor to stop", kind.value, why, step.id)
        started = time.monotonic()
        wait([future])
        logger.info("PIPELINE: %s stopped after %.1fs", kind.value, time.monotonic() - started)


def _last_line(text: str | None) -> str:
    if not text:
        return ""
    lines = [line for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else ""
