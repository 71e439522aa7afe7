"""Rollback controller.

The only component allowed to reset the working tree. Restores a step's
PreStep checkpoint, records which stage executions were discarded and moves
the step to ``rolled_back``.
"""

import logging

from local_storage.git_versioner import GitError, VersionControl
from schemas.checkpoint import RollbackRecord
from schemas.plan import BlockedKind, Step, StepStatus

from .errors import InvalidTransition, RollbackFailure
from .state_machine import StepStateMachine
from .state_store import StateStore

logger = logging.getLogger(__name__)


class RollbackController:
    """Reverts a step's work back to its PreStep checkpoint."""

    def __init__(
        self,
        store: StateStore,
        vcs: VersionControl | None,
        machine: StepStateMachine | None = None,
    ) -> None:
        """Initialize rollback controller.

        Args:
            store: State store for checkpoints and rollback records
            vcs: Version control collaborator (``None`` disables repository resets)
            machine: Step state machine
        """
        self.store = store
        self.vcs = vcs
        self.machine = machine or StepStateMachine(store)

    def rollback(self, step: Step, reason: str) -> RollbackRecord:
        """Roll a step back to its PreStep checkpoint.

        Calling this on a step that is already ``rolled_back`` returns the
        latest rollback record and leaves the repository alone.

        Args:
            step: Step to roll back (updated in place)
            reason: Why the step is being rolled back

        Returns:
            The rollback record

        Raises:
            RollbackFailure: If the repository could not be restored; the step
                is left ``blocked`` with ``rollback_failure``
            InvalidTransition: If the step cannot be rolled back from its status;
                nothing is reverted or recorded
        """
        if step.status == StepStatus.ROLLED_BACK:
            existing = self.store.rollbacks(step.plan_id, step_id=step.id)
            if existing:
                logger.info("ROLLBACK: %s already rolled back (%s)", step.id, existing[-1].id)
                return existing[-1]

        if not self.machine.can_transition(step, StepStatus.ROLLED_BACK, by_rollback=True):
            raise InvalidTransition(f"Cannot roll back {step.id} while {step.status.value}")

        checkpoint = (
            self.store.get_checkpoint(step.plan_id, step.pre_checkpoint_id)
            if step.pre_checkpoint_id
            else None
        )
        discarded = [e.id for e in self.store.stage_executions(step.plan_id, step_id=step.id)]

        from_ref = None
        if checkpoint is not None and self.vcs is not None:
            try:
                from_ref = self.vcs.current_ref()
                self.vcs.revert(checkpoint.ref)
            except GitError as e:
                logger.exception("ROLLBACK: Failed to restore %s for %s", checkpoint.ref, step.id)
                self.machine.block(step, BlockedKind.ROLLBACK_FAILURE, f"Rollback to {checkpoint.ref} failed: {e}")
                raise RollbackFailure(f"Could not restore {checkpoint.ref} for {step.id}: {e}") from e
        else:
            logger.info("ROLLBACK: %s has no PreStep checkpoint; logical rollback only", step.id)

        record = RollbackRecord(
            step_id=step.id,
            from_ref=from_ref,
            to_ref=checkpoint.ref if checkpoint else None,
            to_checkpoint_id=checkpoint.id if checkpoint else None,
            reason=reason,
            discarded_executions=discarded,
        )
        self.store.append_rollback(step.plan_id, record)

        self.machine.transition(
            step,
            StepStatus.ROLLED_BACK,
            by_rollback=True,
            current_stage_index=0,
            retry_count=0,
        )
        logger.info(
            "ROLLBACK: %s restored to %s (%d executions discarded): %s",
            step.id,
            record.to_ref or "<no checkpoint>",
            len(discarded),
            reason,
        )
        return record
