"""Step state machine.

Every step status change goes through ``StepStateMachine.transition``, which
checks the transition table and persists the step.
"""

import logging
from dataclasses import dataclass
from typing import Any

from schemas.plan import BlockedKind, Step, StepStatus

from .errors import InvalidTransition
from .state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """Defines a valid step status transition."""

    from_status: StepStatus
    to_status: StepStatus
    backward: bool = False  # Only the rollback controller may take these


class StepStateMachine:
    """Transition table and persistence for step status.

    Manages:
    - Valid status transitions
    - Rollback-only (backward) transitions
    - Persisting every transition through the state store
    """

    TRANSITIONS: list[Transition] = [
        # Happy path
        Transition(StepStatus.PENDING, StepStatus.IN_PROGRESS),
        Transition(StepStatus.IN_PROGRESS, StepStatus.IN_PROGRESS),  # next stage
        Transition(StepStatus.IN_PROGRESS, StepStatus.AWAITING_APPROVAL),
        Transition(StepStatus.AWAITING_APPROVAL, StepStatus.APPROVED),
        Transition(StepStatus.APPROVED, StepStatus.COMPLETED),
        # Rejection
        Transition(StepStatus.AWAITING_APPROVAL, StepStatus.REJECTED),
        # Blocking and operator recovery
        Transition(StepStatus.IN_PROGRESS, StepStatus.BLOCKED),
        Transition(StepStatus.APPROVED, StepStatus.BLOCKED),
        Transition(StepStatus.AWAITING_APPROVAL, StepStatus.BLOCKED),
        Transition(StepStatus.REJECTED, StepStatus.BLOCKED),  # rollback failed
        Transition(StepStatus.BLOCKED, StepStatus.IN_PROGRESS),
        Transition(StepStatus.BLOCKED, StepStatus.APPROVED),
        # Abandon
        Transition(StepStatus.PENDING, StepStatus.ABANDONED),
        Transition(StepStatus.BLOCKED, StepStatus.ABANDONED),
        Transition(StepStatus.ROLLED_BACK, StepStatus.ABANDONED),
        # Rollback
        Transition(StepStatus.REJECTED, StepStatus.ROLLED_BACK, backward=True),
        Transition(StepStatus.BLOCKED, StepStatus.ROLLED_BACK, backward=True),
        Transition(StepStatus.AWAITING_APPROVAL, StepStatus.ROLLED_BACK, backward=True),
        Transition(StepStatus.IN_PROGRESS, StepStatus.ROLLED_BACK, backward=True),
        Transition(StepStatus.PENDING, StepStatus.ROLLED_BACK, backward=True),
        Transition(StepStatus.APPROVED, StepStatus.ROLLED_BACK, backward=True),  # abandoned before completion
    ]

    def __init__(self, store: StateStore) -> None:
        """Initialize state machine.

        Args:
            store: State store every transition is persisted to
        """
        self.store = store
        self._transition_map: dict[tuple[StepStatus, StepStatus], Transition] = {
            (t.from_status, t.to_status): t for t in self.TRANSITIONS
        }

    def can_transition(self, step: Step, to_status: StepStatus, by_rollback: bool = False) -> bool:
        """Check if a transition is valid for this caller."""
        transition = self._transition_map.get((step.status, to_status))
        if transition is None:
            return False
        return by_rollback or not transition.backward

    def transition(
        self,
        step: Step,
        to_status: StepStatus,
        by_rollback: bool = False,
        **changes: Any,
    ) -> Step:
        """Move a step to a new status and persist it.

        Args:
            step: Step to transition (updated in place)
            to_status: Target status
            by_rollback: True only when called by the rollback controller
            **changes: Other step fields to set in the same write

        Returns:
            The persisted step

        Raises:
            InvalidTransition: If the table does not allow the move
            Conflict: If the stored step changed since it was loaded
        """
        if not self.can_transition(step, to_status, by_rollback=by_rollback):
            raise InvalidTransition(
                f"Step {step.id}: {step.status.value} -> {to_status.value} is not allowed"
                + ("" if by_rollback else " (outside rollback)")
            )

        from_status = step.status
        for key, value in changes.items():
            setattr(step, key, value)
        step.status = to_status
        if to_status != StepStatus.BLOCKED:
            step.blocked_kind = changes.get("blocked_kind")
            step.blocked_reason = changes.get("blocked_reason")

        saved = self.store.save_step(step)
        logger.info(
            "STEP: %s %s -> %s (stage %d)",
            step.id,
            from_status.value,
            to_status.value,
            step.current_stage_index,
        )
        return saved

    def block(self, step: Step, kind: BlockedKind, reason: str) -> Step:
        """Move a step to ``blocked`` with its reason.

        A step that is already blocked keeps its status and takes the new
        kind and reason.
        """
        if step.status == StepStatus.BLOCKED:
            logger.info("STEP: %s still blocked, now %s", step.id, kind.value)
            return self.update(step, blocked_kind=kind, blocked_reason=reason)
        return self.transition(step, StepStatus.BLOCKED, blocked_kind=kind, blocked_reason=reason)

    def update(self, step: Step, **changes: Any) -> Step:
        """Persist non-status changes (stage index, retry count, budget)."""
        for key, value in changes.items():
            setattr(step, key, value)
        return self.store.save_step(step)
