"""Error taxonomy for the step orchestrator.

Stage-local errors are recovered inside the control loop. Only
``PersistenceError`` (and its ``Conflict`` subclass) and ``RollbackFailure``
propagate out of it.
"""

from schemas.execution import GateOutcome


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class BudgetExceeded(OrchestratorError):
    """Gate reported a budget violation."""

    def __init__(self, outcome: GateOutcome) -> None:
        self.outcome = outcome
        super().__init__(f"Budget exceeded ({outcome.kind.value if outcome.kind else '?'}): {outcome.detail}")


class VerificationFailed(OrchestratorError):
    """Automated checks did not come back clean."""

    def __init__(self, log: str) -> None:
        self.log = log
        super().__init__("Verification failed")


class StageError(OrchestratorError):
    """A stage processor failed."""


class StageTimeout(StageError):
    """A stage processor did not answer within its timeout."""


class StageCancelled(OrchestratorError):
    """An in-flight stage call was cancelled by the operator."""


class ApprovalRejected(OrchestratorError):
    """Human rejected the step. Normal control flow, never raised out of the loop."""


class PersistenceError(OrchestratorError):
    """State store I/O failed. Fatal: the loop halts."""


class Conflict(PersistenceError):
    """Stored version advanced since the record was loaded."""

    def __init__(self, record_id: str, expected: int, actual: int) -> None:
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {record_id}: expected {expected}, stored {actual}"
        )


class PlanNotFound(OrchestratorError):
    """No plan with this id exists."""


class StepNotFound(OrchestratorError):
    """No step with this id exists in the plan."""


class InvalidTransition(OrchestratorError):
    """A step status change not in the transition table."""


class RollbackFailure(OrchestratorError):
    """Version control could not revert. Fatal for the step."""
