"""Orchestrator module for stepforge.

Step-by-step plan execution with:
- A versioned, crash-safe state store
- A fixed stage pipeline per step with retries and timeouts
- Budget gates on every change
- Human approval of each step
- Rollback to the step's PreStep checkpoint
"""

from .budget import BudgetValidator
from .checkpoints import ApprovalManager, ApprovalResponse, ApprovalResult
from .errors import (
    ApprovalRejected,
    BudgetExceeded,
    Conflict,
    InvalidTransition,
    OrchestratorError,
    PersistenceError,
    PlanNotFound,
    RollbackFailure,
    StageCancelled,
    StageError,
    StageTimeout,
    StepNotFound,
    VerificationFailed,
)
from .executor import StagePipelineExecutor
from .rollback import RollbackController
from .runner import Orchestrator, PlanStatusReport, RunOutcome, StepReport, build_orchestrator
from .state_machine import StepStateMachine, Transition
from .state_store import PlanSnapshot, StateStore

__all__ = [
    "BudgetValidator",
    "ApprovalManager",
    "ApprovalResponse",
    "ApprovalResult",
    "ApprovalRejected",
    "BudgetExceeded",
    "Conflict",
    "InvalidTransition",
    "OrchestratorError",
    "PersistenceError",
    "PlanNotFound",
    "RollbackFailure",
    "StageCancelled",
    "StageError",
    "StageTimeout",
    "StepNotFound",
    "VerificationFailed",
    "StagePipelineExecutor",
    "RollbackController",
    "Orchestrator",
    "PlanStatusReport",
    "RunOutcome",
    "StepReport",
    "build_orchestrator",
    "StepStateMachine",
    "Transition",
    "PlanSnapshot",
    "StateStore",
]
