"""Schemas module for orchestrator records.

Provides Pydantic models for:
- Plans, steps and budgets
- Stage executions, diff metrics and gate outcomes
- Checkpoints, approval decisions and rollback records
"""

from .checkpoint import (
    ApprovalDecision,
    Checkpoint,
    CheckpointKind,
    Decision,
    RollbackRecord,
)
from .execution import (
    PROCESSOR_STAGES,
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
from .plan import (
    TERMINAL_STEP_STATUSES,
    BlockedKind,
    Plan,
    PlanStatus,
    Step,
    StepBudget,
    StepStatus,
    new_id,
)

__all__ = [
    # Plan
    "BlockedKind",
    "Plan",
    "PlanStatus",
    "Step",
    "StepBudget",
    "StepStatus",
    "TERMINAL_STEP_STATUSES",
    "new_id",
    # Execution
    "DiffMetrics",
    "GateOutcome",
    "PROCESSOR_STAGES",
    "STAGE_SEQUENCE",
    "StageExecution",
    "StageKind",
    "StageResult",
    "UNGATED_STAGES",
    "ViolationKind",
    "stage_index",
    # Checkpoints
    "ApprovalDecision",
    "Checkpoint",
    "CheckpointKind",
    "Decision",
    "RollbackRecord",
]
