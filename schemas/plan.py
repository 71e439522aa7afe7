"""Plan and step schema.

A plan is the ordered set of size-bounded steps that realise one feature
request. Steps are the unit the orchestrator drives through the stage
pipeline.
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


def new_id(prefix: str) -> str:
    """Generate a short, prefixed identifier."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class PlanStatus(str, Enum):
    """Overall plan status."""

    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class StepStatus(str, Enum):
    """Step lifecycle status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    ROLLED_BACK = "rolled_back"
    ABANDONED = "abandoned"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.ABANDONED})


class BlockedKind(str, Enum):
    """Why a step is blocked."""

    BUDGET_EXCEEDED = "budget_exceeded"
    VERIFICATION_FAILED = "verification_failed"
    STAGE_TIMEOUT = "stage_timeout"
    STAGE_ERROR = "stage_error"
    ROLLBACK_FAILURE = "rollback_failure"


class StepBudget(BaseModel):
    """Hard size limits for one step's change."""

    max_files_changed: int = Field(3, ge=0, description="Max files changed")
    max_lines_added: int = Field(150, ge=0, description="Max lines added")
    max_files_created: int = Field(2, ge=0, description="Max new files")
    max_test_files: int = Field(2, ge=0, description="Max test files touched")

    def halved(self) -> "StepBudget":
        """Budget for one half of a split step (rounded up, never zero)."""
        return StepBudget(
            max_files_changed=max(1, -(-self.max_files_changed // 2)),
            max_lines_added=max(1, -(-self.max_lines_added // 2)),
            max_files_created=-(-self.max_files_created // 2),
            max_test_files=-(-self.max_test_files // 2),
        )


class Step(BaseModel):
    """A single bounded unit of work."""

    id: str = Field(default_factory=lambda: new_id("step"), description="Step id")
    plan_id: str = Field(..., description="Owning plan")
    sequence_index: int = Field(..., ge=0, description="Position in the plan arena")
    description: str = Field(..., description="What this step changes")
    budget: StepBudget = Field(default_factory=StepBudget, description="Size budget")

    current_stage_index: int = Field(0, ge=0, description="Index into the stage sequence")
    status: StepStatus = Field(StepStatus.PENDING, description="Lifecycle status")

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    # Checkpoint references
    pre_checkpoint_id: str | None = Field(None, description="PreStep checkpoint id")
    last_checkpoint_id: str | None = Field(None, description="Most recent checkpoint id")

    # Re-planning lineage
    parent_step_id: str | None = Field(None, description="Step this one replaces")
    replaced_by: list[str] = Field(
        default_factory=list,
        description="Steps appended when this step was re-planned",
    )

    # Failure info
    blocked_kind: BlockedKind | None = Field(None, description="Why the step is blocked")
    blocked_reason: str | None = Field(None, description="Operator-facing detail")
    retry_count: int = Field(0, ge=0, description="Attempts used on the current stage")

    version: int = Field(0, ge=0, description="Optimistic concurrency counter")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def touch(self) -> None:
        self.updated_at = datetime.now()


class Plan(BaseModel):
    """Ordered steps for one feature request.

    ``step_ids`` is an append-only arena: re-planned steps are appended,
    existing entries are never removed or reordered.
    """

    id: str = Field(default_factory=lambda: new_id("plan"), description="Plan id")
    feature_description: str = Field(..., description="Original feature request")
    status: PlanStatus = Field(PlanStatus.DRAFT, description="Plan status")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    step_ids: list[str] = Field(default_factory=list, description="Step arena")
    cursor_step_id: str | None = Field(None, description="Step eligible to run next")
    version: int = Field(0, ge=0, description="Optimistic concurrency counter")

    def touch(self) -> None:
        self.updated_at = datetime.now()

    class Config:
        json_schema_extra = {
            "example": {
                "id": "plan-3f2a9c1e7b44",
                "feature_description": "Add login rate-limit",
                "status": "active",
                "step_ids": ["step-0a1b2c3d4e5f"],
            }
        }
