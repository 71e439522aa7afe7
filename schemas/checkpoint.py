"""Checkpoint, approval and rollback records.

All three are append-only: written once, never mutated.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .plan import new_id


class CheckpointKind(str, Enum):
    """When the snapshot was taken relative to the step."""

    PRE_STEP = "pre_step"
    POST_STEP = "post_step"


class Checkpoint(BaseModel):
    """Durable snapshot reference (e.g. a commit sha)."""

    id: str = Field(default_factory=lambda: new_id("ckpt"))
    step_id: str = Field(..., description="Step the snapshot belongs to")
    kind: CheckpointKind = Field(..., description="PreStep or PostStep")
    ref: str = Field(..., description="Version control reference")
    created_at: datetime = Field(default_factory=datetime.now)


class Decision(str, Enum):
    """Human decision at the approval stage."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_SPLIT = "request_split"


class ApprovalDecision(BaseModel):
    """Human input for a step awaiting approval."""

    step_id: str = Field(..., description="Step decided on")
    decision: Decision = Field(..., description="Approve, reject or split")
    note: str | None = Field(None, description="Optional reviewer note")
    decided_by: str = Field("user", description="Who decided")
    created_at: datetime = Field(default_factory=datetime.now)


class RollbackRecord(BaseModel):
    """Audit entry describing a reversal."""

    id: str = Field(default_factory=lambda: new_id("rb"))
    step_id: str = Field(..., description="Step rolled back")
    from_ref: str | None = Field(None, description="Repository ref before the rollback")
    to_ref: str | None = Field(None, description="Ref restored (PreStep checkpoint)")
    to_checkpoint_id: str | None = Field(None, description="Checkpoint restored")
    reason: str = Field(..., description="Why the step was rolled back")
    discarded_executions: list[str] = Field(
        default_factory=list,
        description="StageExecution ids discarded by this rollback",
    )
    created_at: datetime = Field(default_factory=datetime.now)
