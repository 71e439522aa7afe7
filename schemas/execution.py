"""Stage execution schema.

One StageExecution is recorded per attempt of a stage for a step. Records
are immutable once finalized and kept for audit and rollback.
"""

from datetime import datetime
from enum import Enum
from fnmatch import fnmatch
from typing import Iterable

from pydantic import BaseModel, Field

from .plan import new_id

DEFAULT_TEST_FILE_PATTERNS = [
    "test_*.py",
    "*_test.py",
    "tests/*",
    "*/tests/*",
    "*.test.*",
    "*.spec.*",
]


class StageKind(str, Enum):
    """Closed set of stages, in pipeline order."""

    DESIGN = "design"
    TEST_AUTHORING = "test_authoring"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"
    REVIEW = "review"
    HUMAN_APPROVAL = "human_approval"
    SCHEMA_MIGRATION_PLANNING = "schema_migration_planning"


STAGE_SEQUENCE: list[StageKind] = list(StageKind)

# Stages executed by processors before a step waits for approval
PROCESSOR_STAGES: list[StageKind] = STAGE_SEQUENCE[: STAGE_SEQUENCE.index(StageKind.HUMAN_APPROVAL)]

# No code exists yet at design; approval is handled by the orchestrator
UNGATED_STAGES = frozenset({StageKind.DESIGN, StageKind.HUMAN_APPROVAL})


def stage_index(kind: StageKind) -> int:
    return STAGE_SEQUENCE.index(kind)


class StageResult(str, Enum):
    """Outcome of one stage attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ViolationKind(str, Enum):
    """Gate violation kinds, in check order."""

    FILES_CHANGED = "files_changed"
    FILES_CREATED = "files_created"
    TEST_FILES = "test_files"
    LINES_ADDED = "lines_added"
    VERIFICATION_FAILED = "verification_failed"


class DiffMetrics(BaseModel):
    """Size of a change."""

    changed_files: list[str] = Field(default_factory=list, description="Paths changed")
    created_files: list[str] = Field(default_factory=list, description="Paths created")
    test_files: list[str] = Field(default_factory=list, description="Test paths touched")
    lines_added: int = Field(0, ge=0)
    lines_removed: int = Field(0, ge=0)

    @property
    def files_changed(self) -> int:
        return len(self.changed_files)

    @property
    def files_created(self) -> int:
        return len(self.created_files)

    @property
    def test_files_touched(self) -> int:
        return len(self.test_files)

    @classmethod
    def from_paths(
        cls,
        changed: Iterable[str],
        created: Iterable[str] = (),
        lines_added: int = 0,
        lines_removed: int = 0,
        test_patterns: list[str] | None = None,
    ) -> "DiffMetrics":
        """Build metrics, classifying test files by glob pattern."""
        patterns = test_patterns or DEFAULT_TEST_FILE_PATTERNS
        changed = _unique(changed)
        return cls(
            changed_files=changed,
            created_files=_unique(created),
            test_files=[p for p in changed if is_test_path(p, patterns)],
            lines_added=lines_added,
            lines_removed=lines_removed,
        )

    @classmethod
    def combine(cls, metrics: Iterable["DiffMetrics"]) -> "DiffMetrics":
        """Cumulative metrics: path sets are unioned, line counts summed."""
        changed: list[str] = []
        created: list[str] = []
        tests: list[str] = []
        added = removed = 0
        for m in metrics:
            changed.extend(m.changed_files)
            created.extend(m.created_files)
            tests.extend(m.test_files)
            added += m.lines_added
            removed += m.lines_removed
        return cls(
            changed_files=_unique(changed),
            created_files=_unique(created),
            test_files=_unique(tests),
            lines_added=added,
            lines_removed=removed,
        )

    def summary(self) -> str:
        return (
            f"{self.files_changed} files (+{self.files_created} new, "
            f"{self.test_files_touched} tests), +{self.lines_added}/-{self.lines_removed} lines"
        )


def is_test_path(path: str, patterns: list[str]) -> bool:
    name = path.rsplit("/", 1)[-1]
    return any(fnmatch(path, p) or fnmatch(name, p) for p in patterns)


def _unique(paths: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for p in paths:
        seen.setdefault(p, None)
    return list(seen)


class GateOutcome(BaseModel):
    """Result of the budget gate for a stage."""

    passed: bool = Field(..., description="True when the gate passed")
    kind: ViolationKind | None = Field(None, description="First failing check")
    detail: str | None = Field(None, description="Human-readable detail")


class StageExecution(BaseModel):
    """One invocation of one stage for a step."""

    id: str = Field(default_factory=lambda: new_id("exec"), description="Execution id")
    step_id: str = Field(..., description="Step this execution belongs to")
    stage: StageKind = Field(..., description="Stage kind")
    attempt: int = Field(1, ge=1, description="1-based attempt number")
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: datetime | None = Field(None)
    result: StageResult = Field(..., description="Attempt outcome")

    artifact: str | None = Field(None, description="Artifact reference (patch, path, log)")
    metrics: DiffMetrics = Field(default_factory=DiffMetrics)
    error: str | None = Field(None, description="Error message if not successful")
    gate: GateOutcome | None = Field(None, description="Gate result for gated stages")

    @property
    def succeeded(self) -> bool:
        """Stage succeeded and, where gated, passed the gate."""
        return self.result == StageResult.SUCCESS and (self.gate is None or self.gate.passed)

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
