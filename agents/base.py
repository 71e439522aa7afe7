"""Base stage processor interface for pipeline stages."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from schemas.execution import DiffMetrics, StageKind
from schemas.plan import Step


@dataclass
class RepoState:
    """Repository handle passed to stage processors.

    Attributes:
        root: Working tree root
        base_ref: PreStep checkpoint ref for the step (None before the first checkpoint)
    """

    root: Path
    base_ref: str | None = None


@dataclass
class StageOutput:
    """Standard output format for stage processors.

    Attributes:
        success: Whether the processor completed its work
        artifact: Reference to the produced artifact (patch handle, path, log)
        metrics: Size of the change this stage made
        error: Error message if not successful
        clean: Verification verdict (only set by the verification stage)
        log: Free-form log output
        data: Extra structured output
    """

    success: bool
    artifact: str | None = None
    metrics: DiffMetrics = field(default_factory=DiffMetrics)
    error: str | None = None
    clean: bool | None = None
    log: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        status = "OK" if self.success else "FAILED"
        clean_str = f", clean={self.clean}" if self.clean is not None else ""
        return f"StageOutput({status}, artifact={self.artifact!r}{clean_str})"


@dataclass
class StageRequest:
    """Standard input format for stage processors.

    Attributes:
        step: The step being processed
        repo: Repository state
        prior_artifacts: Outputs of earlier stages of this step, keyed by stage
        attempt: 1-based attempt number for this stage
        cancel_event: Set when the executor abandons this attempt (timeout or
            cancellation); long-running processors should stop when it is set
    """

    step: Step
    repo: RepoState
    prior_artifacts: dict[StageKind, StageOutput] = field(default_factory=dict)
    attempt: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def get_artifact(self, stage: StageKind) -> StageOutput | None:
        return self.prior_artifacts.get(stage)


class StageProcessor(ABC):
    """Abstract base class for stage processors.

    Each processor handles exactly one stage kind. The executor dispatches
    by ``kind``; processors never see other stages' requests.

    Example:
        class DesignWriter(StageProcessor):
            kind = StageKind.DESIGN

            def invoke(self, request: StageRequest) -> StageOutput:
                path = request.repo.root / "docs" / f"{request.step.id}.md"
                path.write_text(request.step.description)
                return StageOutput(success=True, artifact=str(path))
    """

    kind: StageKind

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(f"stage.{self.kind.value}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind.value!r})"

    @abstractmethod
    def invoke(self, request: StageRequest) -> StageOutput:
        """Run the stage for one step.

        Args:
            request: Step, repository state and prior artifacts

        Returns:
            StageOutput with artifact and metrics. Raising is treated as a failure.
        """
        ...

    def _log_run_start(self, request: StageRequest) -> float:
        self.logger.info(
            "Starting %s for %s (attempt %d, prior: %s)",
            self.kind.value,
            request.step.id,
            request.attempt,
            [k.value for k in request.prior_artifacts],
        )
        return time.time()

    def _log_run_end(self, output: StageOutput, start_time: float) -> None:
        duration = time.time() - start_time
        if output.success:
            self.logger.info("Completed %s in %.2fs (%s)", self.kind.value, duration, output.artifact)
        else:
            self.logger.warning("Failed %s in %.2fs: %s", self.kind.value, duration, output.error)


class NoopStageProcessor(StageProcessor):
    """Placeholder for stages with no configured collaborator."""

    def __init__(self, kind: StageKind) -> None:
        self.kind = kind
        super().__init__()

    def invoke(self, request: StageRequest) -> StageOutput:
        self.logger.debug("No processor configured for %s; passing through", self.kind.value)
        return StageOutput(success=True, artifact=None, log=f"{self.kind.value}: no-op")


class StageRegistry:
    """Maps stage kinds to processors. Dispatch is by tag only."""

    def __init__(self, processors: Iterable[StageProcessor] = ()) -> None:
        self._processors: dict[StageKind, StageProcessor] = {}
        for processor in processors:
            self.register(processor)

    def register(self, processor: StageProcessor) -> None:
        if processor.kind == StageKind.HUMAN_APPROVAL:
            raise ValueError("Human approval is handled by the orchestrator, not a processor")
        self._processors[processor.kind] = processor

    def get(self, kind: StageKind) -> StageProcessor:
        """Processor for a stage, or a no-op placeholder."""
        if kind not in self._processors:
            self._processors[kind] = NoopStageProcessor(kind)
        return self._processors[kind]

    def __contains__(self, kind: StageKind) -> bool:
        return kind in self._processors

    def __len__(self) -> int:
        return len(self._processors)
