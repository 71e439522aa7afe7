"""Stage processors and planning collaborators.

Provides:
- StageProcessor: uniform interface every stage collaborator implements
- StageRegistry: dispatch of stages to processors by kind
- CommandStageProcessor: runs a configured command for a stage
- VerificationStageProcessor: wraps the verification runner
- SimpleFeaturePlanner: splits a feature request into steps and re-plans
"""

from .base import (
    NoopStageProcessor,
    RepoState,
    StageOutput,
    StageProcessor,
    StageRegistry,
    StageRequest,
)
from .command_stage import CommandStageProcessor
from .planner import FeaturePlanner, SimpleFeaturePlanner, StepDraft
from .verify_stage import VerificationStageProcessor

__all__ = [
    "NoopStageProcessor",
    "RepoState",
    "StageOutput",
    "StageProcessor",
    "StageRegistry",
    "StageRequest",
    "CommandStageProcessor",
    "FeaturePlanner",
    "SimpleFeaturePlanner",
    "StepDraft",
    "VerificationStageProcessor",
]
