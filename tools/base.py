"""Base tool interface for deterministic operations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ToolStatus(Enum):
    """How a command run ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    REFUSED = "refused"


@dataclass
class ToolResult:
    """Captured outcome of one command run."""

    status: ToolStatus
    command: str = ""
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == ToolStatus.SUCCESS

    @property
    def text(self) -> str:
        """stdout and stderr joined, or the error when nothing was printed."""
        parts = [p.rstrip() for p in (self.stdout, self.stderr) if p.strip()]
        return "\n".join(parts) if parts else (self.error or "")

    def last_line(self) -> str | None:
        """Last non-empty stdout line."""
        lines = [line.strip() for line in self.stdout.splitlines() if line.strip()]
        return lines[-1] if lines else None


class BaseTool(ABC):
    """Abstract base class for tools.

    Stage processors and the verification runner go through tools so every
    external command reports back in the same shape.
    """

    name: str = "base_tool"

    @abstractmethod
    def execute(self, command: str | list[str], **kwargs: Any) -> ToolResult:
        """Run ``command`` and capture its outcome."""
        ...
