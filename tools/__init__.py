"""Tools module for pipeline operations.

Provides deterministic tool abstractions for:
- Shell commands (test runners, linters, type checkers, stage scripts)
- Verification runs over the configured commands
"""

from .base import BaseTool, ToolResult, ToolStatus
from .shell_tool import ShellTool
from .verification import (
    CommandReport,
    CommandVerificationRunner,
    VerificationReport,
    VerificationRunner,
)

__all__ = [
    "BaseTool",
    "ToolResult",
    "ToolStatus",
    "ShellTool",
    "CommandReport",
    "CommandVerificationRunner",
    "VerificationReport",
    "VerificationRunner",
]
