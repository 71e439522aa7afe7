"""Verification runner.

Wraps whatever test/lint/type-check tooling is configured. Failures are
reported, never auto-fixed.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from agents.base import RepoState

from .shell_tool import ShellTool

logger = logging.getLogger(__name__)


@dataclass
class CommandReport:
    """Outcome of one verification command."""

    command: str
    passed: bool
    output: str = ""


@dataclass
class VerificationReport:
    """Verdict of a verification run."""

    clean: bool
    log: str = ""
    commands: list[CommandReport] = field(default_factory=list)

    @property
    def failed_commands(self) -> list[str]:
        return [c.command for c in self.commands if not c.passed]


@runtime_checkable
class VerificationRunner(Protocol):
    """Protocol for verification collaborators."""

    def run(self, repo: RepoState, cancel_event: threading.Event | None = None) -> VerificationReport:
        ...


class CommandVerificationRunner:
    """Runs configured commands in the repository; clean only if all pass.

    With no commands configured the run is clean.
    """

    def __init__(
        self,
        commands: list[str],
        timeout: float = 600,
        allowed_commands: set[str] | None = None,
    ) -> None:
        self.commands = list(commands)
        self.timeout = timeout
        self.allowed_commands = allowed_commands

    def run(self, repo: RepoState, cancel_event: threading.Event | None = None) -> VerificationReport:
        shell = ShellTool(
            working_dir=repo.root,
            timeout=self.timeout,
            allowed_commands=self.allowed_commands,
        )
        reports: list[CommandReport] = []
        log_parts: list[str] = []

        for command in self.commands:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("VERIFY: Cancelled before %s", command)
                break
            logger.info("VERIFY: Running %s", command)
            result = shell.execute(command, cancel_event=cancel_event)
            passed = result.success
            output = result.text
            reports.append(CommandReport(command=command, passed=passed, output=output))
            status = "PASS" if passed else "FAIL"
            log_parts.append(f"$ {command}\n[{status}]\n{output}".rstrip())
            if not passed:
                logger.warning("VERIFY: %s failed", command)

        clean = len(reports) == len(self.commands) and all(r.passed for r in reports)
        return VerificationReport(clean=clean, log="\n\n".join(log_parts), commands=reports)
