"""Shell command runner for stage scripts and verification checks."""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Any

from .base import BaseTool, ToolResult, ToolStatus

logger = logging.getLogger(__name__)

# Allows any executable when present in the allowed set
ALLOW_ANY = "*"

# How often a running command checks its deadline and cancel event
POLL_SECONDS = 0.1

PYTHON_TOOLS = frozenset(
    {"python", "python3", "pytest", "ruff", "flake8", "mypy", "pyright", "black", "isort", "bandit", "coverage", "tox", "nox"}
)
NODE_TOOLS = frozenset({"node", "npm", "npx", "yarn", "pnpm", "eslint", "prettier", "tsc", "jest", "vitest"})
BUILD_TOOLS = frozenset({"cargo", "go", "make"})
SHELL_TOOLS = frozenset({"git", "sh", "bash", "true", "false", "echo"})

DEFAULT_ALLOWED = PYTHON_TOOLS | NODE_TOOLS | BUILD_TOOLS | SHELL_TOOLS


class ShellTool(BaseTool):
    """Runs allow-listed commands in a working directory.

    A command whose executable is not in the allow-list is refused without
    running. Extra environment variables are layered over the current
    environment.
    """

    name = "shell"

    def __init__(
        self,
        working_dir: Path | str | None = None,
        timeout: float = 300,
        allowed_commands: set[str] | None = None,
    ) -> None:
        """Initialize shell tool.

        Args:
            working_dir: Working directory for commands
            timeout: Default timeout in seconds
            allowed_commands: Executables allowed on top of the defaults
        """
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.timeout = timeout
        self.allowed_commands = DEFAULT_ALLOWED | set(allowed_commands or ())

    def allows(self, executable: str) -> bool:
        return ALLOW_ANY in self.allowed_commands or Path(executable).name in self.allowed_commands

    def execute(
        self,
        command: str | list[str],
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        cancel_event: threading.Event | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Run a command and capture its output.

        Args:
            command: Command line or argv list
            timeout: Seconds before the command is killed (default: tool timeout)
            env: Variables layered over the current environment
            cancel_event: Kills the command when set

        Returns:
            ToolResult; a killed command reports TIMEOUT or CANCELLED
        """
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            return ToolResult(status=ToolStatus.REFUSED, error="Empty command")

        line = " ".join(argv)
        if not self.allows(argv[0]):
            return ToolResult(
                status=ToolStatus.REFUSED,
                command=line,
                error=f"Command not allowed: {Path(argv[0]).name}",
            )

        limit = timeout or self.timeout
        logger.debug("Running %s in %s", line, self.working_dir)
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=self.working_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env={**os.environ, **(env or {})},
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            # Missing executables land here as FileNotFoundError
            return ToolResult(
                status=ToolStatus.FAILURE,
                command=line,
                error=f"Could not run {argv[0]}: {e.strerror or e}",
                duration_seconds=time.monotonic() - started,
            )

        killed: ToolStatus | None = None
        deadline = started + limit
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if killed is not None:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    killed = ToolStatus.CANCELLED
                elif time.monotonic() >= deadline:
                    killed = ToolStatus.TIMEOUT
                else:
                    continue
                logger.warning("Killing %s (%s)", line, killed.value)
                _kill(proc)

        duration = time.monotonic() - started
        if killed is not None:
            reason = f"Command timed out after {limit}s" if killed == ToolStatus.TIMEOUT else "Command cancelled"
            return ToolResult(
                status=killed,
                command=line,
                stdout=stdout or "",
                stderr=stderr or "",
                returncode=proc.returncode,
                error=reason,
                duration_seconds=duration,
            )

        failed = proc.returncode != 0
        return ToolResult(
            status=ToolStatus.FAILURE if failed else ToolStatus.SUCCESS,
            command=line,
            stdout=stdout,
            stderr=stderr,
            returncode=proc.returncode,
            error=(stderr.strip() or f"exit code {proc.returncode}") if failed else None,
            duration_seconds=duration,
        )


def _kill(proc: subprocess.Popen) -> None:
    """Kill a command and everything it started."""
    if os.name != "posix":
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
