"""Local git versioner for step checkpoints.

Implements the version control collaborator used by the orchestrator:
checkpoints are commits, diff stats come from ``git diff --numstat`` and
reverting is a hard reset plus clean.
"""

from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from schemas.execution import DEFAULT_TEST_FILE_PATTERNS, DiffMetrics

logger = logging.getLogger(__name__)

COMMIT_PREFIX = "[stepforge]"


class GitError(Exception):
    """Raised when a git operation fails."""

    pass


@runtime_checkable
class VersionControl(Protocol):
    """Protocol for the version control collaborator."""

    def checkpoint(self, message: str, metadata: dict[str, Any] | None = None) -> str:
        """Snapshot the working tree and return a reference."""
        ...

    def diff_stats(self, from_ref: str, to_ref: str | None = None) -> DiffMetrics:
        """Measure the change between two refs (``None`` = working tree)."""
        ...

    def revert(self, ref: str) -> None:
        """Restore the working tree to ``ref``."""
        ...

    def current_ref(self) -> str | None:
        """Reference of the current snapshot, if any."""
        ...


class LocalGitVersioner:
    """Checkpoint, measure and revert a local git working tree.

    Example:
        >>> versioner = LocalGitVersioner(Path("/my/project"), exclude=[".stepforge"])
        >>> pre = versioner.checkpoint("pre-step step-1")
        >>> metrics = versioner.diff_stats(pre)
        >>> versioner.revert(pre)
    """

    def __init__(
        self,
        project_dir: Path,
        commit_prefix: str = COMMIT_PREFIX,
        exclude: list[str] | None = None,
        test_patterns: list[str] | None = None,
    ):
        """Initialize the versioner.

        Args:
            project_dir: Path to the git repository root.
            commit_prefix: Prefix for checkpoint commit subjects.
            exclude: Paths (relative to the root) never committed, measured or cleaned.
            test_patterns: Glob patterns that classify test files.

        Raises:
            GitError: If the directory is not a git repository.
        """
        self.project_dir = Path(project_dir).resolve()
        self.commit_prefix = commit_prefix
        self.exclude = list(exclude or [])
        self.test_patterns = test_patterns or DEFAULT_TEST_FILE_PATTERNS
        self._validate_repo()

    def _validate_repo(self) -> None:
        """Validate that the project directory is a git repository."""
        git_dir = self.project_dir / ".git"
        if not git_dir.exists():
            raise GitError(
                f"Not a git repository: {self.project_dir}. "
                "Initialize with 'git init' first."
            )

    def _run_git(
        self, *args: str, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command in the project directory.

        Raises:
            GitError: If the command fails and check=True.
        """
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            raise GitError("Git is not installed or not in PATH")
        if check and result.returncode != 0:
            raise GitError(
                f"Git command failed: {' '.join(cmd)}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def _pathspec(self) -> list[str]:
        return [".", *(f":(exclude){p}" for p in self.exclude)]

    def _encode_metadata(self, metadata: dict[str, Any]) -> str:
        """Encode metadata as a commit message trailer."""
        return f"\n\nStepforge-Metadata: {json.dumps(metadata, separators=(',', ':'))}"

    def current_ref(self) -> str | None:
        result = self._run_git("rev-parse", "--verify", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def is_dirty(self) -> bool:
        status = self._run_git("status", "--porcelain", "--", *self._pathspec())
        return bool(status.stdout.strip())

    def checkpoint(self, message: str, metadata: dict[str, Any] | None = None) -> str:
        """Commit the working tree (if changed) and return HEAD.

        A clean tree yields the current HEAD. A repository without commits
        gets an empty root commit so there is always something to revert to.
        """
        head = self.current_ref()
        if head is not None and not self.is_dirty():
            return head

        self._run_git("add", "-A", "--", *self._pathspec())
        full_metadata = {"timestamp": datetime.now().isoformat(), **(metadata or {})}
        commit_message = f"{self.commit_prefix} {message}" + self._encode_metadata(full_metadata)
        self._run_git("commit", "--allow-empty", "--no-verify", "-m", commit_message)

        ref = self.current_ref()
        if ref is None:
            raise GitError("Commit succeeded but HEAD is not resolvable")
        logger.info("GIT: Checkpoint %s (%s)", ref[:12], message)
        return ref

    def diff_stats(self, from_ref: str, to_ref: str | None = None) -> DiffMetrics:
        """Measure the change between ``from_ref`` and ``to_ref``.

        With ``to_ref=None`` the working tree is measured, untracked files
        included (they are registered with ``git add --intent-to-add``).
        """
        if to_ref is None:
            self._run_git("add", "--intent-to-add", "-A", "--", *self._pathspec())
            refs = [from_ref]
        else:
            refs = [from_ref, to_ref]

        numstat = self._run_git("diff", "--numstat", "--no-renames", *refs, "--", *self._pathspec())
        name_status = self._run_git("diff", "--name-status", "--no-renames", *refs, "--", *self._pathspec())

        changed: list[str] = []
        added = removed = 0
        for line in numstat.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            a, r, path = parts[0], parts[1], parts[-1]
            changed.append(path)
            # Binary files report "-"
            added += int(a) if a.isdigit() else 0
            removed += int(r) if r.isdigit() else 0

        created = [
            line.split("\t")[-1]
            for line in name_status.stdout.splitlines()
            if line.startswith("A\t")
        ]
        return DiffMetrics.from_paths(
            changed,
            created,
            lines_added=added,
            lines_removed=removed,
            test_patterns=self.test_patterns,
        )

    def revert(self, ref: str) -> None:
        """Hard-reset the working tree to ``ref`` and remove untracked files.

        Raises:
            GitError: If the ref is unknown or the reset fails.
        """
        result = self._run_git("cat-file", "-t", ref, check=False)
        if result.returncode != 0:
            raise GitError(f"Invalid commit SHA: {ref}")

        self._run_git("reset", "--hard", ref)
        clean_args = ["clean", "-fd"]
        for path in self.exclude:
            clean_args.extend(["-e", path])
        self._run_git(*clean_args)
        logger.info("GIT: Reverted working tree to %s", ref[:12])
