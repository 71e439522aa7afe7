"""Command-backed stage processor.

Runs a configured command for a stage (for example a script that calls a
code generator) and measures the resulting change through version control.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from schemas.execution import DiffMetrics, StageKind
from tools.shell_tool import ShellTool

from .base import StageOutput, StageProcessor, StageRequest

if TYPE_CHECKING:
    from local_storage.git_versioner import VersionControl


class CommandStageProcessor(StageProcessor):
    """Run ``command`` in the repository root for one stage.

    The step is exposed to the command through environment variables:
    ``STEPFORGE_STEP_ID``, ``STEPFORGE_STEP_DESCRIPTION``, ``STEPFORGE_STAGE``,
    ``STEPFORGE_ATTEMPT`` and ``STEPFORGE_PRIOR_ARTIFACTS`` (JSON object of
    stage name to artifact reference).

    Metrics are the delta this stage made: the working tree diff after the
    command minus the diff before it, so cumulative gating never counts a
    file twice.
    """

    def __init__(
        self,
        kind: StageKind,
        command: str,
        vcs: VersionControl | None = None,
        timeout: float = 600,
        allowed_commands: set[str] | None = None,
    ) -> None:
        self.kind = kind
        super().__init__()
        self.command = command
        self.vcs = vcs
        self.timeout = timeout
        self.allowed_commands = allowed_commands

    def invoke(self, request: StageRequest) -> StageOutput:
        start = self._log_run_start(request)
        before = self._measure(request)

        shell = ShellTool(
            working_dir=request.repo.root,
            timeout=self.timeout,
            allowed_commands=self.allowed_commands,
        )
        env = {
            "STEPFORGE_STEP_ID": request.step.id,
            "STEPFORGE_STEP_DESCRIPTION": request.step.description,
            "STEPFORGE_STAGE": self.kind.value,
            "STEPFORGE_ATTEMPT": str(request.attempt),
            "STEPFORGE_PRIOR_ARTIFACTS": json.dumps(
                {k.value: v.artifact for k, v in request.prior_artifacts.items()}
            ),
        }
        result = shell.execute(self.command, env=env, cancel_event=request.cancel_event)

        if not result.success:
            output = StageOutput(success=False, error=result.error or "command failed", log=result.text)
            self._log_run_end(output, start)
            return output

        after = self._measure(request)
        output = StageOutput(
            success=True,
            artifact=result.last_line(),
            metrics=_delta(before, after),
            log=result.text,
        )
        self._log_run_end(output, start)
        return output

    def _measure(self, request: StageRequest) -> DiffMetrics:
        if self.vcs is None or request.repo.base_ref is None:
            return DiffMetrics()
        return self.vcs.diff_stats(request.repo.base_ref, None)


def _delta(before: DiffMetrics, after: DiffMetrics) -> DiffMetrics:
    """Change made between two working-tree measurements."""
    seen_changed = set(before.changed_files)
    seen_created = set(before.created_files)
    seen_tests = set(before.test_files)
    return DiffMetrics(
        changed_files=[p for p in after.changed_files if p not in seen_changed],
        created_files=[p for p in after.created_files if p not in seen_created],
        test_files=[p for p in after.test_files if p not in seen_tests],
        lines_added=max(0, after.lines_added - before.lines_added),
        lines_removed=max(0, after.lines_removed - before.lines_removed),
    )
