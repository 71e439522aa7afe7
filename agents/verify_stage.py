"""Verification stage processor.

Adapts a verification runner to the stage processor interface so the
executor dispatches it like any other stage.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from schemas.execution import StageKind

from .base import StageOutput, StageProcessor, StageRequest

if TYPE_CHECKING:
    from tools.verification import VerificationRunner


class VerificationStageProcessor(StageProcessor):
    """Runs tests/lint/type-check and reports a clean or dirty verdict.

    A dirty verdict is still a successful stage call: the executor turns it
    into a ``verification_failed`` gate violation. Only an exception from the
    runner counts as a stage failure.
    """

    kind = StageKind.VERIFICATION

    def __init__(self, runner: VerificationRunner) -> None:
        super().__init__()
        self.runner = runner

    def invoke(self, request: StageRequest) -> StageOutput:
        start = self._log_run_start(request)
        report = self.runner.run(request.repo, cancel_event=request.cancel_event)
        output = StageOutput(
            success=True,
            artifact="verification.log",
            clean=report.clean,
            log=report.log,
            data={"failed_commands": report.failed_commands},
        )
        self._log_run_end(output, start)
        if not report.clean:
            self.logger.warning("Verification not clean for %s", request.step.id)
        return output
