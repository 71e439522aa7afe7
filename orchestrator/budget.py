"""Budget/gate validator.

A pure function over recorded metrics: given a step's budget and the
cumulative metrics of its successful stage executions, report the first
failing check or a pass.
"""

from typing import Iterable

from schemas.execution import (
    DiffMetrics,
    GateOutcome,
    StageExecution,
    StageKind,
    StageResult,
    ViolationKind,
)
from schemas.plan import Step, StepBudget

PASS = GateOutcome(passed=True)


def violation(kind: ViolationKind, detail: str) -> GateOutcome:
    return GateOutcome(passed=False, kind=kind, detail=detail)


class BudgetValidator:
    """Enforces a step's size budget before it may advance."""

    def evaluate(
        self,
        step: Step,
        executions: Iterable[StageExecution],
        pending: StageExecution | None = None,
    ) -> GateOutcome:
        """Gate a step against the cumulative metrics of its executions.

        Args:
            step: Step whose budget applies
            executions: Recorded executions for the step (discarded ones excluded)
            pending: The execution being gated, if not yet recorded

        Returns:
            Pass, or the first violation in check order
        """
        return self.evaluate_metrics(step.budget, self.step_metrics(step, executions, pending))

    def step_metrics(
        self,
        step: Step,
        executions: Iterable[StageExecution],
        pending: StageExecution | None = None,
    ) -> DiffMetrics:
        """Cumulative metrics of a step's successful executions.

        Every successful execution contributes its paths, so files touched by
        an earlier run of a stage (a verification fix re-runs implementation)
        still count. Line counts come from the latest successful attempt of
        each stage; a retried stage replaces its earlier line count.
        """
        successful = [
            e
            for e in [*executions, *([pending] if pending is not None else [])]
            if e.step_id == step.id and e.result == StageResult.SUCCESS
        ]
        paths = DiffMetrics.combine(e.metrics for e in successful)

        latest: dict[StageKind, DiffMetrics] = {}
        for execution in successful:
            latest[execution.stage] = execution.metrics
        lines = DiffMetrics.combine(latest.values())

        return paths.model_copy(update={"lines_added": lines.lines_added, "lines_removed": lines.lines_removed})

    def evaluate_metrics(self, budget: StepBudget, metrics: DiffMetrics) -> GateOutcome:
        """Check explicit metrics against a budget."""
        checks = [
            (
                ViolationKind.FILES_CHANGED,
                metrics.files_changed,
                budget.max_files_changed,
                "files changed",
            ),
            (
                ViolationKind.FILES_CREATED,
                metrics.files_created,
                budget.max_files_created,
                "files created",
            ),
            (
                ViolationKind.TEST_FILES,
                metrics.test_files_touched,
                budget.max_test_files,
                "test files touched",
            ),
            (
                ViolationKind.LINES_ADDED,
                metrics.lines_added,
                budget.max_lines_added,
                "lines added",
            ),
        ]
        for kind, actual, limit, label in checks:
            if actual > limit:
                return violation(kind, f"{actual} {label} exceeds budget of {limit}")
        return PASS

    @staticmethod
    def verification_failed(log: str, max_chars: int = 2000) -> GateOutcome:
        """Gate outcome for a non-clean verification run."""
        excerpt = log if len(log) <= max_chars else "... (truncated)\n" + log[-max_chars:]
        return violation(ViolationKind.VERIFICATION_FAILED, excerpt or "verification failed")
