"""Feature planner.

Decomposes a feature request into ordered, size-bounded step drafts and
re-plans steps that were rejected or asked to be split.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from schemas.checkpoint import Decision
from schemas.plan import Step, StepBudget

logger = logging.getLogger(__name__)


@dataclass
class StepDraft:
    """A step proposed by the planner, before it is persisted."""

    description: str
    budget: StepBudget = field(default_factory=StepBudget)


@runtime_checkable
class FeaturePlanner(Protocol):
    """Protocol for planning collaborators."""

    def plan(
        self,
        description: str,
        step_descriptions: list[str] | None = None,
        budget: StepBudget | None = None,
    ) -> list[StepDraft]:
        """Decompose a feature request into step drafts."""
        ...

    def replan(self, step: Step, decision: Decision, note: str | None = None) -> list[StepDraft]:
        """Replacement drafts for a rolled-back step (may be empty)."""
        ...


class SimpleFeaturePlanner:
    """Deterministic planner.

    - With explicit step descriptions: one step each, in order.
    - Otherwise: one step per bullet/numbered line of the description, or a
      single step covering the whole request.
    - Re-plan after ``reject``: one retry step carrying the reviewer note.
    - Re-plan after ``request_split``: two halves with halved budgets.
    """

    _LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")

    def plan(
        self,
        description: str,
        step_descriptions: list[str] | None = None,
        budget: StepBudget | None = None,
    ) -> list[StepDraft]:
        budget = budget or StepBudget()
        items = [s.strip() for s in (step_descriptions or []) if s.strip()]
        if not items:
            items = self._list_items(description)
        if not items:
            items = [description.strip()]

        drafts = [StepDraft(description=item, budget=budget.model_copy()) for item in items]
        logger.info("PLANNER: %d steps for %r", len(drafts), description[:60])
        return drafts

    def replan(self, step: Step, decision: Decision, note: str | None = None) -> list[StepDraft]:
        if decision == Decision.REQUEST_SPLIT:
            half = step.budget.halved()
            suffix = f" ({note})" if note else ""
            return [
                StepDraft(description=f"{step.description} [part 1/2]{suffix}", budget=half),
                StepDraft(description=f"{step.description} [part 2/2]{suffix}", budget=half.model_copy()),
            ]
        if decision == Decision.REJECT:
            text = step.description
            if note:
                text = f"{text} (reviewer: {note})"
            return [StepDraft(description=text, budget=step.budget.model_copy())]
        return []

    def _list_items(self, description: str) -> list[str]:
        items = []
        for line in description.splitlines():
            match = self._LIST_ITEM.match(line)
            if match:
                items.append(match.group(1))
        return items
