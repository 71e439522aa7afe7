"""Tests for the feature planner."""

from agents.planner import FeaturePlanner, SimpleFeaturePlanner
from schemas.checkpoint import Decision
from schemas.plan import Step, StepBudget


def test_explicit_steps_keep_their_order() -> None:
    drafts = SimpleFeaturePlanner().plan("Add export", ["Add CSV writer", "  ", "Wire export command"])
    assert [d.description for d in drafts] == ["Add CSV writer", "Wire export command"]


def test_list_items_in_description_become_steps() -> None:
    description = "Add export:\n- Add CSV writer\n2) Wire export command\nsome trailing prose"
    drafts = SimpleFeaturePlanner().plan(description)
    assert [d.description for d in drafts] == ["Add CSV writer", "Wire export command"]


def test_plain_request_is_one_step_with_budget() -> None:
    budget = StepBudget(max_files_changed=1)
    drafts = SimpleFeaturePlanner().plan("Add login rate-limit", budget=budget)
    assert len(drafts) == 1
    assert drafts[0].description == "Add login rate-limit"
    assert drafts[0].budget.max_files_changed == 1


def test_reject_replans_one_step_with_note() -> None:
    step = Step(plan_id="plan-1", sequence_index=0, description="Add CSV writer")
    [draft] = SimpleFeaturePlanner().replan(step, Decision.REJECT, "use the csv module")
    assert draft.description == "Add CSV writer (reviewer: use the csv module)"
    assert draft.budget == step.budget


def test_split_halves_budget() -> None:
    step = Step(plan_id="plan-1", sequence_index=0, description="Add CSV writer", budget=StepBudget(max_files_changed=1, max_lines_added=9))
    drafts = SimpleFeaturePlanner().replan(step, Decision.REQUEST_SPLIT)
    assert [d.description for d in drafts] == ["Add CSV writer [part 1/2]", "Add CSV writer [part 2/2]"]
    assert all(d.budget.max_files_changed == 1 and d.budget.max_lines_added == 5 for d in drafts)


def test_approve_needs_no_replacements() -> None:
    step = Step(plan_id="plan-1", sequence_index=0, description="Add CSV writer")
    assert SimpleFeaturePlanner().replan(step, Decision.APPROVE) == []


def test_simple_planner_satisfies_protocol() -> None:
    assert isinstance(SimpleFeaturePlanner(), FeaturePlanner)
