"""Tests for the step transition table."""

from typing import Callable

import pytest

from orchestrator.errors import Conflict, InvalidTransition
from orchestrator.state_machine import StepStateMachine
from orchestrator.state_store import StateStore
from schemas.plan import BlockedKind, Step, StepStatus


def test_happy_path_transitions_persist(store: StateStore, new_step: Callable[..., Step]) -> None:
    machine = StepStateMachine(store)
    step = new_step(started=False)

    machine.transition(step, StepStatus.IN_PROGRESS, current_stage_index=0)
    machine.transition(step, StepStatus.IN_PROGRESS, current_stage_index=1)
    machine.transition(step, StepStatus.AWAITING_APPROVAL)
    machine.transition(step, StepStatus.APPROVED)
    machine.transition(step, StepStatus.COMPLETED)

    stored = store.get_step(step.plan_id, step.id)
    assert stored.status == StepStatus.COMPLETED
    assert stored.current_stage_index == 1
    assert stored.version == 5


def test_transition_outside_table_is_rejected(store: StateStore, new_step: Callable[..., Step]) -> None:
    machine = StepStateMachine(store)
    step = new_step(started=False)

    with pytest.raises(InvalidTransition):
        machine.transition(step, StepStatus.COMPLETED)
    assert store.get_step(step.plan_id, step.id).status == StepStatus.PENDING


def test_backward_transition_requires_rollback(store: StateStore, new_step: Callable[..., Step]) -> None:
    machine = StepStateMachine(store)
    step = new_step()

    assert machine.can_transition(step, StepStatus.ROLLED_BACK) is False
    with pytest.raises(InvalidTransition):
        machine.transition(step, StepStatus.ROLLED_BACK)

    machine.transition(step, StepStatus.ROLLED_BACK, by_rollback=True)
    assert step.status == StepStatus.ROLLED_BACK


def test_terminal_states_have_no_exits() -> None:
    sources = {t.from_status for t in StepStateMachine.TRANSITIONS}
    assert StepStatus.COMPLETED not in sources
    assert StepStatus.ABANDONED not in sources


def test_block_records_reason_and_leaving_clears_it(store: StateStore, new_step: Callable[..., Step]) -> None:
    machine = StepStateMachine(store)
    step = new_step()

    machine.block(step, BlockedKind.STAGE_ERROR, "implementation failure after 2 attempts")
    stored = store.get_step(step.plan_id, step.id)
    assert stored.blocked_kind == BlockedKind.STAGE_ERROR
    assert "2 attempts" in stored.blocked_reason

    machine.transition(step, StepStatus.IN_PROGRESS)
    stored = store.get_step(step.plan_id, step.id)
    assert stored.blocked_kind is None
    assert stored.blocked_reason is None


def test_stale_copy_cannot_transition(store: StateStore, new_step: Callable[..., Step]) -> None:
    machine = StepStateMachine(store)
    step = new_step()
    stale = store.get_step(step.plan_id, step.id)

    machine.transition(step, StepStatus.AWAITING_APPROVAL)
    with pytest.raises(Conflict):
        machine.block(stale, BlockedKind.STAGE_ERROR, "late writer")


def test_block_on_blocked_step_replaces_reason(store: StateStore, new_step: Callable[..., Step]) -> None:
    machine = StepStateMachine(store)
    step = new_step()
    machine.block(step, BlockedKind.STAGE_ERROR, "implementation failure after 2 attempts")

    machine.block(step, BlockedKind.ROLLBACK_FAILURE, "Rollback to ref-1 failed")

    stored = store.get_step(step.plan_id, step.id)
    assert stored.status == StepStatus.BLOCKED
    assert stored.blocked_kind == BlockedKind.ROLLBACK_FAILURE
    assert stored.blocked_reason == "Rollback to ref-1 failed"
