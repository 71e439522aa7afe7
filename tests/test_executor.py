"""Tests for the stage pipeline executor."""

import time
from pathlib import Path
from typing import Callable

import pytest
from conftest import ScriptedProcessor, diff

from agents.base import RepoState, StageOutput
from orchestrator.errors import StageCancelled, StageTimeout
from orchestrator.executor import APPROVAL_INDEX, StagePipelineExecutor
from orchestrator.state_store import StateStore
from schemas.execution import StageExecution, StageKind, StageResult, ViolationKind
from schemas.plan import BlockedKind, Step, StepBudget, StepStatus


@pytest.fixture
def repo(tmp_path: Path) -> RepoState:
    return RepoState(root=tmp_path, base_ref="ref-1")


def test_runs_every_stage_up_to_approval(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    implementation = ScriptedProcessor(StageKind.IMPLEMENTATION, StageOutput(success=True, artifact="impl.patch", metrics=diff(files=2)))
    review = ScriptedProcessor(StageKind.REVIEW)
    step = new_step()

    make_executor(implementation, review).run(step, repo)

    assert step.status == StepStatus.IN_PROGRESS
    assert step.current_stage_index == APPROVAL_INDEX
    stages = [e.stage for e in store.stage_executions(step.plan_id, step_id=step.id)]
    assert stages == [
        StageKind.DESIGN,
        StageKind.TEST_AUTHORING,
        StageKind.IMPLEMENTATION,
        StageKind.VERIFICATION,
        StageKind.REVIEW,
    ]
    # Later stages see earlier artifacts
    assert review.requests[0].get_artifact(StageKind.IMPLEMENTATION).artifact == "impl.patch"


def test_failed_stage_is_retried_with_backoff(
    store: StateStore,
    repo: RepoState,
    sleeps: list[float],
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    implementation = ScriptedProcessor(
        StageKind.IMPLEMENTATION,
        RuntimeError("generator crashed"),
        StageOutput(success=False, error="patch did not apply"),
        StageOutput(success=True),
    )
    step = new_step()

    make_executor(implementation, retry_limit=3, backoff_seconds=1.0, backoff_multiplier=2.0).run(step, repo)

    assert step.status == StepStatus.IN_PROGRESS
    assert step.current_stage_index == APPROVAL_INDEX
    assert step.retry_count == 0
    assert sleeps == [1.0, 2.0]
    attempts = store.stage_executions(step.plan_id, step_id=step.id, stage=StageKind.IMPLEMENTATION)
    assert [(e.attempt, e.result) for e in attempts] == [
        (1, StageResult.FAILURE),
        (2, StageResult.FAILURE),
        (3, StageResult.SUCCESS),
    ]
    assert "RuntimeError: generator crashed" in attempts[0].error


def test_retries_exhausted_blocks_step(
    store: StateStore,
    repo: RepoState,
    sleeps: list[float],
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    implementation = ScriptedProcessor(
        StageKind.IMPLEMENTATION,
        RuntimeError("boom"),
        RuntimeError("boom"),
    )
    review = ScriptedProcessor(StageKind.REVIEW)
    step = new_step()

    make_executor(implementation, review, retry_limit=2).run(step, repo)

    stored = store.get_step(step.plan_id, step.id)
    assert stored.status == StepStatus.BLOCKED
    assert stored.blocked_kind == BlockedKind.STAGE_ERROR
    assert stored.current_stage_index == 2
    assert stored.retry_count == 2
    assert "boom" in stored.blocked_reason
    assert sleeps == [1.0]
    assert review.requests == []


def test_reported_timeout_blocks_as_stage_timeout(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    design = ScriptedProcessor(StageKind.DESIGN, StageTimeout("model did not answer"))
    step = new_step()

    make_executor(design, retry_limit=1).run(step, repo)

    assert step.status == StepStatus.BLOCKED
    assert step.blocked_kind == BlockedKind.STAGE_TIMEOUT
    [execution] = store.stage_executions(step.plan_id, step_id=step.id)
    assert execution.result == StageResult.TIMEOUT


def test_slow_processor_times_out(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    def slow(request):
        time.sleep(0.5)
        return StageOutput(success=True)

    design = ScriptedProcessor(StageKind.DESIGN, slow)
    step = new_step()

    make_executor(design, retry_limit=1, stage_timeout=0.05).run(step, repo)

    assert step.status == StepStatus.BLOCKED
    assert step.blocked_kind == BlockedKind.STAGE_TIMEOUT


def test_budget_violation_blocks_without_advancing(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    implementation = ScriptedProcessor(StageKind.IMPLEMENTATION, StageOutput(success=True, metrics=diff(files=4)))
    step = new_step(budget=StepBudget(max_files_changed=3))

    make_executor(implementation).run(step, repo)

    assert step.status == StepStatus.BLOCKED
    assert step.blocked_kind == BlockedKind.BUDGET_EXCEEDED
    assert step.current_stage_index == 2
    [execution] = store.stage_executions(step.plan_id, step_id=step.id, stage=StageKind.IMPLEMENTATION)
    assert execution.result == StageResult.SUCCESS
    assert execution.gate.kind == ViolationKind.FILES_CHANGED
    assert execution.succeeded is False


def test_dirty_verification_triggers_implementation_fix(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    implementation = ScriptedProcessor(StageKind.IMPLEMENTATION)
    verification = ScriptedProcessor(
        StageKind.VERIFICATION,
        StageOutput(success=True, clean=False, log="FAILED tests/test_login.py::test_throttle"),
        StageOutput(success=True, clean=True),
    )
    step = new_step()

    make_executor(implementation, verification, verification_fix_attempts=1).run(step, repo)

    assert step.status == StepStatus.IN_PROGRESS
    assert step.current_stage_index == APPROVAL_INDEX
    assert len(implementation.requests) == 2
    # The fix attempt sees the failing verification log
    fix_request = implementation.requests[1]
    assert "test_throttle" in fix_request.get_artifact(StageKind.VERIFICATION).log


def test_verification_still_dirty_after_fixes_blocks(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    dirty = StageOutput(success=True, clean=False, log="1 failed\nFAILED test_throttle")
    verification = ScriptedProcessor(StageKind.VERIFICATION, dirty, dirty, dirty)
    step = new_step()

    make_executor(verification, verification_fix_attempts=1).run(step, repo)

    assert step.status == StepStatus.BLOCKED
    assert step.blocked_kind == BlockedKind.VERIFICATION_FAILED
    assert step.blocked_reason == "Verification failed after 1 fix attempt(s): FAILED test_throttle"
    assert step.current_stage_index == 3
    assert len(verification.requests) == 2


def test_fix_attempt_counts_files_from_the_first_implementation_run(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    implementation = ScriptedProcessor(
        StageKind.IMPLEMENTATION,
        StageOutput(success=True, metrics=diff(files=3)),
        StageOutput(success=True, metrics=diff(files=1, prefix="fix")),
    )
    verification = ScriptedProcessor(
        StageKind.VERIFICATION,
        StageOutput(success=True, clean=False, log="FAILED tests/test_login.py::test_throttle"),
        StageOutput(success=True, clean=True),
    )
    step = new_step(budget=StepBudget(max_files_changed=3))

    make_executor(implementation, verification, verification_fix_attempts=1).run(step, repo)

    assert step.status == StepStatus.BLOCKED
    assert step.blocked_kind == BlockedKind.BUDGET_EXCEEDED
    assert "4 files changed" in step.blocked_reason
    assert step.current_stage_index == 3
    assert len(implementation.requests) == 2
    assert len(verification.requests) == 1


def test_timed_out_attempt_stops_before_the_retry_starts(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    spans: list[tuple[int, float, float]] = []

    def slow_first_time(request):
        started = time.monotonic()
        if request.attempt == 1:
            time.sleep(0.4)
        spans.append((request.attempt, started, time.monotonic()))
        return StageOutput(success=True)

    design = ScriptedProcessor(StageKind.DESIGN, slow_first_time, slow_first_time)
    step = new_step()

    make_executor(design, retry_limit=2, stage_timeout=0.1).run(step, repo)

    assert step.current_stage_index == APPROVAL_INDEX
    [first, second] = spans
    assert first[0] == 1 and second[0] == 2
    assert second[1] >= first[2]
    assert design.requests[0].cancel_event.is_set()
    assert not design.requests[1].cancel_event.is_set()
    results = [e.result for e in store.stage_executions(step.plan_id, step_id=step.id, stage=StageKind.DESIGN)]
    assert results == [StageResult.TIMEOUT, StageResult.SUCCESS]


def test_cancel_event_lets_a_processor_stop_early(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    def waits_for_cancel(request):
        request.cancel_event.wait(5)
        return StageOutput(success=False, error="stopped")

    design = ScriptedProcessor(StageKind.DESIGN, waits_for_cancel)
    step = new_step()
    started = time.monotonic()

    make_executor(design, retry_limit=1, stage_timeout=0.1).run(step, repo)

    assert time.monotonic() - started < 2
    assert step.blocked_kind == BlockedKind.STAGE_TIMEOUT


def test_recorded_success_is_not_rerun(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    design = ScriptedProcessor(StageKind.DESIGN)
    step = new_step()
    store.append_stage(
        step.plan_id,
        StageExecution(step_id=step.id, stage=StageKind.DESIGN, result=StageResult.SUCCESS, artifact="design.md"),
    )

    make_executor(design).run(step, repo)

    assert design.requests == []
    assert step.current_stage_index == APPROVAL_INDEX


def test_cancellation_keeps_step_in_progress(
    store: StateStore,
    repo: RepoState,
    new_step: Callable[..., Step],
    make_executor: Callable[..., StagePipelineExecutor],
) -> None:
    def slow(request):
        time.sleep(0.3)
        return StageOutput(success=True)

    design = ScriptedProcessor(StageKind.DESIGN, slow)
    step = new_step()

    with pytest.raises(StageCancelled):
        make_executor(design, cancellation_check=lambda: True).run(step, repo)

    stored = store.get_step(step.plan_id, step.id)
    assert stored.status == StepStatus.IN_PROGRESS
    assert stored.current_stage_index == 0
    [execution] = store.stage_executions(step.plan_id, step_id=step.id)
    assert execution.result == StageResult.CANCELLED


def test_retry_limit_must_be_positive(store: StateStore, make_executor: Callable[..., StagePipelineExecutor]) -> None:
    with pytest.raises(ValueError):
        make_executor(retry_limit=0)
