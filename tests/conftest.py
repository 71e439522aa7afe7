"""Shared fixtures: in-memory version control, scripted stages and approvals."""

import threading
from pathlib import Path
from typing import Any, Callable

import pytest
from rich.console import Console

from agents.base import StageOutput, StageProcessor, StageRegistry, StageRequest
from local_storage.git_versioner import GitError
from orchestrator.budget import BudgetValidator
from orchestrator.checkpoints import ApprovalManager, ApprovalResponse, ApprovalResult
from orchestrator.executor import StagePipelineExecutor
from orchestrator.runner import Orchestrator
from orchestrator.state_machine import StepStateMachine
from orchestrator.state_store import PlanSnapshot, StateStore
from schemas.execution import DiffMetrics, StageKind
from schemas.plan import Plan, PlanStatus, Step, StepBudget, StepStatus


class FakeVcs:
    """Version control double: refs are counters, diffs are whatever the test says."""

    def __init__(self) -> None:
        self.refs: list[str] = []
        self.head: str | None = None
        self.metrics = DiffMetrics()
        self.measurements: list[DiffMetrics] = []
        self.reverted: list[str] = []
        self.fail_revert = False
        self.checkpoint_failures = 0  # Next N checkpoints raise
        self.measure_failures = 0

    def checkpoint(self, message: str, metadata: dict[str, Any] | None = None) -> str:
        if self.checkpoint_failures:
            self.checkpoint_failures -= 1
            raise GitError("Unable to create .git/index.lock: File exists")
        ref = f"ref-{len(self.refs) + 1}"
        self.refs.append(ref)
        self.head = ref
        return ref

    def diff_stats(self, from_ref: str, to_ref: str | None = None) -> DiffMetrics:
        if self.measure_failures:
            self.measure_failures -= 1
            raise GitError("Unable to create .git/index.lock: File exists")
        if self.measurements:
            return self.measurements.pop(0)
        return self.metrics

    def revert(self, ref: str) -> None:
        if self.fail_revert:
            raise GitError(f"reset to {ref} failed")
        self.reverted.append(ref)
        self.head = ref
        self.metrics = DiffMetrics()

    def current_ref(self) -> str | None:
        return self.head


class ScriptedProcessor(StageProcessor):
    """Returns (or raises) the scripted results in order, then succeeds."""

    def __init__(self, kind: StageKind, *results: Any) -> None:
        self.kind = kind
        super().__init__()
        self.results = list(results)
        self.requests: list[StageRequest] = []

    def invoke(self, request: StageRequest) -> StageOutput:
        self.requests.append(request)
        result = self.results.pop(0) if self.results else StageOutput(success=True)
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(request)
        return result


class Approver:
    """Approval callback answering from a queue; approves once the queue is empty."""

    def __init__(self, *responses: ApprovalResponse) -> None:
        self.responses = list(responses)
        self.asked: list[str] = []

    def __call__(self, step: Step, snapshot: PlanSnapshot) -> ApprovalResponse:
        self.asked.append(step.id)
        if self.responses:
            return self.responses.pop(0)
        return ApprovalResponse(result=ApprovalResult.APPROVED)


def approve() -> ApprovalResponse:
    return ApprovalResponse(result=ApprovalResult.APPROVED)


def reject(note: str | None = None) -> ApprovalResponse:
    return ApprovalResponse(result=ApprovalResult.REJECTED, notes=note)


def split(note: str | None = None) -> ApprovalResponse:
    return ApprovalResponse(result=ApprovalResult.SPLIT, notes=note)


def defer() -> ApprovalResponse:
    return ApprovalResponse(result=ApprovalResult.DEFERRED)


def diff(files: int = 1, created: int = 0, tests: int = 0, lines: int = 10, prefix: str = "src") -> DiffMetrics:
    """Metrics for ``files`` changed paths, the first ``created`` of them new."""
    changed = [f"{prefix}/module_{i}.py" for i in range(files)]
    test_paths = [f"tests/test_{prefix}_{i}.py" for i in range(tests)]
    return DiffMetrics(
        changed_files=changed + test_paths,
        created_files=changed[:created],
        test_files=test_paths,
        lines_added=lines,
    )


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state")


@pytest.fixture
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def quiet_console() -> Console:
    return Console(quiet=True)


@pytest.fixture
def new_step(store: StateStore) -> Callable[..., Step]:
    """Persist a one-step plan and return its step, optionally started."""

    def factory(budget: StepBudget | None = None, started: bool = True) -> Step:
        plan = Plan(feature_description="Add login rate-limit", status=PlanStatus.ACTIVE)
        step = Step(
            plan_id=plan.id,
            sequence_index=0,
            description="Throttle failed logins",
            budget=budget or StepBudget(),
        )
        store.create_plan(plan, [step])
        if started:
            StepStateMachine(store).transition(step, StepStatus.IN_PROGRESS)
        return step

    return factory


@pytest.fixture
def make_executor(store: StateStore, sleeps: list[float]) -> Callable[..., StagePipelineExecutor]:
    def factory(*processors: StageProcessor, **kwargs: Any) -> StagePipelineExecutor:
        kwargs.setdefault("sleep", sleeps.append)
        kwargs.setdefault("poll_interval", 0.01)
        return StagePipelineExecutor(
            store,
            StageRegistry(processors),
            machine=StepStateMachine(store),
            validator=BudgetValidator(),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_orchestrator(
    tmp_path: Path,
    store: StateStore,
    vcs: FakeVcs,
    sleeps: list[float],
    quiet_console: Console,
) -> Callable[..., Orchestrator]:
    """Build an orchestrator over the shared store and fake version control."""

    def factory(
        *processors: StageProcessor,
        approver: Approver | None = None,
        use_vcs: bool = True,
        retry_limit: int = 2,
        verification_fix_attempts: int = 1,
        **kwargs: Any,
    ) -> Orchestrator:
        cancel_event = threading.Event()
        executor = StagePipelineExecutor(
            store,
            StageRegistry(processors),
            machine=StepStateMachine(store),
            retry_limit=retry_limit,
            verification_fix_attempts=verification_fix_attempts,
            sleep=sleeps.append,
            cancellation_check=cancel_event.is_set,
            poll_interval=0.01,
        )
        approvals = ApprovalManager(console=quiet_console, approval_callback=approver or Approver())
        return Orchestrator(
            store,
            executor,
            approvals,
            vcs=vcs if use_vcs else None,
            repo_root=tmp_path,
            console=quiet_console,
            cancel_event=cancel_event,
            **kwargs,
        )

    return factory
