"""Durable, versioned state store for plans and steps.

Layout (one directory per plan)::

    <state_dir>/plans/<plan_id>/plan.json              plan header + steps
    <state_dir>/plans/<plan_id>/stage_executions.jsonl
    <state_dir>/plans/<plan_id>/checkpoints.jsonl
    <state_dir>/plans/<plan_id>/rollbacks.jsonl
    <state_dir>/plans/<plan_id>/approvals.jsonl

``plan.json`` is rewritten atomically (temp file + ``os.replace``); the logs
are append-only. Plan and step records carry a ``version`` counter and a save
only succeeds when the stored version still matches the one that was loaded.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, TypeVar

from pydantic import BaseModel, ValidationError

from schemas.checkpoint import ApprovalDecision, Checkpoint, RollbackRecord
from schemas.execution import StageExecution, StageKind
from schemas.plan import Plan, Step, StepStatus

from .errors import Conflict, PersistenceError, PlanNotFound, StepNotFound

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

PLAN_FILE = "plan.json"
STAGES_LOG = "stage_executions.jsonl"
CHECKPOINTS_LOG = "checkpoints.jsonl"
ROLLBACKS_LOG = "rollbacks.jsonl"
APPROVALS_LOG = "approvals.jsonl"


@dataclass
class PlanSnapshot:
    """A plan with its steps and the latest stage execution per step."""

    plan: Plan
    steps: list[Step]
    latest_executions: dict[str, StageExecution] = field(default_factory=dict)

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise StepNotFound(f"Step not found: {step_id}")

    def replacements(self, step_id: str) -> list[Step]:
        """Steps appended when ``step_id`` was re-planned, in arena order."""
        return [s for s in self.steps if s.parent_step_id == step_id]

    def execution_order(self) -> list[Step]:
        """Steps in the order they run.

        Each step is followed by its replacements (recursively) before the
        next original step, so re-planned work runs where the rolled-back step
        stood.
        """
        order: list[Step] = []

        def visit(step: Step) -> None:
            order.append(step)
            for child in self.replacements(step.id):
                visit(child)

        for step in self.steps:
            if step.parent_step_id is None:
                visit(step)
        return order

    def depth(self, step: Step) -> int:
        """Re-planning depth (0 for steps from the original plan)."""
        depth = 0
        by_id = {s.id: s for s in self.steps}
        while step.parent_step_id and step.parent_step_id in by_id:
            depth += 1
            step = by_id[step.parent_step_id]
        return depth

    def cursor(self) -> Step | None:
        """First step in execution order that still needs driving."""
        for step in self.execution_order():
            if step.is_terminal:
                continue
            if step.status == StepStatus.ROLLED_BACK and self.replacements(step.id):
                continue
            return step
        return None


class StateStore:
    """JSON file backed state store.

    A per-plan lock serialises read-modify-write cycles within a process;
    optimistic versions guard against writers in other sessions.
    """

    def __init__(self, state_dir: Path | str) -> None:
        """Initialize state store.

        Args:
            state_dir: Root directory for persisted state
        """
        self.state_dir = Path(state_dir)
        self.plans_dir = self.state_dir / "plans"
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Plans and steps
    # ------------------------------------------------------------------

    def plan_dir(self, plan_id: str) -> Path:
        return self.plans_dir / plan_id

    def create_plan(self, plan: Plan, steps: list[Step]) -> PlanSnapshot:
        """Persist a new plan with its initial steps.

        Raises:
            Conflict: If a plan with the same id already exists
            PersistenceError: On storage failure
        """
        with self._lock(plan.id):
            if (self.plan_dir(plan.id) / PLAN_FILE).exists():
                raise Conflict(plan.id, 0, plan.version)
            plan.step_ids = [s.id for s in steps]
            self._write_plan_file(plan, {s.id: s for s in steps})
        logger.info("STORE: Created plan %s with %d steps", plan.id, len(steps))
        return PlanSnapshot(plan=plan, steps=list(steps))

    def list_plans(self) -> list[str]:
        """Plan ids, most recently updated first."""
        if not self.plans_dir.exists():
            return []
        plan_files = [p / PLAN_FILE for p in self.plans_dir.iterdir() if (p / PLAN_FILE).exists()]
        plan_files.sort(key=lambda f: f.stat().st_mtime, reverse=True)
        return [f.parent.name for f in plan_files]

    def load(self, plan_id: str) -> PlanSnapshot:
        """Load a plan, its steps in arena order and their latest executions.

        Raises:
            PlanNotFound: If the plan does not exist
            PersistenceError: On storage failure or corrupt data
        """
        with self._lock(plan_id):
            plan, steps = self._read_plan_file(plan_id)
        ordered = [steps[sid] for sid in plan.step_ids if sid in steps]

        latest: dict[str, StageExecution] = {}
        for execution in self.stage_executions(plan_id):
            latest[execution.step_id] = execution

        return PlanSnapshot(plan=plan, steps=ordered, latest_executions=latest)

    def get_step(self, plan_id: str, step_id: str) -> Step:
        with self._lock(plan_id):
            _, steps = self._read_plan_file(plan_id)
        if step_id not in steps:
            raise StepNotFound(f"Step not found: {step_id}")
        return steps[step_id]

    def save_step(self, step: Step) -> Step:
        """Atomically save a step if its version is still current.

        Returns:
            The stored step with its version bumped

        Raises:
            Conflict: If the stored version has advanced since load
        """
        with self._lock(step.plan_id):
            plan, steps = self._read_plan_file(step.plan_id)
            stored = steps.get(step.id)
            if stored is None:
                raise StepNotFound(f"Step not found: {step.id}")
            if stored.version != step.version:
                raise Conflict(step.id, step.version, stored.version)

            step.version += 1
            step.touch()
            steps[step.id] = step
            self._write_plan_file(plan, steps)
        logger.debug("STORE: Saved step %s v%d (%s)", step.id, step.version, step.status.value)
        return step

    def save_plan(self, plan: Plan) -> Plan:
        """Atomically save the plan header if its version is still current."""
        with self._lock(plan.id):
            stored, steps = self._read_plan_file(plan.id)
            if stored.version != plan.version:
                raise Conflict(plan.id, plan.version, stored.version)
            if plan.step_ids[: len(stored.step_ids)] != stored.step_ids:
                raise PersistenceError(f"Plan {plan.id}: step arena may only be appended to")

            plan.version += 1
            plan.touch()
            self._write_plan_file(plan, steps)
        return plan

    def append_steps(self, plan: Plan, new_steps: list[Step]) -> Plan:
        """Append re-planned steps to the plan arena."""
        with self._lock(plan.id):
            stored, steps = self._read_plan_file(plan.id)
            if stored.version != plan.version:
                raise Conflict(plan.id, plan.version, stored.version)
            for step in new_steps:
                if step.id in steps:
                    raise Conflict(step.id, 0, steps[step.id].version)
                steps[step.id] = step
                plan.step_ids.append(step.id)

            plan.version += 1
            plan.touch()
            self._write_plan_file(plan, steps)
        logger.info("STORE: Appended %d steps to plan %s", len(new_steps), plan.id)
        return plan

    # ------------------------------------------------------------------
    # Append-only logs
    # ------------------------------------------------------------------

    def append_stage(self, plan_id: str, execution: StageExecution) -> None:
        self._append(plan_id, STAGES_LOG, execution)

    def append_checkpoint(self, plan_id: str, checkpoint: Checkpoint) -> None:
        self._append(plan_id, CHECKPOINTS_LOG, checkpoint)

    def append_rollback(self, plan_id: str, record: RollbackRecord) -> None:
        self._append(plan_id, ROLLBACKS_LOG, record)

    def append_approval(self, plan_id: str, decision: ApprovalDecision) -> None:
        self._append(plan_id, APPROVALS_LOG, decision)

    def stage_executions(
        self,
        plan_id: str,
        step_id: str | None = None,
        stage: StageKind | None = None,
        include_discarded: bool = False,
    ) -> list[StageExecution]:
        """Stage executions in recording order.

        Executions discarded by a rollback are excluded unless requested.
        """
        executions = self._read_log(plan_id, STAGES_LOG, StageExecution)
        if not include_discarded:
            discarded = self.discarded_execution_ids(plan_id)
            executions = [e for e in executions if e.id not in discarded]
        if step_id is not None:
            executions = [e for e in executions if e.step_id == step_id]
        if stage is not None:
            executions = [e for e in executions if e.stage == stage]
        return executions

    def checkpoints(self, plan_id: str, step_id: str | None = None) -> list[Checkpoint]:
        records = self._read_log(plan_id, CHECKPOINTS_LOG, Checkpoint)
        return [c for c in records if step_id is None or c.step_id == step_id]

    def get_checkpoint(self, plan_id: str, checkpoint_id: str) -> Checkpoint | None:
        for checkpoint in self.checkpoints(plan_id):
            if checkpoint.id == checkpoint_id:
                return checkpoint
        return None

    def rollbacks(self, plan_id: str, step_id: str | None = None) -> list[RollbackRecord]:
        records = self._read_log(plan_id, ROLLBACKS_LOG, RollbackRecord)
        return [r for r in records if step_id is None or r.step_id == step_id]

    def approvals(self, plan_id: str, step_id: str | None = None) -> list[ApprovalDecision]:
        records = self._read_log(plan_id, APPROVALS_LOG, ApprovalDecision)
        return [a for a in records if step_id is None or a.step_id == step_id]

    def discarded_execution_ids(self, plan_id: str) -> set[str]:
        discarded: set[str] = set()
        for record in self.rollbacks(plan_id):
            discarded.update(record.discarded_executions)
        return discarded

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock(self, plan_id: str) -> threading.RLock:
        with self._locks_guard:
            if plan_id not in self._locks:
                self._locks[plan_id] = threading.RLock()
            return self._locks[plan_id]

    def _read_plan_file(self, plan_id: str) -> tuple[Plan, dict[str, Step]]:
        plan_file = self.plan_dir(plan_id) / PLAN_FILE
        if not plan_file.exists():
            raise PlanNotFound(f"Plan not found: {plan_id}")
        try:
            data = json.loads(plan_file.read_text(encoding="utf-8"))
            plan = Plan.model_validate(data["plan"])
            steps = {sid: Step.model_validate(s) for sid, s in data.get("steps", {}).items()}
        except OSError as e:
            raise PersistenceError(f"Could not read {plan_file}: {e}") from e
        except (json.JSONDecodeError, KeyError, ValidationError) as e:
            raise PersistenceError(f"Corrupt plan record {plan_file}: {e}") from e
        return plan, steps

    def _write_plan_file(self, plan: Plan, steps: dict[str, Step]) -> Path:
        plan_file = self.plan_dir(plan.id) / PLAN_FILE
        data: dict[str, Any] = {
            "plan": plan.model_dump(mode="json"),
            "steps": {sid: s.model_dump(mode="json") for sid, s in steps.items()},
        }
        try:
            plan_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = plan_file.with_suffix(".json.tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, plan_file)
        except OSError as e:
            raise PersistenceError(f"Could not write {plan_file}: {e}") from e
        return plan_file

    def _append(self, plan_id: str, log_name: str, record: BaseModel) -> None:
        log_file = self.plan_dir(plan_id) / log_name
        line = json.dumps(record.model_dump(mode="json"), separators=(",", ":"))
        with self._lock(plan_id):
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                with open(log_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceError(f"Could not append to {log_file}: {e}") from e

    def _read_log(self, plan_id: str, log_name: str, model: type[RecordT]) -> list[RecordT]:
        log_file = self.plan_dir(plan_id) / log_name
        if not log_file.exists():
            return []
        with self._lock(plan_id):
            try:
                return [model.model_validate_json(line) for line in self._lines(log_file)]
            except OSError as e:
                raise PersistenceError(f"Could not read {log_file}: {e}") from e
            except ValidationError as e:
                raise PersistenceError(f"Corrupt record in {log_file}: {e}") from e

    @staticmethod
    def _lines(log_file: Path) -> Iterator[str]:
        with open(log_file, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield line
