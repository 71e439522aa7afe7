"""Tests for the shell tool, verification runner and command-backed stages."""

import threading
import time
from pathlib import Path

from conftest import FakeVcs, diff

from agents.base import RepoState, StageRequest
from agents.command_stage import CommandStageProcessor
from agents.verify_stage import VerificationStageProcessor
from schemas.execution import DiffMetrics, StageKind
from schemas.plan import Step
from tools.base import ToolStatus
from tools.shell_tool import ShellTool
from tools.verification import CommandVerificationRunner


def _request(tmp_path: Path, base_ref: str | None = "ref-1") -> StageRequest:
    step = Step(plan_id="plan-1", sequence_index=0, description="Add CSV writer")
    return StageRequest(step=step, repo=RepoState(root=tmp_path, base_ref=base_ref))


def test_shell_tool_runs_allowed_command(tmp_path: Path) -> None:
    result = ShellTool(working_dir=tmp_path).execute("echo hello")
    assert result.success
    assert result.stdout.strip() == "hello"


def test_shell_tool_refuses_unlisted_command(tmp_path: Path) -> None:
    result = ShellTool(working_dir=tmp_path).execute("rm -rf build")
    assert not result.success
    assert result.status == ToolStatus.REFUSED
    assert "Command not allowed: rm" in result.error


def test_shell_tool_wildcard_allows_any(tmp_path: Path) -> None:
    result = ShellTool(working_dir=tmp_path, allowed_commands={"*"}).execute("pwd")
    assert result.success
    assert result.stdout.strip() == str(tmp_path.resolve())


def test_shell_tool_passes_env_and_times_commands(tmp_path: Path) -> None:
    result = ShellTool(working_dir=tmp_path).execute(["sh", "-c", "echo $STEPFORGE_STAGE"], env={"STEPFORGE_STAGE": "review"})
    assert result.last_line() == "review"
    assert result.returncode == 0
    assert result.duration_seconds >= 0


def test_shell_tool_timeout(tmp_path: Path) -> None:
    result = ShellTool(working_dir=tmp_path, timeout=0.2).execute("sh -c 'sleep 5'")
    assert result.status == ToolStatus.TIMEOUT
    assert "timed out" in result.error


def test_shell_tool_missing_executable(tmp_path: Path) -> None:
    result = ShellTool(working_dir=tmp_path, allowed_commands={"*"}).execute("stepforge-no-such-tool")
    assert result.status == ToolStatus.FAILURE
    assert result.text.startswith("Could not run stepforge-no-such-tool")


def test_shell_tool_cancel_event_kills_command(tmp_path: Path) -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        result = ShellTool(working_dir=tmp_path, timeout=30).execute("sh -c 'sleep 5'", cancel_event=cancel)
    finally:
        timer.cancel()

    assert result.status == ToolStatus.CANCELLED
    assert result.error == "Command cancelled"
    assert result.duration_seconds < 4


def test_shell_tool_timeout_kills_child_processes(tmp_path: Path) -> None:
    marker = tmp_path / "late.txt"
    result = ShellTool(working_dir=tmp_path, timeout=0.2).execute(["sh", "-c", f"(sleep 1; touch {marker}) & wait"])
    assert result.status == ToolStatus.TIMEOUT
    time.sleep(1.5)
    assert not marker.exists()


def test_verification_runner_stops_when_cancelled(tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    report = CommandVerificationRunner(["true", "true"]).run(RepoState(root=tmp_path), cancel_event=cancel)
    assert report.clean is False
    assert report.commands == []


def test_verification_runner_reports_failures(tmp_path: Path) -> None:
    report = CommandVerificationRunner(["true", "false"]).run(RepoState(root=tmp_path))
    assert report.clean is False
    assert report.failed_commands == ["false"]
    assert "$ false\n[FAIL]" in report.log


def test_verification_runner_without_commands_is_clean(tmp_path: Path) -> None:
    assert CommandVerificationRunner([]).run(RepoState(root=tmp_path)).clean is True


def test_verification_stage_reports_dirty_as_successful_call(tmp_path: Path) -> None:
    processor = VerificationStageProcessor(CommandVerificationRunner(["false"]))
    output = processor.invoke(_request(tmp_path))
    assert output.success is True
    assert output.clean is False
    assert output.data["failed_commands"] == ["false"]


def test_command_stage_measures_its_own_delta(tmp_path: Path) -> None:
    vcs = FakeVcs()
    before = diff(files=1, lines=10)
    after = DiffMetrics(
        changed_files=before.changed_files + ["src/writer.py"],
        created_files=["src/writer.py"],
        lines_added=40,
    )
    vcs.measurements = [before, after]
    processor = CommandStageProcessor(StageKind.IMPLEMENTATION, "sh -c 'echo $STEPFORGE_STAGE.patch'", vcs=vcs)

    output = processor.invoke(_request(tmp_path))

    assert output.success
    assert output.artifact == "implementation.patch"
    assert output.metrics.changed_files == ["src/writer.py"]
    assert output.metrics.created_files == ["src/writer.py"]
    assert output.metrics.lines_added == 30


def test_command_stage_failure(tmp_path: Path) -> None:
    processor = CommandStageProcessor(StageKind.REVIEW, "sh -c 'echo rejected >&2; exit 3'")
    output = processor.invoke(_request(tmp_path, base_ref=None))
    assert output.success is False
    assert "rejected" in output.error
