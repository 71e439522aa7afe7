"""Tests for the stepforge CLI."""

import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from cli.stepforge import __version__
from cli.stepforge.cli import app
from orchestrator.state_store import StateStore

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "stepforge.toml"
    path.write_text(
        f"""
[pipeline]
state_dir = "state"
log_level = "WARNING"
repo_path = "{tmp_path.as_posix()}"

[executor]
retry_limit = 1

[verification]
commands = []

[approval]
auto_approve = true

[git]
enabled = false
"""
    )
    return path


def _run(config_file: Path, *args: str):
    return runner.invoke(app, ["--config", str(config_file), *args])


def _latest_plan(tmp_path: Path) -> str:
    return StateStore(tmp_path / "state").list_plans()[0]


def test_plan_execute_status(tmp_path: Path, config_file: Path) -> None:
    result = _run(config_file, "plan", "Add export", "-s", "Add CSV writer", "-s", "Wire export command")
    assert result.exit_code == 0, result.output
    assert "Created plan" in result.output
    plan_id = _latest_plan(tmp_path)

    result = _run(config_file, "execute")
    assert result.exit_code == 0, result.output
    assert "Plan completed" in result.output

    result = _run(config_file, "status", plan_id, "--json")
    assert result.exit_code == 0, result.output
    assert '"status": "completed"' in result.output

    result = _run(config_file, "export")
    assert result.exit_code == 0, result.output
    assert (tmp_path / "state" / "plans" / plan_id / "PROGRESS.md").exists()


def test_plan_with_budget_options(tmp_path: Path, config_file: Path) -> None:
    result = _run(config_file, "plan", "Add login rate-limit", "--max-files", "1", "--max-lines", "40")
    assert result.exit_code == 0, result.output

    store = StateStore(tmp_path / "state")
    step = store.load(_latest_plan(tmp_path)).steps[0]
    assert step.budget.max_files_changed == 1
    assert step.budget.max_lines_added == 40
    assert step.budget.max_files_created == 2


def test_blocked_step_exits_one_then_abandon(tmp_path: Path, config_file: Path) -> None:
    with open(config_file, "a") as f:
        f.write('\n[stages.implementation]\ncommand = "false"\n')

    assert _run(config_file, "plan", "Add login rate-limit").exit_code == 0
    result = _run(config_file, "execute")
    assert result.exit_code == 1
    assert "blocked" in result.output

    step_id = StateStore(tmp_path / "state").load(_latest_plan(tmp_path)).steps[0].id
    result = _run(config_file, "abandon", step_id)
    assert result.exit_code == 0, result.output

    result = _run(config_file, "execute")
    assert result.exit_code == 0, result.output


def test_operator_error_exits_one(config_file: Path) -> None:
    assert _run(config_file, "plan", "Add login rate-limit").exit_code == 0
    result = _run(config_file, "retry", "step-missing")
    assert result.exit_code == 1


def test_no_plans_exits_one(config_file: Path) -> None:
    result = _run(config_file, "status")
    assert result.exit_code == 1
    assert "No plans found" in result.output


def test_corrupt_state_exits_two(tmp_path: Path, config_file: Path) -> None:
    assert _run(config_file, "plan", "Add login rate-limit").exit_code == 0
    plan_id = _latest_plan(tmp_path)
    (tmp_path / "state" / "plans" / plan_id / "plan.json").write_text("{broken")

    result = _run(config_file, "status", plan_id)
    assert result.exit_code == 2


def test_abandon_needs_step_or_all(config_file: Path) -> None:
    assert _run(config_file, "abandon").exit_code == 1


def test_config_init_and_set(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(app, ["config", "init"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "stepforge.toml").exists()

    assert runner.invoke(app, ["config", "init"]).exit_code == 1

    result = runner.invoke(app, ["config", "set", "executor.retry_limit", "5"])
    assert result.exit_code == 0, result.output
    with open(tmp_path / "stepforge.toml", "rb") as f:
        assert tomllib.load(f)["executor"]["retry_limit"] == 5

    result = runner.invoke(app, ["config", "set", "executor.retries", "5"])
    assert result.exit_code == 1

    result = runner.invoke(app, ["config", "show", "executor"])
    assert result.exit_code == 0, result.output
    assert "retry_limit" in result.output


def test_config_set_stage_command_table(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert runner.invoke(app, ["config", "init"]).exit_code == 0

    result = runner.invoke(app, ["config", "set", "stages.implementation.command", "./scripts/implement.sh"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(app, ["config", "set", "stages.implementation.allowed_commands", "php, composer"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(app, ["config", "set", "verification.commands", '["pytest -q", "ruff check ."]'])
    assert result.exit_code == 0, result.output
    result = runner.invoke(app, ["config", "set", "executor.stage_timeout_seconds", "1.5"])
    assert result.exit_code == 0, result.output

    with open(tmp_path / "stepforge.toml", "rb") as f:
        data = tomllib.load(f)
    assert data["stages"]["implementation"] == {
        "command": "./scripts/implement.sh",
        "allowed_commands": ["php", "composer"],
    }
    assert data["verification"]["commands"] == ["pytest -q", "ruff check ."]
    assert data["executor"]["stage_timeout_seconds"] == 1.5


@pytest.mark.parametrize(
    "key,value",
    [
        ("stages.bogus.command", "make"),
        ("stages.human_approval.command", "make"),
        ("stages.implementation", "make"),
        ("stages.implementation.shell", "bash"),
        ("executor.retry_limit", "three"),
        ("approval.auto_approve", "maybe"),
    ],
)
def test_config_set_rejects_bad_keys_and_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, key: str, value: str
) -> None:
    monkeypatch.chdir(tmp_path)
    assert runner.invoke(app, ["config", "init"]).exit_code == 0
    before = (tmp_path / "stepforge.toml").read_text()

    result = runner.invoke(app, ["config", "set", key, value])

    assert result.exit_code == 1
    assert (tmp_path / "stepforge.toml").read_text() == before


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output
