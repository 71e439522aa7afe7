"""Tests for configuration loading."""

from pathlib import Path

import pytest

from pipeline.config import DEFAULT_CONFIG_TOML, Config, load_config
from schemas.execution import StageKind


def test_defaults_without_file(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.toml")
    assert config.executor.retry_limit == 2
    assert config.budget.to_budget().max_lines_added == 150
    assert config.rollback.max_split_depth == 2
    assert config.stages == {}


def test_default_template_parses(tmp_path: Path) -> None:
    path = tmp_path / "stepforge.toml"
    path.write_text(DEFAULT_CONFIG_TOML)
    config = load_config(path)
    assert config.verification.commands == ["pytest -q"]
    assert config.git.enabled is True


def test_file_values_and_stage_commands(tmp_path: Path) -> None:
    path = tmp_path / "stepforge.toml"
    path.write_text(
        """
[pipeline]
state_dir = "state"
repo_path = "repo"

[executor]
retry_limit = 4

[stages.implementation]
command = "./scripts/implement.sh"
allowed_commands = ["./scripts/implement.sh"]
"""
    )
    config = load_config(path)
    assert config.executor.retry_limit == 4
    assert config.stages[StageKind.IMPLEMENTATION].command == "./scripts/implement.sh"
    assert config.state_path == config.repo_dir / "state"
    assert config.to_dict()["stages"]["implementation"]["command"] == "./scripts/implement.sh"


def test_env_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "stepforge.toml"
    path.write_text("[executor]\nretry_limit = 4\n")
    monkeypatch.setenv("STEPFORGE_RETRY_LIMIT", "7")
    monkeypatch.setenv("STEPFORGE_STAGE_TIMEOUT", "not-a-number")
    config = load_config(path)
    assert config.executor.retry_limit == 7
    assert config.executor.stage_timeout_seconds == 600


def test_unknown_stage_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown stage"):
        Config.from_dict({"stages": {"deploy": {"command": "make deploy"}}})


def test_human_approval_cannot_have_a_command() -> None:
    with pytest.raises(ValueError):
        Config.from_dict({"stages": {"human_approval": {"command": "true"}}})


def test_unknown_key_is_rejected() -> None:
    with pytest.raises(TypeError):
        Config.from_dict({"executor": {"retries": 3}})
