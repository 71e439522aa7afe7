"""Configuration management for stepforge.

Loads configuration from:
1. stepforge.toml (defaults)
2. Environment variables (overrides)
"""

import os
import sys
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, get_origin

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from dotenv import load_dotenv

from schemas.execution import DEFAULT_TEST_FILE_PATTERNS, StageKind
from schemas.plan import StepBudget

# Load .env file if present
load_dotenv()

CONFIG_FILENAME = "stepforge.toml"


@dataclass
class PipelineConfig:
    """Where state lives and how loud the logs are."""

    state_dir: str = ".stepforge"
    log_level: str = "INFO"
    repo_path: str = "."


@dataclass
class BudgetConfig:
    """Default per-step budget for new plans."""

    max_files_changed: int = 3
    max_lines_added: int = 150
    max_files_created: int = 2
    max_test_files: int = 2

    def to_budget(self) -> StepBudget:
        return StepBudget(
            max_files_changed=self.max_files_changed,
            max_lines_added=self.max_lines_added,
            max_files_created=self.max_files_created,
            max_test_files=self.max_test_files,
        )


@dataclass
class ExecutorConfig:
    """Stage execution: retries, timeouts and the verification fix loop."""

    retry_limit: int = 2  # Total attempts per stage
    stage_timeout_seconds: float = 600
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    verification_fix_attempts: int = 1
    schema_migration_planning: bool = False  # Run the optional post-approval stage


@dataclass
class VerificationConfig:
    """Automated checks run by the verification stage."""

    commands: list[str] = field(default_factory=list)  # e.g. ["pytest -q", "ruff check ."]
    timeout_seconds: int = 600
    test_file_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_TEST_FILE_PATTERNS))


@dataclass
class ApprovalConfig:
    """Human approval configuration."""

    auto_approve: bool = False


@dataclass
class RollbackConfig:
    """When rollbacks happen without an operator asking."""

    on_budget_violation: bool = False
    max_split_depth: int = 2  # Deeper steps stay blocked instead of splitting again


@dataclass
class GitConfig:
    """Git checkpointing configuration."""

    enabled: bool = True
    commit_prefix: str = "[stepforge]"


@dataclass
class StageCommandConfig:
    """Shell command that implements one stage."""

    command: str = ""
    allowed_commands: list[str] = field(default_factory=list)  # Extra executables ("*" allows any)


@dataclass
class Config:
    """Main configuration container."""

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    rollback: RollbackConfig = field(default_factory=RollbackConfig)
    git: GitConfig = field(default_factory=GitConfig)
    stages: dict[StageKind, StageCommandConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        stages_data = data.get("stages", {})

        stages = {}
        for name, stage_data in stages_data.items():
            try:
                kind = StageKind(name)
            except ValueError:
                raise ValueError(
                    f"Unknown stage '{name}' in [stages]; expected one of "
                    + ", ".join(k.value for k in StageKind)
                ) from None
            if kind == StageKind.HUMAN_APPROVAL:
                raise ValueError("human_approval cannot be configured with a command")
            stages[kind] = StageCommandConfig(**stage_data)

        return cls(
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            budget=BudgetConfig(**data.get("budget", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            verification=VerificationConfig(**data.get("verification", {})),
            approval=ApprovalConfig(**data.get("approval", {})),
            rollback=RollbackConfig(**data.get("rollback", {})),
            git=GitConfig(**data.get("git", {})),
            stages=stages,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain dict view (for `stepforge config show`)."""
        data = asdict(self)
        data["stages"] = {kind.value: asdict(stage) for kind, stage in self.stages.items()}
        return data

    @property
    def repo_dir(self) -> Path:
        return Path(self.pipeline.repo_path).resolve()

    @property
    def state_path(self) -> Path:
        """State directory, relative paths resolved against the repository."""
        path = Path(self.pipeline.state_dir)
        return path if path.is_absolute() else self.repo_dir / path


DEFAULT_CONFIG_TOML = """\
# stepforge configuration

[pipeline]
state_dir = ".stepforge"
log_level = "INFO"
repo_path = "."

[budget]
max_files_changed = 3
max_lines_added = 150
max_files_created = 2
max_test_files = 2

[executor]
retry_limit = 2
stage_timeout_seconds = 600
backoff_seconds = 1.0
backoff_multiplier = 2.0
verification_fix_attempts = 1
schema_migration_planning = false

[verification]
commands = ["pytest -q"]
timeout_seconds = 600

[approval]
auto_approve = false

[rollback]
on_budget_violation = false
max_split_depth = 2

[git]
enabled = true
commit_prefix = "[stepforge]"

# One command per stage; unconfigured stages pass through.
# [stages.implementation]
# command = "./scripts/implement.sh"
"""


def find_config_file() -> Path | None:
    """Find stepforge.toml in current or parent directories.

    Returns:
        Path to stepforge.toml or None if not found.
    """
    current = Path.cwd()

    for directory in [current, *current.parents]:
        config_path = directory / CONFIG_FILENAME
        if config_path.exists():
            return config_path

    return None


def load_config(config_path: Path | str | None = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Optional explicit path to stepforge.toml

    Returns:
        Config object with merged settings.
    """
    # Start with defaults
    config_data: dict[str, Any] = {}

    # Load from file if available
    if config_path is None:
        config_path = find_config_file()

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path, "rb") as f:
                config_data = tomllib.load(f)

    # Apply environment variable overrides
    env_overrides = {
        "pipeline": {
            "state_dir": os.getenv("STEPFORGE_STATE_DIR"),
            "log_level": os.getenv("STEPFORGE_LOG_LEVEL"),
            "repo_path": os.getenv("STEPFORGE_REPO_PATH"),
        },
        "executor": {
            "retry_limit": _int_or_none(os.getenv("STEPFORGE_RETRY_LIMIT")),
            "stage_timeout_seconds": _float_or_none(os.getenv("STEPFORGE_STAGE_TIMEOUT")),
        },
    }

    # Merge env overrides (only non-None values)
    for section, values in env_overrides.items():
        if section not in config_data:
            config_data[section] = {}
        for key, value in values.items():
            if value is not None:
                config_data[section][key] = value

    return Config.from_dict(config_data)


def _int_or_none(value: str | None) -> int | None:
    """Convert string to int, or return None."""
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _float_or_none(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
FALSE_WORDS = frozenset({"false", "no", "off", "0"})


def parse_setting(key: str, raw: str) -> tuple[list[str], Any]:
    """Resolve a dotted config key and convert ``raw`` to the setting's type.

    Accepts ``section.setting`` for the fixed sections and
    ``stages.<kind>.<setting>`` for stage command tables. The target type is
    the field's declared type; lists accept a TOML array or a
    comma-separated string.

    Returns:
        The key path and the converted value

    Raises:
        KeyError: If the key names no known setting
        ValueError: If the value does not fit the setting
    """
    path = key.split(".")
    if path[0] == "stages":
        if len(path) != 3:
            raise KeyError("stage keys look like stages.<kind>.<setting>")
        kind = StageKind(path[1])
        if kind == StageKind.HUMAN_APPROVAL:
            raise ValueError("human_approval cannot be configured with a command")
        holder: Any = StageCommandConfig()
    else:
        if len(path) != 2:
            raise KeyError("keys look like section.setting or stages.<kind>.<setting>")
        holder = getattr(Config(), path[0], None)
        if holder is None or not is_dataclass(holder):
            raise KeyError(f"no config section '{path[0]}'")

    setting = path[-1]
    types = {f.name: f.type for f in fields(holder)}
    if setting not in types:
        raise KeyError(f"no setting '{setting}' in {'.'.join(path[:-1])}")
    return path, _convert(raw, types[setting])


def _convert(raw: str, kind: Any) -> Any:
    if kind is bool:
        word = raw.strip().lower()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
        raise ValueError(f"expected true or false, got {raw!r}")
    if kind is int:
        return int(raw)
    if kind is float:
        return float(raw)
    if get_origin(kind) is list:
        if raw.lstrip().startswith("["):
            try:
                value = tomllib.loads(f"value = {raw}")["value"]
            except tomllib.TOMLDecodeError as e:
                raise ValueError(f"not a TOML array: {e}") from None
            return [str(item) for item in value]
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


# Global config instance (lazy loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Returns:
        Config object (loaded once, cached).
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Force reload of configuration.

    Returns:
        Fresh Config object.
    """
    global _config
    _config = load_config()
    return _config
