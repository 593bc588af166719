"""Configuration management for chainrun."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from chainrun.core.errors import ConfigurationError
from chainrun.core.models import PhaseClass, PhaseName

ORCHESTRATOR_DIR_NAME = ".chainrun"


class NotificationConfig(BaseModel):
    """Notification settings."""

    enabled: bool = True
    provider: Literal["desktop", "ntfy", "console", "none"] = "console"
    ntfy_server: str = "https://ntfy.sh"
    ntfy_topic: str = "chainrun"
    ntfy_click_url: str | None = Field(default=None, description="Issue link opened from a notification, with {issue}")


class QualityLoopConfig(BaseModel):
    """Fix-and-retry budgets, one per phase class."""

    enabled: bool = Field(default=False, description="Run fix cycles when a phase fails")
    planning_max_iterations: int = Field(default=0, ge=0)
    implementation_max_iterations: int = Field(default=3, ge=0)
    review_max_iterations: int = Field(default=2, ge=0)

    def max_iterations(self, phase_class: PhaseClass) -> int:
        """Loop budget for a phase class; zero when the loop is disabled."""
        if not self.enabled:
            return 0
        if phase_class == PhaseClass.REVIEW:
            return self.review_max_iterations
        if phase_class == PhaseClass.PLANNING:
            return self.planning_max_iterations
        return self.implementation_max_iterations


class ChainConfig(BaseModel):
    """Chain mode settings."""

    max_length: int = Field(default=5, description="Chains longer than this emit a warning")
    checkpoint_tag_prefix: str = Field(default="chainrun/checkpoint", description="Tag namespace for checkpoints")
    checkpoint_message: str = Field(
        default="checkpoint: #{issue} - {title}",
        description="Commit message for pending changes before tagging; supports {issue}, {title}",
    )


class WorktreeConfig(BaseModel):
    """Where and how issue workspaces are created."""

    root: Path | None = Field(default=None, description="Directory holding worktrees (default: <repo parent>/worktrees)")
    remote: str = "origin"
    trunk: str = "main"
    branch_prefix: str = "feature"


class ExecutorConfig(BaseModel):
    """Settings for the subprocess phase executor."""

    command: list[str] = Field(
        default_factory=lambda: ["claude", "-p", "{prompt}"],
        description="Command template; {prompt}, {phase}, {issue} are substituted",
    )
    cold_start_threshold: float = Field(
        default=60.0,
        description="Failures faster than this many seconds are retried as start-up failures",
    )
    cold_start_retries: int = 2


class TrackerConfig(BaseModel):
    """Issue tracker settings."""

    provider: Literal["github", "none"] = "none"
    repo: str | None = Field(default=None, description="Repository in 'owner/repo' format")
    post_markers: bool = Field(default=True, description="Post phase marker comments after each issue")
    dry_run: bool = False


class LogConfig(BaseModel):
    """Run log retention."""

    max_files: int = 100
    max_size_mb: float = 10.0


class Config(BaseModel):
    """chainrun configuration."""

    phases: list[PhaseName] = Field(
        default_factory=lambda: [PhaseName.PLAN, PhaseName.IMPLEMENT, PhaseName.REVIEW],
        description="Default phase list when none is given on the command line",
    )
    phase_timeout: int = Field(default=1800, description="Per-phase timeout in seconds (default: 30 min)")
    lock_timeout: float = Field(default=10.0, description="Max seconds to wait for the state file lock")
    quality_loop: QualityLoopConfig = Field(default_factory=QualityLoopConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logs: LogConfig = Field(default_factory=LogConfig)
    background_checks: list[str] = Field(
        default_factory=list,
        description="Shell commands run in the workspace after code-changing phases; advisory only",
    )

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """Load configuration from file or use defaults, then apply env overrides.

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation.
        """
        if config_path is None:
            config_path = Path(ORCHESTRATOR_DIR_NAME) / "config.yaml"

        config = cls()
        if config_path.exists():
            try:
                with config_path.open() as f:
                    data = yaml.safe_load(f) or {}
                config = cls.model_validate(data)
            except (yaml.YAMLError, ValidationError) as e:
                raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e

        config.apply_env_overrides()
        return config

    def apply_env_overrides(self, environ: Mapping[str, str] | None = None) -> None:
        """Apply CHAINRUN_* environment variables on top of file values."""
        env = os.environ if environ is None else environ

        if "CHAINRUN_QUALITY_LOOP" in env:
            self.quality_loop.enabled = env["CHAINRUN_QUALITY_LOOP"].strip().lower() in ("1", "true", "yes", "on")
        if "CHAINRUN_MAX_ITERATIONS" in env:
            value = _env_int(env, "CHAINRUN_MAX_ITERATIONS")
            self.quality_loop.implementation_max_iterations = value
            self.quality_loop.review_max_iterations = min(value, self.quality_loop.review_max_iterations)
        if "CHAINRUN_PHASE_TIMEOUT" in env:
            self.phase_timeout = _env_int(env, "CHAINRUN_PHASE_TIMEOUT")

    def save(self, config_path: Path) -> None:
        """Save configuration to file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)


def _env_int(env: Mapping[str, str], key: str) -> int:
    try:
        value = int(env[key])
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got '{env[key]}'") from e
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative")
    return value


def get_orchestrator_dir(project_root: Path | None = None) -> Path:
    """Get the .chainrun directory, creating if needed."""
    if project_root is None:
        project_root = Path.cwd()
    orchestrator_dir = project_root / ORCHESTRATOR_DIR_NAME
    orchestrator_dir.mkdir(parents=True, exist_ok=True)
    return orchestrator_dir
