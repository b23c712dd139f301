"""Pydantic models for .chorus/config.yaml configuration."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from chorus.errors import ConfigError
from chorus.logging_setup import LOG_LEVELS
from chorus.schemas.state import AgentKind, SessionMode


class AgentCommand(BaseModel):
    """How to launch one kind of agent."""

    command: str = Field(..., description="Executable to launch")
    args: list[str] = Field(default_factory=list, description="Arguments before the prompt")


class AgentSettings(BaseModel):
    """Agent pool settings."""

    default: AgentKind = Field(default=AgentKind.CLAUDE)
    max_parallel: int = Field(default=3, ge=1, description="Slot pool capacity")
    timeout_minutes: float = Field(
        default=30, gt=0, description="Supervisory timeout per agent run"
    )
    max_iterations: int | None = Field(
        default=None,
        ge=1,
        description="Runs per task while the agent exits without a signal "
        "(defaults to review.auto_approve.max_iterations)",
    )
    available: dict[AgentKind, AgentCommand] = Field(
        default_factory=lambda: {
            AgentKind.CLAUDE: AgentCommand(
                command="claude",
                args=["--print", "--dangerously-skip-permissions"],
            )
        }
    )


class QualityCommand(BaseModel):
    """A quality gate command."""

    name: str = Field(...)
    command: str = Field(...)
    required: bool = Field(default=True)
    order: int = Field(default=0)


class AutoApproveSettings(BaseModel):
    """Settings for unattended merge approval."""

    enabled: bool = Field(default=True)
    max_iterations: int = Field(default=3, ge=0)
    require_quality_pass: bool = Field(default=True)


class ReviewSettings(BaseModel):
    """Review settings."""

    auto_approve: AutoApproveSettings = Field(default_factory=AutoApproveSettings)


class CheckpointSettings(BaseModel):
    """Checkpoint trigger settings."""

    enabled: bool = Field(default=True)
    before_autopilot: bool = Field(default=True)
    before_merge: bool = Field(default=True)
    periodic: int = Field(
        default=5, ge=0, description="Checkpoint every N completed tasks (0 disables)"
    )
    keep: int = Field(default=20, ge=1, description="Checkpoint tags to retain")


class MergeSettings(BaseModel):
    """Merge queue settings."""

    base_branch: str = Field(default="main")
    max_retries: int = Field(default=3, ge=0)


class ChorusConfig(BaseModel):
    """Complete configuration for .chorus/config.yaml."""

    mode: SessionMode = Field(default=SessionMode.SEMI_AUTO)
    worktree_dir: str = Field(default=".worktrees")
    log_level: str = Field(default="INFO")
    agents: AgentSettings = Field(default_factory=AgentSettings)
    quality_commands: list[QualityCommand] = Field(
        default_factory=lambda: [
            QualityCommand(name="test", command="pytest", required=True, order=0)
        ]
    )
    review: ReviewSettings = Field(default_factory=ReviewSettings)
    checkpoints: CheckpointSettings = Field(default_factory=CheckpointSettings)
    merge: MergeSettings = Field(default_factory=MergeSettings)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(sorted(LOG_LEVELS))}")
        return normalized

    @property
    def auto_approve(self) -> AutoApproveSettings:
        return self.review.auto_approve

    @property
    def max_iterations(self) -> int:
        """Upper bound on agent runs per task."""
        if self.agents.max_iterations is not None:
            return self.agents.max_iterations
        return max(self.auto_approve.max_iterations, 1)

    def ordered_quality_commands(self) -> list[QualityCommand]:
        """Quality commands sorted by their configured order."""
        return sorted(self.quality_commands, key=lambda c: c.order)

    @classmethod
    def load(cls, path: str | Path) -> "ChorusConfig":
        """Load configuration from a YAML file.

        A missing file yields the defaults. Unreadable or invalid content
        raises ConfigError.
        """
        path = Path(path)
        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config root in {path} must be a mapping")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config in {path}: {e}") from e

    def save(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                sort_keys=False,
            )
