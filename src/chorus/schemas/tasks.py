"""Pydantic models for tasks.yaml run plans."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from chorus.errors import ConfigError
from chorus.schemas.state import AgentKind


class TaskSpec(BaseModel):
    """A single task an agent can be started on."""

    id: str = Field(..., min_length=1, description="Unique task identifier")
    prompt: str = Field(..., min_length=1, description="Instructions handed to the agent")
    labels: list[str] = Field(default_factory=list, description="Labels, e.g. review:skip")
    depends_on: list[str] = Field(
        default_factory=list, description="Task IDs that must be closed before this task starts"
    )
    priority: int = Field(default=2, ge=0, le=4, description="Merge priority, 0 is highest")
    agent: AgentKind | None = Field(default=None, description="Agent kind (config default if unset)")


class TaskPlan(BaseModel):
    """The tasks of one run."""

    tasks: list[TaskSpec] = Field(..., min_length=1)

    @field_validator("tasks")
    @classmethod
    def _unique_ids(cls, tasks: list[TaskSpec]) -> list[TaskSpec]:
        seen: set[str] = set()
        for task in tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id: {task.id}")
            seen.add(task.id)
        return tasks

    @classmethod
    def load(cls, path: str | Path) -> "TaskPlan":
        """Load a plan from a YAML file.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        try:
            with open(path) as f:
                data: Any = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid task plan in {path}: {e}") from e
