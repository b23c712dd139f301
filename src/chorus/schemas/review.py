"""Pydantic models for agent completion results."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class SignalType(str, Enum):
    """Outcome markers an agent can emit."""

    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"
    NEEDS_HELP = "NEEDS_HELP"
    PROGRESS = "PROGRESS"


class Signal(BaseModel):
    """A parsed completion signal."""

    type: SignalType
    payload: str | None = None
    raw: str = ""


class QualityRunResult(BaseModel):
    """Outcome of one quality gate."""

    name: str
    passed: bool
    duration_ms: int = 0
    error: str | None = None


class FileChange(BaseModel):
    """One file touched by an agent run."""

    path: str
    type: Literal["added", "modified", "deleted"] = "modified"
    lines_added: int = 0
    lines_removed: int = 0


class TaskCompletionResult(BaseModel):
    """Everything known about one finished agent run."""

    task_id: str = Field(...)
    agent_id: str = Field(...)
    iterations: int = Field(default=1)
    duration_ms: int = Field(default=0)
    signal: Signal | None = Field(default=None)
    quality: list[QualityRunResult] = Field(default_factory=list)
    changes: list[FileChange] = Field(default_factory=list)
