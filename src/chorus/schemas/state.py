"""Pydantic models for .chorus/state.json session state."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AgentKind(str, Enum):
    """Supported agent executables."""

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"


class AgentStatus(str, Enum):
    """Agent lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class SessionMode(str, Enum):
    """How completed work is driven through review."""

    SEMI_AUTO = "semi-auto"
    AUTOPILOT = "autopilot"


class MergeItemStatus(str, Enum):
    """Merge queue item states."""

    PENDING = "pending"
    MERGING = "merging"
    CONFLICT = "conflict"
    RESOLVING = "resolving"


class CheckpointType(str, Enum):
    """Trigger points for checkpoint creation."""

    AUTOPILOT_START = "autopilot_start"
    PRE_MERGE = "pre_merge"
    PERIODIC = "periodic"


class AgentState(BaseModel):
    """A running agent bound to one task."""

    id: str = Field(..., description="Agent identifier")
    kind: AgentKind = Field(default=AgentKind.CLAUDE)
    pid: int | None = Field(default=None, description="OS process id")
    task_id: str = Field(..., description="Task the agent works on")
    worktree: str = Field(..., description="Path to the agent's worktree")
    branch: str = Field(..., description="Branch checked out in the worktree")
    iteration: int = Field(default=0)
    started_at: str = Field(..., description="ISO timestamp when the agent started")
    status: AgentStatus = Field(default=AgentStatus.IDLE)
    error: str | None = Field(default=None)


class IterationRecord(BaseModel):
    """Start boundary of one agent iteration."""

    number: int
    start_commit: str


class MergeQueueItem(BaseModel):
    """A completed task branch waiting to be merged."""

    task_id: str = Field(...)
    branch: str = Field(...)
    worktree: str = Field(...)
    priority: int = Field(default=2, ge=0, le=4, description="0 is most urgent")
    status: MergeItemStatus = Field(default=MergeItemStatus.PENDING)
    retry_count: int = Field(default=0)
    enqueued_at: float = Field(..., description="Epoch seconds at enqueue")
    dependencies: list[str] = Field(default_factory=list)
    conflict_files: list[str] = Field(default_factory=list)
    auto_approved: bool = Field(default=True, description="Approved without human review")
    deferred_at: float | None = Field(default=None)


class Checkpoint(BaseModel):
    """An immutable rollback target backed by a git tag."""

    model_config = ConfigDict(frozen=True)

    id: str
    tag: str
    timestamp: str
    type: CheckpointType
    task_id: str | None = None


class SessionStats(BaseModel):
    """Accumulating session counters."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    merges_auto: int = 0
    merges_manual: int = 0
    total_iterations: int = 0
    total_runtime_ms: int = 0


class ChorusState(BaseModel):
    """Root aggregate for one orchestration session."""

    version: str = Field(default="1.0")
    session_id: str = Field(..., description="Unique identifier for this session")
    started_at: str = Field(..., description="ISO timestamp when the session started")
    mode: SessionMode = Field(default=SessionMode.SEMI_AUTO)
    paused: bool = Field(default=False)
    agents: dict[str, AgentState] = Field(...)
    merge_queue: list[MergeQueueItem] = Field(default_factory=list)
    checkpoint: str | None = Field(default=None, description="Last checkpoint id")
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    pending_review: list[str] = Field(default_factory=list)
    stats: SessionStats = Field(...)

    def get_running_agents(self) -> list[AgentState]:
        """Agents whose status is running."""
        return [a for a in self.agents.values() if a.status == AgentStatus.RUNNING]

    def find_agent_by_task(self, task_id: str) -> AgentState | None:
        """Return the agent bound to a task, if any."""
        for agent in self.agents.values():
            if agent.task_id == task_id:
                return agent
        return None
