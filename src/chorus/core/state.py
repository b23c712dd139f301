"""Session state ownership and persistence."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from chorus.errors import (
    AgentNotFoundError,
    DuplicateAgentError,
    StateNotInitializedError,
    StateValidationError,
)
from chorus.schemas.state import (
    AgentState,
    AgentStatus,
    ChorusState,
    IterationRecord,
    SessionMode,
    SessionStats,
)
from chorus.utils.files import FileService, FileStore

logger = logging.getLogger(__name__)

STATE_DIR = ".chorus"
STATE_FILE = "state.json"

REQUIRED_FIELDS = ("session_id", "started_at", "agents", "stats")


class StateService:
    """Owns the single live ChorusState of a session.

    The state must be created with init() or restored with load() before
    any other method is used.
    """

    def __init__(self, project_dir: str | Path, files: FileStore | None = None):
        """Initialize the service.

        Args:
            project_dir: Project root; state lives at .chorus/state.json
            files: File store (defaults to a FileService on project_dir)
        """
        self.project_dir = Path(project_dir)
        self.state_path = self.project_dir / STATE_DIR / STATE_FILE
        self.files = files or FileService(self.project_dir)
        self._state: ChorusState | None = None
        self._iterations: dict[str, list[IterationRecord]] = {}

    def init(self, mode: SessionMode = SessionMode.SEMI_AUTO) -> ChorusState:
        """Create a fresh session state in memory."""
        self._state = ChorusState(
            session_id=str(uuid.uuid4()),
            started_at=datetime.now().isoformat(),
            mode=mode,
            agents={},
            stats=SessionStats(),
        )
        self._iterations = {}
        logger.info("Initialized session %s", self._state.session_id)
        return self._state

    def load(self) -> ChorusState | None:
        """Load the persisted state.

        Returns:
            The loaded state, or None if no state file exists

        Raises:
            StateValidationError: If the document is unreadable or missing
                required fields
        """
        raw = self.files.read(self.state_path)
        if raw is None:
            return None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StateValidationError(f"State file {self.state_path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise StateValidationError(f"State file {self.state_path} must hold an object")

        missing = [name for name in REQUIRED_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise StateValidationError(
                f"Invalid state structure: missing {', '.join(missing)}"
            )

        try:
            self._state = ChorusState.model_validate(data)
        except ValidationError as e:
            raise StateValidationError(f"Invalid state structure: {e}") from e

        self._iterations = {}
        logger.info("Loaded session %s from %s", self._state.session_id, self.state_path)
        return self._state

    def get(self) -> ChorusState:
        """Return the live state.

        Raises:
            StateNotInitializedError: If neither init() nor load() ran
        """
        if self._state is None:
            raise StateNotInitializedError("State not initialized")
        return self._state

    def is_initialized(self) -> bool:
        return self._state is not None

    def save(self) -> None:
        """Persist the live state."""
        state = self.get()
        self.files.write(
            self.state_path,
            json.dumps(state.model_dump(mode="json"), indent=2),
        )

    # Agent registry

    def add_agent(self, agent: AgentState) -> None:
        state = self.get()
        if agent.id in state.agents:
            raise DuplicateAgentError(agent.id)
        state.agents[agent.id] = agent
        self._iterations[agent.id] = []

    def update_agent(self, agent_id: str, **changes: object) -> None:
        """Apply field changes to an agent. No-op if the agent is unknown."""
        state = self.get()
        agent = state.agents.get(agent_id)
        if agent is None:
            return
        state.agents[agent_id] = agent.model_copy(update=changes)

    def remove_agent(self, agent_id: str) -> None:
        state = self.get()
        state.agents.pop(agent_id, None)
        self._iterations.pop(agent_id, None)

    def get_agent(self, agent_id: str) -> AgentState | None:
        return self.get().agents.get(agent_id)

    def set_status(self, agent_id: str, status: AgentStatus) -> None:
        self.update_agent(agent_id, status=status)

    def get_running_agents(self) -> list[AgentState]:
        return self.get().get_running_agents()

    # Iterations

    def start_iteration(self, agent_id: str, start_commit: str) -> int:
        """Record the start of a new iteration for an agent.

        Returns:
            The new iteration number (1-based)

        Raises:
            AgentNotFoundError: If the agent is not registered
        """
        if self.get_agent(agent_id) is None:
            raise AgentNotFoundError(agent_id)

        records = self._iterations.setdefault(agent_id, [])
        number = len(records) + 1
        records.append(IterationRecord(number=number, start_commit=start_commit))
        self.update_agent(agent_id, iteration=number)
        return number

    def get_iterations(self, agent_id: str) -> list[IterationRecord]:
        return list(self._iterations.get(agent_id, []))

    def drop_iterations(self, agent_id: str, count: int) -> None:
        """Forget the last `count` iterations of an agent after a rollback."""
        records = self._iterations.get(agent_id, [])
        if count > 0:
            del records[-count:]
        self.update_agent(agent_id, iteration=len(records))

    def get_iterations_for_task(self, task_id: str) -> list[IterationRecord]:
        agent = self.get().find_agent_by_task(task_id)
        if agent is None:
            return []
        return self.get_iterations(agent.id)

    # Stats

    def record_task_completed(self) -> None:
        self.get().stats.tasks_completed += 1

    def record_task_failed(self) -> None:
        self.get().stats.tasks_failed += 1

    def record_merge(self, auto: bool) -> None:
        stats = self.get().stats
        if auto:
            stats.merges_auto += 1
        else:
            stats.merges_manual += 1

    def add_iterations(self, count: int) -> None:
        self.get().stats.total_iterations += max(count, 0)

    def add_runtime(self, duration_ms: int) -> None:
        self.get().stats.total_runtime_ms += max(duration_ms, 0)
