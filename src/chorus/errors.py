"""Exception hierarchy for the orchestration core."""

from __future__ import annotations


class ChorusError(Exception):
    """Base class for all orchestration errors."""

    pass


class ConfigError(ChorusError):
    """Raised when the configuration document is invalid."""

    pass


class StateValidationError(ChorusError):
    """Raised when the persisted session state is structurally invalid."""

    pass


class StateNotInitializedError(ChorusError):
    """Raised when state is read before init() or load()."""

    pass


class SlotInvariantError(ChorusError):
    """Raised when the slot pool is used in a way that indicates a caller bug."""

    pass


class MergeTransitionError(ChorusError):
    """Raised when a merge queue item is moved through an invalid transition."""

    pass


class DuplicateAgentError(ChorusError):
    """Raised when registering an agent id that already exists."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent with ID {agent_id} already exists")
        self.agent_id = agent_id


class AgentNotFoundError(ChorusError):
    """Raised when an agent id is not registered."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent with ID {agent_id} not found")
        self.agent_id = agent_id


class CheckpointError(ChorusError):
    """Raised when a checkpoint tag cannot be created."""

    pass


class SpawnError(ChorusError):
    """Raised when an agent process cannot be started."""

    pass
