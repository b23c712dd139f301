"""Bounded pool of agent slots."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chorus.errors import SlotInvariantError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotBinding:
    """Which agent and task occupy a slot."""

    agent_id: str
    task_id: str


class SlotManager:
    """Capacity tokens limiting how many agents run at once.

    Mutated only from the control loop. Callers acquire a raw slot, then
    bind it to an agent/task once the agent exists; release_slot() is the
    binding-aware release that can never free the same agent twice.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Slot capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._in_use = 0
        self._bindings: dict[str, SlotBinding] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._capacity - self._in_use

    def acquire(self) -> bool:
        """Take a slot if one is free.

        Returns:
            True on success, False when the pool is exhausted
        """
        if self._in_use >= self._capacity:
            return False
        self._in_use += 1
        return True

    def release(self) -> None:
        """Return a slot to the pool.

        Raises:
            SlotInvariantError: If no slot is in use
        """
        if self._in_use == 0:
            raise SlotInvariantError("release() called with no slots in use")
        self._in_use -= 1

    def reset(self) -> None:
        """Force the pool empty. Only for session re-initialization."""
        self._in_use = 0
        self._bindings.clear()

    def bind(self, agent_id: str, task_id: str) -> SlotBinding:
        """Attach an acquired slot to an agent and task.

        Raises:
            SlotInvariantError: If the task or agent is already bound, or
                there is no acquired slot left to bind
        """
        if self.get_slot_by_task(task_id) is not None:
            raise SlotInvariantError(f"Task {task_id} is already bound to a slot")
        if agent_id in self._bindings:
            raise SlotInvariantError(f"Agent {agent_id} is already bound to a slot")
        if len(self._bindings) >= self._in_use:
            raise SlotInvariantError("bind() called without an acquired slot")

        binding = SlotBinding(agent_id=agent_id, task_id=task_id)
        self._bindings[agent_id] = binding
        return binding

    def get_slot_by_task(self, task_id: str) -> SlotBinding | None:
        """Return the binding for a task, if any."""
        for binding in self._bindings.values():
            if binding.task_id == task_id:
                return binding
        return None

    def get_slot_by_agent(self, agent_id: str) -> SlotBinding | None:
        return self._bindings.get(agent_id)

    def release_slot(self, agent_id: str) -> bool:
        """Unbind an agent and return its slot.

        Returns:
            False (and releases nothing) if the agent holds no slot
        """
        binding = self._bindings.pop(agent_id, None)
        if binding is None:
            logger.debug("release_slot(%s): agent holds no slot", agent_id)
            return False
        self.release()
        logger.debug("Released slot for agent %s (task %s)", agent_id, binding.task_id)
        return True

    def bindings(self) -> list[SlotBinding]:
        return list(self._bindings.values())
