"""Manual completion of a task by the operator."""

from __future__ import annotations

import logging
from typing import Protocol

from chorus.core.slots import SlotBinding

logger = logging.getLogger(__name__)


class AgentStopper(Protocol):
    async def stop_agent(self, agent_id: str) -> object:
        ...


class SlotReleaser(Protocol):
    def get_slot_by_task(self, task_id: str) -> SlotBinding | None:
        ...

    def release_slot(self, agent_id: str) -> bool:
        ...


class TaskCloser(Protocol):
    async def close_task(self, task_id: str) -> None:
        ...


class StateUpdater(Protocol):
    def refresh(self) -> None:
        ...


class MarkDoneHandler:
    """Closes a task on the operator's say-so.

    The agent working the task, if any, is stopped before its slot is
    released; the task is closed only after that, and state is refreshed
    last.
    """

    def __init__(
        self,
        stopper: AgentStopper,
        slots: SlotReleaser,
        tasks: TaskCloser,
        updater: StateUpdater,
    ):
        self.stopper = stopper
        self.slots = slots
        self.tasks = tasks
        self.updater = updater

    async def mark_done(self, task_id: str | None) -> None:
        if not task_id:
            return

        binding = self.slots.get_slot_by_task(task_id)
        if binding is not None:
            await self.stopper.stop_agent(binding.agent_id)
            self.slots.release_slot(binding.agent_id)

        await self.tasks.close_task(task_id)
        self.updater.refresh()
        logger.info("Task %s marked done", task_id)
