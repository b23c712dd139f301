"""Task lookup and status collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from chorus.core.dag import get_task_dependents, parse_task_dag, validate_dag
from chorus.schemas.state import AgentKind

if TYPE_CHECKING:
    from chorus.schemas.tasks import TaskPlan

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Task states as tracked by the task store."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    REVIEWING = "reviewing"
    CLOSED = "closed"


class TaskProvider(Protocol):
    """The task store the orchestration core reads labels from and closes tasks in."""

    async def close_task(self, task_id: str) -> None:
        ...

    async def get_task_labels(self, task_id: str) -> list[str]:
        ...

    async def update_status(self, task_id: str, status: TaskStatus) -> None:
        ...

    async def get_dependency_graph(self) -> dict[str, list[str]]:
        ...


@dataclass
class TaskRecord:
    """A task held by InMemoryTaskProvider."""

    id: str
    status: TaskStatus = TaskStatus.OPEN
    labels: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    prompt: str = ""
    priority: int = 2
    agent: AgentKind | None = None


class InMemoryTaskProvider:
    """TaskProvider backed by a dict, for embedding and tests."""

    def __init__(self) -> None:
        self.tasks: dict[str, TaskRecord] = {}

    @classmethod
    def from_plan(cls, plan: TaskPlan) -> InMemoryTaskProvider:
        """Provider holding the tasks of a run plan, in plan order."""
        provider = cls()
        graph = {task.id: task.depends_on for task in plan.tasks}
        validate_dag(graph)
        for task in plan.tasks:
            provider.tasks[task.id] = TaskRecord(
                id=task.id,
                labels=list(task.labels),
                depends_on=list(task.depends_on),
                prompt=task.prompt,
                priority=task.priority,
                agent=task.agent,
            )
        return provider

    def add_task(
        self,
        task_id: str,
        labels: list[str] | None = None,
        depends_on: list[str] | None = None,
        prompt: str = "",
    ) -> TaskRecord:
        """Register a task.

        Raises:
            DAGValidationError: If the new dependency would form a cycle or
                reference an unknown task
        """
        record = TaskRecord(
            id=task_id,
            labels=list(labels or []),
            depends_on=list(depends_on or []),
            prompt=prompt,
        )
        graph = {tid: t.depends_on for tid, t in self.tasks.items()}
        graph[task_id] = record.depends_on
        validate_dag(graph)
        self.tasks[task_id] = record
        return record

    async def close_task(self, task_id: str) -> None:
        await self.update_status(task_id, TaskStatus.CLOSED)

    async def get_task_labels(self, task_id: str) -> list[str]:
        record = self.tasks.get(task_id)
        return list(record.labels) if record else []

    async def update_status(self, task_id: str, status: TaskStatus) -> None:
        record = self.tasks.get(task_id)
        if record is None:
            logger.warning("update_status for unknown task %s", task_id)
            return
        record.status = status

    async def get_dependency_graph(self) -> dict[str, list[str]]:
        return {tid: list(t.depends_on) for tid, t in self.tasks.items()}

    def get_dependents(self, task_id: str) -> set[str]:
        """All tasks that transitively depend on a task."""
        nodes = parse_task_dag({tid: t.depends_on for tid, t in self.tasks.items()})
        return get_task_dependents(task_id, nodes)

    def ready_tasks(self) -> list[TaskRecord]:
        """Open tasks whose dependencies are all closed."""
        return [
            record
            for record in self.tasks.values()
            if record.status == TaskStatus.OPEN
            and all(
                dep in self.tasks and self.tasks[dep].status == TaskStatus.CLOSED
                for dep in record.depends_on
            )
        ]
