"""Typed lifecycle events and their subscription bus."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeStarted:
    task_id: str
    branch: str


@dataclass(frozen=True)
class MergeSucceeded:
    task_id: str
    branch: str


@dataclass(frozen=True)
class MergeConflicted:
    task_id: str
    branch: str
    conflict_files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MergeFailed:
    task_id: str
    branch: str
    error: str


@dataclass(frozen=True)
class TaskCompleted:
    task_id: str
    agent_id: str
    auto_approved: bool


@dataclass(frozen=True)
class AgentExited:
    agent_id: str
    task_id: str
    exit_code: int | None
    timed_out: bool = False


@dataclass(frozen=True)
class CheckpointCreated:
    checkpoint_id: str
    type: str


Event = Union[
    MergeStarted,
    MergeSucceeded,
    MergeConflicted,
    MergeFailed,
    TaskCompleted,
    AgentExited,
    CheckpointCreated,
]

E = TypeVar("E")
Handler = Callable[[E], None]


class EventBus:
    """Synchronous publish/subscribe for core events.

    Handlers run in subscription order on the publishing task. A failing
    handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[type | None, Callable[[Event], None]]] = []

    def subscribe(
        self,
        handler: Callable[[E], None],
        event_type: type[E] | None = None,
    ) -> Callable[[], None]:
        """Register a handler.

        Args:
            handler: Called with each matching event
            event_type: Only deliver events of this class (all events if None)

        Returns:
            A callable that removes the subscription
        """
        entry = (event_type, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: Event) -> None:
        """Deliver an event to all matching subscribers."""
        for event_type, handler in list(self._subscribers):
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", type(event).__name__)
