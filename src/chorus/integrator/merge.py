"""Serialized merging of completed task branches."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from chorus.core.events import (
    EventBus,
    MergeConflicted,
    MergeFailed,
    MergeStarted,
    MergeSucceeded,
)
from chorus.errors import CheckpointError, MergeTransitionError
from chorus.schemas.state import CheckpointType, MergeItemStatus, MergeQueueItem
from chorus.utils.git import GitMergeResult

if TYPE_CHECKING:
    from chorus.core.state import StateService
    from chorus.rollback.checkpoints import Checkpointer
    from chorus.utils.process import CommandResult
    from chorus.worktree.manager import WorktreeManager

logger = logging.getLogger(__name__)


# Priority 0 is most urgent
PRIORITY_BOOST: dict[int, int] = {
    0: 200,
    1: 100,
    2: 50,
    3: 10,
    4: 0,
}

# Valid status transitions per attempt. Success and final failure remove
# the item instead of transitioning it.
VALID_TRANSITIONS: dict[MergeItemStatus, set[MergeItemStatus]] = {
    MergeItemStatus.PENDING: {MergeItemStatus.MERGING},
    MergeItemStatus.MERGING: {MergeItemStatus.CONFLICT, MergeItemStatus.PENDING},
    MergeItemStatus.CONFLICT: {MergeItemStatus.RESOLVING},
    MergeItemStatus.RESOLVING: {MergeItemStatus.MERGING},
}

_HEAD_STATUSES = {MergeItemStatus.MERGING, MergeItemStatus.CONFLICT, MergeItemStatus.RESOLVING}


@dataclass
class QueueStats:
    """Counts of queued items by status plus finished totals."""

    pending: int = 0
    waiting: int = 0
    merging: int = 0
    conflict: int = 0
    completed: int = 0
    failed: int = 0


class MergeQueue:
    """Ordered queue of branches waiting to merge.

    Order is FIFO by enqueue time, biased by priority. An item being merged
    or in conflict stays at the head; while the head is in conflict nothing
    else is dequeued. Items whose dependencies have not merged yet wait.
    """

    def __init__(self) -> None:
        self._items: list[MergeQueueItem] = []
        self._completed: set[str] = set()
        self._stats = QueueStats()

    def enqueue(
        self,
        task_id: str,
        branch: str,
        worktree: str,
        priority: int = 2,
        dependencies: Iterable[str] = (),
        auto_approved: bool = True,
    ) -> MergeQueueItem:
        """Add a branch to the queue as a pending item."""
        if self.get(task_id) is not None:
            raise MergeTransitionError(f"Task {task_id} is already queued for merge")

        item = MergeQueueItem(
            task_id=task_id,
            branch=branch,
            worktree=worktree,
            priority=priority,
            enqueued_at=time.time(),
            dependencies=list(dependencies),
            auto_approved=auto_approved,
        )
        self._items.append(item)
        self._sort()
        return item

    def load(self, items: Iterable[MergeQueueItem], completed: Iterable[str] = ()) -> None:
        """Restore queue contents from persisted state.

        An item persisted mid-merge is put back to pending, since the merge
        it belonged to did not finish.
        """
        self._items = []
        for item in items:
            if item.status == MergeItemStatus.MERGING:
                item = item.model_copy(update={"status": MergeItemStatus.PENDING})
            self._items.append(item)
        self._completed = set(completed)
        self._sort()

    def get(self, task_id: str) -> MergeQueueItem | None:
        for item in self._items:
            if item.task_id == task_id:
                return item
        return None

    def items(self) -> list[MergeQueueItem]:
        return list(self._items)

    def peek(self) -> MergeQueueItem | None:
        return self._items[0] if self._items else None

    def __len__(self) -> int:
        return len(self._items)

    def is_waiting(self, item: MergeQueueItem) -> bool:
        """True if a dependency of the item is still queued ahead of it."""
        return any(self.get(dep) is not None for dep in item.dependencies)

    def dequeue(self) -> MergeQueueItem | None:
        """Take the next mergeable item and mark it merging.

        Returns:
            The item, or None if a merge is in flight, the head is in
            conflict, or nothing is ready
        """
        head = self.peek()
        if head is not None and head.status in (MergeItemStatus.MERGING, MergeItemStatus.CONFLICT):
            return None

        for item in self._items:
            if item.status in (MergeItemStatus.PENDING, MergeItemStatus.RESOLVING) and not self.is_waiting(item):
                self._transition(item, MergeItemStatus.MERGING)
                self._sort()
                return item
        return None

    def mark_completed(self, task_id: str) -> None:
        """Remove a merged item and unblock items depending on it."""
        item = self._require(task_id)
        if item.status != MergeItemStatus.MERGING:
            raise MergeTransitionError(
                f"Cannot complete {task_id}: status is {item.status.value}, expected merging"
            )
        self._items.remove(item)
        self._completed.add(task_id)
        self._stats.completed += 1
        self._sort()

    def mark_conflict(self, task_id: str, conflict_files: list[str]) -> None:
        """Keep a conflicted item at the head pending resolution."""
        item = self._require(task_id)
        self._transition(item, MergeItemStatus.CONFLICT)
        item.conflict_files = list(conflict_files)
        self._sort()

    def mark_resolving(self, task_id: str) -> None:
        """Signal that a conflict was fixed; the item may merge again."""
        item = self._require(task_id)
        self._transition(item, MergeItemStatus.RESOLVING)
        self._sort()

    def defer_to_end(self, task_id: str) -> None:
        """Send a failed attempt to the back of the queue for a retry."""
        item = self._require(task_id)
        self._transition(item, MergeItemStatus.PENDING)
        item.retry_count += 1
        item.deferred_at = time.time()
        self._items.remove(item)
        self._items.append(item)
        self._sort()

    def mark_failed(self, task_id: str, max_retries: int = 3) -> bool:
        """Drop an item that could not be merged.

        Returns:
            True if the item had exhausted its retries and needs escalation
        """
        item = self.get(task_id)
        needs_escalation = False
        if item is not None:
            needs_escalation = item.retry_count >= max_retries
            self._items.remove(item)
        self._stats.failed += 1
        return needs_escalation

    def remove(self, task_id: str) -> bool:
        item = self.get(task_id)
        if item is None:
            return False
        self._items.remove(item)
        return True

    def completed(self) -> set[str]:
        return set(self._completed)

    def stats(self) -> QueueStats:
        stats = QueueStats(completed=self._stats.completed, failed=self._stats.failed)
        for item in self._items:
            if item.status == MergeItemStatus.MERGING:
                stats.merging += 1
            elif item.status == MergeItemStatus.CONFLICT:
                stats.conflict += 1
            elif self.is_waiting(item):
                stats.waiting += 1
            else:
                stats.pending += 1
        return stats

    def _require(self, task_id: str) -> MergeQueueItem:
        item = self.get(task_id)
        if item is None:
            raise MergeTransitionError(f"Task {task_id} is not in the merge queue")
        return item

    def _transition(self, item: MergeQueueItem, new_status: MergeItemStatus) -> None:
        if new_status not in VALID_TRANSITIONS.get(item.status, set()):
            raise MergeTransitionError(
                f"Invalid transition: {item.status.value} -> {new_status.value} "
                f"for task {item.task_id}"
            )
        item.status = new_status

    def _sort(self) -> None:
        # Stable sort: equal keys keep insertion (FIFO) order
        self._items.sort(
            key=lambda item: (
                0 if item.status in _HEAD_STATUSES else 1,
                1 if self.is_waiting(item) else 0,
                1 if item.deferred_at is not None else 0,
                -PRIORITY_BOOST.get(item.priority, 0),
                item.enqueued_at,
            )
        )


class MergeGit(Protocol):
    """The git operations a merge worker needs."""

    async def merge(self, branch: str, message: str | None = None) -> GitMergeResult:
        ...

    async def abort_merge(self) -> CommandResult:
        ...

    async def get_conflict_files(self) -> list[str]:
        ...


class MergeWorker:
    """Performs merges strictly one at a time under an asyncio lock.

    Collaborator failures are reported as MergeFailed events, never raised.
    """

    def __init__(self, git: MergeGit, bus: EventBus | None = None):
        self.git = git
        self.bus = bus or EventBus()
        self._lock = asyncio.Lock()
        self._merging = False

    def is_merging(self) -> bool:
        return self._merging

    async def merge(self, item: MergeQueueItem) -> GitMergeResult:
        """Merge an item's branch into the shared branch.

        Publishes MergeStarted, then exactly one of MergeSucceeded,
        MergeConflicted or MergeFailed.
        """
        async with self._lock:
            self._merging = True
            try:
                self.bus.publish(MergeStarted(task_id=item.task_id, branch=item.branch))
                logger.info("Merging %s (%s)", item.branch, item.task_id)

                try:
                    result = await self.git.merge(
                        item.branch, message=f"Merge [{item.task_id}] {item.branch}"
                    )
                except Exception as e:
                    logger.exception("Merge of %s raised", item.branch)
                    error = str(e) or type(e).__name__
                    self.bus.publish(MergeFailed(task_id=item.task_id, branch=item.branch, error=error))
                    return GitMergeResult(success=False, error=error)

                if result.success:
                    self.bus.publish(MergeSucceeded(task_id=item.task_id, branch=item.branch))
                elif result.has_conflict:
                    if not result.conflict_files:
                        result.conflict_files = await self._conflict_files()
                    logger.warning(
                        "Merge conflict on %s: %s", item.branch, ", ".join(result.conflict_files)
                    )
                    self.bus.publish(
                        MergeConflicted(
                            task_id=item.task_id,
                            branch=item.branch,
                            conflict_files=list(result.conflict_files),
                        )
                    )
                else:
                    error = result.error or "merge failed"
                    logger.warning("Merge of %s failed: %s", item.branch, error)
                    self.bus.publish(MergeFailed(task_id=item.task_id, branch=item.branch, error=error))

                return result
            finally:
                self._merging = False

    async def abort(self) -> bool:
        """Abort the in-progress merge. The busy flag is cleared regardless.

        Returns:
            False if git could not abort
        """
        try:
            result = await self.git.abort_merge()
            return result.ok
        except Exception:
            logger.exception("Aborting merge failed")
            return False
        finally:
            self._merging = False

    async def _conflict_files(self) -> list[str]:
        try:
            return await self.git.get_conflict_files()
        except Exception:
            logger.exception("Listing conflict files failed")
            return []


@dataclass
class MergeOutcome:
    """What happened to one dequeued item."""

    task_id: str
    merged: bool = False
    conflict: bool = False
    escalated: bool = False
    error: str | None = None


class MergeService:
    """Drains the merge queue through the worker and records the results."""

    def __init__(
        self,
        queue: MergeQueue,
        worker: MergeWorker,
        state: StateService,
        worktrees: WorktreeManager | None = None,
        checkpointer: Checkpointer | None = None,
        max_retries: int = 3,
    ):
        self.queue = queue
        self.worker = worker
        self.state = state
        self.worktrees = worktrees
        self.checkpointer = checkpointer
        self.max_retries = max_retries

    def restore(self) -> None:
        """Load the queue from the session state."""
        self.queue.load(self.state.get().merge_queue)

    def enqueue(
        self,
        task_id: str,
        branch: str,
        worktree: str,
        priority: int = 2,
        dependencies: Iterable[str] = (),
        auto_approved: bool = True,
    ) -> MergeQueueItem:
        item = self.queue.enqueue(
            task_id,
            branch,
            worktree,
            priority=priority,
            dependencies=dependencies,
            auto_approved=auto_approved,
        )
        logger.info("Queued %s for merge (%d in queue)", task_id, len(self.queue))
        self._persist()
        return item

    async def process_next(self) -> MergeOutcome | None:
        """Merge the next ready item.

        Returns:
            The outcome, or None if nothing could be dequeued
        """
        item = self.queue.dequeue()
        if item is None:
            return None
        self._persist()

        await self._pre_merge_checkpoint(item.task_id)
        result = await self.worker.merge(item)

        if result.success:
            outcome = await self._on_success(item)
        elif result.has_conflict:
            outcome = await self._on_conflict(item, result.conflict_files)
        else:
            outcome = self._on_error(item, result.error or "merge failed")

        self._persist()
        return outcome

    async def drain(self) -> list[MergeOutcome]:
        """Merge ready items until the queue is empty or blocked."""
        outcomes: list[MergeOutcome] = []
        while True:
            outcome = await self.process_next()
            if outcome is None:
                break
            outcomes.append(outcome)
            if outcome.conflict:
                break
        return outcomes

    def resolve(self, task_id: str) -> None:
        """Mark a conflicted item fixed so it re-enters merging."""
        self.queue.mark_resolving(task_id)
        pending = self.state.get().pending_review
        if task_id in pending:
            pending.remove(task_id)
        self._persist()

    async def _on_success(self, item: MergeQueueItem) -> MergeOutcome:
        self.queue.mark_completed(item.task_id)
        self.state.record_merge(auto=item.auto_approved)
        self.state.record_task_completed()
        if self.worktrees is not None:
            result = await self.worktrees.remove_worktree(item.task_id, branch=item.branch)
            if not result.ok:
                logger.warning("Could not remove worktree for %s: %s", item.task_id, result.stderr.strip())
        return MergeOutcome(task_id=item.task_id, merged=True)

    async def _on_conflict(self, item: MergeQueueItem, files: list[str]) -> MergeOutcome:
        # Leave the shared tree clean; the conflict is fixed on the task branch
        await self.worker.abort()
        self.queue.mark_conflict(item.task_id, files)
        pending = self.state.get().pending_review
        if item.task_id not in pending:
            pending.append(item.task_id)
        return MergeOutcome(task_id=item.task_id, conflict=True)

    def _on_error(self, item: MergeQueueItem, error: str) -> MergeOutcome:
        if item.retry_count < self.max_retries:
            self.queue.defer_to_end(item.task_id)
            return MergeOutcome(task_id=item.task_id, error=error)

        escalated = self.queue.mark_failed(item.task_id, self.max_retries)
        self.state.record_task_failed()
        logger.error("Giving up on merging %s after %d retries: %s", item.task_id, item.retry_count, error)
        if escalated:
            pending = self.state.get().pending_review
            if item.task_id not in pending:
                pending.append(item.task_id)
        return MergeOutcome(task_id=item.task_id, escalated=escalated, error=error)

    async def _pre_merge_checkpoint(self, task_id: str) -> None:
        if self.checkpointer is None or not self.checkpointer.should_create(CheckpointType.PRE_MERGE):
            return
        try:
            await self.checkpointer.create(CheckpointType.PRE_MERGE, task_id=task_id)
        except CheckpointError as e:
            logger.warning("Pre-merge checkpoint for %s failed: %s", task_id, e)

    def _persist(self) -> None:
        state = self.state.get()
        state.merge_queue = self.queue.items()
        self.state.save()
