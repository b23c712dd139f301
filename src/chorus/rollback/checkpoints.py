"""Git-tag checkpoints that a session can be rolled back to."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING

from chorus.core.events import CheckpointCreated, EventBus
from chorus.errors import CheckpointError
from chorus.schemas.state import Checkpoint, CheckpointType

if TYPE_CHECKING:
    from chorus.core.state import StateService
    from chorus.schemas.config import CheckpointSettings
    from chorus.utils.git import GitService

logger = logging.getLogger(__name__)

TAG_PREFIX = "chorus-checkpoint-"
PRE_MERGE_PREFIX = "pre-merge-"


def tag_name(type: CheckpointType, task_id: str | None = None) -> str:
    """Tag for a new checkpoint.

    Pre-merge checkpoints are named after their task; all others after the
    current unix time.
    """
    if type == CheckpointType.PRE_MERGE and task_id:
        return f"{PRE_MERGE_PREFIX}{task_id}"
    return f"{TAG_PREFIX}{int(time.time())}"


class Checkpointer:
    """Creates, lists and prunes checkpoint tags.

    Checkpoints are recorded in the session state when a StateService is
    given, so they survive a restart.
    """

    def __init__(
        self,
        config: CheckpointSettings,
        git: GitService,
        state: StateService | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.git = git
        self.state = state
        self.bus = bus or EventBus()
        self._checkpoints: list[Checkpoint] = []
        if state is not None and state.is_initialized():
            self._checkpoints = list(state.get().checkpoints)

    def should_create(self, type: CheckpointType) -> bool:
        if not self.config.enabled:
            return False
        if type == CheckpointType.AUTOPILOT_START:
            return self.config.before_autopilot
        if type == CheckpointType.PRE_MERGE:
            return self.config.before_merge
        if type == CheckpointType.PERIODIC:
            return self.config.periodic > 0
        return False

    def should_create_periodic(self, tasks_completed: int) -> bool:
        """True on every Nth completed task, N being the periodic interval."""
        if not self.should_create(CheckpointType.PERIODIC) or tasks_completed <= 0:
            return False
        return tasks_completed % self.config.periodic == 0

    async def create(self, type: CheckpointType, task_id: str | None = None) -> Checkpoint:
        """Tag the current HEAD as a checkpoint.

        Raises:
            CheckpointError: If the tag cannot be created
        """
        tag = tag_name(type, task_id)
        if type != CheckpointType.PRE_MERGE or not task_id:
            tag = await self._unique_tag(tag)
        result = await self.git.tag(tag)
        if not result.ok:
            raise CheckpointError(
                f"Could not create checkpoint tag {tag}: {result.stderr.strip() or 'tag already exists'}"
            )

        checkpoint = Checkpoint(
            id=tag,
            tag=tag,
            timestamp=datetime.now().isoformat(),
            type=type,
            task_id=task_id,
        )
        self._checkpoints.append(checkpoint)
        logger.info("Created %s checkpoint %s", type.value, tag)

        if self.config.keep > 0:
            await self.prune(self.config.keep)
        self._persist(last=checkpoint.id)

        self.bus.publish(CheckpointCreated(checkpoint_id=checkpoint.id, type=type.value))
        return checkpoint

    def list(self) -> list[Checkpoint]:
        return list(self._checkpoints)

    def get(self, checkpoint_id: str) -> Checkpoint | None:
        for checkpoint in self._checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        return None

    def latest(self) -> Checkpoint | None:
        return self._checkpoints[-1] if self._checkpoints else None

    async def prune(self, keep_count: int) -> int:
        """Delete the oldest checkpoints, keeping the newest `keep_count`.

        Returns:
            Number of checkpoints deleted
        """
        if len(self._checkpoints) <= keep_count:
            return 0

        ordered = sorted(self._checkpoints, key=lambda c: c.timestamp)
        doomed = ordered[: len(ordered) - keep_count]
        for checkpoint in doomed:
            result = await self.git.delete_tag(checkpoint.tag)
            if not result.ok:
                logger.warning("Could not delete checkpoint tag %s: %s", checkpoint.tag, result.stderr.strip())

        self._checkpoints = ordered[len(doomed):]
        self._persist()
        logger.info("Pruned %d checkpoint(s)", len(doomed))
        return len(doomed)

    async def _unique_tag(self, tag: str) -> str:
        """The tag itself, or the first free `tag-N` if it is taken."""
        taken = {c.tag for c in self._checkpoints}
        taken.update(await self.git.list_tags(f"{tag}*"))
        candidate = tag
        suffix = 1
        while candidate in taken:
            candidate = f"{tag}-{suffix}"
            suffix += 1
        return candidate

    def _persist(self, last: str | None = None) -> None:
        if self.state is None or not self.state.is_initialized():
            return
        state = self.state.get()
        state.checkpoints = list(self._checkpoints)
        if last is not None:
            state.checkpoint = last
        self.state.save()
