"""Undoing agent work at iteration, task, task-chain and session level."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from chorus.core.dag import parse_task_dag, rollback_order
from chorus.core.tasks import TaskStatus

if TYPE_CHECKING:
    from chorus.core.state import StateService
    from chorus.core.tasks import TaskProvider
    from chorus.rollback.checkpoints import Checkpointer
    from chorus.utils.git import GitService

logger = logging.getLogger(__name__)

TASK_MARKER = re.compile(r"\[([A-Za-z0-9][\w.-]*)\]")


class RollbackLevel(str, Enum):
    ITERATION = "iteration"
    TASK = "task"
    TASK_CHAIN = "task_chain"
    SESSION = "session"


@dataclass
class RollbackResult:
    """Outcome of a rollback. On failure nothing was changed."""

    success: bool
    level: RollbackLevel
    reverted_commits: list[str] = field(default_factory=list)
    affected_tasks: list[str] = field(default_factory=list)
    message: str = ""


def parse_task_ids(log: str) -> list[str]:
    """Unique task ids from ``[task-id]`` markers, in order of appearance."""
    seen: list[str] = []
    for match in TASK_MARKER.finditer(log):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


class RollbackManager:
    """Rolls work back all-or-nothing.

    Every level first checks that it can succeed (clean working tree,
    existing targets, enough recorded history) and only then mutates the
    repository. A failure midway restores the pre-rollback HEAD.
    """

    def __init__(
        self,
        git: GitService,
        state: StateService,
        tasks: TaskProvider,
        checkpointer: Checkpointer,
    ):
        self.git = git
        self.state = state
        self.tasks = tasks
        self.checkpointer = checkpointer

    async def rollback_iterations(self, task_id: str, count: int = 1) -> RollbackResult:
        """Undo the last `count` iterations of the agent working a task.

        The agent's branch is soft-reset to the start commit of the oldest
        rolled-back iteration; the undone changes stay in its worktree.
        """
        level = RollbackLevel.ITERATION
        agent = self.state.get().find_agent_by_task(task_id)
        if agent is None:
            return RollbackResult(False, level, message=f"No agent is working on task {task_id}")

        records = self.state.get_iterations(agent.id)
        if count < 1 or len(records) < count:
            return RollbackResult(
                False,
                level,
                message=f"Cannot roll back {count} iteration(s): {len(records)} recorded",
            )

        target = records[-count].start_commit
        worktree = agent.worktree
        if not await self.git.ref_exists(target, cwd=worktree):
            return RollbackResult(False, level, message=f"Iteration start commit {target} not found")

        commits = await self.git.commits_since(target, cwd=worktree)
        result = await self.git.reset(target, mode="soft", cwd=worktree)
        if not result.ok:
            return RollbackResult(False, level, message=f"git reset failed: {result.stderr.strip()}")

        self.state.drop_iterations(agent.id, count)
        self.state.save()
        logger.info("Rolled back %d iteration(s) of %s to %s", count, task_id, target)
        return RollbackResult(
            True,
            level,
            reverted_commits=commits,
            affected_tasks=[task_id],
            message=f"Rolled back {count} iteration(s) of {task_id}",
        )

    async def rollback_task(self, task_id: str, cwd: str | Path | None = None) -> RollbackResult:
        """Revert every commit marked ``[task_id]`` in one new commit."""
        return await self._revert_tasks([task_id], RollbackLevel.TASK, cwd)

    async def rollback_task_chain(self, task_id: str, cwd: str | Path | None = None) -> RollbackResult:
        """Revert a task and every task depending on it, dependents first."""
        graph = await self.tasks.get_dependency_graph()
        order = rollback_order(task_id, parse_task_dag(graph)) if task_id in graph else [task_id]
        return await self._revert_tasks(order, RollbackLevel.TASK_CHAIN, cwd)

    async def rollback_session(self, checkpoint_id: str) -> RollbackResult:
        """Hard-reset the shared tree to a checkpoint.

        Affected tasks are read from the task markers of the discarded
        commits.
        """
        level = RollbackLevel.SESSION
        checkpoint = self.checkpointer.get(checkpoint_id)
        if checkpoint is None:
            return RollbackResult(False, level, message=f"Unknown checkpoint {checkpoint_id}")
        if not await self.git.ref_exists(checkpoint.tag):
            return RollbackResult(False, level, message=f"Checkpoint tag {checkpoint.tag} is missing")
        if not await self.git.is_clean():
            return RollbackResult(False, level, message="Working tree has uncommitted changes")

        affected = parse_task_ids(await self.git.log_since(checkpoint.tag))
        commits = await self.git.commits_since(checkpoint.tag)

        result = await self.git.reset(checkpoint.tag, mode="hard")
        if not result.ok:
            return RollbackResult(False, level, message=f"git reset failed: {result.stderr.strip()}")

        logger.info("Rolled session back to %s (%d commit(s) discarded)", checkpoint.tag, len(commits))
        return RollbackResult(
            True,
            level,
            reverted_commits=commits,
            affected_tasks=affected,
            message=f"Restored checkpoint {checkpoint.tag}",
        )

    async def _revert_tasks(
        self,
        order: list[str],
        level: RollbackLevel,
        cwd: str | Path | None,
    ) -> RollbackResult:
        if not await self.git.is_clean(cwd):
            return RollbackResult(False, level, message="Working tree has uncommitted changes")

        pre_head = await self.git.head_commit(cwd)
        if pre_head is None:
            return RollbackResult(False, level, message="Could not resolve HEAD")

        planned: list[str] = []
        for task_id in order:
            planned.extend(await self.git.log_grep(f"[{task_id}]", cwd=cwd))
        if not planned:
            return RollbackResult(
                False,
                level,
                affected_tasks=order,
                message=f"No commits found for {', '.join(order)}",
            )

        for commit in planned:
            result = await self.git.revert_no_commit(commit, cwd=cwd)
            if not result.ok:
                await self._restore(pre_head, cwd)
                return RollbackResult(
                    False,
                    level,
                    affected_tasks=order,
                    message=f"Reverting {commit[:8]} failed: {result.stderr.strip()}",
                )

        result = await self.git.commit(f"Revert {', '.join(order)}", cwd=cwd)
        if not result.ok:
            await self._restore(pre_head, cwd)
            return RollbackResult(
                False,
                level,
                affected_tasks=order,
                message=f"Committing the revert failed: {result.stderr.strip()}",
            )

        for task_id in order:
            await self.tasks.update_status(task_id, TaskStatus.OPEN)

        logger.info("Reverted %d commit(s) for %s", len(planned), ", ".join(order))
        return RollbackResult(
            True,
            level,
            reverted_commits=planned,
            affected_tasks=order,
            message=f"Rolled back {len(order)} task(s) with {len(planned)} commit(s)",
        )

    async def _restore(self, pre_head: str, cwd: str | Path | None) -> None:
        await self.git.revert_abort(cwd=cwd)
        result = await self.git.reset(pre_head, mode="hard", cwd=cwd)
        if not result.ok:
            logger.error("Could not restore %s after a failed rollback: %s", pre_head, result.stderr.strip())
