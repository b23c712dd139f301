"""Routing of finished agent runs through review and into the merge queue."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from chorus.core.approval import ApprovalDecision, explain_decision
from chorus.core.events import EventBus, TaskCompleted
from chorus.core.tasks import TaskStatus
from chorus.schemas.review import FileChange, QualityRunResult, Signal, TaskCompletionResult
from chorus.utils.files import FileService, FileStore

if TYPE_CHECKING:
    from chorus.core.slots import SlotManager
    from chorus.core.state import StateService
    from chorus.core.tasks import TaskProvider
    from chorus.integrator.merge import MergeService
    from chorus.schemas.config import ChorusConfig
    from chorus.verification.quality import QualityCommandRunner

logger = logging.getLogger(__name__)

COMPLETIONS_DIR = ".chorus/completions"

DIFF_STAT_LINE = re.compile(r"^\s*(.+?)\s*\|\s*(\d+|Bin)\s*([+-]*)")


def parse_diff_stat(diff_stat: str) -> list[FileChange]:
    """Parse `git diff --stat` output into file changes.

    The +/- bar of each line decides the change type: only additions means
    added, only deletions means deleted, anything else modified. The summary
    line is ignored.

    Args:
        diff_stat: Raw stat text, e.g. ``src/a.py | 10 +++++++---``

    Returns:
        One FileChange per file line
    """
    changes: list[FileChange] = []

    for line in diff_stat.split("\n"):
        if "files changed" in line or "file changed" in line:
            continue

        match = DIFF_STAT_LINE.match(line)
        if not match:
            continue

        bar = match.group(3)
        added = bar.count("+")
        removed = bar.count("-")

        change_type = "modified"
        if added and not removed:
            change_type = "added"
        elif removed and not added:
            change_type = "deleted"

        changes.append(
            FileChange(
                path=match.group(1).strip(),
                type=change_type,
                lines_added=added,
                lines_removed=removed,
            )
        )

    return changes


class CompletionResultStorage:
    """Stores completion results as JSON under .chorus/completions/."""

    def __init__(self, project_dir: str | Path, files: FileStore | None = None):
        self.directory = Path(project_dir) / COMPLETIONS_DIR
        self.files = files or FileService(project_dir)

    def path_for(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.json"

    def save(self, result: TaskCompletionResult) -> None:
        self.files.write(
            self.path_for(result.task_id),
            json.dumps(result.model_dump(mode="json"), indent=2),
        )

    def load(self, task_id: str) -> TaskCompletionResult | None:
        """Load a stored result, or None if absent or unreadable."""
        raw = self.files.read(self.path_for(task_id))
        if raw is None:
            return None
        try:
            return TaskCompletionResult.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Ignoring unreadable completion result for %s: %s", task_id, e)
            return None

    def delete(self, task_id: str) -> bool:
        return self.files.delete(self.path_for(task_id))


class DiffStatSource(Protocol):
    async def get_diff_stat(self, worktree: str | Path, base: str = "main") -> str:
        ...


@dataclass
class CompletionParams:
    """Inputs describing one finished agent run."""

    task_id: str
    agent_id: str
    worktree: str
    iterations: int = 1
    duration_ms: int = 0
    signal: Signal | None = None
    branch: str | None = None
    priority: int = 2
    dependencies: list[str] = field(default_factory=list)


@dataclass
class CompletionHandlerResult:
    """What the completion handler decided."""

    task_id: str
    auto_approved: bool
    rule: str
    completion: TaskCompletionResult
    enqueued: bool = False


class AgentCompletionHandler:
    """Turns a finished agent run into an approval decision.

    Approved work is closed and queued for merge; everything else is held
    for manual review. Either way the agent's slot is released and its
    AgentState dropped.
    """

    def __init__(
        self,
        config: ChorusConfig,
        state: StateService,
        slots: SlotManager,
        quality: QualityCommandRunner,
        git: DiffStatSource,
        tasks: TaskProvider,
        merge_service: MergeService,
        storage: CompletionResultStorage,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.state = state
        self.slots = slots
        self.quality = quality
        self.git = git
        self.tasks = tasks
        self.merge_service = merge_service
        self.storage = storage
        self.bus = bus or EventBus()

    async def handle_completion(self, params: CompletionParams) -> CompletionHandlerResult:
        """Gate, record and route one completion.

        Args:
            params: The finished run

        Returns:
            CompletionHandlerResult with the decision and the stored result
        """
        quality = await self._run_quality(params.worktree)
        changes = await self._collect_changes(params.worktree)

        completion = TaskCompletionResult(
            task_id=params.task_id,
            agent_id=params.agent_id,
            iterations=params.iterations,
            duration_ms=params.duration_ms,
            signal=params.signal,
            quality=quality,
            changes=changes,
        )
        self.storage.save(completion)

        try:
            labels = await self.tasks.get_task_labels(params.task_id)
        except Exception:
            logger.exception("Reading labels of %s failed", params.task_id)
            decision = ApprovalDecision(False, "labels_unavailable")
        else:
            decision = explain_decision(completion, self.config.auto_approve, labels)
        logger.info(
            "Task %s %s (%s)",
            params.task_id,
            "auto-approved" if decision.approved else "held for review",
            decision.rule,
        )

        enqueued = False
        if decision.approved:
            enqueued = await self._route_approved(params)
        else:
            await self._hold_for_review(params.task_id)

        self.slots.release_slot(params.agent_id)
        self.state.remove_agent(params.agent_id)
        self.state.add_iterations(params.iterations)
        self.state.add_runtime(params.duration_ms)

        self.bus.publish(
            TaskCompleted(
                task_id=params.task_id,
                agent_id=params.agent_id,
                auto_approved=decision.approved,
            )
        )
        self.state.save()

        return CompletionHandlerResult(
            task_id=params.task_id,
            auto_approved=decision.approved,
            rule=decision.rule,
            completion=completion,
            enqueued=enqueued,
        )

    async def approve(self, task_id: str, branch: str, worktree: str, priority: int = 2) -> None:
        """Manually approve a task held for review and queue it for merge."""
        await self.tasks.close_task(task_id)
        pending = self.state.get().pending_review
        if task_id in pending:
            pending.remove(task_id)
        self.merge_service.enqueue(task_id, branch, worktree, priority=priority, auto_approved=False)
        logger.info("Task %s approved manually", task_id)

    async def _route_approved(self, params: CompletionParams) -> bool:
        """Close the task and queue its branch; on failure hold it for review.

        Returns:
            True if the branch was queued for merge
        """
        try:
            await self.tasks.close_task(params.task_id)
            if not params.branch:
                return False
            self.merge_service.enqueue(
                params.task_id,
                params.branch,
                params.worktree,
                priority=params.priority,
                dependencies=params.dependencies,
                auto_approved=True,
            )
        except Exception:
            logger.exception("Queueing approved task %s failed", params.task_id)
            await self._hold_for_review(params.task_id)
            return False
        return True

    async def _hold_for_review(self, task_id: str) -> None:
        pending = self.state.get().pending_review
        if task_id not in pending:
            pending.append(task_id)
        try:
            await self.tasks.update_status(task_id, TaskStatus.REVIEWING)
        except Exception:
            logger.exception("Marking %s for review failed", task_id)

    async def _run_quality(self, worktree: str) -> list[QualityRunResult]:
        try:
            return await self.quality.run_all(worktree)
        except Exception as e:
            logger.exception("Quality gates could not run in %s", worktree)
            return [QualityRunResult(name="quality", passed=False, error=str(e))]

    async def _collect_changes(self, worktree: str) -> list[FileChange]:
        try:
            diff_stat = await self.git.get_diff_stat(worktree, base=self.config.merge.base_branch)
        except Exception:
            logger.exception("Diff stat failed in %s", worktree)
            return []
        return parse_diff_stat(diff_stat)
