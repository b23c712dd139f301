"""Top-level control loop: spawning, supervising and finishing agents."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from chorus.agents.completion import (
    AgentCompletionHandler,
    CompletionParams,
    CompletionResultStorage,
)
from chorus.agents.signals import final_signal
from chorus.agents.spawner import AgentSpawner, SpawnedAgent, Spawner
from chorus.control.mark_done import MarkDoneHandler
from chorus.control.pause import PauseHandler
from chorus.core.events import AgentExited, EventBus
from chorus.core.slots import SlotManager
from chorus.core.state import StateService
from chorus.core.tasks import InMemoryTaskProvider, TaskStatus
from chorus.errors import CheckpointError, SpawnError
from chorus.integrator.merge import MergeQueue, MergeService, MergeWorker
from chorus.rollback.checkpoints import Checkpointer
from chorus.rollback.manager import RollbackManager
from chorus.schemas.state import AgentKind, AgentState, AgentStatus, CheckpointType, SessionMode
from chorus.utils.git import GitService
from chorus.verification.quality import QualityCommandRunner
from chorus.worktree.manager import WorktreeManager

if TYPE_CHECKING:
    from chorus.core.tasks import TaskProvider
    from chorus.schemas.config import ChorusConfig

logger = logging.getLogger(__name__)

# Seconds to wait for a killed agent to exit
STOP_GRACE_SECONDS = 10.0


@dataclass
class StopResult:
    success: bool
    message: str


class Orchestrator:
    """Owns the agent pool for one session.

    Every spawned agent gets a supervising task that waits for its exit
    (bounded by the configured timeout per run). An agent that exits without
    a signal is run again in the same worktree, one iteration per run, up to
    the configured maximum; the result then goes through the completion
    handler and the merge queue.
    """

    def __init__(
        self,
        config: ChorusConfig,
        state: StateService,
        slots: SlotManager,
        spawners: Mapping[AgentKind, Spawner],
        worktrees: WorktreeManager,
        git: GitService,
        tasks: TaskProvider,
        completion: AgentCompletionHandler,
        merge_service: MergeService,
        checkpointer: Checkpointer,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.state = state
        self.slots = slots
        self.spawners = dict(spawners)
        self.worktrees = worktrees
        self.git = git
        self.tasks = tasks
        self.completion = completion
        self.merge_service = merge_service
        self.checkpointer = checkpointer
        self.bus = bus or EventBus()
        self._handles: dict[str, SpawnedAgent] = {}
        self._supervisors: dict[str, asyncio.Task[None]] = {}
        self._stopping: set[str] = set()

    @property
    def timeout_seconds(self) -> float:
        return self.config.agents.timeout_minutes * 60

    def is_paused(self) -> bool:
        return self.state.get().paused

    def set_paused(self, paused: bool) -> None:
        """Gate new spawns. Running agents are left alone."""
        self.state.get().paused = paused
        self.state.save()

    def refresh(self) -> None:
        """Persist the current state so observers see the latest view."""
        self.state.save()

    async def set_mode(self, mode: SessionMode) -> None:
        """Switch session mode, checkpointing on entry into autopilot."""
        state = self.state.get()
        entering_autopilot = mode == SessionMode.AUTOPILOT and state.mode != SessionMode.AUTOPILOT
        if entering_autopilot and self.checkpointer.should_create(CheckpointType.AUTOPILOT_START):
            try:
                await self.checkpointer.create(CheckpointType.AUTOPILOT_START)
            except CheckpointError as e:
                logger.warning("Autopilot checkpoint failed: %s", e)

        state.mode = mode
        self.state.save()
        logger.info("Session mode set to %s", mode.value)

    async def spawn(
        self,
        task_id: str,
        prompt: str,
        kind: AgentKind | None = None,
        priority: int = 2,
        dependencies: Iterable[str] = (),
    ) -> AgentState | None:
        """Start an agent on a task in its own worktree.

        Returns:
            The registered AgentState, or None when paused, when the task
            already has an agent, when no slot is free, or when the agent
            could not be started
        """
        state = self.state.get()
        if state.paused:
            logger.info("Not spawning %s: paused", task_id)
            return None
        if self.slots.get_slot_by_task(task_id) is not None:
            logger.info("Not spawning %s: task already has an agent", task_id)
            return None

        kind = kind or self.config.agents.default
        spawner = self.spawners.get(kind)
        if spawner is None:
            logger.warning("No spawner configured for agent kind %s", kind.value)
            return None

        if not self.slots.acquire():
            logger.info("Not spawning %s: no free slot", task_id)
            return None

        stale = state.find_agent_by_task(task_id)
        if stale is not None:
            self.state.remove_agent(stale.id)

        path, branch, result = await self.worktrees.create_worktree(
            task_id, kind, self.config.merge.base_branch
        )
        if not result.ok:
            self.slots.release()
            return None

        start_commit = await self.git.head_commit(path) or ""
        try:
            handle = await spawner.spawn(prompt, path)
        except SpawnError as e:
            logger.warning("Could not start agent for %s: %s", task_id, e)
            self.slots.release()
            # Committed work of earlier attempts survives on the branch
            await self.worktrees.remove_worktree(task_id, force=True)
            return None

        agent = AgentState(
            id=f"{kind.value}-{uuid.uuid4().hex[:8]}",
            kind=kind,
            pid=handle.pid,
            task_id=task_id,
            worktree=str(path),
            branch=branch,
            started_at=datetime.now().isoformat(),
            status=AgentStatus.RUNNING,
        )
        self.state.add_agent(agent)
        self.slots.bind(agent.id, task_id)
        self.state.start_iteration(agent.id, start_commit)
        self.state.save()
        await self.tasks.update_status(task_id, TaskStatus.IN_PROGRESS)

        self._handles[agent.id] = handle
        self._supervisors[agent.id] = asyncio.create_task(
            self._supervise(agent.id, handle, prompt, priority, list(dependencies))
        )
        logger.info("Agent %s started on %s (pid %d)", agent.id, task_id, handle.pid)
        return self.state.get_agent(agent.id)

    async def stop_agent(self, agent_id: str) -> StopResult:
        """Kill an agent and wait for it to exit.

        The slot stays bound; callers release it (see MarkDoneHandler).
        """
        agent = self.state.get_agent(agent_id)
        if agent is None:
            return StopResult(False, f"Unknown agent {agent_id}")

        self._stopping.add(agent_id)
        spawner = self.spawners.get(agent.kind)
        if agent.pid is not None and spawner is not None:
            await spawner.kill(agent.pid)

        handle = self._handles.get(agent_id)
        if handle is not None:
            try:
                await asyncio.wait_for(asyncio.shield(handle.exit_code), STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Agent %s did not exit within %.0fs", agent_id, STOP_GRACE_SECONDS)

        self.state.set_status(agent_id, AgentStatus.STOPPED)
        self.state.save()
        logger.info("Agent %s stopped", agent_id)
        return StopResult(True, f"Stopped {agent_id}")

    def has_running(self) -> bool:
        return bool(self._supervisors)

    async def wait_idle(self) -> None:
        """Wait until every supervised agent has been handled."""
        while self._supervisors:
            await asyncio.gather(*list(self._supervisors.values()), return_exceptions=True)

    async def wait_any(self) -> None:
        """Wait until at least one supervised agent has been handled."""
        if self._supervisors:
            await asyncio.wait(list(self._supervisors.values()), return_when=asyncio.FIRST_COMPLETED)

    async def _supervise(
        self,
        agent_id: str,
        handle: SpawnedAgent,
        prompt: str,
        priority: int,
        dependencies: list[str],
    ) -> None:
        started = time.monotonic()
        try:
            while True:
                try:
                    exit_code = await asyncio.wait_for(asyncio.shield(handle.exit_code), self.timeout_seconds)
                except asyncio.TimeoutError:
                    await self._on_timeout(agent_id, handle)
                    return

                if agent_id in self._stopping:
                    return

                agent = self.state.get_agent(agent_id)
                if agent is None:
                    return
                self.bus.publish(AgentExited(agent_id=agent_id, task_id=agent.task_id, exit_code=exit_code))

                outcome = final_signal(handle.text)
                if outcome is not None or agent.iteration >= self.config.max_iterations:
                    break

                respawned = await self._respawn(agent, prompt)
                if respawned is None:
                    return
                handle = respawned

            if outcome is None:
                logger.warning(
                    "Agent %s gave no signal in %d iteration(s); holding %s for review",
                    agent_id,
                    agent.iteration,
                    agent.task_id,
                )

            params = CompletionParams(
                task_id=agent.task_id,
                agent_id=agent_id,
                worktree=agent.worktree,
                iterations=max(agent.iteration, 1),
                duration_ms=int((time.monotonic() - started) * 1000),
                signal=outcome,
                branch=agent.branch,
                priority=priority,
                dependencies=dependencies,
            )
            result = await self.completion.handle_completion(params)
            if result.enqueued:
                await self._drain_merges()
        except Exception:
            logger.exception("Supervising agent %s failed", agent_id)
            self._fail_agent(agent_id, "supervision failed")
        finally:
            self._handles.pop(agent_id, None)
            self._supervisors.pop(agent_id, None)
            self._stopping.discard(agent_id)

    async def _respawn(self, agent: AgentState, prompt: str) -> SpawnedAgent | None:
        """Run the agent again in its worktree as a new iteration."""
        spawner = self.spawners.get(agent.kind)
        if spawner is None:
            self._fail_agent(agent.id, "no spawner")
            return None

        start_commit = await self.git.head_commit(agent.worktree) or ""
        try:
            handle = await spawner.spawn(prompt, agent.worktree)
        except SpawnError as e:
            logger.warning("Could not restart agent %s: %s", agent.id, e)
            self._fail_agent(agent.id, "respawn failed")
            return None

        self._handles[agent.id] = handle
        if agent.id in self._stopping:
            await spawner.kill(handle.pid)

        number = self.state.start_iteration(agent.id, start_commit)
        self.state.update_agent(agent.id, pid=handle.pid)
        self.state.save()
        logger.info("Agent %s exited without a signal; starting iteration %d", agent.id, number)
        return handle

    async def _on_timeout(self, agent_id: str, handle: SpawnedAgent) -> None:
        agent = self.state.get_agent(agent_id)
        logger.warning("Agent %s exceeded %.0fs; killing it", agent_id, self.timeout_seconds)

        spawner = self.spawners.get(agent.kind) if agent is not None else None
        if spawner is not None:
            await spawner.kill(handle.pid)

        if agent is not None:
            self.bus.publish(
                AgentExited(agent_id=agent_id, task_id=agent.task_id, exit_code=None, timed_out=True)
            )
        self._fail_agent(agent_id, "timed out")

    def _fail_agent(self, agent_id: str, reason: str) -> None:
        self.state.update_agent(agent_id, status=AgentStatus.ERROR, error=reason)
        self.state.record_task_failed()
        self.slots.release_slot(agent_id)
        self.state.save()

    async def _drain_merges(self) -> None:
        before = self.state.get().stats.tasks_completed
        await self.merge_service.drain()
        after = self.state.get().stats.tasks_completed

        for completed in range(before + 1, after + 1):
            if self.checkpointer.should_create_periodic(completed):
                try:
                    await self.checkpointer.create(CheckpointType.PERIODIC)
                except CheckpointError as e:
                    logger.warning("Periodic checkpoint failed: %s", e)
                break


@dataclass
class Session:
    """An orchestrator wired for one project, with its operator controls."""

    orchestrator: Orchestrator
    tasks: InMemoryTaskProvider
    rollback: RollbackManager
    pause: PauseHandler
    mark_done: MarkDoneHandler

    async def run(self) -> None:
        """Start ready tasks while slots are free, until nothing is left to do.

        A task is ready when it is open and every dependency is closed.
        While paused, running agents are waited for but nothing new starts.
        """
        orchestrator = self.orchestrator
        while True:
            if not orchestrator.is_paused():
                for record in self.tasks.ready_tasks():
                    if orchestrator.slots.available == 0:
                        break
                    await orchestrator.spawn(
                        record.id,
                        record.prompt,
                        kind=record.agent,
                        priority=record.priority,
                        dependencies=record.depends_on,
                    )

            if not orchestrator.has_running():
                break
            await orchestrator.wait_any()

        logger.info("Run finished: no running agents and no ready tasks")


def build_session(
    project_dir: str | Path,
    config: ChorusConfig,
    tasks: InMemoryTaskProvider,
    bus: EventBus | None = None,
) -> Session:
    """Wire a Session with the default process-backed collaborators.

    Session state is loaded from disk when present, otherwise initialized.
    """
    project_dir = Path(project_dir)
    bus = bus or EventBus()

    state = StateService(project_dir)
    if state.load() is None:
        state.init(config.mode)
        state.save()

    git = GitService(project_dir)
    worktrees = WorktreeManager(project_dir, config.worktree_dir)
    checkpointer = Checkpointer(config.checkpoints, git, state, bus)

    merge_service = MergeService(
        MergeQueue(),
        MergeWorker(git, bus),
        state,
        worktrees=worktrees,
        checkpointer=checkpointer,
        max_retries=config.merge.max_retries,
    )
    merge_service.restore()

    slots = SlotManager(config.agents.max_parallel)
    completion = AgentCompletionHandler(
        config=config,
        state=state,
        slots=slots,
        quality=QualityCommandRunner(config.ordered_quality_commands()),
        git=git,
        tasks=tasks,
        merge_service=merge_service,
        storage=CompletionResultStorage(project_dir),
        bus=bus,
    )
    spawners = {kind: AgentSpawner(command) for kind, command in config.agents.available.items()}

    orchestrator = Orchestrator(
        config=config,
        state=state,
        slots=slots,
        spawners=spawners,
        worktrees=worktrees,
        git=git,
        tasks=tasks,
        completion=completion,
        merge_service=merge_service,
        checkpointer=checkpointer,
        bus=bus,
    )
    return Session(
        orchestrator=orchestrator,
        tasks=tasks,
        rollback=RollbackManager(git, state, tasks, checkpointer),
        pause=PauseHandler(orchestrator),
        mark_done=MarkDoneHandler(orchestrator, slots, tasks, orchestrator),
    )
