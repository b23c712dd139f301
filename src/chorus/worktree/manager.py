"""Git worktree management for agent isolation."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from chorus.schemas.state import AgentKind
from chorus.utils.process import CommandResult, CommandRunner, ProcessRunner

logger = logging.getLogger(__name__)


@dataclass
class WorktreeInfo:
    """Information about a git worktree."""

    path: Path
    branch: str
    commit: str
    task_id: str | None = None
    is_main: bool = False


def branch_name(kind: AgentKind, task_id: str) -> str:
    """Branch an agent of the given kind works on for a task."""
    return f"agent/{kind.value}/{task_id}"


class WorktreeManager:
    """Manages git worktrees so concurrent agents never share files."""

    def __init__(
        self,
        repo_root: str | Path,
        worktree_dir: str = ".worktrees",
        runner: CommandRunner | None = None,
    ):
        """Initialize worktree manager.

        Args:
            repo_root: Root of the git repository
            worktree_dir: Directory name for worktrees (relative to repo root)
            runner: Command runner (defaults to a ProcessRunner)
        """
        self.repo_root = Path(repo_root)
        self.worktree_dir = self.repo_root / worktree_dir
        self.runner = runner or ProcessRunner()

    def get_worktree_path(self, task_id: str) -> Path:
        """Path where a task's worktree lives."""
        return self.worktree_dir / task_id

    async def create_worktree(
        self,
        task_id: str,
        kind: AgentKind = AgentKind.CLAUDE,
        base_branch: str = "main",
    ) -> tuple[Path, str, CommandResult]:
        """Create the worktree and branch for a task, or reuse them.

        A worktree already registered at the task's path is returned as is,
        so a task can be run again after a failed or rejected attempt. An
        existing branch without a worktree is checked out again.

        Args:
            task_id: Task identifier
            kind: Agent kind (part of the branch name)
            base_branch: Branch to base the worktree on

        Returns:
            Tuple of (worktree_path, branch, CommandResult)
        """
        worktree_path = self.get_worktree_path(task_id)
        branch = branch_name(kind, task_id)

        self.worktree_dir.mkdir(parents=True, exist_ok=True)

        existing = await self.find_worktree(task_id)
        if existing is not None:
            logger.info("Reusing worktree %s for %s", existing.path, task_id)
            return worktree_path, existing.branch or branch, CommandResult(exit_code=0, stdout="", stderr="")

        if await self.branch_exists(branch):
            command = f"git worktree add {shlex.quote(str(worktree_path))} {shlex.quote(branch)}"
        else:
            command = (
                f"git worktree add -b {shlex.quote(branch)} "
                f"{shlex.quote(str(worktree_path))} {shlex.quote(base_branch)}"
            )
        result = await self.runner.exec(command, cwd=self.repo_root)
        if not result.ok:
            logger.warning("Failed to create worktree for %s: %s", task_id, result.stderr.strip())

        return worktree_path, branch, result

    async def find_worktree(self, task_id: str) -> WorktreeInfo | None:
        """The registered worktree at a task's path, if any."""
        target = self.get_worktree_path(task_id).resolve()
        for info in await self.list_worktrees():
            if info.path.resolve() == target:
                return info
        return None

    async def branch_exists(self, branch: str) -> bool:
        result = await self.runner.exec(
            f"git rev-parse --verify --quiet {shlex.quote('refs/heads/' + branch)}",
            cwd=self.repo_root,
        )
        return result.ok

    async def remove_worktree(
        self,
        task_id: str,
        branch: str | None = None,
        force: bool = False,
    ) -> CommandResult:
        """Remove a task's worktree and, if given, its branch.

        Args:
            task_id: Task identifier
            branch: Branch to delete after removal
            force: Force removal even with uncommitted changes
        """
        worktree_path = self.get_worktree_path(task_id)
        force_flag = " --force" if force else ""

        result = await self.runner.exec(
            f"git worktree remove{force_flag} {shlex.quote(str(worktree_path))}",
            cwd=self.repo_root,
        )

        if branch:
            flag = "-D" if force else "-d"
            await self.runner.exec(f"git branch {flag} {shlex.quote(branch)}", cwd=self.repo_root)

        return result

    async def list_worktrees(self) -> list[WorktreeInfo]:
        """List all worktrees of the repository."""
        result = await self.runner.exec("git worktree list --porcelain", cwd=self.repo_root)
        if not result.ok:
            return []

        worktrees: list[WorktreeInfo] = []
        for block in result.stdout.strip().split("\n\n"):
            entry: dict[str, str] = {}
            for line in block.split("\n"):
                key, _, value = line.partition(" ")
                entry[key] = value
            if "worktree" not in entry:
                continue
            worktrees.append(self._to_info(entry))

        return worktrees

    def _to_info(self, entry: dict[str, str]) -> WorktreeInfo:
        wt_path = Path(entry["worktree"])
        branch = entry.get("branch", "").replace("refs/heads/", "")

        task_id = None
        if wt_path.parent == self.worktree_dir.resolve():
            task_id = wt_path.name
        elif branch.startswith("agent/"):
            task_id = branch.rsplit("/", 1)[-1]

        return WorktreeInfo(
            path=wt_path,
            branch=branch,
            commit=entry.get("HEAD", ""),
            task_id=task_id,
            is_main=wt_path == self.repo_root.resolve(),
        )
