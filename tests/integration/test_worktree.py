"""Integration tests for worktree management."""

import subprocess
from pathlib import Path

import pytest

from chorus.schemas.state import AgentKind
from chorus.worktree.manager import WorktreeManager


def head_of(path: Path) -> str:
    result = subprocess.run(
        ["git", "rev-parse", "HEAD"], cwd=path, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


class TestWorktreeManager:
    """Integration tests for WorktreeManager."""

    @pytest.mark.asyncio
    async def test_create_worktree(self, git_repo: Path) -> None:
        """Test creating a worktree on an agent branch."""
        manager = WorktreeManager(repo_root=git_repo)
        worktree_path, branch, result = await manager.create_worktree("task-a")

        assert result.ok
        assert branch == "agent/claude/task-a"
        assert worktree_path.exists()
        assert (worktree_path / "README.md").exists()

        await manager.remove_worktree("task-a", branch=branch, force=True)

    @pytest.mark.asyncio
    async def test_branch_named_by_agent_kind(self, git_repo: Path) -> None:
        """Test the branch carries the agent kind."""
        manager = WorktreeManager(repo_root=git_repo)
        _, branch, _ = await manager.create_worktree("task-a", AgentKind.CODEX)

        assert branch == "agent/codex/task-a"

    @pytest.mark.asyncio
    async def test_list_worktrees(self, git_repo: Path) -> None:
        """Test listing worktrees."""
        manager = WorktreeManager(repo_root=git_repo)
        await manager.create_worktree("task-a")

        worktrees = await manager.list_worktrees()

        # Main plus task-a
        assert len(worktrees) >= 2
        task_worktree = next((wt for wt in worktrees if wt.task_id == "task-a"), None)
        assert task_worktree is not None
        assert task_worktree.branch == "agent/claude/task-a"
        assert any(wt.is_main for wt in worktrees)

    @pytest.mark.asyncio
    async def test_remove_worktree(self, git_repo: Path) -> None:
        """Test removing a worktree and its branch."""
        manager = WorktreeManager(repo_root=git_repo)
        worktree_path, branch, _ = await manager.create_worktree("task-a")

        result = await manager.remove_worktree("task-a", branch=branch, force=True)

        assert result.ok
        assert not worktree_path.exists()
        remaining = [wt.task_id for wt in await manager.list_worktrees()]
        assert "task-a" not in remaining

    @pytest.mark.asyncio
    async def test_second_create_reuses_worktree(self, git_repo: Path, commit) -> None:
        """Test creating a task's worktree again reuses it with its work."""
        manager = WorktreeManager(repo_root=git_repo)
        first_path, branch, first = await manager.create_worktree("task-a")
        head = commit(first_path, "wip.txt", "partial\n", "[task-a] partial work")

        second_path, second_branch, second = await manager.create_worktree("task-a")

        assert first.ok and second.ok
        assert second_path == first_path
        assert second_branch == branch
        assert head_of(second_path) == head

    @pytest.mark.asyncio
    async def test_existing_branch_is_checked_out_again(self, git_repo: Path, commit) -> None:
        """Test a branch left behind by a removed worktree is reused."""
        manager = WorktreeManager(repo_root=git_repo)
        path, branch, _ = await manager.create_worktree("task-a")
        head = commit(path, "wip.txt", "partial\n", "[task-a] partial work")
        await manager.remove_worktree("task-a", force=True)

        path, _, result = await manager.create_worktree("task-a")

        assert result.ok
        assert (path / "wip.txt").exists()
        assert head_of(path) == head
        assert await manager.branch_exists(branch)

    def test_get_worktree_path(self, git_repo: Path) -> None:
        """Test getting worktree path."""
        manager = WorktreeManager(repo_root=git_repo)
        assert manager.get_worktree_path("task-a") == git_repo / ".worktrees" / "task-a"


class TestWorktreeIsolation:
    """Tests for worktree isolation behavior."""

    @pytest.mark.asyncio
    async def test_changes_isolated_to_worktree(self, git_repo: Path) -> None:
        """Test that changes in a worktree don't affect main."""
        manager = WorktreeManager(repo_root=git_repo)
        worktree_path, _, _ = await manager.create_worktree("task-a")

        (worktree_path / "worktree_only.py").write_text("# Worktree only")

        assert not (git_repo / "worktree_only.py").exists()

    @pytest.mark.asyncio
    async def test_worktrees_independent(self, git_repo: Path) -> None:
        """Test that worktrees are independent of each other."""
        manager = WorktreeManager(repo_root=git_repo)
        wt_a, _, _ = await manager.create_worktree("task-a")
        wt_b, _, _ = await manager.create_worktree("task-b")

        (wt_a / "a_only.py").write_text("# A only")

        assert not (wt_b / "a_only.py").exists()
