"""Git operations against one working tree."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from chorus.utils.process import CommandResult, CommandRunner, ProcessRunner

logger = logging.getLogger(__name__)


@dataclass
class GitMergeResult:
    """Result of merging a branch."""

    success: bool
    merged: bool = False
    has_conflict: bool = False
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.strip().split("\n") if line.strip()]


class GitService:
    """Wraps the git executable for one repository working tree."""

    def __init__(self, repo_root: str | Path, runner: CommandRunner | None = None):
        """Initialize the git service.

        Args:
            repo_root: Working tree that merges, tags and resets act on
            runner: Command runner (defaults to a ProcessRunner)
        """
        self.repo_root = Path(repo_root)
        self.runner = runner or ProcessRunner()

    async def _git(self, args: str, cwd: str | Path | None = None) -> CommandResult:
        return await self.runner.exec(f"git {args}", cwd=cwd or self.repo_root)

    async def merge(self, branch: str, message: str | None = None) -> GitMergeResult:
        """Merge a branch into the current branch of the working tree.

        Args:
            branch: Branch to merge
            message: Merge commit message

        Returns:
            GitMergeResult describing a clean merge, a conflict, or an error
        """
        msg = message or f"Merge {branch}"
        result = await self._git(f"merge --no-ff {shlex.quote(branch)} -m {shlex.quote(msg)}")

        if result.ok:
            merged = "Already up to date" not in result.stdout
            return GitMergeResult(success=True, merged=merged)

        conflict_files = await self.get_conflict_files()
        if conflict_files or "CONFLICT" in result.stdout:
            return GitMergeResult(
                success=False,
                has_conflict=True,
                conflict_files=conflict_files,
            )

        return GitMergeResult(
            success=False,
            error=(result.stderr or result.stdout).strip() or f"git merge exited {result.exit_code}",
        )

    async def abort_merge(self) -> CommandResult:
        """Abort an in-progress merge."""
        return await self._git("merge --abort")

    async def get_conflict_files(self) -> list[str]:
        """List files with unresolved merge conflicts."""
        result = await self._git("diff --name-only --diff-filter=U")
        if result.ok:
            return _lines(result.stdout)
        return []

    async def get_diff_stat(self, worktree: str | Path, base: str = "main") -> str:
        """Get `git diff --stat` of a worktree against a base branch.

        Returns:
            The stat text, or an empty string if git failed
        """
        result = await self._git(f"diff --stat {shlex.quote(base)}...HEAD", cwd=worktree)
        if result.ok:
            return result.stdout
        logger.warning("git diff --stat failed in %s: %s", worktree, result.stderr.strip())
        return ""

    async def head_commit(self, cwd: str | Path | None = None) -> str | None:
        """Get the current commit hash."""
        result = await self._git("rev-parse HEAD", cwd=cwd)
        if result.ok:
            return result.stdout.strip()
        return None

    async def ref_exists(self, ref: str, cwd: str | Path | None = None) -> bool:
        """Check that a ref or commit resolves."""
        result = await self._git(f"rev-parse --verify --quiet {shlex.quote(ref + '^{commit}')}", cwd=cwd)
        return result.ok

    async def is_clean(self, cwd: str | Path | None = None) -> bool:
        """Check the working tree has no uncommitted changes."""
        result = await self._git("status --porcelain --untracked-files=no", cwd=cwd)
        return result.ok and not result.stdout.strip()

    async def tag(self, name: str) -> CommandResult:
        """Create a lightweight tag at HEAD."""
        return await self._git(f"tag {shlex.quote(name)}")

    async def delete_tag(self, name: str) -> CommandResult:
        """Delete a tag."""
        return await self._git(f"tag -d {shlex.quote(name)}")

    async def list_tags(self, pattern: str) -> list[str]:
        """List tags matching a glob pattern."""
        result = await self._git(f"tag --list {shlex.quote(pattern)}")
        if result.ok:
            return _lines(result.stdout)
        return []

    async def log_grep(self, needle: str, cwd: str | Path | None = None) -> list[str]:
        """Commit hashes whose message contains a fixed string, newest first."""
        result = await self._git(
            f"log --no-merges --fixed-strings --grep={shlex.quote(needle)} --format=%H", cwd=cwd
        )
        if result.ok:
            return _lines(result.stdout)
        return []

    async def log_since(self, ref: str, cwd: str | Path | None = None) -> str:
        """One-line log of commits reachable from HEAD but not from ref."""
        result = await self._git(f"log {shlex.quote(ref + '..HEAD')} --oneline", cwd=cwd)
        return result.stdout if result.ok else ""

    async def commits_since(self, ref: str, cwd: str | Path | None = None) -> list[str]:
        """Commit hashes reachable from HEAD but not from ref."""
        result = await self._git(f"log {shlex.quote(ref + '..HEAD')} --format=%H", cwd=cwd)
        if result.ok:
            return _lines(result.stdout)
        return []

    async def revert_no_commit(self, commit: str, cwd: str | Path | None = None) -> CommandResult:
        """Stage the inverse of a commit without committing."""
        return await self._git(f"revert --no-commit {shlex.quote(commit)}", cwd=cwd)

    async def revert_abort(self, cwd: str | Path | None = None) -> CommandResult:
        """Abandon an in-progress revert sequence."""
        return await self._git("revert --abort", cwd=cwd)

    async def commit(self, message: str, cwd: str | Path | None = None) -> CommandResult:
        """Commit whatever is staged."""
        return await self._git(f"commit -m {shlex.quote(message)}", cwd=cwd)

    async def reset(
        self,
        target: str,
        mode: str = "hard",
        cwd: str | Path | None = None,
    ) -> CommandResult:
        """Reset the current branch to a target.

        Args:
            target: Commit or tag
            mode: "hard", "soft" or "mixed"
            cwd: Working directory
        """
        return await self._git(f"reset --{mode} {shlex.quote(target)}", cwd=cwd)
