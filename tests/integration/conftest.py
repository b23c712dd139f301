"""Fixtures for tests that drive a real git repository.

These tests require git to be installed and available.
"""

import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return result.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository on branch main."""
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    git(repo_path, "init")
    git(repo_path, "config", "user.email", "test@test.com")
    git(repo_path, "config", "user.name", "Test User")
    git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Repo\n")
    git(repo_path, "add", "README.md")
    git(repo_path, "commit", "-m", "Initial commit")
    git(repo_path, "branch", "-M", "main")

    return repo_path


@pytest.fixture
def commit() -> Callable[..., str]:
    """Write a file, commit it and return the new commit hash."""

    def _commit(repo: Path, name: str, content: str, message: str) -> str:
        path = repo / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        git(repo, "add", name)
        git(repo, "commit", "-m", message)
        return git(repo, "rev-parse", "HEAD").strip()

    return _commit
