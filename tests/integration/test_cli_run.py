"""End-to-end tests for `chorus run` against a real repository."""

import subprocess
from pathlib import Path

import yaml
from click.testing import CliRunner

from chorus.cli import main

# The prompt is passed as $0: the agent commits one file tagged with its task
AGENT_SCRIPT = (
    'echo "$0" > "$0.txt" && git add "$0.txt" && git commit -qm "[$0] add $0.txt" '
    "&& echo '<chorus>COMPLETE</chorus>'"
)


def write_project(repo: Path, tasks: list[dict]) -> None:
    config = {
        "quality_commands": [{"name": "check", "command": "true"}],
        "agents": {
            "max_parallel": 2,
            "available": {"claude": {"command": "sh", "args": ["-c", AGENT_SCRIPT]}},
        },
    }
    (repo / ".chorus").mkdir(exist_ok=True)
    (repo / ".chorus" / "config.yaml").write_text(yaml.safe_dump(config))
    (repo / "tasks.yaml").write_text(yaml.safe_dump({"tasks": tasks}))


def subjects(repo: Path) -> list[str]:
    result = subprocess.run(
        ["git", "log", "--format=%s"], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip().split("\n")


class TestRunCommand:
    """Tests for running a plan with real agent processes."""

    def test_tasks_are_merged_in_order(self, git_repo: Path) -> None:
        """Test each task's commit lands on main and its worktree is removed."""
        write_project(
            git_repo,
            [
                {"id": "t1", "prompt": "t1"},
                {"id": "t2", "prompt": "t2", "depends_on": ["t1"]},
            ],
        )

        result = CliRunner().invoke(main, ["-C", str(git_repo), "run"])

        assert result.exit_code == 0, result.output
        assert (git_repo / "t1.txt").read_text() == "t1\n"
        assert (git_repo / "t2.txt").read_text() == "t2\n"
        assert not (git_repo / ".worktrees" / "t1").exists()
        merges = [s for s in subjects(git_repo) if s.startswith("Merge")]
        assert merges == ["Merge [t2] agent/claude/t2", "Merge [t1] agent/claude/t1"]
        assert "closed" in result.output

    def test_rollback_task_after_run(self, git_repo: Path) -> None:
        """Test a merged task can be reverted from the command line."""
        write_project(git_repo, [{"id": "t1", "prompt": "t1"}])
        runner = CliRunner()
        assert runner.invoke(main, ["-C", str(git_repo), "run"]).exit_code == 0

        result = runner.invoke(main, ["-C", str(git_repo), "rollback", "--task", "t1"])

        assert result.exit_code == 0, result.output
        assert not (git_repo / "t1.txt").exists()
        assert "t1" in result.output
