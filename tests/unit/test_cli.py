"""Tests for the command line interface."""

from pathlib import Path

from click.testing import CliRunner

from chorus import __version__
from chorus.cli import main
from chorus.core.state import StateService
from chorus.schemas.config import ChorusConfig


class TestGlobalOptions:
    """Tests for help, version and unknown arguments."""

    def test_version(self) -> None:
        """Test -v and --version print the version."""
        runner = CliRunner()
        for flag in ("-v", "--version"):
            result = runner.invoke(main, [flag])
            assert result.exit_code == 0
            assert __version__ in result.output

    def test_help(self) -> None:
        """Test -h and --help print usage."""
        runner = CliRunner()
        for flag in ("-h", "--help"):
            result = runner.invoke(main, [flag])
            assert result.exit_code == 0
            assert "Usage" in result.output

    def test_unknown_flag_shows_help(self) -> None:
        """Test an unknown flag prints help instead of an error."""
        result = CliRunner().invoke(main, ["--bogus"])

        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_unknown_command_shows_help(self) -> None:
        """Test an unknown positional argument prints help."""
        result = CliRunner().invoke(main, ["frobnicate"])

        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_unknown_subcommand_flag_shows_help(self, tmp_path: Path) -> None:
        """Test unknown flags on a command print that command's help."""
        result = CliRunner().invoke(main, ["-C", str(tmp_path), "status", "--bogus"])

        assert result.exit_code == 0
        assert "Usage" in result.output


class TestCommands:
    """Tests for init and status."""

    def test_init_writes_config(self, tmp_path: Path) -> None:
        """Test init writes a loadable default config."""
        result = CliRunner().invoke(main, ["-C", str(tmp_path), "init"])

        assert result.exit_code == 0
        path = tmp_path / ".chorus" / "config.yaml"
        assert path.exists()
        assert ChorusConfig.load(path) == ChorusConfig()

    def test_init_keeps_existing(self, tmp_path: Path) -> None:
        """Test init does not overwrite without --force."""
        path = tmp_path / ".chorus" / "config.yaml"
        ChorusConfig(worktree_dir="custom").save(path)

        CliRunner().invoke(main, ["-C", str(tmp_path), "init"])

        assert ChorusConfig.load(path).worktree_dir == "custom"

    def test_status_without_session(self, tmp_path: Path) -> None:
        """Test status reports when no session exists."""
        result = CliRunner().invoke(main, ["-C", str(tmp_path), "status"])

        assert result.exit_code == 0
        assert "No active session" in result.output

    def test_status_json(self, tmp_path: Path) -> None:
        """Test status --json dumps the session state."""
        service = StateService(tmp_path)
        state = service.init()
        service.save()

        result = CliRunner().invoke(main, ["-C", str(tmp_path), "status", "--json"])

        assert result.exit_code == 0
        assert state.session_id in result.output

    def test_status_invalid_state(self, tmp_path: Path) -> None:
        """Test a corrupt state file is reported with a failure exit."""
        path = tmp_path / ".chorus" / "state.json"
        path.parent.mkdir()
        path.write_text("{}")

        result = CliRunner().invoke(main, ["-C", str(tmp_path), "status"])

        assert result.exit_code == 1


class TestRun:
    """Tests for run argument and plan handling."""

    def test_missing_plan(self, tmp_path: Path) -> None:
        """Test a missing tasks.yaml is reported with a failure exit."""
        result = CliRunner().invoke(main, ["-C", str(tmp_path), "run"])

        assert result.exit_code == 1
        assert "Cannot read" in result.output

    def test_duplicate_task_ids(self, tmp_path: Path) -> None:
        """Test a plan with duplicate ids is rejected."""
        (tmp_path / "tasks.yaml").write_text(
            "tasks:\n  - id: t1\n    prompt: a\n  - id: t1\n    prompt: b\n"
        )

        result = CliRunner().invoke(main, ["-C", str(tmp_path), "run"])

        assert result.exit_code == 1
        assert "Duplicate task id" in result.output

    def test_cyclic_plan(self, tmp_path: Path) -> None:
        """Test circular dependencies are rejected before any agent starts."""
        plan = tmp_path / "plan.yaml"
        plan.write_text(
            "tasks:\n"
            "  - id: t1\n    prompt: a\n    depends_on: [t2]\n"
            "  - id: t2\n    prompt: b\n    depends_on: [t1]\n"
        )

        result = CliRunner().invoke(main, ["-C", str(tmp_path), "run", str(plan)])

        assert result.exit_code == 1
        assert "Circular dependencies" in result.output
        assert not (tmp_path / ".chorus" / "state.json").exists()

    def test_help_lists_commands(self) -> None:
        """Test run and rollback appear in the command listing."""
        result = CliRunner().invoke(main, ["--help"])

        assert "run" in result.output
        assert "rollback" in result.output


class TestRollback:
    """Tests for rollback option handling."""

    def test_requires_a_target(self, tmp_path: Path) -> None:
        """Test rollback needs --task or --checkpoint."""
        result = CliRunner().invoke(main, ["-C", str(tmp_path), "rollback"])

        assert result.exit_code == 1
        assert "exactly one of" in result.output

    def test_rejects_both_targets(self, tmp_path: Path) -> None:
        """Test --task and --checkpoint together are refused."""
        result = CliRunner().invoke(
            main, ["-C", str(tmp_path), "rollback", "--task", "t1", "--checkpoint", "c1"]
        )

        assert result.exit_code == 1
        assert "exactly one of" in result.output

    def test_unknown_checkpoint(self, tmp_path: Path) -> None:
        """Test rolling back to an unrecorded checkpoint fails."""
        result = CliRunner().invoke(
            main, ["-C", str(tmp_path), "rollback", "--checkpoint", "chorus-checkpoint-1"]
        )

        assert result.exit_code == 1
        assert "Unknown checkpoint" in result.output
