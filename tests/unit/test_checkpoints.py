"""Tests for checkpoint creation and pruning."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from chorus.core.events import CheckpointCreated, EventBus
from chorus.core.state import StateService
from chorus.errors import CheckpointError
from chorus.rollback.checkpoints import Checkpointer, tag_name
from chorus.schemas.config import CheckpointSettings
from chorus.schemas.state import CheckpointType
from chorus.utils.process import CommandResult

OK = CommandResult(exit_code=0, stdout="", stderr="")


def make_git() -> AsyncMock:
    git = AsyncMock()
    git.tag.return_value = OK
    git.delete_tag.return_value = OK
    git.list_tags.return_value = []
    return git


class TestTagName:
    """Tests for tag naming."""

    def test_pre_merge(self) -> None:
        """Test pre-merge tags are named after the task."""
        assert tag_name(CheckpointType.PRE_MERGE, "ch-1") == "pre-merge-ch-1"

    def test_timestamped(self) -> None:
        """Test other checkpoints use the unix time."""
        with patch("chorus.rollback.checkpoints.time.time", return_value=1700000000.5):
            assert tag_name(CheckpointType.PERIODIC) == "chorus-checkpoint-1700000000"
            assert tag_name(CheckpointType.AUTOPILOT_START) == "chorus-checkpoint-1700000000"


class TestShouldCreate:
    """Tests for the checkpoint triggers."""

    def test_disabled(self) -> None:
        """Test nothing triggers when disabled."""
        checkpointer = Checkpointer(CheckpointSettings(enabled=False), make_git())
        for type in CheckpointType:
            assert checkpointer.should_create(type) is False

    def test_flags(self) -> None:
        """Test each trigger follows its flag."""
        config = CheckpointSettings(before_autopilot=False, before_merge=True, periodic=0)
        checkpointer = Checkpointer(config, make_git())

        assert checkpointer.should_create(CheckpointType.AUTOPILOT_START) is False
        assert checkpointer.should_create(CheckpointType.PRE_MERGE) is True
        assert checkpointer.should_create(CheckpointType.PERIODIC) is False

    def test_periodic(self) -> None:
        """Test periodic checkpoints fire every N completed tasks."""
        checkpointer = Checkpointer(CheckpointSettings(periodic=3), make_git())

        fired = [n for n in range(0, 10) if checkpointer.should_create_periodic(n)]
        assert fired == [3, 6, 9]


class TestCreate:
    """Tests for create, list and prune."""

    @pytest.mark.asyncio
    async def test_create_records_checkpoint(self, tmp_path: Path) -> None:
        """Test a checkpoint is tagged, recorded in state and announced."""
        state = StateService(tmp_path)
        state.init()
        bus = EventBus()
        events: list[CheckpointCreated] = []
        bus.subscribe(events.append, CheckpointCreated)
        git = make_git()
        checkpointer = Checkpointer(CheckpointSettings(), git, state, bus)

        checkpoint = await checkpointer.create(CheckpointType.PRE_MERGE, task_id="ch-1")

        git.tag.assert_awaited_once_with("pre-merge-ch-1")
        assert checkpoint.task_id == "ch-1"
        assert checkpointer.get("pre-merge-ch-1") == checkpoint
        assert state.get().checkpoint == "pre-merge-ch-1"
        assert state.get().checkpoints == [checkpoint]
        assert events[0].checkpoint_id == "pre-merge-ch-1"

    @pytest.mark.asyncio
    async def test_create_failure(self) -> None:
        """Test a failed tag raises CheckpointError and records nothing."""
        git = make_git()
        git.tag.return_value = CommandResult(exit_code=128, stdout="", stderr="tag exists")
        checkpointer = Checkpointer(CheckpointSettings(), git)

        with pytest.raises(CheckpointError):
            await checkpointer.create(CheckpointType.PERIODIC)
        assert checkpointer.list() == []

    @pytest.mark.asyncio
    async def test_restores_from_state(self, tmp_path: Path) -> None:
        """Test recorded checkpoints are known after a restart."""
        state = StateService(tmp_path)
        state.init()
        await Checkpointer(CheckpointSettings(), make_git(), state).create(
            CheckpointType.PRE_MERGE, task_id="ch-1"
        )

        reloaded = StateService(tmp_path)
        reloaded.load()
        assert Checkpointer(CheckpointSettings(), make_git(), reloaded).get("pre-merge-ch-1") is not None

    @pytest.mark.asyncio
    async def test_prune_keeps_newest(self) -> None:
        """Test pruning deletes the oldest tags."""
        git = make_git()
        checkpointer = Checkpointer(CheckpointSettings(keep=10), git)
        for task_id in ("a", "b", "c", "d"):
            await checkpointer.create(CheckpointType.PRE_MERGE, task_id=task_id)

        deleted = await checkpointer.prune(2)

        assert deleted == 2
        assert [c.task_id for c in checkpointer.list()] == ["c", "d"]
        assert [c.args[0] for c in git.delete_tag.await_args_list] == ["pre-merge-a", "pre-merge-b"]

    @pytest.mark.asyncio
    async def test_create_prunes_to_keep(self) -> None:
        """Test create enforces the retention limit."""
        checkpointer = Checkpointer(CheckpointSettings(keep=2), make_git())
        for task_id in ("a", "b", "c"):
            await checkpointer.create(CheckpointType.PRE_MERGE, task_id=task_id)

        assert [c.task_id for c in checkpointer.list()] == ["b", "c"]
        assert checkpointer.latest().task_id == "c"

    @pytest.mark.asyncio
    async def test_prune_noop(self) -> None:
        """Test pruning under the limit deletes nothing."""
        git = make_git()
        checkpointer = Checkpointer(CheckpointSettings(), git)
        await checkpointer.create(CheckpointType.PRE_MERGE, task_id="a")

        assert await checkpointer.prune(5) == 0
        git.delete_tag.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_same_second_tags_are_distinct(self) -> None:
        """Test checkpoints created within one second get their own tags."""
        git = make_git()
        checkpointer = Checkpointer(CheckpointSettings(), git)

        with patch("chorus.rollback.checkpoints.time.time", return_value=1700000000.0):
            first = await checkpointer.create(CheckpointType.PERIODIC)
            second = await checkpointer.create(CheckpointType.AUTOPILOT_START)
            third = await checkpointer.create(CheckpointType.PERIODIC)

        assert [first.tag, second.tag, third.tag] == [
            "chorus-checkpoint-1700000000",
            "chorus-checkpoint-1700000000-1",
            "chorus-checkpoint-1700000000-2",
        ]
        assert checkpointer.get("chorus-checkpoint-1700000000-1") == second

    @pytest.mark.asyncio
    async def test_existing_git_tag_is_skipped(self) -> None:
        """Test a tag left by an earlier session is not reused."""
        git = make_git()
        git.list_tags.return_value = ["chorus-checkpoint-1700000000"]
        checkpointer = Checkpointer(CheckpointSettings(), git)

        with patch("chorus.rollback.checkpoints.time.time", return_value=1700000000.0):
            checkpoint = await checkpointer.create(CheckpointType.PERIODIC)

        git.tag.assert_awaited_once_with("chorus-checkpoint-1700000000-1")
        assert checkpoint.id == "chorus-checkpoint-1700000000-1"
