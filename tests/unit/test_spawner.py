"""Tests for launching agent processes."""

from pathlib import Path

import pytest

from chorus.agents.signals import final_signal
from chorus.agents.spawner import AgentSpawner, OutputStream
from chorus.errors import SpawnError
from chorus.schemas.config import AgentCommand
from chorus.schemas.review import SignalType


class TestAgentSpawner:
    """Tests for AgentSpawner against real short-lived processes."""

    @pytest.mark.asyncio
    async def test_output_and_exit_code(self, tmp_path: Path) -> None:
        """Test output lines stream and the exit code resolves."""
        spawner = AgentSpawner(AgentCommand(command="echo", args=["working"]))

        agent = await spawner.spawn("<chorus>COMPLETE</chorus>", tmp_path)
        lines = [line async for line in agent.output]
        code = await agent.exit_code

        assert code == 0
        assert lines == ["working <chorus>COMPLETE</chorus>\n"]
        assert final_signal(agent.text).type == SignalType.COMPLETE

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path) -> None:
        """Test an unknown executable raises SpawnError."""
        spawner = AgentSpawner(AgentCommand(command="definitely-not-an-agent-binary"))

        with pytest.raises(SpawnError):
            await spawner.spawn("hi", tmp_path)

    @pytest.mark.asyncio
    async def test_kill(self, tmp_path: Path) -> None:
        """Test kill terminates a running agent."""
        spawner = AgentSpawner(AgentCommand(command="sleep"))

        agent = await spawner.spawn("30", tmp_path)
        assert await spawner.kill(agent.pid) is True

        code = await agent.exit_code
        assert code != 0

    @pytest.mark.asyncio
    async def test_line_longer_than_stream_limit(self, tmp_path: Path) -> None:
        """Test a single output line far past 64 KiB is read whole."""
        spawner = AgentSpawner(AgentCommand(command="sh", args=["-c"]))
        script = "head -c 200000 /dev/zero | tr '\\0' x; echo; echo '<chorus>COMPLETE</chorus>'"

        agent = await spawner.spawn(script, tmp_path)
        code = await agent.exit_code

        assert code == 0
        assert agent.transcript[0] == "x" * 200000 + "\n"
        assert final_signal(agent.text).type == SignalType.COMPLETE

    @pytest.mark.asyncio
    async def test_partial_last_line(self, tmp_path: Path) -> None:
        """Test output without a trailing newline is kept."""
        spawner = AgentSpawner(AgentCommand(command="printf"))

        agent = await spawner.spawn("one\ntwo", tmp_path)
        await agent.exit_code

        assert agent.transcript == ["one\n", "two"]


class TestOutputStream:
    """Tests for output buffering."""

    @pytest.mark.asyncio
    async def test_unread_output_is_not_queued(self, tmp_path: Path) -> None:
        """Test output nobody iterates only lands in the transcript."""
        spawner = AgentSpawner(AgentCommand(command="echo"))

        agent = await spawner.spawn("hello", tmp_path)
        await agent.exit_code

        assert agent.output.buffering is False
        assert agent.text == "hello\n"

    @pytest.mark.asyncio
    async def test_late_reader_sees_earlier_lines(self) -> None:
        """Test iteration started after output replays the transcript."""
        stream = OutputStream([])
        stream.feed("first\n")
        stream.feed("second\n")
        stream.close()

        assert [line async for line in stream] == ["first\n", "second\n"]
        assert [line async for line in stream] == []

    @pytest.mark.asyncio
    async def test_live_lines_after_subscribe(self) -> None:
        """Test lines fed while iterating are delivered in order."""
        stream = OutputStream([])
        stream.feed("a\n")

        assert await stream.__anext__() == "a\n"
        stream.feed("b\n")
        stream.close()

        assert [line async for line in stream] == ["b\n"]
