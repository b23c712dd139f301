"""Launching and killing external agent processes."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from chorus.errors import SpawnError
from chorus.schemas.config import AgentCommand

logger = logging.getLogger(__name__)

# Bytes read from an agent's stdout per call; lines may be longer
READ_CHUNK = 64 * 1024


class OutputStream:
    """Async iterator over an agent's output lines.

    Lines always go to the transcript. A queue is only created once someone
    starts iterating, and it is seeded with the lines seen so far, so an
    agent nobody listens to buffers nothing beyond its transcript.
    """

    def __init__(self, transcript: list[str]):
        self._transcript = transcript
        self._queue: asyncio.Queue[str | None] | None = None
        self._closed = False

    @property
    def buffering(self) -> bool:
        return self._queue is not None

    def feed(self, line: str) -> None:
        self._transcript.append(line)
        if self._queue is not None:
            self._queue.put_nowait(line)

    def close(self) -> None:
        self._closed = True
        if self._queue is not None:
            self._queue.put_nowait(None)

    def __aiter__(self) -> OutputStream:
        return self

    async def __anext__(self) -> str:
        if self._queue is None:
            self._queue = asyncio.Queue()
            for line in self._transcript:
                self._queue.put_nowait(line)
            if self._closed:
                self._queue.put_nowait(None)

        line = await self._queue.get()
        if line is None:
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return line


@dataclass
class SpawnedAgent:
    """Handle to a running agent process.

    ``output`` yields stdout/stderr lines as they arrive; ``exit_code``
    resolves once the process has exited and its output is drained.
    """

    pid: int
    output: AsyncIterator[str]
    exit_code: asyncio.Future[int]
    transcript: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.transcript)


class Spawner(Protocol):
    async def spawn(self, prompt: str, cwd: str | Path) -> SpawnedAgent:
        ...

    async def kill(self, pid: int) -> bool:
        ...


class AgentSpawner:
    """Starts agent executables as asyncio subprocesses."""

    def __init__(self, command: AgentCommand):
        self.command = command
        self._processes: dict[int, asyncio.subprocess.Process] = {}

    async def spawn(self, prompt: str, cwd: str | Path) -> SpawnedAgent:
        """Launch an agent with a prompt in a working directory.

        Raises:
            SpawnError: If the executable cannot be started
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command.command,
                *self.command.args,
                prompt,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start {self.command.command}: {e}") from e

        self._processes[proc.pid] = proc
        logger.info("Spawned %s (pid %d) in %s", self.command.command, proc.pid, cwd)

        transcript: list[str] = []
        stream = OutputStream(transcript)

        async def pump() -> int:
            try:
                await _read_lines(proc, stream)
            except Exception:
                logger.exception("Reading output of agent pid %d failed", proc.pid)
                if proc.returncode is None:
                    proc.kill()
            finally:
                stream.close()
            code = await proc.wait()
            self._processes.pop(proc.pid, None)
            return code

        exit_code = asyncio.ensure_future(pump())
        return SpawnedAgent(pid=proc.pid, output=stream, exit_code=exit_code, transcript=transcript)

    async def kill(self, pid: int) -> bool:
        """Send SIGTERM to an agent process.

        Does not release the agent's slot; completion handling does that.

        Returns:
            False if no such process is running
        """
        proc = self._processes.get(pid)
        try:
            if proc is not None:
                proc.send_signal(signal.SIGTERM)
            else:
                os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        logger.info("Sent SIGTERM to agent pid %d", pid)
        return True


async def _read_lines(proc: asyncio.subprocess.Process, stream: OutputStream) -> None:
    """Split an agent's stdout into lines without a line length limit."""
    assert proc.stdout is not None
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""

    while True:
        chunk = await proc.stdout.read(READ_CHUNK)
        if not chunk:
            break
        pending += decoder.decode(chunk)
        *complete, pending = pending.split("\n")
        for line in complete:
            stream.feed(line + "\n")

    pending += decoder.decode(b"", final=True)
    if pending:
        stream.feed(pending)
