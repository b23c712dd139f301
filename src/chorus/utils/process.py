"""Shell command execution that never raises."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a shell command execution."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Anything that can execute a shell command."""

    async def exec(self, command: str, cwd: str | Path | None = None) -> CommandResult:
        ...


class ProcessRunner:
    """Runs shell commands as asyncio subprocesses.

    Failures of any kind are encoded in the returned CommandResult as a
    non-zero exit code; exec() never raises.
    """

    def __init__(self, cwd: str | Path | None = None, timeout: float | None = None):
        """Initialize the runner.

        Args:
            cwd: Default working directory for commands
            timeout: Optional per-command timeout in seconds
        """
        self.cwd = cwd
        self.timeout = timeout

    async def exec(self, command: str, cwd: str | Path | None = None) -> CommandResult:
        """Run a shell command and return the result.

        Args:
            command: Shell command to execute
            cwd: Working directory (overrides the runner default)

        Returns:
            CommandResult with exit_code, stdout, stderr
        """
        start = time.monotonic()
        workdir = cwd if cwd is not None else self.cwd

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=str(workdir) if workdir is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Failed to start %r: %s", command, e)
            return CommandResult(
                exit_code=-1,
                stdout="",
                stderr=str(e),
                duration_ms=_elapsed_ms(start),
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandResult(
                exit_code=-1,
                stdout="",
                stderr=f"Command timed out after {self.timeout} seconds",
                duration_ms=_elapsed_ms(start),
            )

        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration_ms=_elapsed_ms(start),
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
