"""Quality gate execution."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from chorus.schemas.review import QualityRunResult
from chorus.utils.process import CommandRunner, ProcessRunner

if TYPE_CHECKING:
    from chorus.schemas.config import QualityCommand

logger = logging.getLogger(__name__)

MAX_ERROR_OUTPUT = 4000


class QualityCommandRunner:
    """Runs the configured quality gates in a worktree."""

    def __init__(
        self,
        commands: list[QualityCommand],
        runner: CommandRunner | None = None,
    ):
        """Initialize the runner.

        Args:
            commands: Quality commands; executed by their ``order``
            runner: Command runner (defaults to a ProcessRunner)
        """
        self.commands = sorted(commands, key=lambda c: c.order)
        self.runner = runner or ProcessRunner()

    async def run_all(self, worktree: str | Path | None = None) -> list[QualityRunResult]:
        """Run every gate in order, stopping after the first required failure.

        A non-zero exit is recorded as a failed gate, never raised.

        Args:
            worktree: Directory to run the commands in

        Returns:
            One QualityRunResult per command that ran
        """
        results: list[QualityRunResult] = []

        for cmd in self.commands:
            result = await self.runner.exec(cmd.command, cwd=worktree)
            passed = result.ok
            error = None
            if not passed:
                error = (result.stderr or result.stdout).strip()[-MAX_ERROR_OUTPUT:]
                logger.warning("Quality gate %s failed (exit %d)", cmd.name, result.exit_code)

            results.append(
                QualityRunResult(
                    name=cmd.name,
                    passed=passed,
                    duration_ms=result.duration_ms,
                    error=error,
                )
            )

            if not passed and cmd.required:
                break

        return results

    async def run_required(self, worktree: str | Path | None = None) -> list[QualityRunResult]:
        """Run only the required gates."""
        required = QualityCommandRunner(
            [c for c in self.commands if c.required],
            runner=self.runner,
        )
        return await required.run_all(worktree)
