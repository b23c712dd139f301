"""Pausing and resuming new agent work."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


class OrchestratorControl(Protocol):
    def set_paused(self, paused: bool) -> None:
        ...


@dataclass
class PauseResult:
    success: bool
    message: str


class PauseHandler:
    """Stops new agents from starting without touching running ones.

    Both operations are idempotent and always notify the orchestrator, so a
    repeated pause re-asserts the paused state rather than failing.
    """

    def __init__(self, control: OrchestratorControl):
        self.control = control
        self._paused = False
        self._paused_at: float | None = None

    def pause(self) -> PauseResult:
        if not self._paused:
            self._paused_at = time.monotonic()
        self._paused = True
        self.control.set_paused(True)
        logger.info("Orchestration paused")
        return PauseResult(success=True, message="Paused: no new agents will start")

    def resume(self) -> PauseResult:
        was_paused = self._paused
        self._paused = False
        self._paused_at = None
        self.control.set_paused(False)
        if was_paused:
            logger.info("Orchestration resumed")
            return PauseResult(success=True, message="Resumed")
        return PauseResult(success=True, message="Not paused")

    def toggle(self) -> PauseResult:
        return self.resume() if self._paused else self.pause()

    def is_paused(self) -> bool:
        return self._paused

    def get_pause_duration(self) -> float | None:
        """Seconds spent paused so far, or None when running."""
        if not self._paused or self._paused_at is None:
            return None
        return time.monotonic() - self._paused_at
