"""Progress sinks: where the update flow reports what it is doing."""

from __future__ import annotations

import logging
import time

from scoresync.core.types import Clock

logger = logging.getLogger(__name__)


class LoggingProgressSink:
    """IProgressSink that logs each message and keeps the ones it displayed.

    ``hold`` pins a message for ``duration_ms``; soft updates arriving
    during the hold are dropped, ``set_text`` always goes through.
    """

    def __init__(self, clock: Clock = time.monotonic, name: str = "scoresync.progress") -> None:
        self._clock = clock
        self._logger = logging.getLogger(name)
        self._hold_until = 0.0
        self.messages: list[str] = []

    @property
    def current(self) -> str | None:
        return self.messages[-1] if self.messages else None

    def set_text(self, message: str) -> None:
        self._hold_until = 0.0
        self._show(message)

    def soft_update(self, message: str) -> None:
        if self._clock() < self._hold_until:
            logger.debug("Soft update suppressed during hold: %s", message)
            return
        self._show(message)

    def hold(self, message: str, duration_ms: int) -> None:
        self._show(message)
        self._hold_until = self._clock() + duration_ms / 1000

    def _show(self, message: str) -> None:
        self.messages.append(message)
        self._logger.info(message)
