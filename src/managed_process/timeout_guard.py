"""Overall and idle deadline tracking."""

from __future__ import annotations

import time

TIMEOUT = "timeout"
IDLE_TIMEOUT = "idle timeout"


class TimeoutGuard:
    """Two independent deadlines measured on the monotonic clock.

    The overall deadline runs from ``start()``; the idle deadline runs from the
    latest ``touch()``, which the controller calls whenever output arrives. A
    ``None`` limit disables that check.
    """

    def __init__(self, timeout: float | None, idle_timeout: float | None) -> None:
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self._started_at: float | None = None
        self._last_output_at: float | None = None

    @staticmethod
    def now() -> float:
        return time.monotonic()

    def start(self, now: float | None = None) -> None:
        now = self.now() if now is None else now
        self._started_at = now
        self._last_output_at = now

    def touch(self, now: float | None = None) -> None:
        self._last_output_at = self.now() if now is None else now

    @property
    def last_output_at(self) -> float | None:
        return self._last_output_at

    def expired(self, now: float | None = None) -> tuple[str, float] | None:
        """Return ``(kind, limit)`` for the first exceeded deadline, if any."""
        if self._started_at is None or self._last_output_at is None:
            return None
        now = self.now() if now is None else now
        if self.timeout is not None and now - self._started_at > self.timeout:
            return TIMEOUT, self.timeout
        if self.idle_timeout is not None and now - self._last_output_at > self.idle_timeout:
            return IDLE_TIMEOUT, self.idle_timeout
        return None
