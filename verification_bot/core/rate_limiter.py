"""Token budget for bulk Discord operations."""

from __future__ import annotations

import time
from typing import Callable


class FixedWindowBudget:
    """
    Allows ``limit`` operations per ``window`` seconds.

    The window starts with the first consumption after the previous window
    expired; unused tokens do not carry over.
    """

    def __init__(self, limit: int, window: float = 60.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._window_start: float | None = None
        self._used = 0

    def _roll(self) -> None:
        now = self._clock()
        if self._window_start is None or now - self._window_start >= self.window:
            self._window_start = now
            self._used = 0

    def try_consume(self) -> bool:
        self._roll()
        if self._used >= self.limit:
            return False
        self._used += 1
        return True

    @property
    def remaining(self) -> int:
        self._roll()
        return self.limit - self._used

    def retry_after(self) -> float:
        """Seconds until the current window resets (0 when tokens remain)."""
        if self.remaining > 0 or self._window_start is None:
            return 0.0
        return max(0.0, self.window - (self._clock() - self._window_start))


__all__ = ["FixedWindowBudget"]
