from __future__ import annotations

import time
from typing import Callable

IDLE = "idle"
TIMEOUT = "timeout"


class CompletionDetector:
    """
    Dual-timer end-of-turn policy:
    - hard deadline fixed at timeout_ms from turn start, fires regardless of activity
    - idle deadline armed by the first chunk and pushed back by every later one
    A turn that stays silent can only end by the hard deadline.
    """

    def __init__(
        self,
        *,
        timeout_ms: int,
        idle_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if idle_ms <= 0:
            raise ValueError("idle_ms must be > 0")
        self._clock = clock
        self.timeout_ms = timeout_ms
        self.idle_ms = idle_ms
        self.started_at = clock()
        self.hard_deadline = self.started_at + timeout_ms / 1000.0
        self.last_activity_at: float | None = None

    def note_activity(self) -> None:
        self.last_activity_at = self._clock()

    @property
    def idle_deadline(self) -> float | None:
        if self.last_activity_at is None:
            return None
        return self.last_activity_at + self.idle_ms / 1000.0

    def check(self, now: float | None = None) -> str | None:
        """Return IDLE or TIMEOUT once a deadline has passed, the earlier one winning."""
        current = self._clock() if now is None else now
        idle_deadline = self.idle_deadline
        if idle_deadline is not None and current >= idle_deadline and idle_deadline < self.hard_deadline:
            return IDLE
        if current >= self.hard_deadline:
            return TIMEOUT
        return None

    def seconds_until_next(self, now: float | None = None) -> float:
        current = self._clock() if now is None else now
        deadline = self.hard_deadline
        idle_deadline = self.idle_deadline
        if idle_deadline is not None:
            deadline = min(deadline, idle_deadline)
        return max(0.0, deadline - current)

    def elapsed_ms(self, now: float | None = None) -> float:
        current = self._clock() if now is None else now
        return max(0.0, (current - self.started_at) * 1000.0)
