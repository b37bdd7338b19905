"""
Failure classification and per-thread backend cooldown.

Phrase matching here is policy: both lists live in BridgeConfig and can be
overridden from the environment.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Iterable

from .session import CooldownEntry

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_PATTERNS: tuple[str, ...] = (
    "failed to refresh available models",
    "stream disconnected before completion",
    "error sending request for url",
    "connection reset",
    "timed out",
)

DEFAULT_NON_INTERACTIVE_PATTERNS: tuple[str, ...] = (
    "not a terminal",
    "not a tty",
    "stdin is not a terminal",
    "requires a tty",
    "raw mode is not supported",
)

DEFAULT_COOLDOWN_MS = 30_000
MAX_REASON_CHARS = 500


def matches_any(text: str, patterns: Iterable[str]) -> bool:
    normalized = text.lower()
    return any(p.lower() in normalized for p in patterns if p)


def is_upstream_connectivity_error(text: str, patterns: Iterable[str] = DEFAULT_UPSTREAM_PATTERNS) -> bool:
    return matches_any(text, patterns)


def is_non_interactive_error(text: str, patterns: Iterable[str] = DEFAULT_NON_INTERACTIVE_PATTERNS) -> bool:
    return matches_any(text, patterns)


class CooldownTracker:
    """Thread id -> time-boxed 'backend unavailable' window."""

    def __init__(
        self,
        *,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cooldown_ms = max(1, int(cooldown_ms))
        self._clock = clock
        self._entries: dict[str, CooldownEntry] = {}
        self._lock = threading.Lock()

    def open(self, thread_id: str, reason: str) -> CooldownEntry:
        entry = CooldownEntry(
            thread_id=thread_id,
            unavailable_until=self._clock() + self.cooldown_ms / 1000.0,
            reason=reason[:MAX_REASON_CHARS],
        )
        with self._lock:
            self._entries[thread_id] = entry
        logger.warning("cooldown opened thread=%s seconds=%s reason=%r", thread_id, self.cooldown_ms / 1000.0, entry.reason[:120])
        return entry

    def active(self, thread_id: str) -> tuple[int, str] | None:
        """Return (remaining_seconds, reason) while the window is open, else None."""
        with self._lock:
            entry = self._entries.get(thread_id)
        if entry is None:
            return None
        remaining = entry.unavailable_until - self._clock()
        if remaining <= 0:
            return None
        return max(1, math.ceil(remaining)), entry.reason

    def get(self, thread_id: str) -> CooldownEntry | None:
        with self._lock:
            return self._entries.get(thread_id)

    def clear(self, thread_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(thread_id, None)
        if removed is not None:
            logger.info("cooldown cleared thread=%s", thread_id)
        return removed is not None
