from __future__ import annotations

import threading

from .session import ExitInfo


class ExitTracker:
    """Last exit per thread, kept after the session record is gone."""

    def __init__(self) -> None:
        self._exits: dict[str, ExitInfo] = {}
        self._lock = threading.Lock()

    def record(self, info: ExitInfo) -> None:
        with self._lock:
            self._exits[info.thread_id] = info

    def get(self, thread_id: str) -> ExitInfo | None:
        with self._lock:
            return self._exits.get(thread_id)
