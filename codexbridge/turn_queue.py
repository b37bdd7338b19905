from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, TypeVar

T = TypeVar("T")


class QueueClosed(RuntimeError):
    pass


class TurnQueue:
    """
    Per-thread turn queue:
    - one worker -> turns run strictly in submission order
    - a failed turn only fails its own future; the next turn still runs
    - separate queues (threads) run in parallel
    """

    def __init__(self, *, name: str = "turn") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"turn-{name}")
        self._lock = threading.Lock()
        self._closed = False
        self._pending = 0

    def submit(
        self,
        fn: Callable[[], T],
        on_metrics: Callable[[float, float], None] | None = None,
    ) -> Future[T]:
        queued_at = time.monotonic()

        def _run() -> T:
            started_at = time.monotonic()
            try:
                result = fn()
            finally:
                with self._lock:
                    self._pending -= 1
            if on_metrics is not None:
                wait_ms = max(0.0, (started_at - queued_at) * 1000.0)
                run_ms = max(0.0, (time.monotonic() - started_at) * 1000.0)
                on_metrics(wait_ms, run_ms)
            return result

        with self._lock:
            if self._closed:
                raise QueueClosed("turn queue is closed")
            self._pending += 1
            return self._executor.submit(_run)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def close(self) -> None:
        """Stop accepting turns. Turns already queued still run and must check their own state."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=False)
