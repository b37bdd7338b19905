"""
Session data model (without process concerns).

A SessionRecord is the live state for one conversation thread:
  - the transport that owns the external process (None for one-shot threads)
  - the turn queue serializing prompts against it
  - a bounded tail of everything the process printed
ExitInfo outlives the record so status() can explain a crash after the fact.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .turn_queue import TurnQueue

if TYPE_CHECKING:
    from .transports.base import Disposable, Transport

MAX_OUTPUT_TAIL = 8_000


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OutputTail:
    """
    Ring buffer of the most recent output characters.

    A per-turn tail can mirror into the session-wide tail so turn failures
    are judged on their own output only.
    """

    def __init__(self, limit: int = MAX_OUTPUT_TAIL, *, mirror: OutputTail | None = None) -> None:
        self.limit = max(1, int(limit))
        self.mirror = mirror
        self._text = ""
        self._lock = threading.Lock()

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._text = (self._text + text)[-self.limit :]
        if self.mirror is not None:
            self.mirror.append(text)

    def snapshot(self) -> str:
        with self._lock:
            return self._text

    def clear(self) -> None:
        with self._lock:
            self._text = ""

    def __len__(self) -> int:
        with self._lock:
            return len(self._text)


@dataclass
class ExitInfo:
    thread_id: str
    cwd: str
    output_tail: str
    exited_at: str
    exit_code: int | None = None
    signal: int | None = None

    def describe(self) -> str:
        parts = [f"exit_code={self.exit_code}"]
        if self.signal is not None:
            parts.append(f"signal={self.signal}")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CooldownEntry:
    thread_id: str
    unavailable_until: float
    reason: str


@dataclass
class SessionRecord:
    thread_id: str
    cwd: str
    transport: Transport | None
    transport_kind: str
    queue: TurnQueue
    created_at: str = field(default_factory=utc_now_iso)
    last_used_at: str = field(default_factory=utc_now_iso)
    remote_thread_id: str | None = None
    output_tail: OutputTail = field(default_factory=OutputTail)
    subscriptions: list[Disposable] = field(default_factory=list)
    turns_completed: int = 0
    # Process of the one-shot turn in flight, so stop() can kill it.
    turn_transport: Transport | None = None

    @property
    def pid(self) -> int | None:
        return self.transport.pid if self.transport is not None else None

    def touch(self) -> None:
        self.last_used_at = utc_now_iso()

    def release_subscriptions(self) -> None:
        subscriptions, self.subscriptions = self.subscriptions, []
        for sub in subscriptions:
            sub.dispose()

    def __repr__(self) -> str:
        return f"SessionRecord(thread={self.thread_id}, kind={self.transport_kind}, pid={self.pid})"


@dataclass
class StartResult:
    started: bool
    running: bool
    thread_id: str
    cwd: str
    pid: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StopResult:
    stopped: bool
    thread_id: str
    running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionStatus:
    running: bool
    thread_id: str
    cwd: str | None = None
    pid: int | None = None
    last_used_at: str | None = None
    transport_kind: str | None = None
    output_tail: str | None = None
    remote_thread_id: str | None = None
    last_exit: ExitInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.running:
            data.pop("last_exit", None)
        else:
            for key in ("cwd", "pid", "last_used_at", "transport_kind", "output_tail", "remote_thread_id"):
                data.pop(key, None)
        return data


@dataclass
class TurnResult:
    output: str
