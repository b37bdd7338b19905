from __future__ import annotations

import codecs
import logging
import os
import select
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

logger = logging.getLogger(__name__)

DataHandler = Callable[[str], None]
ExitHandler = Callable[[int | None, int | None], None]

INTERRUPT_BYTE = "\x03"
READ_CHUNK_BYTES = 4096
READ_POLL_SECONDS = 0.1
# Readers keep draining this long after the child is reaped.
DRAIN_GRACE_SECONDS = 1.0


class Disposable:
    def __init__(self, fn: Callable[[], None] | None = None) -> None:
        self._fn = fn
        self._lock = threading.Lock()

    def dispose(self) -> None:
        with self._lock:
            fn, self._fn = self._fn, None
        if fn is not None:
            fn()


def split_returncode(returncode: int | None) -> tuple[int | None, int | None]:
    """Popen reports death-by-signal as a negative return code."""
    if returncode is None:
        return None, None
    if returncode < 0:
        return None, -returncode
    return returncode, None


class Transport(ABC):
    """
    Uniform handle over a child process:
    - write / kill / interrupt
    - on_data / on_exit subscriptions returning a Disposable
    The exit event fires exactly once, after the output still buffered at exit was delivered.
    """

    def __init__(self) -> None:
        self._handlers_lock = threading.Lock()
        self._data_handlers: list[DataHandler] = []
        self._exit_handlers: list[ExitHandler] = []
        self._exit_status: tuple[int | None, int | None] | None = None

    @property
    @abstractmethod
    def kind(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def pid(self) -> int | None:
        raise NotImplementedError

    @abstractmethod
    def write(self, text: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def kill(self) -> None:
        raise NotImplementedError

    def interrupt(self) -> None:
        self.write(INTERRUPT_BYTE)

    def begin(self) -> None:
        """Start delivering output. Called once handlers are attached so nothing is lost."""

    @property
    def exited(self) -> bool:
        with self._handlers_lock:
            return self._exit_status is not None

    @property
    def exit_status(self) -> tuple[int | None, int | None] | None:
        with self._handlers_lock:
            return self._exit_status

    def on_data(self, handler: DataHandler) -> Disposable:
        with self._handlers_lock:
            self._data_handlers.append(handler)
        return Disposable(lambda: self._remove(self._data_handlers, handler))

    def on_exit(self, handler: ExitHandler) -> Disposable:
        with self._handlers_lock:
            status = self._exit_status
            if status is None:
                self._exit_handlers.append(handler)
        if status is not None:
            # Late subscribers still learn about the exit.
            self._call(handler, *status)
            return Disposable()
        return Disposable(lambda: self._remove(self._exit_handlers, handler))

    def _remove(self, handlers: list, handler: Callable) -> None:
        with self._handlers_lock:
            if handler in handlers:
                handlers.remove(handler)

    def _emit_data(self, text: str) -> None:
        if not text:
            return
        with self._handlers_lock:
            handlers = list(self._data_handlers)
        for handler in handlers:
            self._call(handler, text)

    def _emit_exit(self, exit_code: int | None, sig: int | None) -> None:
        with self._handlers_lock:
            if self._exit_status is not None:
                return
            self._exit_status = (exit_code, sig)
            handlers = list(self._exit_handlers)
            self._exit_handlers.clear()
            self._data_handlers.clear()
        for handler in handlers:
            self._call(handler, exit_code, sig)

    def _call(self, handler: Callable, *args: object) -> None:
        try:
            handler(*args)
        except Exception:
            logger.exception("transport handler failed kind=%s pid=%s", self.kind, self.pid)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(pid={self.pid}, exited={self.exited})"


class ProcessTransport(Transport):
    """
    Transport backed by a subprocess.Popen child.

    Every output fd gets a reader thread that decodes UTF-8 incrementally and
    hands text to an emitter. A waiter thread reaps the child first, gives the
    readers DRAIN_GRACE_SECONDS to flush what is buffered, then closes the
    streams and fires the exit event. Output written later by a surviving
    grandchild is dropped.
    """

    def __init__(self, proc: subprocess.Popen[bytes]) -> None:
        super().__init__()
        self._proc = proc
        self._readers: list[threading.Thread] = []
        self._write_lock = threading.Lock()
        self._begun = False
        self._reaped = threading.Event()
        self._drain_deadline = 0.0

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.poll()

    @abstractmethod
    def _streams(self) -> list[tuple[int, DataHandler]]:
        raise NotImplementedError

    def begin(self) -> None:
        with self._write_lock:
            if self._begun:
                return
            self._begun = True
        for fd, emit in self._streams():
            reader = threading.Thread(
                target=self._pump,
                args=(fd, emit),
                name=f"{self.kind}-reader-{self.pid}",
                daemon=True,
            )
            self._readers.append(reader)
            reader.start()
        threading.Thread(target=self._wait, name=f"{self.kind}-waiter-{self.pid}", daemon=True).start()

    def _pump(self, fd: int, emit: DataHandler) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            if self._reaped.is_set() and time.monotonic() >= self._drain_deadline:
                break
            try:
                ready, _, _ = select.select([fd], [], [], READ_POLL_SECONDS)
            except (OSError, ValueError):
                break
            if not ready:
                if self._reaped.is_set():
                    break
                continue
            try:
                data = os.read(fd, READ_CHUNK_BYTES)
            except OSError:
                # EIO on a PTY master once the child side is gone.
                break
            if not data:
                break
            emit(decoder.decode(data))
        emit(decoder.decode(b"", final=True))

    def _wait(self) -> None:
        returncode = self._proc.wait()
        self._drain_deadline = time.monotonic() + DRAIN_GRACE_SECONDS
        self._reaped.set()
        for reader in self._readers:
            reader.join(DRAIN_GRACE_SECONDS + READ_POLL_SECONDS)
        self._close_streams()
        self._emit_exit(*split_returncode(returncode))

    def _close_streams(self) -> None:
        with self._write_lock:
            for stream in (self._proc.stdin, self._proc.stdout, self._proc.stderr):
                if stream is None:
                    continue
                try:
                    stream.close()
                except OSError:
                    continue

    def kill(self) -> None:
        if self._proc.poll() is not None:
            return
        # Child is its own session leader; signal the whole group so grandchildren go too.
        try:
            os.killpg(self._proc.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            try:
                self._proc.terminate()
            except ProcessLookupError:
                return
