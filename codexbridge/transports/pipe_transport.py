from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Mapping

from .base import DataHandler, Disposable, ProcessTransport


class PipeTransport(ProcessTransport):
    """Long-lived child on plain pipes; stderr is merged into the data stream."""

    @property
    def kind(self) -> str:
        return "pipe"

    @classmethod
    def spawn(cls, *, argv: list[str], cwd: Path, env: Mapping[str, str]) -> "PipeTransport":
        proc = subprocess.Popen(  # noqa: S603
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            close_fds=True,
            start_new_session=True,
        )
        return cls(proc)

    def _streams(self) -> list[tuple[int, DataHandler]]:
        assert self._proc.stdout is not None
        return [(self._proc.stdout.fileno(), self._emit_data)]

    def write(self, text: str) -> None:
        stdin = self._proc.stdin
        with self._write_lock:
            if stdin is None or stdin.closed:
                raise BrokenPipeError("pipe transport stdin is closed")
            stdin.write(text.encode("utf-8", errors="replace"))
            stdin.flush()


class OneShotTransport(ProcessTransport):
    """
    One process per turn: the prompt travels in argv, stdin is closed.

    stdout goes to on_data handlers, stderr to on_stderr handlers, so a
    structured event stream on stdout is never interleaved with diagnostics.
    """

    def __init__(self, proc: subprocess.Popen[bytes]) -> None:
        super().__init__(proc)
        self._stderr_handlers: list[DataHandler] = []

    @property
    def kind(self) -> str:
        return "one-shot"

    @classmethod
    def spawn(cls, *, argv: list[str], cwd: Path, env: Mapping[str, str]) -> "OneShotTransport":
        proc = subprocess.Popen(  # noqa: S603
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            close_fds=True,
            start_new_session=True,
        )
        return cls(proc)

    def _streams(self) -> list[tuple[int, DataHandler]]:
        assert self._proc.stdout is not None and self._proc.stderr is not None
        return [
            (self._proc.stdout.fileno(), self._emit_data),
            (self._proc.stderr.fileno(), self._emit_stderr),
        ]

    def on_stderr(self, handler: DataHandler) -> Disposable:
        with self._handlers_lock:
            self._stderr_handlers.append(handler)
        return Disposable(lambda: self._remove(self._stderr_handlers, handler))

    def _emit_stderr(self, text: str) -> None:
        if not text:
            return
        with self._handlers_lock:
            handlers = list(self._stderr_handlers)
        for handler in handlers:
            self._call(handler, text)

    def _emit_exit(self, exit_code: int | None, sig: int | None) -> None:
        with self._handlers_lock:
            self._stderr_handlers.clear()
        super()._emit_exit(exit_code, sig)

    def write(self, text: str) -> None:
        raise BrokenPipeError("one-shot transport takes its prompt in argv")

    def interrupt(self) -> None:
        self.kill()
