from __future__ import annotations

import os
import pty
import subprocess
import termios
from pathlib import Path
from typing import Mapping

from .base import DataHandler, ProcessTransport


class PtyTransport(ProcessTransport):
    """
    Child attached to a pseudo-terminal.

    stdout/stderr arrive merged on the master fd, the way an interactive CLI
    expects. Echo is switched off so prompts we write are not read back as output.
    """

    def __init__(self, proc: subprocess.Popen[bytes], master_fd: int) -> None:
        super().__init__(proc)
        self._master_fd = master_fd
        self._master_closed = False

    @property
    def kind(self) -> str:
        return "pty"

    @classmethod
    def spawn(cls, *, argv: list[str], cwd: Path, env: Mapping[str, str]) -> "PtyTransport":
        master_fd, slave_fd = pty.openpty()
        try:
            attrs = termios.tcgetattr(slave_fd)
            attrs[3] &= ~termios.ECHO
            termios.tcsetattr(slave_fd, termios.TCSANOW, attrs)
            proc = subprocess.Popen(  # noqa: S603
                argv,
                cwd=str(cwd),
                env=dict(env),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                close_fds=True,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        return cls(proc, master_fd)

    def _streams(self) -> list[tuple[int, DataHandler]]:
        return [(self._master_fd, self._emit_data)]

    def write(self, text: str) -> None:
        data = text.encode("utf-8", errors="replace")
        with self._write_lock:
            if self._master_closed:
                raise BrokenPipeError("pty transport is closed")
            while data:
                written = os.write(self._master_fd, data)
                data = data[written:]

    def _close_streams(self) -> None:
        super()._close_streams()
        with self._write_lock:
            if self._master_closed:
                return
            self._master_closed = True
            try:
                os.close(self._master_fd)
            except OSError:
                return
