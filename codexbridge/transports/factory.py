from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Mapping

from ..env import build_child_env
from ..errors import StartupFailure
from .base import Transport
from .pipe_transport import OneShotTransport, PipeTransport
from .pty_transport import PtyTransport

logger = logging.getLogger(__name__)


class TransportFactory:
    """
    Hands out process transports for a working directory.

    acquire() prefers a pseudo-terminal and falls back to plain pipes. Once a
    PTY attempt fails while pipes work, PTY is not tried again for the life of
    the factory and the fallback is logged a single time.
    """

    def __init__(
        self,
        *,
        interactive_argv: list[str],
        env: Mapping[str, str] | None = None,
        prefer_pty: bool = True,
    ) -> None:
        if not interactive_argv:
            raise ValueError("interactive_argv must not be empty")
        self.interactive_argv = list(interactive_argv)
        self._env = dict(env) if env is not None else None
        self._lock = threading.Lock()
        self._pty_enabled = prefer_pty
        self._fallback_logged = False

    @property
    def pty_enabled(self) -> bool:
        with self._lock:
            return self._pty_enabled

    def child_env(self) -> dict[str, str]:
        return build_child_env(self._env)

    def acquire(self, cwd: str | Path) -> Transport:
        cwd_path = _check_cwd(cwd)
        env = self.child_env()
        pty_error: Exception | None = None
        if self.pty_enabled:
            try:
                return PtyTransport.spawn(argv=self.interactive_argv, cwd=cwd_path, env=env)
            except OSError as exc:
                pty_error = exc

        try:
            transport = PipeTransport.spawn(argv=self.interactive_argv, cwd=cwd_path, env=env)
        except OSError as exc:
            detail = f"; pty error: {pty_error}" if pty_error is not None else ""
            raise StartupFailure(f"Failed to start {self.interactive_argv[0]}: {exc}{detail}") from exc

        if pty_error is not None:
            with self._lock:
                self._pty_enabled = False
                first = not self._fallback_logged
                self._fallback_logged = True
            if first:
                logger.warning("pty unavailable, using pipe transport from now on: %s", pty_error)
        return transport

    def spawn_one_shot(self, cwd: str | Path, argv: list[str]) -> OneShotTransport:
        cwd_path = _check_cwd(cwd)
        try:
            return OneShotTransport.spawn(argv=argv, cwd=cwd_path, env=self.child_env())
        except OSError as exc:
            raise StartupFailure(f"Failed to start {argv[0] if argv else '<empty argv>'}: {exc}") from exc


def _check_cwd(cwd: str | Path) -> Path:
    path = Path(cwd).expanduser()
    if not path.is_dir():
        raise StartupFailure(f"Working directory does not exist: {path}")
    return path
