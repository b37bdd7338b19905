from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from .failures import DEFAULT_COOLDOWN_MS, DEFAULT_NON_INTERACTIVE_PATTERNS, DEFAULT_UPSTREAM_PATTERNS

MODE_STRUCTURED = "structured"
MODE_INTERACTIVE = "interactive"

DEFAULT_COMMAND = "codex"
DEFAULT_ONE_SHOT_ARGS = (
    "--json",
    "--skip-git-repo-check",
    "--dangerously-bypass-approvals-and-sandbox",
)
DEFAULT_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_IDLE_MS = 1_200


def _env_flag(name: str, default: bool) -> bool:
    value = (os.getenv(name) or "").strip().lower()
    if not value:
        return default
    return value in {"1", "true", "yes", "on"}


def _env_positive_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_args(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(shlex.split(raw))


@dataclass
class BridgeConfig:
    mode: str = MODE_STRUCTURED
    command: str = DEFAULT_COMMAND
    interactive_args: tuple[str, ...] = ()
    one_shot_args: tuple[str, ...] = DEFAULT_ONE_SHOT_ARGS
    one_shot_json: bool = True
    workdir: str = field(default_factory=os.getcwd)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    idle_ms: int = DEFAULT_IDLE_MS
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    include_reasoning: bool = False
    upstream_patterns: tuple[str, ...] = DEFAULT_UPSTREAM_PATTERNS
    non_interactive_patterns: tuple[str, ...] = DEFAULT_NON_INTERACTIVE_PATTERNS
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.mode = (self.mode or MODE_STRUCTURED).strip().lower()
        if self.mode not in (MODE_STRUCTURED, MODE_INTERACTIVE):
            raise ValueError(f"Unsupported mode: {self.mode}")

    @property
    def interactive(self) -> bool:
        return self.mode == MODE_INTERACTIVE

    def interactive_argv(self) -> list[str]:
        return [self.command, *self.interactive_args]

    def one_shot_argv(self, prompt: str, remote_thread_id: str | None = None) -> list[str]:
        if remote_thread_id:
            return [self.command, "exec", "resume", *self.one_shot_args, remote_thread_id, prompt]
        return [self.command, "exec", *self.one_shot_args, prompt]

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        mode = (os.getenv("CODEX_BRIDGE_MODE") or MODE_STRUCTURED).strip().lower()
        if mode not in (MODE_STRUCTURED, MODE_INTERACTIVE):
            mode = MODE_STRUCTURED
        workdir = (os.getenv("CODEX_BRIDGE_WORKDIR") or "").strip() or os.getcwd()
        return cls(
            mode=mode,
            command=(os.getenv("CODEX_BRIDGE_COMMAND") or DEFAULT_COMMAND).strip() or DEFAULT_COMMAND,
            interactive_args=_env_args("CODEX_BRIDGE_INTERACTIVE_ARGS", ()),
            one_shot_args=_env_args("CODEX_BRIDGE_ONE_SHOT_ARGS", DEFAULT_ONE_SHOT_ARGS),
            one_shot_json=_env_flag("CODEX_BRIDGE_ONE_SHOT_JSON", True),
            workdir=str(Path(workdir).expanduser()),
            timeout_ms=_env_positive_int("CODEX_BRIDGE_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            idle_ms=_env_positive_int("CODEX_BRIDGE_IDLE_MS", DEFAULT_IDLE_MS),
            cooldown_ms=_env_positive_int("CODEX_BRIDGE_COOLDOWN_MS", DEFAULT_COOLDOWN_MS),
            include_reasoning=_env_flag("CODEX_BRIDGE_INCLUDE_REASONING", False),
            upstream_patterns=_env_csv("CODEX_BRIDGE_UPSTREAM_PATTERNS", DEFAULT_UPSTREAM_PATTERNS),
            non_interactive_patterns=_env_csv(
                "CODEX_BRIDGE_NON_INTERACTIVE_PATTERNS", DEFAULT_NON_INTERACTIVE_PATTERNS
            ),
            log_level=(os.getenv("CODEX_BRIDGE_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )
