"""
Child-process environment helpers.

The external CLI is often launched from service managers whose PATH lacks the
usual install locations, so standard bin directories are prepended before
spawning. The masking helpers keep secrets out of the startup log lines.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Mapping

STANDARD_PATH_ENTRIES = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
)

# Variables worth reporting when a one-shot process is spawned.
LOGGED_ENV_KEYS = ("OPENAI_API_KEY", "CODEX_HOME", "HOME", "SHELL")


def build_child_env(env: Mapping[str, str] | None = None) -> dict[str, str]:
    merged = dict(os.environ if env is None else env)
    existing = [p for p in (merged.get("PATH") or "").split(os.pathsep) if p]
    prefix = [p for p in STANDARD_PATH_ENTRIES if p not in existing]
    merged["PATH"] = os.pathsep.join(prefix + existing)
    return merged


def mask_token(value: str) -> str:
    if len(value) <= 12:
        return "***"
    return f"{value[:6]}...{value[-4:]}"


def format_env_value(value: str | None) -> str:
    if not value:
        return "missing"
    return mask_token(value)


def build_git_hint(candidates: Iterable[str], exists: Callable[[str], bool] = os.path.exists) -> str:
    found = [c for c in candidates if exists(c)]
    return ",".join(found) if found else "none"


def git_candidates(cwd: str | Path) -> list[str]:
    base = Path(cwd)
    return [str(base / ".git"), str(base.parent / ".git")]


def describe_env(env: Mapping[str, str], keys: Iterable[str] = LOGGED_ENV_KEYS) -> dict[str, str]:
    return {key: format_env_value(env.get(key)) for key in keys}
