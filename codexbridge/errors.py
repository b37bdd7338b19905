"""
Failure taxonomy for session operations.

Every error carries the thread id it belongs to and an optional ``details``
dict (exit code, signal, bounded output tail) for callers that relay errors
over their own transport.
"""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from .session import ExitInfo


class BridgeError(Exception):
    kind = "bridge_error"

    def __init__(self, message: str, *, thread_id: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.thread_id = thread_id
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "thread_id": self.thread_id,
            "details": dict(self.details),
        }


class ValidationError(BridgeError):
    kind = "validation"


class CooldownActive(BridgeError):
    kind = "cooldown_active"

    def __init__(self, *, thread_id: str, remaining_seconds: int, reason: str = "") -> None:
        message = f"Backend currently unavailable. Retry in ~{remaining_seconds}s."
        if reason:
            message += f" Last error: {reason}"
        super().__init__(
            message,
            thread_id=thread_id,
            details={"remaining_seconds": remaining_seconds, "reason": reason},
        )
        self.remaining_seconds = remaining_seconds
        self.reason = reason


class StartupFailure(BridgeError):
    kind = "startup_failure"


class TurnTimeout(BridgeError):
    kind = "turn_timeout"


class TurnAborted(BridgeError):
    kind = "turn_aborted"


class ProcessExited(BridgeError):
    kind = "process_exited"

    def __init__(self, message: str, *, thread_id: str = "", exit_info: ExitInfo | None = None) -> None:
        details: dict[str, Any] = {}
        if exit_info is not None:
            details = {
                "exit_code": exit_info.exit_code,
                "signal": exit_info.signal,
                "output_tail": exit_info.output_tail,
            }
        super().__init__(message, thread_id=thread_id, details=details)
        self.exit_info = exit_info


class UpstreamFailure(BridgeError):
    """Nonzero exit whose diagnostics look like an upstream connectivity problem."""

    kind = "upstream_failure"


class UnknownFailure(BridgeError):
    kind = "unknown_failure"
