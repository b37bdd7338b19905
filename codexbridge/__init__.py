from .config import BridgeConfig
from .errors import (
    BridgeError,
    CooldownActive,
    ProcessExited,
    StartupFailure,
    TurnAborted,
    TurnTimeout,
    UnknownFailure,
    UpstreamFailure,
    ValidationError,
)
from .manager import SessionManager
from .session import ExitInfo, SessionStatus, StartResult, StopResult, TurnResult
from .transports import TransportFactory

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "CooldownActive",
    "ExitInfo",
    "ProcessExited",
    "SessionManager",
    "SessionStatus",
    "StartResult",
    "StartupFailure",
    "StopResult",
    "TransportFactory",
    "TurnAborted",
    "TurnResult",
    "TurnTimeout",
    "UnknownFailure",
    "UpstreamFailure",
    "ValidationError",
]
