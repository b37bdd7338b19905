from .base import Disposable, INTERRUPT_BYTE, Transport
from .factory import TransportFactory
from .pipe_transport import OneShotTransport, PipeTransport
from .pty_transport import PtyTransport

__all__ = [
    "Disposable",
    "INTERRUPT_BYTE",
    "OneShotTransport",
    "PipeTransport",
    "PtyTransport",
    "Transport",
    "TransportFactory",
]
