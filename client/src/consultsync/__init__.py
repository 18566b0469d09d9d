"""Realtime client for billed chat, voice and video consultation sessions."""

from .errors import (  # noqa: F401
    AckTimeoutError,
    AuthenticationError,
    ConnectionFailedError,
    ConsultSyncError,
    JoinRejectedError,
    JoinTimeoutError,
    NotConnectedError,
    SessionEndedError,
    TransportUnavailableError,
)

__version__ = "0.1.0"

__all__ = [
    "AckTimeoutError",
    "AuthenticationError",
    "ConnectionFailedError",
    "ConsultSyncError",
    "JoinRejectedError",
    "JoinTimeoutError",
    "NotConnectedError",
    "SessionEndedError",
    "TransportUnavailableError",
    "__version__",
]
