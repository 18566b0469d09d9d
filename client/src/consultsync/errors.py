"""Exception hierarchy shared by the realtime and session components."""

from __future__ import annotations


class ConsultSyncError(RuntimeError):
    """Base class for every error raised by consultsync."""


# Transport -----------------------------------------------------------------


class TransportUnavailableError(ConsultSyncError):
    """Raised when the underlying socket cannot carry a frame."""


class NotConnectedError(TransportUnavailableError):
    """Raised when emitting while the connection phase is not ``connected``."""


class ConnectionFailedError(ConsultSyncError):
    """Raised by an explicit ``connect()`` when the attempt fails or times out."""


class AckTimeoutError(ConsultSyncError, TimeoutError):
    """Raised when an acknowledgment does not arrive in time."""

    def __init__(self, event: str, timeout: float) -> None:
        super().__init__(f"No acknowledgment for '{event}' within {timeout:.1f}s")
        self.event = event
        self.timeout = timeout


# Protocol ------------------------------------------------------------------


class AuthenticationError(ConsultSyncError):
    """Raised when the server rejects the credentials during the handshake."""


class JoinRejectedError(ConsultSyncError):
    """Raised when the server refuses a room join."""

    def __init__(self, message: str | None, code: str | None = None) -> None:
        super().__init__(message or "Join rejected by server")
        self.code = code


class JoinTimeoutError(ConsultSyncError, TimeoutError):
    """Raised when the join acknowledgment does not arrive in time."""


# Lifecycle -----------------------------------------------------------------


class SessionEndedError(ConsultSyncError):
    """Raised when an operation targets a session that has already ended."""


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
]
