"""Shared realtime connection: transport, reconnects and event dispatch."""

from .connection import (  # noqa: F401
    ConnectionManager,
    ConnectionState,
    ReconnectPolicy,
    Subscription,
)
from .credentials import CredentialStore, StaticCredentials  # noqa: F401
from .transport import Transport, WebSocketTransport  # noqa: F401

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "CredentialStore",
    "ReconnectPolicy",
    "StaticCredentials",
    "Subscription",
    "Transport",
    "WebSocketTransport",
]
