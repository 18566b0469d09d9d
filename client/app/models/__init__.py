"""Enumerations shared by the session components and wire schemas."""

from .enums import (
    ConnectionPhase,
    MessageStatus,
    NoticeKind,
    RecoveryTrigger,
    SenderRole,
    SessionKind,
    SessionStatus,
    SignalDirection,
    SignalType,
)

__all__ = [
    "ConnectionPhase",
    "MessageStatus",
    "NoticeKind",
    "RecoveryTrigger",
    "SenderRole",
    "SessionKind",
    "SessionStatus",
    "SignalDirection",
    "SignalType",
]
