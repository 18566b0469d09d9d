"""Pydantic schemas for realtime wire payloads."""

from .events import (
    INBOUND_EVENTS,
    AckResponse,
    InboundEvent,
    JoinAck,
    MissedMessagesResponse,
    OutboundEvent,
    SessionStatusResponse,
    UnknownEventError,
    parse_inbound,
)

__all__ = [
    "INBOUND_EVENTS",
    "AckResponse",
    "InboundEvent",
    "JoinAck",
    "MissedMessagesResponse",
    "OutboundEvent",
    "SessionStatusResponse",
    "UnknownEventError",
    "parse_inbound",
]
