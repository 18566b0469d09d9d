"""Wire schemas for realtime events exchanged with the consultation server.

Every inbound event name maps to exactly one model in :data:`INBOUND_EVENTS`,
so the set of events the client understands is closed: frames with an
unknown name or a payload that fails validation are rejected at the
transport boundary instead of leaking loose dictionaries into the session
components. Outbound events carry their wire name on the class and are
serialised with camelCase keys through :meth:`OutboundEvent.dump`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Dict, Mapping, Union

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from app.models.enums import MessageStatus, SessionKind, SignalType

logger = logging.getLogger(__name__)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class WireModel(BaseModel):
    """Base model using camelCase keys on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


class UnknownEventError(ValueError):
    """Raised when an inbound frame names an event outside the closed set."""

    def __init__(self, event: str) -> None:
        super().__init__(f"Unknown realtime event '{event}'")
        self.event = event


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


class InboundEvent(WireModel):
    event_name: ClassVar[str]


class SessionStarted(InboundEvent):
    event_name: ClassVar[str] = "session_started"

    booking_id: str
    session_id: str | None = None
    started_at: UtcDatetime | None = None


class SessionEnded(InboundEvent):
    event_name: ClassVar[str] = "session_ended"

    booking_id: str
    session_id: str | None = None
    reason: str | None = None
    ended_by: str | None = None
    ended_at: UtcDatetime | None = None


class ParticipantJoined(InboundEvent):
    event_name: ClassVar[str] = "participant_joined"

    booking_id: str
    user_id: str | None = None
    role: str | None = None


class ReceiveMessage(InboundEvent):
    """Chat message pushed by the server (live or as part of recovery)."""

    event_name: ClassVar[str] = "receive_message"

    id: str = Field(validation_alias=AliasChoices("id", "_id", "messageId"))
    content: str = Field(validation_alias=AliasChoices("content", "message", "text"))
    sender_id: str = Field(validation_alias=AliasChoices("senderId", "sender_id", "sender"))
    timestamp: UtcDatetime = Field(validation_alias=AliasChoices("timestamp", "createdAt"))
    booking_id: str | None = None
    session_id: str | None = None

    @field_validator("id")
    @classmethod
    def reject_blank_identifier(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message id must not be blank")
        return value


class MessageStatusUpdate(InboundEvent):
    event_name: ClassVar[str] = "message_status_update"

    message_id: str = Field(validation_alias=AliasChoices("messageId", "message_id", "id"))
    status: MessageStatus
    booking_id: str | None = None

    @field_validator("status")
    @classmethod
    def only_delivery_progress(cls, value: MessageStatus) -> MessageStatus:
        if value not in (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ):
            raise ValueError(f"status '{value.value}' cannot be pushed by the server")
        return value


class TypingStarted(InboundEvent):
    event_name: ClassVar[str] = "typing_started"

    booking_id: str
    user_id: str | None = None


class TypingStopped(InboundEvent):
    event_name: ClassVar[str] = "typing_stopped"

    booking_id: str
    user_id: str | None = None


class SessionTimerUpdate(InboundEvent):
    event_name: ClassVar[str] = "session_timer_update"

    booking_id: str
    elapsed: float = Field(ge=0, validation_alias=AliasChoices("elapsed", "elapsedSeconds"))
    budget: float | None = Field(
        default=None, ge=0, validation_alias=AliasChoices("budget", "budgetSeconds")
    )
    sequence: int | None = None


class SignalReceived(InboundEvent):
    event_name: ClassVar[str] = "signal"

    signal: Dict[str, Any]
    session_id: str | None = None
    booking_id: str | None = None
    sender: str | None = Field(default=None, validation_alias=AliasChoices("from", "sender"))


class StartVoiceCall(InboundEvent):
    event_name: ClassVar[str] = "start_voice_call"

    booking_id: str | None = None
    session_id: str | None = None


class IceRestartInitiated(InboundEvent):
    event_name: ClassVar[str] = "ice_restart_initiated"

    booking_id: str | None = None
    session_id: str | None = None


InboundEventType = Union[
    SessionStarted,
    SessionEnded,
    ParticipantJoined,
    ReceiveMessage,
    MessageStatusUpdate,
    TypingStarted,
    TypingStopped,
    SessionTimerUpdate,
    SignalReceived,
    StartVoiceCall,
    IceRestartInitiated,
]

INBOUND_EVENTS: dict[str, type[InboundEvent]] = {
    model.event_name: model
    for model in (
        SessionStarted,
        SessionEnded,
        ParticipantJoined,
        ReceiveMessage,
        MessageStatusUpdate,
        TypingStarted,
        TypingStopped,
        SessionTimerUpdate,
        SignalReceived,
        StartVoiceCall,
        IceRestartInitiated,
    )
}

# Frames the transport consumes itself and never dispatches.
CONTROL_EVENTS = frozenset({"ack", "pong"})


def parse_inbound(event: str, data: Any) -> InboundEvent:
    """Validate an inbound frame into its schema.

    Raises :class:`UnknownEventError` for names outside the closed set and
    :class:`pydantic.ValidationError` for malformed payloads.
    """

    model = INBOUND_EVENTS.get(event)
    if model is None:
        raise UnknownEventError(event)
    return model.model_validate(data if data is not None else {})


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------


class OutboundEvent(WireModel):
    event_name: ClassVar[str]

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class JoinRoom(OutboundEvent):
    event_name: ClassVar[str] = "join_room"

    room_id: str
    booking_id: str
    session_id: str
    user_id: str
    kind: SessionKind


class LeaveRoom(OutboundEvent):
    event_name: ClassVar[str] = "leave_room"

    room_id: str
    booking_id: str


class SendMessage(OutboundEvent):
    event_name: ClassVar[str] = "send_message"

    id: str
    booking_id: str
    session_id: str
    content: str
    sender_id: str
    timestamp: UtcDatetime


class GetMissedMessages(OutboundEvent):
    event_name: ClassVar[str] = "get_missed_messages"

    booking_id: str
    session_id: str
    since: UtcDatetime | None = None


class MarkMessageRead(OutboundEvent):
    event_name: ClassVar[str] = "message_read"

    message_id: str
    booking_id: str


class StartTyping(OutboundEvent):
    event_name: ClassVar[str] = "typing_started"

    booking_id: str
    user_id: str


class StopTyping(OutboundEvent):
    event_name: ClassVar[str] = "typing_stopped"

    booking_id: str
    user_id: str


class SyncSessionTimer(OutboundEvent):
    event_name: ClassVar[str] = "sync_session_timer"

    booking_id: str
    session_id: str


class EndSession(OutboundEvent):
    event_name: ClassVar[str] = "end_session"

    booking_id: str
    session_id: str
    reason: str | None = None
    ended_by: str | None = None


class SignalPayload(WireModel):
    type: SignalType
    payload: Dict[str, Any]


class SendSignal(OutboundEvent):
    event_name: ClassVar[str] = "signal"

    session_id: str
    booking_id: str
    signal: SignalPayload
    to: str


class RequestIceRestart(OutboundEvent):
    event_name: ClassVar[str] = "ice_restart_request"

    session_id: str
    booking_id: str
    to: str
    reason: str = "ice_failed"


class Ping(OutboundEvent):
    event_name: ClassVar[str] = "ping"

    timestamp: float


# ---------------------------------------------------------------------------
# Acknowledgments
# ---------------------------------------------------------------------------


class AckResponse(WireModel):
    success: bool = False
    message: str | None = None
    code: str | None = None


class SessionData(WireModel):
    status: str | None = None
    session_id: str | None = None
    started_at: UtcDatetime | None = None
    elapsed: float | None = Field(default=None, ge=0)
    budget: float | None = Field(default=None, ge=0)


class JoinAck(AckResponse):
    session_data: SessionData | None = None

    @property
    def session_has_ended(self) -> bool:
        if self.code == "session_ended":
            return True
        return self.session_data is not None and self.session_data.status == "ended"

    @property
    def session_is_active(self) -> bool:
        return self.session_data is not None and self.session_data.status == "active"


class MissedMessagesResponse(WireModel):
    """Recovery response; items are validated individually."""

    messages: list[Any] = Field(default_factory=list)

    @field_validator("messages", mode="before")
    @classmethod
    def coerce_messages(cls, value: Any) -> Any:
        return [] if value is None else value

    def valid_messages(self) -> list[ReceiveMessage]:
        valid: list[ReceiveMessage] = []
        for item in self.messages:
            if not isinstance(item, Mapping):
                logger.warning("Discarded non-object recovered message")
                continue
            try:
                valid.append(ReceiveMessage.model_validate(item))
            except ValidationError as exc:
                logger.warning(
                    "Discarded malformed recovered message",
                    extra={"errors": exc.error_count()},
                )
        return valid


class SessionStatusResponse(WireModel):
    """Body returned by the HTTP session status endpoint."""

    status: str
    elapsed: float | None = Field(default=None, ge=0)
    budget: float | None = Field(default=None, ge=0)

    @property
    def has_ended(self) -> bool:
        return self.status.strip().lower() in {"ended", "completed", "cancelled"}


__all__ = [
    "AckResponse",
    "CONTROL_EVENTS",
    "EndSession",
    "GetMissedMessages",
    "INBOUND_EVENTS",
    "IceRestartInitiated",
    "InboundEvent",
    "InboundEventType",
    "JoinAck",
    "JoinRoom",
    "LeaveRoom",
    "MarkMessageRead",
    "MessageStatusUpdate",
    "MissedMessagesResponse",
    "OutboundEvent",
    "ParticipantJoined",
    "Ping",
    "ReceiveMessage",
    "RequestIceRestart",
    "SendMessage",
    "SendSignal",
    "SessionData",
    "SessionEnded",
    "SessionStarted",
    "SessionStatusResponse",
    "SessionTimerUpdate",
    "SignalPayload",
    "SignalReceived",
    "StartTyping",
    "StartVoiceCall",
    "StopTyping",
    "SyncSessionTimer",
    "TypingStarted",
    "TypingStopped",
    "UnknownEventError",
    "parse_inbound",
    "WireModel",
]
