"""In-memory records describing one consultation session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.models.enums import (
    MESSAGE_STATUS_RANK,
    MessageStatus,
    NoticeKind,
    SenderRole,
    SessionKind,
    SessionStatus,
)


def room_id_for(booking_id: str) -> str:
    """Derive the server room identifier for a booking."""

    return f"room:{booking_id}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Session:
    session_id: str
    booking_id: str
    kind: SessionKind = SessionKind.CHAT
    status: SessionStatus = SessionStatus.PENDING
    billing_rate: float | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None
    ended_by: str | None = None
    counterpart_present: bool = False

    @property
    def room_id(self) -> str:
        return room_id_for(self.booking_id)

    @property
    def is_ended(self) -> bool:
        return self.status is SessionStatus.ENDED

    @property
    def has_media(self) -> bool:
        return self.kind in (SessionKind.VOICE, SessionKind.VIDEO)


@dataclass(slots=True)
class Message:
    id: str
    content: str
    sender_id: str
    sender_role: SenderRole
    timestamp: datetime
    status: MessageStatus
    recovered: bool = False

    @property
    def is_own(self) -> bool:
        return self.sender_role is SenderRole.USER

    @property
    def is_confirmed(self) -> bool:
        """True once the server is known to hold this message."""

        return self.status not in (MessageStatus.SENDING, MessageStatus.FAILED)

    def advance_status(self, status: MessageStatus) -> bool:
        """Move an own message forward along sending→sent→delivered→read.

        Returns ``False`` when the update would move backwards or does not
        apply to this message.
        """

        if not self.is_own:
            return False
        if self.status is MessageStatus.FAILED and status is not MessageStatus.FAILED:
            # The server holds it after all.
            self.status = status
            return True
        current = MESSAGE_STATUS_RANK.get(self.status)
        target = MESSAGE_STATUS_RANK.get(status)
        if current is None or target is None or target <= current:
            return False
        self.status = status
        return True


@dataclass(slots=True)
class TimerState:
    elapsed_seconds: float = 0.0
    budget_seconds: float | None = None
    is_active: bool = False
    server_baseline_at: float | None = None
    sequence: int | None = None
    authoritative: bool = False


@dataclass(slots=True)
class SessionNotice:
    """Something the presentation layer should show or react to."""

    kind: NoticeKind
    session: Session
    detail: str | None = None
    blocking: bool = False
    data: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "Message",
    "Session",
    "SessionNotice",
    "TimerState",
    "room_id_for",
    "utcnow",
]
