from __future__ import annotations

from enum import Enum


class SessionKind(str, Enum):
    """Consultation medium negotiated for a booking."""

    CHAT = "chat"
    VOICE = "voice"
    VIDEO = "video"


class SessionStatus(str, Enum):
    """Lifecycle of a consultation session as seen by the client."""

    PENDING = "pending"
    JOINING = "joining"
    ACTIVE = "active"
    ENDED = "ended"


class ConnectionPhase(str, Enum):
    """Phases of the shared realtime connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class MessageStatus(str, Enum):
    """Delivery state of a chat message."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    RECEIVED = "received"


# Forward-only ordering for outgoing messages; FAILED and RECEIVED sit outside it.
MESSAGE_STATUS_RANK = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


class SenderRole(str, Enum):
    """Which side of the consultation authored a message."""

    USER = "user"
    COUNTERPART = "counterpart"


class SignalType(str, Enum):
    """WebRTC call-setup payload kinds relayed over the socket."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class SignalDirection(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class RecoveryTrigger(str, Enum):
    """Reason a missed-message recovery was requested."""

    JOIN = "join"
    RECONNECT = "reconnect"
    FOREGROUND = "foreground"
    BACKGROUND = "background"
    MANUAL = "manual"


class NoticeKind(str, Enum):
    """Session notices surfaced to the presentation layer."""

    STATUS = "status"
    COUNTERPART_JOINED = "counterpart_joined"
    JOIN_FAILED = "join_failed"
    RECONNECTING = "reconnecting"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ENDED = "ended"
