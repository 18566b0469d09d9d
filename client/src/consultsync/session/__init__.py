"""Session scoped components: room coordination, messages, timer and typing."""

from .coordinator import RoomSessionCoordinator  # noqa: F401
from .messages import MessageLog, MessageSyncEngine  # noqa: F401
from .models import Message, Session, SessionNotice, TimerState, room_id_for  # noqa: F401
from .timer import TimerSync  # noqa: F401
from .typing import TypingIndicator  # noqa: F401

__all__ = [
    "Message",
    "MessageLog",
    "MessageSyncEngine",
    "RoomSessionCoordinator",
    "Session",
    "SessionNotice",
    "TimerState",
    "TimerSync",
    "TypingIndicator",
    "room_id_for",
]
