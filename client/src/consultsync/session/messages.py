"""Message log and the engine keeping it in sync with the server.

Outgoing messages are echoed into the log immediately with status
``sending`` and settle to ``sent`` or ``failed`` once the server
acknowledges (or does not). Inbound messages pass a two tier duplicate
test before they are appended:

* identical message id, or
* identical content and sender with timestamps closer than a tolerance.

Live events use a short tolerance while recovered history uses a longer
one, because server timestamps of replayed messages can drift from the
optimistic local echo. Failed local messages only take part in the id tier
so a retried message is never swallowed by its failed predecessor.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterator, Set

from app.config import Settings
from app.models.enums import MessageStatus, RecoveryTrigger, SenderRole
from app.monitoring.metrics import message_dedup_total, message_sends_total, recovery_requests_total
from app.schemas.events import (
    GetMissedMessages,
    MarkMessageRead,
    MessageStatusUpdate,
    MissedMessagesResponse,
    ReceiveMessage,
    SendMessage,
    StartTyping,
    StopTyping,
    TypingStarted,
    TypingStopped,
)

from ..errors import AckTimeoutError, SessionEndedError, TransportUnavailableError
from ..realtime.connection import ConnectionManager, Subscription
from .models import Message, Session, utcnow
from .typing import TypingIndicator

logger = logging.getLogger(__name__)

LogListener = Callable[[list[Message]], None]

ID_TIER = "id"
CONTENT_TIER = "content"

_BACKGROUND_TRIGGERS = frozenset({RecoveryTrigger.FOREGROUND, RecoveryTrigger.BACKGROUND})


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


class MessageLog:
    """Ordered message history with id lookup."""

    def __init__(self) -> None:
        self._entries: list[Message] = []
        self._by_id: Dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._entries))

    def get(self, message_id: str) -> Message | None:
        return self._by_id.get(message_id)

    def snapshot(self) -> list[Message]:
        return list(self._entries)

    def append(self, message: Message) -> None:
        self._entries.append(message)
        self._by_id[message.id] = message

    def alias(self, message_id: str, message: Message) -> None:
        """Make ``message`` reachable under a second (server assigned) id."""

        self._by_id.setdefault(message_id, message)

    def sort(self) -> None:
        self._entries.sort(key=lambda item: item.timestamp)

    def find_duplicate(
        self,
        message_id: str,
        content: str,
        sender_id: str,
        timestamp: datetime,
        tolerance: float,
        *,
        recovered_tolerance: float | None = None,
    ) -> tuple[Message | None, str | None]:
        """Find an entry matching by id, or by content and sender near ``timestamp``.

        Entries that arrived through recovery are compared with
        ``recovered_tolerance`` (when given) so the outcome does not depend on
        which copy arrived first.
        """

        existing = self._by_id.get(message_id)
        if existing is not None:
            return existing, ID_TIER
        for entry in self._entries:
            if entry.status is MessageStatus.FAILED:
                continue
            if entry.content != content or entry.sender_id != sender_id:
                continue
            window = tolerance
            if entry.recovered and recovered_tolerance is not None:
                window = max(window, recovered_tolerance)
            if abs((entry.timestamp - timestamp).total_seconds()) < window:
                return entry, CONTENT_TIER
        return None, None

    def latest_confirmed_timestamp(self) -> datetime | None:
        confirmed = [entry.timestamp for entry in self._entries if entry.is_confirmed]
        return max(confirmed) if confirmed else None

    def with_status(self, status: MessageStatus) -> list[Message]:
        return [entry for entry in self._entries if entry.status is status]


class MessageSyncEngine:
    """Keeps the local message log consistent with the server for one session."""

    def __init__(
        self,
        connection: ConnectionManager,
        session: Session,
        *,
        ack_timeout: float = 5.0,
        recovery_timeout: float = 10.0,
        recovery_min_interval: float = 5.0,
        recovery_background_min_interval: float = 30.0,
        recovery_replay_delay: float = 1.0,
        live_tolerance: float = 5.0,
        recovery_tolerance: float = 30.0,
        typing: TypingIndicator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connection = connection
        self._session = session
        self._user_id = connection.user_id
        self._ack_timeout = ack_timeout
        self._recovery_timeout = recovery_timeout
        self._recovery_min_interval = recovery_min_interval
        self._recovery_background_min_interval = recovery_background_min_interval
        self._recovery_replay_delay = recovery_replay_delay
        self._live_tolerance = live_tolerance
        self._recovery_tolerance = recovery_tolerance
        self._typing = typing or TypingIndicator(5.0)
        self._clock = clock
        self._log = MessageLog()
        self._listeners: list[LogListener] = []
        self._subscriptions: list[Subscription] = []
        self._tasks: Set[asyncio.Task[None]] = set()
        self._recovery_in_flight = False
        self._queued_trigger: RecoveryTrigger | None = None
        self._last_recovery_at: float | None = None
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        connection: ConnectionManager,
        session: Session,
        settings: Settings,
        *,
        typing: TypingIndicator | None = None,
    ) -> "MessageSyncEngine":
        return cls(
            connection,
            session,
            ack_timeout=settings.message_ack_timeout_seconds,
            recovery_timeout=settings.recovery_timeout_seconds,
            recovery_min_interval=settings.recovery_min_interval_seconds,
            recovery_background_min_interval=settings.recovery_background_min_interval_seconds,
            recovery_replay_delay=settings.recovery_replay_delay_seconds,
            live_tolerance=settings.dedup_live_tolerance_seconds,
            recovery_tolerance=settings.dedup_recovery_tolerance_seconds,
            typing=typing or TypingIndicator(settings.typing_ttl_seconds),
        )

    @property
    def messages(self) -> list[Message]:
        return self._log.snapshot()

    @property
    def log(self) -> MessageLog:
        return self._log

    @property
    def typing(self) -> TypingIndicator:
        return self._typing

    @property
    def recovery_in_flight(self) -> bool:
        return self._recovery_in_flight

    def start(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self._connection.on(ReceiveMessage, self._on_receive_message),
            self._connection.on(MessageStatusUpdate, self._on_status_update),
            self._connection.on(TypingStarted, self._on_typing_started),
            self._connection.on(TypingStopped, self._on_typing_stopped),
        ]

    async def close(self) -> None:
        self._closed = True
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        self._listeners.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def subscribe(self, listener: LogListener) -> Subscription:
        self._listeners.append(listener)

        def cleanup() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription("messages", cleanup)

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------
    async def send(self, content: str) -> Message:
        """Echo ``content`` into the log and deliver it to the server.

        The returned message is already in the log; its status settles to
        ``sent`` on a positive acknowledgment and ``failed`` otherwise. Failed
        messages are not retried automatically, see :meth:`resend`.
        """

        if not content or not content.strip():
            raise ValueError("Message content must not be empty")
        if self._session.is_ended:
            raise SessionEndedError("Cannot send messages after the session has ended")

        message = Message(
            id=new_message_id(),
            content=content,
            sender_id=self._user_id,
            sender_role=SenderRole.USER,
            timestamp=utcnow(),
            status=MessageStatus.SENDING,
        )
        self._log.append(message)
        self._notify()

        if not self._connection.is_connected:
            self._settle(message, MessageStatus.FAILED, "not_connected")
            return message

        event = SendMessage(
            id=message.id,
            booking_id=self._session.booking_id,
            session_id=self._session.session_id,
            content=message.content,
            sender_id=message.sender_id,
            timestamp=message.timestamp,
        )
        try:
            ack = await self._connection.request(event, timeout=self._ack_timeout)
        except AckTimeoutError:
            logger.info("Message acknowledgment timed out", extra={"message_id": message.id})
            self._settle(message, MessageStatus.FAILED, "timeout")
        except TransportUnavailableError:
            logger.info(
                "Message could not be delivered",
                extra={"message_id": message.id},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._settle(message, MessageStatus.FAILED, "transport_error")
        else:
            if ack.success:
                self._settle(message, MessageStatus.SENT, "sent")
            else:
                logger.info(
                    "Message rejected by server",
                    extra={"message_id": message.id, "reason": ack.message},
                )
                self._settle(message, MessageStatus.FAILED, "rejected")
        return message

    async def resend(self, message_id: str) -> Message:
        """Retry a failed message as a new message; the failed entry stays."""

        original = self._log.get(message_id)
        if original is None or not original.is_own:
            raise KeyError(message_id)
        if original.status is not MessageStatus.FAILED:
            raise ValueError(f"Message '{message_id}' has not failed")
        return await self.send(original.content)

    async def mark_read(self, message_id: str) -> bool:
        message = self._log.get(message_id)
        if message is None or message.is_own:
            return False
        try:
            await self._connection.emit(
                MarkMessageRead(message_id=message.id, booking_id=self._session.booking_id)
            )
        except TransportUnavailableError:
            logger.debug("Read receipt not sent", extra={"message_id": message_id})
            return False
        return True

    async def set_typing(self, is_typing: bool) -> bool:
        model = StartTyping if is_typing else StopTyping
        try:
            await self._connection.emit(model(booking_id=self._session.booking_id, user_id=self._user_id))
        except TransportUnavailableError:
            return False
        return True

    def fail_pending(self) -> int:
        pending = self._log.with_status(MessageStatus.SENDING)
        for message in pending:
            message.status = MessageStatus.FAILED
            message_sends_total.labels("session_ended").inc()
        if pending:
            self._notify()
        return len(pending)

    def _settle(self, message: Message, status: MessageStatus, outcome: str) -> None:
        message_sends_total.labels(outcome).inc()
        if self._closed or message.status is not MessageStatus.SENDING:
            return
        message.status = status
        self._notify()

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------
    def ingest(self, event: ReceiveMessage, *, recovered: bool = False) -> Message | None:
        """Apply an inbound message; return the new entry or ``None`` for duplicates."""

        if event.booking_id is not None and event.booking_id != self._session.booking_id:
            logger.debug("Ignored message for another booking", extra={"booking_id": event.booking_id})
            return None
        source = "recovery" if recovered else "live"
        tolerance = self._recovery_tolerance if recovered else self._live_tolerance
        existing, tier = self._log.find_duplicate(
            event.id, event.content, event.sender_id, event.timestamp, tolerance,
            recovered_tolerance=self._recovery_tolerance,
        )
        if existing is not None:
            message_dedup_total.labels(tier, source).inc()
            if existing.id != event.id:
                self._log.alias(event.id, existing)
            if existing.is_own and not existing.is_confirmed and existing.advance_status(MessageStatus.SENT):
                self._notify()
            return None

        own = event.sender_id == self._user_id
        message = Message(
            id=event.id,
            content=event.content,
            sender_id=event.sender_id,
            sender_role=SenderRole.USER if own else SenderRole.COUNTERPART,
            timestamp=event.timestamp,
            status=MessageStatus.SENT if own else MessageStatus.RECEIVED,
            recovered=recovered,
        )
        self._log.append(message)
        if not own:
            self._typing.clear(event.sender_id)
        return message

    def _on_receive_message(self, event: ReceiveMessage) -> None:
        if self._closed:
            return
        if self.ingest(event) is not None:
            self._notify()

    def _on_status_update(self, event: MessageStatusUpdate) -> None:
        if event.booking_id is not None and event.booking_id != self._session.booking_id:
            return
        message = self._log.get(event.message_id)
        if message is None:
            logger.debug("Status update for unknown message", extra={"message_id": event.message_id})
            return
        if message.advance_status(event.status):
            self._notify()

    def _on_typing_started(self, event: TypingStarted) -> None:
        self._apply_typing(event.booking_id, event.user_id, True)

    def _on_typing_stopped(self, event: TypingStopped) -> None:
        self._apply_typing(event.booking_id, event.user_id, False)

    def _apply_typing(self, booking_id: str, user_id: str | None, is_typing: bool) -> None:
        if booking_id != self._session.booking_id or user_id == self._user_id:
            return
        self._typing.set_status(user_id or "counterpart", is_typing)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    async def request_recovery(self, trigger: RecoveryTrigger, *, force: bool = False) -> bool:
        """Fetch messages missed while disconnected.

        Only one request is ever in flight. Triggers arriving meanwhile are
        coalesced: the latest one is replayed (bypassing the rate limit) once
        the current request completes. Returns whether a request was issued.
        """

        if self._closed:
            return False
        if self._recovery_in_flight:
            self._queued_trigger = trigger
            recovery_requests_total.labels(trigger, "queued").inc()
            return False

        now = self._clock()
        if not force and self._last_recovery_at is not None:
            interval = (
                self._recovery_background_min_interval
                if trigger in _BACKGROUND_TRIGGERS
                else self._recovery_min_interval
            )
            if now - self._last_recovery_at < interval:
                recovery_requests_total.labels(trigger, "rate_limited").inc()
                logger.debug("Recovery rate limited", extra={"trigger": trigger.value})
                return False

        if not self._connection.is_connected:
            recovery_requests_total.labels(trigger, "skipped").inc()
            return False

        self._recovery_in_flight = True
        self._last_recovery_at = now
        recovery_requests_total.labels(trigger, "issued").inc()
        try:
            await self._fetch_missed(trigger)
        finally:
            self._recovery_in_flight = False
            queued, self._queued_trigger = self._queued_trigger, None
            if queued is not None and not self._closed:
                self._spawn(self._replay(queued), name="consultsync-recovery-replay")
        return True

    async def _fetch_missed(self, trigger: RecoveryTrigger) -> None:
        request = GetMissedMessages(
            booking_id=self._session.booking_id,
            session_id=self._session.session_id,
            since=self._log.latest_confirmed_timestamp(),
        )
        try:
            response = await self._connection.request(
                request, timeout=self._recovery_timeout, response_model=MissedMessagesResponse
            )
        except AckTimeoutError:
            recovery_requests_total.labels(trigger, "timeout").inc()
            logger.warning("Missed message recovery timed out", extra={"trigger": trigger.value})
            return
        except TransportUnavailableError:
            recovery_requests_total.labels(trigger, "failed").inc()
            logger.info(
                "Missed message recovery failed",
                extra={"trigger": trigger.value},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        if self._closed:
            return

        added = 0
        for item in response.valid_messages():
            if self.ingest(item, recovered=True) is not None:
                added += 1
        self._log.sort()
        logger.info(
            "Missed message recovery merged",
            extra={"trigger": trigger.value, "received": len(response.messages), "added": added},
        )
        if added:
            self._notify()

    async def _replay(self, trigger: RecoveryTrigger) -> None:
        if self._recovery_replay_delay:
            await asyncio.sleep(self._recovery_replay_delay)
        if self._closed:
            return
        await self.request_recovery(trigger, force=True)

    def _spawn(self, coro, *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _notify(self) -> None:
        if self._closed or not self._listeners:
            return
        snapshot = self._log.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Message log listener failed")


__all__ = [
    "CONTENT_TIER",
    "ID_TIER",
    "MessageLog",
    "MessageSyncEngine",
    "new_message_id",
]
