"""Per-session scope bundling every component bound to one consultation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Set

from app.config import Settings, get_settings
from app.models.enums import ConnectionPhase, NoticeKind, RecoveryTrigger
from app.schemas.events import JoinAck
from app.services.session_status import SessionStatusProbe

from ..realtime.connection import ConnectionManager, Subscription
from ..voice.signaling import MediaCapability, SignalingRelay
from .coordinator import NoticeListener, RoomSessionCoordinator
from .messages import MessageSyncEngine
from .models import Message, Session, SessionNotice, TimerState
from .timer import TimerSync
from .typing import TypingIndicator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionSnapshot:
    """Read-only view handed to the presentation layer."""

    session: Session
    phase: ConnectionPhase
    messages: list[Message]
    timer: TimerState
    elapsed_seconds: float
    remaining_seconds: float | None
    counterpart_typing: bool


class ConsultationSession:
    """Owns the coordinator, message engine, timer and relay of one session.

    Components are created against the shared connection manager and torn
    down together by :meth:`close`. The relay only exists for voice and video
    sessions that were given a media capability.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        session: Session,
        *,
        settings: Settings | None = None,
        media: MediaCapability | None = None,
        status_probe: SessionStatusProbe | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._connection = connection
        self._session = session
        self.typing = TypingIndicator(settings.typing_ttl_seconds)
        self.messages = MessageSyncEngine.from_settings(connection, session, settings, typing=self.typing)
        self.timer = TimerSync.from_settings(connection, session, settings, clock=clock)
        self.coordinator = RoomSessionCoordinator.from_settings(
            connection,
            session,
            settings,
            messages=self.messages,
            timer=self.timer,
            status_probe=status_probe,
        )
        self.relay: SignalingRelay | None = None
        if session.has_media and media is not None:
            self.relay = SignalingRelay.from_settings(
                connection, session, media, settings, on_failure=self._on_media_failure
            )
        self._subscriptions: list[Subscription] = []
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._started = False
        self._closed = False

    @property
    def session(self) -> Session:
        return self._session

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.messages.start()
        self.timer.start()
        self.coordinator.start()
        if self.relay is not None:
            self.relay.start()
        self._subscriptions = [
            self.coordinator.subscribe(self._on_notice),
            self.timer.on_budget_exhausted(self._on_budget_exhausted),
        ]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.relay is not None:
            await self.relay.close()
        await self.coordinator.close()
        await self.messages.close()
        await self.timer.close()
        logger.debug("Session scope closed", extra={"booking_id": self._session.booking_id})

    async def __aenter__(self) -> "ConsultationSession":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Presentation contract
    # ------------------------------------------------------------------
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session=self._session,
            phase=self._connection.phase,
            messages=self.messages.messages,
            timer=self.timer.state,
            elapsed_seconds=self.timer.elapsed(),
            remaining_seconds=self.timer.remaining(),
            counterpart_typing=self.typing.is_anyone_typing,
        )

    def subscribe(self, listener: NoticeListener) -> Subscription:
        return self.coordinator.subscribe(listener)

    async def join(self) -> JoinAck | None:
        return await self.coordinator.join()

    async def send(self, content: str) -> Message:
        return await self.messages.send(content)

    async def resend(self, message_id: str) -> Message:
        return await self.messages.resend(message_id)

    async def mark_read(self, message_id: str) -> bool:
        return await self.messages.mark_read(message_id)

    async def set_typing(self, is_typing: bool) -> bool:
        return await self.messages.set_typing(is_typing)

    async def end_session(self, reason: str | None = None) -> bool:
        return await self.coordinator.end_session(reason)

    async def refresh(self) -> bool:
        """Manual pull-to-refresh style recovery."""

        return await self.messages.request_recovery(RecoveryTrigger.MANUAL)

    async def handle_foreground(self) -> None:
        await self._connection.handle_foreground()
        await self.messages.request_recovery(RecoveryTrigger.FOREGROUND)

    def handle_background(self) -> None:
        self._connection.handle_background()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _on_notice(self, notice: SessionNotice) -> None:
        if notice.kind is NoticeKind.ENDED and self.relay is not None:
            task = asyncio.create_task(self.relay.close(), name="consultsync-relay-close")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _on_budget_exhausted(self, elapsed: float) -> None:
        self.coordinator.notify(
            NoticeKind.BUDGET_EXHAUSTED,
            detail="budget_exhausted",
            data={"elapsed_seconds": elapsed},
        )

    def _on_media_failure(self, reason: str) -> None:
        self.coordinator.notify(NoticeKind.STATUS, detail=reason, blocking=True)


__all__ = ["ConsultationSession", "SessionSnapshot"]
