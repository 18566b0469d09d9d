"""Room membership and the session lifecycle state machine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Set

from app.config import Settings
from app.models.enums import ConnectionPhase, NoticeKind, RecoveryTrigger, SessionStatus
from app.monitoring.metrics import session_transitions_total
from app.schemas.events import (
    EndSession,
    JoinAck,
    JoinRoom,
    LeaveRoom,
    ParticipantJoined,
    SessionEnded,
    SessionStarted,
)
from app.services.session_status import SessionStatusProbe

from ..errors import (
    AckTimeoutError,
    JoinRejectedError,
    JoinTimeoutError,
    SessionEndedError,
    TransportUnavailableError,
)
from ..realtime.connection import ConnectionManager, Subscription
from .messages import MessageSyncEngine
from .models import Session, SessionNotice, utcnow
from .timer import TimerSync

logger = logging.getLogger(__name__)

NoticeListener = Callable[[SessionNotice], None]


class RoomSessionCoordinator:
    """Drives ``pending → joining → active → ended`` for one session.

    The coordinator owns the join handshake. It re-issues it after every
    reconnect and follows up with one message recovery and, for active
    sessions, one timer re-sync. Only server events move a session to
    ``active`` or ``ended``; ``ended`` is terminal.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        session: Session,
        *,
        messages: MessageSyncEngine,
        timer: TimerSync,
        status_probe: SessionStatusProbe | None = None,
        join_timeout: float = 10.0,
    ) -> None:
        self._connection = connection
        self._session = session
        self._messages = messages
        self._timer = timer
        self._status_probe = status_probe
        self._join_timeout = join_timeout
        self._listeners: list[NoticeListener] = []
        self._subscriptions: list[Subscription] = []
        self._tasks: Set[asyncio.Task[None]] = set()
        self._join_lock = asyncio.Lock()
        self._resync_task: asyncio.Task[None] | None = None
        self._joined = False
        self._join_pending = False
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        connection: ConnectionManager,
        session: Session,
        settings: Settings,
        *,
        messages: MessageSyncEngine,
        timer: TimerSync,
        status_probe: SessionStatusProbe | None = None,
    ) -> "RoomSessionCoordinator":
        return cls(
            connection,
            session,
            messages=messages,
            timer=timer,
            status_probe=status_probe,
            join_timeout=settings.join_timeout_seconds,
        )

    @property
    def session(self) -> Session:
        return self._session

    @property
    def room_id(self) -> str:
        return self._session.room_id

    @property
    def joined(self) -> bool:
        return self._joined

    def start(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self._connection.subscribe_phase(self._on_phase),
            self._connection.on(SessionStarted, self._on_session_started),
            self._connection.on(SessionEnded, self._on_session_ended),
            self._connection.on(ParticipantJoined, self._on_participant_joined),
        ]

    async def close(self) -> None:
        if self._closed:
            return
        await self.leave()
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

    def subscribe(self, listener: NoticeListener) -> Subscription:
        self._listeners.append(listener)

        def cleanup() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription("notices", cleanup)

    # ------------------------------------------------------------------
    # Join / leave
    # ------------------------------------------------------------------
    async def join(self) -> JoinAck | None:
        """Join the session room.

        Returns the server acknowledgment, or ``None`` when the room is
        already joined or the join was deferred until the connection is up.
        A timeout raises :class:`JoinTimeoutError` and leaves the session in
        ``joining`` so the caller may retry.
        """

        if self._closed:
            raise RuntimeError("Coordinator is closed")
        if self._session.is_ended:
            raise SessionEndedError("Session has already ended")
        async with self._join_lock:
            if self._joined and self._connection.is_connected:
                return None
            await self._release_previous_room()
            if self._session.status is SessionStatus.PENDING:
                self._set_status(SessionStatus.JOINING)
            if not self._connection.is_connected:
                self._join_pending = True
                logger.info("Join deferred until connected", extra={"room": self.room_id})
                return None
            ack = await self._perform_join()
        await self._after_join(RecoveryTrigger.JOIN)
        return ack

    async def leave(self) -> None:
        was_joined = self._joined
        self._joined = False
        self._join_pending = False
        self._release_claim()
        if not was_joined or not self._connection.is_connected:
            return
        try:
            await self._connection.emit(
                LeaveRoom(room_id=self.room_id, booking_id=self._session.booking_id)
            )
        except TransportUnavailableError:
            logger.debug("Leave notification not sent", extra={"room": self.room_id})

    async def end_session(self, reason: str | None = None) -> bool:
        """Ask the server to end the session; ``ended`` follows its acknowledgment."""

        if self._session.is_ended:
            return True
        ack = await self._connection.request(
            EndSession(
                booking_id=self._session.booking_id,
                session_id=self._session.session_id,
                reason=reason,
                ended_by=self._connection.user_id,
            ),
            timeout=self._join_timeout,
        )
        if not ack.success:
            logger.warning(
                "Server refused to end session",
                extra={"booking_id": self._session.booking_id, "reason": ack.message},
            )
            return False
        self._mark_ended(reason or "ended_by_user", ended_by=self._connection.user_id)
        return True

    async def _perform_join(self) -> JoinAck:
        session = self._session
        event = JoinRoom(
            room_id=session.room_id,
            booking_id=session.booking_id,
            session_id=session.session_id,
            user_id=self._connection.user_id,
            kind=session.kind,
        )
        try:
            ack = await self._connection.request(
                event, timeout=self._join_timeout, response_model=JoinAck
            )
        except AckTimeoutError as exc:
            self._notify(NoticeKind.JOIN_FAILED, detail="timeout")
            raise JoinTimeoutError(f"Join of {session.room_id} timed out") from exc

        if ack.session_has_ended:
            self._mark_ended(ack.message or "session_ended")
            raise SessionEndedError(ack.message or "Session has already ended")
        if not ack.success:
            self._notify(NoticeKind.JOIN_FAILED, detail=ack.message, blocking=True)
            raise JoinRejectedError(ack.message, ack.code)

        self._joined = True
        self._join_pending = False
        self._connection.claim_room(self)
        logger.info("Joined session room", extra={"room": session.room_id})

        data = ack.session_data
        if ack.session_is_active and data is not None:
            if data.elapsed is not None:
                self._timer.apply_update(data.elapsed, data.budget)
            self._activate(data.started_at, budget=data.budget)
        return ack

    async def _after_join(self, trigger: RecoveryTrigger) -> None:
        await self._messages.request_recovery(trigger, force=trigger is RecoveryTrigger.RECONNECT)
        if self._session.status is SessionStatus.ACTIVE:
            await self._timer.request_sync()

    async def _release_previous_room(self) -> None:
        previous = self._connection.room_owner
        if previous is None or previous is self:
            return
        logger.info(
            "Leaving previous room before joining another",
            extra={"previous": previous.room_id, "room": self.room_id},
        )
        await previous.leave()

    def _release_claim(self) -> None:
        self._connection.release_room(self)

    # ------------------------------------------------------------------
    # Reconnect handling
    # ------------------------------------------------------------------
    def _on_phase(self, previous: ConnectionPhase, current: ConnectionPhase) -> None:
        if self._closed or self._session.is_ended:
            return
        if current is ConnectionPhase.CONNECTED:
            if self._join_pending:
                self._spawn(self._deferred_join(), name="consultsync-deferred-join")
            elif self._session.status in (SessionStatus.JOINING, SessionStatus.ACTIVE) and (
                self._resync_task is None or self._resync_task.done()
            ):
                self._resync_task = self._spawn(self._resync(), name="consultsync-resync")
        elif previous is ConnectionPhase.CONNECTED:
            self._joined = False
            self._notify(NoticeKind.RECONNECTING, detail=current.value)
        elif current is ConnectionPhase.FAILED:
            self._notify(NoticeKind.RECONNECTING, detail=current.value, blocking=True)

    async def _deferred_join(self) -> None:
        try:
            await self.join()
        except (JoinTimeoutError, JoinRejectedError, SessionEndedError, TransportUnavailableError) as exc:
            logger.warning("Deferred join failed: %s", exc)

    async def _resync(self) -> None:
        if self._status_probe is not None:
            status = await self._status_probe.fetch(self._session.booking_id)
            if self._closed or self._session.is_ended:
                return
            if status is not None and status.has_ended:
                logger.info(
                    "Session ended while disconnected",
                    extra={"booking_id": self._session.booking_id},
                )
                self._mark_ended("ended_while_disconnected")
                return
        try:
            async with self._join_lock:
                if not self._connection.is_connected:
                    return
                await self._perform_join()
        except (JoinTimeoutError, JoinRejectedError, TransportUnavailableError) as exc:
            logger.warning("Rejoin after reconnect failed: %s", exc)
            return
        except SessionEndedError:
            return
        if self._closed:
            return
        self._notify(NoticeKind.STATUS, detail="resynced")
        await self._after_join(RecoveryTrigger.RECONNECT)

    # ------------------------------------------------------------------
    # Server events
    # ------------------------------------------------------------------
    def _on_session_started(self, event: SessionStarted) -> None:
        if event.booking_id != self._session.booking_id:
            return
        self._activate(event.started_at)

    def _on_session_ended(self, event: SessionEnded) -> None:
        if event.booking_id != self._session.booking_id:
            return
        self._mark_ended(event.reason, ended_by=event.ended_by, ended_at=event.ended_at)

    def _on_participant_joined(self, event: ParticipantJoined) -> None:
        if event.booking_id != self._session.booking_id or event.user_id == self._connection.user_id:
            return
        if self._session.counterpart_present:
            return
        self._session.counterpart_present = True
        self._notify(NoticeKind.COUNTERPART_JOINED, data={"user_id": event.user_id})

    def _activate(self, started_at: datetime | None, *, budget: float | None = None) -> None:
        session = self._session
        if session.is_ended:
            return
        if started_at is not None and session.started_at is None:
            session.started_at = started_at
        if session.status is not SessionStatus.ACTIVE:
            self._set_status(SessionStatus.ACTIVE)
        self._timer.activate(session.started_at, budget=budget)

    def _mark_ended(
        self,
        reason: str | None,
        *,
        ended_by: str | None = None,
        ended_at: datetime | None = None,
    ) -> None:
        session = self._session
        if session.is_ended:
            return
        session.ended_at = ended_at or utcnow()
        session.end_reason = reason
        session.ended_by = ended_by
        self._set_status(SessionStatus.ENDED)
        failed = self._messages.fail_pending()
        self._timer.stop()
        self._joined = False
        self._join_pending = False
        self._release_claim()
        logger.info(
            "Session ended",
            extra={"booking_id": session.booking_id, "reason": reason, "failed_messages": failed},
        )
        self._notify(
            NoticeKind.ENDED,
            detail=reason,
            blocking=True,
            data={"failed_messages": failed, "ended_by": ended_by},
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _set_status(self, status: SessionStatus) -> None:
        if self._session.status is status:
            return
        self._session.status = status
        session_transitions_total.labels(status).inc()
        self._notify(NoticeKind.STATUS, detail=status.value)

    def notify(
        self,
        kind: NoticeKind,
        *,
        detail: str | None = None,
        blocking: bool = False,
        data: dict | None = None,
    ) -> None:
        """Publish a notice to subscribers on behalf of a sibling component."""

        self._notify(kind, detail=detail, blocking=blocking, data=data)

    def _notify(
        self,
        kind: NoticeKind,
        *,
        detail: str | None = None,
        blocking: bool = False,
        data: dict | None = None,
    ) -> None:
        if self._closed:
            return
        notice = SessionNotice(
            kind=kind, session=self._session, detail=detail, blocking=blocking, data=data or {}
        )
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Session notice listener failed")

    def _spawn(self, coro, *, name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


__all__ = ["NoticeListener", "RoomSessionCoordinator"]
