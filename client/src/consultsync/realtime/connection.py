"""Shared realtime connection with backoff reconnects and typed event dispatch."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Type, TypeVar

from pydantic import ValidationError

from app.config import Settings
from app.models.enums import ConnectionPhase
from app.monitoring.metrics import (
    connection_attempts_total,
    connection_phase,
    connection_reconnects_scheduled_total,
    heartbeat_failures_total,
    realtime_events_total,
)
from app.schemas.events import (
    CONTROL_EVENTS,
    AckResponse,
    InboundEvent,
    OutboundEvent,
    Ping,
    UnknownEventError,
    parse_inbound,
)

from ..errors import (
    AuthenticationError,
    ConnectionFailedError,
    NotConnectedError,
    TransportUnavailableError,
)
from .credentials import CredentialStore
from .transport import Transport

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=InboundEvent)
A = TypeVar("A", bound=AckResponse)

PhaseListener = Callable[[ConnectionPhase, ConnectionPhase], None]

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransportUnavailableError,
    asyncio.TimeoutError,
    OSError,
)


@dataclass(slots=True)
class ReconnectPolicy:
    """Exponential backoff parameters for automatic reconnects."""

    base_delay: float = 3.0
    factor: float = 1.5
    max_delay: float = 30.0
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.factor**attempt), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectPolicy":
        return cls(
            base_delay=settings.reconnect_base_delay_seconds,
            factor=settings.reconnect_backoff_factor,
            max_delay=settings.reconnect_max_delay_seconds,
            max_attempts=settings.max_reconnect_attempts,
        )


@dataclass(slots=True)
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.IDLE
    reconnect_attempt: int = 0
    last_error: str | None = None


class Subscription:
    """Handle returned by listener registrations; ``close()`` unregisters."""

    def __init__(self, name: str, cleanup: Callable[[], None]) -> None:
        self._name = name
        self._cleanup: Callable[[], None] | None = cleanup

    @property
    def name(self) -> str:
        return self._name

    @property
    def active(self) -> bool:
        return self._cleanup is not None

    def close(self) -> None:
        cleanup, self._cleanup = self._cleanup, None
        if cleanup is not None:
            cleanup()


class ConnectionManager:
    """Owns the single realtime socket shared by every session component.

    Connection phases move through ``idle → connecting → connected`` and fall
    back to ``disconnected`` when the socket drops, at which point a backoff
    reconnect is scheduled (``min(base * factor**attempt, max_delay)``). After
    ``max_attempts`` consecutive failures the phase becomes ``failed``. An
    authentication rejection goes straight to ``failed`` without retrying.

    Inbound frames are validated into schema objects and dispatched
    synchronously, in arrival order, to the handlers registered through
    :meth:`on`. Malformed or unknown frames are logged and dropped.
    """

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore,
        *,
        policy: ReconnectPolicy | None = None,
        connect_timeout: float = 20.0,
        heartbeat_interval: float = 20.0,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._policy = policy or ReconnectPolicy()
        self._connect_timeout = connect_timeout
        self._heartbeat_interval = heartbeat_interval
        self._state = ConnectionState()
        self._phase_listeners: list[PhaseListener] = []
        self._handlers: Dict[Type[InboundEvent], list[Callable[[Any], None]]] = defaultdict(list)
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._auth_failed = False
        self._backgrounded = False
        self._room_owner: Any = None
        self._transport.bind(self._handle_frame, self._handle_transport_closed)
        connection_phase.labels(self._state.phase).set(1)

    @classmethod
    def from_settings(
        cls, transport: Transport, credentials: CredentialStore, settings: Settings
    ) -> "ConnectionManager":
        return cls(
            transport,
            credentials,
            policy=ReconnectPolicy.from_settings(settings),
            connect_timeout=settings.connect_timeout_seconds,
            heartbeat_interval=settings.heartbeat_interval_seconds,
        )

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(
            phase=self._state.phase,
            reconnect_attempt=self._state.reconnect_attempt,
            last_error=self._state.last_error,
        )

    @property
    def is_connected(self) -> bool:
        return self._state.phase is ConnectionPhase.CONNECTED

    @property
    def user_id(self) -> str:
        return self._credentials.user_id

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Open the socket, raising when this attempt does not succeed.

        A transient failure still schedules the automatic backoff reconnect
        before :class:`ConnectionFailedError` propagates. Calling it after
        reconnects were exhausted starts a fresh backoff schedule.
        """

        async with self._connect_lock:
            if self.is_connected:
                return
            self._cancel_reconnect()
            if self._state.phase is ConnectionPhase.FAILED and not self._auth_failed:
                self._state.reconnect_attempt = 0
            try:
                await self._open_once()
            except AuthenticationError:
                raise
            except _TRANSIENT_ERRORS as exc:
                if self._register_failure():
                    self._trigger_reconnect("connect_failed")
                raise ConnectionFailedError(f"Realtime connection failed: {exc}") from exc

    async def disconnect(self) -> None:
        self._cancel_reconnect()
        self._stop_heartbeat()
        self._state.reconnect_attempt = 0
        # Move to idle first so the transport close is not treated as a drop.
        self._set_phase(ConnectionPhase.IDLE)
        await self._transport.close()

    async def handle_foreground(self) -> None:
        """App returned to the foreground; reconnect immediately when down."""

        self._backgrounded = False
        phase = self._state.phase
        if phase in (ConnectionPhase.CONNECTED, ConnectionPhase.CONNECTING):
            return
        if phase is ConnectionPhase.IDLE:
            return
        if phase is ConnectionPhase.FAILED:
            if self._auth_failed:
                logger.info("Not reconnecting on foreground after an authentication failure")
                return
            self._state.reconnect_attempt = 0
        try:
            await self.connect()
        except ConnectionFailedError:
            logger.info(
                "Foreground reconnect failed; backoff reconnect scheduled",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
        except AuthenticationError:
            logger.warning("Foreground reconnect rejected by the server")

    def handle_background(self) -> None:
        """App moved to the background; pending backoff reconnects are dropped."""

        self._backgrounded = True
        self._cancel_reconnect()

    # ------------------------------------------------------------------
    # Room ownership
    # ------------------------------------------------------------------
    @property
    def room_owner(self) -> Any:
        """The component currently joined to a room over this socket, if any."""

        return self._room_owner

    def claim_room(self, owner: Any) -> None:
        self._room_owner = owner

    def release_room(self, owner: Any) -> None:
        if self._room_owner is owner:
            self._room_owner = None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def subscribe_phase(self, callback: PhaseListener) -> Subscription:
        self._phase_listeners.append(callback)

        def cleanup() -> None:
            with contextlib.suppress(ValueError):
                self._phase_listeners.remove(callback)

        return Subscription("phase", cleanup)

    def on(self, event_type: Type[E], handler: Callable[[E], None]) -> Subscription:
        handlers = self._handlers[event_type]
        handlers.append(handler)

        def cleanup() -> None:
            with contextlib.suppress(ValueError):
                handlers.remove(handler)

        return Subscription(event_type.event_name, cleanup)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def emit(self, event: OutboundEvent) -> None:
        if not self.is_connected:
            raise NotConnectedError(f"Cannot emit '{event.event_name}' while {self._state.phase.value}")
        await self._transport.send(event.event_name, event.dump())
        realtime_events_total.labels(event.event_name, "out", "sent").inc()

    async def request(
        self,
        event: OutboundEvent,
        *,
        timeout: float,
        response_model: Type[A] = AckResponse,  # type: ignore[assignment]
    ) -> A:
        """Emit ``event`` and wait for the server acknowledgment."""

        if not self.is_connected:
            raise NotConnectedError(f"Cannot request '{event.event_name}' while {self._state.phase.value}")
        raw = await self._transport.request(event.event_name, event.dump(), timeout=timeout)
        realtime_events_total.labels(event.event_name, "out", "acknowledged").inc()
        if isinstance(raw, bool):
            raw = {"success": raw}
        if not isinstance(raw, dict):
            logger.warning("Acknowledgment payload is not an object", extra={"event": event.event_name})
            raw = {}
        try:
            return response_model.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Discarded malformed acknowledgment",
                extra={"event": event.event_name, "errors": exc.error_count()},
            )
            return response_model()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _open_once(self) -> None:
        self._set_phase(ConnectionPhase.CONNECTING)
        try:
            token = await self._credentials.get_token()
            await asyncio.wait_for(self._transport.open(token), self._connect_timeout)
        except AuthenticationError as exc:
            self._auth_failed = True
            self._state.last_error = str(exc)
            connection_attempts_total.labels("auth_failed").inc()
            logger.warning("Realtime connection rejected: %s", exc)
            self._set_phase(ConnectionPhase.FAILED)
            raise
        except _TRANSIENT_ERRORS as exc:
            self._state.last_error = str(exc) or type(exc).__name__
            connection_attempts_total.labels("failed").inc()
            logger.info(
                "Realtime connection attempt failed",
                extra={"attempt": self._state.reconnect_attempt, "error": self._state.last_error},
            )
            raise
        self._auth_failed = False
        self._state.reconnect_attempt = 0
        self._state.last_error = None
        connection_attempts_total.labels("connected").inc()
        self._set_phase(ConnectionPhase.CONNECTED)
        self._start_heartbeat()

    def _register_failure(self) -> bool:
        """Count a failed attempt; return False once attempts are exhausted."""

        self._state.reconnect_attempt += 1
        if self._state.reconnect_attempt >= self._policy.max_attempts:
            logger.warning(
                "Giving up on realtime reconnects",
                extra={"attempts": self._state.reconnect_attempt},
            )
            self._set_phase(ConnectionPhase.FAILED)
            return False
        self._set_phase(ConnectionPhase.DISCONNECTED)
        return True

    def _trigger_reconnect(self, reason: str) -> None:
        if self._backgrounded:
            logger.debug("Reconnect deferred while backgrounded", extra={"reason": reason})
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        connection_reconnects_scheduled_total.labels(reason).inc()
        self._reconnect_task = asyncio.create_task(
            self._reconnect_runner(reason), name="consultsync-reconnect"
        )

    async def _reconnect_runner(self, reason: str) -> None:
        while True:
            delay = self._policy.delay_for(self._state.reconnect_attempt)
            logger.info(
                "Scheduling realtime reconnect",
                extra={"reason": reason, "delay": delay, "attempt": self._state.reconnect_attempt},
            )
            if delay:
                await asyncio.sleep(delay)
            async with self._connect_lock:
                if self.is_connected or self._state.phase is ConnectionPhase.IDLE:
                    break
                try:
                    await self._open_once()
                except AuthenticationError:
                    break
                except _TRANSIENT_ERRORS:
                    if not self._register_failure():
                        break
                    continue
            break
        self._reconnect_task = None

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name="consultsync-heartbeat")

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _heartbeat(self) -> None:
        while self.is_connected:
            await asyncio.sleep(self._heartbeat_interval)
            if not self.is_connected:
                break
            try:
                await self.emit(Ping(timestamp=time.time()))
            except TransportUnavailableError:
                heartbeat_failures_total.inc()
                logger.debug("Heartbeat ping failed", exc_info=True)

    def _set_phase(self, phase: ConnectionPhase) -> None:
        previous = self._state.phase
        if previous is phase:
            return
        self._state.phase = phase
        connection_phase.labels(previous).set(0)
        connection_phase.labels(phase).set(1)
        logger.debug("Connection phase changed", extra={"from": previous.value, "to": phase.value})
        for listener in list(self._phase_listeners):
            try:
                listener(previous, phase)
            except Exception:
                logger.exception("Connection phase listener failed")

    def _handle_transport_closed(self, exc: BaseException | None) -> None:
        if self._state.phase is not ConnectionPhase.CONNECTED:
            return
        self._stop_heartbeat()
        self._state.last_error = str(exc) if exc is not None else "connection closed"
        self._set_phase(ConnectionPhase.DISCONNECTED)
        self._trigger_reconnect("connection_lost")

    def _handle_frame(self, name: str, data: Any) -> None:
        if name in CONTROL_EVENTS:
            return
        try:
            event = parse_inbound(name, data)
        except UnknownEventError:
            realtime_events_total.labels(name, "in", "dropped").inc()
            logger.debug("Ignored unknown realtime event", extra={"event": name})
            return
        except ValidationError as exc:
            realtime_events_total.labels(name, "in", "dropped").inc()
            logger.warning(
                "Discarded malformed realtime event",
                extra={"event": name, "errors": exc.error_count()},
            )
            return
        realtime_events_total.labels(name, "in", "accepted").inc()
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                logger.exception("Realtime event handler failed", extra={"event": name})


__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "PhaseListener",
    "ReconnectPolicy",
    "Subscription",
]
