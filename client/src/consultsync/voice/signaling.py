"""Relay for WebRTC call-setup payloads over the realtime connection.

The media layer itself is opaque: it produces and consumes SDP and ICE
payloads and reports connection state transitions. This module moves those
payloads between the media layer and the counterpart, keeps remote signals
strictly ordered, and runs a single ICE restart when the media connection
fails.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, Mapping, Protocol, Set

from app.config import Settings
from app.models.enums import SignalDirection, SignalType
from app.monitoring.metrics import ice_restarts_total, signals_total
from app.schemas.events import (
    IceRestartInitiated,
    RequestIceRestart,
    SendSignal,
    SignalPayload,
    SignalReceived,
    StartVoiceCall,
)

from ..errors import TransportUnavailableError
from ..realtime.connection import ConnectionManager, Subscription
from ..session.models import Session

logger = logging.getLogger(__name__)

# Media connection states after which an in-flight ICE restart counts as resolved.
RESOLVED_ICE_STATES = frozenset({"connected", "completed"})
FAILED_ICE_STATE = "failed"

_ICE_ALIASES = {"candidate", "ice-candidate", "ice_candidate", "icecandidate"}


@dataclass(slots=True)
class SignalEnvelope:
    type: SignalType
    payload: Dict[str, Any]
    session_id: str
    direction: SignalDirection = SignalDirection.OUTGOING


class MediaCapability(Protocol):
    """What the relay needs from the WebRTC layer."""

    async def create_offer(self) -> Dict[str, Any]: ...

    async def create_answer(self, offer: Dict[str, Any]) -> Dict[str, Any]: ...

    async def set_remote_signal(self, envelope: SignalEnvelope) -> None: ...

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None: ...

    async def reset_local_description(self) -> None: ...

    async def restart_ice(self) -> None: ...

    def set_event_handlers(
        self,
        *,
        on_local_ice_candidate: Callable[[Dict[str, Any]], None],
        on_connection_state_changed: Callable[[str], None],
        on_remote_stream_available: Callable[[Any], None],
    ) -> None: ...


def normalise_signal_type(value: Any) -> SignalType | None:
    """Map the spellings seen on the wire onto :class:`SignalType`."""

    if isinstance(value, SignalType):
        return value
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered == SignalType.OFFER.value:
        return SignalType.OFFER
    if lowered == SignalType.ANSWER.value:
        return SignalType.ANSWER
    if lowered in _ICE_ALIASES:
        return SignalType.ICE_CANDIDATE
    return None


def build_signal_envelope(
    raw: Mapping[str, Any],
    *,
    session_id: str,
    direction: SignalDirection = SignalDirection.INCOMING,
) -> SignalEnvelope | None:
    """Normalise the payload shapes peers send into a :class:`SignalEnvelope`.

    Accepted shapes are ``{"type", "payload"}``, a flattened description
    ``{"type": "offer", "sdp": ...}`` and a bare candidate
    ``{"candidate": ..., "sdpMid": ...}``. Anything else yields ``None``.
    """

    kind = normalise_signal_type(raw.get("type"))
    if kind is None and "candidate" in raw:
        kind = SignalType.ICE_CANDIDATE
    if kind is None:
        return None

    payload = raw.get("payload")
    if isinstance(payload, Mapping):
        body = dict(payload)
    elif kind is SignalType.ICE_CANDIDATE and isinstance(raw.get("candidate"), Mapping):
        body = dict(raw["candidate"])
    elif kind is SignalType.ICE_CANDIDATE:
        body = {key: value for key, value in raw.items() if key != "type"}
    else:
        if "sdp" not in raw:
            return None
        body = {"type": kind.value, "sdp": raw["sdp"]}
    return SignalEnvelope(type=kind, payload=body, session_id=session_id, direction=direction)


@dataclass(slots=True)
class _RestartState:
    in_progress: bool = False
    watchdog: asyncio.Task[None] | None = None
    attempts: int = 0
    last_outcome: str | None = None


class SignalingRelay:
    """Exchanges offers, answers and candidates for one voice/video session."""

    def __init__(
        self,
        connection: ConnectionManager,
        session: Session,
        media: MediaCapability,
        *,
        target: str = "counterpart",
        ice_restart_timeout: float = 10.0,
        ice_servers: list[dict[str, Any]] | None = None,
        on_failure: Callable[[str], None] | None = None,
    ) -> None:
        self._connection = connection
        self._session = session
        self._media = media
        self._target = target
        self._ice_restart_timeout = ice_restart_timeout
        self._ice_servers = list(ice_servers or [])
        self._on_failure = on_failure
        self._queue: asyncio.Queue[SignalEnvelope] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._subscriptions: list[Subscription] = []
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._restart = _RestartState()
        self._ice_state: str | None = None
        self._offer_sent = False
        self._remote_stream: Any = None
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        connection: ConnectionManager,
        session: Session,
        media: MediaCapability,
        settings: Settings,
        *,
        on_failure: Callable[[str], None] | None = None,
    ) -> "SignalingRelay":
        return cls(
            connection,
            session,
            media,
            target=settings.signal_target,
            ice_restart_timeout=settings.ice_restart_timeout_seconds,
            ice_servers=settings.webrtc_ice_servers_payload,
            on_failure=on_failure,
        )

    @property
    def ice_servers(self) -> list[dict[str, Any]]:
        return list(self._ice_servers)

    @property
    def ice_state(self) -> str | None:
        return self._ice_state

    @property
    def restart_in_progress(self) -> bool:
        return self._restart.in_progress

    @property
    def restart_attempts(self) -> int:
        return self._restart.attempts

    @property
    def last_restart_outcome(self) -> str | None:
        return self._restart.last_outcome

    @property
    def remote_stream(self) -> Any:
        return self._remote_stream

    def start(self) -> None:
        if self._worker is not None:
            return
        self._media.set_event_handlers(
            on_local_ice_candidate=self._on_local_candidate,
            on_connection_state_changed=self._on_connection_state,
            on_remote_stream_available=self._on_remote_stream,
        )
        self._subscriptions = [
            self._connection.on(SignalReceived, self._on_signal_event),
            self._connection.on(StartVoiceCall, self._on_start_call),
            self._connection.on(IceRestartInitiated, self._on_restart_initiated),
        ]
        self._worker = asyncio.create_task(self._process_inbound(), name="consultsync-signal-worker")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        tasks = list(self._tasks)
        if self._worker is not None:
            tasks.append(self._worker)
            self._worker = None
        if self._restart.watchdog is not None:
            tasks.append(self._restart.watchdog)
            self._restart.watchdog = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------
    async def send_local_signal(self, envelope: SignalEnvelope) -> bool:
        if envelope.session_id != self._session.session_id:
            raise ValueError(
                f"Signal for session '{envelope.session_id}' does not belong to '{self._session.session_id}'"
            )
        event = SendSignal(
            session_id=self._session.session_id,
            booking_id=self._session.booking_id,
            signal=SignalPayload(type=envelope.type, payload=envelope.payload),
            to=self._target,
        )
        try:
            await self._connection.emit(event)
        except TransportUnavailableError:
            logger.warning(
                "Signal could not be relayed",
                extra={"type": envelope.type.value, "session_id": envelope.session_id},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return False
        signals_total.labels(envelope.type, SignalDirection.OUTGOING).inc()
        return True

    async def start_call(self) -> bool:
        """Create and send the initial offer (once per relay)."""

        if self._offer_sent or self._closed:
            return False
        self._offer_sent = True
        offer = await self._media.create_offer()
        return await self.send_local_signal(
            SignalEnvelope(type=SignalType.OFFER, payload=offer, session_id=self._session.session_id)
        )

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------
    def on_remote_signal(self, envelope: SignalEnvelope) -> bool:
        """Queue a remote signal; envelopes for other sessions are dropped."""

        if self._closed:
            return False
        if envelope.session_id != self._session.session_id:
            logger.debug(
                "Dropped signal for another session",
                extra={"session_id": envelope.session_id},
            )
            return False
        self._queue.put_nowait(envelope)
        return True

    async def _process_inbound(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self._apply_remote(envelope)
            except Exception:
                logger.exception(
                    "Failed to apply remote signal", extra={"type": envelope.type.value}
                )
            finally:
                self._queue.task_done()

    async def _apply_remote(self, envelope: SignalEnvelope) -> None:
        signals_total.labels(envelope.type, SignalDirection.INCOMING).inc()
        if envelope.type is SignalType.OFFER:
            answer = await self._media.create_answer(envelope.payload)
            await self.send_local_signal(
                SignalEnvelope(
                    type=SignalType.ANSWER,
                    payload=answer,
                    session_id=self._session.session_id,
                )
            )
        elif envelope.type is SignalType.ANSWER:
            await self._media.set_remote_signal(envelope)
        else:
            await self._media.add_ice_candidate(envelope.payload)

    async def drain(self) -> None:
        """Wait until every queued remote signal has been applied."""

        await self._queue.join()

    def _on_signal_event(self, event: SignalReceived) -> None:
        session_id = event.session_id
        if session_id is None and event.booking_id == self._session.booking_id:
            session_id = self._session.session_id
        if session_id is None:
            return
        envelope = build_signal_envelope(event.signal, session_id=session_id)
        if envelope is None:
            logger.warning("Discarded unrecognised signal payload", extra={"session_id": session_id})
            return
        self.on_remote_signal(envelope)

    def _matches(self, booking_id: str | None, session_id: str | None) -> bool:
        if session_id is not None:
            return session_id == self._session.session_id
        return booking_id == self._session.booking_id

    def _on_start_call(self, event: StartVoiceCall) -> None:
        if self._matches(event.booking_id, event.session_id):
            self._spawn(self.start_call(), name="consultsync-start-call")

    def _on_restart_initiated(self, event: IceRestartInitiated) -> None:
        if self._matches(event.booking_id, event.session_id):
            logger.info("Counterpart initiated ICE restart")
            self._spawn(self._media.restart_ice(), name="consultsync-remote-ice-restart")

    # ------------------------------------------------------------------
    # Media callbacks
    # ------------------------------------------------------------------
    def _on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self._closed:
            return
        envelope = SignalEnvelope(
            type=SignalType.ICE_CANDIDATE,
            payload=dict(candidate),
            session_id=self._session.session_id,
        )
        self._spawn(self.send_local_signal(envelope), name="consultsync-local-candidate")

    def _on_remote_stream(self, stream: Any) -> None:
        self._remote_stream = stream

    def _on_connection_state(self, state: str) -> None:
        if self._closed:
            return
        previous, self._ice_state = self._ice_state, state
        if state == FAILED_ICE_STATE and previous != FAILED_ICE_STATE:
            if self._restart.in_progress:
                return
            self._restart.in_progress = True
            self._restart.attempts += 1
            self._spawn(self._restart_ice(), name="consultsync-ice-restart")
        elif state in RESOLVED_ICE_STATES and self._restart.in_progress:
            self._resolve_restart("recovered")

    async def _restart_ice(self) -> None:
        ice_restarts_total.labels("requested").inc()
        logger.info("Media connection failed; requesting ICE restart")
        try:
            await self._connection.emit(
                RequestIceRestart(
                    session_id=self._session.session_id,
                    booking_id=self._session.booking_id,
                    to=self._target,
                )
            )
        except TransportUnavailableError:
            logger.warning("ICE restart request could not be sent")
        self._restart.watchdog = asyncio.create_task(
            self._watch_restart(), name="consultsync-ice-watchdog"
        )
        await self._media.reset_local_description()
        offer = await self._media.create_offer()
        await self.send_local_signal(
            SignalEnvelope(type=SignalType.OFFER, payload=offer, session_id=self._session.session_id)
        )

    async def _watch_restart(self) -> None:
        await asyncio.sleep(self._ice_restart_timeout)
        if not self._restart.in_progress:
            return
        self._restart.watchdog = None
        self._resolve_restart("timeout")
        logger.warning("ICE restart did not recover the media connection")
        if self._on_failure is not None:
            try:
                self._on_failure("ice_restart_timeout")
            except Exception:
                logger.exception("Media failure callback failed")

    def _resolve_restart(self, outcome: str) -> None:
        self._restart.in_progress = False
        self._restart.last_outcome = outcome
        ice_restarts_total.labels(outcome).inc()
        watchdog, self._restart.watchdog = self._restart.watchdog, None
        if watchdog is not None and not watchdog.done() and watchdog is not asyncio.current_task():
            watchdog.cancel()

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Signaling task failed", exc_info=exc)


__all__ = [
    "FAILED_ICE_STATE",
    "MediaCapability",
    "RESOLVED_ICE_STATES",
    "SignalEnvelope",
    "SignalingRelay",
    "build_signal_envelope",
    "normalise_signal_type",
]
