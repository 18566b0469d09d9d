"""Websocket transport carrying JSON event frames with acknowledgments."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Callable, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from ..errors import AckTimeoutError, AuthenticationError, TransportUnavailableError

logger = logging.getLogger(__name__)


EventCallback = Callable[[str, Any], None]
ClosedCallback = Callable[[BaseException | None], None]

ACK_EVENT = "ack"

_AUTH_REJECTION_STATUSES = frozenset({401, 403})


class Transport(Protocol):
    """Minimal surface the connection manager needs from a socket."""

    @property
    def is_open(self) -> bool: ...

    def bind(self, on_event: EventCallback, on_closed: ClosedCallback) -> None: ...

    async def open(self, token: str) -> None: ...

    async def close(self) -> None: ...

    async def send(self, event: str, data: Any) -> None: ...

    async def request(self, event: str, data: Any, *, timeout: float) -> Any: ...


def encode_frame(event: str, data: Any, ack: int | None = None) -> str:
    frame: dict[str, Any] = {"event": event, "data": data}
    if ack is not None:
        frame["ack"] = ack
    return json.dumps(frame)


class WebSocketTransport:
    """Single websocket connection with request/acknowledgment correlation.

    Frames are JSON objects ``{"event": name, "data": payload}``. A request adds
    an integer ``ack`` id and the server answers with
    ``{"event": "ack", "ack": id, "data": {...}}``. Every other frame is handed
    to the bound event callback in arrival order.
    """

    def __init__(
        self,
        url: str,
        *,
        open_timeout: float = 20.0,
        ping_interval: float | None = None,
    ) -> None:
        self._url = url
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval
        self._connection: ClientConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._next_ack = 0
        self._closing = False
        self._on_event: EventCallback | None = None
        self._on_closed: ClosedCallback | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def bind(self, on_event: EventCallback, on_closed: ClosedCallback) -> None:
        self._on_event = on_event
        self._on_closed = on_closed

    async def open(self, token: str) -> None:
        if self._connection is not None:
            return
        headers = {"Authorization": f"Bearer {token}"}
        try:
            connection = await connect(
                self._url,
                additional_headers=headers,
                open_timeout=self._open_timeout,
                ping_interval=self._ping_interval,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in _AUTH_REJECTION_STATUSES:
                raise AuthenticationError(f"Realtime handshake rejected with HTTP {status}") from exc
            raise TransportUnavailableError(f"Realtime handshake failed with HTTP {status}") from exc
        except (OSError, TimeoutError, InvalidHandshake) as exc:
            raise TransportUnavailableError(f"Realtime endpoint unreachable: {exc}") from exc

        self._connection = connection
        task = asyncio.create_task(self._reader(connection), name="consultsync-ws-reader")
        self._reader_task = task
        task.add_done_callback(lambda finished: self._on_reader_done(connection, finished))
        logger.debug("Realtime socket opened", extra={"url": self._url})

    async def close(self) -> None:
        connection = self._connection
        if connection is None:
            return
        self._closing = True
        try:
            with contextlib.suppress(ConnectionClosed, OSError):
                await connection.close()
            task = self._reader_task
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        finally:
            self._reset(TransportUnavailableError("Socket closed by client"))
            self._closing = False

    async def send(self, event: str, data: Any) -> None:
        await self._send_frame(encode_frame(event, data))

    async def request(self, event: str, data: Any, *, timeout: float) -> Any:
        self._next_ack += 1
        ack_id = self._next_ack
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        try:
            await self._send_frame(encode_frame(event, data, ack_id))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise AckTimeoutError(event, timeout) from exc
        finally:
            self._pending.pop(ack_id, None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _send_frame(self, encoded: str) -> None:
        connection = self._connection
        if connection is None:
            raise TransportUnavailableError("Realtime socket is not open")
        try:
            await connection.send(encoded)
        except ConnectionClosed as exc:
            raise TransportUnavailableError("Realtime socket closed while sending") from exc

    async def _reader(self, connection: ClientConnection) -> None:
        async for raw in connection:
            if not isinstance(raw, str):
                logger.warning("Discarded binary realtime frame")
                continue
            self._handle_raw(raw)

    def _handle_raw(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarded malformed realtime payload", extra={"url": self._url})
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.warning("Discarded realtime frame without an event name")
            return

        event = frame["event"]
        data = frame.get("data")
        if event == ACK_EVENT:
            future = self._pending.get(frame.get("ack"))  # type: ignore[arg-type]
            if future is not None and not future.done():
                future.set_result(data)
            else:
                logger.debug("Ignored late or unknown acknowledgment", extra={"ack": frame.get("ack")})
            return

        if self._on_event is None:
            return
        try:
            self._on_event(event, data)
        except Exception:
            logger.exception("Realtime event callback failed", extra={"event": event})

    def _on_reader_done(self, connection: ClientConnection, task: asyncio.Task[None]) -> None:
        if self._closing or connection is not self._connection:
            return
        exc: BaseException | None = None
        if not task.cancelled():
            exc = task.exception()
        if exc is not None and not isinstance(exc, ConnectionClosed):
            logger.warning("Realtime reader stopped due to error", exc_info=exc)
        else:
            logger.info("Realtime socket closed by peer", extra={"url": self._url})
        self._reset(TransportUnavailableError("Realtime socket closed"))
        if self._on_closed is not None:
            self._on_closed(exc)

    def _reset(self, error: BaseException) -> None:
        self._connection = None
        self._reader_task = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()


__all__ = [
    "ACK_EVENT",
    "ClosedCallback",
    "EventCallback",
    "Transport",
    "WebSocketTransport",
    "encode_frame",
]
