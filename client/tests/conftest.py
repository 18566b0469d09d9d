"""Shared pytest fixtures and fakes for client tests."""

from __future__ import annotations

import asyncio
import inspect
import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.monitoring.registry import registry
from consultsync.errors import AckTimeoutError, TransportUnavailableError
from consultsync.realtime.connection import ConnectionManager, ReconnectPolicy
from consultsync.realtime.credentials import StaticCredentials

USER_ID = "user-1"
TOKEN = "token-abc"


class FakeTransport:
    """In-memory transport with scripted acknowledgments.

    ``responses`` maps an event name to an ack payload, an exception to raise,
    or a callable receiving the outgoing data (sync or async). Requests for
    events without a response time out immediately.
    """

    def __init__(self) -> None:
        self.responses: dict[str, Any] = {}
        self.open_errors: list[BaseException] = []
        self.sent: list[tuple[str, Any]] = []
        self.tokens: list[str] = []
        self.open_calls = 0
        self._open = False
        self._on_event: Callable[[str, Any], None] | None = None
        self._on_closed: Callable[[BaseException | None], None] | None = None

    @property
    def is_open(self) -> bool:
        return self._open

    def bind(self, on_event, on_closed) -> None:
        self._on_event = on_event
        self._on_closed = on_closed

    async def open(self, token: str) -> None:
        self.open_calls += 1
        self.tokens.append(token)
        if self.open_errors:
            raise self.open_errors.pop(0)
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def send(self, event: str, data: Any) -> None:
        if not self._open:
            raise TransportUnavailableError("fake socket closed")
        self.sent.append((event, data))

    async def request(self, event: str, data: Any, *, timeout: float) -> Any:
        if not self._open:
            raise TransportUnavailableError("fake socket closed")
        self.sent.append((event, data))
        if event not in self.responses:
            raise AckTimeoutError(event, timeout)
        responder = self.responses[event]
        result = responder(data) if callable(responder) else responder
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result

    # helpers used by tests
    def push(self, event: str, data: Any) -> None:
        assert self._on_event is not None
        self._on_event(event, data)

    def drop(self, exc: BaseException | None = None) -> None:
        self._open = False
        assert self._on_closed is not None
        self._on_closed(exc)

    def frames(self, event: str) -> list[Any]:
        return [data for name, data in self.sent if name == event]

    def count(self, event: str) -> int:
        return len(self.frames(event))


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


FAST_POLICY = ReconnectPolicy(base_delay=0.01, factor=1.0, max_delay=0.01, max_attempts=5)


def make_connection(transport: FakeTransport, *, policy: ReconnectPolicy | None = None) -> ConnectionManager:
    return ConnectionManager(
        transport,
        StaticCredentials(user_id=USER_ID, token=TOKEN),
        policy=policy or FAST_POLICY,
        connect_timeout=1.0,
        heartbeat_interval=60.0,
    )


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    registry.reset()
    yield
    registry.reset()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
