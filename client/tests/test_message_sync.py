from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.models.enums import MessageStatus, RecoveryTrigger, SenderRole, SessionStatus
from app.monitoring.metrics import message_dedup_total, message_sends_total, recovery_requests_total
from conftest import USER_ID, FakeClock, FakeTransport, make_connection, wait_until
from consultsync.errors import SessionEndedError
from consultsync.session.messages import MessageLog, MessageSyncEngine
from consultsync.session.models import Message, Session


def _make_engine(transport: FakeTransport, clock: FakeClock, **kwargs):
    connection = make_connection(transport)
    session = Session(session_id="sess-1", booking_id="booking-1")
    engine = MessageSyncEngine(connection, session, recovery_replay_delay=0, clock=clock, **kwargs)
    engine.start()
    return connection, session, engine


def _incoming(message_id: str, content: str, *, sender: str = "expert-9", timestamp: datetime | None = None) -> dict:
    stamp = timestamp or datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    return {
        "id": message_id,
        "content": content,
        "senderId": sender,
        "timestamp": stamp.isoformat(),
        "bookingId": "booking-1",
    }


@pytest.mark.anyio("asyncio")
async def test_send_settles_to_sent_on_positive_ack(transport: FakeTransport, clock: FakeClock) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    transport.responses["send_message"] = {"success": True}
    await connection.connect()
    updates: list[list[MessageStatus]] = []
    engine.subscribe(lambda snapshot: updates.append([entry.status for entry in snapshot]))

    message = await engine.send("hello")

    assert message.status is MessageStatus.SENT
    assert message.sender_role is SenderRole.USER
    assert updates == [[MessageStatus.SENDING], [MessageStatus.SENT]]
    frame = transport.frames("send_message")[0]
    assert frame["id"] == message.id
    assert frame["bookingId"] == "booking-1"
    assert frame["senderId"] == USER_ID
    assert frame["content"] == "hello"
    assert message_sends_total.value("sent") == 1
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_send_fails_on_timeout_and_rejection(transport: FakeTransport, clock: FakeClock) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    await connection.connect()

    timed_out = await engine.send("first")
    transport.responses["send_message"] = {"success": False, "message": "blocked"}
    rejected = await engine.send("second")

    assert timed_out.status is MessageStatus.FAILED
    assert rejected.status is MessageStatus.FAILED
    assert message_sends_total.value("timeout") == 1
    assert message_sends_total.value("rejected") == 1
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_send_while_disconnected_fails_and_can_be_resent(
    transport: FakeTransport, clock: FakeClock
) -> None:
    connection, _session, engine = _make_engine(transport, clock)

    failed = await engine.send("are you there?")
    assert failed.status is MessageStatus.FAILED
    assert transport.sent == []

    transport.responses["send_message"] = {"success": True}
    await connection.connect()
    retried = await engine.resend(failed.id)

    assert retried.id != failed.id
    assert retried.status is MessageStatus.SENT
    assert [entry.status for entry in engine.messages] == [MessageStatus.FAILED, MessageStatus.SENT]

    with pytest.raises(ValueError):
        await engine.resend(retried.id)
    with pytest.raises(KeyError):
        await engine.resend("missing")
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_send_rejects_empty_content_and_ended_sessions(
    transport: FakeTransport, clock: FakeClock
) -> None:
    _connection, session, engine = _make_engine(transport, clock)

    with pytest.raises(ValueError):
        await engine.send("   ")

    session.status = SessionStatus.ENDED
    with pytest.raises(SessionEndedError):
        await engine.send("too late")
    assert engine.messages == []


def test_duplicate_live_events_are_applied_once(transport: FakeTransport, clock: FakeClock) -> None:
    _connection, _session, engine = _make_engine(transport, clock)

    transport.push("receive_message", _incoming("m-1", "hi"))
    transport.push("receive_message", _incoming("m-1", "hi"))

    assert [entry.id for entry in engine.messages] == ["m-1"]
    assert engine.messages[0].status is MessageStatus.RECEIVED
    assert message_dedup_total.value("id", "live") == 1


@pytest.mark.anyio("asyncio")
async def test_server_echo_of_own_message_is_merged(transport: FakeTransport, clock: FakeClock) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    transport.responses["send_message"] = {"success": True}
    await connection.connect()
    message = await engine.send("hello")

    transport.push(
        "receive_message",
        _incoming("srv-1", "hello", sender=USER_ID, timestamp=message.timestamp + timedelta(seconds=2)),
    )

    assert len(engine.messages) == 1
    assert engine.log.get("srv-1") is message
    assert message_dedup_total.value("content", "live") == 1

    transport.push("message_status_update", {"messageId": "srv-1", "status": "read"})
    transport.push("message_status_update", {"messageId": message.id, "status": "delivered"})
    assert message.status is MessageStatus.READ
    await connection.disconnect()


def test_failed_message_does_not_swallow_identical_message() -> None:
    log = MessageLog()
    stamp = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    log.append(
        Message(
            id="local-1",
            content="hello",
            sender_id=USER_ID,
            sender_role=SenderRole.USER,
            timestamp=stamp,
            status=MessageStatus.FAILED,
        )
    )

    assert log.find_duplicate("srv-2", "hello", USER_ID, stamp, 5.0) == (None, None)
    existing, tier = log.find_duplicate("local-1", "hello", USER_ID, stamp, 5.0)
    assert existing is not None and tier == "id"


def test_counterpart_message_clears_typing(transport: FakeTransport, clock: FakeClock) -> None:
    _connection, _session, engine = _make_engine(transport, clock)

    transport.push("typing_started", {"bookingId": "booking-1", "userId": "expert-9"})
    transport.push("typing_started", {"bookingId": "booking-1", "userId": USER_ID})
    assert engine.typing.snapshot() == ["expert-9"]

    transport.push("receive_message", _incoming("m-1", "done typing"))
    assert engine.typing.snapshot() == []


def test_messages_for_other_bookings_are_ignored(transport: FakeTransport, clock: FakeClock) -> None:
    _connection, _session, engine = _make_engine(transport, clock)

    frame = _incoming("m-1", "wrong room")
    frame["bookingId"] = "booking-2"
    transport.push("receive_message", frame)

    assert engine.messages == []


@pytest.mark.anyio("asyncio")
async def test_recovery_is_single_flight_and_replays_latest_trigger(
    transport: FakeTransport, clock: FakeClock
) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    gate = asyncio.Event()
    requests: list[dict] = []

    async def respond(data: dict) -> dict:
        requests.append(data)
        await gate.wait()
        return {"messages": [_incoming("m-1", "missed")]}

    transport.responses["get_missed_messages"] = respond
    await connection.connect()

    first = asyncio.create_task(engine.request_recovery(RecoveryTrigger.JOIN))
    await wait_until(lambda: len(requests) == 1)
    assert engine.recovery_in_flight

    assert await engine.request_recovery(RecoveryTrigger.RECONNECT) is False
    assert await engine.request_recovery(RecoveryTrigger.FOREGROUND) is False
    assert await engine.request_recovery(RecoveryTrigger.MANUAL) is False

    gate.set()
    assert await first is True
    await wait_until(lambda: len(requests) == 2)
    await asyncio.sleep(0.05)

    assert len(requests) == 2
    assert recovery_requests_total.value("manual", "issued") == 1
    assert recovery_requests_total.value("reconnect", "issued") == 0
    assert [entry.id for entry in engine.messages] == ["m-1"]
    await engine.close()
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_recovery_rate_limits(transport: FakeTransport, clock: FakeClock) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    transport.responses["get_missed_messages"] = {"messages": []}
    await connection.connect()

    assert await engine.request_recovery(RecoveryTrigger.MANUAL) is True
    assert await engine.request_recovery(RecoveryTrigger.MANUAL) is False
    clock.advance(5)
    assert await engine.request_recovery(RecoveryTrigger.MANUAL) is True

    clock.advance(15)
    assert await engine.request_recovery(RecoveryTrigger.FOREGROUND) is False
    assert await engine.request_recovery(RecoveryTrigger.RECONNECT, force=True) is True
    clock.advance(31)
    assert await engine.request_recovery(RecoveryTrigger.FOREGROUND) is True

    assert recovery_requests_total.value("manual", "rate_limited") == 1
    assert recovery_requests_total.value("foreground", "rate_limited") == 1
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_recovery_is_skipped_while_disconnected(transport: FakeTransport, clock: FakeClock) -> None:
    _connection, _session, engine = _make_engine(transport, clock)

    assert await engine.request_recovery(RecoveryTrigger.MANUAL) is False
    assert recovery_requests_total.value("manual", "skipped") == 1


@pytest.mark.anyio("asyncio")
async def test_recovery_merges_sorted_and_drops_malformed_items(
    transport: FakeTransport, clock: FakeClock
) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    base = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    transport.push("receive_message", _incoming("m-2", "second", timestamp=base + timedelta(minutes=2)))
    transport.responses["get_missed_messages"] = {
        "messages": [
            _incoming("m-3", "third", timestamp=base + timedelta(minutes=3)),
            {"id": "broken"},
            "not-an-object",
            _incoming("m-1", "first", timestamp=base + timedelta(minutes=1)),
            _incoming("m-2", "second", timestamp=base + timedelta(minutes=2)),
        ]
    }
    await connection.connect()

    assert await engine.request_recovery(RecoveryTrigger.MANUAL) is True

    assert [entry.id for entry in engine.messages] == ["m-1", "m-2", "m-3"]
    since = transport.frames("get_missed_messages")[0]["since"]
    assert since.startswith("2024-05-01T10:02:00")
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_recovered_history_uses_wider_duplicate_window(
    transport: FakeTransport, clock: FakeClock
) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    transport.responses["send_message"] = {"success": True}
    await connection.connect()
    message = await engine.send("hello")
    drifted = message.timestamp + timedelta(seconds=20)
    transport.responses["get_missed_messages"] = {
        "messages": [_incoming("srv-1", "hello", sender=USER_ID, timestamp=drifted)]
    }

    await engine.request_recovery(RecoveryTrigger.MANUAL)
    assert len(engine.messages) == 1
    assert message_dedup_total.value("content", "recovery") == 1

    transport.push("receive_message", _incoming("srv-2", "hello", sender=USER_ID, timestamp=drifted))
    assert len(engine.messages) == 2
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_live_copy_of_recovered_message_is_merged(transport: FakeTransport, clock: FakeClock) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    base = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    transport.responses["get_missed_messages"] = {
        "messages": [_incoming("rec-1", "are you there?", timestamp=base + timedelta(seconds=20))]
    }
    await connection.connect()

    await engine.request_recovery(RecoveryTrigger.MANUAL)
    transport.push("receive_message", _incoming("live-1", "are you there?", timestamp=base))

    assert [entry.id for entry in engine.messages] == ["rec-1"]
    assert engine.messages[0].recovered
    assert message_dedup_total.value("content", "live") == 1

    transport.push("receive_message", _incoming("live-2", "are you there?", timestamp=base - timedelta(seconds=40)))
    assert [entry.id for entry in engine.messages] == ["rec-1", "live-2"]
    await connection.disconnect()


@pytest.mark.anyio("asyncio")
async def test_read_receipts_and_typing_are_emitted(transport: FakeTransport, clock: FakeClock) -> None:
    connection, _session, engine = _make_engine(transport, clock)
    transport.push("receive_message", _incoming("m-1", "hi"))

    assert await engine.set_typing(True) is False
    await connection.connect()

    assert await engine.mark_read("m-1") is True
    assert await engine.mark_read("unknown") is False
    assert await engine.set_typing(True) is True
    assert await engine.set_typing(False) is True

    assert transport.frames("message_read") == [{"messageId": "m-1", "bookingId": "booking-1"}]
    assert transport.count("typing_started") == 1
    assert transport.count("typing_stopped") == 1
    await connection.disconnect()
