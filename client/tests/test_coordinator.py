from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from app.models.enums import MessageStatus, NoticeKind, SessionStatus
from app.monitoring.metrics import session_transitions_total
from app.schemas.events import SessionStatusResponse
from conftest import USER_ID, FakeClock, FakeTransport, make_connection, wait_until
from consultsync.errors import JoinRejectedError, JoinTimeoutError, SessionEndedError
from consultsync.realtime.connection import ConnectionManager
from consultsync.session.coordinator import RoomSessionCoordinator
from consultsync.session.messages import MessageSyncEngine
from consultsync.session.models import Session, SessionNotice
from consultsync.session.timer import TimerSync

ACTIVE_JOIN_ACK = {"success": True, "sessionData": {"status": "active", "elapsed": 42, "budget": 180}}


class FakeStatusProbe:
    def __init__(self, status: str | None) -> None:
        self.status = status
        self.calls: list[str] = []

    async def fetch(self, booking_id: str) -> SessionStatusResponse | None:
        self.calls.append(booking_id)
        if self.status is None:
            return None
        return SessionStatusResponse(status=self.status)


@dataclass
class Harness:
    connection: ConnectionManager
    session: Session
    messages: MessageSyncEngine
    timer: TimerSync
    coordinator: RoomSessionCoordinator
    notices: list[SessionNotice]

    def notice_kinds(self) -> list[NoticeKind]:
        return [notice.kind for notice in self.notices]

    async def close(self) -> None:
        await self.coordinator.close()
        await self.messages.close()
        await self.timer.close()
        await self.connection.disconnect()


def _harness(
    transport: FakeTransport,
    *,
    booking_id: str = "booking-1",
    connection: ConnectionManager | None = None,
    status_probe: FakeStatusProbe | None = None,
) -> Harness:
    connection = connection or make_connection(transport)
    session = Session(session_id=f"sess-{booking_id}", booking_id=booking_id)
    clock = FakeClock()
    messages = MessageSyncEngine(connection, session, recovery_replay_delay=0, clock=clock)
    timer = TimerSync(connection, session, tick_interval=60.0, clock=clock)
    coordinator = RoomSessionCoordinator(
        connection,
        session,
        messages=messages,
        timer=timer,
        status_probe=status_probe,
        join_timeout=1.0,
    )
    messages.start()
    timer.start()
    coordinator.start()
    notices: list[SessionNotice] = []
    coordinator.subscribe(notices.append)
    return Harness(connection, session, messages, timer, coordinator, notices)


@pytest.mark.anyio("asyncio")
async def test_join_activates_session_and_follows_up(transport: FakeTransport) -> None:
    transport.responses["join_room"] = ACTIVE_JOIN_ACK
    transport.responses["get_missed_messages"] = {"messages": []}
    harness = _harness(transport)
    await harness.connection.connect()

    ack = await harness.coordinator.join()

    assert ack is not None and ack.success
    assert harness.coordinator.joined
    assert harness.session.status is SessionStatus.ACTIVE
    assert harness.timer.state.elapsed_seconds == 42
    assert harness.timer.state.budget_seconds == 180
    assert transport.frames("join_room")[0] == {
        "roomId": "room:booking-1",
        "bookingId": "booking-1",
        "sessionId": "sess-booking-1",
        "userId": USER_ID,
        "kind": "chat",
    }
    assert transport.count("get_missed_messages") == 1
    assert transport.count("sync_session_timer") == 1
    assert await harness.coordinator.join() is None
    assert transport.count("join_room") == 1
    assert session_transitions_total.value("joining") == 1
    assert session_transitions_total.value("active") == 1
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_join_is_deferred_until_connected(transport: FakeTransport) -> None:
    transport.responses["join_room"] = {"success": True, "sessionData": {"status": "waiting"}}
    transport.responses["get_missed_messages"] = {"messages": []}
    harness = _harness(transport)

    assert await harness.coordinator.join() is None
    assert harness.session.status is SessionStatus.JOINING
    assert transport.sent == []

    await harness.connection.connect()
    await wait_until(lambda: harness.coordinator.joined)

    assert transport.count("join_room") == 1
    assert harness.session.status is SessionStatus.JOINING
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_reconnect_rejoins_with_one_recovery_and_one_timer_sync(transport: FakeTransport) -> None:
    transport.responses["join_room"] = ACTIVE_JOIN_ACK
    transport.responses["get_missed_messages"] = {"messages": []}
    harness = _harness(transport)
    await harness.connection.connect()
    await harness.coordinator.join()
    transport.sent.clear()

    transport.drop()
    assert not harness.coordinator.joined
    await wait_until(lambda: transport.count("sync_session_timer") >= 1)
    await asyncio.sleep(0.05)

    assert transport.count("join_room") == 1
    assert transport.count("get_missed_messages") == 1
    assert transport.count("sync_session_timer") == 1
    assert harness.coordinator.joined
    kinds = harness.notice_kinds()
    assert NoticeKind.RECONNECTING in kinds
    assert any(notice.detail == "resynced" for notice in harness.notices)
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_join_rejection_raises_with_code(transport: FakeTransport) -> None:
    transport.responses["join_room"] = {"success": False, "message": "not allowed", "code": "forbidden"}
    harness = _harness(transport)
    await harness.connection.connect()

    with pytest.raises(JoinRejectedError) as excinfo:
        await harness.coordinator.join()

    assert excinfo.value.code == "forbidden"
    failed = [notice for notice in harness.notices if notice.kind is NoticeKind.JOIN_FAILED]
    assert len(failed) == 1 and failed[0].blocking
    assert not harness.coordinator.joined
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_join_timeout_keeps_session_joining(transport: FakeTransport) -> None:
    harness = _harness(transport)
    await harness.connection.connect()

    with pytest.raises(JoinTimeoutError):
        await harness.coordinator.join()

    assert harness.session.status is SessionStatus.JOINING
    assert NoticeKind.JOIN_FAILED in harness.notice_kinds()
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_join_ack_for_ended_session_is_terminal(transport: FakeTransport) -> None:
    transport.responses["join_room"] = {"success": False, "code": "session_ended", "message": "completed"}
    harness = _harness(transport)
    await harness.connection.connect()

    with pytest.raises(SessionEndedError):
        await harness.coordinator.join()

    assert harness.session.status is SessionStatus.ENDED
    assert harness.notice_kinds().count(NoticeKind.ENDED) == 1
    with pytest.raises(SessionEndedError):
        await harness.coordinator.join()
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_session_ended_fails_pending_messages_with_single_notice(transport: FakeTransport) -> None:
    transport.responses["join_room"] = ACTIVE_JOIN_ACK
    transport.responses["get_missed_messages"] = {"messages": []}
    gate = asyncio.Event()

    async def slow_ack(data: dict) -> dict:
        await gate.wait()
        return {"success": True}

    transport.responses["send_message"] = slow_ack
    harness = _harness(transport)
    await harness.connection.connect()
    await harness.coordinator.join()

    sends = [asyncio.create_task(harness.messages.send(f"message {index}")) for index in range(3)]
    await wait_until(lambda: transport.count("send_message") == 3)

    ended = {"bookingId": "booking-1", "reason": "budget_exhausted", "endedBy": "system"}
    transport.push("session_ended", ended)
    transport.push("session_ended", ended)

    ended_notices = [notice for notice in harness.notices if notice.kind is NoticeKind.ENDED]
    assert len(ended_notices) == 1
    assert ended_notices[0].blocking
    assert ended_notices[0].data == {"failed_messages": 3, "ended_by": "system"}
    assert harness.session.end_reason == "budget_exhausted"

    gate.set()
    await asyncio.gather(*sends)
    assert [message.status for message in harness.messages.messages] == [MessageStatus.FAILED] * 3
    with pytest.raises(SessionEndedError):
        await harness.messages.send("after the end")
    assert harness.timer.apply_update(500) is False
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_counterpart_joined_is_announced_once(transport: FakeTransport) -> None:
    harness = _harness(transport)

    transport.push("participant_joined", {"bookingId": "booking-1", "userId": USER_ID})
    transport.push("participant_joined", {"bookingId": "booking-1", "userId": "expert-9"})
    transport.push("participant_joined", {"bookingId": "booking-1", "userId": "expert-9"})

    assert harness.notice_kinds().count(NoticeKind.COUNTERPART_JOINED) == 1
    assert harness.session.counterpart_present
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_session_started_event_activates(transport: FakeTransport) -> None:
    transport.responses["join_room"] = {"success": True, "sessionData": {"status": "waiting"}}
    transport.responses["get_missed_messages"] = {"messages": []}
    harness = _harness(transport)
    await harness.connection.connect()
    await harness.coordinator.join()
    assert harness.session.status is SessionStatus.JOINING
    assert transport.count("sync_session_timer") == 0

    transport.push("session_started", {"bookingId": "booking-1", "startedAt": "2024-05-01T10:00:00Z"})

    assert harness.session.status is SessionStatus.ACTIVE
    assert harness.session.started_at is not None
    assert harness.session.started_at.year == 2024
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_status_probe_ends_session_that_finished_while_offline(transport: FakeTransport) -> None:
    transport.responses["join_room"] = ACTIVE_JOIN_ACK
    transport.responses["get_missed_messages"] = {"messages": []}
    probe = FakeStatusProbe(None)
    harness = _harness(transport, status_probe=probe)
    await harness.connection.connect()
    await harness.coordinator.join()
    transport.sent.clear()

    probe.status = "completed"
    transport.drop()
    await wait_until(lambda: harness.session.status is SessionStatus.ENDED)

    assert probe.calls == ["booking-1"]
    assert harness.session.end_reason == "ended_while_disconnected"
    assert transport.count("join_room") == 0
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_end_session_follows_server_acknowledgment(transport: FakeTransport) -> None:
    harness = _harness(transport)
    await harness.connection.connect()

    transport.responses["end_session"] = {"success": False, "message": "not yet"}
    assert await harness.coordinator.end_session("done") is False
    assert harness.session.status is SessionStatus.PENDING

    transport.responses["end_session"] = True
    assert await harness.coordinator.end_session("done") is True
    assert harness.session.status is SessionStatus.ENDED
    assert harness.session.ended_by == USER_ID
    assert harness.session.end_reason == "done"
    await harness.close()


@pytest.mark.anyio("asyncio")
async def test_joining_another_room_leaves_the_previous_one(transport: FakeTransport) -> None:
    transport.responses["join_room"] = {"success": True}
    transport.responses["get_missed_messages"] = {"messages": []}
    first = _harness(transport, booking_id="booking-1")
    second = _harness(transport, booking_id="booking-2", connection=first.connection)
    await first.connection.connect()

    await first.coordinator.join()
    await second.coordinator.join()

    assert not first.coordinator.joined
    assert second.coordinator.joined
    assert transport.frames("leave_room") == [{"roomId": "room:booking-1", "bookingId": "booking-1"}]
    assert first.connection.room_owner is second.coordinator
    await second.close()
    await first.close()
    assert first.connection.room_owner is None


@pytest.mark.anyio("asyncio")
async def test_room_membership_is_tracked_per_connection() -> None:
    first_transport, second_transport = FakeTransport(), FakeTransport()
    for fake in (first_transport, second_transport):
        fake.responses["join_room"] = {"success": True}
        fake.responses["get_missed_messages"] = {"messages": []}
    first = _harness(first_transport, booking_id="booking-1")
    second = _harness(second_transport, booking_id="booking-2")
    await first.connection.connect()
    await second.connection.connect()

    await first.coordinator.join()
    await second.coordinator.join()

    assert first.coordinator.joined and second.coordinator.joined
    assert first_transport.count("leave_room") == 0
    assert first.connection.room_owner is first.coordinator
    assert second.connection.room_owner is second.coordinator
    await second.close()
    await first.close()
