"""Join a consultation room from the command line and report what happens."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CLIENT_PATH = Path(__file__).resolve().parents[1] / "client"
for path in (CLIENT_PATH, CLIENT_PATH / "src"):
    if path.exists() and str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.config import Settings  # noqa: E402
from app.main import build_client, configure_logging  # noqa: E402
from app.models.enums import SessionKind  # noqa: E402
from app.monitoring.registry import registry  # noqa: E402
from consultsync.errors import ConsultSyncError  # noqa: E402
from consultsync.realtime.credentials import StaticCredentials  # noqa: E402
from consultsync.session.models import Message, SessionNotice  # noqa: E402


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MonitorResult:
    """What was observed while the monitor stayed in the room."""

    joined: bool = False
    join_latency: float | None = None
    notices: Counter = field(default_factory=Counter)
    messages_seen: int = 0
    final_status: str | None = None
    elapsed_seconds: float | None = None
    duration: float = 0.0
    error: str | None = None


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {"socket_url": args.url, "socket_path": args.path}
    if args.log_level:
        overrides["log_level"] = args.log_level
    return Settings(**overrides)


async def run_monitor(args: argparse.Namespace) -> dict[str, Any]:
    """Entry point used by the CLI wrapper."""

    settings = settings_from_args(args)
    credentials = StaticCredentials(user_id=args.user_id, token=args.token)
    client = build_client(credentials, settings)
    scope = client.open_session(
        args.booking_id,
        args.session_id,
        kind=SessionKind(args.kind),
    )
    result = MonitorResult()
    started = time.perf_counter()
    finished = asyncio.Event()

    def on_notice(notice: SessionNotice) -> None:
        result.notices[notice.kind.value] += 1
        logger.info("notice %s detail=%s blocking=%s", notice.kind.value, notice.detail, notice.blocking)
        if notice.kind.value == "ended":
            finished.set()

    def on_messages(messages: list[Message]) -> None:
        if len(messages) > result.messages_seen:
            for message in messages[result.messages_seen:]:
                logger.info("message %s from %s: %s", message.id, message.sender_id, message.content)
            result.messages_seen = len(messages)

    scope.start()
    scope.subscribe(on_notice)
    scope.messages.subscribe(on_messages)

    def _cancel(signum: int, _frame: Any) -> None:  # pragma: no cover - signal handling
        logger.warning("received signal %s, leaving room", signum)
        finished.set()

    handlers: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):  # pragma: no cover - platform specific
        with contextlib.suppress(ValueError):
            handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, _cancel)

    try:
        await client.connection.connect()
        await scope.join()
        result.joined = scope.coordinator.joined
        result.join_latency = time.perf_counter() - started
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(finished.wait(), timeout=args.duration)
    except ConsultSyncError as exc:
        result.error = f"{type(exc).__name__}: {exc}"
        logger.warning("monitor failed: %s", result.error)
    finally:
        snapshot = scope.snapshot()
        result.final_status = snapshot.session.status.value
        result.elapsed_seconds = snapshot.elapsed_seconds
        await scope.close()
        await client.close()
        result.duration = time.perf_counter() - started
        for signum, previous in handlers.items():  # pragma: no cover - best effort cleanup
            with contextlib.suppress(ValueError):
                signal.signal(signum, previous)

    return {
        "joined": result.joined,
        "join_latency": result.join_latency,
        "notices": dict(result.notices),
        "messages_seen": result.messages_seen,
        "final_status": result.final_status,
        "elapsed_seconds": result.elapsed_seconds,
        "duration": result.duration,
        "error": result.error,
        "metrics": registry.snapshot(),
    }


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("url", help="Realtime server URL, e.g. ws://localhost:8000")
    parser.add_argument("--path", default="/socket", help="Socket endpoint path on the server")
    parser.add_argument("--token", required=True, help="Bearer token used for authentication")
    parser.add_argument("--user-id", required=True, help="Identifier of the signed-in user")
    parser.add_argument("--booking-id", required=True, help="Booking whose room should be joined")
    parser.add_argument("--session-id", required=True, help="Session identifier for the booking")
    parser.add_argument(
        "--kind",
        default=SessionKind.CHAT.value,
        choices=[kind.value for kind in SessionKind],
        help="Consultation kind",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=60.0,
        help="How long to stay in the room unless the session ends first (seconds)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit the summary as JSON for machine processing",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity level (defaults to CONSULTSYNC_LOG_LEVEL)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    configure_logging(settings_from_args(args).log_level)

    try:
        summary = asyncio.run(run_monitor(args))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        logger.warning("interrupted by user")
        return 130

    if args.json:
        print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    else:
        print("\n=== Session Monitor Summary ===")
        for key, value in summary.items():
            if key == "metrics":
                continue
            print(f"{key}: {value}")
    return 0 if summary["error"] is None else 1


if __name__ == "__main__":
    raise SystemExit(main())
