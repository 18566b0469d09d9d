"""Billed-time display kept in line with the server's authoritative timer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime
from typing import Callable

from app.config import Settings
from app.monitoring.metrics import timer_updates_total
from app.schemas.events import SessionTimerUpdate, SyncSessionTimer

from ..errors import TransportUnavailableError
from ..realtime.connection import ConnectionManager, Subscription
from .models import Session, TimerState

logger = logging.getLogger(__name__)

TickListener = Callable[[float], None]


class TimerSync:
    """Derives the displayed elapsed time from the last server baseline.

    The server pushes ``(elapsed, budget, sequence)`` updates. The newest one
    becomes the baseline and the display extrapolates from it with the local
    clock, so the value keeps moving between updates and across periods the
    app spent in the background. The default clock is wall-clock time so
    device sleep is accounted for as well.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        session: Session,
        *,
        tick_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._connection = connection
        self._session = session
        self._tick_interval = tick_interval
        self._clock = clock
        self._state = TimerState()
        self._listeners: list[TickListener] = []
        self._budget_listeners: list[Callable[[float], None]] = []
        self._budget_notified = False
        self._stopped = False
        self._subscription: Subscription | None = None
        self._tick_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        connection: ConnectionManager,
        session: Session,
        settings: Settings,
        *,
        clock: Callable[[], float] | None = None,
    ) -> "TimerSync":
        return cls(
            connection,
            session,
            tick_interval=settings.timer_tick_interval_seconds,
            clock=clock or time.time,
        )

    @property
    def state(self) -> TimerState:
        return TimerState(
            elapsed_seconds=self._state.elapsed_seconds,
            budget_seconds=self._state.budget_seconds,
            is_active=self._state.is_active,
            server_baseline_at=self._state.server_baseline_at,
            sequence=self._state.sequence,
            authoritative=self._state.authoritative,
        )

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._connection.on(SessionTimerUpdate, self._on_timer_update)

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._listeners.clear()
        self._budget_listeners.clear()
        await self._cancel_tick()

    def subscribe(self, listener: TickListener) -> Subscription:
        self._listeners.append(listener)

        def cleanup() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription("timer", cleanup)

    def on_budget_exhausted(self, callback: Callable[[float], None]) -> Subscription:
        self._budget_listeners.append(callback)

        def cleanup() -> None:
            if callback in self._budget_listeners:
                self._budget_listeners.remove(callback)

        return Subscription("timer-budget", cleanup)

    # ------------------------------------------------------------------
    # Server updates
    # ------------------------------------------------------------------
    def apply_update(
        self,
        elapsed: float,
        budget: float | None = None,
        *,
        sequence: int | None = None,
    ) -> bool:
        """Adopt a server update unless it is older than the current baseline.

        Updates are ordered by ``sequence`` when both sides carry one and by
        the reported elapsed value otherwise. Duplicates are discarded too.
        A baseline derived locally from ``started_at`` never makes an update
        stale.
        """

        if self._stopped:
            return False
        state = self._state
        if state.authoritative:
            if sequence is not None and state.sequence is not None:
                stale = sequence <= state.sequence
            else:
                stale = elapsed <= state.elapsed_seconds
            if stale:
                timer_updates_total.labels("stale").inc()
                logger.debug(
                    "Discarded stale timer update",
                    extra={"elapsed": elapsed, "sequence": sequence, "current_sequence": state.sequence},
                )
                return False

        previous_budget = state.budget_seconds
        state.elapsed_seconds = max(0.0, float(elapsed))
        if budget is not None:
            state.budget_seconds = float(budget)
        state.server_baseline_at = self._clock()
        if sequence is not None:
            state.sequence = sequence
        state.authoritative = True
        state.is_active = True
        if (
            self._budget_notified
            and state.budget_seconds is not None
            and (previous_budget is None or state.budget_seconds > previous_budget)
        ):
            self._budget_notified = False
        timer_updates_total.labels("applied").inc()
        self.elapsed()
        self._ensure_ticking()
        return True

    def _on_timer_update(self, event: SessionTimerUpdate) -> None:
        if event.booking_id != self._session.booking_id or self._session.is_ended:
            return
        self.apply_update(event.elapsed, event.budget, sequence=event.sequence)

    async def request_sync(self) -> bool:
        try:
            await self._connection.emit(
                SyncSessionTimer(
                    booking_id=self._session.booking_id,
                    session_id=self._session.session_id,
                )
            )
        except TransportUnavailableError:
            logger.debug("Timer sync request not sent", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Local derivation
    # ------------------------------------------------------------------
    def activate(
        self,
        started_at: datetime | None = None,
        *,
        budget: float | None = None,
    ) -> None:
        """Start counting once the session becomes active.

        A server-assigned ``started_at`` yields a baseline when no timer
        update has arrived yet; without either the display stays frozen.
        """

        if self._stopped:
            return
        state = self._state
        if budget is not None and state.budget_seconds is None:
            state.budget_seconds = float(budget)
        if state.server_baseline_at is None and started_at is not None:
            now = self._clock()
            state.elapsed_seconds = max(0.0, now - started_at.timestamp())
            state.server_baseline_at = now
        if state.server_baseline_at is not None:
            state.is_active = True
            self._ensure_ticking()

    def elapsed(self) -> float:
        """Displayed elapsed seconds, capped at the budget."""

        state = self._state
        value = state.elapsed_seconds
        if state.is_active and state.server_baseline_at is not None:
            value += max(0.0, self._clock() - state.server_baseline_at)
        if state.budget_seconds is not None and value >= state.budget_seconds:
            value = state.budget_seconds
            if state.is_active:
                self._exhaust_budget()
        return value

    def remaining(self) -> float | None:
        if self._state.budget_seconds is None:
            return None
        return max(0.0, self._state.budget_seconds - self.elapsed())

    def stop(self) -> None:
        """Freeze the displayed value; later server updates are ignored."""

        if self._stopped:
            return
        self._state.elapsed_seconds = self.elapsed()
        self._state.is_active = False
        self._stopped = True
        self._cancel_tick_nowait()

    def _exhaust_budget(self) -> None:
        state = self._state
        # Pending server confirmation; a later update with more budget reactivates.
        if state.budget_seconds is not None:
            state.elapsed_seconds = state.budget_seconds
        state.is_active = False
        self._cancel_tick_nowait()
        if self._budget_notified:
            return
        self._budget_notified = True
        logger.info("Session budget exhausted", extra={"booking_id": self._session.booking_id})
        for callback in list(self._budget_listeners):
            try:
                callback(state.elapsed_seconds)
            except Exception:
                logger.exception("Budget listener failed")

    def _ensure_ticking(self) -> None:
        if not self._state.is_active:
            return
        if self._tick_task is not None and not self._tick_task.done():
            return
        try:
            self._tick_task = asyncio.get_running_loop().create_task(
                self._tick(), name="consultsync-timer-tick"
            )
        except RuntimeError:
            # No running loop; the display is still derivable on demand.
            self._tick_task = None

    async def _tick(self) -> None:
        while self._state.is_active:
            await asyncio.sleep(self._tick_interval)
            value = self.elapsed()
            for listener in list(self._listeners):
                try:
                    listener(value)
                except Exception:
                    logger.exception("Timer listener failed")

    def _cancel_tick_nowait(self) -> None:
        task = self._tick_task
        self._tick_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _cancel_tick(self) -> None:
        task = self._tick_task
        self._tick_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["TickListener", "TimerSync"]
