"""Metric definitions for the realtime connection and session components."""

from __future__ import annotations

import time

from .registry import registry


connection_attempts_total = registry.counter(
    "connection_attempts_total",
    "Connection attempts made by the connection manager.",
    label_names=("outcome",),
)

connection_phase = registry.gauge(
    "connection_phase",
    "Current connection phase (1 for the active phase, 0 otherwise).",
    label_names=("phase",),
)

connection_reconnects_scheduled_total = registry.counter(
    "connection_reconnects_scheduled_total",
    "Automatic reconnects scheduled after an unexpected disconnect.",
    label_names=("reason",),
)

heartbeat_failures_total = registry.counter(
    "heartbeat_failures_total",
    "Heartbeat pings that could not be delivered.",
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Realtime events handled at the transport boundary.",
    label_names=("event", "direction", "outcome"),
)

message_sends_total = registry.counter(
    "message_sends_total",
    "Outgoing chat messages by final delivery outcome.",
    label_names=("outcome",),
)

message_dedup_total = registry.counter(
    "message_dedup_total",
    "Inbound messages discarded as duplicates, by matching tier.",
    label_names=("tier", "source"),
)

recovery_requests_total = registry.counter(
    "recovery_requests_total",
    "Missed-message recovery requests by trigger and outcome.",
    label_names=("trigger", "outcome"),
)

timer_updates_total = registry.counter(
    "timer_updates_total",
    "Server timer updates applied or discarded as stale.",
    label_names=("outcome",),
)

signals_total = registry.counter(
    "signals_total",
    "WebRTC signalling envelopes relayed, by type and direction.",
    label_names=("type", "direction"),
)

ice_restarts_total = registry.counter(
    "ice_restarts_total",
    "ICE restart attempts by outcome.",
    label_names=("outcome",),
)

session_transitions_total = registry.counter(
    "session_transitions_total",
    "Session lifecycle transitions observed by the coordinator.",
    label_names=("status",),
)

client_started_timestamp = registry.gauge(
    "client_started_timestamp",
    "Unix timestamp when the client wiring was built.",
)


def mark_initial_state() -> None:
    """Record the start time so diagnostics dumps always carry a baseline."""

    client_started_timestamp.set(time.time())
