from __future__ import annotations

import pytest

from app.models.enums import ConnectionPhase
from app.monitoring.registry import MetricsRegistry


def test_counter_labels_accumulate_and_render_enum_values() -> None:
    registry = MetricsRegistry()
    counter = registry.counter("attempts_total", "Attempts.", label_names=("outcome",))

    counter.labels("connected").inc()
    counter.labels("connected").inc(2)
    counter.labels(ConnectionPhase.FAILED).inc()

    assert counter.value("connected") == 3
    assert counter.value("failed") == 1
    assert counter.value("never") == 0


def test_labels_are_validated() -> None:
    registry = MetricsRegistry()
    counter = registry.counter("events_total", "Events.", label_names=("event", "direction"))

    with pytest.raises(ValueError):
        counter.labels("only-one")
    with pytest.raises(ValueError):
        counter.inc(event="x")
    with pytest.raises(ValueError):
        counter.labels("x", "in").inc(-1)


def test_gauge_set_inc_dec() -> None:
    registry = MetricsRegistry()
    gauge = registry.gauge("phase", "Phase.", label_names=("phase",))

    gauge.labels("connected").set(1)
    gauge.labels("connected").inc()
    gauge.labels("connected").dec(0.5)

    assert gauge.value("connected") == 1.5
    counter = registry.counter("plain_total", "Plain.")
    with pytest.raises(AttributeError):
        counter.labels().set(1)


def test_snapshot_and_reset() -> None:
    registry = MetricsRegistry()
    counter = registry.counter("sends_total", "Sends.", label_names=("outcome",))
    counter.labels("sent").inc()

    snapshot = registry.snapshot()
    assert snapshot == {
        "sends_total": {
            "type": "counter",
            "description": "Sends.",
            "samples": [{"labels": {"outcome": "sent"}, "value": 1.0}],
        }
    }

    registry.reset()
    assert registry.snapshot()["sends_total"]["samples"] == []
    assert registry.get("sends_total") is counter


def test_duplicate_registration_is_rejected() -> None:
    registry = MetricsRegistry()
    registry.counter("dup_total", "Dup.")
    with pytest.raises(ValueError):
        registry.gauge("dup_total", "Dup again.")
