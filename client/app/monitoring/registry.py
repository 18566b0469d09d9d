"""In-process metrics registry used for client diagnostics."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Any, Mapping, Sequence


class MetricsRegistry:
    """Collects counters and gauges keyed by name."""

    def __init__(self) -> None:
        self._metrics: dict[str, _MetricBase] = {}
        self._lock = Lock()

    def register(self, metric: "_MetricBase") -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "CounterMetric":
        metric = CounterMetric(name=name, description=description, label_names=tuple(label_names))
        self.register(metric)
        return metric

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "GaugeMetric":
        metric = GaugeMetric(name=name, description=description, label_names=tuple(label_names))
        self.register(metric)
        return metric

    def get(self, name: str) -> "_MetricBase | None":
        return self._metrics.get(name)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return a JSON friendly view of every registered metric.

        Each entry carries the metric type, its description and a list of
        ``{"labels": {...}, "value": float}`` samples sorted by label values.
        """

        result: dict[str, dict[str, Any]] = {}
        for name in sorted(self._metrics):
            metric = self._metrics[name]
            result[name] = {
                "type": metric.metric_type,
                "description": metric.description,
                "samples": [
                    {"labels": dict(zip(metric.label_names, sample.labels, strict=False)), "value": sample.value}
                    for sample in metric.samples()
                ],
            }
        return result

    def reset(self) -> None:
        """Drop every recorded sample while keeping the metric definitions."""

        for metric in self._metrics.values():
            metric.clear()


@dataclass(slots=True)
class _MetricSample:
    labels: tuple[str, ...]
    value: float


class _MetricBase:
    """Shared base for metric implementations."""

    metric_type: str = "untyped"

    def __init__(self, *, name: str, description: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def _update(self, amount: float, labels: tuple[str, ...]) -> None:
        raise NotImplementedError

    def samples(self) -> list[_MetricSample]:
        with self._lock:
            samples = [
                _MetricSample(labels=labels, value=value)
                for labels, value in self._samples.items()
            ]
        samples.sort(key=lambda sample: sample.labels)
        return samples

    def value(self, *label_values: object) -> float:
        """Return the current value for the given label values (0 when unseen)."""

        key = tuple(str(item) for item in label_values)
        with self._lock:
            return self._samples.get(key, 0.0)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()

    def _normalize_labels(self, provided: Mapping[str, object]) -> tuple[str, ...]:
        if set(provided) != set(self.label_names):
            expected = ", ".join(self.label_names) or "<none>"
            received = ", ".join(sorted(provided)) or "<none>"
            raise ValueError(
                f"Metric '{self.name}' expected labels [{expected}] but received [{received}]"
            )
        return tuple(str(provided[label]) for label in self.label_names)

    # metric.labels("connected").inc()
    def labels(self, *values: object) -> "_LabeledMetricProxy":
        if len(values) != len(self.label_names):
            expected = ", ".join(self.label_names) or "<none>"
            raise ValueError(
                f"Metric '{self.name}' expected {len(self.label_names)} label values [{expected}] but received {len(values)}"
            )
        return _LabeledMetricProxy(self, tuple(str(_label_value(v)) for v in values))


def _label_value(value: object) -> object:
    # str-valued enums render as their value rather than "Class.MEMBER"
    return getattr(value, "value", value)


class CounterMetric(_MetricBase):
    metric_type = "counter"

    def inc(self, *, amount: float = 1.0, **labels: object) -> None:
        if amount < 0:
            raise ValueError("Counters cannot be incremented by negative values")
        label_values = self._normalize_labels(labels)
        self._update(amount, label_values)

    def _update(self, amount: float, labels: tuple[str, ...]) -> None:
        with self._lock:
            self._samples[labels] = self._samples.get(labels, 0.0) + amount


class GaugeMetric(_MetricBase):
    metric_type = "gauge"

    def set(self, value: float, **labels: object) -> None:
        label_values = self._normalize_labels(labels)
        with self._lock:
            self._samples[label_values] = float(value)

    def inc(self, *, amount: float = 1.0, **labels: object) -> None:
        if amount < 0:
            raise ValueError("Increment amount must be non-negative")
        label_values = self._normalize_labels(labels)
        self._update(amount, label_values)

    def dec(self, *, amount: float = 1.0, **labels: object) -> None:
        if amount < 0:
            raise ValueError("Decrement amount must be non-negative")
        label_values = self._normalize_labels(labels)
        self._update(-amount, label_values)

    def _update(self, amount: float, labels: tuple[str, ...]) -> None:
        with self._lock:
            self._samples[labels] = self._samples.get(labels, 0.0) + amount


# Shared registry instance used across the client.
registry = MetricsRegistry()


class _LabeledMetricProxy:
    """Metric bound to a concrete tuple of label values."""

    def __init__(self, metric: _MetricBase, label_values: tuple[str, ...]) -> None:
        self._metric = metric
        self._label_values = label_values

    def _kwargs(self) -> dict[str, str]:
        return dict(zip(self._metric.label_names, self._label_values, strict=False))

    def inc(self, amount: float = 1.0) -> None:
        if isinstance(self._metric, (CounterMetric, GaugeMetric)):
            self._metric.inc(amount=amount, **self._kwargs())
        else:
            self._metric._update(amount, self._label_values)

    def dec(self, amount: float = 1.0) -> None:
        if isinstance(self._metric, GaugeMetric):
            self._metric.dec(amount=amount, **self._kwargs())
        else:
            raise AttributeError("Only gauges support dec()")

    def set(self, value: float) -> None:
        if isinstance(self._metric, GaugeMetric):
            self._metric.set(value, **self._kwargs())
        else:
            raise AttributeError("Only gauges support set()")
