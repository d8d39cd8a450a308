"""In-process metric registry rendered in the Prometheus text format."""

from __future__ import annotations

from threading import Lock
from typing import Sequence

LabelValues = tuple[str, ...]


def _format_value(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(names: Sequence[str], values: LabelValues) -> str:
    if not names:
        return ""
    pairs = ",".join(f'{name}="{_escape(value)}"' for name, value in zip(names, values))
    return "{" + pairs + "}"


class Metric:
    """Base class holding one float sample per label value tuple."""

    metric_type = "untyped"

    def __init__(self, name: str, description: str, label_names: Sequence[str] = ()) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[LabelValues, float] = {}
        self._lock = Lock()

    def _key(self, values: Sequence[object]) -> LabelValues:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"Metric '{self.name}' expects labels {list(self.label_names)}, got {len(values)} values"
            )
        return tuple(str(value) for value in values)

    def _add(self, key: LabelValues, amount: float) -> None:
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def labels(self, *values: object) -> "BoundMetric":
        """Bind label values, Prometheus client style: ``metric.labels("a").inc()``."""

        return BoundMetric(self, self._key(values))

    def value(self, *values: object) -> float:
        """Return the current sample for the given label values (0 when unset)."""

        with self._lock:
            return self._samples.get(self._key(values), 0.0)

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.metric_type}"]
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            lines.append(f"{self.name} 0")
            return lines
        for key, value in samples:
            lines.append(f"{self.name}{_format_labels(self.label_names, key)} {_format_value(value)}")
        return lines


class Counter(Metric):
    metric_type = "counter"

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)


class Gauge(Metric):
    metric_type = "gauge"

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)

    def dec(self, amount: float = 1.0) -> None:
        self.labels().dec(amount)

    def set(self, value: float) -> None:
        self.labels().set(value)

    def _set(self, key: LabelValues, value: float) -> None:
        with self._lock:
            self._samples[key] = float(value)


class BoundMetric:
    """A metric bound to a concrete tuple of label values."""

    def __init__(self, metric: Metric, key: LabelValues) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Increment amount must be non-negative")
        self._metric._add(self._key, amount)

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, Gauge):
            raise AttributeError("Only gauges support dec()")
        if amount < 0:
            raise ValueError("Decrement amount must be non-negative")
        self._metric._add(self._key, -amount)

    def set(self, value: float) -> None:
        if not isinstance(self._metric, Gauge):
            raise AttributeError("Only gauges support set()")
        self._metric._set(self._key, value)


class MetricsRegistry:
    """Collects metrics and renders them for scraping."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = Lock()

    def _register(self, metric: Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> Counter:
        metric = Counter(name, description, label_names)
        self._register(metric)
        return metric

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> Gauge:
        metric = Gauge(name, description, label_names)
        self._register(metric)
        return metric

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


registry = MetricsRegistry()
