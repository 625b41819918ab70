"""In-process metrics for stage observability.

The pipeline needs two shapes: counters (invocations, outcomes) and
latency histograms. Labels are passed as keyword arguments on every call,
so there is no separate "child" object to hold on to::

    registry = MetricsRegistry()
    registry.counter("download_outcomes_total").inc(outcome="success")
    registry.histogram("download_duration_seconds").observe(0.4)

:meth:`MetricsRegistry.samples` flattens everything into :class:`Sample`
rows for an exporter. Exporters themselves live outside this package.
"""

import threading
from dataclasses import dataclass, field

LabelKey = tuple[tuple[str, str], ...]

STAGE_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0, 60.0, 300.0)


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


@dataclass(frozen=True)
class Sample:
    """One exported value."""

    name: str
    kind: str
    labels: dict[str, str]
    value: float


@dataclass
class HistogramSnapshot:
    count: int = 0
    total: float = 0.0
    # upper bound -> observations <= bound (cumulative)
    buckets: dict[float, int] = field(default_factory=dict)


class Counter:
    """Monotonic counter keyed by label set."""

    kind = "counter"

    def __init__(self, name: str, help: str = ""):
        self.name = name
        self.help = help
        self._lock = threading.Lock()
        self._values: dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        key = _key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(_key(labels), 0.0)

    @property
    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())

    def samples(self) -> list[Sample]:
        with self._lock:
            return [Sample(self.name, self.kind, dict(k), v) for k, v in self._values.items()]


class Histogram:
    """Latency histogram with cumulative buckets."""

    kind = "histogram"

    def __init__(self, name: str, help: str = "", buckets: tuple[float, ...] = STAGE_BUCKETS):
        self.name = name
        self.help = help
        self.bounds = tuple(sorted(buckets))
        self._lock = threading.Lock()
        self._series: dict[LabelKey, HistogramSnapshot] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = _key(labels)
        with self._lock:
            snap = self._series.get(key)
            if snap is None:
                snap = self._series[key] = HistogramSnapshot(buckets=dict.fromkeys(self.bounds, 0))
            snap.count += 1
            snap.total += value
            for bound in self.bounds:
                if value <= bound:
                    snap.buckets[bound] += 1

    def snapshot(self, **labels: str) -> HistogramSnapshot:
        with self._lock:
            snap = self._series.get(_key(labels))
            if snap is None:
                return HistogramSnapshot(buckets=dict.fromkeys(self.bounds, 0))
            return HistogramSnapshot(snap.count, snap.total, dict(snap.buckets))

    def samples(self) -> list[Sample]:
        rows: list[Sample] = []
        with self._lock:
            for key, snap in self._series.items():
                labels = dict(key)
                rows.append(Sample(f"{self.name}_count", self.kind, labels, snap.count))
                rows.append(Sample(f"{self.name}_sum", self.kind, labels, snap.total))
                for bound, hits in snap.buckets.items():
                    rows.append(Sample(f"{self.name}_bucket", self.kind, {**labels, "le": str(bound)}, hits))
        return rows


class MetricsRegistry:
    """Get-or-create store for named metrics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: dict[str, Counter | Histogram] = {}

    def _get_or_create(self, name: str, factory):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = factory()
            return metric

    def counter(self, name: str, help: str = "") -> Counter:
        metric = self._get_or_create(name, lambda: Counter(name, help))
        if not isinstance(metric, Counter):
            raise TypeError(f"metric {name} is a {metric.kind}, not a counter")
        return metric

    def histogram(self, name: str, help: str = "", buckets: tuple[float, ...] = STAGE_BUCKETS) -> Histogram:
        metric = self._get_or_create(name, lambda: Histogram(name, help, buckets))
        if not isinstance(metric, Histogram):
            raise TypeError(f"metric {name} is a {metric.kind}, not a histogram")
        return metric

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics)

    def samples(self) -> list[Sample]:
        with self._lock:
            metrics = list(self._metrics.values())
        return [sample for metric in metrics for sample in metric.samples()]


_registry = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    """Process-wide registry used when no registry is injected."""
    return _registry


__all__ = [
    "Counter",
    "Histogram",
    "HistogramSnapshot",
    "MetricsRegistry",
    "STAGE_BUCKETS",
    "Sample",
    "get_metrics_registry",
]
