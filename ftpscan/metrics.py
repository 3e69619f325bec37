"""Small in-process metrics: counters, histograms and a registry."""

from __future__ import annotations

import threading
from bisect import bisect_left
from dataclasses import dataclass, field
from itertools import accumulate
from typing import Iterable, Optional, Union

COUNTER = "counter"
HISTOGRAM = "histogram"

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class DuplicateMetricError(ValueError):
    """A metric with the same name and labels is already registered."""


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` bucket bounds starting at ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    bound = float(start)
    for _ in range(count):
        buckets.append(bound)
        bound *= factor
    return buckets


@dataclass
class MetricSample:
    """One labelled value of a metric family."""

    labels: dict[str, str]
    value: float = 0.0
    count: int = 0
    buckets: tuple[tuple[float, int], ...] = ()


@dataclass
class MetricFamily:
    """All samples that share a metric name."""

    name: str
    description: str
    kind: str
    samples: list[MetricSample] = field(default_factory=list)


class Counter:
    """A value that only goes up."""

    kind = COUNTER

    def __init__(self, name: str, description: str = "", labels: Optional[dict[str, str]] = None):
        self.name = name
        self.description = description
        self.labels = dict(labels or {})
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def inc(self) -> None:
        self.add(1.0)

    def add(self, amount: float) -> None:
        if amount < 0:
            raise ValueError("a counter cannot decrease")
        with self._lock:
            self._value += amount

    def _sample(self) -> MetricSample:
        return MetricSample(labels=dict(self.labels), value=self._value)


class Histogram:
    """Counts observations into cumulative buckets with upper bounds."""

    kind = HISTOGRAM

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: Iterable[float] = DEFAULT_BUCKETS,
        labels: Optional[dict[str, str]] = None,
    ):
        bounds = [float(b) for b in buckets]
        if bounds and bounds[-1] == float("inf"):
            bounds.pop()
        if any(low >= high for low, high in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be strictly increasing")
        self.name = name
        self.description = description
        self.labels = dict(labels or {})
        self._bounds = tuple(bounds)
        self._counts = [0] * len(bounds)
        self._count = 0
        self._sum = 0.0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def buckets(self) -> tuple[tuple[float, int], ...]:
        """Upper bound and cumulative count of each bucket."""
        return tuple(zip(self._bounds, accumulate(self._counts)))

    def observe(self, value: float) -> None:
        slot = bisect_left(self._bounds, value)
        with self._lock:
            if slot < len(self._counts):
                self._counts[slot] += 1
            self._count += 1
            self._sum += value

    def _sample(self) -> MetricSample:
        return MetricSample(
            labels=dict(self.labels), value=self._sum, count=self._count, buckets=self.buckets
        )


Metric = Union[Counter, Histogram]


class MetricsRegistry:
    """Holds registered metrics and gathers their current values."""

    def __init__(self) -> None:
        self._metrics: dict[str, list[Metric]] = {}
        self._lock = threading.Lock()

    def register(self, *args: Metric) -> None:
        """Register all given metrics, or none of them if any clashes."""
        with self._lock:
            staged = {name: list(metrics) for name, metrics in self._metrics.items()}
            for metric in args:
                existing = staged.setdefault(metric.name, [])
                if existing and (
                    existing[0].kind != metric.kind or existing[0].description != metric.description
                ):
                    raise DuplicateMetricError(
                        f"metric {metric.name!r} is already registered with another type or help"
                    )
                if any(other.labels == metric.labels for other in existing):
                    raise DuplicateMetricError(
                        f"metric {metric.name!r} with labels {metric.labels} is already registered"
                    )
                existing.append(metric)
            self._metrics = staged

    def gather(self) -> list[MetricFamily]:
        """Return the families sorted by name, samples sorted by labels."""
        with self._lock:
            snapshot = {name: list(metrics) for name, metrics in self._metrics.items()}
        families = []
        for name in sorted(snapshot):
            metrics = snapshot[name]
            samples = sorted(
                (metric._sample() for metric in metrics),
                key=lambda sample: sorted(sample.labels.items()),
            )
            families.append(
                MetricFamily(
                    name=name,
                    description=metrics[0].description,
                    kind=metrics[0].kind,
                    samples=samples,
                )
            )
        return families