"""In-memory counters and distributions for the ticket core."""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import perf_counter
from typing import Any, Iterable, Iterator, Mapping, MutableMapping

LabelValues = tuple[str, ...]


class Metric(ABC):
    """Shared label handling for concrete metric types."""

    kind = "metric"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        self.name = name
        self.description = description
        self.label_names: tuple[str, ...] = tuple(label_names or ())
        self._lock = Lock()

    def _key(self, labels: Mapping[str, str] | None) -> LabelValues:
        labels = labels or {}
        unexpected = set(labels) - set(self.label_names)
        if unexpected:
            raise ValueError(f"Metric '{self.name}' got unexpected labels {sorted(unexpected)}")
        missing = [label for label in self.label_names if label not in labels]
        if missing:
            raise ValueError(f"Metric '{self.name}' is missing labels {missing}")
        return tuple(str(labels[label]) for label in self.label_names)

    @abstractmethod
    def _values(self) -> Mapping[LabelValues, Mapping[str, float]]:
        """Return the current values keyed by label tuple."""

    def samples(self) -> list[dict[str, Any]]:
        """Return one ``{"labels": ..., **values}`` dict per label set."""

        with self._lock:
            values = dict(self._values())
        return [{"labels": dict(zip(self.label_names, key)), **value} for key, value in values.items()]


class CounterMetric(Metric):
    kind = "counter"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._counts: MutableMapping[LabelValues, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, *, labels: Mapping[str, str] | None = None) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = self._key(labels)
        with self._lock:
            self._counts[key] += amount

    def value(self, labels: Mapping[str, str] | None = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._counts.get(key, 0.0)

    def _values(self) -> Mapping[LabelValues, Mapping[str, float]]:
        return {key: {"value": count} for key, count in self._counts.items()}


@dataclass
class _Summary:
    count: int = 0
    total: float = 0.0
    min: float | None = None
    max: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def as_dict(self) -> dict[str, float]:
        return {
            "count": float(self.count),
            "sum": self.total,
            "min": self.min or 0.0,
            "max": self.max or 0.0,
            "avg": self.total / self.count if self.count else 0.0,
        }


class DistributionMetric(Metric):
    kind = "distribution"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._summaries: MutableMapping[LabelValues, _Summary] = defaultdict(_Summary)

    def observe(self, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._summaries[key].observe(value)

    def _values(self) -> Mapping[LabelValues, Mapping[str, float]]:
        return {key: summary.as_dict() for key, summary in self._summaries.items()}


class MetricsRegistry:
    """Registry that holds metric instances by name."""

    def __init__(self) -> None:
        self._metrics: MutableMapping[str, Metric] = {}
        self._lock = Lock()

    def _get_or_create(self, name: str, metric_type: type[Metric], **kwargs: Any) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = metric_type(name, **kwargs)
                self._metrics[name] = metric
        if not isinstance(metric, metric_type):
            raise TypeError(f"Metric '{name}' already exists with a different type")
        return metric

    def counter(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> CounterMetric:
        return self._get_or_create(name, CounterMetric, description=description, label_names=label_names)

    def distribution(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> DistributionMetric:
        return self._get_or_create(name, DistributionMetric, description=description, label_names=label_names)

    def get(self, name: str) -> Metric:
        with self._lock:
            return self._metrics[name]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        return {
            metric.name: {"type": metric.kind, "description": metric.description, "samples": metric.samples()}
            for metric in metrics
        }

    @contextmanager
    def timer(self, name: str, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
        """Record the wall time of the block into an existing distribution."""

        metric = self.get(name)
        if not isinstance(metric, DistributionMetric):
            raise TypeError(f"Metric '{name}' is not a distribution")
        start = perf_counter()
        try:
            yield
        finally:
            metric.observe(perf_counter() - start, labels=labels)
