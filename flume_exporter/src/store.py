"""
Thread-safe store of current metric values.

The scheduler and API client write into the store from the asyncio loop;
the Prometheus scrape handler reads it from the HTTP server thread. Every
write and every snapshot takes the same lock, so a reader never sees a
group of series half-updated.

A series is identified by ``(metric name, sorted label pairs)``. Plain
values (gauges and counters) are kept as floats; histograms keep their own
bucket counts, sum and count.

Operations:
- set(name, labels, value): Last write wins.
- replace(series, names, match): Atomically swap every series of *names*
  whose labels contain *match* for the given replacement series.
- increment(name, labels, amount): Counter add; negative amounts rejected.
- observe(name, labels, value, buckets): Histogram observation.
- record(*ops): Apply several Increment/Observe ops as one unit.
- get(name, **labels) / snapshot(): Consistent reads.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import bisect
import math
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

LabelSet = tuple[tuple[str, str], ...]
SeriesKey = tuple[str, LabelSet]


def series_key(name: str, labels: Mapping[str, str] | None = None) -> SeriesKey:
    """Build the canonical key for *name* and *labels*."""
    items = sorted((k, str(v)) for k, v in (labels or {}).items())
    return name, tuple(items)


@dataclass(frozen=True)
class Increment:
    """Counter increment op for :meth:`MetricStore.record`."""

    name: str
    labels: Mapping[str, str]
    amount: float = 1.0


@dataclass(frozen=True)
class Observe:
    """Histogram observation op for :meth:`MetricStore.record`."""

    name: str
    labels: Mapping[str, str]
    value: float
    buckets: Sequence[float]


@dataclass(frozen=True)
class HistogramSnapshot:
    """Point-in-time histogram state with cumulative bucket counts."""

    buckets: tuple[tuple[float, int], ...]
    sum: float
    count: int


@dataclass
class _Histogram:
    bounds: tuple[float, ...]
    counts: list[int] = field(default_factory=list)
    total: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        idx = bisect.bisect_left(self.bounds, value)
        if idx < len(self.counts):
            self.counts[idx] += 1
        self.total += value
        self.count += 1

    def snapshot(self) -> HistogramSnapshot:
        cumulative = []
        running = 0
        for bound, count in zip(self.bounds, self.counts, strict=True):
            running += count
            cumulative.append((bound, running))
        return HistogramSnapshot(
            buckets=tuple(cumulative), sum=self.total, count=self.count
        )


@dataclass(frozen=True)
class MetricSnapshot:
    """Immutable copy of every series in the store at one instant."""

    values: Mapping[SeriesKey, float]
    histograms: Mapping[SeriesKey, HistogramSnapshot]

    def get(self, name: str, **labels: str) -> float | None:
        return self.values.get(series_key(name, labels))

    def histogram(self, name: str, **labels: str) -> HistogramSnapshot | None:
        return self.histograms.get(series_key(name, labels))

    def series(self, name: str) -> list[tuple[dict[str, str], float]]:
        """All ``(labels, value)`` pairs for plain series named *name*."""
        return [
            (dict(labels), value)
            for (series_name, labels), value in sorted(self.values.items())
            if series_name == name
        ]

    def histogram_series(self, name: str) -> list[tuple[dict[str, str], HistogramSnapshot]]:
        return [
            (dict(labels), hist)
            for (series_name, labels), hist in sorted(
                self.histograms.items(), key=lambda item: item[0]
            )
            if series_name == name
        ]


class MetricStore:
    """Map of current metric values guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[SeriesKey, float] = {}
        self._histograms: dict[SeriesKey, _Histogram] = {}

    def set(self, name: str, labels: Mapping[str, str], value: float) -> None:
        with self._lock:
            self._values[series_key(name, labels)] = float(value)

    def replace(
        self,
        series: Iterable[tuple[str, Mapping[str, str], float]],
        *,
        names: Iterable[str],
        match: Mapping[str, str],
    ) -> None:
        """Swap a group of series as one unit.

        Every existing series whose name is in *names* and whose labels
        include all of *match* is removed, then *series* is written. Readers
        see either the old group or the new one.

        Args:
            series: ``(name, labels, value)`` triples to write.
            names: Metric names the group covers.
            match: Label subset identifying the entity, e.g.
                ``{"location": "Kitchen"}``.
        """
        new_values = {
            series_key(name, labels): float(value) for name, labels, value in series
        }
        name_set = frozenset(names)
        match_items = {(k, str(v)) for k, v in match.items()}
        with self._lock:
            stale = [
                key
                for key in self._values
                if key[0] in name_set and match_items.issubset(key[1])
            ]
            for key in stale:
                del self._values[key]
            self._values.update(new_values)

    def increment(
        self, name: str, labels: Mapping[str, str], amount: float = 1.0
    ) -> None:
        """Add *amount* to a counter series.

        Raises:
            ValueError: If *amount* is negative or not finite.
        """
        self.record(Increment(name, labels, amount))

    def observe(
        self,
        name: str,
        labels: Mapping[str, str],
        value: float,
        buckets: Sequence[float],
    ) -> None:
        self.record(Observe(name, labels, value, buckets))

    def record(self, *ops: Increment | Observe) -> None:
        """Apply increments and observations together under one lock.

        All ops are validated first; if any is invalid nothing is applied.

        Raises:
            ValueError: If an increment amount is negative or not finite.
        """
        for op in ops:
            if isinstance(op, Increment) and (
                not math.isfinite(op.amount) or op.amount < 0
            ):
                raise ValueError(
                    f"counter {op.name} can only increase (got {op.amount})"
                )

        with self._lock:
            for op in ops:
                key = series_key(op.name, op.labels)
                if isinstance(op, Increment):
                    self._values[key] = self._values.get(key, 0.0) + op.amount
                else:
                    hist = self._histograms.get(key)
                    if hist is None:
                        hist = _Histogram(bounds=tuple(sorted(op.buckets)))
                        self._histograms[key] = hist
                    hist.observe(op.value)

    def get(self, name: str, **labels: str) -> float | None:
        with self._lock:
            return self._values.get(series_key(name, labels))

    def snapshot(self) -> MetricSnapshot:
        """Copy every series under the lock."""
        with self._lock:
            values = dict(self._values)
            histograms = {key: hist.snapshot() for key, hist in self._histograms.items()}
        return MetricSnapshot(
            values=MappingProxyType(values),
            histograms=MappingProxyType(histograms),
        )
