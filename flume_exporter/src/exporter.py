"""
Prometheus exposition of the metric store.

:class:`StoreCollector` turns one :class:`~flume_exporter.src.store.MetricSnapshot`
into Prometheus metric families on every scrape. :class:`MetricsServer`
serves a registry holding that collector (plus the standard process
metrics) from ``prometheus_client``'s threaded HTTP server. Scrapes only
read the store; they never trigger API requests.

Counters whose names do not already end in ``_total`` (the usage counter)
are built as plain :class:`Metric` objects so their samples keep the bare
name ``flume_water_usage_liters``.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from wsgiref.simple_server import WSGIServer

from prometheus_client import CollectorRegistry, ProcessCollector, start_http_server
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    HistogramMetricFamily,
    Metric,
)
from prometheus_client.registry import Collector
from prometheus_client.utils import floatToGoString

from flume_exporter.src.metrics import METRIC_SPECS, MetricSpec
from flume_exporter.src.store import MetricSnapshot, MetricStore

logger = logging.getLogger(__name__)


class StoreCollector(Collector):
    """Custom collector reading a consistent snapshot of the store per scrape.

    Args:
        store: The metric store written by the fetch cycles.
    """

    def __init__(self, store: MetricStore) -> None:
        self._store = store

    def collect(self) -> Iterable[Metric]:
        snapshot = self._store.snapshot()
        for spec in METRIC_SPECS:
            yield _family(spec, snapshot)


def _family(spec: MetricSpec, snapshot: MetricSnapshot) -> Metric:
    """Build the metric family for *spec* from *snapshot*."""
    labels = list(spec.labels)

    if spec.type == "histogram":
        histogram = HistogramMetricFamily(spec.name, spec.documentation, labels=labels)
        for series_labels, hist in snapshot.histogram_series(spec.name):
            histogram.add_metric(
                [series_labels.get(name, "") for name in labels],
                buckets=[(floatToGoString(bound), count) for bound, count in hist.buckets],
                sum_value=hist.sum,
            )
        return histogram

    if spec.type == "counter" and not spec.name.endswith("_total"):
        # CounterMetricFamily would rename the samples to <name>_total.
        counter = Metric(spec.name, spec.documentation, "counter")
        for series_labels, value in snapshot.series(spec.name):
            counter.add_sample(spec.name, series_labels, value)
        return counter

    family: CounterMetricFamily | GaugeMetricFamily
    if spec.type == "counter":
        family = CounterMetricFamily(spec.name, spec.documentation, labels=labels)
    else:
        family = GaugeMetricFamily(spec.name, spec.documentation, labels=labels)
    for series_labels, value in snapshot.series(spec.name):
        family.add_metric([series_labels.get(name, "") for name in labels], value)
    return family


def build_registry(store: MetricStore) -> CollectorRegistry:
    """Create a registry with the store collector and process metrics."""
    registry = CollectorRegistry()
    registry.register(StoreCollector(store))
    ProcessCollector(registry=registry)
    return registry


class MetricsServer:
    """Threaded HTTP server exposing ``/metrics`` for one registry.

    Args:
        registry: Registry to expose.
        host: Interface to bind.
        port: TCP port to bind.
    """

    def __init__(self, registry: CollectorRegistry, host: str, port: int) -> None:
        self._registry = registry
        self._host = host
        self._port = port
        self._server: WSGIServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        """Bound port once started (useful when constructed with port 0)."""
        if self._server is not None:
            return self._server.server_port
        return self._port

    def start(self) -> None:
        """Bind and start serving in a daemon thread.

        Raises:
            OSError: If the address cannot be bound.
        """
        logger.info("Starting metrics server on %s:%d", self._host, self._port)
        self._server, self._thread = start_http_server(
            self._port, addr=self._host, registry=self._registry
        )

    def stop(self) -> None:
        """Stop serving and release the socket. Safe to call when not started."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        logger.info("Metrics server stopped")
