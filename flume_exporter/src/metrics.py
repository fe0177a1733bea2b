"""
Metric names and the functions that publish Flume state into the store.

Each publishing function writes one entity's series as a unit:
:func:`publish_bridge` and :func:`publish_sensor` replace every series of a
device location at once, and :func:`record_request` applies the duration,
request and error observations of one API call together.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import Histogram

from flume_exporter.src.models import Bridge, Sensor
from flume_exporter.src.store import Increment, MetricStore, Observe

BRIDGE_CONNECTED = "flume_water_bridge_connected"
BRIDGE_PRODUCT = "flume_water_bridge_product_info"
SENSOR_BATTERY = "flume_water_sensor_battery_info"
SENSOR_CONNECTED = "flume_water_sensor_connected"
SENSOR_PRODUCT = "flume_water_sensor_product_info"
USAGE = "flume_water_usage_liters"
REQUEST_DURATION = "flume_water_http_request_duration_seconds"
REQUESTS = "flume_water_http_requests_total"
REQUEST_ERRORS = "flume_water_http_request_errors_total"
REQUESTS_RATE_LIMITED = "flume_water_http_requests_rate_limited_total"

DURATION_BUCKETS: tuple[float, ...] = tuple(Histogram.DEFAULT_BUCKETS)


@dataclass(frozen=True)
class MetricSpec:
    """Exposition metadata for one metric family."""

    name: str
    documentation: str
    type: str
    labels: tuple[str, ...]


METRIC_SPECS: tuple[MetricSpec, ...] = (
    MetricSpec(BRIDGE_CONNECTED, "Flume bridge is connected to Flume", "gauge", ("location",)),
    MetricSpec(BRIDGE_PRODUCT, "Flume bridge product", "gauge", ("location", "product")),
    MetricSpec(SENSOR_BATTERY, "Flume sensor battery level", "gauge", ("location",)),
    MetricSpec(SENSOR_CONNECTED, "Flume sensor is connected to Flume", "gauge", ("location",)),
    MetricSpec(SENSOR_PRODUCT, "Flume sensor product", "gauge", ("location", "product")),
    MetricSpec(USAGE, "Water usage in liters", "counter", ("location",)),
    MetricSpec(
        REQUEST_DURATION, "Flume API request durations", "histogram", ("request_name",)
    ),
    MetricSpec(
        REQUESTS, "Number of HTTP requests made to the Flume API", "counter", ("request_name",)
    ),
    MetricSpec(
        REQUEST_ERRORS,
        "Number of HTTP request errors returned by the Flume API",
        "counter",
        ("request_name",),
    ),
    MetricSpec(
        REQUESTS_RATE_LIMITED,
        "Number of Flume API requests refused by the local rate limiter",
        "counter",
        ("request_name",),
    ),
)


def publish_bridge(store: MetricStore, bridge: Bridge) -> None:
    """Replace a bridge's connectivity and product series in one step."""
    location = {"location": bridge.location}
    store.replace(
        [
            (BRIDGE_CONNECTED, location, 1.0 if bridge.connected else 0.0),
            (BRIDGE_PRODUCT, {**location, "product": bridge.product}, 1.0),
        ],
        names=(BRIDGE_CONNECTED, BRIDGE_PRODUCT),
        match=location,
    )


def publish_sensor(store: MetricStore, sensor: Sensor) -> None:
    """Replace a sensor's connectivity, product and battery series in one step.

    The usage counter is not touched; it only moves through
    :func:`add_usage`.
    """
    location = {"location": sensor.location}
    store.replace(
        [
            (SENSOR_CONNECTED, location, 1.0 if sensor.connected else 0.0),
            (SENSOR_PRODUCT, {**location, "product": sensor.product}, 1.0),
            (SENSOR_BATTERY, location, sensor.battery_level.gauge_value),
        ],
        names=(SENSOR_CONNECTED, SENSOR_PRODUCT, SENSOR_BATTERY),
        match=location,
    )


def add_usage(store: MetricStore, location: str, liters: float) -> None:
    """Add a usage delta to a sensor location's counter.

    Raises:
        ValueError: If *liters* is negative.
    """
    store.increment(USAGE, {"location": location}, liters)


def record_request(
    store: MetricStore, request_name: str, duration_s: float, *, failed: bool
) -> None:
    """Record one attempted API request."""
    labels = {"request_name": request_name}
    ops: list[Increment | Observe] = [
        Observe(REQUEST_DURATION, labels, duration_s, DURATION_BUCKETS),
        Increment(REQUESTS, labels),
    ]
    if failed:
        ops.append(Increment(REQUEST_ERRORS, labels))
    store.record(*ops)


def record_rate_limited(store: MetricStore, request_name: str) -> None:
    store.increment(REQUESTS_RATE_LIMITED, {"request_name": request_name})
