"""
Device and usage fetch cycles for the Flume exporter.

Runs two concurrent asyncio loops:
1. **Device loop**: fetches the account's bridges and sensors, replaces each
   device's series in the metric store, and publishes the sensors as the
   last known device set. Runs immediately on start, then every
   ``device_interval`` seconds.
2. **Usage loop**: for every sensor of the last known device set, queries
   the liters used since that sensor's last successful window and adds them
   to its usage counter. Waits one ``query_interval`` before its first pass.

Both loops are resilient: an exception in one pass is logged and does not
stop the loop or affect the other loop. A rate-limit denial pushes that
loop's next pass back until the hourly budget frees up. They share the
client, and through it one rate limiter and one session, so their combined
request rate is what stays under the hourly ceiling. Setting the shutdown
event lets both loops finish their in-flight pass and return.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from flume_exporter.src.errors import FlumeError, RateLimited
from flume_exporter.src.metrics import add_usage, publish_bridge, publish_sensor

if TYPE_CHECKING:
    from flume_exporter.src.client import FlumeClient
    from flume_exporter.src.health import HealthWriter
    from flume_exporter.src.models import Sensor
    from flume_exporter.src.store import MetricStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class CycleState:
    """State shared between the device and usage cycles.

    Attributes:
        sensors: Last known device set. Empty until the first successful
            device pass; the usage cycle only queries these sensors.
        usage_since: Per-sensor start of the next usage window, keyed by
            sensor id.
    """

    sensors: tuple[Sensor, ...] = ()
    usage_since: dict[str, datetime] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Single passes (raise on failure)
# ---------------------------------------------------------------------------


async def device_pass(
    *,
    client: FlumeClient,
    store: MetricStore,
    state: CycleState,
    now: Callable[[], datetime] = _utcnow,
) -> None:
    """Fetch devices and publish them.

    Devices that no longer appear in the list keep their last published
    values; vanished sensors are dropped from the usage cycle.

    Raises:
        FlumeError: If the device list cannot be fetched.
    """
    bridges, sensors = await client.devices()

    for bridge in bridges:
        publish_bridge(store, bridge)
    for sensor in sensors:
        publish_sensor(store, sensor)
        state.usage_since.setdefault(sensor.id, sensor.last_seen or now())

    state.sensors = tuple(sensors)
    logger.info(
        "Device pass: published %d bridge(s) and %d sensor(s)",
        len(bridges),
        len(sensors),
    )


async def usage_pass(
    *,
    client: FlumeClient,
    store: MetricStore,
    state: CycleState,
    now: Callable[[], datetime] = _utcnow,
) -> int:
    """Query usage for every known sensor and add it to the counters.

    A failed query for one sensor is logged and the pass moves on to the
    next sensor; that sensor's window is retried whole on the next pass.

    Returns:
        Number of sensors whose usage was applied.

    Raises:
        RateLimited: The hourly budget ran out; the rest of the pass is
            skipped since every further request would be refused too.
    """
    if not state.sensors:
        logger.debug("Usage pass skipped: no sensors discovered yet")
        return 0

    applied = 0
    for sensor in state.sensors:
        until = now()
        since = min(state.usage_since.get(sensor.id, until), until)
        try:
            reading = await client.query_usage(sensor, since, until)
        except RateLimited:
            raise
        except FlumeError as exc:
            logger.warning("Usage query failed for %s: %s", sensor.location, exc)
            continue

        if reading.liters < 0:
            logger.warning(
                "Ignoring negative usage %.3f L for %s", reading.liters, sensor.location
            )
            continue

        add_usage(store, sensor.location, reading.liters)
        state.usage_since[sensor.id] = until
        applied += 1
        logger.debug("Usage for %s: +%.3f L", sensor.location, reading.liters)

    return applied


# ---------------------------------------------------------------------------
# Guarded passes (only RateLimited escapes)
# ---------------------------------------------------------------------------


async def _device_once(
    *,
    client: FlumeClient,
    store: MetricStore,
    state: CycleState,
    health: HealthWriter | None,
) -> bool:
    """Run one device pass, logging instead of raising.

    Returns:
        True if the pass succeeded.

    Raises:
        RateLimited: Left to the loop, which backs off until the budget
            frees up.
    """
    try:
        await device_pass(client=client, store=store, state=state)
    except RateLimited:
        raise
    except FlumeError as exc:
        logger.warning("Device pass failed: %s", exc)
        return False
    except Exception:
        logger.error("Device cycle error", exc_info=True)
        return False

    if health is not None:
        try:
            health.record_device_pass(len(state.sensors))
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return True


async def _usage_once(
    *,
    client: FlumeClient,
    store: MetricStore,
    state: CycleState,
    health: HealthWriter | None,
) -> bool:
    """Run one usage pass, logging instead of raising.

    Returns:
        True if the pass ran to completion (even with per-sensor failures).

    Raises:
        RateLimited: Left to the loop, which backs off until the budget
            frees up.
    """
    try:
        await usage_pass(client=client, store=store, state=state)
    except RateLimited:
        raise
    except FlumeError as exc:
        logger.warning("Usage pass failed: %s", exc)
        return False
    except Exception:
        logger.error("Usage cycle error", exc_info=True)
        return False

    if health is not None and state.sensors:
        try:
            health.record_usage_pass()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return True


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _wait(shutdown_event: asyncio.Event, interval_s: float) -> None:
    """Sleep for *interval_s* or until shutdown, whichever comes first."""
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)


async def _cycle_loop(
    *,
    name: str,
    run_once: Callable[[], Awaitable[bool]],
    interval_s: float,
    shutdown_event: asyncio.Event,
    run_immediately: bool,
) -> None:
    """Run *run_once* every *interval_s* seconds until shutdown_event is set.

    After a rate-limit denial the next pass waits until the oldest granted
    request has left the window, if that is later than the next tick.
    """
    logger.info("%s loop started (interval=%ss)", name, interval_s)
    if not run_immediately:
        await _wait(shutdown_event, interval_s)
    while not shutdown_event.is_set():
        delay = interval_s
        try:
            await run_once()
        except RateLimited as exc:
            delay = max(interval_s, exc.retry_after)
            logger.warning("%s pass cut short: %s; next pass in %.0fs", name, exc, delay)
        await _wait(shutdown_event, delay)
    logger.info("%s loop stopped", name)


async def run_loops(
    *,
    client: FlumeClient,
    store: MetricStore,
    device_interval_s: float,
    query_interval_s: float,
    shutdown_event: asyncio.Event,
    state: CycleState | None = None,
    health: HealthWriter | None = None,
) -> None:
    """Run the device and usage loops concurrently until shutdown.

    Both loops run as independent asyncio tasks via asyncio.gather().
    When the shutdown_event is set, each loop finishes its current pass and
    returns.

    Args:
        client: Authenticated Flume API client.
        store: Metric store the passes publish into.
        device_interval_s: Seconds between device passes.
        query_interval_s: Seconds between usage passes.
        shutdown_event: Event to signal graceful shutdown.
        state: Shared cycle state; a fresh one is created when omitted.
        health: HealthWriter instance, or None to skip health writes.
    """
    if state is None:
        state = CycleState()

    logger.info("Starting concurrent device and usage loops")

    async def _device() -> bool:
        return await _device_once(client=client, store=store, state=state, health=health)

    async def _usage() -> bool:
        return await _usage_once(client=client, store=store, state=state, health=health)

    await asyncio.gather(
        _cycle_loop(
            name="Device",
            run_once=_device,
            interval_s=device_interval_s,
            shutdown_event=shutdown_event,
            run_immediately=True,
        ),
        _cycle_loop(
            name="Usage",
            run_once=_usage,
            interval_s=query_interval_s,
            shutdown_event=shutdown_event,
            run_immediately=False,
        ),
    )
    logger.info("Fetch loops stopped")
