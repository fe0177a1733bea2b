"""
Unit tests for the device and usage fetch cycles.

Tests verify:
- A device pass publishes every device and records the last known sensors.
- A usage pass before any device discovery is a no-op.
- Usage deltas accumulate (5.0 then 3.2 reads 8.2).
- A sensor's usage window only advances after a successful query.
- One sensor's failure does not stop the other sensors in the pass.
- A rate-limit denial ends the pass; the loop backs off until the budget
  frees up (or one interval, whichever is longer) and keeps running.
- Negative deltas never decrease the usage counter.
- Vanished devices keep their last values and stop being queried.
- A cycle whose pass always fails never stops the other cycle's ticks.
- Setting the shutdown event stops both loops.
- Health file updated after successful passes.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from flume_exporter.src import metrics
from flume_exporter.src.errors import ApiTimeoutError, RateLimited, UpstreamError
from flume_exporter.src.health import HealthWriter
from flume_exporter.src.models import BatteryLevel, Bridge, Sensor, UsageReading
from flume_exporter.src.scheduler import (
    CycleState,
    _cycle_loop,
    _device_once,
    _usage_once,
    device_pass,
    run_loops,
    usage_pass,
)
from flume_exporter.src.store import MetricStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_LAST_SEEN = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
_NOW = datetime(2026, 10, 18, 10, 0, tzinfo=UTC)


def _sensor(sensor_id: str = "s-1", location: str = "Kitchen") -> Sensor:
    return Sensor(
        id=sensor_id,
        location=location,
        connected=True,
        product="Sensor",
        battery_level=BatteryLevel.MEDIUM,
        last_seen=_LAST_SEEN,
    )


def _bridge(location: str = "Kitchen") -> Bridge:
    return Bridge(id="b-1", location=location, connected=True, product="Bridge")


def _reading(sensor: Sensor, liters: float) -> UsageReading:
    return UsageReading(
        sensor_id=sensor.id,
        location=sensor.location,
        since=_LAST_SEEN,
        until=_NOW,
        liters=liters,
    )


class SteppingClock:
    """Returns _NOW, then one minute later on every call."""

    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> datetime:
        value = _NOW + timedelta(minutes=self.calls)
        self.calls += 1
        return value


def _make_client() -> AsyncMock:
    client = AsyncMock()
    client.devices = AsyncMock(return_value=([_bridge()], [_sensor()]))
    client.query_usage = AsyncMock(
        side_effect=lambda sensor, since, until: _reading(sensor, 1.0)
    )
    return client


# ---------------------------------------------------------------------------
# Device pass
# ---------------------------------------------------------------------------


class TestDevicePass:
    @pytest.mark.asyncio
    async def test_kitchen_scenario(self) -> None:
        store = MetricStore()
        state = CycleState()

        await device_pass(client=_make_client(), store=store, state=state)

        snapshot = store.snapshot()
        assert snapshot.get(metrics.BRIDGE_CONNECTED, location="Kitchen") == 1.0
        assert snapshot.get(metrics.SENSOR_BATTERY, location="Kitchen") == 0.5
        assert snapshot.get(metrics.SENSOR_CONNECTED, location="Kitchen") == 1.0
        assert [s.id for s in state.sensors] == ["s-1"]
        assert state.usage_since == {"s-1": _LAST_SEEN}

    @pytest.mark.asyncio
    async def test_rediscovery_keeps_usage_window(self) -> None:
        store = MetricStore()
        state = CycleState(usage_since={"s-1": _NOW})

        await device_pass(client=_make_client(), store=store, state=state)

        assert state.usage_since["s-1"] == _NOW

    @pytest.mark.asyncio
    async def test_vanished_device_is_frozen_and_not_queried(self) -> None:
        store = MetricStore()
        state = CycleState()
        client = _make_client()
        client.devices = AsyncMock(
            side_effect=[
                ([_bridge()], [_sensor("s-1", "Kitchen"), _sensor("s-2", "Garage")]),
                ([_bridge()], [_sensor("s-1", "Kitchen")]),
            ]
        )

        await device_pass(client=client, store=store, state=state)
        await device_pass(client=client, store=store, state=state)

        assert store.get(metrics.SENSOR_CONNECTED, location="Garage") == 1.0
        assert [s.id for s in state.sensors] == ["s-1"]

    @pytest.mark.asyncio
    async def test_failure_leaves_state_untouched(self) -> None:
        client = _make_client()
        client.devices = AsyncMock(side_effect=UpstreamError("devices", 500))
        state = CycleState()

        with pytest.raises(UpstreamError):
            await device_pass(client=client, store=MetricStore(), state=state)

        assert state.sensors == ()


# ---------------------------------------------------------------------------
# Usage pass
# ---------------------------------------------------------------------------


class TestUsagePass:
    @pytest.mark.asyncio
    async def test_no_devices_is_noop(self) -> None:
        client = _make_client()

        applied = await usage_pass(client=client, store=MetricStore(), state=CycleState())

        assert applied == 0
        client.query_usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deltas_accumulate(self) -> None:
        sensor = _sensor()
        client = _make_client()
        client.query_usage = AsyncMock(
            side_effect=[_reading(sensor, 5.0), _reading(sensor, 3.2)]
        )
        store = MetricStore()
        state = CycleState(sensors=(sensor,), usage_since={sensor.id: _LAST_SEEN})

        await usage_pass(client=client, store=store, state=state, now=SteppingClock())
        await usage_pass(client=client, store=store, state=state, now=SteppingClock())

        assert store.get(metrics.USAGE, location="Kitchen") == pytest.approx(8.2)

    @pytest.mark.asyncio
    async def test_window_advances_on_success(self) -> None:
        sensor = _sensor()
        client = _make_client()
        state = CycleState(sensors=(sensor,), usage_since={sensor.id: _LAST_SEEN})

        await usage_pass(client=client, store=MetricStore(), state=state, now=lambda: _NOW)

        client.query_usage.assert_awaited_once_with(sensor, _LAST_SEEN, _NOW)
        assert state.usage_since[sensor.id] == _NOW

    @pytest.mark.asyncio
    async def test_failed_sensor_keeps_window_and_others_continue(self) -> None:
        kitchen = _sensor("s-1", "Kitchen")
        garage = _sensor("s-2", "Garage")
        client = _make_client()
        client.query_usage = AsyncMock(
            side_effect=[ApiTimeoutError("usage", "slow"), _reading(garage, 2.0)]
        )
        store = MetricStore()
        state = CycleState(
            sensors=(kitchen, garage),
            usage_since={kitchen.id: _LAST_SEEN, garage.id: _LAST_SEEN},
        )

        applied = await usage_pass(client=client, store=store, state=state, now=lambda: _NOW)

        assert applied == 1
        assert state.usage_since[kitchen.id] == _LAST_SEEN
        assert state.usage_since[garage.id] == _NOW
        assert store.get(metrics.USAGE, location="Kitchen") is None
        assert store.get(metrics.USAGE, location="Garage") == 2.0

    @pytest.mark.asyncio
    async def test_rate_limit_ends_pass(self) -> None:
        kitchen = _sensor("s-1", "Kitchen")
        garage = _sensor("s-2", "Garage")
        client = _make_client()
        client.query_usage = AsyncMock(side_effect=RateLimited("usage", 30.0))
        state = CycleState(sensors=(kitchen, garage))

        with pytest.raises(RateLimited):
            await usage_pass(client=client, store=MetricStore(), state=state)

        client.query_usage.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_negative_delta_ignored(self) -> None:
        sensor = _sensor()
        client = _make_client()
        client.query_usage = AsyncMock(
            side_effect=[_reading(sensor, 4.0), _reading(sensor, -1.0)]
        )
        store = MetricStore()
        state = CycleState(sensors=(sensor,), usage_since={sensor.id: _LAST_SEEN})

        await usage_pass(client=client, store=store, state=state, now=lambda: _NOW)
        later = _NOW + timedelta(minutes=1)
        await usage_pass(client=client, store=store, state=state, now=lambda: later)

        assert store.get(metrics.USAGE, location="Kitchen") == 4.0
        assert state.usage_since[sensor.id] == _NOW

    @pytest.mark.asyncio
    async def test_future_window_start_is_clamped(self) -> None:
        sensor = _sensor()
        client = _make_client()
        future = _NOW + timedelta(hours=1)
        state = CycleState(sensors=(sensor,), usage_since={sensor.id: future})

        await usage_pass(client=client, store=MetricStore(), state=state, now=lambda: _NOW)

        client.query_usage.assert_awaited_once_with(sensor, _NOW, _NOW)


# ---------------------------------------------------------------------------
# Guarded passes
# ---------------------------------------------------------------------------


class TestGuardedPasses:
    @pytest.mark.asyncio
    async def test_device_once_swallows_errors(self) -> None:
        client = _make_client()
        client.devices = AsyncMock(side_effect=RuntimeError("boom"))

        ok = await _device_once(
            client=client, store=MetricStore(), state=CycleState(), health=None
        )

        assert ok is False

    @pytest.mark.asyncio
    async def test_usage_once_leaves_rate_limit_to_loop(self) -> None:
        client = _make_client()
        client.query_usage = AsyncMock(side_effect=RateLimited("usage", 5.0))
        state = CycleState(sensors=(_sensor(),))

        with pytest.raises(RateLimited):
            await _usage_once(client=client, store=MetricStore(), state=state, health=None)

    @pytest.mark.asyncio
    async def test_device_once_leaves_rate_limit_to_loop(self) -> None:
        client = _make_client()
        client.devices = AsyncMock(side_effect=RateLimited("devices", 5.0))

        with pytest.raises(RateLimited):
            await _device_once(
                client=client, store=MetricStore(), state=CycleState(), health=None
            )

    @pytest.mark.asyncio
    async def test_health_written_after_passes(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        health = HealthWriter(health_path)
        state = CycleState()
        client = _make_client()
        store = MetricStore()

        await _device_once(client=client, store=store, state=state, health=health)
        await _usage_once(client=client, store=store, state=state, health=health)

        data = json.loads(health_path.read_text())
        assert data["sensor_count"] == 1
        assert data["last_device_ts"] is not None
        assert data["last_usage_ts"] is not None

    @pytest.mark.asyncio
    async def test_health_not_written_on_failure(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        client = _make_client()
        client.devices = AsyncMock(side_effect=UpstreamError("devices", 502))

        await _device_once(
            client=client,
            store=MetricStore(),
            state=CycleState(),
            health=HealthWriter(health_path),
        )

        assert not health_path.exists()


# ---------------------------------------------------------------------------
# Loops
# ---------------------------------------------------------------------------


class TestRateLimitBackoff:
    @pytest.mark.asyncio
    async def test_loop_waits_until_budget_frees_up(self) -> None:
        shutdown = asyncio.Event()
        run_once = AsyncMock(side_effect=RateLimited("usage", 900.0))
        delays: list[float] = []

        async def _record_wait(event: asyncio.Event, interval_s: float) -> None:
            delays.append(interval_s)
            event.set()

        with patch("flume_exporter.src.scheduler._wait", side_effect=_record_wait):
            await _cycle_loop(
                name="Usage",
                run_once=run_once,
                interval_s=60,
                shutdown_event=shutdown,
                run_immediately=True,
            )

        run_once.assert_awaited_once()
        assert delays == [900.0]

    @pytest.mark.asyncio
    async def test_short_retry_after_keeps_interval(self) -> None:
        shutdown = asyncio.Event()
        run_once = AsyncMock(side_effect=RateLimited("devices", 5.0))
        delays: list[float] = []

        async def _record_wait(event: asyncio.Event, interval_s: float) -> None:
            delays.append(interval_s)
            event.set()

        with patch("flume_exporter.src.scheduler._wait", side_effect=_record_wait):
            await _cycle_loop(
                name="Device",
                run_once=run_once,
                interval_s=60,
                shutdown_event=shutdown,
                run_immediately=True,
            )

        assert delays == [60]

    @pytest.mark.asyncio
    async def test_denied_loop_keeps_running(self) -> None:
        client = _make_client()
        client.devices = AsyncMock(side_effect=RateLimited("devices", 0.0))
        shutdown = asyncio.Event()

        runner = asyncio.create_task(
            run_loops(
                client=client,
                store=MetricStore(),
                device_interval_s=0.01,
                query_interval_s=60,
                shutdown_event=shutdown,
            )
        )
        await asyncio.sleep(0.2)
        shutdown.set()
        await asyncio.wait_for(runner, timeout=2)

        assert client.devices.await_count >= 3


class TestLoops:
    @pytest.mark.asyncio
    async def test_failing_device_cycle_does_not_stop_usage_cycle(self) -> None:
        client = _make_client()
        client.devices = AsyncMock(side_effect=UpstreamError("devices", 500))
        state = CycleState(sensors=(_sensor(),))
        shutdown = asyncio.Event()

        runner = asyncio.create_task(
            run_loops(
                client=client,
                store=MetricStore(),
                device_interval_s=0.01,
                query_interval_s=0.015,
                shutdown_event=shutdown,
                state=state,
            )
        )
        await asyncio.sleep(0.2)
        shutdown.set()
        await asyncio.wait_for(runner, timeout=2)

        assert client.devices.await_count >= 3
        assert client.query_usage.await_count >= 3

    @pytest.mark.asyncio
    async def test_failing_usage_cycle_does_not_stop_device_cycle(self) -> None:
        client = _make_client()
        client.query_usage = AsyncMock(side_effect=ApiTimeoutError("usage", "slow"))
        shutdown = asyncio.Event()

        runner = asyncio.create_task(
            run_loops(
                client=client,
                store=MetricStore(),
                device_interval_s=0.015,
                query_interval_s=0.01,
                shutdown_event=shutdown,
            )
        )
        await asyncio.sleep(0.2)
        shutdown.set()
        await asyncio.wait_for(runner, timeout=2)

        assert client.devices.await_count >= 3
        assert client.query_usage.await_count >= 3

    @pytest.mark.asyncio
    async def test_device_runs_first_and_usage_waits_an_interval(self) -> None:
        client = _make_client()
        shutdown = asyncio.Event()

        runner = asyncio.create_task(
            run_loops(
                client=client,
                store=MetricStore(),
                device_interval_s=60,
                query_interval_s=60,
                shutdown_event=shutdown,
            )
        )
        await asyncio.sleep(0.05)
        shutdown.set()
        await asyncio.wait_for(runner, timeout=2)

        client.devices.assert_awaited_once()
        client.query_usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shutdown_before_start_runs_nothing(self) -> None:
        client = _make_client()
        shutdown = asyncio.Event()
        shutdown.set()

        await asyncio.wait_for(
            run_loops(
                client=client,
                store=MetricStore(),
                device_interval_s=60,
                query_interval_s=60,
                shutdown_event=shutdown,
            ),
            timeout=2,
        )

        client.devices.assert_not_awaited()
        client.query_usage.assert_not_awaited()
