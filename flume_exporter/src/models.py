"""
Pydantic models for Flume devices, usage readings, and OAuth tokens.

The device-list endpoint returns bridges (``type`` 1) and sensors
(``type`` 2) in a single ``data`` array. :func:`parse_devices` splits that
payload into typed :class:`Bridge` and :class:`Sensor` models, skipping
entries it cannot interpret instead of failing the whole list.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)

BRIDGE_TYPE = 1
SENSOR_TYPE = 2


class BatteryLevel(str, Enum):
    """Quantized sensor battery level as reported by the API."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def gauge_value(self) -> float:
        """Fixed numeric value published for this level."""
        return _BATTERY_GAUGE_VALUES[self]


_BATTERY_GAUGE_VALUES = {
    BatteryLevel.HIGH: 1.0,
    BatteryLevel.MEDIUM: 0.5,
    BatteryLevel.LOW: 0.25,
}


class _Location(BaseModel):
    name: str
    tz: str = "UTC"


class _ApiDevice(BaseModel):
    """Raw device entry as returned by ``/users/{id}/devices?location=true``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: int
    connected: bool
    product: str
    location: _Location
    battery_level: BatteryLevel | None = None
    last_seen: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v


class Bridge(BaseModel):
    """A gateway device connecting sensors to the Flume cloud.

    Attributes:
        id: Device identifier.
        location: Human-readable location name (metric label).
        connected: Whether the bridge is currently connected to Flume.
        product: Product name.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    location: str
    connected: bool
    product: str


class Sensor(BaseModel):
    """A water-meter sensor.

    Attributes:
        id: Device identifier, used in usage-query paths.
        location: Human-readable location name (metric label).
        connected: Whether the sensor is currently connected to Flume.
        product: Product name.
        battery_level: Quantized battery level.
        timezone: IANA time zone of the sensor's location. Usage queries
            are expressed in this zone.
        last_seen: When the sensor last reported, in its own time zone.
            Used as the start of the first usage window.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    location: str
    connected: bool
    product: str
    battery_level: BatteryLevel
    timezone: str = "UTC"
    last_seen: datetime | None = None

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        """Reject time zone names the zoneinfo database does not know."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown sensor timezone {v!r}") from exc
        return v

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class UsageReading(BaseModel):
    """Water used by one sensor over ``[since, until)``, in liters."""

    sensor_id: str
    location: str
    since: datetime
    until: datetime
    liters: float


class TokenGrant(BaseModel):
    """Token pair returned by ``/oauth/token`` for either grant type."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    expires_in: int


def parse_devices(payload: dict[str, Any]) -> tuple[list[Bridge], list[Sensor]]:
    """Split a device-list payload into bridges and sensors.

    Entries of an unknown type, or entries missing required fields, are
    logged and skipped.

    Args:
        payload: Decoded JSON body of the device-list response.

    Returns:
        ``(bridges, sensors)`` in the order the API listed them.
    """
    bridges: list[Bridge] = []
    sensors: list[Sensor] = []

    for entry in payload.get("data") or []:
        try:
            raw = _ApiDevice.model_validate(entry)
            if raw.type == BRIDGE_TYPE:
                bridges.append(
                    Bridge(
                        id=raw.id,
                        location=raw.location.name,
                        connected=raw.connected,
                        product=raw.product,
                    )
                )
            elif raw.type == SENSOR_TYPE:
                sensors.append(_sensor_from(raw))
            else:
                logger.warning(
                    "Skipping device %s of unknown type %d", raw.id, raw.type
                )
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed device entry: %s",
                exc.errors(include_url=False),
            )

    return bridges, sensors


def _sensor_from(raw: _ApiDevice) -> Sensor:
    """Build a Sensor, raising ValidationError when sensor fields are missing."""
    last_seen = raw.last_seen
    sensor = Sensor.model_validate(
        {
            "id": raw.id,
            "location": raw.location.name,
            "connected": raw.connected,
            "product": raw.product,
            "battery_level": raw.battery_level,
            "timezone": raw.location.tz,
            "last_seen": last_seen,
        }
    )
    if last_seen is not None:
        sensor = sensor.model_copy(
            update={"last_seen": last_seen.astimezone(sensor.zone)}
        )
    return sensor
