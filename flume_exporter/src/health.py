"""
Health file writer for the exporter daemon.

Writes a JSON health file at a configurable path with three fields:
- last_device_ts: ISO timestamp of the most recent successful device pass.
- last_usage_ts: ISO timestamp of the most recent successful usage pass.
- sensor_count: Number of sensors in the last known device set.

The file is rewritten on every state change, providing a simple liveness
signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes exporter health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_device_ts: str | None = None
        self._last_usage_ts: str | None = None
        self._sensor_count: int = 0

    def record_device_pass(self, sensor_count: int) -> None:
        """Record a successful device pass and the sensors it found."""
        self._last_device_ts = datetime.now(tz=UTC).isoformat()
        self._sensor_count = sensor_count
        self._write()

    def record_usage_pass(self) -> None:
        """Record a successful usage pass and write health file."""
        self._last_usage_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def _write(self) -> None:
        data = {
            "last_device_ts": self._last_device_ts,
            "last_usage_ts": self._last_usage_ts,
            "sensor_count": self._sensor_count,
        }
        self.path.write_text(json.dumps(data))
