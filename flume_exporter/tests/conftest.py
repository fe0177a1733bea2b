"""
Shared test fixtures for the Flume exporter tests.

Provides environment cleanup for FlumeSettings tests. All exporter env
vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import pytest

# All FlumeSettings environment variable names, used for cleanup.
_ALL_FLUME_ENV_VARS = (
    "FLUME_CLIENT_ID",
    "FLUME_SECRET_ID",
    "FLUME_USERNAME",
    "FLUME_PASSWORD",
    "FLUME_BIND_ADDRESS",
    "FLUME_QUERY_INTERVAL",
    "FLUME_DEVICE_INTERVAL",
    "FLUME_FLUME_TIMEOUT",
    "FLUME_API_BASE_URL",
    "FLUME_RATE_LIMIT_PER_HOUR",
    "FLUME_TOKEN_REFRESH_MARGIN_S",
    "FLUME_HEALTH_PATH",
    "FLUME_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_flume_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all exporter env vars and isolate from config files.

    Changes working directory to tmp_path so no flume_exporter.toml is
    accidentally loaded by FlumeSettings.
    """
    for var in _ALL_FLUME_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables."""
    env = {
        "FLUME_CLIENT_ID": "client-abc",
        "FLUME_SECRET_ID": "secret-xyz",
        "FLUME_USERNAME": "user@example.com",
        "FLUME_PASSWORD": "hunter2",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
