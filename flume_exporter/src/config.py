"""
Exporter configuration loaded from a TOML file and environment variables.

Uses Pydantic BaseSettings. Values come from, in priority order: explicit
keyword arguments, ``FLUME_``-prefixed environment variables, then the TOML
file. Keys in the TOML file that the exporter does not know about are
ignored so older configuration files keep working.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = "flume_exporter.toml"


class FlumeSettings(BaseSettings):
    """Flume exporter configuration.

    Attributes:
        client_id: Flume API OAuth client id.
        secret_id: Flume API OAuth client secret.
        username: Flume account username (e-mail).
        password: Flume account password.
        bind_address: ``host:port`` the metrics endpoint listens on.
        query_interval: Seconds between usage-query passes.
        device_interval: Seconds between device-status passes.
        flume_timeout: Per-request timeout in milliseconds.
        api_base_url: Flume API base URL.
        rate_limit_per_hour: Request ceiling over a rolling hour. The Flume
            API allows 120 requests per hour per account.
        token_refresh_margin_s: Renew the access token when less than this
            many seconds of lifetime remain.
        health_path: Path of the JSON health file. Empty disables it.
        log_level: Root log level name.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLUME_",
        toml_file=DEFAULT_CONFIG_FILE,
        extra="ignore",
    )

    client_id: str
    secret_id: str
    username: str
    password: str
    bind_address: str = "0.0.0.0:9160"
    query_interval: int = 60
    device_interval: int = 300
    flume_timeout: int = 1000
    api_base_url: str = "https://api.flumewater.com"
    rate_limit_per_hour: int = 120
    token_refresh_margin_s: int = 60
    health_path: str = ""
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    @property
    def timeout_s(self) -> float:
        """Per-request timeout in seconds."""
        return self.flume_timeout / 1000.0

    @property
    def bind_host(self) -> str:
        host, _, _ = self.bind_address.rpartition(":")
        return host.strip("[]")

    @property
    def bind_port(self) -> int:
        return int(self.bind_address.rpartition(":")[2])

    @field_validator("bind_address")
    @classmethod
    def bind_address_must_have_port(cls, v: str) -> str:
        """Validate ``host:port`` form with a port in 1-65535."""
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"BIND_ADDRESS must be host:port (got: '{v}')")
        if not 1 <= int(port) <= 65535:
            raise ValueError("BIND_ADDRESS port must be between 1 and 65535")
        return v

    @field_validator("query_interval", "device_interval")
    @classmethod
    def interval_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("intervals must be >= 1 second")
        return v

    @field_validator("flume_timeout")
    @classmethod
    def timeout_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("FLUME_TIMEOUT must be >= 1 millisecond")
        return v

    @field_validator("rate_limit_per_hour")
    @classmethod
    def rate_limit_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("RATE_LIMIT_PER_HOUR must be >= 1")
        return v

    @field_validator("token_refresh_margin_s")
    @classmethod
    def margin_must_be_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("TOKEN_REFRESH_MARGIN_S must be >= 0")
        return v

    @field_validator("api_base_url")
    @classmethod
    def api_base_url_must_be_https(cls, v: str) -> str:
        """Credentials are sent to this URL, so plain HTTP is rejected."""
        if not v.lower().startswith("https://"):
            raise ValueError(f"API_BASE_URL must use HTTPS (got: '{v}')")
        return v.rstrip("/")


def load_settings(path: str | Path | None = None) -> FlumeSettings:
    """Load settings, reading TOML values from *path* when given.

    Without *path*, ``flume_exporter.toml`` in the working directory is used
    if it exists. Environment variables override file values either way.

    Raises:
        FileNotFoundError: If *path* is given but does not exist.
        pydantic.ValidationError: If required keys are missing or invalid.
    """
    if path is None:
        return FlumeSettings()

    toml_path = Path(path)
    if not toml_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {toml_path}")

    class _FileSettings(FlumeSettings):
        model_config = SettingsConfigDict(toml_file=toml_path)

    return FlumeSettings.model_validate(_FileSettings().model_dump())
