"""
Exporter daemon entrypoint.

Loads configuration (TOML path from the optional command-line argument, if
given), wires the rate limiter, metric store, transport, session manager
and client together, starts the Prometheus scrape server, and runs the
device and usage loops until SIGTERM/SIGINT. On shutdown both loops finish
their in-flight pass before the scrape server is stopped.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from flume_exporter.src.client import ApiTransport, FlumeClient
from flume_exporter.src.config import FlumeSettings, load_settings
from flume_exporter.src.exporter import MetricsServer, build_registry
from flume_exporter.src.health import HealthWriter
from flume_exporter.src.rate_limiter import RateLimiter
from flume_exporter.src.scheduler import run_loops
from flume_exporter.src.session import SessionManager
from flume_exporter.src.store import MetricStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger, writing to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
    # httpx logs every request at INFO; the exporter logs its own.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _masked(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: FlumeSettings) -> None:
    """Log a config summary at startup, masking credentials."""
    logger.info(
        "Flume exporter starting with config: "
        "bind_address=%s, api_base_url=%s, query_interval=%s, "
        "device_interval=%s, flume_timeout_ms=%s, rate_limit_per_hour=%s, "
        "token_refresh_margin_s=%s, health_path=%s, username=%s, "
        "client_id_masked=%s, secret_id_masked=%s, password_masked=%s",
        settings.bind_address,
        settings.api_base_url,
        settings.query_interval,
        settings.device_interval,
        settings.flume_timeout,
        settings.rate_limit_per_hour,
        settings.token_refresh_margin_s,
        settings.health_path or "disabled",
        settings.username,
        _masked(settings.client_id),
        _masked(settings.secret_id),
        _masked(settings.password),
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def build_client(settings: FlumeSettings, store: MetricStore) -> FlumeClient:
    """Wire limiter, transport and session into a client."""
    rate_limiter = RateLimiter(max_requests=settings.rate_limit_per_hour)
    transport = ApiTransport(
        base_url=settings.api_base_url,
        timeout_s=settings.timeout_s,
        rate_limiter=rate_limiter,
        store=store,
    )
    session = SessionManager(
        transport,
        client_id=settings.client_id,
        client_secret=settings.secret_id,
        username=settings.username,
        password=settings.password,
        margin_s=settings.token_refresh_margin_s,
    )
    return FlumeClient(transport, session)


async def async_main(config_path: str | None = None) -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    settings = load_settings(config_path)
    configure_logging(settings.log_level)
    log_config_summary(settings)

    store = MetricStore()
    client = build_client(settings, store)
    health = HealthWriter(settings.health_path) if settings.health_path else None

    server = MetricsServer(
        build_registry(store), settings.bind_host, settings.bind_port
    )
    server.start()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    try:
        await run_loops(
            client=client,
            store=store,
            device_interval_s=settings.device_interval,
            query_interval_s=settings.query_interval,
            shutdown_event=shutdown_event,
            health=health,
        )
    finally:
        server.stop()
    logger.info("Shutdown complete")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(
        description="Prometheus exporter for Flume Water sensors"
    )
    p.add_argument(
        "config",
        nargs="?",
        default=None,
        help="TOML configuration file (default: ./flume_exporter.toml if present)",
    )
    return p.parse_args(argv)


def main() -> None:
    """Synchronous entrypoint for the exporter daemon."""
    args = parse_args()
    asyncio.run(async_main(args.config))


if __name__ == "__main__":
    main()
