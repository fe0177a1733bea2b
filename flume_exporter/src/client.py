"""
HTTPS client for the Flume Water API.

Two layers:

- :class:`ApiTransport` sends one named request. It asks the shared
  :class:`~flume_exporter.src.rate_limiter.RateLimiter` first and fails fast
  with :class:`~flume_exporter.src.errors.RateLimited` when the hourly
  budget is spent. Otherwise it performs the call with ``httpx`` bounded by
  the configured timeout, and records duration, attempt and error
  observations in the metric store before returning or raising.
- :class:`FlumeClient` adds the bearer token from the
  :class:`~flume_exporter.src.session.SessionManager` and exposes the
  logical requests the exporter needs: user id, device list, usage query.

Operations:
- ApiTransport.send(name, method, path, json, params, token)
- FlumeClient.request(name, method, path, json, params)
- FlumeClient.user_id() / devices() / query_usage(sensor, since, until)

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx

from flume_exporter.src.errors import (
    ApiTimeoutError,
    MalformedResponseError,
    RateLimited,
    TransportError,
    UpstreamError,
)
from flume_exporter.src.metrics import record_rate_limited, record_request
from flume_exporter.src.models import Bridge, Sensor, UsageReading, parse_devices

if TYPE_CHECKING:
    from flume_exporter.src.rate_limiter import RateLimiter
    from flume_exporter.src.session import SessionManager
    from flume_exporter.src.store import MetricStore

logger = logging.getLogger(__name__)

USER_ID_REQUEST = "user id"
DEVICES_REQUEST = "devices"
USAGE_REQUEST = "usage"

_QUERY_TIME_FORMAT = "%Y-%m-%d %H:%M:00"


class ApiTransport:
    """Rate-limited, metered sender of single Flume API requests.

    Args:
        base_url: API base URL. Must start with ``https://``.
        timeout_s: Per-request timeout in seconds (connect and read).
        rate_limiter: Shared rolling-window limiter.
        store: Metric store receiving request observations.
        clock: Duration clock, injectable for tests.

    Raises:
        ValueError: If *base_url* does not start with ``https://``.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float,
        rate_limiter: RateLimiter,
        store: MetricStore,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if not base_url.lower().startswith("https://"):
            raise ValueError(f"Flume API URL must use HTTPS (got: '{base_url}').")
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._rate_limiter = rate_limiter
        self._store = store
        self._clock = clock

    async def send(
        self,
        request_name: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        """Send one request and return its decoded JSON object.

        Args:
            request_name: Label recorded with every observation.
            method: HTTP method.
            path: Path below the base URL.
            json: Optional JSON body.
            params: Optional query parameters.
            token: Optional bearer token.

        Returns:
            The decoded JSON object of a 2xx response.

        Raises:
            RateLimited: The hourly budget is exhausted; nothing was sent.
            ApiTimeoutError: No response within the timeout.
            TransportError: Connection, DNS or TLS failure.
            UpstreamError: Non-2xx response.
            MalformedResponseError: 2xx response without a JSON object body.
        """
        if not self._rate_limiter.try_acquire():
            retry_after = self._rate_limiter.retry_after()
            record_rate_limited(self._store, request_name)
            logger.warning(
                "Rate limit reached, not sending %s request (retry in %.0fs)",
                request_name,
                retry_after,
            )
            raise RateLimited(request_name, retry_after)

        url = f"{self._base_url}{path}"
        headers = {"Accept": "application/json"}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug("%s %s (%s)", method, url, request_name)
        started = self._clock()
        failed = True
        try:
            # httpx timeouts bound each connect/read/write step; the deadline
            # bounds the whole exchange including a slowly streamed body.
            async with asyncio.timeout(self._timeout_s):
                async with httpx.AsyncClient(
                    verify=True, timeout=httpx.Timeout(self._timeout_s)
                ) as client:
                    response = await client.request(
                        method, url, json=json, params=params, headers=headers
                    )
            if not response.is_success:
                raise UpstreamError(request_name, response.status_code)
            payload = _decode(response, request_name)
            failed = False
            return payload
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise ApiTimeoutError(
                request_name, f"no response within {self._timeout_s:.3f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(request_name, str(exc) or type(exc).__name__) from exc
        finally:
            record_request(
                self._store, request_name, self._clock() - started, failed=failed
            )


def _decode(response: httpx.Response, request_name: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise MalformedResponseError(request_name, "response body is not JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedResponseError(request_name, "response body is not a JSON object")
    return payload


class FlumeClient:
    """Authenticated Flume API client.

    Args:
        transport: Rate-limited, metered transport.
        session: Session manager providing bearer tokens.
    """

    def __init__(self, transport: ApiTransport, session: SessionManager) -> None:
        self._transport = transport
        self._session = session
        self._user_id: int | None = None

    async def request(
        self,
        request_name: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send an authenticated request.

        An HTTP 401 invalidates the token so the next request renews it;
        the error itself still propagates.
        """
        token = await self._session.access_token()
        try:
            return await self._transport.send(
                request_name, method, path, json=json, params=params, token=token
            )
        except UpstreamError as exc:
            if exc.status_code == 401:
                self._session.invalidate(token)
            raise

    async def user_id(self) -> int:
        """Return the account's user id, fetching it once via ``/me``."""
        if self._user_id is None:
            payload = await self.request(USER_ID_REQUEST, "GET", "/me")
            try:
                self._user_id = int(payload["data"][0]["id"])
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                raise MalformedResponseError(USER_ID_REQUEST, "no user id in response") from exc
        return self._user_id

    async def devices(self) -> tuple[list[Bridge], list[Sensor]]:
        """Fetch every bridge and sensor of the account with its location."""
        user_id = await self.user_id()
        payload = await self.request(
            DEVICES_REQUEST,
            "GET",
            f"/users/{user_id}/devices",
            params={"location": "true"},
        )
        return parse_devices(payload)

    async def query_usage(
        self, sensor: Sensor, since: datetime, until: datetime
    ) -> UsageReading:
        """Query liters used by *sensor* over ``[since, until)``.

        Both bounds are expressed in the sensor's time zone at minute
        resolution. An empty result is a reading of zero liters.
        """
        user_id = await self.user_id()
        since_str = since.astimezone(sensor.zone).strftime(_QUERY_TIME_FORMAT)
        until_str = until.astimezone(sensor.zone).strftime(_QUERY_TIME_FORMAT)
        body = {
            "queries": [
                {
                    "request_id": since_str,
                    "bucket": "MIN",
                    "since_datetime": since_str,
                    "until_datetime": until_str,
                    "operation": "SUM",
                    "units": "LITERS",
                }
            ]
        }
        payload = await self.request(
            USAGE_REQUEST,
            "POST",
            f"/users/{user_id}/devices/{sensor.id}/query",
            json=body,
        )
        try:
            results = payload["data"][0][since_str]
            liters = float(results[0]["value"]) if results else 0.0
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise MalformedResponseError(USAGE_REQUEST, "unexpected query result") from exc

        return UsageReading(
            sensor_id=sensor.id,
            location=sensor.location,
            since=since,
            until=until,
            liters=liters,
        )
