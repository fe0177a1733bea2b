"""
Error kinds raised by the Flume API client.

Every failure of a logical API request surfaces as a subclass of
:class:`FlumeError`, so the scheduler can catch the whole family at the
cycle boundary. Each error carries the ``request_name`` it was raised for.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations


class FlumeError(Exception):
    """Base class for all Flume API request failures."""

    def __init__(self, request_name: str, message: str) -> None:
        super().__init__(f"{request_name}: {message}")
        self.request_name = request_name


class AuthError(FlumeError):
    """The credential grant or refresh grant was rejected."""


class RateLimited(FlumeError):
    """The local hourly request budget is exhausted; nothing was sent.

    Attributes:
        retry_after: Seconds until the oldest granted request leaves the
            rolling window.
    """

    def __init__(self, request_name: str, retry_after: float) -> None:
        super().__init__(
            request_name,
            f"rate limit reached, retry in {retry_after:.1f}s",
        )
        self.retry_after = retry_after


class ApiTimeoutError(FlumeError):
    """The request did not complete within the configured timeout."""


class TransportError(FlumeError):
    """Connection, DNS or TLS failure before a response was received."""


class UpstreamError(FlumeError):
    """The API answered with a non-2xx status."""

    def __init__(self, request_name: str, status_code: int) -> None:
        super().__init__(request_name, f"HTTP {status_code}")
        self.status_code = status_code


class MalformedResponseError(FlumeError):
    """A 2xx response whose body could not be decoded or had an unexpected shape."""
