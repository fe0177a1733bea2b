"""
OAuth session manager for the Flume API.

Owns the single access/refresh token pair of the process and renews it
before it expires:

    UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED
    AUTHENTICATED -> REFRESHING -> AUTHENTICATED | UNAUTHENTICATED

A failed refresh grant falls back once to the full password grant before
the error reaches the caller. Renewal is serialized on an asyncio lock, so
concurrent callers that all need a fresh token wait for one renewal
instead of each spending a request from the hourly budget.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from flume_exporter.src.errors import AuthError, FlumeError, RateLimited, UpstreamError
from flume_exporter.src.models import TokenGrant

if TYPE_CHECKING:
    from flume_exporter.src.client import ApiTransport

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/token"
AUTHENTICATE_REQUEST = "authenticate"
REFRESH_REQUEST = "refresh token"

_REJECTED_STATUSES = frozenset({400, 401, 403})


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclasses.dataclass(frozen=True)
class Session:
    """The live token pair.

    Attributes:
        access_token: Bearer token sent with API requests.
        refresh_token: Token exchanged for a new pair on renewal.
        expires_at: Expiry on the manager's monotonic clock.
    """

    access_token: str
    refresh_token: str
    expires_at: float


class SessionManager:
    """Keeps a valid access token available to the API client.

    Args:
        transport: Rate-limited, metered transport used for the token
            grants themselves.
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        username: Account username.
        password: Account password.
        margin_s: Renew once the token has less than this many seconds left.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        transport: ApiTransport,
        *,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        margin_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._client_id = client_id
        self._client_secret = client_secret
        self._username = username
        self._password = password
        self._margin_s = margin_s
        self._clock = clock
        self._session: Session | None = None
        self._state = SessionState.UNAUTHENTICATED
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    async def access_token(self) -> str:
        """Return a token with more than the safety margin of lifetime left.

        Renews first when needed. Callers arriving during a renewal wait for
        it and reuse its result.

        Raises:
            AuthError: If the password grant is rejected.
            FlumeError: Any other request failure of the grant.
        """
        async with self._lock:
            try:
                session = self._session
                if session is None or self._expiring(session):
                    session = await self._renew()
                return session.access_token
            finally:
                if self._state in (SessionState.AUTHENTICATING, SessionState.REFRESHING):
                    self._state = (
                        SessionState.AUTHENTICATED
                        if self._session is not None
                        else SessionState.UNAUTHENTICATED
                    )

    def invalidate(self, access_token: str) -> None:
        """Force renewal on next use if *access_token* is still the live token.

        Called when the API rejects a token with HTTP 401. A token that was
        already replaced by a concurrent renewal is left alone.
        """
        session = self._session
        if session is not None and session.access_token == access_token:
            logger.info("Access token rejected by API, renewing on next request")
            self._session = dataclasses.replace(session, expires_at=float("-inf"))

    def _expiring(self, session: Session) -> bool:
        return session.expires_at - self._clock() < self._margin_s

    async def _renew(self) -> Session:
        if self._session is not None:
            self._state = SessionState.REFRESHING
            try:
                session = await self._grant(
                    REFRESH_REQUEST,
                    {
                        "grant_type": "refresh_token",
                        "refresh_token": self._session.refresh_token,
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                    },
                )
            except RateLimited:
                # Nothing was sent; the refresh token is still usable.
                raise
            except FlumeError as exc:
                logger.warning(
                    "Token refresh failed (%s), falling back to credential grant", exc
                )
                self._session = None
                self._state = SessionState.UNAUTHENTICATED
            else:
                self._session = session
                self._state = SessionState.AUTHENTICATED
                logger.info("Access token refreshed")
                return session

        self._state = SessionState.AUTHENTICATING
        try:
            session = await self._grant(
                AUTHENTICATE_REQUEST,
                {
                    "grant_type": "password",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "username": self._username,
                    "password": self._password,
                },
            )
        except FlumeError:
            self._state = SessionState.UNAUTHENTICATED
            raise
        self._session = session
        self._state = SessionState.AUTHENTICATED
        logger.info("Authenticated with Flume API")
        return session

    async def _grant(self, request_name: str, body: dict[str, Any]) -> Session:
        """Run one token grant and turn its response into a Session."""
        try:
            payload = await self._transport.send(
                request_name, "POST", TOKEN_PATH, json=body
            )
        except UpstreamError as exc:
            if exc.status_code in _REJECTED_STATUSES:
                raise AuthError(
                    request_name, f"grant rejected with HTTP {exc.status_code}"
                ) from exc
            raise

        try:
            grant = TokenGrant.model_validate(payload["data"][0])
        except (KeyError, IndexError, TypeError, ValidationError) as exc:
            raise AuthError(request_name, "token response has no token pair") from exc

        return Session(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=self._clock() + grant.expires_in,
        )
