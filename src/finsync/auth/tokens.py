"""
Bearer tokens for the N26 login.

N26 logs in with an OAuth2 ``password`` grant that answers with an MFA token
instead of a session; the session only arrives from the second-factor grant
(``mfa_otp`` for an SMS code, ``mfa_oob`` for an app approval). Access tokens
last about twenty minutes and are extended with the ``refresh_token`` grant.

Tokens are kept in memory for the lifetime of the connector and dropped on
disconnect.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from finsync.errors import SessionExpiredError

logger = logging.getLogger("finsync.auth.tokens")

# Lifetime N26 grants when a response omits ``expires_in``.
DEFAULT_LIFETIME_SECONDS = 1200


@dataclass
class TokenData:
    """The bearer session from a completed N26 login."""

    access_token: str
    refresh_token: str = ""
    expires_at: float = 0.0
    token_type: str = "bearer"
    # API host the session is pinned to, when N26 names one.
    host_url: str | None = None

    @property
    def is_expired(self) -> bool:
        """True once fewer than five minutes of validity remain."""
        return self.expires_within(300)

    def expires_within(self, seconds: float) -> bool:
        return time.time() > (self.expires_at - seconds)

    @classmethod
    def from_oauth_response(cls, data: dict[str, Any]) -> TokenData:
        """Build from a successful ``mfa_otp``, ``mfa_oob`` or ``refresh_token`` answer."""
        lifetime = int(data.get("expires_in") or DEFAULT_LIFETIME_SECONDS)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_at=time.time() + lifetime,
            token_type=data.get("token_type") or "bearer",
            host_url=data.get("host_url"),
        )


class OAuth2TokenManager:
    """Runs token grants against one token endpoint and keeps the current token.

    Grants are sent as form data with HTTP Basic client authentication.
    ``request_grant`` never raises on an OAuth error response; it returns the
    status and JSON body so callers can react to ``mfa_required`` or
    ``authorization_pending`` answers.

    Usage::

        manager = OAuth2TokenManager(
            provider="n26",
            client_id="android",
            client_secret="secret",
            token_url="https://api.tech26.de/oauth2/token",
        )
        status, body = await manager.request_grant("password", username=..., password=...)
        if status == 200:
            manager.set_token(body)
        token = await manager.get_access_token()
    """

    def __init__(
        self,
        provider: str,
        client_id: str,
        client_secret: str,
        token_url: str,
        *,
        headers: dict[str, str] | None = None,
        refresh_margin: float = 300,
        timeout: float = 30.0,
        client_factory: Callable[[], Awaitable[httpx.AsyncClient]] | None = None,
    ) -> None:
        self.provider = provider
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.headers = headers or {}
        self.refresh_margin = refresh_margin
        self.timeout = timeout
        self._token: TokenData | None = None
        self._http_client: httpx.AsyncClient | None = None
        self._client_factory = client_factory

    @property
    def token(self) -> TokenData | None:
        return self._token

    async def _get_client(self) -> httpx.AsyncClient:
        """Client for the token endpoint; the connector's own client when one is shared."""
        if self._client_factory is not None:
            return await self._client_factory()
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def clear(self) -> None:
        """Forget the session, as on disconnect."""
        self._token = None

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def request_grant(self, grant_type: str, **params: str) -> tuple[int, dict[str, Any]]:
        """POST a grant to the token endpoint and return ``(status, body)``."""
        client = await self._get_client()
        data = {"grant_type": grant_type, **params}
        resp = await client.post(
            self.token_url,
            data=data,
            auth=(self.client_id, self.client_secret),
            headers=self.headers,
        )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        logger.debug("%s %s grant -> HTTP %d", self.provider, grant_type, resp.status_code)
        return resp.status_code, body

    def set_token(self, body: dict[str, Any]) -> TokenData:
        self._token = TokenData.from_oauth_response(body)
        return self._token

    async def refresh(self) -> TokenData:
        """Extend the session with the ``refresh_token`` grant.

        N26 may answer without a new refresh token or host; the previous
        ones stay in use then.

        Raises:
            SessionExpiredError: If there is no refresh token or N26 rejects it.
        """
        if not self._token or not self._token.refresh_token:
            raise SessionExpiredError(f"No refresh token available for {self.provider}")

        status, body = await self.request_grant("refresh_token", refresh_token=self._token.refresh_token)
        if status != 200 or "access_token" not in body:
            logger.warning("%s token refresh failed (HTTP %d)", self.provider, status)
            self._token = None
            raise SessionExpiredError(f"{self.provider} session expired. Please reconnect.")

        previous = self._token
        token = self.set_token(body)
        token.refresh_token = token.refresh_token or previous.refresh_token
        token.host_url = token.host_url or previous.host_url
        logger.info("Refreshed %s access token", self.provider)
        return token

    async def get_access_token(self) -> str:
        """Get a valid access token, refreshing when it expires within the margin."""
        token = self._token
        if token is None:
            raise SessionExpiredError(f"Not authenticated with {self.provider}")
        if token.expires_within(self.refresh_margin):
            token = await self.refresh()
        return token.access_token

    async def get_auth_header(self) -> dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}"}
