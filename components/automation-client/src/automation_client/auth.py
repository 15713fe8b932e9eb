"""Bearer credentials and token refresh."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from automation_client.errors import SessionExpiredError

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh-token"
# Lifetime assumed for refreshed access tokens when the backend sends none.
DEFAULT_TOKEN_LIFETIME_SECONDS = 30 * 24 * 60 * 60


@dataclass
class Credentials:
    """Mutable token pair held for one session.

    Args:
        access_token: Current bearer token.
        refresh_token: Token exchanged for a new access token.
        expires_at: Access token expiry as epoch seconds, if known.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) > self.expires_at

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.expires_at = None


async def refresh_access_token(
    http: httpx.AsyncClient, credentials: Credentials
) -> str:
    """Exchange the refresh token for a new access token.

    Updates ``credentials`` in place on success and clears them on failure.

    Raises:
        SessionExpiredError: If there is no refresh token or the exchange fails.
    """
    if not credentials.refresh_token:
        credentials.clear()
        raise SessionExpiredError("No refresh token available")

    try:
        response = await http.post(
            REFRESH_PATH,
            json={"refresh_token": credentials.refresh_token},
        )
    except httpx.RequestError as exc:
        logger.error("Token refresh failed: %s", exc)
        credentials.clear()
        raise SessionExpiredError(f"Token refresh failed: {exc}") from exc

    if not response.is_success:
        logger.error(
            "Token refresh failed: %d %s", response.status_code, response.text[:200]
        )
        credentials.clear()
        raise SessionExpiredError(
            "Session expired, please login again",
            status_code=response.status_code,
            response_body=response.text[:500],
        )

    data = response.json()
    token = data.get("access_token") if isinstance(data, dict) else None
    if not token:
        credentials.clear()
        raise SessionExpiredError("Token refresh response had no access_token")

    credentials.access_token = str(token)
    expires_in = data.get("expires_in")
    lifetime = (
        float(expires_in)
        if isinstance(expires_in, (int, float)) and expires_in > 0
        else DEFAULT_TOKEN_LIFETIME_SECONDS
    )
    credentials.expires_at = time.time() + lifetime
    logger.info("Access token refreshed")
    return credentials.access_token
