"""Authenticated async HTTP caller for the rules backend.

Every request carries the bearer token (except the login-style endpoints) and
rule/patient endpoints also carry the X-Athena-Environment header. Expired
tokens are refreshed before the request; a 401 triggers one refresh and replay.
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from automation_client.auth import Credentials, refresh_access_token
from automation_client.config import AutomationConfig
from automation_client.errors import (
    AutomationApiAuthenticationError,
    AutomationApiClientError,
    AutomationApiError,
    AutomationApiNotFoundError,
    AutomationApiRateLimitError,
    AutomationApiServerError,
    AutomationApiTimeoutError,
)

logger = logging.getLogger(__name__)

ENVIRONMENT_HEADER = "X-Athena-Environment"
ENVIRONMENT_PATH_PREFIXES = (
    "/rules/",
    "/filters/",
    "/patients/",
    "/medofficehq/athena/",
    "/v1/logs",
)
UNAUTHENTICATED_PATHS = frozenset(
    {"/auth/user-exists", "/auth/login-with-institution", "/auth/register"}
)
NO_REFRESH_PATHS = UNAUTHENTICATED_PATHS | {"/auth/login"}
DEFAULT_RETRY_ATTEMPTS = 3


def _is_retryable(exc: BaseException) -> bool:
    """Server errors, rate limits, timeouts and transport failures."""
    if isinstance(
        exc,
        (AutomationApiServerError, AutomationApiRateLimitError, AutomationApiTimeoutError),
    ):
        return True
    return type(exc) is AutomationApiError and exc.status_code is None


class AutomationApiClient:
    """Client for the rules backend REST API.

    Args:
        config: Client configuration (base URL, environment, timeouts, tokens).
        credentials: Token holder; built from ``config`` when omitted.
        transport: Optional httpx transport, used by tests.
        retry_attempts: Total attempts for requests that opt into retry.
        retry_wait: Tenacity wait strategy between retry attempts.
    """

    def __init__(
        self,
        config: AutomationConfig,
        *,
        credentials: Credentials | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_wait: wait_base | None = None,
    ) -> None:
        """Initialize the HTTP client."""
        if not config.base_url:
            raise ValueError(
                "Automation API URL is required. Set AUTOMATION_API_URL."
            )
        self.config = config
        self.credentials = credentials or Credentials(
            access_token=config.access_token,
            refresh_token=config.refresh_token,
            expires_at=config.token_expires_at,
        )
        self._retry_attempts = max(1, retry_attempts)
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=2)
        self._refresh_lock = asyncio.Lock()
        self._http = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.request_timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "AutomationApiClient":
        """Enter async context manager scope."""
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc: BaseException | None,
        _tb: TracebackType | None,
    ) -> None:
        """Exit async context manager scope and close the HTTP client."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client and release connections."""
        await self._http.aclose()

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
        retry: bool = False,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Args:
            method: HTTP method.
            path: Path relative to the base URL, starting with ``/``.
            json: Optional JSON body.
            params: Optional query parameters.
            timeout: Per-request timeout; the configured default when None.
            retry: Retry transient failures. Only for idempotent calls.

        Returns:
            Decoded JSON body, or None for an empty body.

        Raises:
            AutomationApiAuthenticationError: On 401/403 (after one refresh).
            AutomationApiNotFoundError: On 404.
            AutomationApiRateLimitError: On 429.
            AutomationApiClientError: On other 4xx.
            AutomationApiServerError: On 5xx.
            AutomationApiTimeoutError: When the request timed out.
            AutomationApiError: On other transport failures or invalid JSON.
        """
        if not retry:
            return await self._send(method, path, json, params, timeout)

        result: Any = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._retry_attempts),
            wait=self._retry_wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying %s %s (attempt %d)",
                        method,
                        path,
                        attempt.retry_state.attempt_number,
                    )
                result = await self._send(method, path, json, params, timeout)
        return result

    def headers_for(self, path: str) -> dict[str, str]:
        """Per-request headers for ``path``."""
        headers: dict[str, str] = {}
        if path.startswith(ENVIRONMENT_PATH_PREFIXES):
            headers[ENVIRONMENT_HEADER] = self.config.environment
        if path not in UNAUTHENTICATED_PATHS and self.credentials.access_token:
            headers["Authorization"] = f"Bearer {self.credentials.access_token}"
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        json: Any,
        params: dict[str, str] | None,
        timeout: float | None,
    ) -> Any:
        if path not in UNAUTHENTICATED_PATHS and self.credentials.is_expired():
            logger.info("Access token expired, refreshing before %s %s", method, path)
            await self._refresh(self.credentials.access_token)

        sent_token = self.credentials.access_token
        response = await self._execute(method, path, json, params, timeout)
        if response.status_code == 401 and path not in NO_REFRESH_PATHS:
            logger.info("Got 401 for %s %s, refreshing token and retrying", method, path)
            await self._refresh(sent_token)
            response = await self._execute(method, path, json, params, timeout)

        if not response.is_success:
            error = self._map_http_error(response)
            logger.debug("%s %s failed: %s", method, path, error.message)
            raise error
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise AutomationApiError(
                f"Invalid JSON from {method} {path}",
                status_code=response.status_code,
                response_body=response.text[:500],
            ) from exc

    async def _refresh(self, stale_token: str | None) -> None:
        """Refresh once for all callers that saw ``stale_token``.

        Concurrent callers queue on the lock; whoever gets it after a
        successful refresh finds a newer, unexpired token and reuses it.
        """
        async with self._refresh_lock:
            current = self.credentials.access_token
            if current and current != stale_token and not self.credentials.is_expired():
                logger.debug("Token already refreshed by a concurrent request")
                return
            await refresh_access_token(self._http, self.credentials)

    async def _execute(
        self,
        method: str,
        path: str,
        json: Any,
        params: dict[str, str] | None,
        timeout: float | None,
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                path,
                json=json,
                params=params,
                headers=self.headers_for(path),
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as exc:
            raise AutomationApiTimeoutError(
                f"Request timed out: {method} {path}"
            ) from exc
        except httpx.RequestError as exc:
            raise AutomationApiError(f"Network request failed: {exc}") from exc

    @staticmethod
    def _map_http_error(response: httpx.Response) -> AutomationApiError:
        """Map an HTTP error response to the matching exception."""
        status = response.status_code
        body = response.text[:500]
        detail = _extract_detail(response)
        message = detail or f"HTTP {status}: {body}"

        if status in (401, 403):
            return AutomationApiAuthenticationError(message, status, body)
        if status == 404:
            return AutomationApiNotFoundError(message, status, body)
        if status == 429:
            return AutomationApiRateLimitError(message, status, body)
        if 400 <= status < 500:
            return AutomationApiClientError(message, status, body)
        if status >= 500:
            return AutomationApiServerError(message, status, body)
        return AutomationApiError(message, status, body)


def _extract_detail(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("message")
        if isinstance(detail, str) and detail:
            return detail
    return None
