"""Async HTTP client with retries, backoff and rate-limit surfacing.

Thin wrapper over ``httpx.AsyncClient`` shared by the engine (token
endpoints) and the provider adapters (data endpoints).

Retry policy:
    network error / timeout  → retried, exponential backoff
    HTTP 5xx                 → retried, exponential backoff
    HTTP 429                 → RateLimitedError immediately, never retried
    other non-2xx            → ProviderAPIError immediately

With the defaults (3 retries, 0.5s base) the waits are 0.5s, 1s, 2s.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

import httpx

from src.wearables.errors import (
    ProviderAPIError,
    ProviderUnavailableError,
    RateLimitedError,
)

logger = logging.getLogger("wearables.http")

DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_BASE = 0.5  # seconds
DEFAULT_TIMEOUT = 30.0  # seconds


class ContentType(str, Enum):
    """Request body encoding.  Always chosen explicitly, never sniffed."""

    JSON = "json"
    FORM = "form"


@dataclass
class HttpResponse:
    """Successful (2xx) response.

    Attributes:
        status:  HTTP status code.
        headers: Response headers.
        data:    Decoded JSON, raw text when the body is not JSON, or None when empty.
    """

    status: int
    headers: httpx.Headers
    data: Any


def parse_retry_after(value: str | None, now: datetime | None = None) -> int | None:
    """Parse a ``Retry-After`` header into whole seconds.

    Accepts delta-seconds or an HTTP-date.  Returns None when absent or
    unparseable.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    moment = now or datetime.now(timezone.utc)
    return max(0, int((when - moment).total_seconds()))


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class RetryingHttpClient:
    """HTTP executor with timeout, exponential backoff and typed failures.

    Usage::

        http = RetryingHttpClient("garmin")
        resp = await http.get(url, headers={"Authorization": f"Bearer {token}"})
        await http.aclose()
    """

    def __init__(
        self,
        provider_id: str = "sdk",
        client: httpx.AsyncClient | None = None,
        retries: int = DEFAULT_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the client.

        Args:
            provider_id:  Label used in errors and log lines.
            client:       Optional pre-configured httpx client (useful for testing).
                          When omitted an owned client is created and closed by ``aclose``.
            retries:      Extra attempts after the first on 5xx / network failure.
            backoff_base: Delay before the first retry, in seconds; doubles each attempt.
            timeout:      Per-attempt timeout in seconds.
        """
        if retries < 0:
            raise ValueError("retries must be non-negative")
        self._provider_id = provider_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._retries = retries
        self._backoff_base = backoff_base
        self._timeout = timeout

    @property
    def provider_id(self) -> str:
        return self._provider_id

    def with_provider(self, provider_id: str) -> "RetryingHttpClient":
        """Return a client sharing this connection pool but labelled for another provider."""
        clone = RetryingHttpClient(
            provider_id,
            client=self._client,
            retries=self._retries,
            backoff_base=self._backoff_base,
            timeout=self._timeout,
        )
        clone._owns_client = False
        return clone

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt + 1`` (attempt is 0-based)."""
        return self._backoff_base * (2**attempt)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        content_type: ContentType | str = ContentType.JSON,
        auth: httpx.Auth | tuple[str, str] | None = None,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        """Execute a request under the retry policy.

        Args:
            method:       HTTP method.
            url:          Absolute URL.
            headers:      Extra request headers.
            params:       Query parameters.
            body:         Request body mapping, encoded per ``content_type``.
            content_type: ``ContentType.FORM`` for token endpoints, ``JSON`` otherwise.
            auth:         Optional httpx auth (e.g. ``httpx.BasicAuth``).
            retries:      Per-call override of the retry count.
            timeout:      Per-call override of the attempt timeout, in seconds.

        Returns:
            HttpResponse for a 2xx answer.

        Raises:
            RateLimitedError:         On HTTP 429.
            ProviderAPIError:         On any other non-2xx (5xx only after retries).
            ProviderUnavailableError: When every attempt failed at the network level.
        """
        max_retries = self._retries if retries is None else retries
        attempt_timeout = self._timeout if timeout is None else timeout
        encoding = ContentType(content_type)

        payload: dict[str, Any] = {}
        if body is not None:
            if encoding is ContentType.FORM:
                payload["data"] = body
            else:
                payload["json"] = body

        for attempt in range(max_retries + 1):
            logger.debug(
                "%s %s (attempt %d) [%s]", method, url, attempt + 1, self._provider_id
            )
            try:
                response = await self._client.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    auth=auth,
                    timeout=attempt_timeout,
                    **payload,
                )
            except httpx.TransportError as exc:
                if attempt < max_retries:
                    wait = self.backoff_delay(attempt)
                    logger.warning(
                        "Request to %s failed (%s), retrying in %.2fs",
                        self._provider_id, type(exc).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                raise ProviderUnavailableError(self._provider_id, attempt + 1) from exc

            status = response.status_code

            if status == 429:
                raise RateLimitedError(
                    self._provider_id,
                    parse_retry_after(response.headers.get("Retry-After")),
                    _decode_body(response),
                )

            if status >= 500 and attempt < max_retries:
                wait = self.backoff_delay(attempt)
                logger.warning(
                    "Server error %d from %s, retrying in %.2fs",
                    status, self._provider_id, wait,
                )
                await asyncio.sleep(wait)
                continue

            if not response.is_success:
                raise ProviderAPIError(self._provider_id, status, _decode_body(response))

            return HttpResponse(status=status, headers=response.headers, data=_decode_body(response))

        # Unreachable: the final attempt always returns or raises
        raise ProviderUnavailableError(self._provider_id, max_retries + 1)

    async def get(self, url: str, **kwargs: Any) -> HttpResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> HttpResponse:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
