"""Shared fixtures for wearable connection engine tests."""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import parse_qs

import httpx
import pytest

from src.wearables.base import (
    AuthMethod,
    DateRange,
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    ProviderConfig,
    TokenRecord,
)
from src.wearables.config_loader import SDKConfig, load_sdk_config
from src.wearables.http_client import RetryingHttpClient
from src.wearables.stores.memory import MemoryTokenStore

TEST_SUBJECT = "user-123"
TEST_DATE = date(2026, 2, 23)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter:
    """Minimal ``ProviderAdapter`` that records calls and returns canned data."""

    PROVIDER_ID = "fake"
    DISPLAY_NAME = "Fake Wearable"

    authorize_url = "https://auth.fake.test/authorize"
    token_url = "https://auth.fake.test/token"
    use_pkce = True
    auth_method = AuthMethod.BODY
    default_scopes: tuple[str, ...] = ("read", "write")

    def __init__(self, http: RetryingHttpClient | None = None, tuning: dict | None = None) -> None:
        self.http = http
        self.tuning = tuning
        self.user_id: str | None = "ext-42"
        self.user_id_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.calls: list[tuple[str, str, DateRange | None]] = []

    async def fetch_external_user_id(self, access_token: str) -> str | None:
        self.calls.append(("user_id", access_token, None))
        if self.user_id_error is not None:
            raise self.user_id_error
        return self.user_id

    async def fetch_activities(self, access_token: str, date_range: DateRange) -> list[NormalizedActivity]:
        self.calls.append(("activities", access_token, date_range))
        if self.fetch_error is not None:
            raise self.fetch_error
        start = datetime(2026, 2, 22, 7, tzinfo=timezone.utc)
        return [
            NormalizedActivity(
                id="a1",
                provider=self.PROVIDER_ID,
                activity_type="run",
                start_time=start,
                end_time=start + timedelta(minutes=30),
                duration_seconds=1800,
            )
        ]

    async def fetch_sleep(self, access_token: str, date_range: DateRange) -> list[NormalizedSleep]:
        self.calls.append(("sleep", access_token, date_range))
        start = datetime(2026, 2, 21, 23, tzinfo=timezone.utc)
        return [
            NormalizedSleep(
                id="s1",
                provider=self.PROVIDER_ID,
                sleep_date=TEST_DATE,
                start_time=start,
                end_time=start + timedelta(hours=8),
                duration_seconds=28_800,
            )
        ]

    async def fetch_dailies(self, access_token: str, date_range: DateRange) -> list[NormalizedDaily]:
        self.calls.append(("dailies", access_token, date_range))
        return [
            NormalizedDaily(id="d1", provider=self.PROVIDER_ID, date=TEST_DATE, steps=9000),
            NormalizedDaily(id="d2", provider=self.PROVIDER_ID, date=TEST_DATE, steps=11000),
        ]


class RecordingTransport:
    """Wraps a handler for ``httpx.MockTransport`` and keeps every request."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def count(self) -> int:
        return len(self.requests)

    def form(self, index: int = -1) -> dict[str, str]:
        """Decoded form body of a recorded request."""
        body = self.requests[index].content.decode()
        return {k: v[0] for k, v in parse_qs(body).items()}

    def json(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sdk_config() -> SDKConfig:
    """Load the bundled sdk_config.yaml."""
    return load_sdk_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        client_id="client-abc",
        client_secret="s3cret",
        redirect_uri="https://app.test/auth/callback",
    )


@pytest.fixture
def token_store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest.fixture
def make_tokens() -> Callable[..., TokenRecord]:
    """Factory: TokenRecord expiring ``expires_in`` from now."""

    def _make(
        expires_in: timedelta = timedelta(hours=1),
        access_token: str = "access-old",
        refresh_token: str | None = "refresh-old",
    ) -> TokenRecord:
        return TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + expires_in,
            scope="read write",
        )

    return _make


@pytest.fixture
def http_factory() -> Callable[..., tuple[RetryingHttpClient, RecordingTransport]]:
    """Factory: RetryingHttpClient over an ``httpx.MockTransport`` with zero backoff."""

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        provider_id: str = "fake",
        retries: int = 3,
    ) -> tuple[RetryingHttpClient, RecordingTransport]:
        transport = RecordingTransport(handler)
        client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
        http = RetryingHttpClient(provider_id, client=client, retries=retries, backoff_base=0.0)
        return http, transport

    return _make


def token_response(**overrides: Any) -> httpx.Response:
    """200 token-endpoint response."""
    body = {
        "access_token": "access-new",
        "refresh_token": "refresh-new",
        "expires_in": 3600,
        "token_type": "Bearer",
        "scope": "read write",
    }
    body.update(overrides)
    body = {k: v for k, v in body.items() if v is not None}
    return httpx.Response(200, json=body)


@pytest.fixture
def token_ok() -> Callable[..., httpx.Response]:
    return token_response
