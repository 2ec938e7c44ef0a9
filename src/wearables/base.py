"""Core types for the wearable connection engine.

Token records, pending-authorization context, connection health, the
normalized data models adapters return, and the ``ProviderAdapter``
capability every vendor integration supplies.  These types are the single
source of truth shared by the engine, the token stores and the SDK facade.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator, Protocol, runtime_checkable

logger = logging.getLogger("wearables")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AuthMethod(str, Enum):
    """How client credentials travel to the token endpoint."""

    BODY = "body"
    BASIC = "basic"


class ConnectionStatus(str, Enum):
    """Connection state reported by ``ConnectionHealth``.

    Only ACTIVE, EXPIRED and DISCONNECTED are produced by the engine.
    REVOKED and ERROR are reserved for adapter-reported failures.
    """

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class DataType(str, Enum):
    """Data categories that can be fetched and backfilled."""

    ACTIVITIES = "activities"
    SLEEP = "sleep"
    DAILIES = "dailies"


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


@dataclass
class TokenRecord:
    """OAuth token set persisted per (subject, provider).

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
                       ``None`` when the provider never issued one.
        expires_at:    Timezone-aware UTC datetime when the access_token expires.
        scope:         Granted scope string as returned by the provider.
        token_type:    Token type, typically "Bearer".
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime
    scope: str | None = None
    token_type: str = "Bearer"

    def expires_within(self, window: timedelta, now: datetime | None = None) -> bool:
        """Return True if the token expires at or before ``now + window``."""
        moment = now or utcnow()
        return self.expires_at <= moment + window

    def is_expired(self, now: datetime | None = None) -> bool:
        moment = now or utcnow()
        return self.expires_at < moment

    def to_dict(self) -> dict[str, Any]:
        """At-rest representation with an ISO-8601 expiry."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "scope": self.scope,
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenRecord":
        expires_at = data["expires_at"]
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
        if expires_at.tzinfo is None:
            # Naive values are stored as UTC
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthorizationContext:
    """Everything the callback needs to finish a flow started by ``build_authorization_url``.

    Attributes:
        subject_id:      Caller-supplied identity of the end user.
        provider_id:     Provider slug the flow was started for.
        redirect_target: Redirect URI echoed to the provider on exchange.
        pkce_verifier:   PKCE code_verifier, or None when PKCE is not used.
    """

    subject_id: str
    provider_id: str
    redirect_target: str
    pkce_verifier: str | None = None


@dataclass
class PendingAuthorization:
    """One in-flight authorization request held by the state registry."""

    request_id: str
    context: AuthorizationContext
    created_at: float

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass(frozen=True)
class AuthUrlResult:
    """Authorization URL to redirect the user to, plus the opaque request id.

    The request id is also the ``state`` parameter the provider echoes back.
    """

    url: str
    request_id: str


@dataclass
class CallbackResult:
    """Outcome of a successful OAuth callback.

    Attributes:
        subject_id:       Subject the connection belongs to.
        provider_id:      Provider slug.
        tokens:           Freshly persisted token record.
        external_user_id: Provider's own user identifier, None if the lookup failed.
    """

    subject_id: str
    provider_id: str
    tokens: TokenRecord
    external_user_id: str | None = None


@dataclass
class ConnectionHealth:
    """Derived (never stored) view of a connection's state."""

    provider_id: str
    subject_id: str
    status: ConnectionStatus
    token_expires_at: datetime | None = None
    last_sync_at: datetime | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Client registration for one provider.

    Attributes:
        client_id:     OAuth client ID.
        client_secret: OAuth client secret.
        redirect_uri:  Callback URI registered with the provider.
        scopes:        Explicit scope override; None uses the adapter defaults.
    """

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: list[str] | None = None

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(client_id={self.client_id!r}, "
            f"redirect_uri={self.redirect_uri!r}, scopes={self.scopes!r})"
        )


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-date window for data fetches."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"DateRange start {self.start} is after end {self.end}")

    @classmethod
    def last_days(cls, days_back: int, today: date | None = None) -> "DateRange":
        """Window covering the last ``days_back`` days up to and including today."""
        if days_back < 0:
            raise ValueError("days_back must be non-negative")
        end = today or utcnow().date()
        return cls(start=end - timedelta(days=days_back), end=end)

    @classmethod
    def default(cls, today: date | None = None) -> "DateRange":
        """Yesterday through today."""
        return cls.last_days(1, today)

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def chunks(self, max_days: int) -> list["DateRange"]:
        """Split into consecutive windows of at most ``max_days`` days."""
        if max_days < 1:
            raise ValueError("max_days must be at least 1")
        out: list[DateRange] = []
        current = self.start
        while current <= self.end:
            chunk_end = min(current + timedelta(days=max_days - 1), self.end)
            out.append(DateRange(current, chunk_end))
            current = chunk_end + timedelta(days=1)
        return out


# ---------------------------------------------------------------------------
# Normalized adapter output
# ---------------------------------------------------------------------------


@dataclass
class NormalizedActivity:
    """Activity / workout record.

    Attributes:
        id:                 Provider activity ID (stringified).
        provider:           Provider slug.
        activity_type:      Canonical activity type slug.
        start_time:         UTC start timestamp.
        end_time:           UTC end timestamp.
        duration_seconds:   Duration in seconds.
        calories:           Active calories burned.
        distance_m:         Distance in meters.
        steps:              Step count.
        avg_hr_bpm:         Average heart rate.
        max_hr_bpm:         Maximum heart rate.
        device:             Recording device name, when reported.
        raw:                Original provider payload.
    """

    id: str
    provider: str
    activity_type: str
    start_time: datetime
    end_time: datetime
    duration_seconds: int
    calories: int | None = None
    distance_m: float | None = None
    steps: int | None = None
    avg_hr_bpm: int | None = None
    max_hr_bpm: int | None = None
    device: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class SleepStage:
    stage: str
    start_time: datetime
    end_time: datetime
    duration_seconds: int


@dataclass
class NormalizedSleep:
    """Sleep session record.

    Attributes:
        id:               Provider sleep ID (stringified).
        provider:         Provider slug.
        sleep_date:       Calendar date the provider files the session under.
        start_time:       UTC start timestamp.
        end_time:         UTC end timestamp.
        duration_seconds: Total duration in seconds.
        deep_seconds:     Deep sleep duration.
        light_seconds:    Light sleep duration.
        rem_seconds:      REM duration.
        awake_seconds:    Time awake during the session.
        sleep_score:      Provider sleep quality score.
        stages:           Hypnogram, ordered by start time.
        raw:              Original provider payload.
    """

    id: str
    provider: str
    sleep_date: date
    start_time: datetime
    end_time: datetime
    duration_seconds: int
    deep_seconds: int | None = None
    light_seconds: int | None = None
    rem_seconds: int | None = None
    awake_seconds: int | None = None
    sleep_score: int | None = None
    stages: list[SleepStage] = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class NormalizedDaily:
    """Daily summary record."""

    id: str
    provider: str
    date: date
    steps: int | None = None
    calories: int | None = None
    distance_m: float | None = None
    active_minutes: int | None = None
    resting_hr_bpm: int | None = None
    avg_hr_bpm: int | None = None
    max_hr_bpm: int | None = None
    stress_avg: int | None = None
    floors_climbed: int | None = None
    raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Provider adapter capability
# ---------------------------------------------------------------------------


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability record each vendor integration supplies to the engine.

    Adapters conform structurally; there is no base class to inherit from.
    Fetch methods receive a valid access token and let provider failures
    (``ProviderAPIError``, ``RateLimitedError``) propagate.
    """

    PROVIDER_ID: str
    DISPLAY_NAME: str
    authorize_url: str
    token_url: str
    use_pkce: bool
    auth_method: AuthMethod
    default_scopes: tuple[str, ...]

    async def fetch_external_user_id(self, access_token: str) -> str | None:
        ...

    async def fetch_activities(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedActivity]:
        ...

    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedSleep]:
        ...

    async def fetch_dailies(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedDaily]:
        ...


# ---------------------------------------------------------------------------
# Shared helpers for adapters
# ---------------------------------------------------------------------------


def safe_int(value: object) -> int | None:
    """Safely coerce a value to int, returning None on failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def from_epoch(seconds: int | float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 datetime string to an aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if the value is None
    or unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
