"""Wearable Connect: OAuth connection engine for wearable providers.

Connects end users to Garmin and Fitbit, keeps their tokens fresh and
fetches normalized activity, sleep and daily data.

Subpackages:
    adapters/ — Provider adapters (Garmin, Fitbit)
    stores/   — TokenStore implementations (in-memory, Postgres)
    sync/     — Historical backfill

Core modules:
    base           — Token, flow and normalized data models; ProviderAdapter protocol
    engine         — Per-provider ConnectionEngine
    sdk            — WearableSDK facade
    http_client    — Retrying async HTTP client
    pkce           — PKCE verifier / challenge and opaque tokens
    state_registry — Pending authorization registry (single-use, TTL)
    token_store    — TokenStore protocol and connection health
    errors         — Error taxonomy
    config_loader  — Load/validate/hot-reload sdk_config.yaml
"""

from src.wearables.base import (
    AuthUrlResult,
    CallbackResult,
    ConnectionHealth,
    ConnectionStatus,
    DataType,
    DateRange,
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    ProviderAdapter,
    ProviderConfig,
    TokenRecord,
)
from src.wearables.config_loader import SDKConfig, get_sdk_config
from src.wearables.engine import ConnectionEngine
from src.wearables.errors import (
    InvalidStateError,
    MissingTokenError,
    OAuthError,
    ProviderAPIError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    RateLimitedError,
    TokenRefreshError,
    WearableSDKError,
)
from src.wearables.sdk import WearableSDK
from src.wearables.stores import MemoryTokenStore, PostgresTokenStore
from src.wearables.sync.backfill import BackfillResult
from src.wearables.token_store import TokenStore

__all__ = [
    "WearableSDK",
    "ConnectionEngine",
    "ProviderAdapter",
    "ProviderConfig",
    "TokenRecord",
    "TokenStore",
    "MemoryTokenStore",
    "PostgresTokenStore",
    "AuthUrlResult",
    "CallbackResult",
    "ConnectionHealth",
    "ConnectionStatus",
    "DataType",
    "DateRange",
    "NormalizedActivity",
    "NormalizedSleep",
    "NormalizedDaily",
    "BackfillResult",
    "SDKConfig",
    "get_sdk_config",
    "WearableSDKError",
    "InvalidStateError",
    "MissingTokenError",
    "TokenRefreshError",
    "OAuthError",
    "ProviderAPIError",
    "RateLimitedError",
    "ProviderUnavailableError",
    "ProviderNotConfiguredError",
]
