"""WearableSDK: the entry point host applications talk to.

Holds one ``ConnectionEngine`` per configured provider, routes calls by
provider slug and runs the multi-provider aggregates.

Usage::

    async with await WearableSDK.connect() as sdk:
        auth = sdk.get_authorization_url("garmin", "user-123")
        # ... redirect the user to auth.url, then on callback:
        result = await sdk.handle_callback("garmin", code, state)
        activities = await sdk.get_activities("garmin", "user-123")
"""

from __future__ import annotations

import logging
from typing import Iterable

from src.config import Settings, get_settings
from src.wearables.adapters import get_adapter
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
    ProviderConfig,
    TokenRecord,
)
from src.wearables.config_loader import SDKConfig, get_sdk_config
from src.wearables.engine import ConnectionEngine
from src.wearables.errors import ProviderNotConfiguredError
from src.wearables.http_client import RetryingHttpClient
from src.wearables.stores.memory import MemoryTokenStore
from src.wearables.stores.postgres import PostgresTokenStore, init_token_pool
from src.wearables.sync.backfill import (
    BackfillResult,
    parse_data_types,
    resolve_window,
    run_backfill,
)
from src.wearables.token_store import TokenStore

logger = logging.getLogger("wearables.sdk")


def _providers_from_settings(s: Settings) -> dict[str, ProviderConfig]:
    """Provider registrations for every provider with a client id set."""
    providers: dict[str, ProviderConfig] = {}
    if s.garmin_client_id:
        providers["garmin"] = ProviderConfig(
            client_id=s.garmin_client_id,
            client_secret=s.garmin_client_secret,
            redirect_uri=s.garmin_redirect_uri,
            scopes=s.garmin_scopes,
        )
    if s.fitbit_client_id:
        providers["fitbit"] = ProviderConfig(
            client_id=s.fitbit_client_id,
            client_secret=s.fitbit_client_secret,
            redirect_uri=s.fitbit_redirect_uri,
            scopes=s.fitbit_scopes,
        )
    return providers


class WearableSDK:
    """Routes calls to per-provider connection engines.

    The provider → engine map is built once at construction and never
    changes afterwards.
    """

    def __init__(
        self,
        providers: dict[str, ProviderConfig],
        token_store: TokenStore | None = None,
        http: RetryingHttpClient | None = None,
        config: SDKConfig | None = None,
    ) -> None:
        """Build an engine for every configured provider.

        Args:
            providers:   Client registrations keyed by provider slug.
            token_store: Persistence backend.  Defaults to an in-memory store,
                         which loses every connection on restart.
            http:        Shared HTTP client.  One is created (and closed by
                         ``aclose``) when omitted.
            config:      Engine policy; defaults to the bundled sdk_config.yaml.

        Raises:
            KeyError: If a provider slug has no registered adapter.
        """
        self._config = config or get_sdk_config()

        if token_store is None:
            logger.warning(
                "No token store configured; using MemoryTokenStore. "
                "Connections will not survive a restart."
            )
            token_store = MemoryTokenStore()
        self._store = token_store
        self._owned_pool = None

        self._owns_http = http is None
        self._http = http or RetryingHttpClient(
            "sdk",
            retries=self._config.http.retries,
            backoff_base=self._config.http.backoff_base_seconds,
            timeout=self._config.http.timeout_seconds,
        )

        self._engines: dict[str, ConnectionEngine] = {}
        for provider_id, provider_config in providers.items():
            adapter_cls = get_adapter(provider_id)
            provider_http = self._http.with_provider(provider_id)
            adapter = adapter_cls(provider_http, self._config.provider(provider_id))
            self._engines[provider_id] = ConnectionEngine(
                adapter,
                provider_config,
                self._store,
                provider_http,
                state_ttl_seconds=self._config.oauth.state_ttl_seconds,
            )

        logger.info("WearableSDK ready with providers: %s", ", ".join(self._engines) or "none")

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        token_store: TokenStore | None = None,
        http: RetryingHttpClient | None = None,
        config: SDKConfig | None = None,
    ) -> "WearableSDK":
        """Build the SDK from environment settings.

        Only providers with a client id set are configured.  This builder
        cannot open a database pool; use ``connect()`` when
        ``token_store_dsn`` is set.
        """
        s = settings or get_settings()
        if s.token_store_dsn and token_store is None:
            logger.error(
                "token_store_dsn is set but from_settings() cannot open a pool; "
                "use 'await WearableSDK.connect()' to get a PostgresTokenStore"
            )
        return cls(_providers_from_settings(s), token_store=token_store, http=http, config=config)

    @classmethod
    async def connect(
        cls,
        settings: Settings | None = None,
        token_store: TokenStore | None = None,
        http: RetryingHttpClient | None = None,
        config: SDKConfig | None = None,
    ) -> "WearableSDK":
        """Build the SDK from environment settings, opening the token store.

        With ``token_store_dsn`` set and no explicit store, an asyncpg pool
        is created and wrapped in a ``PostgresTokenStore``.  The SDK owns that
        pool and closes it in ``aclose``.
        """
        s = settings or get_settings()
        pool = None
        if token_store is None and s.token_store_dsn:
            pool = await init_token_pool(s.token_store_dsn)
            token_store = PostgresTokenStore(pool)
        sdk = cls(_providers_from_settings(s), token_store=token_store, http=http, config=config)
        sdk._owned_pool = pool
        return sdk

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @property
    def configured_providers(self) -> list[str]:
        return list(self._engines)

    @property
    def token_store(self) -> TokenStore:
        return self._store

    def resolve(self, provider_id: str) -> ConnectionEngine:
        """Return the engine for ``provider_id``.

        Raises:
            ProviderNotConfiguredError: No engine was built for that provider.
        """
        engine = self._engines.get(provider_id)
        if engine is None:
            raise ProviderNotConfiguredError(provider_id)
        return engine

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    def get_authorization_url(self, provider_id: str, subject_id: str) -> AuthUrlResult:
        return self.resolve(provider_id).build_authorization_url(subject_id)

    async def handle_callback(self, provider_id: str, code: str, request_id: str) -> CallbackResult:
        return await self.resolve(provider_id).handle_callback(code, request_id)

    async def refresh_token(self, provider_id: str, subject_id: str) -> TokenRecord:
        return await self.resolve(provider_id).refresh(subject_id)

    async def get_valid_access_token(self, provider_id: str, subject_id: str) -> str:
        return await self.resolve(provider_id).get_valid_access_token(subject_id)

    async def get_activities(
        self, provider_id: str, subject_id: str, date_range: DateRange | None = None
    ) -> list[NormalizedActivity]:
        return await self.resolve(provider_id).get_activities(subject_id, date_range)

    async def get_sleep(
        self, provider_id: str, subject_id: str, date_range: DateRange | None = None
    ) -> list[NormalizedSleep]:
        return await self.resolve(provider_id).get_sleep(subject_id, date_range)

    async def get_dailies(
        self, provider_id: str, subject_id: str, date_range: DateRange | None = None
    ) -> list[NormalizedDaily]:
        return await self.resolve(provider_id).get_dailies(subject_id, date_range)

    async def connection_health(self, provider_id: str, subject_id: str) -> ConnectionHealth:
        return await self.resolve(provider_id).connection_health(subject_id)

    async def is_connected(self, provider_id: str, subject_id: str) -> bool:
        return await self.resolve(provider_id).is_connected(subject_id)

    async def disconnect(self, provider_id: str, subject_id: str) -> None:
        await self.resolve(provider_id).disconnect(subject_id)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def health_for_all_providers(self, subject_id: str) -> dict[str, ConnectionHealth]:
        """Health for every configured provider, checked one after another.

        A provider whose check raises is reported as DISCONNECTED with the
        exception text in ``error``; the remaining providers are still checked.
        """
        results: dict[str, ConnectionHealth] = {}
        for provider_id, engine in self._engines.items():
            try:
                results[provider_id] = await engine.connection_health(subject_id)
            except Exception as exc:
                logger.warning(
                    "Health check failed for %s (subject: %s): %s", provider_id, subject_id, exc
                )
                results[provider_id] = ConnectionHealth(
                    provider_id=provider_id,
                    subject_id=subject_id,
                    status=ConnectionStatus.DISCONNECTED,
                    error=str(exc) or type(exc).__name__,
                )
        return results

    async def disconnect_all(self, subject_id: str) -> dict[str, Exception | None]:
        """Disconnect every configured provider.

        Returns:
            Provider slug → None on success, or the exception that provider raised.
        """
        outcomes: dict[str, Exception | None] = {}
        for provider_id, engine in self._engines.items():
            try:
                await engine.disconnect(subject_id)
                outcomes[provider_id] = None
            except Exception as exc:
                logger.error(
                    "Disconnect failed for %s (subject: %s): %s", provider_id, subject_id, exc
                )
                outcomes[provider_id] = exc
        return outcomes

    async def backfill(
        self,
        provider_id: str,
        subject_id: str,
        days_back: int | None = None,
        data_types: Iterable[DataType | str] | None = None,
        date_range: DateRange | None = None,
    ) -> BackfillResult:
        """Fetch historical data for one provider.

        Args:
            provider_id: Provider slug.
            subject_id:  Subject to backfill.
            days_back:   Days before today to cover (default from sdk_config.yaml).
            data_types:  Subset of activities / sleep / dailies (default: configured set).
            date_range:  Explicit window; overrides ``days_back``.

        Raises:
            ProviderNotConfiguredError: Unknown provider.
            ValueError:                 Unknown data type name.
        """
        engine = self.resolve(provider_id)
        policy = self._config.backfill
        requested = parse_data_types(data_types, policy.data_types)
        window = resolve_window(days_back, date_range, policy.default_days_back)
        return await run_backfill(engine, subject_id, window, requested)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the HTTP client and token-store pool if the SDK created them."""
        if self._owns_http:
            await self._http.aclose()
        if self._owned_pool is not None:
            await self._owned_pool.close()
            self._owned_pool = None

    async def __aenter__(self) -> "WearableSDK":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
