"""Tests for the WearableSDK facade: routing, aggregates, backfill, lifecycle."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.config import Settings
from src.wearables.adapters.fitbit import FitbitAdapter
from src.wearables.adapters.garmin import GarminAdapter
from src.wearables.base import ConnectionStatus, DataType, DateRange, ProviderConfig
from src.wearables.errors import InvalidStateError, MissingTokenError, ProviderNotConfiguredError
from src.wearables.http_client import RetryingHttpClient
from src.wearables.sdk import WearableSDK
from src.wearables.stores.memory import MemoryTokenStore
from src.wearables.stores.postgres import PostgresTokenStore

SUBJECT = "user-123"


@pytest.fixture
def providers(provider_config) -> dict[str, ProviderConfig]:
    return {"garmin": provider_config, "fitbit": provider_config}


@pytest.fixture
def sdk(providers, token_store, http_factory, token_ok, sdk_config) -> WearableSDK:
    http, _ = http_factory(lambda r: token_ok(), provider_id="sdk")
    return WearableSDK(providers, token_store=token_store, http=http, config=sdk_config)


@pytest.fixture
def fake_sdk(fake_adapter, provider_config, token_store, http_factory, token_ok, sdk_config):
    """SDK with two fake providers registered."""
    fake_cls = type(fake_adapter)

    class AlphaAdapter(fake_cls):
        PROVIDER_ID = "alpha"

    class BetaAdapter(fake_cls):
        PROVIDER_ID = "beta"

    registry = {"alpha": AlphaAdapter, "beta": BetaAdapter}
    http, _ = http_factory(lambda r: token_ok(), provider_id="sdk")
    with patch.dict("src.wearables.adapters.ADAPTER_REGISTRY", registry):
        yield WearableSDK(
            {"alpha": provider_config, "beta": provider_config},
            token_store=token_store,
            http=http,
            config=sdk_config,
        )


class TestConstruction:
    def test_builds_engine_per_provider(self, sdk: WearableSDK) -> None:
        assert sdk.configured_providers == ["garmin", "fitbit"]
        assert isinstance(sdk.resolve("garmin").adapter, GarminAdapter)
        assert isinstance(sdk.resolve("fitbit").adapter, FitbitAdapter)

    def test_unknown_provider_rejected_at_construction(self, provider_config, token_store, sdk_config) -> None:
        with pytest.raises(KeyError):
            WearableSDK({"polar": provider_config}, token_store=token_store, config=sdk_config)

    def test_resolve_unconfigured_provider(self, provider_config, token_store, sdk_config) -> None:
        sdk = WearableSDK({"garmin": provider_config}, token_store=token_store, config=sdk_config)
        with pytest.raises(ProviderNotConfiguredError) as exc_info:
            sdk.resolve("fitbit")
        assert exc_info.value.provider_id == "fitbit"

    def test_default_store_is_memory_with_warning(self, provider_config, sdk_config, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="wearables.sdk"):
            sdk = WearableSDK({"garmin": provider_config}, config=sdk_config)
        assert isinstance(sdk.token_store, MemoryTokenStore)
        assert "MemoryTokenStore" in caplog.text

    def test_state_ttl_from_config(self, sdk: WearableSDK, sdk_config) -> None:
        assert sdk.resolve("garmin").registry.ttl_seconds == sdk_config.oauth.state_ttl_seconds

    def test_from_settings_only_configures_providers_with_client_id(self, token_store, sdk_config) -> None:
        settings = Settings(
            _env_file=None,
            fitbit_client_id="fb-id",
            fitbit_client_secret="fb-secret",
            fitbit_scopes=["sleep"],
        )
        sdk = WearableSDK.from_settings(settings, token_store=token_store, config=sdk_config)
        assert sdk.configured_providers == ["fitbit"]
        assert sdk.resolve("fitbit").scopes() == ["sleep"]

    def test_from_settings_with_dsn_logs_error(self, sdk_config, caplog) -> None:
        settings = Settings(_env_file=None, garmin_client_id="gid", token_store_dsn="postgresql://db/tokens")
        with caplog.at_level(logging.ERROR, logger="wearables.sdk"):
            WearableSDK.from_settings(settings, config=sdk_config)
        assert any(
            r.levelno == logging.ERROR and "token_store_dsn" in r.getMessage() for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_connect_opens_postgres_store_from_dsn(self, sdk_config) -> None:
        settings = Settings(_env_file=None, garmin_client_id="gid", token_store_dsn="postgresql://db/tokens")
        pool = AsyncMock()
        with patch("src.wearables.sdk.init_token_pool", AsyncMock(return_value=pool)) as init_pool:
            sdk = await WearableSDK.connect(settings, config=sdk_config)

        init_pool.assert_awaited_once_with("postgresql://db/tokens")
        assert isinstance(sdk.token_store, PostgresTokenStore)
        assert sdk.configured_providers == ["garmin"]

        await sdk.aclose()
        pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_keeps_explicit_store(self, token_store, sdk_config) -> None:
        settings = Settings(_env_file=None, garmin_client_id="gid", token_store_dsn="postgresql://db/tokens")
        with patch("src.wearables.sdk.init_token_pool", AsyncMock()) as init_pool:
            sdk = await WearableSDK.connect(settings, token_store=token_store, config=sdk_config)

        init_pool.assert_not_awaited()
        assert sdk.token_store is token_store
        await sdk.aclose()

    @pytest.mark.asyncio
    async def test_connect_without_dsn_uses_memory_store(self, sdk_config) -> None:
        settings = Settings(_env_file=None, fitbit_client_id="fb-id")
        with patch("src.wearables.sdk.init_token_pool", AsyncMock()) as init_pool:
            sdk = await WearableSDK.connect(settings, config=sdk_config)

        init_pool.assert_not_awaited()
        assert isinstance(sdk.token_store, MemoryTokenStore)
        await sdk.aclose()


class TestDelegation:
    def test_authorization_url_routes_to_provider(self, sdk: WearableSDK) -> None:
        garmin = sdk.get_authorization_url("garmin", SUBJECT)
        fitbit = sdk.get_authorization_url("fitbit", SUBJECT)
        assert garmin.url.startswith("https://connect.garmin.com/oauth2Confirm?")
        assert fitbit.url.startswith("https://www.fitbit.com/oauth2/authorize?")

    def test_unconfigured_provider_fails(self, sdk: WearableSDK) -> None:
        with pytest.raises(ProviderNotConfiguredError):
            sdk.get_authorization_url("oura", SUBJECT)

    @pytest.mark.asyncio
    async def test_state_is_not_shared_between_providers(self, sdk: WearableSDK) -> None:
        auth = sdk.get_authorization_url("garmin", SUBJECT)
        with pytest.raises(InvalidStateError):
            await sdk.handle_callback("fitbit", "code", auth.request_id)

    @pytest.mark.asyncio
    async def test_full_flow(self, fake_sdk: WearableSDK) -> None:
        auth = fake_sdk.get_authorization_url("alpha", SUBJECT)
        result = await fake_sdk.handle_callback("alpha", "code", auth.request_id)

        assert result.external_user_id == "ext-42"
        assert await fake_sdk.is_connected("alpha", SUBJECT)
        assert not await fake_sdk.is_connected("beta", SUBJECT)
        assert await fake_sdk.get_valid_access_token("alpha", SUBJECT) == "access-new"
        assert len(await fake_sdk.get_activities("alpha", SUBJECT)) == 1
        assert len(await fake_sdk.get_sleep("alpha", SUBJECT)) == 1
        assert len(await fake_sdk.get_dailies("alpha", SUBJECT)) == 2
        assert (await fake_sdk.connection_health("alpha", SUBJECT)).status is ConnectionStatus.ACTIVE

        refreshed = await fake_sdk.refresh_token("alpha", SUBJECT)
        assert refreshed.access_token == "access-new"

        await fake_sdk.disconnect("alpha", SUBJECT)
        with pytest.raises(MissingTokenError):
            await fake_sdk.get_activities("alpha", SUBJECT)


class TestAggregates:
    @pytest.mark.asyncio
    async def test_health_for_all_providers(self, fake_sdk: WearableSDK, token_store, make_tokens) -> None:
        await token_store.save(SUBJECT, "alpha", make_tokens())
        await token_store.save(SUBJECT, "beta", make_tokens(timedelta(minutes=-5)))

        health = await fake_sdk.health_for_all_providers(SUBJECT)

        assert set(health) == {"alpha", "beta"}
        assert health["alpha"].status is ConnectionStatus.ACTIVE
        assert health["beta"].status is ConnectionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_health_failure_is_isolated(self, fake_sdk: WearableSDK, token_store, make_tokens) -> None:
        await token_store.save(SUBJECT, "beta", make_tokens())
        failing = AsyncMock(side_effect=RuntimeError("store unreachable"))

        with patch.object(fake_sdk.resolve("alpha"), "connection_health", failing):
            health = await fake_sdk.health_for_all_providers(SUBJECT)

        assert health["alpha"].status is ConnectionStatus.DISCONNECTED
        assert health["alpha"].error == "store unreachable"
        assert health["beta"].status is ConnectionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_disconnect_all(self, fake_sdk: WearableSDK, token_store, make_tokens) -> None:
        await token_store.save(SUBJECT, "alpha", make_tokens())
        await token_store.save(SUBJECT, "beta", make_tokens())

        outcomes = await fake_sdk.disconnect_all(SUBJECT)

        assert outcomes == {"alpha": None, "beta": None}
        assert token_store.size == 0

    @pytest.mark.asyncio
    async def test_disconnect_all_attempts_every_provider(
        self, fake_sdk: WearableSDK, token_store, make_tokens
    ) -> None:
        await token_store.save(SUBJECT, "beta", make_tokens())
        boom = RuntimeError("delete failed")

        with patch.object(fake_sdk.resolve("alpha"), "disconnect", AsyncMock(side_effect=boom)):
            outcomes = await fake_sdk.disconnect_all(SUBJECT)

        assert outcomes["alpha"] is boom
        assert outcomes["beta"] is None
        assert not await token_store.has(SUBJECT, "beta")


class TestBackfill:
    @pytest.mark.asyncio
    async def test_defaults_from_config(self, fake_sdk: WearableSDK, token_store, make_tokens) -> None:
        await token_store.save(SUBJECT, "alpha", make_tokens())

        result = await fake_sdk.backfill("alpha", SUBJECT)

        assert result.data_types == [DataType.ACTIVITIES, DataType.SLEEP, DataType.DAILIES]
        assert (result.date_range.end - result.date_range.start).days == 60
        assert result.counts == {"activities": 1, "sleep": 1, "dailies": 2}

    @pytest.mark.asyncio
    async def test_subset_and_days_back(self, fake_sdk: WearableSDK, token_store, make_tokens) -> None:
        await token_store.save(SUBJECT, "alpha", make_tokens())

        result = await fake_sdk.backfill("alpha", SUBJECT, days_back=7, data_types=["dailies"])

        assert (result.date_range.end - result.date_range.start).days == 7
        assert result.activities == [] and result.sleep == []
        assert len(result.dailies) == 2

    @pytest.mark.asyncio
    async def test_explicit_range(self, fake_sdk: WearableSDK, token_store, make_tokens) -> None:
        await token_store.save(SUBJECT, "alpha", make_tokens())
        window = DateRange(date(2025, 6, 1), date(2025, 6, 30))

        result = await fake_sdk.backfill("alpha", SUBJECT, date_range=window, data_types=[DataType.SLEEP])

        assert result.date_range == window

    @pytest.mark.asyncio
    async def test_unknown_data_type(self, fake_sdk: WearableSDK) -> None:
        with pytest.raises(ValueError):
            await fake_sdk.backfill("alpha", SUBJECT, data_types=["steps"])

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, fake_sdk: WearableSDK) -> None:
        with pytest.raises(ProviderNotConfiguredError):
            await fake_sdk.backfill("gamma", SUBJECT)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self, provider_config, token_store, sdk_config) -> None:
        sdk = WearableSDK({"garmin": provider_config}, token_store=token_store, config=sdk_config)
        with patch.object(sdk._http, "aclose", new=AsyncMock()) as aclose:
            async with sdk as entered:
                assert entered is sdk
        aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self, provider_config, token_store, sdk_config) -> None:
        http = RetryingHttpClient("sdk", client=httpx.AsyncClient())
        sdk = WearableSDK({"garmin": provider_config}, token_store=token_store, http=http, config=sdk_config)
        with patch.object(http, "aclose", new=AsyncMock()) as aclose:
            await sdk.aclose()
        aclose.assert_not_awaited()
