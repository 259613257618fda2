"""
Tests for gateway settings resolution and the checkout method list.
"""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.database.models.payment import PaymentGateway
from src.schemas.payments import SSLCommerzSettings, StripeSettings
from src.services.payments.errors import GatewayNotConfiguredError
from src.services.payments.gateway_settings import GatewaySettingsResolver
from src.services.payments.gateways import GatewayClientFactory
from src.services.payments.settings_repository import SettingsRepository
from src.services.payments.sslcommerz_client import SSLCommerzClient
from src.services.payments.stripe_client import StripeClient


# ============================================================================
# Test Fixtures
# ============================================================================


CARD_VALUES = {
    "secret_key": "sk_test_1",
    "webhook_secret": "whsec_1",
    "publishable_key": "pk_test_1",
    "enabled": "true",
}

REGIONAL_VALUES = {
    "store_id": "store1",
    "store_password": "pass1",
    "sandbox": "true",
    "enabled": "true",
}


@pytest.fixture
def stored() -> dict[str, dict[str, str]]:
    return {"stripe": dict(CARD_VALUES), "sslcommerz": dict(REGIONAL_VALUES)}


@pytest.fixture
def settings_repository(stored) -> AsyncMock:
    repository = AsyncMock(spec=SettingsRepository)

    async def get_category(category):
        return dict(stored.get(category, {}))

    async def upsert_many(category, values):
        stored.setdefault(category, {}).update(values)

    repository.get_category.side_effect = get_category
    repository.upsert_many.side_effect = upsert_many
    return repository


@pytest.fixture
def resolver(settings_repository, fake_redis, key_manager) -> GatewaySettingsResolver:
    return GatewaySettingsResolver(
        settings_repository,
        cache=fake_redis,
        key_manager=key_manager,
        ttl_seconds=300,
    )


# ============================================================================
# Credential Resolution
# ============================================================================


class TestCredentialResolution:
    """Complete key sets only."""

    @pytest.mark.asyncio
    async def test_card_settings(self, resolver):
        settings = await resolver.get_card_settings()

        assert settings == StripeSettings(
            secret_key="sk_test_1",
            webhook_secret="whsec_1",
            publishable_key="pk_test_1",
            enabled=True,
        )

    @pytest.mark.asyncio
    async def test_regional_settings(self, resolver):
        settings = await resolver.get_gateway_settings(PaymentGateway.REGIONAL)

        assert settings == SSLCommerzSettings(
            store_id="store1", store_password="pass1", sandbox=True, enabled=True
        )

    @pytest.mark.asyncio
    async def test_missing_mandatory_key(self, resolver, stored):
        del stored["stripe"]["webhook_secret"]

        assert await resolver.get_card_settings() is None

    @pytest.mark.asyncio
    async def test_blank_mandatory_key(self, resolver, stored):
        stored["sslcommerz"]["store_password"] = "   "

        assert await resolver.get_regional_settings() is None

    @pytest.mark.asyncio
    async def test_flags_parsed_from_text(self, resolver, stored):
        stored["sslcommerz"]["sandbox"] = "False"
        stored["sslcommerz"]["enabled"] = "false"

        settings = await resolver.get_regional_settings()

        assert settings.sandbox is False
        assert settings.enabled is False

    @pytest.mark.asyncio
    async def test_cod_has_no_settings(self, resolver):
        assert await resolver.get_gateway_settings(PaymentGateway.COD) is None


# ============================================================================
# Caching
# ============================================================================


class TestSettingsCache:
    """Cache-aside with invalidation on write."""

    @pytest.mark.asyncio
    async def test_second_read_is_cached(self, resolver, settings_repository, fake_redis):
        await resolver.get_card_settings()
        await resolver.get_card_settings()

        assert settings_repository.get_category.await_count == 1
        assert fake_redis.ttls["test:gw:stripe"] == 300

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_is_not_cached(self, resolver, stored, fake_redis):
        stored["stripe"] = {}

        assert await resolver.get_card_settings() is None
        assert "test:gw:stripe" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_save_invalidates_cache(self, resolver, settings_repository):
        await resolver.get_card_settings()

        await resolver.save_gateway_settings(PaymentGateway.CARD, {"secret_key": "sk_test_2"})
        settings = await resolver.get_card_settings()

        assert settings.secret_key == "sk_test_2"
        settings_repository.upsert_many.assert_awaited_once_with(
            "stripe", {"secret_key": "sk_test_2"}
        )

    @pytest.mark.asyncio
    async def test_save_for_cod_is_refused(self, resolver):
        with pytest.raises(ValueError):
            await resolver.save_gateway_settings(PaymentGateway.COD, {"x": "y"})

    @pytest.mark.asyncio
    async def test_cache_outage_falls_back_to_storage(self, resolver, fake_redis):
        fake_redis.fail_with = RedisConnectionError("refused")

        settings = await resolver.get_card_settings()

        assert settings.secret_key == "sk_test_1"

    @pytest.mark.asyncio
    async def test_malformed_cache_entry_is_discarded(self, resolver, fake_redis):
        fake_redis.store["test:gw:stripe"] = json.dumps({"secret_key": ""})

        settings = await resolver.get_card_settings()

        assert settings.secret_key == "sk_test_1"

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_cache(self, settings_repository, fake_redis, key_manager):
        resolver = GatewaySettingsResolver(
            settings_repository, cache=fake_redis, key_manager=key_manager, ttl_seconds=0
        )

        await resolver.get_card_settings()
        await resolver.get_card_settings()

        assert settings_repository.get_category.await_count == 2
        assert fake_redis.store == {}


# ============================================================================
# Active Payment Methods
# ============================================================================


class TestActivePaymentMethods:
    """Methods offered at checkout."""

    @pytest.mark.asyncio
    async def test_defaults_to_cash_on_delivery(self, resolver):
        methods = await resolver.get_active_payment_methods()

        assert methods.methods == [PaymentGateway.COD]
        assert methods.default_method is PaymentGateway.COD

    @pytest.mark.asyncio
    async def test_enabled_methods_with_default(self, resolver, stored):
        stored["payment_methods"] = {
            "enabled_methods": '["card", "regional", "cod"]',
            "default_method": "regional",
        }

        methods = await resolver.get_active_payment_methods()

        assert methods.methods == [
            PaymentGateway.CARD,
            PaymentGateway.REGIONAL,
            PaymentGateway.COD,
        ]
        assert methods.default_method is PaymentGateway.REGIONAL

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_is_dropped(self, resolver, stored):
        stored["stripe"] = {"secret_key": "sk_only"}
        stored["payment_methods"] = {"enabled_methods": '["card", "regional"]'}

        methods = await resolver.get_active_payment_methods()

        assert methods.methods == [PaymentGateway.REGIONAL]

    @pytest.mark.asyncio
    async def test_disabled_gateway_is_dropped(self, resolver, stored):
        stored["stripe"]["enabled"] = "false"
        stored["payment_methods"] = {"enabled_methods": '["card"]'}

        methods = await resolver.get_active_payment_methods()

        assert methods.methods == [PaymentGateway.COD]

    @pytest.mark.asyncio
    async def test_malformed_list_falls_back(self, resolver, stored):
        stored["payment_methods"] = {"enabled_methods": "card,regional"}

        methods = await resolver.get_active_payment_methods()

        assert methods.methods == [PaymentGateway.COD]

    @pytest.mark.asyncio
    async def test_unknown_default_is_ignored(self, resolver, stored):
        stored["payment_methods"] = {
            "enabled_methods": '["regional", "bitcoin"]',
            "default_method": "bitcoin",
        }

        methods = await resolver.get_active_payment_methods()

        assert methods.methods == [PaymentGateway.REGIONAL]
        assert methods.default_method is PaymentGateway.REGIONAL

    @pytest.mark.asyncio
    async def test_save_payment_methods_invalidates(self, resolver):
        await resolver.get_active_payment_methods()

        await resolver.save_payment_methods(
            [PaymentGateway.CARD, PaymentGateway.COD], PaymentGateway.CARD
        )
        methods = await resolver.get_active_payment_methods()

        assert methods.default_method is PaymentGateway.CARD


# ============================================================================
# Client Factory
# ============================================================================


class TestGatewayClientFactory:
    """Clients are built from resolved settings."""

    @pytest.mark.asyncio
    async def test_card_client(self, resolver):
        client = await GatewayClientFactory(resolver, timeout=7.0).card_client()

        assert isinstance(client, StripeClient)
        assert client.api_key == "sk_test_1"
        assert client.webhook_secret == "whsec_1"
        assert client.timeout == 7.0

    @pytest.mark.asyncio
    async def test_regional_client(self, resolver, stored):
        stored["sslcommerz"]["sandbox"] = "false"

        client = await GatewayClientFactory(resolver).regional_client()

        assert isinstance(client, SSLCommerzClient)
        assert client.store_id == "store1"
        assert client.base_url == "https://securepay.sslcommerz.com"

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, resolver, stored):
        stored["stripe"] = {}

        with pytest.raises(GatewayNotConfiguredError):
            await GatewayClientFactory(resolver).card_client()

    @pytest.mark.asyncio
    async def test_disabled_gateway_serves_existing_payments(self, resolver, stored):
        stored["stripe"]["enabled"] = "false"
        factory = GatewayClientFactory(resolver)

        assert isinstance(await factory.card_client(), StripeClient)
        with pytest.raises(GatewayNotConfiguredError):
            await factory.card_client(require_enabled=True)
