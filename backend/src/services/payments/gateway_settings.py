"""
Gateway settings resolution with a cache-aside layer.

Credentials are stored as category scoped key/value rows. A gateway is only
"configured" when every mandatory key is present; an incomplete set never
produces a partial settings object. Resolved objects are cached for a fixed
TTL, and every write through this module invalidates the affected keys
before returning, so staleness is bounded by the TTL only for writes that
bypass it.
"""

import json
from typing import Any, Awaitable, Callable, Optional, Union

from redis.exceptions import RedisError

from src.cache.redis_client import CacheKeyManager, RedisClient, get_cache_key_manager
from src.core.config import get_settings
from src.core.logging import get_logger
from src.database.models.payment import PaymentGateway
from src.schemas.payments import ActivePaymentMethods, SSLCommerzSettings, StripeSettings
from src.services.payments.settings_repository import SettingsRepository

logger = get_logger(__name__)

GatewaySettings = Union[StripeSettings, SSLCommerzSettings]

CARD_CATEGORY = "stripe"
REGIONAL_CATEGORY = "sslcommerz"
PAYMENT_METHODS_CATEGORY = "payment_methods"

CATEGORY_BY_GATEWAY = {
    PaymentGateway.CARD: CARD_CATEGORY,
    PaymentGateway.REGIONAL: REGIONAL_CATEGORY,
}

CARD_REQUIRED_KEYS = ("secret_key", "webhook_secret")
REGIONAL_REQUIRED_KEYS = ("store_id", "store_password")

FALLBACK_METHOD = PaymentGateway.COD


def _flag(value: Optional[str], default: bool = True) -> bool:
    """Settings store booleans as text; anything but "false" is true."""
    if value is None:
        return default
    return value.strip().lower() != "false"


def _has_required(values: dict[str, str], keys: tuple[str, ...]) -> bool:
    return all((values.get(key) or "").strip() for key in keys)


class GatewaySettingsResolver:
    """
    Resolves gateway credentials and the checkout method list.

    Args:
        repository: Settings storage
        cache: Redis client used as the cache; None disables caching
        key_manager: Cache key builder
        ttl_seconds: How long a resolved object stays cached
    """

    def __init__(
        self,
        repository: SettingsRepository,
        cache: Optional[RedisClient] = None,
        key_manager: Optional[CacheKeyManager] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.keys = key_manager or get_cache_key_manager()
        self.ttl_seconds = (
            ttl_seconds
            if ttl_seconds is not None
            else get_settings().gateway_settings_cache_ttl
        )

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_key(self, name: str) -> str:
        return self.keys.gateway_settings_key(name)

    async def _cache_get(self, name: str) -> Optional[dict[str, Any]]:
        if self.cache is None or self.ttl_seconds <= 0:
            return None
        try:
            return await self.cache.get_json(self._cache_key(name))
        except (RedisError, ValueError) as e:
            logger.warning("Settings cache read failed", name=name, error=str(e))
            return None

    async def _cache_set(self, name: str, value: dict[str, Any]) -> None:
        if self.cache is None or self.ttl_seconds <= 0:
            return
        try:
            await self.cache.set_json(self._cache_key(name), value, ex=self.ttl_seconds)
        except (RedisError, TypeError) as e:
            logger.warning("Settings cache write failed", name=name, error=str(e))

    async def _cached(
        self,
        name: str,
        loader: Callable[[], Awaitable[Optional[Any]]],
        model: type,
    ) -> Optional[Any]:
        cached = await self._cache_get(name)
        if cached is not None:
            try:
                return model.model_validate(cached)
            except ValueError as e:
                logger.warning("Discarding malformed cached settings", name=name, error=str(e))

        resolved = await loader()
        if resolved is not None:
            await self._cache_set(name, resolved.model_dump(mode="json"))
        return resolved

    async def invalidate_cache(self, gateway: Optional[PaymentGateway] = None) -> None:
        """
        Drop cached settings.

        Args:
            gateway: Gateway whose entry to drop; None drops every gateway.
                The payment method list is always dropped because it is
                derived from gateway credentials.
        """
        if self.cache is None:
            return

        if gateway is None:
            names = [CARD_CATEGORY, REGIONAL_CATEGORY]
        elif gateway in CATEGORY_BY_GATEWAY:
            names = [CATEGORY_BY_GATEWAY[gateway]]
        else:
            names = []
        names.append(PAYMENT_METHODS_CATEGORY)

        try:
            await self.cache.delete(*(self._cache_key(name) for name in names))
        except RedisError as e:
            logger.error("Settings cache invalidation failed", names=names, error=str(e))
            raise

        logger.info("Settings cache invalidated", names=names)

    # ------------------------------------------------------------------
    # Gateway credentials
    # ------------------------------------------------------------------

    async def _load_card_settings(self) -> Optional[StripeSettings]:
        values = await self.repository.get_category(CARD_CATEGORY)
        if not _has_required(values, CARD_REQUIRED_KEYS):
            return None
        return StripeSettings(
            secret_key=values["secret_key"].strip(),
            webhook_secret=values["webhook_secret"].strip(),
            publishable_key=(values.get("publishable_key") or "").strip() or None,
            enabled=_flag(values.get("enabled")),
        )

    async def _load_regional_settings(self) -> Optional[SSLCommerzSettings]:
        values = await self.repository.get_category(REGIONAL_CATEGORY)
        if not _has_required(values, REGIONAL_REQUIRED_KEYS):
            return None
        return SSLCommerzSettings(
            store_id=values["store_id"].strip(),
            store_password=values["store_password"].strip(),
            sandbox=_flag(values.get("sandbox")),
            enabled=_flag(values.get("enabled")),
        )

    async def get_card_settings(self) -> Optional[StripeSettings]:
        return await self._cached(CARD_CATEGORY, self._load_card_settings, StripeSettings)

    async def get_regional_settings(self) -> Optional[SSLCommerzSettings]:
        return await self._cached(
            REGIONAL_CATEGORY, self._load_regional_settings, SSLCommerzSettings
        )

    async def get_gateway_settings(
        self, gateway: PaymentGateway
    ) -> Optional[GatewaySettings]:
        """
        Resolved credentials for a gateway.

        Returns:
            Settings object, or None when the gateway is not configured or
            needs no credentials (cash on delivery)
        """
        if gateway is PaymentGateway.CARD:
            return await self.get_card_settings()
        if gateway is PaymentGateway.REGIONAL:
            return await self.get_regional_settings()
        return None

    # ------------------------------------------------------------------
    # Checkout methods
    # ------------------------------------------------------------------

    async def _is_usable(self, gateway: PaymentGateway) -> bool:
        if not gateway.requires_credentials:
            return True
        resolved = await self.get_gateway_settings(gateway)
        return resolved is not None and resolved.enabled

    async def _load_payment_methods(self) -> ActivePaymentMethods:
        values = await self.repository.get_category(PAYMENT_METHODS_CATEGORY)

        try:
            requested = json.loads(values.get("enabled_methods") or '["cod"]')
        except ValueError:
            logger.warning(
                "Malformed enabled_methods setting",
                value=values.get("enabled_methods"),
            )
            requested = [FALLBACK_METHOD.value]
        if not isinstance(requested, list):
            requested = [FALLBACK_METHOD.value]

        methods: list[PaymentGateway] = []
        for raw in requested:
            try:
                gateway = PaymentGateway.from_string(str(raw))
            except ValueError:
                logger.warning("Unknown payment method in settings", method=raw)
                continue
            if gateway not in methods and await self._is_usable(gateway):
                methods.append(gateway)

        if not methods:
            methods = [FALLBACK_METHOD]

        default_method = methods[0]
        configured_default = (values.get("default_method") or "").strip()
        if configured_default:
            try:
                candidate = PaymentGateway.from_string(configured_default)
                if candidate in methods:
                    default_method = candidate
            except ValueError:
                logger.warning("Unknown default payment method", method=configured_default)

        return ActivePaymentMethods(methods=methods, default_method=default_method)

    async def get_active_payment_methods(self) -> ActivePaymentMethods:
        """
        Methods checkout may offer right now.

        Every administrator-enabled method must also have complete, enabled
        credentials. Cash on delivery is offered when nothing else is.
        """
        return await self._cached(
            PAYMENT_METHODS_CATEGORY,
            self._load_payment_methods,
            ActivePaymentMethods,
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def save_gateway_settings(
        self,
        gateway: PaymentGateway,
        values: dict[str, str],
    ) -> None:
        """Persist credential keys for a gateway and invalidate its cache."""
        category = CATEGORY_BY_GATEWAY.get(gateway)
        if category is None:
            raise ValueError(f"Gateway {gateway.value} has no settings")

        await self.repository.upsert_many(category, values)
        await self.invalidate_cache(gateway)

    async def save_payment_methods(
        self,
        enabled_methods: list[PaymentGateway],
        default_method: Optional[PaymentGateway] = None,
    ) -> None:
        values = {"enabled_methods": json.dumps([m.value for m in enabled_methods])}
        if default_method is not None:
            values["default_method"] = default_method.value

        await self.repository.upsert_many(PAYMENT_METHODS_CATEGORY, values)
        await self.invalidate_cache(PaymentGateway.COD)
