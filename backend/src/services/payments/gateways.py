"""
Builds gateway clients from resolved settings.
"""

from typing import Optional

import httpx

from src.core.logging import get_logger
from src.services.payments.errors import GatewayNotConfiguredError
from src.services.payments.gateway_settings import GatewaySettingsResolver
from src.services.payments.sslcommerz_client import SSLCommerzClient
from src.services.payments.stripe_client import StripeClient

logger = get_logger(__name__)


class GatewayClientFactory:
    """
    Creates a client per use from the current credentials.

    ``require_enabled`` is only set by checkout: webhooks and refunds for
    payments already taken must keep working after an operator disables a
    gateway for new orders.
    """

    def __init__(
        self,
        resolver: GatewaySettingsResolver,
        timeout: Optional[float] = None,
        regional_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.resolver = resolver
        self.timeout = timeout
        self.regional_transport = regional_transport

    async def card_client(self, require_enabled: bool = False) -> StripeClient:
        """
        Raises:
            GatewayNotConfiguredError: Credentials missing, or disabled when
                ``require_enabled`` is set
        """
        settings = await self.resolver.get_card_settings()
        if settings is None:
            raise GatewayNotConfiguredError("Card gateway is not configured", gateway="card")
        if require_enabled and not settings.enabled:
            raise GatewayNotConfiguredError("Card gateway is disabled", gateway="card")

        return StripeClient(
            api_key=settings.secret_key,
            webhook_secret=settings.webhook_secret,
            timeout=self.timeout,
        )

    async def regional_client(self, require_enabled: bool = False) -> SSLCommerzClient:
        """
        Raises:
            GatewayNotConfiguredError: Credentials missing, or disabled when
                ``require_enabled`` is set
        """
        settings = await self.resolver.get_regional_settings()
        if settings is None:
            raise GatewayNotConfiguredError(
                "Regional gateway is not configured", gateway="regional"
            )
        if require_enabled and not settings.enabled:
            raise GatewayNotConfiguredError("Regional gateway is disabled", gateway="regional")

        return SSLCommerzClient(
            store_id=settings.store_id,
            store_password=settings.store_password,
            sandbox=settings.sandbox,
            timeout=self.timeout,
            transport=self.regional_transport,
        )
