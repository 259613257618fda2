"""
FastAPI dependencies for database sessions and payment services.

Every service built for a request shares that request's session, so the
webhook service and the settlement it drives see one transaction boundary.
The refund orchestrator and COD service are constructed by their callers.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.cache.redis_client import RedisClient, get_redis_client
from src.core.config import get_settings
from src.database.connection import get_db
from src.services.inventory.coordinator import RedisInventoryCoordinator
from src.services.payments.gateway_settings import GatewaySettingsResolver
from src.services.payments.gateways import GatewayClientFactory
from src.services.payments.repository import PaymentRepository
from src.services.payments.settings_repository import SettingsRepository
from src.services.payments.settlement import PaymentSettlementService
from src.services.payments.webhooks import WebhookService

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Redis = Annotated[RedisClient, Depends(get_redis_client)]


def get_payment_repository(db: DatabaseSession) -> PaymentRepository:
    return PaymentRepository(db)


def get_settings_resolver(db: DatabaseSession, redis: Redis) -> GatewaySettingsResolver:
    return GatewaySettingsResolver(
        SettingsRepository(db),
        cache=redis,
        ttl_seconds=get_settings().gateway_settings_cache_ttl,
    )


def get_gateway_factory(
    resolver: Annotated[GatewaySettingsResolver, Depends(get_settings_resolver)],
) -> GatewayClientFactory:
    return GatewayClientFactory(resolver, timeout=get_settings().gateway_timeout_seconds)


def get_settlement_service(
    repository: Annotated[PaymentRepository, Depends(get_payment_repository)],
    redis: Redis,
) -> PaymentSettlementService:
    return PaymentSettlementService(repository, RedisInventoryCoordinator(redis))


def get_webhook_service(
    settlement: Annotated[PaymentSettlementService, Depends(get_settlement_service)],
    gateways: Annotated[GatewayClientFactory, Depends(get_gateway_factory)],
) -> WebhookService:
    return WebhookService(settlement, gateways)
