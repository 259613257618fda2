"""
Shared fixtures for settlement, refund, webhook and COD tests.
"""

from unittest.mock import AsyncMock

import pytest

from src.services.inventory.coordinator import RedisInventoryCoordinator
from src.services.payments.gateways import GatewayClientFactory
from src.services.payments.settlement import PaymentSettlementService

from tests.test_payments.fakes import InMemoryPaymentRepository


@pytest.fixture
def repository() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def inventory() -> AsyncMock:
    return AsyncMock(spec=RedisInventoryCoordinator)


@pytest.fixture
def settlement(repository, inventory) -> PaymentSettlementService:
    return PaymentSettlementService(repository, inventory)


@pytest.fixture
def gateways() -> AsyncMock:
    return AsyncMock(spec=GatewayClientFactory)
