"""
Database models package initialization.

Models are imported here so they register with the Base metadata used by
Alembic.
"""

from src.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from src.database.models.order import (
    FulfillmentStatus,
    InventoryPool,
    Order,
    OrderItem,
    OrderPaymentStatus,
)
from src.database.models.payment import (
    CODFailureReason,
    CODStatus,
    CODTracking,
    OrderPayment,
    PaymentGateway,
    PaymentPlan,
    PaymentPlanStatus,
    PaymentRecordStatus,
    PaymentType,
    WebhookEvent,
    WebhookEventStatus,
)
from src.database.models.setting import Setting

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "CODFailureReason",
    "CODStatus",
    "CODTracking",
    "FulfillmentStatus",
    "InventoryPool",
    "Order",
    "OrderItem",
    "OrderPayment",
    "OrderPaymentStatus",
    "PaymentGateway",
    "PaymentPlan",
    "PaymentPlanStatus",
    "PaymentRecordStatus",
    "PaymentType",
    "Setting",
    "WebhookEvent",
    "WebhookEventStatus",
]
