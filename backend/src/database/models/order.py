"""
Order and order line item models.

Money is held in integer minor currency units, so the fully-paid check is
an exact comparison. ``balance_due`` is stored for reporting but is always
derived from ``total_amount`` and ``paid_amount`` through the mutation
helpers on the model; a check constraint keeps the database honest.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.core.config import get_settings
from src.database.base import BaseModel, enum_values
from src.database.models.payment import PaymentGateway


class OrderPaymentStatus(str, Enum):
    """
    Financial state of an order.

    Attributes:
        UNPAID: Nothing received yet
        PARTIAL: Some money received, balance outstanding
        PAID: Balance is zero
        REFUNDED: Everything received has been returned
        FAILED: Only failed attempts so far
    """

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_refundable(self) -> bool:
        return self in (OrderPaymentStatus.PARTIAL, OrderPaymentStatus.PAID)


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURNED = "returned"

    @property
    def is_returnable(self) -> bool:
        return self in (
            FulfillmentStatus.DELIVERED,
            FulfillmentStatus.COMPLETED,
            FulfillmentStatus.SHIPPED,
        )


class InventoryPool(str, Enum):
    """Stock pool an order's reservations were taken from."""

    REGULAR = "regular"
    PREORDER = "preorder"
    BACKORDER = "backorder"


class Order(BaseModel):
    """
    Aggregate root for a single purchase.

    Attributes:
        total_amount: Order total in minor units
        paid_amount: Net amount received (after refunds) in minor units
        balance_due: max(0, total_amount - paid_amount)
        payment_status: Financial state
        fulfillment_status: Shipping state
        inventory_pool: Pool the stock was reserved from
        payment_method: Gateway chosen at checkout
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human readable order number",
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default=lambda: get_settings().settlement_currency,
        comment="Settlement currency (ISO 4217)",
    )

    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance_due: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment_status: Mapped[OrderPaymentStatus] = mapped_column(
        SQLEnum(
            OrderPaymentStatus,
            name="order_payment_status",
            values_callable=enum_values,
        ),
        nullable=False,
        default=OrderPaymentStatus.UNPAID,
        index=True,
    )

    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        SQLEnum(
            FulfillmentStatus,
            name="fulfillment_status",
            values_callable=enum_values,
        ),
        nullable=False,
        default=FulfillmentStatus.PENDING,
        index=True,
    )

    inventory_pool: Mapped[InventoryPool] = mapped_column(
        SQLEnum(InventoryPool, name="inventory_pool", values_callable=enum_values),
        nullable=False,
        default=InventoryPool.REGULAR,
    )

    payment_method: Mapped[Optional[PaymentGateway]] = mapped_column(
        SQLEnum(
            PaymentGateway,
            name="payment_gateway",
            values_callable=enum_values,
        ),
        nullable=True,
    )

    return_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    returned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint("paid_amount >= 0", name="ck_orders_paid_non_negative"),
        CheckConstraint(
            "balance_due = GREATEST(total_amount - paid_amount, 0)",
            name="ck_orders_balance_due_derived",
        ),
        Index("ix_orders_status_pair", "payment_status", "fulfillment_status"),
    )

    def _sync_balance(self) -> None:
        self.balance_due = max(0, self.total_amount - self.paid_amount)

    @property
    def is_fully_paid(self) -> bool:
        return self.balance_due == 0

    def apply_payment(self, amount: int) -> bool:
        """
        Add a received amount and recompute balance and status.

        Returns:
            True if the order is fully paid afterwards.
        """
        self.paid_amount = self.paid_amount + amount
        self._sync_balance()
        self.payment_status = (
            OrderPaymentStatus.PAID if self.is_fully_paid else OrderPaymentStatus.PARTIAL
        )
        return self.is_fully_paid

    def apply_refund(self, amount: int) -> bool:
        """
        Subtract a refunded amount, floored at zero.

        Returns:
            True if this refund covers everything that had been paid.
        """
        is_full_refund = amount >= self.paid_amount
        self.paid_amount = max(0, self.paid_amount - amount)
        self._sync_balance()
        self.payment_status = (
            OrderPaymentStatus.REFUNDED if is_full_refund else OrderPaymentStatus.PARTIAL
        )
        return is_full_refund

    def mark_returned(self, reason: str, at: datetime) -> None:
        self.fulfillment_status = FulfillmentStatus.RETURNED
        self.return_reason = reason
        self.returned_at = at


class OrderItem(BaseModel):
    """
    Order line. ``variant_id`` is empty for non-stock items such as gift
    wrapping, which are skipped by inventory coordination.
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    variant_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )
