"""
Payment ledger, payment plan, webhook ledger and COD tracking models.

OrderPayment is append-only: every settlement, failed attempt, refund and
cash collection is a new row. The partial unique indexes on the gateway
identifier columns are what make a duplicate gateway confirmation fail at
the storage layer instead of being counted twice.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

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
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, BaseModel, TimestampMixin, enum_values


class PaymentGateway(str, Enum):
    """
    Gateway a payment was taken through.

    Attributes:
        CARD: Card network gateway (Stripe)
        REGIONAL: Regional gateway (SSLCommerz)
        COD: Cash collected on delivery
    """

    CARD = "card"
    REGIONAL = "regional"
    COD = "cod"

    @classmethod
    def from_string(cls, value: str) -> "PaymentGateway":
        """
        Create PaymentGateway from string value.

        Raises:
            ValueError: If value is not a known gateway
        """
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid payment gateway: {value}")

    @property
    def requires_credentials(self) -> bool:
        return self is not PaymentGateway.COD


class PaymentType(str, Enum):
    """Which part of the order total a payment covers."""

    FULL = "full"
    DEPOSIT = "deposit"
    BALANCE = "balance"


class PaymentRecordStatus(str, Enum):
    """
    Outcome recorded on a ledger row.

    Attributes:
        SUCCEEDED: Money received
        FAILED: Gateway reported a failed attempt (amount is 0)
        REFUNDED: Money returned to the customer
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentPlanStatus(str, Enum):
    """Installment plan progress. Only ever moves forward."""

    PENDING = "pending"
    DEPOSIT_PAID = "deposit_paid"
    FULLY_PAID = "fully_paid"

    @property
    def rank(self) -> int:
        return _PLAN_ORDER.index(self)

    def can_advance_to(self, target: "PaymentPlanStatus") -> bool:
        return target.rank > self.rank


_PLAN_ORDER = [
    PaymentPlanStatus.PENDING,
    PaymentPlanStatus.DEPOSIT_PAID,
    PaymentPlanStatus.FULLY_PAID,
]


class WebhookEventStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"


class CODStatus(str, Enum):
    """
    Cash-on-delivery collection state.

    Attributes:
        PENDING: Awaiting delivery
        COLLECTED: Cash received by the courier
        FAILED: Last delivery attempt did not collect
        RETURNED: Parcel went back to the warehouse
    """

    PENDING = "pending"
    COLLECTED = "collected"
    FAILED = "failed"
    RETURNED = "returned"


class CODFailureReason(str, Enum):
    NOT_HOME = "not_home"
    REFUSED = "refused"
    NO_CASH = "no_cash"
    WRONG_ADDRESS = "wrong_address"
    OTHER = "other"


GATEWAY_IDENTIFIER_COLUMNS = (
    "card_intent_id",
    "card_charge_id",
    "regional_transaction_id",
    "regional_validation_id",
    "regional_bank_transaction_id",
)


def _succeeded_unique_index(column: str) -> Index:
    return Index(
        f"uq_order_payments_{column}_succeeded",
        column,
        unique=True,
        postgresql_where=text("status = 'succeeded'"),
    )


class OrderPayment(BaseModel):
    """
    Append-only ledger row for one transaction attempt against an order.

    Attributes:
        order_id: Order the money belongs to
        amount: Amount in minor currency units (0 for failed attempts)
        currency: ISO 4217 currency code
        payment_method: Gateway tag
        payment_type: full, deposit or balance
        status: succeeded, failed or refunded
        card_intent_id / card_charge_id: Stripe identifiers
        regional_*: SSLCommerz transaction, validation and bank ids
        cod_*: Cash collection details
        payment_metadata: Free-form gateway metadata (column "metadata")
    """

    __tablename__ = "order_payments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Order this transaction belongs to",
    )

    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Amount in minor currency units",
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Currency code (ISO 4217)",
    )

    payment_method: Mapped[PaymentGateway] = mapped_column(
        SQLEnum(
            PaymentGateway,
            name="payment_gateway",
            values_callable=enum_values,
        ),
        nullable=False,
        comment="Gateway the transaction went through",
    )

    payment_type: Mapped[PaymentType] = mapped_column(
        SQLEnum(PaymentType, name="payment_type", values_callable=enum_values),
        nullable=False,
        comment="Portion of the order total covered",
    )

    status: Mapped[PaymentRecordStatus] = mapped_column(
        SQLEnum(
            PaymentRecordStatus,
            name="payment_record_status",
            values_callable=enum_values,
        ),
        nullable=False,
        comment="Recorded outcome",
    )

    # Gateway identifiers
    card_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    regional_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    regional_validation_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    regional_bank_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    # Cash on delivery
    cod_collected_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cod_collected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cod_receipt_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    # "metadata" is reserved on declarative classes
    payment_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSONB,
        nullable=True,
        comment="Gateway specific metadata",
    )

    __table_args__ = (
        Index("ix_order_payments_order_created", "order_id", "created_at"),
        Index("ix_order_payments_order_status", "order_id", "status"),
        *(_succeeded_unique_index(column) for column in GATEWAY_IDENTIFIER_COLUMNS),
        CheckConstraint("amount >= 0", name="ck_order_payments_amount_non_negative"),
        CheckConstraint(
            "currency ~ '^[A-Z]{3}$'",
            name="ck_order_payments_currency_format",
        ),
        {"comment": "Append-only ledger of settlement, refund and failed attempts"},
    )

    def gateway_identifiers(self) -> dict[str, str]:
        """Return the identifier columns that are set on this row."""
        return {
            column: getattr(self, column)
            for column in GATEWAY_IDENTIFIER_COLUMNS
            if getattr(self, column)
        }


class PaymentPlan(BaseModel):
    """
    Deposit plus balance installment schedule for an order.
    """

    __tablename__ = "payment_plans"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        comment="Order the plan schedules",
    )

    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[PaymentPlanStatus] = mapped_column(
        SQLEnum(
            PaymentPlanStatus,
            name="payment_plan_status",
            values_callable=enum_values,
        ),
        nullable=False,
        default=PaymentPlanStatus.PENDING,
    )

    balance_due_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deposit_paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    balance_paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "deposit_amount >= 0 AND deposit_amount <= total_amount",
            name="ck_payment_plans_deposit_range",
        ),
    )

    def advance_to(self, target: PaymentPlanStatus, at: datetime) -> bool:
        """
        Move the plan forward to ``target``.

        Returns:
            True if the status changed, False if the plan is already at or
            beyond ``target``.
        """
        if not self.status.can_advance_to(target):
            return False

        self.status = target
        if target is PaymentPlanStatus.DEPOSIT_PAID:
            self.deposit_paid_at = at
        elif target is PaymentPlanStatus.FULLY_PAID:
            self.balance_paid_at = at
        return True


class WebhookEvent(Base, TimestampMixin):
    """
    Ledger of inbound gateway notifications keyed by the provider event id.
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Provider assigned event id, the deduplication key",
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )

    status: Mapped[WebhookEventStatus] = mapped_column(
        SQLEnum(
            WebhookEventStatus,
            name="webhook_event_status",
            values_callable=enum_values,
        ),
        nullable=False,
    )

    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class CODTracking(BaseModel):
    """
    Cash-on-delivery collection state, one row per COD order.
    """

    __tablename__ = "cod_tracking"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    cod_status: Mapped[CODStatus] = mapped_column(
        SQLEnum(CODStatus, name="cod_status", values_callable=enum_values),
        nullable=False,
        default=CODStatus.PENDING,
    )

    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    collected_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    collected_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    collected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    receipt_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    failure_reason: Mapped[Optional[CODFailureReason]] = mapped_column(
        SQLEnum(
            CODFailureReason,
            name="cod_failure_reason",
            values_callable=enum_values,
        ),
        nullable=True,
    )
    failure_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "delivery_attempts >= 0",
            name="ck_cod_tracking_attempts_non_negative",
        ),
    )

    def record_attempt(self, at: datetime) -> None:
        self.delivery_attempts = (self.delivery_attempts or 0) + 1
        self.last_attempt_at = at
