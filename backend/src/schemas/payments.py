"""
Payment settlement and refund schemas.

Pydantic models for the normalized gateway confirmation, the refund and
return requests, and the structured results returned by the settlement
service and refund orchestrator. Amounts are integers in minor currency
units throughout.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.database.models.order import FulfillmentStatus, OrderPaymentStatus
from src.database.models.payment import (
    GATEWAY_IDENTIFIER_COLUMNS,
    CODFailureReason,
    PaymentGateway,
    PaymentType,
)
from src.services.payments.errors import PaymentError, PaymentErrorCode


class ConfirmedPaymentEvent(BaseModel):
    """Gateway confirmation normalized for the settlement service."""

    order_id: UUID = Field(..., description="Order the payment belongs to")
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    gateway: PaymentGateway = Field(..., description="Gateway tag")
    payment_type: PaymentType = Field(
        PaymentType.FULL,
        description="Portion of the order total covered",
    )
    card_intent_id: Optional[str] = Field(None, max_length=255)
    card_charge_id: Optional[str] = Field(None, max_length=255)
    regional_transaction_id: Optional[str] = Field(None, max_length=255)
    regional_validation_id: Optional[str] = Field(None, max_length=255)
    regional_bank_transaction_id: Optional[str] = Field(None, max_length=255)
    metadata: dict[str, str] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "example": {
                "order_id": "3f1c1f8e-0f6e-4a53-9a53-3fb0f2b8d2a1",
                "amount": 40000,
                "gateway": "card",
                "payment_type": "deposit",
                "card_intent_id": "pi_3Nabc",
                "card_charge_id": "ch_3Nabc",
            }
        }
    }

    def gateway_identifiers(self) -> dict[str, str]:
        """Identifier columns carried by this confirmation."""
        return {
            column: getattr(self, column)
            for column in GATEWAY_IDENTIFIER_COLUMNS
            if getattr(self, column)
        }


class SettlementResult(BaseModel):
    success: bool
    order_id: UUID
    already_settled: bool = False
    duplicate_event: bool = False
    payment_status: Optional[OrderPaymentStatus] = None
    paid_amount: Optional[int] = None
    balance_due: Optional[int] = None
    is_fully_paid: bool = False
    error: Optional[str] = None
    error_code: Optional[PaymentErrorCode] = None
    retryable: bool = False

    @classmethod
    def failure(cls, order_id: UUID, error: PaymentError) -> "SettlementResult":
        return cls(
            success=False,
            order_id=order_id,
            error=error.message,
            error_code=error.code,
            retryable=error.retryable,
        )


class RefundRequest(BaseModel):
    """Operator initiated refund."""

    order_id: UUID
    amount: Optional[int] = Field(
        None,
        gt=0,
        description="Amount in minor units; omit to refund everything paid",
    )
    reason: str = Field(..., min_length=1, max_length=500)
    gateway_override: Optional[PaymentGateway] = Field(
        None,
        description="Refund through this gateway instead of the latest payment's",
    )
    idempotency_key: Optional[str] = Field(
        None,
        max_length=255,
        description="Forwarded to gateways that support idempotent requests",
    )

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Refund reason cannot be blank")
        return v


class RefundResult(BaseModel):
    success: bool
    gateway: Optional[PaymentGateway] = None
    refund_id: Optional[str] = None
    amount: int = 0
    is_full_refund: bool = False
    error: Optional[str] = None
    error_code: Optional[PaymentErrorCode] = None
    retryable: bool = False

    @classmethod
    def failure(
        cls,
        error: PaymentError,
        gateway: Optional[PaymentGateway] = None,
        amount: int = 0,
    ) -> "RefundResult":
        return cls(
            success=False,
            gateway=gateway,
            amount=amount,
            error=error.message,
            error_code=error.code,
            retryable=error.retryable,
        )


class ReturnRequest(BaseModel):
    order_id: UUID
    reason: str = Field(..., min_length=1, max_length=500)
    auto_refund: bool = False

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Return reason cannot be blank")
        return v


class ReturnResult(BaseModel):
    success: bool
    order_id: UUID
    fulfillment_status: Optional[FulfillmentStatus] = None
    refund: Optional[RefundResult] = None
    error: Optional[str] = None
    error_code: Optional[PaymentErrorCode] = None


class StripeSettings(BaseModel):
    """Resolved card gateway credentials."""

    model_config = ConfigDict(frozen=True)

    secret_key: str = Field(..., min_length=1)
    webhook_secret: str = Field(..., min_length=1)
    publishable_key: Optional[str] = None
    enabled: bool = True


class SSLCommerzSettings(BaseModel):
    """Resolved regional gateway credentials."""

    model_config = ConfigDict(frozen=True)

    store_id: str = Field(..., min_length=1)
    store_password: str = Field(..., min_length=1)
    sandbox: bool = True
    enabled: bool = True


class ActivePaymentMethods(BaseModel):
    methods: list[PaymentGateway] = Field(..., min_length=1)
    default_method: PaymentGateway

    @model_validator(mode="after")
    def default_is_offered(self) -> "ActivePaymentMethods":
        if self.default_method not in self.methods:
            raise ValueError("Default payment method must be one of the active methods")
        return self


class CODCollection(BaseModel):
    order_id: UUID
    amount: int = Field(..., gt=0)
    collected_by: str = Field(..., min_length=1, max_length=255)
    receipt_url: Optional[str] = Field(None, max_length=1024)


class CODFailure(BaseModel):
    order_id: UUID
    reason: CODFailureReason
    notes: Optional[str] = Field(None, max_length=2000)


class WebhookAck(BaseModel):
    """Body returned to the provider."""

    received: bool = True
    status: str = Field(..., description="settled, duplicate, ignored, skipped or failed")
    event_id: Optional[str] = None
    order_id: Optional[UUID] = None
    detail: Optional[str] = None
