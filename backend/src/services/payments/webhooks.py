"""
Inbound gateway notification handling.

Stripe webhooks are trusted once their signature verifies. SSLCommerz IPNs
are unsigned and are only acted on after a server-to-server validation of
their ``val_id``. Both are normalized into settlement calls that claim the
provider event id in the webhook ledger inside the settlement transaction.

Every handler returns a ``WebhookAck``; ``WebhookVerificationError`` is the
only exception that escapes and maps to a 400.
"""

import json
import uuid
from typing import Any, Mapping, Optional

from src.core.logging import get_logger, set_webhook_event_id
from src.database.models.payment import PaymentGateway, PaymentType, WebhookEventStatus
from src.schemas.payments import ConfirmedPaymentEvent, SettlementResult, WebhookAck
from src.services.payments.errors import (
    GatewayNetworkError,
    GatewayNotConfiguredError,
    PaymentError,
    PaymentErrorCode,
    WebhookVerificationError,
)
from src.services.payments.gateways import GatewayClientFactory
from src.services.payments.settlement import PaymentSettlementService, WebhookClaim

logger = get_logger(__name__)

STRIPE_PROVIDER = "stripe"
SSLCOMMERZ_PROVIDER = "sslcommerz"
IPN_EVENT_TYPE = "ipn"

SSLCOMMERZ_FAILED_STATUSES = frozenset({"FAILED", "CANCELLED"})

# Ack statuses
SETTLED = "settled"
ALREADY_SETTLED = "already_settled"
DUPLICATE = "duplicate"
PROCESSED = "processed"
PAYMENT_FAILED = "payment_failed"
IGNORED = "ignored"
SKIPPED = "skipped"
FAILED = "failed"
RETRY = "retry"


def _parse_order_id(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _parse_payment_type(value: Optional[str]) -> PaymentType:
    try:
        return PaymentType((value or PaymentType.FULL.value).lower())
    except ValueError:
        logger.warning("Unknown payment type on notification", payment_type=value)
        return PaymentType.FULL


def ack_from_settlement(result: SettlementResult, event_id: str) -> WebhookAck:
    """Map a settlement outcome to the provider response body."""
    if result.duplicate_event:
        status = DUPLICATE
    elif result.success and result.already_settled:
        status = ALREADY_SETTLED
    elif result.success:
        status = SETTLED
    elif result.retryable:
        status = RETRY
    else:
        status = FAILED

    return WebhookAck(
        status=status,
        event_id=event_id,
        order_id=result.order_id,
        detail=result.error,
    )


class WebhookService:
    """
    Normalizes gateway notifications and hands them to settlement.

    Attributes:
        settlement: Settlement service sharing the request's session
        gateways: Client factory for signature checks and validation calls
    """

    def __init__(
        self,
        settlement: PaymentSettlementService,
        gateways: GatewayClientFactory,
    ):
        self.settlement = settlement
        self.gateways = gateways

    async def _ignore(
        self,
        event_id: str,
        provider: str,
        event_type: str,
        reason: str,
        order_id: Optional[uuid.UUID] = None,
    ) -> WebhookAck:
        """Acknowledge an event that needs no action, keeping an audit row."""
        try:
            inserted = await self.settlement.record_webhook_event(
                event_id,
                provider,
                event_type,
                order_id=order_id,
                result={"ignored": reason},
            )
        except PaymentError as e:
            logger.error("Failed to record ignored webhook", event_id=event_id, error=e.message)
            return WebhookAck(status=RETRY, event_id=event_id, detail=e.message)

        logger.info("Webhook event ignored", event_id=event_id, event_type=event_type, reason=reason)
        return WebhookAck(
            status=IGNORED if inserted else DUPLICATE,
            event_id=event_id,
            order_id=order_id,
            detail=reason,
        )

    # ------------------------------------------------------------------
    # Stripe
    # ------------------------------------------------------------------

    async def handle_stripe_webhook(self, payload: bytes, signature: str) -> WebhookAck:
        """
        Verify and process a Stripe webhook.

        Raises:
            WebhookVerificationError: Bad signature or malformed payload
        """
        try:
            client = await self.gateways.card_client()
        except GatewayNotConfiguredError:
            # 200 so Stripe stops redelivering to an unconfigured gateway
            logger.warning("Card gateway not configured, skipping webhook")
            return WebhookAck(status=SKIPPED, detail="Card gateway is not configured")

        client.construct_webhook_event(payload, signature)
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError(
                "Invalid webhook payload", code=PaymentErrorCode.INVALID_PAYLOAD
            ) from e

        event_id = event["id"]
        event_type = event["type"]
        set_webhook_event_id(event_id)
        obj: dict[str, Any] = event.get("data", {}).get("object", {}) or {}

        logger.info("Processing Stripe webhook", event_id=event_id, event_type=event_type)

        handler = {
            "payment_intent.succeeded": self._stripe_intent_succeeded,
            "payment_intent.payment_failed": self._stripe_intent_failed,
            "payment_intent.canceled": self._stripe_intent_canceled,
        }.get(event_type)

        metadata = obj.get("metadata") or {}
        order_id = _parse_order_id(metadata.get("order_id"))

        if handler is None:
            # charge.refunded is recorded for audit; refunds are booked by the orchestrator
            return await self._ignore(
                event_id, STRIPE_PROVIDER, event_type, "Unhandled event type", order_id
            )
        if order_id is None:
            return await self._ignore(
                event_id, STRIPE_PROVIDER, event_type, "Missing or invalid order_id metadata"
            )

        claim = WebhookClaim(event_id, STRIPE_PROVIDER, event_type)
        return await handler(claim, order_id, obj, metadata)

    async def _stripe_intent_succeeded(
        self,
        claim: WebhookClaim,
        order_id: uuid.UUID,
        intent: dict[str, Any],
        metadata: Mapping[str, str],
    ) -> WebhookAck:
        latest_charge = intent.get("latest_charge")
        if isinstance(latest_charge, dict):
            latest_charge = latest_charge.get("id")

        event = ConfirmedPaymentEvent(
            order_id=order_id,
            amount=intent.get("amount_received") or 0,
            gateway=PaymentGateway.CARD,
            payment_type=_parse_payment_type(metadata.get("payment_type")),
            card_intent_id=intent["id"],
            card_charge_id=latest_charge or None,
            metadata={
                "currency": str(intent.get("currency") or "").upper(),
                "event_id": claim.event_id,
            },
        )
        result = await self.settlement.settle_payment(event, claim=claim)
        return ack_from_settlement(result, claim.event_id)

    async def _stripe_intent_failed(
        self,
        claim: WebhookClaim,
        order_id: uuid.UUID,
        intent: dict[str, Any],
        metadata: Mapping[str, str],
    ) -> WebhookAck:
        last_error = intent.get("last_payment_error") or {}
        failure = {
            key: str(value)
            for key, value in (
                ("failure_code", last_error.get("code")),
                ("failure_message", last_error.get("message")),
            )
            if value
        }

        result = await self.settlement.settle_payment_failed(
            order_id,
            PaymentGateway.CARD,
            identifiers={"card_intent_id": intent["id"]},
            payment_type=_parse_payment_type(metadata.get("payment_type")),
            metadata=failure,
            claim=claim,
        )
        ack = ack_from_settlement(result, claim.event_id)
        if result.success and not result.duplicate_event:
            ack.status = PAYMENT_FAILED
        return ack

    async def _stripe_intent_canceled(
        self,
        claim: WebhookClaim,
        order_id: uuid.UUID,
        intent: dict[str, Any],
        metadata: Mapping[str, str],
    ) -> WebhookAck:
        try:
            claimed = await self.settlement.claim_webhook_event(claim, order_id)
        except PaymentError as e:
            return WebhookAck(
                status=RETRY if e.retryable else FAILED,
                event_id=claim.event_id,
                order_id=order_id,
                detail=e.message,
            )
        if not claimed:
            return WebhookAck(status=DUPLICATE, event_id=claim.event_id, order_id=order_id)

        released = await self.settlement.release_order_inventory(order_id)
        return WebhookAck(
            status=PROCESSED,
            event_id=claim.event_id,
            order_id=order_id,
            detail=None if released else "Inventory release failed",
        )

    # ------------------------------------------------------------------
    # SSLCommerz
    # ------------------------------------------------------------------

    async def handle_sslcommerz_ipn(self, form: Mapping[str, str]) -> WebhookAck:
        """
        Validate and process an SSLCommerz IPN.

        Raises:
            WebhookVerificationError: Missing identifiers, or the gateway did
                not confirm the notification
        """
        tran_id = (form.get("tran_id") or "").strip()
        val_id = (form.get("val_id") or "").strip()
        if not tran_id or not val_id:
            logger.warning("IPN missing tran_id or val_id")
            raise WebhookVerificationError(
                "IPN missing tran_id or val_id",
                code=PaymentErrorCode.INVALID_PAYLOAD,
            )

        event_id = f"{tran_id}_{val_id}"
        set_webhook_event_id(event_id)

        try:
            client = await self.gateways.regional_client()
        except GatewayNotConfiguredError:
            logger.warning("Regional gateway not configured, skipping IPN", tran_id=tran_id)
            return WebhookAck(status=SKIPPED, event_id=event_id, detail="Regional gateway is not configured")

        try:
            async with client:
                validation = await client.validate_payment(val_id)
        except GatewayNetworkError as e:
            logger.error("IPN validation unreachable", event_id=event_id, error=e.message)
            await self._record_ipn_failure(event_id, None, {"error": "Validation API unreachable"})
            return WebhookAck(status=RETRY, event_id=event_id, detail=e.message)
        except PaymentError as e:
            await self._record_ipn_failure(event_id, None, {"error": e.message})
            raise WebhookVerificationError(
                f"IPN validation rejected: {e.message}", tran_id=tran_id
            ) from e

        order_id = _parse_order_id(
            validation.value_b or form.get("value_b") or tran_id
        )
        claim = WebhookClaim(event_id, SSLCOMMERZ_PROVIDER, IPN_EVENT_TYPE)

        if not validation.is_valid:
            status = validation.status.upper()
            logger.warning("IPN not valid", event_id=event_id, validation_status=status)

            if status in SSLCOMMERZ_FAILED_STATUSES and order_id is not None:
                result = await self.settlement.settle_payment_failed(
                    order_id,
                    PaymentGateway.REGIONAL,
                    identifiers={"regional_transaction_id": tran_id},
                    payment_type=_parse_payment_type(validation.value_a or form.get("value_a")),
                    metadata={"validation_status": status},
                    claim=claim,
                )
                ack = ack_from_settlement(result, event_id)
                if result.success and not result.duplicate_event:
                    ack.status = PAYMENT_FAILED
                return ack

            await self._record_ipn_failure(event_id, order_id, {"validation_status": status})
            raise WebhookVerificationError(
                f"IPN validation returned {status or 'no status'}",
                tran_id=tran_id,
            )

        if validation.tran_id and validation.tran_id != tran_id:
            await self._record_ipn_failure(
                event_id, order_id, {"error": "Transaction id mismatch"}
            )
            raise WebhookVerificationError(
                "IPN transaction id does not match validation",
                tran_id=tran_id,
            )

        if order_id is None:
            return await self._ignore(
                event_id, SSLCOMMERZ_PROVIDER, IPN_EVENT_TYPE, "Order id could not be determined"
            )

        metadata = {
            key: str(value)
            for key, value in (
                ("currency", validation.currency),
                ("card_type", validation.card_type or form.get("card_type")),
                ("card_brand", form.get("card_brand")),
            )
            if value
        }

        event = ConfirmedPaymentEvent(
            order_id=order_id,
            amount=validation.amount,
            gateway=PaymentGateway.REGIONAL,
            payment_type=_parse_payment_type(validation.value_a or form.get("value_a")),
            regional_transaction_id=tran_id,
            regional_validation_id=val_id,
            regional_bank_transaction_id=validation.bank_tran_id or form.get("bank_tran_id") or None,
            metadata=metadata,
        )
        result = await self.settlement.settle_payment(event, claim=claim)
        return ack_from_settlement(result, event_id)

    async def _record_ipn_failure(
        self,
        event_id: str,
        order_id: Optional[uuid.UUID],
        result: dict[str, Any],
    ) -> None:
        try:
            await self.settlement.record_webhook_event(
                event_id,
                SSLCOMMERZ_PROVIDER,
                IPN_EVENT_TYPE,
                order_id=order_id,
                status=WebhookEventStatus.FAILED,
                result=result,
            )
        except PaymentError as e:
            logger.error("Failed to record IPN failure", event_id=event_id, error=e.message)
