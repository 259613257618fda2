"""
Payment settlement service.

Turns confirmed and failed gateway events into order state. Every balance
recomputation happens inside one database transaction with the order row
locked, so concurrent confirmations for the same order are serialized by
PostgreSQL rather than by this process. When the caller passes a webhook
ledger claim, the claim is written in that same transaction: a duplicate
delivery either blocks on the ledger primary key or finds the row already
processed, and a failed attempt rolls back together with the claim.

Inventory is touched only after commit. A deduction failure is logged and
never undoes an accepted payment.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from src.core.logging import get_logger, set_webhook_event_id
from src.database.models.order import Order, OrderItem, OrderPaymentStatus
from src.database.models.payment import (
    PaymentGateway,
    PaymentPlanStatus,
    PaymentRecordStatus,
    PaymentType,
    WebhookEventStatus,
)
from src.schemas.payments import ConfirmedPaymentEvent, SettlementResult
from src.services.inventory.coordinator import InventoryCoordinator, InventoryEntry
from src.services.payments.errors import (
    DuplicatePaymentError,
    OrderNotFoundError,
    PaymentError,
    PaymentStorageError,
)
from src.services.payments.repository import PaymentRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class WebhookClaim:
    """Ledger entry to claim atomically with the state change it triggers."""

    event_id: str
    provider: str
    event_type: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def inventory_entries(order: Order, items: Sequence[OrderItem]) -> list[InventoryEntry]:
    """Stock lines for an order; items without a variant are skipped."""
    return [
        InventoryEntry(
            variant_id=item.variant_id,
            quantity=item.quantity,
            pool=order.inventory_pool,
        )
        for item in items
        if item.variant_id
    ]


class PaymentSettlementService:
    """
    Central state transition engine for order payments.

    Attributes:
        repository: Payment repository; this service owns its transaction
        inventory: Inventory coordinator for deduction and release
    """

    def __init__(
        self,
        repository: PaymentRepository,
        inventory: InventoryCoordinator,
    ):
        self.repository = repository
        self.inventory = inventory

    # ------------------------------------------------------------------
    # Webhook ledger
    # ------------------------------------------------------------------

    async def _claim(self, claim: Optional[WebhookClaim], order_id: Optional[uuid.UUID]) -> bool:
        if claim is None:
            return True
        set_webhook_event_id(claim.event_id)
        return await self.repository.claim_webhook_event(
            claim.event_id,
            claim.provider,
            claim.event_type,
            order_id=order_id,
        )

    async def _store_outcome(
        self,
        claim: Optional[WebhookClaim],
        order_id: Optional[uuid.UUID],
        result: SettlementResult,
    ) -> None:
        if claim is None:
            return
        await self.repository.record_webhook_event(
            claim.event_id,
            claim.provider,
            claim.event_type,
            order_id,
            WebhookEventStatus.PROCESSED,
            result=result.model_dump(mode="json"),
            overwrite=True,
        )

    async def _record_failure(
        self,
        claim: Optional[WebhookClaim],
        order_id: Optional[uuid.UUID],
        error: PaymentError,
    ) -> None:
        """Mark a claimed event failed in a fresh transaction so a redelivery can retry it."""
        if claim is None:
            return
        try:
            await self.repository.record_webhook_event(
                claim.event_id,
                claim.provider,
                claim.event_type,
                order_id,
                WebhookEventStatus.FAILED,
                result={"error": error.message, "error_code": error.code.value},
                overwrite=True,
            )
            await self.repository.commit()
        except PaymentStorageError as e:
            logger.error(
                "Failed to record webhook failure",
                event_id=claim.event_id,
                error=str(e),
            )

    async def claim_webhook_event(
        self,
        claim: WebhookClaim,
        order_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """
        Claim and commit a ledger entry for an event with no order state change.

        Returns:
            True if this caller should act on the event
        """
        claimed = await self._claim(claim, order_id)
        if not claimed:
            await self.repository.rollback()
            return False
        await self.repository.commit()
        return True

    async def record_webhook_event(
        self,
        event_id: str,
        provider: str,
        event_type: str,
        order_id: Optional[uuid.UUID] = None,
        status: WebhookEventStatus = WebhookEventStatus.PROCESSED,
        result: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Insert a ledger row and commit.

        Used for events that carry no state change of their own. A duplicate
        id leaves the existing row untouched.

        Returns:
            True if the row was new, False if the id was already recorded
        """
        try:
            inserted = await self.repository.record_webhook_event(
                event_id,
                provider,
                event_type,
                order_id,
                status,
                result=result,
            )
        except PaymentStorageError:
            await self.repository.rollback()
            raise
        await self.repository.commit()

        if not inserted:
            logger.info(
                "Webhook event already recorded",
                event_id=event_id,
                provider=provider,
            )
        return inserted

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle_payment(
        self,
        event: ConfirmedPaymentEvent,
        claim: Optional[WebhookClaim] = None,
    ) -> SettlementResult:
        """
        Record a confirmed payment and recompute the order balance.

        Idempotent: a late confirmation for a paid order, a confirmation
        whose gateway identifier is already on a succeeded ledger row, and
        a webhook id already in the ledger all return success without
        changing anything.

        Args:
            event: Normalized gateway confirmation
            claim: Webhook ledger entry to claim in the same transaction

        Returns:
            SettlementResult; failures are reported, never raised
        """
        logger.info(
            "Settling payment",
            order_id=str(event.order_id),
            amount=event.amount,
            gateway=event.gateway.value,
            payment_type=event.payment_type.value,
        )

        try:
            if not await self._claim(claim, event.order_id):
                await self.repository.rollback()
                logger.info(
                    "Duplicate webhook delivery ignored",
                    event_id=claim.event_id,
                    order_id=str(event.order_id),
                )
                return SettlementResult(
                    success=True,
                    order_id=event.order_id,
                    already_settled=True,
                    duplicate_event=True,
                )

            order = await self.repository.get_order(event.order_id, for_update=True)
            if order is None:
                raise OrderNotFoundError(
                    f"Order {event.order_id} not found",
                    order_id=str(event.order_id),
                )

            transitioned, items = await self._apply(order, event)
            result = self._result(order, already_settled=transitioned is None)

            await self._store_outcome(claim, order.id, result)
            await self.repository.commit()

        except PaymentError as e:
            await self.repository.rollback()
            logger.warning(
                "Settlement failed",
                order_id=str(event.order_id),
                error=e.message,
                error_code=e.code.value,
                retryable=e.retryable,
            )
            await self._record_failure(claim, event.order_id, e)
            return SettlementResult.failure(event.order_id, e)

        if transitioned:
            await self._deduct_inventory(order, items)

        return result

    async def _apply(
        self,
        order: Order,
        event: ConfirmedPaymentEvent,
    ) -> tuple[Optional[bool], list[OrderItem]]:
        """
        Apply a confirmation to a locked order.

        Returns:
            (None, []) when the event was already settled; otherwise whether
            the order became fully paid, and its items if it did
        """
        if order.payment_status is OrderPaymentStatus.PAID:
            logger.info("Order already paid, ignoring confirmation", order_id=str(order.id))
            return None, []

        identifiers = event.gateway_identifiers()
        existing = await self.repository.find_succeeded_payment(identifiers)
        if existing is not None:
            logger.info(
                "Gateway identifier already settled",
                order_id=str(order.id),
                payment_id=str(existing.id),
            )
            return None, []

        try:
            await self.repository.add_payment(
                order_id=order.id,
                amount=event.amount,
                currency=order.currency,
                payment_method=event.gateway,
                payment_type=event.payment_type,
                status=PaymentRecordStatus.SUCCEEDED,
                payment_metadata=dict(event.metadata) or None,
                **identifiers,
                **self._cod_fields(event),
            )
        except DuplicatePaymentError:
            # Lost the race with a concurrent confirmation carrying the same identifier
            return None, []

        is_fully_paid = order.apply_payment(event.amount)
        await self._advance_plan(order, event.payment_type, is_fully_paid)

        logger.info(
            "Payment settled",
            order_id=str(order.id),
            amount=event.amount,
            paid_amount=order.paid_amount,
            balance_due=order.balance_due,
            payment_status=order.payment_status.value,
        )

        if not is_fully_paid:
            return False, []
        return True, await self.repository.get_order_items(order.id)

    @staticmethod
    def _cod_fields(event: ConfirmedPaymentEvent) -> dict[str, Any]:
        if event.gateway is not PaymentGateway.COD:
            return {}
        return {
            "cod_collected_by": event.metadata.get("collected_by"),
            "cod_receipt_url": event.metadata.get("receipt_url"),
            "cod_collected_at": _utcnow(),
        }

    async def _advance_plan(
        self,
        order: Order,
        payment_type: PaymentType,
        is_fully_paid: bool,
    ) -> None:
        if payment_type is PaymentType.DEPOSIT:
            target = PaymentPlanStatus.DEPOSIT_PAID
        elif payment_type is PaymentType.BALANCE and is_fully_paid:
            target = PaymentPlanStatus.FULLY_PAID
        else:
            return

        plan = await self.repository.get_payment_plan(order.id)
        if plan is None:
            return

        previous = plan.status
        if plan.advance_to(target, _utcnow()):
            logger.info(
                "Payment plan advanced",
                order_id=str(order.id),
                from_status=previous.value,
                to_status=target.value,
            )

    @staticmethod
    def _result(order: Order, already_settled: bool = False) -> SettlementResult:
        return SettlementResult(
            success=True,
            order_id=order.id,
            already_settled=already_settled,
            payment_status=order.payment_status,
            paid_amount=order.paid_amount,
            balance_due=order.balance_due,
            is_fully_paid=order.is_fully_paid,
        )

    async def settle_payment_failed(
        self,
        order_id: uuid.UUID,
        gateway: PaymentGateway,
        identifiers: Optional[dict[str, str]] = None,
        payment_type: PaymentType = PaymentType.FULL,
        metadata: Optional[dict[str, str]] = None,
        claim: Optional[WebhookClaim] = None,
    ) -> SettlementResult:
        """
        Record a failed attempt.

        The order is marked FAILED only when nothing has been paid yet; a
        failed balance attempt leaves a partial order partial. A failed
        ledger row with amount 0 is always appended.
        """
        logger.info(
            "Recording failed payment",
            order_id=str(order_id),
            gateway=gateway.value,
        )

        try:
            if not await self._claim(claim, order_id):
                await self.repository.rollback()
                return SettlementResult(
                    success=True,
                    order_id=order_id,
                    already_settled=True,
                    duplicate_event=True,
                )

            order = await self.repository.get_order(order_id, for_update=True)
            if order is None:
                raise OrderNotFoundError(
                    f"Order {order_id} not found",
                    order_id=str(order_id),
                )

            if order.paid_amount <= 0:
                order.payment_status = OrderPaymentStatus.FAILED

            await self.repository.add_payment(
                order_id=order.id,
                amount=0,
                currency=order.currency,
                payment_method=gateway,
                payment_type=payment_type,
                status=PaymentRecordStatus.FAILED,
                payment_metadata=metadata or None,
                **(identifiers or {}),
            )

            result = self._result(order)
            await self._store_outcome(claim, order.id, result)
            await self.repository.commit()

        except PaymentError as e:
            await self.repository.rollback()
            logger.warning(
                "Failed payment could not be recorded",
                order_id=str(order_id),
                error=e.message,
                error_code=e.code.value,
            )
            await self._record_failure(claim, order_id, e)
            return SettlementResult.failure(order_id, e)

        logger.info(
            "Failed payment recorded",
            order_id=str(order_id),
            payment_status=order.payment_status.value,
        )
        return result

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    async def _deduct_inventory(self, order: Order, items: Sequence[OrderItem]) -> None:
        entries = inventory_entries(order, items)
        if not entries:
            return

        try:
            await self.inventory.deduct(entries, str(order.id))
        except Exception as e:
            logger.error(
                "Inventory deduction failed after settlement",
                order_id=str(order.id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return

        for variant_id in dict.fromkeys(entry.variant_id for entry in entries):
            try:
                await self.inventory.check_low_stock_and_alert(variant_id, order.inventory_pool)
            except Exception as e:
                logger.warning(
                    "Low stock check failed",
                    variant_id=variant_id,
                    error=str(e),
                )

    async def release_order_inventory(self, order_id: uuid.UUID) -> bool:
        """
        Return an order's stock to availability.

        Safe to call more than once; the coordinator ignores repeated
        releases for the same order.

        Returns:
            True if the coordinator accepted the release
        """
        try:
            order = await self.repository.get_order(order_id)
            if order is None:
                logger.warning("Cannot release inventory for missing order", order_id=str(order_id))
                return False
            items = await self.repository.get_order_items(order_id)
        except PaymentStorageError as e:
            logger.error("Inventory release lookup failed", order_id=str(order_id), error=e.message)
            return False

        entries = inventory_entries(order, items)
        if not entries:
            return True

        try:
            await self.inventory.release(entries, str(order_id))
        except Exception as e:
            logger.error(
                "Inventory release failed",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False

        logger.info("Order inventory released", order_id=str(order_id), lines=len(entries))
        return True
