"""
Payment repository for order financial state and the payment ledgers.

Owns every query the settlement service, refund orchestrator, webhook
ingestion and COD tracking need. Methods flush but never commit: callers
decide the transaction boundary through ``commit()`` and ``rollback()`` so
a ledger claim, a ledger insert and an order update land atomically.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.order import Order, OrderItem
from src.database.models.payment import (
    CODTracking,
    OrderPayment,
    PaymentGateway,
    PaymentPlan,
    PaymentRecordStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from src.services.payments.errors import DuplicatePaymentError, PaymentStorageError

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentRepository:
    """
    Data access for orders, payment ledger rows, payment plans, the webhook
    ledger and COD tracking.

    Attributes:
        session: Async database session for executing queries
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Commit failed", error=str(e), error_type=type(e).__name__)
            raise PaymentStorageError(f"Failed to commit transaction: {e}") from e

    async def rollback(self) -> None:
        await self.session.rollback()

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_order(
        self,
        order_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Order]:
        """
        Load an order.

        Args:
            order_id: Order identifier
            for_update: Lock the row until the current transaction ends.
                Every balance recomputation loads the order this way.

        Returns:
            Order or None if it does not exist
        """
        try:
            stmt = select(Order).where(Order.id == order_id)
            if for_update:
                # Refresh attributes already in the identity map with the locked row
                stmt = stmt.with_for_update().execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to load order",
                order_id=str(order_id),
                error=str(e),
            )
            raise PaymentStorageError(
                f"Failed to load order: {e}", order_id=str(order_id)
            ) from e

    async def get_order_items(self, order_id: uuid.UUID) -> list[OrderItem]:
        try:
            result = await self.session.execute(
                select(OrderItem)
                .where(OrderItem.order_id == order_id)
                .order_by(OrderItem.created_at)
            )
            return list(result.scalars().all())

        except SQLAlchemyError as e:
            logger.error(
                "Failed to load order items",
                order_id=str(order_id),
                error=str(e),
            )
            raise PaymentStorageError(
                f"Failed to load order items: {e}", order_id=str(order_id)
            ) from e

    # ------------------------------------------------------------------
    # Payment ledger
    # ------------------------------------------------------------------

    async def find_succeeded_payment(
        self,
        identifiers: dict[str, str],
    ) -> Optional[OrderPayment]:
        """
        Find a succeeded ledger row carrying any of the given identifiers.

        Args:
            identifiers: Mapping of identifier column name to value

        Returns:
            Matching payment or None
        """
        if not identifiers:
            return None

        try:
            conditions = [
                getattr(OrderPayment, column) == value
                for column, value in identifiers.items()
            ]
            result = await self.session.execute(
                select(OrderPayment)
                .where(
                    OrderPayment.status == PaymentRecordStatus.SUCCEEDED,
                    or_(*conditions),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to look up payment by gateway identifier",
                identifiers=identifiers,
                error=str(e),
            )
            raise PaymentStorageError(f"Failed to look up payment: {e}") from e

    async def add_payment(self, **fields: Any) -> OrderPayment:
        """
        Append a ledger row.

        The insert runs in a savepoint so a unique violation on a gateway
        identifier leaves the surrounding transaction usable.

        Raises:
            DuplicatePaymentError: A succeeded row already has one of the
                gateway identifiers
            PaymentStorageError: Any other database failure
        """
        payment = OrderPayment(**fields)

        try:
            async with self.session.begin_nested():
                self.session.add(payment)
                await self.session.flush()

        except IntegrityError as e:
            logger.warning(
                "Duplicate gateway identifier on payment insert",
                order_id=str(fields.get("order_id")),
                identifiers=payment.gateway_identifiers(),
            )
            raise DuplicatePaymentError(
                "Payment already recorded for this gateway identifier",
                order_id=str(fields.get("order_id")),
            ) from e

        except SQLAlchemyError as e:
            logger.error(
                "Failed to insert payment",
                order_id=str(fields.get("order_id")),
                error=str(e),
            )
            raise PaymentStorageError(f"Failed to insert payment: {e}") from e

        logger.debug(
            "Payment ledger row added",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
            status=payment.status.value,
            amount=payment.amount,
        )
        return payment

    async def get_latest_succeeded_payment(
        self,
        order_id: uuid.UUID,
        gateway: Optional[PaymentGateway] = None,
    ) -> Optional[OrderPayment]:
        """
        Most recent succeeded payment for an order, optionally restricted to
        one gateway.
        """
        try:
            stmt = select(OrderPayment).where(
                OrderPayment.order_id == order_id,
                OrderPayment.status == PaymentRecordStatus.SUCCEEDED,
            )
            if gateway is not None:
                stmt = stmt.where(OrderPayment.payment_method == gateway)
            stmt = stmt.order_by(
                OrderPayment.created_at.desc(), OrderPayment.id.desc()
            ).limit(1)

            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to load latest payment",
                order_id=str(order_id),
                error=str(e),
            )
            raise PaymentStorageError(
                f"Failed to load latest payment: {e}", order_id=str(order_id)
            ) from e

    # ------------------------------------------------------------------
    # Payment plans
    # ------------------------------------------------------------------

    async def get_payment_plan(self, order_id: uuid.UUID) -> Optional[PaymentPlan]:
        try:
            result = await self.session.execute(
                select(PaymentPlan)
                .where(PaymentPlan.order_id == order_id)
                .with_for_update()
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            raise PaymentStorageError(
                f"Failed to load payment plan: {e}", order_id=str(order_id)
            ) from e

    # ------------------------------------------------------------------
    # Webhook ledger
    # ------------------------------------------------------------------

    async def claim_webhook_event(
        self,
        event_id: str,
        provider: str,
        event_type: str,
        order_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """
        Claim an inbound event for processing inside the current transaction.

        Inserts the ledger row as processed. If the id already exists and a
        previous attempt failed, the failed row is taken over instead. A
        concurrent claim of the same id blocks on the primary key until the
        first transaction ends.

        Returns:
            True if this caller owns the event, False if it was already
            handled
        """
        now = _utcnow()
        try:
            inserted = await self.session.execute(
                pg_insert(WebhookEvent)
                .values(
                    id=event_id,
                    provider=provider,
                    event_type=event_type,
                    order_id=order_id,
                    status=WebhookEventStatus.PROCESSED,
                    processed_at=now,
                )
                .on_conflict_do_nothing(index_elements=[WebhookEvent.id])
            )
            if inserted.rowcount == 1:
                return True

            reclaimed = await self.session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == event_id,
                    WebhookEvent.status == WebhookEventStatus.FAILED,
                )
                .values(
                    status=WebhookEventStatus.PROCESSED,
                    processed_at=now,
                    result=None,
                )
            )
            if reclaimed.rowcount == 1:
                logger.info(
                    "Reclaimed previously failed webhook event",
                    event_id=event_id,
                    provider=provider,
                )
                return True

            return False

        except SQLAlchemyError as e:
            logger.error(
                "Failed to claim webhook event",
                event_id=event_id,
                provider=provider,
                error=str(e),
            )
            raise PaymentStorageError(
                f"Failed to claim webhook event: {e}", event_id=event_id
            ) from e

    async def record_webhook_event(
        self,
        event_id: str,
        provider: str,
        event_type: str,
        order_id: Optional[uuid.UUID],
        status: WebhookEventStatus,
        result: Optional[dict[str, Any]] = None,
        overwrite: bool = False,
    ) -> bool:
        """
        Write a ledger row.

        Args:
            overwrite: Replace status and result of an existing row instead
                of leaving it untouched

        Returns:
            True if a row was inserted or updated
        """
        values = {
            "id": event_id,
            "provider": provider,
            "event_type": event_type,
            "order_id": order_id,
            "status": status,
            "result": result,
            "processed_at": _utcnow(),
        }
        stmt = pg_insert(WebhookEvent).values(**values)
        if overwrite:
            stmt = stmt.on_conflict_do_update(
                index_elements=[WebhookEvent.id],
                set_={
                    "status": stmt.excluded.status,
                    "result": stmt.excluded.result,
                    "processed_at": stmt.excluded.processed_at,
                },
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[WebhookEvent.id])

        try:
            written = await self.session.execute(stmt)
            return written.rowcount == 1

        except SQLAlchemyError as e:
            logger.error(
                "Failed to record webhook event",
                event_id=event_id,
                provider=provider,
                error=str(e),
            )
            raise PaymentStorageError(
                f"Failed to record webhook event: {e}", event_id=event_id
            ) from e

    # ------------------------------------------------------------------
    # Cash on delivery
    # ------------------------------------------------------------------

    async def get_cod_tracking(self, order_id: uuid.UUID) -> Optional[CODTracking]:
        try:
            result = await self.session.execute(
                select(CODTracking)
                .where(CODTracking.order_id == order_id)
                .with_for_update()
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            raise PaymentStorageError(
                f"Failed to load COD tracking: {e}", order_id=str(order_id)
            ) from e

    async def add_cod_tracking(self, tracking: CODTracking) -> CODTracking:
        try:
            self.session.add(tracking)
            await self.session.flush()
            return tracking

        except SQLAlchemyError as e:
            raise PaymentStorageError(
                f"Failed to create COD tracking: {e}",
                order_id=str(tracking.order_id),
            ) from e
