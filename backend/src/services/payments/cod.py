"""
Cash-on-delivery tracking.

One tracking row per COD order records courier attempts. A collection is
settled through the regular settlement path, in the same transaction as the
tracking update, so the cash ledger row and the tracking row commit or roll
back together.
"""

import uuid
from datetime import datetime, timezone

from src.core.logging import get_logger
from src.database.models.payment import CODStatus, CODTracking, PaymentGateway
from src.schemas.payments import (
    CODCollection,
    CODFailure,
    ConfirmedPaymentEvent,
    SettlementResult,
)
from src.services.payments.errors import (
    InvalidStateError,
    OrderNotFoundError,
    PaymentError,
)
from src.services.payments.repository import PaymentRepository
from src.services.payments.settlement import PaymentSettlementService

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CODService:
    """
    Courier collection workflow for cash-on-delivery orders.

    Attributes:
        repository: Payment repository shared with ``settlement``
        settlement: Settles collected cash
    """

    def __init__(
        self,
        repository: PaymentRepository,
        settlement: PaymentSettlementService,
    ):
        self.repository = repository
        self.settlement = settlement

    async def _tracking_or_create(self, order_id: uuid.UUID) -> CODTracking:
        tracking = await self.repository.get_cod_tracking(order_id)
        if tracking is not None:
            return tracking

        if await self.repository.get_order(order_id) is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=str(order_id))

        return await self.repository.add_cod_tracking(
            CODTracking(
                order_id=order_id,
                cod_status=CODStatus.PENDING,
                delivery_attempts=0,
            )
        )

    async def init_tracking(self, order_id: uuid.UUID) -> CODTracking:
        """
        Start tracking a COD order. Calling it again returns the existing row.

        Raises:
            OrderNotFoundError: Order does not exist
        """
        try:
            tracking = await self._tracking_or_create(order_id)
            await self.repository.commit()
        except PaymentError:
            await self.repository.rollback()
            raise

        logger.info(
            "COD tracking initialized",
            order_id=str(order_id),
            cod_status=tracking.cod_status.value,
        )
        return tracking

    async def record_collection(self, collection: CODCollection) -> SettlementResult:
        """
        Record cash handed over to the courier and settle it.

        A second collection for an already collected order is reported as
        already settled.
        """
        order_id = collection.order_id
        logger.info(
            "Recording COD collection",
            order_id=str(order_id),
            amount=collection.amount,
            collected_by=collection.collected_by,
        )

        try:
            tracking = await self._tracking_or_create(order_id)

            if tracking.cod_status is CODStatus.COLLECTED:
                await self.repository.rollback()
                logger.info("COD already collected", order_id=str(order_id))
                return SettlementResult(success=True, order_id=order_id, already_settled=True)

            if tracking.cod_status is CODStatus.RETURNED:
                raise InvalidStateError(
                    "Cannot collect cash for a returned COD order",
                    order_id=str(order_id),
                )

            now = _utcnow()
            tracking.record_attempt(now)
            tracking.cod_status = CODStatus.COLLECTED
            tracking.collected_by = collection.collected_by
            tracking.collected_amount = collection.amount
            tracking.collected_at = now
            tracking.receipt_url = collection.receipt_url
            tracking.failure_reason = None

        except PaymentError as e:
            await self.repository.rollback()
            logger.warning("COD collection rejected", order_id=str(order_id), error=e.message)
            return SettlementResult.failure(order_id, e)

        metadata = {"collected_by": collection.collected_by}
        if collection.receipt_url:
            metadata["receipt_url"] = collection.receipt_url

        # settle_payment commits the tracking update with the ledger row
        return await self.settlement.settle_payment(
            ConfirmedPaymentEvent(
                order_id=order_id,
                amount=collection.amount,
                gateway=PaymentGateway.COD,
                metadata=metadata,
            )
        )

    async def record_failure(self, failure: CODFailure) -> CODTracking:
        """
        Record an unsuccessful delivery attempt.

        Raises:
            OrderNotFoundError: No tracking row for the order
            InvalidStateError: Cash already collected or parcel returned
        """
        order_id = failure.order_id
        try:
            tracking = await self.repository.get_cod_tracking(order_id)
            if tracking is None:
                raise OrderNotFoundError(
                    f"No COD tracking for order {order_id}", order_id=str(order_id)
                )
            if tracking.cod_status in (CODStatus.COLLECTED, CODStatus.RETURNED):
                raise InvalidStateError(
                    f"Cannot record a failed attempt on a {tracking.cod_status.value} COD order",
                    order_id=str(order_id),
                )

            tracking.record_attempt(_utcnow())
            tracking.cod_status = CODStatus.FAILED
            tracking.failure_reason = failure.reason
            tracking.failure_notes = failure.notes
            await self.repository.commit()

        except PaymentError:
            await self.repository.rollback()
            raise

        logger.info(
            "COD delivery attempt failed",
            order_id=str(order_id),
            reason=failure.reason.value,
            attempts=tracking.delivery_attempts,
        )
        return tracking

    async def mark_returned(self, order_id: uuid.UUID) -> CODTracking:
        """
        Mark an uncollected COD parcel as returned and release its stock.

        Raises:
            OrderNotFoundError: No tracking row for the order
            InvalidStateError: Cash was already collected
        """
        try:
            tracking = await self.repository.get_cod_tracking(order_id)
            if tracking is None:
                raise OrderNotFoundError(
                    f"No COD tracking for order {order_id}", order_id=str(order_id)
                )
            if tracking.cod_status is CODStatus.COLLECTED:
                raise InvalidStateError(
                    "Cannot return a COD order whose cash was collected",
                    order_id=str(order_id),
                )

            already_returned = tracking.cod_status is CODStatus.RETURNED
            tracking.cod_status = CODStatus.RETURNED
            await self.repository.commit()

        except PaymentError:
            await self.repository.rollback()
            raise

        if not already_returned:
            logger.info(
                "COD parcel returned",
                order_id=str(order_id),
                attempts=tracking.delivery_attempts,
            )
            await self.settlement.release_order_inventory(order_id)
        return tracking
