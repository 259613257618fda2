"""
Refund and return orchestration.

A refund is routed back through the gateway that took the money. The
payment record is first narrowed to a variant that carries exactly the
identifier its gateway needs (``CardPayment``, ``RegionalPayment`` or
``CashPayment``); a record without that identifier never reaches a gateway
call. Gateway calls are made once and never retried here. Order state is
updated only after the gateway accepted the refund, with the order row
locked for the read-recompute-write.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ClassVar, Optional, Union

from src.core.logging import get_logger
from src.database.models.order import Order, OrderPaymentStatus
from src.database.models.payment import OrderPayment, PaymentGateway, PaymentRecordStatus
from src.schemas.payments import RefundRequest, RefundResult, ReturnRequest, ReturnResult
from src.services.payments.errors import (
    InvalidStateError,
    MissingGatewayIdentifierError,
    OrderNotFoundError,
    PaymentError,
    PaymentErrorCode,
    PaymentNotFoundError,
    UnsupportedGatewayError,
)
from src.services.payments.gateways import GatewayClientFactory
from src.services.payments.repository import PaymentRepository
from src.services.payments.settlement import PaymentSettlementService

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PendingRefund:
    """A validated refund about to be sent to a gateway."""

    order_id: str
    amount: int
    is_full_refund: bool
    reason: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class CardPayment:
    charge_id: str
    gateway: ClassVar[PaymentGateway] = PaymentGateway.CARD

    async def refund(self, gateways: GatewayClientFactory, pending: PendingRefund) -> str:
        client = await gateways.card_client()
        # Omitting the amount refunds the whole charge
        stripe_refund = await asyncio.to_thread(
            client.create_refund,
            self.charge_id,
            amount=None if pending.is_full_refund else pending.amount,
            reason=pending.reason,
            metadata={"order_id": pending.order_id},
            idempotency_key=pending.idempotency_key,
        )
        return stripe_refund.id


@dataclass(frozen=True)
class RegionalPayment:
    bank_tran_id: str
    gateway: ClassVar[PaymentGateway] = PaymentGateway.REGIONAL

    async def refund(self, gateways: GatewayClientFactory, pending: PendingRefund) -> str:
        client = await gateways.regional_client()
        async with client:
            return await client.initiate_refund(
                bank_tran_id=self.bank_tran_id,
                amount=pending.amount,
                remarks=pending.reason,
                refund_trans_id=f"REF-{pending.order_id}-{_now_ms()}",
            )


@dataclass(frozen=True)
class CashPayment:
    gateway: ClassVar[PaymentGateway] = PaymentGateway.COD

    async def refund(self, gateways: GatewayClientFactory, pending: PendingRefund) -> str:
        # Cash is handed back by the courier; only the books change
        return f"COD-REFUND-{_now_ms()}"


RefundablePayment = Union[CardPayment, RegionalPayment, CashPayment]


def refundable_payment(payment: OrderPayment, gateway: PaymentGateway) -> RefundablePayment:
    """
    Narrow a ledger row to the variant for ``gateway``.

    Raises:
        MissingGatewayIdentifierError: Row lacks the identifier the gateway
            refunds against
        UnsupportedGatewayError: Gateway cannot refund
    """
    if gateway is PaymentGateway.CARD:
        if not payment.card_charge_id:
            raise MissingGatewayIdentifierError(
                "No card charge id found on payment record",
                payment_id=str(payment.id),
            )
        return CardPayment(charge_id=payment.card_charge_id)

    if gateway is PaymentGateway.REGIONAL:
        if not payment.regional_bank_transaction_id:
            raise MissingGatewayIdentifierError(
                "No regional bank transaction id found on payment record",
                payment_id=str(payment.id),
            )
        return RegionalPayment(bank_tran_id=payment.regional_bank_transaction_id)

    if gateway is PaymentGateway.COD:
        return CashPayment()

    raise UnsupportedGatewayError(f"Unsupported gateway: {gateway}")


class RefundOrchestrator:
    """
    Drives refunds and returns through the originating gateway.

    Attributes:
        repository: Payment repository; this service owns its transaction
        settlement: Used to release inventory after a full refund
        gateways: Builds gateway clients from resolved settings
    """

    def __init__(
        self,
        repository: PaymentRepository,
        settlement: PaymentSettlementService,
        gateways: GatewayClientFactory,
    ):
        self.repository = repository
        self.settlement = settlement
        self.gateways = gateways

    @staticmethod
    def _check_refundable(order: Order) -> None:
        if order.payment_status in (OrderPaymentStatus.UNPAID, OrderPaymentStatus.FAILED):
            raise InvalidStateError(
                "Order has no payments to refund",
                payment_status=order.payment_status.value,
            )
        if order.payment_status is OrderPaymentStatus.REFUNDED:
            raise InvalidStateError(
                "Order is already fully refunded",
                payment_status=order.payment_status.value,
            )

    async def _source_payment(
        self,
        order: Order,
        gateway_override: Optional[PaymentGateway],
    ) -> OrderPayment:
        payment = None
        if gateway_override is not None:
            payment = await self.repository.get_latest_succeeded_payment(
                order.id, gateway=gateway_override
            )
        if payment is None:
            payment = await self.repository.get_latest_succeeded_payment(order.id)
        if payment is None:
            raise PaymentNotFoundError(
                "No payment record found",
                order_id=str(order.id),
            )
        return payment

    async def process_refund(self, request: RefundRequest) -> RefundResult:
        """
        Refund an order, fully or partially.

        Validation happens before any gateway call: an order that was never
        paid, has failed, or is already refunded is rejected without side
        effects.

        Args:
            request: Order, optional amount (defaults to everything paid),
                reason and optional gateway override

        Returns:
            RefundResult; failures are reported, never raised
        """
        order_id = request.order_id
        gateway: Optional[PaymentGateway] = request.gateway_override
        amount = request.amount or 0

        logger.info(
            "Processing refund",
            order_id=str(order_id),
            amount=request.amount,
            gateway_override=gateway.value if gateway else None,
        )

        try:
            order = await self.repository.get_order(order_id)
            if order is None:
                raise OrderNotFoundError("Order not found", order_id=str(order_id))
            self._check_refundable(order)

            payment = await self._source_payment(order, request.gateway_override)
            gateway = request.gateway_override or payment.payment_method

            amount = request.amount if request.amount is not None else order.paid_amount
            if amount > order.paid_amount:
                raise InvalidStateError(
                    f"Refund amount {amount} exceeds amount paid {order.paid_amount}",
                    order_id=str(order_id),
                )
            # Provisional; the recorded outcome is decided under the row lock
            is_full_refund = amount >= order.paid_amount

            source = refundable_payment(payment, gateway)

            refund_id = await source.refund(
                self.gateways,
                PendingRefund(
                    order_id=str(order_id),
                    amount=amount,
                    is_full_refund=is_full_refund,
                    reason=request.reason,
                    idempotency_key=request.idempotency_key,
                ),
            )

        except PaymentError as e:
            await self.repository.rollback()
            logger.warning(
                "Refund rejected",
                order_id=str(order_id),
                gateway=gateway.value if gateway else None,
                error=e.message,
                error_code=e.code.value,
                retryable=e.retryable,
            )
            return RefundResult.failure(e, gateway=gateway, amount=amount)

        logger.info(
            "Gateway accepted refund",
            order_id=str(order_id),
            gateway=gateway.value,
            refund_id=refund_id,
            amount=amount,
        )

        try:
            is_full_refund = await self._record_refund(
                order_id, payment, gateway, amount, refund_id, request.reason
            )
        except PaymentError as e:
            await self.repository.rollback()
            # Money already moved; repeating the call would refund twice
            logger.critical(
                "Refund issued but order update failed",
                order_id=str(order_id),
                gateway=gateway.value,
                refund_id=refund_id,
                amount=amount,
                error=e.message,
            )
            return RefundResult(
                success=False,
                gateway=gateway,
                refund_id=refund_id,
                amount=amount,
                is_full_refund=False,
                error=f"Refund {refund_id} was issued but recording it failed: {e.message}",
                error_code=e.code,
                retryable=False,
            )

        if is_full_refund:
            await self.settlement.release_order_inventory(order_id)

        return RefundResult(
            success=True,
            gateway=gateway,
            refund_id=refund_id,
            amount=amount,
            is_full_refund=is_full_refund,
        )

    async def _record_refund(
        self,
        order_id: uuid.UUID,
        payment: OrderPayment,
        gateway: PaymentGateway,
        amount: int,
        refund_id: str,
        reason: str,
    ) -> bool:
        """
        Book an accepted refund against the locked order.

        The order may have changed while the gateway call was in flight, so
        the amount is checked again and full versus partial is decided here.

        Returns:
            True if the refund left nothing paid on the order
        """
        order = await self.repository.get_order(order_id, for_update=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        if amount > order.paid_amount:
            raise InvalidStateError(
                f"Refund amount {amount} exceeds amount paid {order.paid_amount}",
                order_id=str(order_id),
                refund_id=refund_id,
            )

        is_full_refund = order.apply_refund(amount)
        await self.repository.add_payment(
            order_id=order.id,
            amount=amount,
            currency=order.currency,
            payment_method=gateway,
            payment_type=payment.payment_type,
            status=PaymentRecordStatus.REFUNDED,
            payment_metadata={
                "refund_id": refund_id,
                "reason": reason,
                "source_payment_id": str(payment.id),
            },
        )
        await self.repository.commit()

        logger.info(
            "Refund recorded",
            order_id=str(order_id),
            paid_amount=order.paid_amount,
            balance_due=order.balance_due,
            payment_status=order.payment_status.value,
        )
        return is_full_refund

    async def process_return(self, request: ReturnRequest) -> ReturnResult:
        """
        Mark a shipped or delivered order as returned.

        The return stands on its own: when ``auto_refund`` is set and the
        refund fails, the order is still returned and the refund error is
        reported alongside.
        """
        order_id = request.order_id
        logger.info("Processing return", order_id=str(order_id), auto_refund=request.auto_refund)

        try:
            order = await self.repository.get_order(order_id, for_update=True)
            if order is None:
                raise OrderNotFoundError("Order not found", order_id=str(order_id))

            if not order.fulfillment_status.is_returnable:
                raise InvalidStateError(
                    f"Cannot return an order in '{order.fulfillment_status.value}' status. "
                    "Order must be delivered, completed, or shipped.",
                    fulfillment_status=order.fulfillment_status.value,
                )

            order.mark_returned(request.reason, datetime.now(timezone.utc))
            has_payments = order.payment_status.is_refundable
            fulfillment_status = order.fulfillment_status
            await self.repository.commit()

        except PaymentError as e:
            await self.repository.rollback()
            logger.warning(
                "Return rejected",
                order_id=str(order_id),
                error=e.message,
                error_code=e.code.value,
            )
            return ReturnResult(
                success=False,
                order_id=order_id,
                error=e.message,
                error_code=e.code,
            )

        logger.info("Order returned", order_id=str(order_id))

        refund = None
        if request.auto_refund and has_payments:
            refund = await self.process_refund(
                RefundRequest(order_id=order_id, reason=request.reason)
            )
            if not refund.success:
                logger.warning(
                    "Automatic refund after return failed",
                    order_id=str(order_id),
                    error=refund.error,
                )

        return ReturnResult(
            success=True,
            order_id=order_id,
            fulfillment_status=fulfillment_status,
            refund=refund,
        )
