"""
Tests for the refund orchestrator.

Gateway clients are mocked; the repository is the in-memory fake, so each
test can check both what was sent to the gateway and what was committed.
"""

import uuid
from unittest.mock import AsyncMock, Mock

import pytest

from src.database.models.order import FulfillmentStatus, OrderPaymentStatus
from src.database.models.payment import (
    PaymentGateway,
    PaymentRecordStatus,
    PaymentType,
)
from src.schemas.payments import RefundRequest, ReturnRequest
from src.services.payments.errors import (
    GatewayNetworkError,
    GatewayNotConfiguredError,
    GatewayRejectedError,
    MissingGatewayIdentifierError,
    PaymentErrorCode,
)
from src.services.payments.refunds import (
    CardPayment,
    CashPayment,
    RefundOrchestrator,
    RegionalPayment,
    refundable_payment,
)
from src.services.payments.sslcommerz_client import SSLCommerzClient
from src.services.payments.stripe_client import StripeClient

from tests.test_payments.fakes import make_item, make_order


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def stripe_client() -> Mock:
    client = Mock(spec=StripeClient)
    client.create_refund.return_value = Mock(id="re_123", status="succeeded")
    return client


@pytest.fixture
def sslcommerz_client() -> AsyncMock:
    client = AsyncMock(spec=SSLCommerzClient)
    client.initiate_refund.return_value = "SSL-REF-1"
    return client


@pytest.fixture
def orchestrator(repository, settlement, gateways, stripe_client, sslcommerz_client):
    gateways.card_client.return_value = stripe_client
    gateways.regional_client.return_value = sslcommerz_client
    return RefundOrchestrator(repository, settlement, gateways)


@pytest.fixture
def card_paid_order(repository):
    order = make_order(total=1_000, paid=1_000, payment_status=OrderPaymentStatus.PAID)
    repository.add_order(order, items=[make_item(order)])
    repository.add_existing_payment(
        order_id=order.id,
        amount=1_000,
        payment_method=PaymentGateway.CARD,
        status=PaymentRecordStatus.SUCCEEDED,
        card_intent_id="pi_1",
        card_charge_id="ch_1",
    )
    return order


# ============================================================================
# Payment Narrowing
# ============================================================================


class TestRefundablePayment:
    """Ledger rows are narrowed to the identifier their gateway needs."""

    def test_card_row_with_charge(self, repository):
        payment = repository.add_existing_payment(
            order_id=uuid.uuid4(),
            amount=100,
            payment_method=PaymentGateway.CARD,
            status=PaymentRecordStatus.SUCCEEDED,
            card_charge_id="ch_9",
        )

        assert refundable_payment(payment, PaymentGateway.CARD) == CardPayment(charge_id="ch_9")

    def test_card_row_without_charge(self, repository):
        payment = repository.add_existing_payment(
            order_id=uuid.uuid4(),
            amount=100,
            payment_method=PaymentGateway.CARD,
            status=PaymentRecordStatus.SUCCEEDED,
            card_intent_id="pi_9",
        )

        with pytest.raises(MissingGatewayIdentifierError):
            refundable_payment(payment, PaymentGateway.CARD)

    def test_regional_row(self, repository):
        payment = repository.add_existing_payment(
            order_id=uuid.uuid4(),
            amount=100,
            payment_method=PaymentGateway.REGIONAL,
            status=PaymentRecordStatus.SUCCEEDED,
            regional_transaction_id="TXN-1",
            regional_bank_transaction_id="BANK-1",
        )

        assert refundable_payment(payment, PaymentGateway.REGIONAL) == RegionalPayment(
            bank_tran_id="BANK-1"
        )

    def test_cash_needs_no_identifier(self, repository):
        payment = repository.add_existing_payment(
            order_id=uuid.uuid4(),
            amount=100,
            payment_method=PaymentGateway.COD,
            status=PaymentRecordStatus.SUCCEEDED,
        )

        assert refundable_payment(payment, PaymentGateway.COD) == CashPayment()


# ============================================================================
# Validation Before Gateway Calls
# ============================================================================


class TestRefundGating:
    """Orders that cannot be refunded never reach a gateway."""

    @pytest.mark.parametrize(
        "payment_status,message",
        [
            (OrderPaymentStatus.UNPAID, "Order has no payments to refund"),
            (OrderPaymentStatus.FAILED, "Order has no payments to refund"),
            (OrderPaymentStatus.REFUNDED, "Order is already fully refunded"),
        ],
    )
    @pytest.mark.asyncio
    async def test_rejected_statuses(
        self, repository, orchestrator, gateways, payment_status, message
    ):
        order = repository.add_order(make_order(total=1_000, payment_status=payment_status))

        result = await orchestrator.process_refund(
            RefundRequest(order_id=order.id, reason="Customer request")
        )

        assert result.success is False
        assert result.error == message
        assert result.error_code is PaymentErrorCode.INVALID_STATE
        gateways.card_client.assert_not_awaited()
        gateways.regional_client.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_order(self, orchestrator):
        result = await orchestrator.process_refund(
            RefundRequest(order_id=uuid.uuid4(), reason="Customer request")
        )

        assert result.success is False
        assert result.error_code is PaymentErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_paid_order_without_payment_rows(self, repository, orchestrator):
        order = repository.add_order(
            make_order(total=1_000, paid=1_000, payment_status=OrderPaymentStatus.PAID)
        )

        result = await orchestrator.process_refund(
            RefundRequest(order_id=order.id, reason="Customer request")
        )

        assert result.success is False
        assert result.error == "No payment record found"

    @pytest.mark.asyncio
    async def test_amount_above_paid_is_rejected(
        self, orchestrator, card_paid_order, stripe_client
    ):
        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, amount=1_500, reason="Customer request")
        )

        assert result.success is False
        assert result.error_code is PaymentErrorCode.INVALID_STATE
        stripe_client.create_refund.assert_not_called()
        assert card_paid_order.paid_amount == 1_000

    @pytest.mark.asyncio
    async def test_regional_override_on_card_payment(
        self, orchestrator, card_paid_order, gateways, stripe_client
    ):
        """A card row has no bank transaction id for the regional gateway."""
        result = await orchestrator.process_refund(
            RefundRequest(
                order_id=card_paid_order.id,
                reason="Customer request",
                gateway_override=PaymentGateway.REGIONAL,
            )
        )

        assert result.success is False
        assert result.gateway is PaymentGateway.REGIONAL
        assert result.error_code is PaymentErrorCode.MISSING_GATEWAY_IDENTIFIER
        gateways.regional_client.assert_not_awaited()
        stripe_client.create_refund.assert_not_called()
        assert card_paid_order.payment_status is OrderPaymentStatus.PAID


# ============================================================================
# Card Refunds
# ============================================================================


class TestCardRefund:
    """Refunds through the card gateway."""

    @pytest.mark.asyncio
    async def test_full_refund(
        self, repository, orchestrator, card_paid_order, stripe_client, inventory
    ):
        result = await orchestrator.process_refund(
            RefundRequest(
                order_id=card_paid_order.id,
                reason="Damaged on arrival",
                idempotency_key="refund-1",
            )
        )

        assert result.success is True
        assert result.refund_id == "re_123"
        assert result.gateway is PaymentGateway.CARD
        assert result.amount == 1_000
        assert result.is_full_refund is True

        stripe_client.create_refund.assert_called_once_with(
            "ch_1",
            amount=None,
            reason="Damaged on arrival",
            metadata={"order_id": str(card_paid_order.id)},
            idempotency_key="refund-1",
        )

        assert card_paid_order.payment_status is OrderPaymentStatus.REFUNDED
        assert card_paid_order.paid_amount == 0
        assert card_paid_order.balance_due == 1_000

        refunds = repository.payments_for(card_paid_order.id, PaymentRecordStatus.REFUNDED)
        assert len(refunds) == 1
        assert refunds[0].amount == 1_000
        assert refunds[0].payment_metadata["refund_id"] == "re_123"
        assert refunds[0].payment_metadata["reason"] == "Damaged on arrival"

        inventory.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_partial_refund(self, orchestrator, card_paid_order, stripe_client, inventory):
        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, amount=300, reason="Price adjustment")
        )

        assert result.success is True
        assert result.is_full_refund is False
        assert stripe_client.create_refund.call_args.kwargs["amount"] == 300
        assert card_paid_order.payment_status is OrderPaymentStatus.PARTIAL
        assert card_paid_order.paid_amount == 700
        assert card_paid_order.balance_due == 300
        inventory.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_partial_refund_completes(self, orchestrator, card_paid_order):
        await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, amount=300, reason="Adjustment")
        )
        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, reason="Rest of it")
        )

        assert result.amount == 700
        assert result.is_full_refund is True
        assert card_paid_order.payment_status is OrderPaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_gateway_rejection_changes_nothing(
        self, repository, orchestrator, card_paid_order, stripe_client
    ):
        stripe_client.create_refund.side_effect = GatewayRejectedError(
            "Charge ch_1 has already been refunded."
        )

        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, reason="Customer request")
        )

        assert result.success is False
        assert result.error == "Charge ch_1 has already been refunded."
        assert result.error_code is PaymentErrorCode.GATEWAY_REJECTED
        assert result.retryable is False
        assert card_paid_order.payment_status is OrderPaymentStatus.PAID
        assert repository.payments_for(card_paid_order.id, PaymentRecordStatus.REFUNDED) == []

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self, orchestrator, card_paid_order, stripe_client):
        stripe_client.create_refund.side_effect = GatewayNetworkError("timed out")

        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, reason="Customer request")
        )

        assert result.success is False
        assert result.retryable is True
        assert card_paid_order.paid_amount == 1_000

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, orchestrator, card_paid_order, gateways):
        gateways.card_client.side_effect = GatewayNotConfiguredError(
            "Card gateway is not configured"
        )

        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, reason="Customer request")
        )

        assert result.success is False
        assert result.error_code is PaymentErrorCode.GATEWAY_NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_storage_failure_after_gateway_success(
        self, repository, orchestrator, card_paid_order, inventory
    ):
        repository.fail_commit = True

        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, reason="Customer request")
        )

        assert result.success is False
        assert result.refund_id == "re_123"
        assert result.error_code is PaymentErrorCode.STORAGE_ERROR
        assert result.retryable is False
        assert card_paid_order.payment_status is OrderPaymentStatus.PAID
        inventory.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payment_during_gateway_call_keeps_refund_partial(
        self, repository, orchestrator, stripe_client, inventory
    ):
        order = make_order(total=1_000, paid=400, payment_status=OrderPaymentStatus.PARTIAL)
        repository.add_order(order, items=[make_item(order)])
        repository.add_existing_payment(
            order_id=order.id,
            amount=400,
            payment_method=PaymentGateway.CARD,
            payment_type=PaymentType.DEPOSIT,
            status=PaymentRecordStatus.SUCCEEDED,
            card_charge_id="ch_deposit",
        )

        def balance_lands_first(*args, **kwargs):
            order.apply_payment(600)
            repository.commit_elsewhere()
            return Mock(id="re_dep", status="succeeded")

        stripe_client.create_refund.side_effect = balance_lands_first

        result = await orchestrator.process_refund(
            RefundRequest(order_id=order.id, reason="Deposit returned")
        )

        assert result.success is True
        assert result.amount == 400
        assert result.is_full_refund is False
        assert order.paid_amount == 600
        assert order.payment_status is OrderPaymentStatus.PARTIAL
        inventory.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_amount_rechecked_after_gateway_call(
        self, repository, orchestrator, card_paid_order, stripe_client, inventory
    ):
        def refunded_elsewhere(*args, **kwargs):
            card_paid_order.apply_refund(500)
            repository.commit_elsewhere()
            return Mock(id="re_late", status="succeeded")

        stripe_client.create_refund.side_effect = refunded_elsewhere

        result = await orchestrator.process_refund(
            RefundRequest(order_id=card_paid_order.id, amount=800, reason="Customer request")
        )

        assert result.success is False
        assert result.refund_id == "re_late"
        assert result.error_code is PaymentErrorCode.INVALID_STATE
        assert result.is_full_refund is False
        assert card_paid_order.paid_amount == 500
        assert repository.payments_for(card_paid_order.id, PaymentRecordStatus.REFUNDED) == []
        inventory.release.assert_not_awaited()


# ============================================================================
# Regional and Cash Refunds
# ============================================================================


class TestRegionalAndCashRefund:
    """Refunds through SSLCommerz and for cash collected on delivery."""

    @pytest.mark.asyncio
    async def test_regional_refund(self, repository, orchestrator, sslcommerz_client):
        order = repository.add_order(
            make_order(total=2_000, paid=2_000, payment_status=OrderPaymentStatus.PAID)
        )
        repository.add_existing_payment(
            order_id=order.id,
            amount=2_000,
            payment_method=PaymentGateway.REGIONAL,
            status=PaymentRecordStatus.SUCCEEDED,
            regional_transaction_id="TXN-1",
            regional_bank_transaction_id="BANK-1",
        )

        result = await orchestrator.process_refund(
            RefundRequest(order_id=order.id, amount=500, reason="Missing accessory")
        )

        assert result.success is True
        assert result.refund_id == "SSL-REF-1"
        kwargs = sslcommerz_client.initiate_refund.call_args.kwargs
        assert kwargs["bank_tran_id"] == "BANK-1"
        assert kwargs["amount"] == 500
        assert kwargs["remarks"] == "Missing accessory"
        assert kwargs["refund_trans_id"].startswith(f"REF-{order.id}-")
        assert order.paid_amount == 1_500

    @pytest.mark.asyncio
    async def test_override_selects_matching_payment(
        self, repository, orchestrator, sslcommerz_client, stripe_client
    ):
        order = repository.add_order(
            make_order(total=2_000, paid=2_000, payment_status=OrderPaymentStatus.PAID)
        )
        repository.add_existing_payment(
            order_id=order.id,
            amount=1_000,
            payment_method=PaymentGateway.REGIONAL,
            payment_type=PaymentType.DEPOSIT,
            status=PaymentRecordStatus.SUCCEEDED,
            regional_bank_transaction_id="BANK-DEP",
        )
        repository.add_existing_payment(
            order_id=order.id,
            amount=1_000,
            payment_method=PaymentGateway.CARD,
            payment_type=PaymentType.BALANCE,
            status=PaymentRecordStatus.SUCCEEDED,
            card_charge_id="ch_bal",
        )

        result = await orchestrator.process_refund(
            RefundRequest(
                order_id=order.id,
                amount=1_000,
                reason="Deposit return",
                gateway_override=PaymentGateway.REGIONAL,
            )
        )

        assert result.success is True
        assert sslcommerz_client.initiate_refund.call_args.kwargs["bank_tran_id"] == "BANK-DEP"
        stripe_client.create_refund.assert_not_called()

    @pytest.mark.asyncio
    async def test_cash_refund(self, repository, orchestrator, gateways):
        order = repository.add_order(
            make_order(
                total=800,
                paid=800,
                payment_status=OrderPaymentStatus.PAID,
                payment_method=PaymentGateway.COD,
            )
        )
        repository.add_existing_payment(
            order_id=order.id,
            amount=800,
            payment_method=PaymentGateway.COD,
            status=PaymentRecordStatus.SUCCEEDED,
        )

        result = await orchestrator.process_refund(
            RefundRequest(order_id=order.id, reason="Customer request")
        )

        assert result.success is True
        assert result.refund_id.startswith("COD-REFUND-")
        assert order.payment_status is OrderPaymentStatus.REFUNDED
        gateways.card_client.assert_not_awaited()
        gateways.regional_client.assert_not_awaited()


# ============================================================================
# Returns
# ============================================================================


class TestProcessReturn:
    """Returns move fulfillment state and optionally refund."""

    @pytest.mark.asyncio
    async def test_delivered_order_is_returned(self, repository, orchestrator):
        order = repository.add_order(
            make_order(fulfillment_status=FulfillmentStatus.DELIVERED)
        )

        result = await orchestrator.process_return(
            ReturnRequest(order_id=order.id, reason="  Wrong size  ")
        )

        assert result.success is True
        assert result.fulfillment_status is FulfillmentStatus.RETURNED
        assert result.refund is None
        assert order.fulfillment_status is FulfillmentStatus.RETURNED
        assert order.return_reason == "Wrong size"
        assert order.returned_at is not None

    @pytest.mark.asyncio
    async def test_pending_order_cannot_be_returned(self, repository, orchestrator):
        order = repository.add_order(make_order(fulfillment_status=FulfillmentStatus.PENDING))

        result = await orchestrator.process_return(
            ReturnRequest(order_id=order.id, reason="Changed mind")
        )

        assert result.success is False
        assert result.error_code is PaymentErrorCode.INVALID_STATE
        assert "'pending'" in result.error
        assert order.fulfillment_status is FulfillmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_return_with_auto_refund(self, orchestrator, card_paid_order, stripe_client):
        card_paid_order.fulfillment_status = FulfillmentStatus.SHIPPED

        result = await orchestrator.process_return(
            ReturnRequest(order_id=card_paid_order.id, reason="Not as described", auto_refund=True)
        )

        assert result.success is True
        assert result.refund is not None
        assert result.refund.success is True
        assert result.refund.is_full_refund is True
        assert card_paid_order.fulfillment_status is FulfillmentStatus.RETURNED
        assert card_paid_order.payment_status is OrderPaymentStatus.REFUNDED
        stripe_client.create_refund.assert_called_once()

    @pytest.mark.asyncio
    async def test_return_stands_when_auto_refund_fails(
        self, orchestrator, card_paid_order, stripe_client
    ):
        card_paid_order.fulfillment_status = FulfillmentStatus.COMPLETED
        stripe_client.create_refund.side_effect = GatewayRejectedError("Charge disputed")

        result = await orchestrator.process_return(
            ReturnRequest(order_id=card_paid_order.id, reason="Defective", auto_refund=True)
        )

        assert result.success is True
        assert result.refund.success is False
        assert result.refund.error == "Charge disputed"
        assert card_paid_order.fulfillment_status is FulfillmentStatus.RETURNED

    @pytest.mark.asyncio
    async def test_auto_refund_skipped_for_unpaid_order(self, repository, orchestrator, gateways):
        order = repository.add_order(make_order(fulfillment_status=FulfillmentStatus.DELIVERED))

        result = await orchestrator.process_return(
            ReturnRequest(order_id=order.id, reason="Refused", auto_refund=True)
        )

        assert result.success is True
        assert result.refund is None
        gateways.card_client.assert_not_awaited()
