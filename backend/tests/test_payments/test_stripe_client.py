"""
Test suite for the Stripe API client wrapper.

Covers refunds, payment intent operations, error translation, the retry
policy for read operations, and webhook signature verification. Stripe SDK
calls are patched; no network access happens.
"""

from unittest.mock import Mock, patch
from uuid import uuid4

import pytest
import stripe

from src.database.models.payment import PaymentType
from src.services.payments.errors import (
    GatewayNetworkError,
    GatewayNotConfiguredError,
    GatewayRejectedError,
    PaymentErrorCode,
    WebhookVerificationError,
)
from src.services.payments.stripe_client import StripeClient


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def stripe_client() -> StripeClient:
    return StripeClient(
        api_key="sk_test_123",
        webhook_secret="whsec_test_123",
        timeout=5.0,
        max_retries=2,
        initial_backoff=0.1,
        max_backoff=1.0,
    )


@pytest.fixture
def mock_refund() -> Mock:
    refund = Mock()
    refund.id = "re_test_123"
    refund.status = "succeeded"
    return refund


@pytest.fixture
def mock_payment_intent() -> Mock:
    intent = Mock()
    intent.id = "pi_test_123"
    intent.status = "requires_payment_method"
    return intent


@pytest.fixture
def no_sleep():
    with patch("src.services.payments.stripe_client.time.sleep") as sleep:
        yield sleep


# ============================================================================
# Initialization and Backoff
# ============================================================================


class TestStripeClientInitialization:
    """Test suite for client configuration."""

    def test_initialization_with_custom_values(self, stripe_client: StripeClient):
        assert stripe_client.api_key == "sk_test_123"
        assert stripe_client.webhook_secret == "whsec_test_123"
        assert stripe_client.timeout == 5.0
        assert stripe_client.max_retries == 2

    def test_sdk_retries_disabled(self, stripe_client: StripeClient):
        assert stripe.max_network_retries == 0

    def test_timeout_defaults_to_settings(self):
        client = StripeClient(api_key="sk_test", webhook_secret="whsec")

        assert client.timeout == 30.0

    @pytest.mark.parametrize(
        "attempt,expected",
        [(0, 0.1), (1, 0.2), (2, 0.4), (3, 0.8), (4, 1.0), (10, 1.0)],
    )
    def test_calculate_backoff(self, stripe_client: StripeClient, attempt, expected):
        assert stripe_client._calculate_backoff(attempt) == pytest.approx(expected)


# ============================================================================
# Refunds
# ============================================================================


class TestCreateRefund:
    """Refunds are sent exactly once."""

    def test_full_refund_omits_amount(self, stripe_client: StripeClient, mock_refund):
        with patch.object(stripe.Refund, "create", return_value=mock_refund) as create:
            refund = stripe_client.create_refund("ch_123")

        assert refund.id == "re_test_123"
        create.assert_called_once_with(
            api_key="sk_test_123",
            charge="ch_123",
            reason="requested_by_customer",
        )

    def test_partial_refund_with_metadata(self, stripe_client: StripeClient, mock_refund):
        with patch.object(stripe.Refund, "create", return_value=mock_refund) as create:
            stripe_client.create_refund(
                "ch_123",
                amount=2_500,
                reason="Duplicate charge",
                metadata={"order_id": "abc"},
                idempotency_key="refund-abc-1",
            )

        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 2_500
        assert kwargs["reason"] == "duplicate"
        assert kwargs["metadata"] == {"order_id": "abc"}
        assert kwargs["idempotency_key"] == "refund-abc-1"

    @pytest.mark.parametrize(
        "reason,expected",
        [
            ("Duplicate order", "duplicate"),
            ("suspected FRAUD", "fraudulent"),
            ("Changed my mind", "requested_by_customer"),
            (None, "requested_by_customer"),
        ],
    )
    def test_normalize_refund_reason(self, reason, expected):
        assert StripeClient.normalize_refund_reason(reason) == expected

    def test_rejected_refund(self, stripe_client: StripeClient):
        error = stripe.InvalidRequestError(
            "Charge ch_123 has already been refunded.",
            param="charge",
            code="charge_already_refunded",
        )
        with patch.object(stripe.Refund, "create", side_effect=error):
            with pytest.raises(GatewayRejectedError) as exc_info:
                stripe_client.create_refund("ch_123")

        assert exc_info.value.message == "Charge ch_123 has already been refunded."
        assert exc_info.value.retryable is False

    def test_connection_error_is_not_retried(self, stripe_client: StripeClient, no_sleep):
        error = stripe.APIConnectionError("Connection reset")
        with patch.object(stripe.Refund, "create", side_effect=error) as create:
            with pytest.raises(GatewayNetworkError) as exc_info:
                stripe_client.create_refund("ch_123")

        assert create.call_count == 1
        assert exc_info.value.retryable is True
        no_sleep.assert_not_called()

    def test_authentication_error(self, stripe_client: StripeClient):
        error = stripe.AuthenticationError("Invalid API Key provided")
        with patch.object(stripe.Refund, "create", side_effect=error):
            with pytest.raises(GatewayNotConfiguredError):
                stripe_client.create_refund("ch_123")


# ============================================================================
# Payment Intents
# ============================================================================


class TestPaymentIntents:
    """Intent creation, retrieval, capture and cancellation."""

    def test_create_payment_intent_tags_order(self, stripe_client, mock_payment_intent):
        order_id = uuid4()
        with patch.object(
            stripe.PaymentIntent, "create", return_value=mock_payment_intent
        ) as create:
            stripe_client.create_payment_intent(
                amount=40_000,
                currency="BDT",
                order_id=order_id,
                payment_type=PaymentType.DEPOSIT,
                customer_email="buyer@example.com",
            )

        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 40_000
        assert kwargs["currency"] == "bdt"
        assert kwargs["capture_method"] == "automatic"
        assert kwargs["receipt_email"] == "buyer@example.com"
        assert kwargs["metadata"] == {"order_id": str(order_id), "payment_type": "deposit"}

    def test_create_without_idempotency_key_is_not_retried(
        self, stripe_client, no_sleep
    ):
        error = stripe.APIConnectionError("timeout")
        with patch.object(stripe.PaymentIntent, "create", side_effect=error) as create:
            with pytest.raises(GatewayNetworkError):
                stripe_client.create_payment_intent(
                    amount=100, currency="usd", order_id=uuid4()
                )

        assert create.call_count == 1

    def test_create_with_idempotency_key_is_retried(
        self, stripe_client, mock_payment_intent, no_sleep
    ):
        with patch.object(
            stripe.PaymentIntent,
            "create",
            side_effect=[stripe.RateLimitError("slow down"), mock_payment_intent],
        ) as create:
            intent = stripe_client.create_payment_intent(
                amount=100,
                currency="usd",
                order_id=uuid4(),
                idempotency_key="checkout-1",
            )

        assert intent.id == "pi_test_123"
        assert create.call_count == 2
        no_sleep.assert_called_once_with(pytest.approx(0.1))

    def test_retrieve_retries_until_exhausted(self, stripe_client, no_sleep):
        error = stripe.APIError("Stripe is down")
        with patch.object(stripe.PaymentIntent, "retrieve", side_effect=error) as retrieve:
            with pytest.raises(GatewayNetworkError):
                stripe_client.retrieve_payment_intent("pi_test_123")

        assert retrieve.call_count == 3
        assert no_sleep.call_count == 2

    def test_capture_partial_amount(self, stripe_client, mock_payment_intent):
        mock_payment_intent.status = "succeeded"
        with patch.object(
            stripe.PaymentIntent, "capture", return_value=mock_payment_intent
        ) as capture:
            stripe_client.capture_payment_intent("pi_test_123", amount_to_capture=500)

        capture.assert_called_once_with(
            "pi_test_123", api_key="sk_test_123", amount_to_capture=500
        )

    def test_cancel_with_reason(self, stripe_client, mock_payment_intent):
        with patch.object(
            stripe.PaymentIntent, "cancel", return_value=mock_payment_intent
        ) as cancel:
            stripe_client.cancel_payment_intent("pi_test_123", "abandoned")

        cancel.assert_called_once_with(
            "pi_test_123", api_key="sk_test_123", cancellation_reason="abandoned"
        )

    def test_card_error_is_rejected(self, stripe_client):
        error = stripe.CardError("Your card was declined.", param=None, code="card_declined")
        with patch.object(stripe.PaymentIntent, "capture", side_effect=error):
            with pytest.raises(GatewayRejectedError) as exc_info:
                stripe_client.capture_payment_intent("pi_test_123")

        assert exc_info.value.context["stripe_code"] == "card_declined"


# ============================================================================
# Webhook Verification
# ============================================================================


class TestConstructWebhookEvent:
    """Signature verification through the SDK."""

    def test_valid_signature(self, stripe_client):
        event = Mock(id="evt_1", type="payment_intent.succeeded")
        with patch.object(stripe.Webhook, "construct_event", return_value=event) as construct:
            result = stripe_client.construct_webhook_event(b"{}", "t=1,v1=abc")

        assert result is event
        construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test_123")

    def test_invalid_payload(self, stripe_client):
        with patch.object(stripe.Webhook, "construct_event", side_effect=ValueError("bad json")):
            with pytest.raises(WebhookVerificationError) as exc_info:
                stripe_client.construct_webhook_event(b"nope", "sig")

        assert exc_info.value.code is PaymentErrorCode.INVALID_PAYLOAD

    def test_invalid_signature(self, stripe_client):
        error = stripe.SignatureVerificationError("No signatures found", "sig")
        with patch.object(stripe.Webhook, "construct_event", side_effect=error):
            with pytest.raises(WebhookVerificationError) as exc_info:
                stripe_client.construct_webhook_event(b"{}", "sig")

        assert exc_info.value.code is PaymentErrorCode.INVALID_SIGNATURE
