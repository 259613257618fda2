"""
Stripe API client wrapper for the card gateway.

Wraps the Stripe SDK with structured logging, bounded network timeouts and
exponential backoff for read operations. Calls that move money (capture,
cancel, refund) are sent exactly once: a connection failure or timeout on
them is reported as a retryable ``GatewayNetworkError`` because the remote
side may have completed the operation.
"""

import time
from typing import Any, Callable, Optional
from uuid import UUID

import stripe

from src.core.config import get_settings
from src.core.logging import get_logger, log_performance
from src.database.models.payment import PaymentType
from src.services.payments.errors import (
    GatewayNetworkError,
    GatewayNotConfiguredError,
    GatewayRejectedError,
    PaymentErrorCode,
    WebhookVerificationError,
)

logger = get_logger(__name__)


class StripeClient:
    """
    Stripe API client with error handling and retry logic.

    Credentials are passed per request, so several clients with different
    keys can coexist in one process.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        timeout: Optional[float] = None,
        max_retries: int = 2,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        backoff_multiplier: float = 2.0,
    ):
        """
        Initialize Stripe client.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout: Per request timeout in seconds (defaults to settings)
            max_retries: Retry attempts for read operations
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Backoff multiplier for exponential backoff
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout or get_settings().gateway_timeout_seconds
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier

        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def _calculate_backoff(self, attempt: int) -> float:
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _execute(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        retryable: bool = False,
        **kwargs: Any,
    ) -> Any:
        """
        Execute a Stripe API call.

        Args:
            operation: Operation name for logging
            func: Stripe API function to execute
            retryable: Retry transient failures with backoff. Only set for
                calls that are safe to repeat.

        Raises:
            GatewayRejectedError: Stripe declined the request
            GatewayNotConfiguredError: Credentials were rejected
            GatewayNetworkError: Transport failure, timeout or Stripe outage
        """
        attempts = self.max_retries + 1 if retryable else 1

        for attempt in range(attempts):
            try:
                with log_performance(logger, f"stripe.{operation}", attempt=attempt):
                    return func(*args, api_key=self.api_key, **kwargs)

            except stripe.AuthenticationError as e:
                logger.error(
                    f"Stripe authentication error: {operation}",
                    error=str(e),
                )
                raise GatewayNotConfiguredError(
                    "Card gateway rejected the configured credentials",
                    gateway="card",
                ) from e

            except (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.IdempotencyError,
            ) as e:
                logger.warning(
                    f"Stripe rejected request: {operation}",
                    error=str(e),
                    code=e.code,
                )
                raise GatewayRejectedError(
                    e.user_message or str(e),
                    gateway="card",
                    stripe_code=e.code,
                ) from e

            except (
                stripe.RateLimitError,
                stripe.APIConnectionError,
                stripe.APIError,
            ) as e:
                if attempt + 1 < attempts:
                    backoff = self._calculate_backoff(attempt)
                    logger.warning(
                        f"Transient Stripe error, retrying: {operation}",
                        attempt=attempt,
                        backoff_seconds=backoff,
                        error_type=type(e).__name__,
                    )
                    time.sleep(backoff)
                    continue

                logger.error(
                    f"Stripe call outcome unknown: {operation}",
                    error=str(e),
                    error_type=type(e).__name__,
                    attempts=attempt + 1,
                )
                raise GatewayNetworkError(
                    f"Card gateway unavailable during {operation}: {e}",
                    gateway="card",
                    operation=operation,
                ) from e

            except stripe.StripeError as e:
                logger.error(
                    f"Unexpected Stripe error: {operation}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise GatewayRejectedError(
                    e.user_message or str(e),
                    gateway="card",
                    stripe_code=getattr(e, "code", None),
                ) from e

        raise GatewayNetworkError(f"Card gateway call not attempted: {operation}")

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        order_id: UUID,
        payment_type: PaymentType = PaymentType.FULL,
        manual_capture: bool = False,
        customer_email: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a payment intent tagged with the order and payment type.

        The webhook handler reads ``order_id`` and ``payment_type`` back out
        of the intent metadata when the payment succeeds.

        Args:
            amount: Amount in minor units
            currency: Three-letter ISO currency code
            order_id: Order the payment is for
            payment_type: full, deposit or balance
            manual_capture: Authorize only; capture later
            customer_email: Receipt email
            idempotency_key: Makes the call safe to retry
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "capture_method": "manual" if manual_capture else "automatic",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {
                "order_id": str(order_id),
                "payment_type": payment_type.value,
            },
        }
        if customer_email:
            params["receipt_email"] = customer_email
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = self._execute(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            retryable=idempotency_key is not None,
            **params,
        )

        logger.info(
            "Payment intent created",
            payment_intent_id=intent.id,
            order_id=str(order_id),
            amount=amount,
            payment_type=payment_type.value,
        )
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        return self._execute(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
            retryable=True,
        )

    def capture_payment_intent(
        self,
        payment_intent_id: str,
        amount_to_capture: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """Capture an authorized intent, fully or up to ``amount_to_capture``."""
        params: dict[str, Any] = {}
        if amount_to_capture is not None:
            params["amount_to_capture"] = amount_to_capture
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = self._execute(
            "capture_payment_intent",
            stripe.PaymentIntent.capture,
            payment_intent_id,
            **params,
        )

        logger.info(
            "Payment intent captured",
            payment_intent_id=payment_intent_id,
            amount_to_capture=amount_to_capture,
            status=intent.status,
        )
        return intent

    def cancel_payment_intent(
        self,
        payment_intent_id: str,
        cancellation_reason: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        params: dict[str, Any] = {}
        if cancellation_reason:
            params["cancellation_reason"] = cancellation_reason

        intent = self._execute(
            "cancel_payment_intent",
            stripe.PaymentIntent.cancel,
            payment_intent_id,
            **params,
        )

        logger.info(
            "Payment intent cancelled",
            payment_intent_id=payment_intent_id,
            reason=cancellation_reason,
        )
        return intent

    @staticmethod
    def normalize_refund_reason(reason: Optional[str]) -> str:
        """Map free text to one of Stripe's refund reason codes."""
        normalized = (reason or "").strip().lower()
        if "duplicate" in normalized:
            return "duplicate"
        if "fraud" in normalized:
            return "fraudulent"
        return "requested_by_customer"

    def create_refund(
        self,
        charge_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Refund a charge.

        Args:
            charge_id: Charge to refund
            amount: Minor units to refund; None refunds the full charge
            reason: Free text reason, normalized to a Stripe code
            metadata: Stored on the refund object
            idempotency_key: Forwarded to Stripe
        """
        params: dict[str, Any] = {
            "charge": charge_id,
            "reason": self.normalize_refund_reason(reason),
        }
        if amount is not None:
            params["amount"] = amount
        if metadata:
            params["metadata"] = metadata
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        refund = self._execute("create_refund", stripe.Refund.create, **params)

        logger.info(
            "Stripe refund created",
            refund_id=refund.id,
            charge_id=charge_id,
            amount=amount,
            status=refund.status,
        )
        return refund

    def construct_webhook_event(self, payload: bytes, signature: str) -> stripe.Event:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookVerificationError: Payload is malformed or the signature
                does not match the webhook secret
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
            )

        except ValueError as e:
            logger.warning("Invalid Stripe webhook payload", error=str(e))
            raise WebhookVerificationError(
                "Invalid webhook payload",
                code=PaymentErrorCode.INVALID_PAYLOAD,
            ) from e

        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe webhook signature verification failed", error=str(e))
            raise WebhookVerificationError(
                "Invalid webhook signature",
                code=PaymentErrorCode.INVALID_SIGNATURE,
            ) from e

        logger.info(
            "Stripe webhook verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event
