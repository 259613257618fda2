"""
Error taxonomy for settlement, refund and gateway operations.

Gateway clients and repositories raise these; the settlement service and
refund orchestrator catch them at their boundary and turn them into
structured results, so webhook handlers never see an unhandled exception.
"""

from enum import Enum
from typing import Any, Optional


class PaymentErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_SETTLED = "already_settled"
    INVALID_STATE = "invalid_state"
    MISSING_GATEWAY_IDENTIFIER = "missing_gateway_identifier"
    GATEWAY_NOT_CONFIGURED = "gateway_not_configured"
    GATEWAY_REJECTED = "gateway_rejected"
    UNSUPPORTED_GATEWAY = "unsupported_gateway"
    NETWORK_ERROR = "network_error"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_SIGNATURE = "invalid_signature"
    STORAGE_ERROR = "storage_error"


class PaymentError(Exception):
    """Base exception for payment errors."""

    code: PaymentErrorCode = PaymentErrorCode.INVALID_STATE
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[PaymentErrorCode] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context


class OrderNotFoundError(PaymentError):
    code = PaymentErrorCode.NOT_FOUND


class PaymentNotFoundError(PaymentError):
    code = PaymentErrorCode.NOT_FOUND


class InvalidStateError(PaymentError):
    """Operation attempted from a state that forbids it."""

    code = PaymentErrorCode.INVALID_STATE


class MissingGatewayIdentifierError(PaymentError):
    """Payment record lacks the identifier its gateway needs for a refund."""

    code = PaymentErrorCode.MISSING_GATEWAY_IDENTIFIER


class GatewayNotConfiguredError(PaymentError):
    code = PaymentErrorCode.GATEWAY_NOT_CONFIGURED


class UnsupportedGatewayError(PaymentError):
    code = PaymentErrorCode.UNSUPPORTED_GATEWAY


class GatewayRejectedError(PaymentError):
    """Remote API declined the request; message is the gateway's own."""

    code = PaymentErrorCode.GATEWAY_REJECTED


class GatewayNetworkError(PaymentError):
    """
    Transport failure or timeout talking to a gateway.

    The remote operation may or may not have happened, so callers must
    treat the outcome as unknown and retry with the same parameters.
    """

    code = PaymentErrorCode.NETWORK_ERROR
    retryable = True


class WebhookVerificationError(PaymentError):
    """Inbound notification failed signature or server-side validation."""

    code = PaymentErrorCode.INVALID_SIGNATURE


class PaymentStorageError(PaymentError):
    """Database failure; safe to retry the whole operation."""

    code = PaymentErrorCode.STORAGE_ERROR
    retryable = True


class DuplicatePaymentError(PaymentError):
    """A succeeded ledger row already carries one of the gateway identifiers."""

    code = PaymentErrorCode.ALREADY_SETTLED
