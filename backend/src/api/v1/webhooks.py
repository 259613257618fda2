"""
Gateway webhook endpoints.

Providers retry anything that is not a 2xx, so settled, duplicate, ignored
and permanently failed events are all acknowledged with 200. Only a failed
signature or validation check answers 400, and a transient failure answers
503 so the provider redelivers.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.api.deps import get_webhook_service
from src.core.logging import get_logger
from src.schemas.payments import WebhookAck
from src.services.payments.errors import WebhookVerificationError
from src.services.payments.webhooks import RETRY, WebhookService

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _respond(ack: WebhookAck) -> JSONResponse:
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE if ack.status == RETRY else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=ack.model_dump(mode="json"))


def _reject(e: WebhookVerificationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": e.message, "code": e.code.value},
    )


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhook",
    description="Verify the Stripe signature and settle the event",
)
async def stripe_webhook(
    request: Request,
    service: Annotated[WebhookService, Depends(get_webhook_service)],
    stripe_signature: Annotated[str, Header(alias="stripe-signature")] = "",
) -> JSONResponse:
    """
    Handle a Stripe webhook.

    Raises:
        HTTPException: 400 for an invalid signature or payload
    """
    payload = await request.body()

    try:
        ack = await service.handle_stripe_webhook(payload, stripe_signature)
    except WebhookVerificationError as e:
        logger.warning("Stripe webhook rejected", error=e.message, error_code=e.code.value)
        raise _reject(e)

    logger.info(
        "Stripe webhook handled",
        event_id=ack.event_id,
        ack_status=ack.status,
    )
    return _respond(ack)


@router.post(
    "/sslcommerz/ipn",
    status_code=status.HTTP_200_OK,
    summary="Handle SSLCommerz IPN",
    description="Validate the IPN with SSLCommerz and settle the payment",
)
async def sslcommerz_ipn(
    request: Request,
    service: Annotated[WebhookService, Depends(get_webhook_service)],
) -> JSONResponse:
    """
    Handle an SSLCommerz instant payment notification.

    Raises:
        HTTPException: 400 if the IPN is incomplete or fails validation
    """
    form = await request.form()
    fields = {key: str(value) for key, value in form.items()}

    try:
        ack = await service.handle_sslcommerz_ipn(fields)
    except WebhookVerificationError as e:
        logger.warning("SSLCommerz IPN rejected", error=e.message, error_code=e.code.value)
        raise _reject(e)

    logger.info(
        "SSLCommerz IPN handled",
        event_id=ack.event_id,
        ack_status=ack.status,
    )
    return _respond(ack)
