"""
SSLCommerz API client for the regional gateway.

SSLCommerz notifications are unsigned, so nothing in an IPN is trusted until
``validate_payment`` has confirmed it server to server. Amounts cross this
boundary as decimal strings in major units; everything returned to the rest
of the application is converted back to integer minor units.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID

import httpx

from src.core.config import get_settings
from src.core.logging import get_logger, log_performance
from src.database.models.payment import PaymentType
from src.services.payments.errors import GatewayNetworkError, GatewayRejectedError

logger = get_logger(__name__)

SESSION_PATH = "/gwprocess/v4/api.php"
VALIDATION_PATH = "/validator/api/validationserverAPI.php"
TRANSACTION_QUERY_PATH = "/validator/api/merchantTransIDvalidationAPI.php"

VALID_STATUSES = frozenset({"VALID", "VALIDATED"})
REFUND_ACCEPTED_STATUSES = frozenset({"success", "processing"})


def to_major_units(amount: int) -> str:
    """Format minor units as a two decimal string, e.g. 150050 -> '1500.50'."""
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


def to_minor_units(value: Any) -> int:
    """
    Parse a gateway amount string into minor units.

    Raises:
        ValueError: If the value is not a decimal number
    """
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class SSLCommerzSession:
    gateway_url: str
    session_key: str


@dataclass
class SSLCommerzValidation:
    """Result of a server-to-server validation call."""

    status: str
    tran_id: str
    val_id: Optional[str]
    amount: int
    currency: str
    bank_tran_id: Optional[str]
    value_a: Optional[str] = None
    value_b: Optional[str] = None
    card_type: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.status.upper() in VALID_STATUSES

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SSLCommerzValidation":
        return cls(
            status=str(data.get("status", "")),
            tran_id=str(data.get("tran_id", "")),
            val_id=data.get("val_id"),
            amount=to_minor_units(data.get("amount") or 0),
            currency=str(data.get("currency") or data.get("currency_type") or ""),
            bank_tran_id=data.get("bank_tran_id") or None,
            value_a=data.get("value_a") or None,
            value_b=data.get("value_b") or None,
            card_type=data.get("card_type") or None,
            raw=data,
        )


class SSLCommerzClient:
    """
    Async SSLCommerz client.

    Usable as an async context manager; the underlying ``httpx.AsyncClient``
    is created lazily and closed on exit.
    """

    def __init__(
        self,
        store_id: str,
        store_password: str,
        sandbox: bool = True,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            store_id: Merchant store id
            store_password: Merchant store password
            sandbox: Use the sandbox environment
            timeout: Per request timeout in seconds (defaults to settings)
            transport: Custom httpx transport
        """
        settings = get_settings()
        self.store_id = store_id
        self.store_password = store_password
        self.sandbox = sandbox
        self.base_url = (
            settings.sslcommerz_sandbox_url if sandbox else settings.sslcommerz_production_url
        ).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SSLCommerzClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _credentials(self) -> dict[str, str]:
        return {"store_id": self.store_id, "store_passwd": self.store_password}

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Send a request and decode the JSON body.

        Raises:
            GatewayNetworkError: Timeout, transport failure, 5xx or an
                unreadable body. The outcome of the call is unknown.
            GatewayRejectedError: 4xx response
        """
        try:
            with log_performance(logger, f"sslcommerz.{operation}", sandbox=self.sandbox):
                response = await self._get_client().request(
                    method, path, params=params, data=data
                )
        except httpx.TimeoutException as e:
            raise GatewayNetworkError(
                f"Regional gateway timed out during {operation}",
                gateway="regional",
                operation=operation,
            ) from e
        except httpx.TransportError as e:
            raise GatewayNetworkError(
                f"Regional gateway unreachable during {operation}: {e}",
                gateway="regional",
                operation=operation,
            ) from e

        if response.status_code >= 500:
            raise GatewayNetworkError(
                f"Regional gateway returned {response.status_code} during {operation}",
                gateway="regional",
                operation=operation,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise GatewayRejectedError(
                f"Regional gateway rejected {operation} with status {response.status_code}",
                gateway="regional",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayNetworkError(
                f"Regional gateway returned an unreadable response during {operation}",
                gateway="regional",
                operation=operation,
            ) from e

        if not isinstance(body, dict):
            raise GatewayNetworkError(
                f"Unexpected regional gateway response during {operation}",
                gateway="regional",
                operation=operation,
            )
        return body

    @staticmethod
    def _parse_validation(operation: str, data: dict[str, Any]) -> SSLCommerzValidation:
        try:
            return SSLCommerzValidation.from_response(data)
        except ValueError as e:
            raise GatewayRejectedError(
                f"Regional gateway returned a malformed {operation} response: {e}",
                gateway="regional",
                operation=operation,
            ) from e

    async def init_session(
        self,
        order_id: UUID,
        tran_id: str,
        amount: int,
        currency: str,
        payment_type: PaymentType,
        customer: dict[str, str],
        callback_base_url: Optional[str] = None,
    ) -> SSLCommerzSession:
        """
        Open a hosted checkout session.

        ``value_a`` carries the payment type and ``value_b`` the order id so
        the IPN can be routed without a lookup.

        The success, fail and cancel URLs are where the customer's browser
        lands after checkout. They are storefront pages served by the host
        application under ``sslcommerz_return_path``, not routes of this
        service; only the IPN URL points here.

        Args:
            order_id: Order being paid
            tran_id: Merchant transaction id, unique per attempt
            amount: Amount in minor units
            currency: ISO currency code
            payment_type: full, deposit or balance
            customer: name, email, phone, address, city, country
            callback_base_url: Public base URL for callbacks

        Raises:
            GatewayRejectedError: Gateway refused to open the session
        """
        settings = get_settings()
        base = (callback_base_url or settings.public_base_url).rstrip("/")
        return_url = f"{base}{settings.sslcommerz_return_path}"

        data = {
            **self._credentials(),
            "total_amount": to_major_units(amount),
            "currency": currency,
            "tran_id": tran_id,
            "success_url": f"{return_url}/success",
            "fail_url": f"{return_url}/fail",
            "cancel_url": f"{return_url}/cancel",
            "ipn_url": f"{base}{settings.api_v1_prefix}/webhooks/sslcommerz/ipn",
            "cus_name": customer.get("name", ""),
            "cus_email": customer.get("email", ""),
            "cus_phone": customer.get("phone", ""),
            "cus_add1": customer.get("address", ""),
            "cus_city": customer.get("city", ""),
            "cus_country": customer.get("country", "Bangladesh"),
            "shipping_method": "NO",
            "product_name": f"Order {order_id}",
            "product_category": "general",
            "product_profile": "general",
            "value_a": payment_type.value,
            "value_b": str(order_id),
        }

        body = await self._request("init_session", "POST", SESSION_PATH, data=data)

        if body.get("status") != "SUCCESS" or not body.get("GatewayPageURL"):
            reason = body.get("failedreason") or "Session initiation failed"
            logger.warning(
                "SSLCommerz session rejected",
                order_id=str(order_id),
                tran_id=tran_id,
                reason=reason,
            )
            raise GatewayRejectedError(reason, gateway="regional", tran_id=tran_id)

        logger.info("SSLCommerz session opened", order_id=str(order_id), tran_id=tran_id)
        return SSLCommerzSession(
            gateway_url=body["GatewayPageURL"],
            session_key=body.get("sessionkey", ""),
        )

    async def validate_payment(self, val_id: str) -> SSLCommerzValidation:
        """Confirm an IPN by its validation id."""
        body = await self._request(
            "validate_payment",
            "GET",
            VALIDATION_PATH,
            params={**self._credentials(), "val_id": val_id, "format": "json"},
        )
        validation = self._parse_validation("validate_payment", body)

        logger.info(
            "SSLCommerz payment validated",
            val_id=val_id,
            tran_id=validation.tran_id,
            status=validation.status,
        )
        return validation

    async def validate_transaction(self, tran_id: str) -> Optional[SSLCommerzValidation]:
        """Latest gateway record for a merchant transaction id, if any."""
        body = await self._request(
            "validate_transaction",
            "GET",
            TRANSACTION_QUERY_PATH,
            params={**self._credentials(), "tran_id": tran_id, "format": "json"},
        )
        elements = body.get("element") or []
        if not elements:
            return None
        return self._parse_validation("validate_transaction", elements[0])

    async def initiate_refund(
        self,
        bank_tran_id: str,
        amount: int,
        remarks: str,
        refund_trans_id: str,
    ) -> str:
        """
        Request a refund of a settled transaction.

        Args:
            bank_tran_id: Bank transaction id recorded at settlement
            amount: Minor units to refund
            remarks: Reason shown to the merchant
            refund_trans_id: Our correlation id for this refund

        Returns:
            Gateway refund reference, or ``refund_trans_id`` if the gateway
            accepted the refund without returning one

        Raises:
            GatewayRejectedError: Refund declined
        """
        body = await self._request(
            "initiate_refund",
            "GET",
            TRANSACTION_QUERY_PATH,
            params={
                **self._credentials(),
                "bank_tran_id": bank_tran_id,
                "refund_amount": to_major_units(amount),
                "refund_remarks": remarks,
                "refund_trans_id": refund_trans_id,
                "v": 1,
                "format": "json",
            },
        )

        if body.get("APIConnect") != "DONE":
            raise GatewayRejectedError(
                f"Refund API connection failed: {body.get('APIConnect') or 'unknown'}",
                gateway="regional",
                bank_tran_id=bank_tran_id,
            )

        status = str(body.get("status", "")).lower()
        if status not in REFUND_ACCEPTED_STATUSES:
            raise GatewayRejectedError(
                body.get("errorReason") or f"Refund failed with status {status or 'unknown'}",
                gateway="regional",
                bank_tran_id=bank_tran_id,
            )

        refund_ref_id = body.get("refund_ref_id") or refund_trans_id
        logger.info(
            "SSLCommerz refund accepted",
            bank_tran_id=bank_tran_id,
            refund_ref_id=refund_ref_id,
            status=status,
            amount=amount,
        )
        return refund_ref_id

    async def query_refund_status(self, refund_ref_id: str) -> dict[str, Any]:
        """Current state of a refund, as reported by the gateway."""
        body = await self._request(
            "query_refund_status",
            "GET",
            TRANSACTION_QUERY_PATH,
            params={
                **self._credentials(),
                "refund_ref_id": refund_ref_id,
                "format": "json",
            },
        )
        return {
            "refund_ref_id": refund_ref_id,
            "status": body.get("status"),
            "initiated_on": body.get("initiated_on"),
            "refunded_on": body.get("refunded_on"),
            "error_reason": body.get("errorReason"),
        }
