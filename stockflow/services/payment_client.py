"""
Payment collaborator client

Thin httpx client for the payment service. It classifies responses but does
not retry: retries, timeouts and circuit breaking belong to the ServiceGuard
that wraps every call.

- 2xx with a recognised body status -> ChargeResult / RefundResult
- 4xx (declined, conflict, unprocessable) -> result with status "failed"
- 5xx, transport errors, timeouts, malformed bodies -> PaymentGatewayError

The payment service is idempotent per order id; every request carries the
order id as its Idempotency-Key so a retried charge cannot double-bill.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from stockflow.core.config import settings
from stockflow.core.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass
class ChargeResult:
    status: str
    transaction_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


@dataclass
class RefundResult:
    status: str
    refund_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class PaymentClient:
    """
    Usage:
        async with PaymentClient() as payments:
            result = await payments.charge("order-1", Decimal("25.00"), "credit_card")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PAYMENT_SERVICE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYMENT_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def charge(self, order_id: str, amount: Decimal, method: str) -> ChargeResult:
        response = await self._post(
            "/payments",
            {"orderId": order_id, "amount": str(amount), "method": method},
            order_id,
        )
        if response.status_code >= 400:
            error = self._error_message(response)
            logger.info(f"[PaymentClient] Charge declined for order {order_id}: {response.status_code} {error}")
            return ChargeResult(status=FAILED, error=error)

        data = self._json(response)
        status = data.get("status")
        if status not in (SUCCEEDED, FAILED):
            raise PaymentGatewayError(
                f"Unrecognised charge status {status!r} for order {order_id}",
                status_code=response.status_code,
            )
        return ChargeResult(
            status=status,
            transaction_id=data.get("transactionId"),
            error=data.get("error"),
        )

    async def refund(self, order_id: str, transaction_id: Optional[str], amount: Decimal) -> RefundResult:
        response = await self._post(
            "/payments/refund",
            {"orderId": order_id, "transactionId": transaction_id, "amount": str(amount)},
            f"refund-{order_id}",
        )
        if response.status_code >= 400:
            error = self._error_message(response)
            logger.warning(f"[PaymentClient] Refund rejected for order {order_id}: {response.status_code} {error}")
            return RefundResult(status=FAILED, error=error)

        data = self._json(response)
        status = data.get("status")
        if status not in (SUCCEEDED, FAILED):
            raise PaymentGatewayError(
                f"Unrecognised refund status {status!r} for order {order_id}",
                status_code=response.status_code,
            )
        return RefundResult(status=status, refund_id=data.get("refundId"), error=data.get("error"))

    async def _post(self, path: str, body: Dict[str, Any], idempotency_key: str) -> httpx.Response:
        await self.init()
        try:
            response = await self._client.post(path, json=body, headers={"Idempotency-Key": idempotency_key})
        except httpx.TimeoutException as e:
            raise PaymentGatewayError(f"Payment service timed out on {path}") from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Payment service unreachable on {path}: {type(e).__name__}") from e

        if response.status_code >= 500:
            raise PaymentGatewayError(
                f"Payment service error {response.status_code} on {path}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise PaymentGatewayError("Malformed payment service response", status_code=response.status_code) from e
        if not isinstance(data, dict):
            raise PaymentGatewayError("Malformed payment service response", status_code=response.status_code)
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("error") or data.get("message") or f"HTTP {response.status_code}")
        return f"HTTP {response.status_code}"
