"""
YooKassa client on httpx.AsyncClient.

Stateless: create_payment / get_payment. Hard client-side timeout (settings.yookassa_timeout_seconds);
timeout is a failure, never "maybe succeeded" — creation is covered by the Idempotence-Key.
"""
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
from pydantic import BaseModel, Field

from channel_gate.core.config import settings
from channel_gate.utils.metrics import gateway_requests_total, gateway_request_duration_seconds


logger = logging.getLogger(__name__)

SETTLED_STATUS = "succeeded"
OPEN_STATUSES = frozenset({"pending", "waiting_for_capture"})


class PaymentGatewayError(Exception):
    """Any failed call to the payment gateway."""

    def __init__(self, message: str, *, http_status: int | None = None, detail: dict | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.detail = detail or {}


class PaymentGatewayTimeout(PaymentGatewayError):
    pass


class PaymentNotFound(PaymentGatewayError):
    pass


class CreatedPayment(BaseModel):
    gateway_payment_id: str
    checkout_url: str
    status: str

    model_config = {"frozen": True}


class GatewayPayment(BaseModel):
    """Authoritative view of a payment as reported by the gateway."""

    id: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    created_at: datetime | None = None
    settled_at: datetime | None = None
    payer_email: str | None = None
    confirmation_url: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def is_settled(self) -> bool:
        return self.status == SETTLED_STATUS

    @property
    def is_open(self) -> bool:
        """The payer can still complete this payment."""
        return self.status in OPEN_STATUSES

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GatewayPayment":
        amount = data.get("amount") or {}
        receipt = data.get("receipt") or {}
        customer = receipt.get("customer") or {}
        metadata = data.get("metadata") or {}
        confirmation = data.get("confirmation") or {}
        return cls(
            id=data["id"],
            status=data.get("status", "unknown"),
            amount=amount.get("value"),
            currency=amount.get("currency"),
            created_at=data.get("created_at"),
            settled_at=data.get("captured_at"),
            payer_email=customer.get("email"),
            confirmation_url=confirmation.get("confirmation_url"),
            metadata={str(k): str(v) for k, v in metadata.items() if v is not None},
        )


class YooKassaClient:
    """
    Async YooKassa v3 client (HTTP Basic auth: shop_id / secret_key).
    Pass http_client to reuse a pool or to plug a mock transport.
    """

    def __init__(
        self,
        shop_id: str | None = None,
        secret_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._shop_id = shop_id or settings.yookassa_shop_id
        self._secret_key = secret_key or settings.yookassa_secret_key
        self._base_url = (base_url or settings.yookassa_api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.yookassa_timeout_seconds
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _record_request(self, method: str, status: str, duration: float) -> None:
        gateway_requests_total.labels(method=method, status=status).inc()
        gateway_request_duration_seconds.labels(method=method).observe(duration)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        headers: dict | None = None,
        op: str,
    ) -> dict:
        url = f"{self._base_url}{path}"
        start = time.monotonic()
        try:
            resp = await self.client.request(
                method,
                url,
                json=json,
                headers=headers,
                auth=(self._shop_id, self._secret_key),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            self._record_request(op, "timeout", time.monotonic() - start)
            logger.warning("gateway_timeout", extra={"method": op, "error": str(e)})
            raise PaymentGatewayTimeout(f"{op}: timeout after {self._timeout}s") from e
        except httpx.HTTPError as e:
            self._record_request(op, "error", time.monotonic() - start)
            logger.warning("gateway_transport_error", extra={"method": op, "error": str(e)})
            raise PaymentGatewayError(f"{op}: {e}") from e

        if resp.status_code >= 400:
            self._record_request(op, str(resp.status_code), time.monotonic() - start)
            try:
                detail = resp.json()
            except ValueError:
                detail = {"body": resp.text[:500]}
            logger.warning(
                "gateway_http_error",
                extra={"method": op, "status_code": resp.status_code, "error": detail.get("description")},
            )
            exc_cls = PaymentNotFound if resp.status_code == 404 else PaymentGatewayError
            raise exc_cls(
                f"{op}: HTTP {resp.status_code}",
                http_status=resp.status_code,
                detail=detail,
            )

        self._record_request(op, "success", time.monotonic() - start)
        return resp.json()

    async def create_payment(
        self,
        amount: int | Decimal,
        description: str,
        idempotency_key: str,
        return_url: str,
        payer_email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CreatedPayment:
        """
        Create a redirect-confirmation payment with immediate capture.
        The same idempotency_key always yields the same gateway payment.
        """
        value = f"{Decimal(amount):.2f}"
        body: dict[str, Any] = {
            "amount": {"value": value, "currency": settings.yookassa_currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": return_url},
            "description": description,
            "metadata": metadata or {},
        }
        if payer_email:
            body["receipt"] = {
                "customer": {"email": payer_email},
                "items": [
                    {
                        "description": description,
                        "quantity": "1",
                        "amount": {"value": value, "currency": settings.yookassa_currency},
                        "vat_code": 1,
                        "payment_subject": "service",
                        "payment_mode": "full_payment",
                    }
                ],
            }
        data = await self._request(
            "POST",
            "/payments",
            json=body,
            headers={"Idempotence-Key": idempotency_key},
            op="create_payment",
        )
        confirmation = data.get("confirmation") or {}
        logger.info(
            "gateway_payment_created",
            extra={"payment_id": data.get("id"), "correlation_id": idempotency_key},
        )
        return CreatedPayment(
            gateway_payment_id=data["id"],
            checkout_url=confirmation.get("confirmation_url", ""),
            status=data.get("status", "pending"),
        )

    async def get_payment(self, gateway_payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/payments/{gateway_payment_id}", op="get_payment")
        return GatewayPayment.from_api(data)

    async def close(self) -> None:
        """Close httpx client."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning("Failed to close client", extra={"error": str(e)})
            finally:
                self._client = None
