"""PayPal Orders v2 client.

Without PAYPAL_CLIENT_ID the gateway runs in mock mode: orders get
``PAYPAL-MOCK-*`` ids and captures always succeed.
"""

import time as _time
from decimal import Decimal

import httpx
import structlog

from app.config import settings
from app.exceptions import GatewayDeclined, GatewayError
from app.services.gateway import (
    CAPTURE_COMPLETED,
    CAPTURE_FAILED,
    CAPTURE_PENDING,
    CaptureResult,
    GatewayOrder,
    RefundResult,
)

logger = structlog.get_logger()

_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


def _capture_status(order: dict) -> tuple[str, dict]:
    captures = []
    for unit in order.get("purchase_units", []):
        captures.extend(unit.get("payments", {}).get("captures", []))
    capture = captures[0] if captures else {}
    capture_state = capture.get("status")
    if order.get("status") == "COMPLETED" and capture_state in (None, "COMPLETED"):
        return CAPTURE_COMPLETED, capture
    if capture_state in ("DECLINED", "FAILED") or order.get("status") == "VOIDED":
        return CAPTURE_FAILED, capture
    return CAPTURE_PENDING, capture


class PayPalGateway:
    name = "paypal"

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def is_mock(self) -> bool:
        return not settings.PAYPAL_CLIENT_ID

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=settings.paypal_base_url,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            )
        return self._client

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http().request(method, path, **kwargs)
        except httpx.TransportError as exc:
            # Timeouts and connection failures: outcome unknown, safe to retry with the same request id
            raise GatewayError(f"PayPal unreachable: {exc}", gateway=self.name, operation=operation) from exc
        if response.status_code in _RETRYABLE_STATUS:
            raise GatewayError(
                f"PayPal returned HTTP {response.status_code}", gateway=self.name, operation=operation
            )
        return response

    async def _access_token(self) -> str:
        if self._token and _time.monotonic() < self._token_expires_at:
            return self._token
        response = await self._request(
            "POST",
            "/v1/oauth2/token",
            "oauth_token",
            auth=(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET),
            data={"grant_type": "client_credentials"},
        )
        if not response.is_success:
            raise GatewayError("PayPal authentication failed", gateway=self.name, operation="oauth_token")
        payload = response.json()
        self._token = payload["access_token"]
        # Refresh a minute early
        self._token_expires_at = _time.monotonic() + int(payload.get("expires_in", 300)) - 60
        return self._token

    async def _headers(self, request_id: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {await self._access_token()}",
            "PayPal-Request-Id": request_id,
            "Prefer": "return=representation",
        }

    async def create_order(
        self, *, transaction_id: str, amount_usd: Decimal, reference: str, description: str
    ) -> GatewayOrder:
        return_url = f"{settings.PUBLIC_API_URL}/payment/paypal/success"
        cancel_url = f"{settings.PUBLIC_API_URL}/payment/paypal/cancel"
        if self.is_mock:
            order_id = f"PAYPAL-MOCK-{transaction_id}"
            logger.info("paypal_mock_order", transaction_id=transaction_id, amount_usd=str(amount_usd))
            return GatewayOrder(
                order_id=order_id,
                approval_url=f"{return_url}?token={order_id}&PayerID=MOCKPAYER",
                raw={"id": order_id, "status": "CREATED", "mock": True},
            )

        response = await self._request(
            "POST",
            "/v2/checkout/orders",
            "create_order",
            headers=await self._headers(transaction_id),
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": reference,
                        "custom_id": transaction_id,
                        "description": description[:127],
                        "amount": {"currency_code": "USD", "value": f"{amount_usd:.2f}"},
                    }
                ],
                "application_context": {
                    "return_url": return_url,
                    "cancel_url": cancel_url,
                    "user_action": "PAY_NOW",
                },
            },
        )
        payload = response.json()
        if not response.is_success:
            logger.warning("paypal_order_declined", transaction_id=transaction_id, status_code=response.status_code)
            return GatewayOrder(order_id=None, declined=True, raw=payload)

        approval_url = next(
            (link["href"] for link in payload.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info("paypal_order_created", transaction_id=transaction_id, order_id=payload.get("id"))
        return GatewayOrder(order_id=payload["id"], approval_url=approval_url, raw=payload)

    async def _get_order(self, order_id: str) -> dict:
        response = await self._request(
            "GET",
            f"/v2/checkout/orders/{order_id}",
            "get_order",
            headers={"Authorization": f"Bearer {await self._access_token()}"},
        )
        if not response.is_success:
            raise GatewayError("PayPal order lookup failed", gateway=self.name, operation="get_order")
        return response.json()

    async def capture_order(self, order_id: str, *, idempotency_key: str) -> CaptureResult:
        if self.is_mock:
            logger.info("paypal_mock_capture", order_id=order_id)
            return CaptureResult(
                status=CAPTURE_COMPLETED,
                capture_id=f"CAPTURE-MOCK-{order_id}",
                payer_id="MOCKPAYER",
                payer_email="buyer@example.com",
                raw={"id": order_id, "status": "COMPLETED", "mock": True},
            )

        response = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            "capture_order",
            headers=await self._headers(idempotency_key),
            json={},
        )
        payload = response.json()
        if response.status_code == 422:
            issues = {d.get("issue") for d in payload.get("details", [])}
            if "ORDER_ALREADY_CAPTURED" in issues:
                payload = await self._get_order(order_id)
            else:
                logger.warning("paypal_capture_declined", order_id=order_id, issues=sorted(i for i in issues if i))
                return CaptureResult(status=CAPTURE_FAILED, raw=payload)
        elif not response.is_success:
            return CaptureResult(status=CAPTURE_FAILED, raw=payload)

        status, capture = _capture_status(payload)
        payer = payload.get("payer", {})
        return CaptureResult(
            status=status,
            capture_id=capture.get("id"),
            payer_id=payer.get("payer_id"),
            payer_email=payer.get("email_address"),
            raw=payload,
        )

    async def refund(self, capture_id: str, amount_usd: Decimal, *, idempotency_key: str) -> RefundResult:
        if self.is_mock:
            logger.info("paypal_mock_refund", capture_id=capture_id, amount_usd=str(amount_usd))
            return RefundResult(refund_id=f"REFUND-MOCK-{idempotency_key}", status="COMPLETED", raw={"mock": True})

        response = await self._request(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            "refund",
            headers=await self._headers(idempotency_key),
            json={"amount": {"currency_code": "USD", "value": f"{amount_usd:.2f}"}},
        )
        payload = response.json()
        if not response.is_success:
            logger.warning("paypal_refund_declined", capture_id=capture_id, status_code=response.status_code)
            raise GatewayDeclined("PayPal refused the refund.")
        return RefundResult(refund_id=payload["id"], status=payload.get("status", ""), raw=payload)
