"""Credit card payments through Stripe PaymentIntents (manual capture).

Without STRIPE_SECRET_KEY the gateway runs in mock mode with ``pi_mock_*`` ids.
"""

import asyncio
from decimal import ROUND_HALF_UP, Decimal

import stripe
import structlog
from fastapi import HTTPException

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

# Transport-level or server-side failures: the outcome is unknown and the call can
# be repeated with the same idempotency key.
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def to_cents(amount_usd: Decimal) -> int:
    return int((Decimal(amount_usd) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    name = "stripe"

    @property
    def is_mock(self) -> bool:
        return not settings.STRIPE_SECRET_KEY

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=settings.STRIPE_SECRET_KEY, **kwargs),
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayError("Stripe call timed out", gateway=self.name, operation=operation) from exc
        except _TRANSIENT_ERRORS as exc:
            raise GatewayError(f"Stripe unavailable: {exc}", gateway=self.name, operation=operation) from exc

    async def create_order(
        self, *, transaction_id: str, amount_usd: Decimal, reference: str, description: str
    ) -> GatewayOrder:
        amount_cents = to_cents(amount_usd)
        if self.is_mock:
            logger.info("stripe_mock_payment_intent", transaction_id=transaction_id, amount=amount_cents)
            return GatewayOrder(
                order_id=f"pi_mock_{transaction_id}",
                client_secret=f"pi_mock_{transaction_id}_secret",
                raw={"mock": True},
            )
        try:
            intent = await self._call(
                "create_order",
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency="usd",
                capture_method="manual",
                description=description,
                metadata={"transaction_id": transaction_id, "booking_code": reference},
                idempotency_key=transaction_id,
            )
        except stripe.StripeError as exc:
            logger.warning("stripe_payment_intent_declined", transaction_id=transaction_id, error=str(exc))
            return GatewayOrder(order_id=None, declined=True, raw={"error": str(exc)})
        logger.info("stripe_payment_intent_created", intent_id=intent.id, transaction_id=transaction_id)
        return GatewayOrder(order_id=intent.id, client_secret=intent.client_secret, raw={"status": intent.status})

    async def capture_order(self, order_id: str, *, idempotency_key: str) -> CaptureResult:
        if self.is_mock or order_id.startswith("pi_mock_"):
            logger.info("stripe_mock_capture", intent_id=order_id)
            return CaptureResult(status=CAPTURE_COMPLETED, capture_id=order_id, raw={"mock": True})

        intent = await self._call("retrieve_intent", stripe.PaymentIntent.retrieve, order_id)
        if intent.status == "requires_capture":
            try:
                intent = await self._call(
                    "capture_order", stripe.PaymentIntent.capture, order_id, idempotency_key=idempotency_key
                )
            except stripe.StripeError as exc:
                logger.warning("stripe_capture_declined", intent_id=order_id, error=str(exc))
                return CaptureResult(status=CAPTURE_FAILED, raw={"error": str(exc)})

        if intent.status == "succeeded":
            return CaptureResult(status=CAPTURE_COMPLETED, capture_id=intent.id, raw={"status": intent.status})
        if intent.status in ("canceled", "requires_payment_method"):
            return CaptureResult(status=CAPTURE_FAILED, raw={"status": intent.status})
        return CaptureResult(status=CAPTURE_PENDING, raw={"status": intent.status})

    async def refund(self, capture_id: str, amount_usd: Decimal, *, idempotency_key: str) -> RefundResult:
        amount_cents = to_cents(amount_usd)
        if self.is_mock or capture_id.startswith("pi_mock_"):
            logger.info("stripe_mock_refund", intent_id=capture_id, amount=amount_cents)
            return RefundResult(refund_id=f"re_mock_{idempotency_key}", status="succeeded", raw={"mock": True})
        try:
            refund = await self._call(
                "refund",
                stripe.Refund.create,
                payment_intent=capture_id,
                amount=amount_cents,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.warning("stripe_refund_declined", intent_id=capture_id, error=str(exc))
            raise GatewayDeclined("Stripe refused the refund.") from None
        logger.info("stripe_refund_created", refund_id=refund.id, intent_id=capture_id)
        return RefundResult(refund_id=refund.id, status=refund.status, raw={"status": refund.status})


def verify_webhook_signature(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify Stripe webhook signature and return the event."""
    # Reject webhooks when no secret is configured, even in dev mode
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("stripe_webhook_rejected_no_secret")
        raise HTTPException(status_code=501, detail="Webhook signature verification not configured")

    return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
