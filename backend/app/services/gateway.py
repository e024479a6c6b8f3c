"""Payment gateway interface and the retry policy around every gateway call."""

import asyncio
import time as _time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol, TypeVar

import structlog

from app.config import settings
from app.exceptions import GatewayError, PaymentPending, ValidationError
from app.metrics import GATEWAY_CALL_DURATION, PAYMENTS_PENDING_RECONCILIATION
from app.models.enums import PaymentMethod

logger = structlog.get_logger()

T = TypeVar("T")

CAPTURE_COMPLETED = "completed"
CAPTURE_FAILED = "failed"
CAPTURE_PENDING = "pending"


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str | None
    approval_url: str | None = None
    client_secret: str | None = None
    declined: bool = False
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CaptureResult:
    status: str
    capture_id: str | None = None
    payer_id: str | None = None
    payer_email: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    raw: dict = field(default_factory=dict)


class PaymentGateway(Protocol):
    name: str

    async def create_order(
        self, *, transaction_id: str, amount_usd: Decimal, reference: str, description: str
    ) -> GatewayOrder: ...

    async def capture_order(self, order_id: str, *, idempotency_key: str) -> CaptureResult: ...

    async def refund(self, capture_id: str, amount_usd: Decimal, *, idempotency_key: str) -> RefundResult: ...


async def call_with_retry(
    operation: str,
    gateway_name: str,
    call: Callable[[], Awaitable[T]],
    *,
    transaction_id: str,
) -> T:
    """Run a gateway call, retrying transient failures with exponential backoff.

    The same idempotency key travels with every attempt (it is baked into
    ``call``). When attempts run out the payment is left for reconciliation.
    """
    attempts = max(1, settings.GATEWAY_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        start = _time.monotonic()
        try:
            return await call()
        except GatewayError as exc:
            logger.warning(
                "gateway_call_failed",
                gateway=gateway_name,
                operation=operation,
                transaction_id=transaction_id,
                attempt=attempt,
                error=exc.message,
            )
            if attempt < attempts:
                await asyncio.sleep(settings.GATEWAY_RETRY_BASE_DELAY * (2 ** (attempt - 1)))
        finally:
            GATEWAY_CALL_DURATION.labels(gateway=gateway_name, operation=operation).observe(
                _time.monotonic() - start
            )

    PAYMENTS_PENDING_RECONCILIATION.labels(operation=operation).inc()
    logger.error(
        "gateway_retries_exhausted",
        gateway=gateway_name,
        operation=operation,
        transaction_id=transaction_id,
    )
    raise PaymentPending(transaction_id)


class GatewayRegistry:
    """Maps a payment method to the gateway that processes it."""

    def __init__(self, gateways: dict[PaymentMethod, PaymentGateway]):
        self._gateways = gateways

    def for_method(self, method: PaymentMethod | str) -> PaymentGateway:
        gateway = self._gateways.get(PaymentMethod(method))
        if gateway is None:
            raise ValidationError(
                "Unsupported payment method.",
                {"payment_method": f"'{PaymentMethod(method).value}' cannot be processed online."},
            )
        return gateway

    def supports(self, method: PaymentMethod | str) -> bool:
        return PaymentMethod(method) in self._gateways


_registry: GatewayRegistry | None = None


def get_gateway_registry() -> GatewayRegistry:
    """FastAPI dependency; overridden in tests."""
    global _registry
    if _registry is None:
        from app.services.paypal_service import PayPalGateway
        from app.services.stripe_service import StripeGateway

        _registry = GatewayRegistry(
            {
                PaymentMethod.PAYPAL: PayPalGateway(),
                PaymentMethod.CREDIT_CARD: StripeGateway(),
            }
        )
    return _registry
