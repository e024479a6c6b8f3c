from decimal import Decimal

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import get_current_user
from app.exceptions import NotFoundError
from app.models.booking import Booking
from app.models.enums import PaymentMethod, PaymentStatus
from app.models.payment import Payment
from app.models.user import User
from app.models.webhook_event import ProcessedWebhookEvent
from app.schemas.payment import (
    CallbackResponse,
    ExchangeRateResponse,
    PaymentDetailResponse,
    ProcessPaymentRequest,
    ProcessPaymentResponse,
)
from app.services import booking_lifecycle, payments
from app.services.audit import deny
from app.services.booking_queries import get_booking, lock_booking
from app.services.currency import CurrencyService, get_currency_service
from app.services.gateway import CAPTURE_COMPLETED, CAPTURE_FAILED, CaptureResult, GatewayRegistry, get_gateway_registry
from app.services.stripe_service import verify_webhook_signature
from app.utils.dates import utcnow
from app.utils.rate_limit import PAYMENT_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

MAX_WEBHOOK_PAYLOAD_BYTES = 65_536  # 64 KB
EXCHANGE_RATE_SAMPLE_VND = Decimal("1000000")


@router.post("/process", response_model=ProcessPaymentResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def process_payment(
    request: Request,
    body: ProcessPaymentRequest,
    user: User = Depends(get_current_user),
    registry: GatewayRegistry = Depends(get_gateway_registry),
    currency: CurrencyService = Depends(get_currency_service),
    db: AsyncSession = Depends(get_db),
):
    """Open a gateway payment for a booking and return where the payer goes next."""
    booking = await lock_booking(db, body.booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if booking.customer_id != user.id:
        raise await deny(db, user, "process_payment", booking.id)

    gateway = registry.for_method(body.payment_method)
    amount_vnd = payments.amount_for(booking.charge, body.payment_type, body.amount)
    payment = await payments.record_attempt(
        db,
        booking,
        user_id=user.id,
        method=body.payment_method,
        payment_type=body.payment_type,
        amount_vnd=amount_vnd,
        currency=currency,
    )
    order = await payments.start_gateway_payment(db, booking, payment, gateway)
    if order.declined:
        # Returned rather than raised so the failed attempt is committed
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "detail": "The payment was declined by the gateway.",
                "transaction_id": payment.transaction_id,
                "status": PaymentStatus.FAILED.value,
            },
        )

    return ProcessPaymentResponse(
        payment_id=payment.id,
        transaction_id=payment.transaction_id,
        status=PaymentStatus(payment.status).value,
        payment_method=payment.payment_method,
        payment_type=payment.payment_type,
        amount_vnd=payment.amount_vnd,
        amount_usd=payment.amount_usd,
        exchange_rate=payment.exchange_rate,
        approval_url=order.approval_url,
        client_secret=order.client_secret,
    )


def _callback_response(payment: Payment, booking: Booking) -> CallbackResponse:
    outcome = {
        PaymentStatus.COMPLETED: "success",
        PaymentStatus.CANCELLED: "cancelled",
        PaymentStatus.FAILED: "failed",
    }.get(PaymentStatus(payment.status), "pending")
    return CallbackResponse(
        status=outcome,
        booking_id=booking.id,
        booking_code=booking.booking_code,
        booking_status=booking.status,
        transaction_id=payment.transaction_id,
        amount_paid=booking.charge.amount_paid,
        balance_due=booking.charge.balance_due,
        redirect_url=f"{settings.FRONTEND_URL}/customer/bookings/{booking.id}?payment={outcome}",
    )


@router.get("/paypal/success", response_model=CallbackResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def paypal_success(
    request: Request,
    token: str = Query(..., max_length=64, description="PayPal order id"),
    registry: GatewayRegistry = Depends(get_gateway_registry),
    db: AsyncSession = Depends(get_db),
):
    """PayPal return URL: capture the approved order and apply it to the booking."""
    payment = await payments.get_payment_by_order(db, token)
    gateway = registry.for_method(PaymentMethod.PAYPAL)
    payment = await payments.capture_and_confirm(db, payment.transaction_id, gateway, utcnow())
    booking = await db.get(Booking, payment.booking_id)
    return _callback_response(payment, booking)


@router.get("/paypal/cancel", response_model=CallbackResponse)
async def paypal_cancel(
    token: str = Query(..., max_length=64, description="PayPal order id"),
    db: AsyncSession = Depends(get_db),
):
    """PayPal cancel URL: the payer left the checkout without approving."""
    payment = await payments.get_payment_by_order(db, token)
    await payments.cancel_attempt(db, payment)
    booking = await db.get(Booking, payment.booking_id)
    return _callback_response(payment, booking)


@router.post("/webhooks/stripe")
@limiter.limit("100/minute")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Handle Stripe webhook events."""
    # Reject oversized webhook payloads before reading the body
    content_length = request.headers.get("content-length")
    try:
        if content_length and int(content_length) > MAX_WEBHOOK_PAYLOAD_BYTES:
            raise HTTPException(status_code=413, detail="Payload too large")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")

    payload = await request.body()
    if len(payload) > MAX_WEBHOOK_PAYLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = verify_webhook_signature(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.error("stripe_webhook_signature_failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    event_id = event["id"]
    event_type = event["type"]

    # Never log the raw event payload: it may carry card and customer details.
    existing = await db.execute(
        select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id)
    )
    if existing.scalar_one_or_none():
        logger.info("stripe_webhook_duplicate_skipped", event_id=event_id)
        return {"status": "already_processed"}

    # Insert the idempotency record before processing; a concurrent delivery of
    # the same event then fails on the primary key.
    try:
        db.add(ProcessedWebhookEvent(event_id=event_id, gateway="stripe"))
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info("stripe_webhook_duplicate_race", event_id=event_id)
        return {"status": "already_processed"}

    logger.info("stripe_webhook_received", event_type=event_type, event_id=event_id)

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        intent = event["data"]["object"]
        result = await db.execute(select(Payment).where(Payment.gateway_order_id == intent["id"]))
        payment = result.scalar_one_or_none()
        if payment is None:
            logger.warning("stripe_webhook_unknown_intent", event_id=event_id)
            return {"status": "ignored"}
        if event_type == "payment_intent.succeeded":
            capture = CaptureResult(status=CAPTURE_COMPLETED, capture_id=intent["id"], raw={"event_id": event_id})
        else:
            capture = CaptureResult(status=CAPTURE_FAILED, raw={"event_id": event_id})
        await payments.confirm_capture(db, payment.transaction_id, capture, utcnow())

    return {"status": "ok"}


@router.get("/exchange-rate", response_model=ExchangeRateResponse)
async def exchange_rate(currency: CurrencyService = Depends(get_currency_service)):
    details = await currency.conversion_details(EXCHANGE_RATE_SAMPLE_VND)
    return ExchangeRateResponse(
        rate=details["exchange_rate"],
        mode=details["mode"],
        sample_vnd=details["amount_vnd"],
        sample_usd=details["amount_usd"],
        formatted_vnd=details["formatted_vnd"],
        formatted_usd=details["formatted_usd"],
    )


@router.get("/{payment_id}", response_model=PaymentDetailResponse)
async def payment_detail(
    payment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    booking = await get_booking(db, payment.booking_id)
    if not booking_lifecycle.can_view(user, booking):
        raise await deny(db, user, "view_payment", booking.id)
    return PaymentDetailResponse.model_validate(payment)
