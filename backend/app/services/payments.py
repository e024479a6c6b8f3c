"""Payment reconciliation.

Each payment attempt is stored as ``pending`` with its transaction id before
any gateway call, so retries and callbacks can be correlated. Captures and
refunds take the booking row lock and move money on the ``BookingCharge``
in the same transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import GatewayDeclined, NotFoundError, PaymentPending, ValidationError
from app.metrics import PAYMENTS_CAPTURED, PAYMENTS_REFUNDED
from app.models.booking import Booking
from app.models.booking_charge import BookingCharge
from app.models.enums import BookingStatus, PaymentMethod, PaymentStatus, PaymentType
from app.models.payment import Payment
from app.services import booking_lifecycle
from app.services.booking_queries import lock_booking
from app.services.currency import CurrencyService, vnd_to_usd
from app.services.gateway import (
    CAPTURE_COMPLETED,
    CAPTURE_FAILED,
    CaptureResult,
    GatewayOrder,
    GatewayRegistry,
    PaymentGateway,
    RefundResult,
    call_with_retry,
)
from app.services.pricing import ZERO, money, recompute_balance
from app.utils.booking_state import validate_payment_transition
from app.utils.code_generator import generate_transaction_id

logger = structlog.get_logger()

PAYABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.ACTIVE, BookingStatus.COMPLETED)


def amount_for(charge: BookingCharge, payment_type: PaymentType, requested: Decimal | None = None) -> Decimal:
    """VND amount to collect for a payment of the given type."""
    balance = Decimal(charge.balance_due)
    if balance <= 0:
        raise ValidationError("This booking has no outstanding balance.")

    if payment_type == PaymentType.DEPOSIT:
        deposit = Decimal(charge.deposit_amount)
        if deposit <= 0:
            raise ValidationError("This booking does not require a deposit.", {"payment_type": "No deposit is due."})
        return money(min(deposit, balance))
    if payment_type == PaymentType.FULL_PAYMENT:
        return money(balance)
    if payment_type == PaymentType.PARTIAL:
        if requested is None or requested <= 0:
            raise ValidationError("An amount is required.", {"amount": "Enter the amount to pay."})
        if requested > balance:
            raise ValidationError("Amount exceeds balance due.", {"amount": "The amount exceeds the balance due."})
        return money(requested)
    raise ValidationError("Unsupported payment type.", {"payment_type": f"'{payment_type}' cannot be paid."})


async def get_payment_by_transaction(db: AsyncSession, transaction_id: str) -> Payment:
    result = await db.execute(select(Payment).where(Payment.transaction_id == transaction_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def get_payment_by_order(db: AsyncSession, gateway_order_id: str) -> Payment:
    result = await db.execute(select(Payment).where(Payment.gateway_order_id == gateway_order_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def record_attempt(
    db: AsyncSession,
    booking: Booking,
    *,
    user_id: int,
    method: PaymentMethod,
    payment_type: PaymentType,
    amount_vnd: Decimal,
    currency: CurrencyService,
) -> Payment:
    """Create the pending payment row. The USD amount and rate are fixed here."""
    if BookingStatus(booking.status) not in PAYABLE_STATUSES:
        raise ValidationError(f"Payments are not accepted for a {BookingStatus(booking.status).value} booking.")

    rate = await currency.current_rate()
    payment = Payment(
        booking_id=booking.id,
        user_id=user_id,
        transaction_id=generate_transaction_id(),
        payment_method=method,
        payment_type=payment_type,
        amount_vnd=money(amount_vnd),
        amount_usd=vnd_to_usd(amount_vnd, rate),
        exchange_rate=rate,
        refunded_amount_vnd=ZERO,
        status=PaymentStatus.PENDING,
    )
    booking.payments.append(payment)
    await db.flush()
    logger.info(
        "payment_attempt_recorded",
        booking_id=booking.id,
        transaction_id=payment.transaction_id,
        payment_method=PaymentMethod(method).value,
        amount_vnd=str(payment.amount_vnd),
        exchange_rate=str(rate),
    )
    return payment


async def start_gateway_payment(
    db: AsyncSession, booking: Booking, payment: Payment, gateway: PaymentGateway
) -> GatewayOrder:
    """Open the order at the gateway. A decline marks the payment failed and is returned."""
    order = await call_with_retry(
        "create_order",
        gateway.name,
        lambda: gateway.create_order(
            transaction_id=payment.transaction_id,
            amount_usd=payment.amount_usd,
            reference=booking.booking_code,
            description=f"Car rental {booking.booking_code}",
        ),
        transaction_id=payment.transaction_id,
    )
    payment.gateway_response = order.raw
    if order.declined:
        validate_payment_transition(payment.status, PaymentStatus.FAILED)
        payment.status = PaymentStatus.FAILED
        logger.info("payment_declined", transaction_id=payment.transaction_id, gateway=gateway.name)
        return order
    payment.gateway_order_id = order.order_id
    await db.flush()
    return order


def _should_auto_confirm(booking: Booking, charge: BookingCharge, payment: Payment) -> bool:
    """A pending booking is confirmed by a deposit or full payment, or once nothing is owed.

    Partial payments below the balance never confirm on their own.
    """
    if BookingStatus(booking.status) != BookingStatus.PENDING:
        return False
    settled = Decimal(charge.balance_due) <= 0
    if settings.BOOKING_AUTO_CONFIRM == "on_payment":
        return settled or PaymentType(payment.payment_type) in (PaymentType.DEPOSIT, PaymentType.FULL_PAYMENT)
    if settings.BOOKING_AUTO_CONFIRM == "on_full_balance":
        return settled
    return False


async def confirm_capture(db: AsyncSession, transaction_id: str, result: CaptureResult, now: datetime) -> Payment:
    """Apply a gateway capture outcome. Replaying a completed capture changes nothing."""
    payment = await get_payment_by_transaction(db, transaction_id)
    booking = await lock_booking(db, payment.booking_id)
    await db.refresh(payment)

    current = PaymentStatus(payment.status)
    if current == PaymentStatus.COMPLETED:
        logger.info("payment_capture_replayed", transaction_id=transaction_id)
        return payment

    if result.status == CAPTURE_FAILED:
        if validate_payment_transition(current, PaymentStatus.FAILED):
            payment.status = PaymentStatus.FAILED
            payment.gateway_response = result.raw
            logger.info("payment_capture_failed", transaction_id=transaction_id, booking_id=booking.id)
        return payment
    if result.status != CAPTURE_COMPLETED:
        # The gateway has not settled yet; leave the payment pending
        payment.gateway_response = result.raw
        logger.info("payment_capture_pending", transaction_id=transaction_id)
        return payment

    validate_payment_transition(current, PaymentStatus.COMPLETED)
    payment.status = PaymentStatus.COMPLETED
    payment.gateway_capture_id = result.capture_id
    payment.payer_id = result.payer_id
    payment.payer_email = result.payer_email
    payment.gateway_response = result.raw
    payment.paid_at = now

    charge = booking.charge
    charge.amount_paid = money(Decimal(charge.amount_paid) + Decimal(payment.amount_vnd))
    recompute_balance(charge)
    PAYMENTS_CAPTURED.labels(payment_method=PaymentMethod(payment.payment_method).value).inc()
    logger.info(
        "payment_captured",
        transaction_id=transaction_id,
        booking_id=booking.id,
        amount_vnd=str(payment.amount_vnd),
        balance_due=str(charge.balance_due),
    )

    if _should_auto_confirm(booking, charge, payment):
        await booking_lifecycle.confirm(db, booking, None, now)
    return payment


async def capture_and_confirm(db: AsyncSession, transaction_id: str, gateway: PaymentGateway, now: datetime) -> Payment:
    payment = await get_payment_by_transaction(db, transaction_id)
    if PaymentStatus(payment.status) == PaymentStatus.COMPLETED:
        return payment
    if not payment.gateway_order_id:
        raise ValidationError("This payment has no gateway order to capture.")
    if payment.idempotency_key is None:
        payment.idempotency_key = f"capture-{transaction_id}"
        await db.flush()
    key = payment.idempotency_key
    result = await call_with_retry(
        "capture_order",
        gateway.name,
        lambda: gateway.capture_order(payment.gateway_order_id, idempotency_key=key),
        transaction_id=transaction_id,
    )
    return await confirm_capture(db, transaction_id, result, now)


async def cancel_attempt(db: AsyncSession, payment: Payment) -> Payment:
    """The payer abandoned the gateway checkout."""
    if PaymentStatus(payment.status) != PaymentStatus.PENDING:
        return payment
    payment.status = PaymentStatus.CANCELLED
    logger.info("payment_cancelled_by_payer", transaction_id=payment.transaction_id)
    return payment


async def record_refund(
    db: AsyncSession,
    payment_id: int,
    amount_vnd: Decimal,
    *,
    registry: GatewayRegistry,
    actor_id: int | None,
    now: datetime,
    reason: str | None = None,
) -> Payment:
    """Refund part or all of a completed payment at its original exchange rate.

    The refund is its own ``payment_type=refund`` row pointing at the original.
    """
    original = await db.get(Payment, payment_id)
    if original is None:
        raise NotFoundError("Payment not found")
    booking = await lock_booking(db, original.booking_id)
    await db.refresh(original)

    if PaymentType(original.payment_type) == PaymentType.REFUND:
        raise ValidationError("A refund cannot be refunded.")
    if PaymentStatus(original.status) != PaymentStatus.COMPLETED:
        raise ValidationError("Only completed payments can be refunded.")
    amount = money(amount_vnd)
    headroom = refund_headroom(booking, original)
    if amount <= 0 or amount > headroom:
        raise ValidationError(
            "Invalid refund amount.",
            {"amount": f"The amount must be between 1 and {headroom}."},
        )

    rate = Decimal(original.exchange_rate)
    sequence = 1 + sum(1 for p in booking.payments if p.parent_payment_id == original.id)
    refund = Payment(
        booking_id=booking.id,
        user_id=original.user_id,
        parent_payment_id=original.id,
        transaction_id=generate_transaction_id(),
        payment_method=original.payment_method,
        payment_type=PaymentType.REFUND,
        amount_vnd=amount,
        amount_usd=vnd_to_usd(amount, rate),
        exchange_rate=rate,
        refunded_amount_vnd=ZERO,
        status=PaymentStatus.PENDING,
        idempotency_key=f"refund-{original.transaction_id}-{sequence}",
        notes=reason,
    )
    booking.payments.append(refund)
    await db.flush()

    if registry.supports(original.payment_method) and original.gateway_capture_id:
        try:
            result = await _send_refund(original, refund, registry)
        except GatewayDeclined as exc:
            refund.status = PaymentStatus.FAILED
            refund.notes = exc.message
            raise
        refund.gateway_capture_id = result.refund_id
        refund.gateway_response = result.raw

    _settle_refund(booking, original, refund, now)
    logger.info(
        "payment_refunded",
        payment_id=original.id,
        refund_transaction_id=refund.transaction_id,
        amount_vnd=str(amount),
        amount_usd=str(refund.amount_usd),
        exchange_rate=str(rate),
        actor_id=actor_id,
    )
    return refund


def refund_headroom(booking: Booking, original: Payment) -> Decimal:
    """What can still be refunded on ``original``.

    Refunds still pending at the gateway hold their amount until they are
    reconciled, so a retry can never refund the same money twice.
    """
    in_flight = sum(
        (
            Decimal(p.amount_vnd)
            for p in booking.payments
            if p.parent_payment_id == original.id and PaymentStatus(p.status) == PaymentStatus.PENDING
        ),
        ZERO,
    )
    return max(ZERO, original.refundable_amount_vnd - in_flight)


async def _send_refund(original: Payment, refund: Payment, registry: GatewayRegistry) -> RefundResult:
    gateway = registry.for_method(original.payment_method)
    key = refund.idempotency_key
    return await call_with_retry(
        "refund",
        gateway.name,
        lambda: gateway.refund(original.gateway_capture_id, refund.amount_usd, idempotency_key=key),
        transaction_id=refund.transaction_id,
    )


def _settle_refund(booking: Booking, original: Payment, refund: Payment, now: datetime) -> None:
    """Mark the refund completed and move its amount off the original payment and the charge."""
    amount = Decimal(refund.amount_vnd)
    refund.status = PaymentStatus.COMPLETED
    refund.paid_at = now
    refund.refunded_at = now

    original.refunded_amount_vnd = money(Decimal(original.refunded_amount_vnd) + amount)
    original.refunded_at = now
    if original.refundable_amount_vnd <= 0:
        validate_payment_transition(original.status, PaymentStatus.REFUNDED)
        original.status = PaymentStatus.REFUNDED

    charge = booking.charge
    charge.refund_amount = money(Decimal(charge.refund_amount) + amount)
    charge.amount_paid = money(max(ZERO, Decimal(charge.amount_paid) - amount))
    recompute_balance(charge)
    PAYMENTS_REFUNDED.labels(payment_method=PaymentMethod(original.payment_method).value).inc()


async def find_pending_reconciliation(db: AsyncSession, before: datetime, limit: int = 100) -> list[Payment]:
    """Pending captures and refunds whose gateway call ran out of retries before ``before``."""
    result = await db.execute(
        select(Payment)
        .where(
            Payment.status == PaymentStatus.PENDING,
            Payment.idempotency_key.is_not(None),
            Payment.updated_at <= before,
        )
        .order_by(Payment.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def reconcile_refund(db: AsyncSession, refund_id: int, *, registry: GatewayRegistry, now: datetime) -> Payment:
    """Resend a pending refund with its stored idempotency key and apply the outcome.

    Raises ``PaymentPending`` again when the gateway is still unreachable.
    """
    refund = await db.get(Payment, refund_id)
    if refund is None or PaymentType(refund.payment_type) != PaymentType.REFUND:
        raise NotFoundError("Refund not found")
    booking = await lock_booking(db, refund.booking_id)
    await db.refresh(refund)
    if PaymentStatus(refund.status) != PaymentStatus.PENDING:
        return refund
    original = await db.get(Payment, refund.parent_payment_id)
    await db.refresh(original)

    try:
        result = await _send_refund(original, refund, registry)
    except GatewayDeclined as exc:
        refund.status = PaymentStatus.FAILED
        refund.notes = exc.message
        logger.warning("refund_reconcile_declined", refund_transaction_id=refund.transaction_id)
        return refund
    refund.gateway_capture_id = result.refund_id
    refund.gateway_response = result.raw
    _settle_refund(booking, original, refund, now)
    logger.info(
        "refund_reconciled",
        payment_id=original.id,
        refund_transaction_id=refund.transaction_id,
        amount_vnd=str(refund.amount_vnd),
    )
    return refund


async def reconcile_payment(db: AsyncSession, payment: Payment, *, registry: GatewayRegistry, now: datetime) -> Payment:
    """Re-drive one pending capture or refund."""
    if PaymentType(payment.payment_type) == PaymentType.REFUND:
        return await reconcile_refund(db, payment.id, registry=registry, now=now)
    gateway = registry.for_method(payment.payment_method)
    return await capture_and_confirm(db, payment.transaction_id, gateway, now)


@dataclass
class RefundOutcome:
    refunded_vnd: Decimal = ZERO
    pending_transactions: list[str] = field(default_factory=list)
    failed_payment_ids: list[int] = field(default_factory=list)


async def refund_for_cancellation(
    db: AsyncSession,
    booking: Booking,
    refund_percentage: int,
    *,
    registry: GatewayRegistry,
    actor_id: int | None,
    now: datetime,
) -> RefundOutcome:
    """Refund ``refund_percentage`` of what was paid, oldest payment first.

    Gateway timeouts and declines do not undo the cancellation; they are
    reported back for manual reconciliation.
    """
    outcome = RefundOutcome()
    if not settings.AUTO_REFUND_ON_CANCEL or refund_percentage <= 0:
        return outcome

    remaining = money(Decimal(booking.charge.amount_paid) * refund_percentage / Decimal(100))
    candidates = [
        p.id
        for p in booking.payments
        if PaymentType(p.payment_type) != PaymentType.REFUND and PaymentStatus(p.status) == PaymentStatus.COMPLETED
    ]
    for payment_id in candidates:
        if remaining <= 0:
            break
        payment = await db.get(Payment, payment_id)
        amount = min(refund_headroom(booking, payment), remaining)
        if amount <= 0:
            continue
        try:
            await record_refund(
                db, payment_id, amount, registry=registry, actor_id=actor_id, now=now, reason="Booking cancelled"
            )
            outcome.refunded_vnd += amount
        except PaymentPending as exc:
            outcome.pending_transactions.append(exc.transaction_id)
        except GatewayDeclined:
            logger.warning("cancellation_refund_declined", booking_id=booking.id, payment_id=payment_id)
            outcome.failed_payment_ids.append(payment_id)
        remaining -= amount

    logger.info(
        "cancellation_refund_processed",
        booking_id=booking.id,
        refund_percentage=refund_percentage,
        refunded_vnd=str(outcome.refunded_vnd),
        pending=len(outcome.pending_transactions),
    )
    return outcome
