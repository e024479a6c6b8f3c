from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_admin, get_current_staff
from app.exceptions import NotFoundError
from app.models.booking import Booking
from app.models.booking_charge import BookingCharge
from app.models.enums import BookingStatus, PaymentStatus, PaymentType
from app.models.payment import Payment
from app.models.user import User
from app.schemas.admin import ActivateRequest, CompleteRequest, RefundRequest, RefundResponse, RejectRequest
from app.schemas.booking import BookingResponse, booking_response
from app.services import booking_lifecycle
from app.services.audit import deny, record_audit
from app.services.booking_queries import lock_booking
from app.services.gateway import GatewayRegistry, get_gateway_registry
from app.services.payments import record_refund
from app.utils.dates import ensure_utc, utcnow
from app.utils.rate_limit import limiter

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"])


async def _managed_booking(db: AsyncSession, staff: User, booking_id: int, action: str) -> Booking:
    booking = await lock_booking(db, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if not booking_lifecycle.can_manage(staff, booking):
        raise await deny(db, staff, action, booking.id)
    return booking


# --- 1. Booking transitions ---


@router.post("/bookings/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: int,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    booking = await _managed_booking(db, staff, booking_id, "confirm_booking")
    await booking_lifecycle.confirm(db, booking, staff.id, utcnow())
    await record_audit(db, "booking_confirmed", actor_id=staff.id, booking_id=booking.id)
    return booking_response(booking, booking.car.name)


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: int,
    body: RejectRequest,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    booking = await _managed_booking(db, staff, booking_id, "reject_booking")
    await booking_lifecycle.reject(db, booking, staff.id, body.reason, utcnow())
    await record_audit(db, "booking_rejected", actor_id=staff.id, booking_id=booking.id, detail=body.reason)
    return booking_response(booking, booking.car.name)


@router.post("/bookings/{booking_id}/activate", response_model=BookingResponse)
async def activate_booking(
    booking_id: int,
    body: ActivateRequest,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    """Hand the car over to the customer."""
    booking = await _managed_booking(db, staff, booking_id, "activate_booking")
    picked_up = ensure_utc(body.actual_pickup_datetime) if body.actual_pickup_datetime else None
    await booking_lifecycle.activate(db, booking, staff.id, utcnow(), picked_up)
    if body.notes:
        booking.admin_notes = body.notes
    await record_audit(db, "booking_activated", actor_id=staff.id, booking_id=booking.id)
    return booking_response(booking, booking.car.name)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: int,
    body: CompleteRequest,
    staff: User = Depends(get_current_staff),
    db: AsyncSession = Depends(get_db),
):
    """Take the car back; late return and extra fees are added to the charge."""
    booking = await _managed_booking(db, staff, booking_id, "complete_booking")
    returned = ensure_utc(body.actual_return_datetime) if body.actual_return_datetime else None
    await booking_lifecycle.complete(
        db,
        booking,
        staff.id,
        utcnow(),
        actual_return=returned,
        extra_fee=body.extra_fee,
        extra_fee_reason=body.extra_fee_reason,
    )
    if body.notes:
        booking.admin_notes = body.notes
    await record_audit(
        db,
        "booking_completed",
        actor_id=staff.id,
        booking_id=booking.id,
        metadata={"extra_fee": str(booking.charge.extra_fee), "total_amount": str(booking.charge.total_amount)},
    )
    return booking_response(booking, booking.car.name)


# --- 2. Refunds ---


@router.post("/payments/{payment_id}/refund", response_model=RefundResponse)
@limiter.limit("10/minute")
async def refund_payment(
    request: Request,
    payment_id: int,
    body: RefundRequest,
    staff: User = Depends(get_current_staff),
    registry: GatewayRegistry = Depends(get_gateway_registry),
    db: AsyncSession = Depends(get_db),
):
    """Refund part or all of a completed payment at its original exchange rate."""
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    await _managed_booking(db, staff, payment.booking_id, "refund_payment")

    refund = await record_refund(
        db, payment_id, body.amount, registry=registry, actor_id=staff.id, now=utcnow(), reason=body.reason
    )
    await record_audit(
        db,
        "payment_refunded",
        actor_id=staff.id,
        booking_id=payment.booking_id,
        detail=body.reason,
        metadata={"payment_id": payment_id, "amount_vnd": str(refund.amount_vnd)},
    )
    return RefundResponse(
        refund_id=refund.id,
        transaction_id=refund.transaction_id,
        original_payment_id=payment_id,
        amount_vnd=refund.amount_vnd,
        amount_usd=refund.amount_usd,
        exchange_rate=refund.exchange_rate,
        status=PaymentStatus(refund.status).value,
    )


# --- 3. Platform stats ---


@router.get("/stats")
@limiter.limit("30/minute")
async def booking_stats(
    request: Request,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Booking counts by status and money collected."""
    status_counts_result = await db.execute(
        select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
    )
    status_counts = {BookingStatus(row[0]).value: row[1] for row in status_counts_result}

    totals_result = await db.execute(
        select(
            func.coalesce(func.sum(BookingCharge.amount_paid), 0),
            func.coalesce(func.sum(BookingCharge.refund_amount), 0),
        )
    )
    collected, refunded = totals_result.one()

    # Cancelled and rejected bookings owe nothing
    outstanding_result = await db.execute(
        select(func.coalesce(func.sum(BookingCharge.balance_due), 0))
        .join(Booking, Booking.id == BookingCharge.booking_id)
        .where(Booking.status.notin_((BookingStatus.CANCELLED, BookingStatus.REJECTED)))
    )
    outstanding = outstanding_result.scalar()

    # This month
    now = utcnow()
    month_start: datetime = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    month_result = await db.execute(select(func.count(Booking.id)).where(Booking.created_at >= month_start))
    month_bookings = month_result.scalar() or 0

    pending_payments_result = await db.execute(
        select(func.count(Payment.id)).where(
            Payment.status == PaymentStatus.PENDING,
            Payment.payment_type != PaymentType.REFUND,
        )
    )

    return {
        "bookings": {
            "by_status": {s.value: status_counts.get(s.value, 0) for s in BookingStatus},
            "total": sum(status_counts.values()),
            "this_month": month_bookings,
        },
        "revenue": {
            "collected_vnd": float(collected),
            "refunded_vnd": float(refunded),
            "outstanding_vnd": float(outstanding),
        },
        "pending_payments": pending_payments_result.scalar() or 0,
    }
