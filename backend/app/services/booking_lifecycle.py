"""Booking status transitions.

Callers load the booking with ``booking_queries.lock_booking`` first. Every
function validates the move against ``ALLOWED_TRANSITIONS`` and stamps the
metadata that belongs to the target state.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import ValidationError
from app.metrics import BOOKINGS_CANCELLED, BOOKINGS_TRANSITIONS
from app.models.booking import Booking
from app.models.driver_profile import DriverProfile
from app.models.enums import BookingStatus, CarStatus, NotificationKind, UserRole
from app.models.user import User
from app.services.notifications import enqueue_booking_notification
from app.services.pricing import add_extra_fee, overtime_fee
from app.utils.booking_state import validate_transition
from app.utils.dates import ensure_utc

logger = structlog.get_logger()


@dataclass(frozen=True)
class CancellationPolicy:
    hours_until_pickup: float
    free: bool
    refund_percentage: int
    message: str


FREE_CANCELLATION_MESSAGE = (
    "Booking cancelled successfully. Full refund will be processed within 5-7 business days."
)
LATE_CANCELLATION_MESSAGE = "Booking cancelled. Cancellation fee may apply as per our policy."


def cancellation_policy(pickup: datetime, now: datetime) -> CancellationPolicy:
    """Refund eligibility for a cancellation made at ``now``. Never blocks the cancellation."""
    hours_until = (ensure_utc(pickup) - now).total_seconds() / 3600
    if hours_until >= settings.CANCELLATION_FREE_HOURS:
        return CancellationPolicy(hours_until, True, 100, FREE_CANCELLATION_MESSAGE)
    return CancellationPolicy(
        hours_until, False, settings.LATE_CANCELLATION_REFUND_PERCENT, LATE_CANCELLATION_MESSAGE
    )


def can_manage(actor: User, booking: Booking) -> bool:
    """Staff: platform admins, or the owner of the booked car."""
    return actor.role == UserRole.ADMIN or booking.owner_id == actor.id


def can_view(actor: User, booking: Booking) -> bool:
    return booking.customer_id == actor.id or can_manage(actor, booking)


def can_cancel(actor: User, booking: Booking) -> bool:
    return can_view(actor, booking)


def _move(booking: Booking, target: BookingStatus) -> bool:
    current = BookingStatus(booking.status)
    if not validate_transition(current, target):
        logger.info("booking_transition_noop", booking_id=booking.id, status=current.value)
        return False
    booking.status = target
    BOOKINGS_TRANSITIONS.labels(from_status=current.value, to_status=target.value).inc()
    return True


def _require_reason(reason: str | None, min_length: int = 1) -> str:
    cleaned = (reason or "").strip()
    if len(cleaned) < min_length:
        raise ValidationError(
            "A reason is required.",
            {"reason": f"The reason must be at least {min_length} characters."},
        )
    return cleaned


async def confirm(db: AsyncSession, booking: Booking, actor_id: int | None, now: datetime) -> Booking:
    """pending -> confirmed, by staff or by a successful payment (actor_id None)."""
    if not _move(booking, BookingStatus.CONFIRMED):
        return booking
    booking.confirmed_at = now
    booking.confirmed_by = actor_id
    await enqueue_booking_notification(db, booking.id, NotificationKind.CONFIRMATION)
    logger.info("booking_confirmed", booking_id=booking.id, confirmed_by=actor_id)
    return booking


async def reject(db: AsyncSession, booking: Booking, actor_id: int, reason: str, now: datetime) -> Booking:
    reason = _require_reason(reason)
    if not _move(booking, BookingStatus.REJECTED):
        return booking
    booking.rejected_at = now
    booking.rejected_by = actor_id
    booking.rejection_reason = reason
    await enqueue_booking_notification(db, booking.id, NotificationKind.CANCELLATION)
    logger.info("booking_rejected", booking_id=booking.id, rejected_by=actor_id)
    return booking


async def cancel(db: AsyncSession, booking: Booking, actor: User, reason: str, now: datetime) -> CancellationPolicy:
    """pending|confirmed -> cancelled. Cancelling twice is an InvalidStateTransition."""
    reason = _require_reason(reason, settings.CANCELLATION_REASON_MIN_LENGTH)
    _move(booking, BookingStatus.CANCELLED)

    policy = cancellation_policy(booking.pickup_datetime, now)
    booking.cancelled_at = now
    booking.cancelled_by = actor.id
    booking.cancellation_reason = reason
    booking.refund_percentage = policy.refund_percentage
    await enqueue_booking_notification(db, booking.id, NotificationKind.CANCELLATION)

    cancelled_by = "customer" if actor.id == booking.customer_id else "staff"
    BOOKINGS_CANCELLED.labels(cancelled_by=cancelled_by, free=str(policy.free).lower()).inc()
    logger.info(
        "booking_cancelled",
        booking_id=booking.id,
        cancelled_by=cancelled_by,
        hours_until_pickup=round(policy.hours_until_pickup, 1),
        refund_percentage=policy.refund_percentage,
    )
    return policy


async def activate(
    db: AsyncSession, booking: Booking, actor_id: int, now: datetime, actual_pickup: datetime | None = None
) -> Booking:
    """confirmed -> active when the customer collects the car."""
    if not _move(booking, BookingStatus.ACTIVE):
        return booking
    booking.actual_pickup_datetime = actual_pickup or now
    booking.car.status = CarStatus.RENTED
    logger.info("booking_activated", booking_id=booking.id, activated_by=actor_id)
    return booking


async def complete(
    db: AsyncSession,
    booking: Booking,
    actor_id: int,
    now: datetime,
    actual_return: datetime | None = None,
    extra_fee: Decimal | None = None,
    extra_fee_reason: str | None = None,
) -> Booking:
    """active -> completed. Adds overtime and any staff extra fee, then updates
    the car and driver counters."""
    if not _move(booking, BookingStatus.COMPLETED):
        return booking

    returned_at = actual_return or now
    booking.actual_return_datetime = returned_at
    charge = booking.charge
    car = booking.car

    late_hours, late_fee = overtime_fee(ensure_utc(booking.return_datetime), returned_at, car.overtime_fee_per_hour)
    if late_fee > 0:
        add_extra_fee(charge, "overtime", late_fee, f"{late_hours} hour(s) late return")
    if extra_fee:
        add_extra_fee(charge, "additional", extra_fee, _require_reason(extra_fee_reason))

    car.rental_count = (car.rental_count or 0) + 1
    car.status = CarStatus.AVAILABLE

    if booking.with_driver and booking.driver_id:
        started = ensure_utc(booking.actual_pickup_datetime or booking.pickup_datetime)
        hours = max(0, math.ceil((returned_at - started).total_seconds() / 3600))
        booking.total_driver_hours = hours
        driver = await db.get(DriverProfile, booking.driver_id)
        if driver is not None:
            driver.completed_trips = (driver.completed_trips or 0) + 1
            driver.total_hours_driven = (driver.total_hours_driven or 0) + hours

    logger.info(
        "booking_completed",
        booking_id=booking.id,
        completed_by=actor_id,
        late_hours=late_hours,
        total_amount=str(charge.total_amount),
    )
    return booking
