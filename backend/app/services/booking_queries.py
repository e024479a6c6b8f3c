"""Booking lookups used by routes, services and scheduled jobs."""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import and_, exists, func, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.exceptions import ConcurrencyConflict
from app.models.booking import Booking
from app.models.booking_charge import BookingCharge
from app.models.enums import BookingStatus, NotificationKind, NotificationStatus
from app.models.notification import Notification
from app.models.review import Review

logger = structlog.get_logger()

RELEASED_STATUSES = (BookingStatus.CANCELLED, BookingStatus.REJECTED)

_LOCK_RETRY_DELAY = 0.2


def _aggregate_query():
    return select(Booking).options(selectinload(Booking.customer), selectinload(Booking.car))


async def get_booking(db: AsyncSession, booking_id: int) -> Booking | None:
    result = await db.execute(_aggregate_query().where(Booking.id == booking_id))
    return result.scalar_one_or_none()


async def lock_booking(db: AsyncSession, booking_id: int) -> Booking | None:
    """Load the booking aggregate holding its row lock for the rest of the transaction.

    All writes to a booking, its charge and its payments go through this lock.
    A lock held by another transaction is retried once, then reported as a conflict.
    """
    query = (
        _aggregate_query()
        .where(Booking.id == booking_id)
        .with_for_update(of=Booking, nowait=True)
        .execution_options(populate_existing=True)
    )
    if db.get_bind().dialect.name == "sqlite":
        # No row locks in SQLite; its database-wide write lock serializes writers
        result = await db.execute(query)
        return result.scalar_one_or_none()

    for attempt in (1, 2):
        try:
            # Savepoint so a NOWAIT failure does not abort the outer transaction
            async with db.begin_nested():
                result = await db.execute(query)
                return result.scalar_one_or_none()
        except DBAPIError:
            logger.info("booking_lock_busy", booking_id=booking_id, attempt=attempt)
            if attempt == 2:
                raise ConcurrencyConflict() from None
            await asyncio.sleep(_LOCK_RETRY_DELAY)
    return None


async def has_conflicting_booking(
    db: AsyncSession,
    car_id: int,
    pickup: datetime,
    return_: datetime,
    exclude_booking_id: int | None = None,
) -> bool:
    """True when another booking of the car that was not cancelled or rejected overlaps [pickup, return)."""
    conditions = [
        Booking.car_id == car_id,
        Booking.status.notin_(RELEASED_STATUSES),
        Booking.pickup_datetime < return_,
        Booking.return_datetime > pickup,
    ]
    if exclude_booking_id is not None:
        conditions.append(Booking.id != exclude_booking_id)
    result = await db.execute(select(exists().where(and_(*conditions))))
    return bool(result.scalar())


async def find_due_for_reminder(db: AsyncSession, now: datetime, limit: int = 100) -> list[Booking]:
    """Confirmed bookings picking up inside the reminder window that have no reminder yet."""
    window_start = now + timedelta(hours=settings.REMINDER_WINDOW_START_HOURS)
    window_end = now + timedelta(hours=settings.REMINDER_WINDOW_END_HOURS)
    already_reminded = exists().where(
        Notification.booking_id == Booking.id,
        Notification.kind == NotificationKind.REMINDER.value,
        Notification.status != NotificationStatus.FAILED,
    )
    result = await db.execute(
        select(Booking)
        .where(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.pickup_datetime >= window_start,
            Booking.pickup_datetime <= window_end,
            ~already_reminded,
        )
        .order_by(Booking.pickup_datetime)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_customer_bookings(
    db: AsyncSession,
    customer_id: int,
    status: BookingStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Booking], int]:
    conditions = [Booking.customer_id == customer_id]
    if status is not None:
        conditions.append(Booking.status == status)
    total = await db.execute(select(func.count(Booking.id)).where(*conditions))
    result = await db.execute(
        select(Booking)
        .where(*conditions)
        .options(selectinload(Booking.car))
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total.scalar() or 0


async def customer_dashboard_stats(db: AsyncSession, customer_id: int, now: datetime) -> dict:
    """Booking counts, money spent and completed rentals still waiting for a review."""
    mine = Booking.customer_id == customer_id
    status_counts_result = await db.execute(
        select(Booking.status, func.count(Booking.id)).where(mine).group_by(Booking.status)
    )
    status_counts = {BookingStatus(row[0]): row[1] for row in status_counts_result}

    upcoming_result = await db.execute(
        select(func.count(Booking.id)).where(
            mine,
            Booking.status.in_((BookingStatus.PENDING, BookingStatus.CONFIRMED)),
            Booking.pickup_datetime > now,
        )
    )
    spent_result = await db.execute(
        select(func.coalesce(func.sum(BookingCharge.total_amount), 0))
        .join(Booking, Booking.id == BookingCharge.booking_id)
        .where(mine, Booking.status == BookingStatus.COMPLETED)
    )
    reviewed = exists().where(Review.booking_id == Booking.id)
    pending_reviews_result = await db.execute(
        select(func.count(Booking.id)).where(mine, Booking.status == BookingStatus.COMPLETED, ~reviewed)
    )

    return {
        "total_bookings": sum(status_counts.values()),
        "upcoming_bookings": upcoming_result.scalar() or 0,
        "active_bookings": status_counts.get(BookingStatus.ACTIVE, 0),
        "completed_bookings": status_counts.get(BookingStatus.COMPLETED, 0),
        "total_spent": Decimal(str(spent_result.scalar() or 0)),
        "pending_reviews": pending_reviews_result.scalar() or 0,
    }


async def get_review(db: AsyncSession, booking_id: int) -> Review | None:
    result = await db.execute(select(Review).where(Review.booking_id == booking_id))
    return result.scalar_one_or_none()
