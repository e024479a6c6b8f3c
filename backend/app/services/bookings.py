"""Quoting and creating bookings.

``quote`` and ``store`` share one path: load the car (and driver) rates into a
``BookingDraft``, price it, and for ``store`` persist the booking with its
charge snapshot and promotion record in the caller's transaction.
"""

from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import NotFoundError, RejectedError, Rejection
from app.metrics import BOOKING_REJECTIONS, BOOKINGS_CREATED
from app.models.booking import Booking
from app.models.car import Car
from app.models.driver_profile import DriverProfile
from app.models.enums import BookingStatus, CarStatus, DriverStatus, NotificationKind
from app.models.location import Location
from app.models.user import User
from app.schemas.booking import BookingRequest
from app.services import promotions
from app.services.booking_queries import has_conflicting_booking
from app.services.notifications import enqueue_booking_notification
from app.services.pricing import BookingDraft, ChargeBreakdown, RateCard, charge_from_breakdown, compute_charge
from app.utils.code_generator import generate_booking_code
from app.utils.geo import calculate_distance_km

logger = structlog.get_logger()

MAX_CODE_ATTEMPTS = 5


async def _load_driver(db: AsyncSession, driver_id: int | None) -> DriverProfile | None:
    if driver_id is None:
        return None
    driver = await db.get(DriverProfile, driver_id)
    if driver is None or driver.status != DriverStatus.APPROVED or not driver.is_available_for_booking:
        return None
    return driver


async def _delivery_distance(db: AsyncSession, body: BookingRequest, car: Car) -> Decimal | None:
    """Supplied distance, else the distance from the pickup location to the delivery point."""
    if not body.is_delivery:
        return None
    if body.delivery_distance is not None:
        return body.delivery_distance
    if body.delivery_lat is None:
        return None
    location_id = body.pickup_location_id or car.location_id
    location = await db.get(Location, location_id) if location_id else None
    if location is None or location.latitude is None or location.longitude is None:
        return None
    return calculate_distance_km(location.latitude, location.longitude, body.delivery_lat, body.delivery_lng)


async def build_draft(
    db: AsyncSession, body: BookingRequest, now: datetime
) -> tuple[BookingDraft, Car, DriverProfile | None] | Rejection:
    car = await db.get(Car, body.car_id)
    if car is None:
        raise NotFoundError("Car not found")
    if car.status != CarStatus.AVAILABLE:
        return Rejection("car_unavailable", "This car is not available for booking.", "car_id")
    if body.pickup_datetime <= now:
        return Rejection("pickup_in_past", "Pickup time must be in the future.", "pickup_datetime")

    driver = await _load_driver(db, body.driver_id) if body.with_driver else None
    draft = BookingDraft(
        pickup_datetime=body.pickup_datetime,
        return_datetime=body.return_datetime,
        car_rates=RateCard(car.hourly_rate, car.daily_rate, car.daily_hour_threshold),
        car_deposit=car.deposit_amount,
        min_rental_hours=car.min_rental_hours,
        with_driver=body.with_driver,
        driver_rates=(
            RateCard(driver.hourly_fee, driver.daily_fee, driver.daily_hour_threshold) if driver else None
        ),
        is_delivery=body.is_delivery,
        delivery_available=car.is_delivery_available,
        delivery_distance=await _delivery_distance(db, body, car),
        delivery_fee_per_km=car.delivery_fee_per_km,
        max_delivery_distance=car.max_delivery_distance,
        with_insurance=body.with_insurance,
        promotion_code=body.promotion_code,
    )
    return draft, car, driver


def _rejected(rejection: Rejection) -> Rejection:
    BOOKING_REJECTIONS.labels(code=rejection.code).inc()
    logger.info("booking_rejected_by_rules", code=rejection.code, field=rejection.field)
    return rejection


async def quote(db: AsyncSession, body: BookingRequest, *, user_id: int | None, now: datetime) -> ChargeBreakdown | Rejection:
    loaded = await build_draft(db, body, now)
    if isinstance(loaded, Rejection):
        return _rejected(loaded)
    draft, _, _ = loaded
    breakdown = await compute_charge(db, draft, user_id=user_id, now=now)
    if isinstance(breakdown, Rejection):
        return _rejected(breakdown)
    return breakdown


async def _unique_booking_code(db: AsyncSession, now: datetime) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_booking_code(now)
        taken = await db.execute(select(exists().where(Booking.booking_code == code)))
        if not taken.scalar():
            return code
    raise RuntimeError("Could not allocate a unique booking code")


async def store(db: AsyncSession, body: BookingRequest, customer: User, now: datetime) -> Booking | Rejection:
    """Create the booking, its charge and its promotion record together."""
    loaded = await build_draft(db, body, now)
    if isinstance(loaded, Rejection):
        return _rejected(loaded)
    draft, car, driver = loaded

    if await has_conflicting_booking(db, car.id, body.pickup_datetime, body.return_datetime):
        return _rejected(
            Rejection(
                "car_already_booked",
                "This car is already booked for the selected period.",
                "pickup_datetime",
            )
        )

    breakdown = await compute_charge(db, draft, user_id=customer.id, now=now)
    if isinstance(breakdown, Rejection):
        return _rejected(breakdown)

    applied = []
    promotion_quote = breakdown.promotion
    if promotion_quote is not None:
        if not await promotions.redeem(db, promotion_quote.promotion.id):
            # Another checkout took the last use between pricing and now
            raise RejectedError(
                _rejected(
                    Rejection(
                        "promotion_exhausted", "This promotion has reached its usage limit.", "promotion_code"
                    )
                )
            )
        applied.append(promotions.build_booking_promotion(promotion_quote))

    booking = Booking(
        booking_code=await _unique_booking_code(db, now),
        customer_id=customer.id,
        owner_id=car.owner_id,
        car=car,
        driver_id=driver.id if driver else None,
        pickup_location_id=body.pickup_location_id or car.location_id,
        return_location_id=body.return_location_id or body.pickup_location_id or car.location_id,
        pickup_datetime=body.pickup_datetime,
        return_datetime=body.return_datetime,
        hourly_rate=car.hourly_rate,
        daily_rate=car.daily_rate,
        daily_hour_threshold=car.daily_hour_threshold,
        deposit_amount=breakdown.deposit_amount,
        with_driver=body.with_driver,
        driver_hourly_fee=driver.hourly_fee if driver else None,
        driver_daily_fee=driver.daily_fee if driver else None,
        driver_daily_hour_threshold=driver.daily_hour_threshold if driver else None,
        driver_notes=body.driver_notes,
        is_delivery=body.is_delivery,
        delivery_address=body.delivery_address if body.is_delivery else None,
        delivery_lat=body.delivery_lat if body.is_delivery else None,
        delivery_lng=body.delivery_lng if body.is_delivery else None,
        delivery_distance=breakdown.delivery_distance,
        delivery_fee_per_km=car.delivery_fee_per_km if body.is_delivery else None,
        with_insurance=body.with_insurance,
        status=BookingStatus.PENDING,
        customer_notes=body.customer_notes,
        charge=charge_from_breakdown(breakdown),
        promotions=applied,
        payments=[],
    )
    db.add(booking)
    await db.flush()
    await enqueue_booking_notification(db, booking.id, NotificationKind.CONFIRMATION)

    BOOKINGS_CREATED.labels(with_driver=str(body.with_driver).lower(), is_delivery=str(body.is_delivery).lower()).inc()
    logger.info(
        "booking_created",
        booking_id=booking.id,
        booking_code=booking.booking_code,
        car_id=car.id,
        customer_id=customer.id,
        total_amount=str(breakdown.total_amount),
        promotion=promotion_quote.promotion.code if promotion_quote else None,
    )
    return booking
