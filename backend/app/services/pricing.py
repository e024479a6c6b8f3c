"""Rental charge computation.

Everything in this module except ``compute_charge`` is pure: it takes a
``BookingDraft`` (rates already copied from the car and driver) and returns a
``ChargeBreakdown`` or a ``Rejection``. ``compute_charge`` adds the promotion
lookup, which needs the database.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import Rejection
from app.models.booking_charge import BookingCharge

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")


def money(value: Decimal | int | float) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateCard:
    hourly_rate: Decimal
    daily_rate: Decimal
    daily_hour_threshold: int


@dataclass(frozen=True)
class BookingDraft:
    pickup_datetime: datetime
    return_datetime: datetime
    car_rates: RateCard
    car_deposit: Decimal = ZERO
    min_rental_hours: int = 0
    with_driver: bool = False
    driver_rates: RateCard | None = None
    is_delivery: bool = False
    delivery_available: bool = False
    delivery_distance: Decimal | None = None
    delivery_fee_per_km: Decimal | None = None
    max_delivery_distance: Decimal | None = None
    with_insurance: bool = False
    promotion_code: str | None = None


@dataclass(frozen=True)
class TierResult:
    amount: Decimal
    billed_days: int
    hourly_hours: int


@dataclass
class ChargeBreakdown:
    total_hours: int
    total_days: int
    billed_days: int
    hourly_rate: Decimal
    daily_rate: Decimal
    base_amount: Decimal
    delivery_fee: Decimal = ZERO
    driver_fee_amount: Decimal = ZERO
    insurance_fee: Decimal = ZERO
    extra_fee: Decimal = ZERO
    discount_amount: Decimal = ZERO
    subtotal: Decimal = ZERO
    vat_rate: Decimal = ZERO
    vat_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    deposit_amount: Decimal = ZERO
    driver_hours: int = 0
    delivery_distance: Decimal | None = None
    # Set by compute_charge when a promotion applies (app.services.promotions.PromotionQuote)
    promotion: object | None = field(default=None, compare=False)


def rental_hours(pickup: datetime, return_: datetime) -> int | Rejection:
    """Elapsed hours, rounded up to the next whole hour."""
    if pickup >= return_:
        return Rejection("invalid_period", "Return time must be after pickup time.", "return_datetime")
    hours = math.ceil((return_ - pickup).total_seconds() / 3600)
    if hours <= 0:
        return Rejection("invalid_period", "Rental period must be at least one hour.", "return_datetime")
    return hours


def tiered_amount(total_hours: int, rates: RateCard) -> TierResult:
    """Bill whole days at the daily rate; the leftover hours either round up to a
    day (at or above the threshold) or bill hourly."""
    days, remaining = divmod(total_hours, 24)
    if remaining == 0:
        return TierResult(money(days * rates.daily_rate), days, 0)
    if remaining >= rates.daily_hour_threshold:
        return TierResult(money((days + 1) * rates.daily_rate), days + 1, 0)
    return TierResult(money(days * rates.daily_rate + remaining * rates.hourly_rate), days, remaining)


def delivery_fee(draft: BookingDraft) -> Decimal | Rejection:
    if not draft.is_delivery:
        return ZERO
    if not draft.delivery_available:
        return Rejection("delivery_unavailable", "This car is not available for delivery.", "is_delivery")
    if draft.delivery_fee_per_km is None:
        return Rejection("delivery_fee_missing", "Delivery fee is not configured for this car.", "is_delivery")
    if draft.delivery_distance is None:
        return Rejection("delivery_distance_missing", "A delivery location is required.", "delivery_address")
    if draft.max_delivery_distance is not None and draft.delivery_distance > draft.max_delivery_distance:
        return Rejection(
            "delivery_too_far",
            f"Delivery distance exceeds maximum allowed ({draft.max_delivery_distance}km).",
            "delivery_address",
        )
    return money(draft.delivery_distance * draft.delivery_fee_per_km)


def insurance_fee(base_amount: Decimal, with_insurance: bool) -> Decimal:
    if not with_insurance or settings.INSURANCE_MODE == "none":
        return ZERO
    if settings.INSURANCE_MODE == "flat":
        return money(settings.INSURANCE_FLAT_FEE)
    return money(base_amount * settings.INSURANCE_RATE)


def deposit_for(total_amount: Decimal, car_deposit: Decimal) -> Decimal:
    if settings.DEPOSIT_POLICY == "percentage":
        return money(total_amount * settings.DEPOSIT_RATE)
    return money(min(car_deposit, total_amount))


def apply_totals(breakdown: ChargeBreakdown, vat_rate: Decimal | None = None) -> ChargeBreakdown:
    """subtotal (clamped at zero), VAT and total from the fee lines."""
    vat_rate = settings.VAT_RATE if vat_rate is None else vat_rate
    gross = (
        breakdown.base_amount
        + breakdown.delivery_fee
        + breakdown.driver_fee_amount
        + breakdown.insurance_fee
        + breakdown.extra_fee
    )
    discount = min(breakdown.discount_amount, gross)
    subtotal = money(gross - discount)
    vat_amount = money(subtotal * vat_rate)
    return replace(
        breakdown,
        discount_amount=money(discount),
        subtotal=subtotal,
        vat_rate=vat_rate,
        vat_amount=vat_amount,
        total_amount=subtotal + vat_amount,
    )


def price_draft(draft: BookingDraft) -> ChargeBreakdown | Rejection:
    """Everything except the promotion discount."""
    hours = rental_hours(draft.pickup_datetime, draft.return_datetime)
    if isinstance(hours, Rejection):
        return hours
    if hours < draft.min_rental_hours:
        return Rejection(
            "min_rental_hours",
            f"Minimum rental duration for this car is {draft.min_rental_hours} hours.",
            "return_datetime",
        )

    rental = tiered_amount(hours, draft.car_rates)

    driver_fee = ZERO
    driver_hours = 0
    if draft.with_driver:
        if draft.driver_rates is None:
            return Rejection("driver_unavailable", "The selected driver is not available.", "driver_id")
        driver_fee = tiered_amount(hours, draft.driver_rates).amount
        driver_hours = hours

    delivery = delivery_fee(draft)
    if isinstance(delivery, Rejection):
        return delivery

    breakdown = ChargeBreakdown(
        total_hours=hours,
        total_days=hours // 24,
        billed_days=rental.billed_days,
        hourly_rate=money(draft.car_rates.hourly_rate),
        daily_rate=money(draft.car_rates.daily_rate),
        base_amount=rental.amount,
        delivery_fee=delivery,
        driver_fee_amount=driver_fee,
        insurance_fee=insurance_fee(rental.amount, draft.with_insurance),
        driver_hours=driver_hours,
        delivery_distance=draft.delivery_distance if draft.is_delivery else None,
    )
    breakdown = apply_totals(breakdown)
    breakdown.deposit_amount = deposit_for(breakdown.total_amount, draft.car_deposit)
    return breakdown


def with_discount(
    breakdown: ChargeBreakdown, discount: Decimal, promotion: object | None, car_deposit: Decimal
) -> ChargeBreakdown:
    priced = apply_totals(replace(breakdown, discount_amount=money(discount), promotion=promotion), breakdown.vat_rate)
    priced.deposit_amount = deposit_for(priced.total_amount, car_deposit)
    return priced


async def compute_charge(
    db: AsyncSession,
    draft: BookingDraft,
    *,
    user_id: int | None,
    now: datetime,
) -> ChargeBreakdown | Rejection:
    """Price a draft, then apply the supplied promotion code (a failing code
    rejects the whole computation) or the best auto-apply promotion."""
    from app.services import promotions

    breakdown = price_draft(draft)
    if isinstance(breakdown, Rejection):
        return breakdown

    if draft.promotion_code:
        quote = await promotions.validate(
            db,
            draft.promotion_code,
            base_amount=breakdown.base_amount,
            total_hours=breakdown.total_hours,
            user_id=user_id,
            now=now,
        )
        if isinstance(quote, Rejection):
            return quote
    else:
        quote = await promotions.best_auto_apply(
            db,
            base_amount=breakdown.base_amount,
            total_hours=breakdown.total_hours,
            user_id=user_id,
            now=now,
        )
        if quote is None:
            return breakdown

    return with_discount(breakdown, quote.discount_amount, quote, draft.car_deposit)


# --- Persisted charge maintenance ---


def charge_from_breakdown(breakdown: ChargeBreakdown) -> BookingCharge:
    charge = BookingCharge(
        total_hours=breakdown.total_hours,
        total_days=breakdown.total_days,
        billed_days=breakdown.billed_days,
        hourly_rate=breakdown.hourly_rate,
        daily_rate=breakdown.daily_rate,
        base_amount=breakdown.base_amount,
        delivery_fee=breakdown.delivery_fee,
        driver_fee_amount=breakdown.driver_fee_amount,
        insurance_fee=breakdown.insurance_fee,
        extra_fee=breakdown.extra_fee,
        extra_fee_details=[],
        discount_amount=breakdown.discount_amount,
        subtotal=breakdown.subtotal,
        vat_rate=breakdown.vat_rate,
        vat_amount=breakdown.vat_amount,
        total_amount=breakdown.total_amount,
        deposit_amount=breakdown.deposit_amount,
        amount_paid=ZERO,
        refund_amount=ZERO,
    )
    recompute_balance(charge)
    return charge


def recompute_balance(charge: BookingCharge) -> None:
    charge.balance_due = money(Decimal(charge.total_amount) - Decimal(charge.amount_paid or ZERO))


def reprice_totals(charge: BookingCharge) -> None:
    """Recompute subtotal, VAT, total and balance after a fee line changed."""
    gross = (
        Decimal(charge.base_amount)
        + Decimal(charge.delivery_fee)
        + Decimal(charge.driver_fee_amount)
        + Decimal(charge.insurance_fee)
        + Decimal(charge.extra_fee)
    )
    charge.subtotal = money(max(ZERO, gross - Decimal(charge.discount_amount)))
    charge.vat_amount = money(charge.subtotal * Decimal(charge.vat_rate))
    charge.total_amount = charge.subtotal + charge.vat_amount
    recompute_balance(charge)


def add_extra_fee(charge: BookingCharge, fee_type: str, amount: Decimal, description: str) -> None:
    amount = money(amount)
    if amount <= 0:
        return
    details = list(charge.extra_fee_details or [])
    details.append({"type": fee_type, "amount": str(amount), "description": description})
    # Reassign so the JSON column is flagged dirty
    charge.extra_fee_details = details
    charge.extra_fee = money(Decimal(charge.extra_fee) + amount)
    reprice_totals(charge)


def overtime_fee(scheduled_return: datetime, actual_return: datetime, fee_per_hour: Decimal | None) -> tuple[int, Decimal]:
    """Late hours (rounded up) and their fee; zero when on time or no overtime rate."""
    if not fee_per_hour or actual_return <= scheduled_return:
        return 0, ZERO
    late_hours = math.ceil((actual_return - scheduled_return).total_seconds() / 3600)
    return late_hours, money(late_hours * Decimal(fee_per_hour))
