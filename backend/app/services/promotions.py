from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import Rejection
from app.metrics import PROMOTIONS_REDEEMED
from app.models.booking import Booking
from app.models.enums import BookingStatus, DiscountType, PromotionSource, PromotionStatus
from app.models.promotion import BookingPromotion, Promotion
from app.services.currency import format_vnd
from app.services.pricing import ZERO, money
from app.utils.dates import ensure_utc

logger = structlog.get_logger()

# Bookings in these states do not count as a use of the code
_NON_COUNTING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.REJECTED)


@dataclass(frozen=True)
class PromotionQuote:
    promotion: Promotion
    discount_amount: Decimal
    applied_by: PromotionSource


def normalize_code(code: str) -> str:
    return code.strip().upper()


def discount_for(promotion: Promotion, base_amount: Decimal) -> Decimal:
    """Discount on the rental base amount. Never more than the base itself."""
    value = Decimal(promotion.discount_value)
    if promotion.discount_type == DiscountType.PERCENTAGE:
        discount = base_amount * value / Decimal(100)
        if promotion.max_discount is not None:
            discount = min(discount, Decimal(promotion.max_discount))
    else:
        discount = value
    return money(max(ZERO, min(discount, base_amount)))


def check_promotion(
    promotion: Promotion | None,
    *,
    base_amount: Decimal,
    total_hours: int,
    user_uses: int,
    now: datetime,
) -> Rejection | None:
    """Apply the promotion rules in order; the first failing rule wins."""
    if promotion is None:
        return Rejection("promotion_not_found", "Invalid promotion code.", "promotion_code")
    if promotion.status != PromotionStatus.ACTIVE:
        return Rejection("promotion_inactive", "This promotion is not currently active.", "promotion_code")
    if not (ensure_utc(promotion.start_date) <= now <= ensure_utc(promotion.end_date)):
        return Rejection("promotion_not_in_window", "This promotion is not valid at this time.", "promotion_code")
    if base_amount < Decimal(promotion.min_amount or 0):
        return Rejection(
            "promotion_min_amount",
            f"Minimum order amount of {format_vnd(promotion.min_amount)} required.",
            "promotion_code",
        )
    if total_hours < (promotion.min_rental_hours or 0):
        return Rejection(
            "promotion_min_hours",
            f"Minimum rental duration of {promotion.min_rental_hours} hours required.",
            "promotion_code",
        )
    if promotion.max_uses is not None and promotion.used_count >= promotion.max_uses:
        return Rejection("promotion_exhausted", "This promotion has reached its usage limit.", "promotion_code")
    if user_uses >= promotion.max_uses_per_user:
        return Rejection(
            "promotion_user_limit",
            "You have already used this promotion the maximum number of times.",
            "promotion_code",
        )
    return None


async def count_user_uses(db: AsyncSession, promotion_id: int, user_id: int | None) -> int:
    if user_id is None:
        return 0
    result = await db.execute(
        select(func.count(BookingPromotion.id))
        .join(Booking, Booking.id == BookingPromotion.booking_id)
        .where(
            BookingPromotion.promotion_id == promotion_id,
            Booking.customer_id == user_id,
            Booking.status.not_in(_NON_COUNTING_STATUSES),
        )
    )
    return result.scalar() or 0


async def find_by_code(db: AsyncSession, code: str) -> Promotion | None:
    result = await db.execute(select(Promotion).where(Promotion.code == normalize_code(code)))
    return result.scalar_one_or_none()


async def validate(
    db: AsyncSession,
    code: str,
    *,
    base_amount: Decimal,
    total_hours: int,
    user_id: int | None,
    now: datetime,
) -> PromotionQuote | Rejection:
    promotion = await find_by_code(db, code)
    user_uses = await count_user_uses(db, promotion.id, user_id) if promotion else 0
    rejection = check_promotion(
        promotion, base_amount=base_amount, total_hours=total_hours, user_uses=user_uses, now=now
    )
    if rejection:
        logger.info("promotion_rejected", code=normalize_code(code), reason=rejection.code)
        return rejection
    return PromotionQuote(promotion, discount_for(promotion, base_amount), PromotionSource.CODE)


async def best_auto_apply(
    db: AsyncSession,
    *,
    base_amount: Decimal,
    total_hours: int,
    user_id: int | None,
    now: datetime,
) -> PromotionQuote | None:
    """Highest priority auto-apply promotion that validates; ties go to the larger discount."""
    result = await db.execute(
        select(Promotion).where(
            Promotion.is_auto_apply.is_(True),
            Promotion.status == PromotionStatus.ACTIVE,
        )
    )
    best: PromotionQuote | None = None
    for promotion in result.scalars().all():
        user_uses = await count_user_uses(db, promotion.id, user_id)
        if check_promotion(
            promotion, base_amount=base_amount, total_hours=total_hours, user_uses=user_uses, now=now
        ):
            continue
        quote = PromotionQuote(promotion, discount_for(promotion, base_amount), PromotionSource.AUTO)
        if best is None or (promotion.priority, quote.discount_amount) > (
            best.promotion.priority,
            best.discount_amount,
        ):
            best = quote
    return best


async def redeem(db: AsyncSession, promotion_id: int) -> bool:
    """Atomically take one use of the promotion.

    The cap check and the increment are one UPDATE statement, so concurrent
    checkouts can never push used_count past max_uses.
    """
    result = await db.execute(
        update(Promotion)
        .where(
            Promotion.id == promotion_id,
            Promotion.status == PromotionStatus.ACTIVE,
            or_(Promotion.max_uses.is_(None), Promotion.used_count < Promotion.max_uses),
        )
        .values(used_count=Promotion.used_count + 1)
    )
    return result.rowcount == 1


def snapshot(promotion: Promotion) -> dict:
    return {
        "name": promotion.name,
        "description": promotion.description,
        "discount_type": getattr(promotion.discount_type, "value", promotion.discount_type),
        "discount_value": str(promotion.discount_value),
        "max_discount": str(promotion.max_discount) if promotion.max_discount is not None else None,
        "min_amount": str(promotion.min_amount),
        "min_rental_hours": promotion.min_rental_hours,
    }


def build_booking_promotion(quote: PromotionQuote) -> BookingPromotion:
    PROMOTIONS_REDEEMED.labels(applied_by=quote.applied_by.value).inc()
    return BookingPromotion(
        promotion_id=quote.promotion.id,
        code=quote.promotion.code,
        discount_amount=quote.discount_amount,
        promotion_snapshot=snapshot(quote.promotion),
        applied_by=quote.applied_by,
    )


async def find_expired_promotions(db: AsyncSession, now: datetime, limit: int = 100) -> list[Promotion]:
    """Promotions past their end date or out of uses that are not archived yet."""
    result = await db.execute(
        select(Promotion)
        .where(
            Promotion.status != PromotionStatus.ARCHIVED,
            or_(
                Promotion.end_date < now,
                Promotion.max_uses.is_not(None) & (Promotion.used_count >= Promotion.max_uses),
            ),
        )
        .order_by(Promotion.id)
        .limit(limit)
    )
    return list(result.scalars().all())
