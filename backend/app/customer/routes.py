import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_user
from app.exceptions import DuplicateError, InvalidStateTransition, NotFoundError
from app.models.enums import BookingStatus
from app.models.review import Review
from app.models.user import User
from app.schemas.booking import (
    BookingListResponse,
    BookingResponse,
    CancelRequest,
    CancelResponse,
    CustomerDashboardResponse,
    booking_list_item,
    booking_response,
)
from app.schemas.review import ReviewCreateRequest, ReviewResponse
from app.services import booking_lifecycle
from app.services.audit import deny, record_audit
from app.services.booking_queries import (
    customer_dashboard_stats,
    get_booking,
    get_review,
    list_customer_bookings,
    lock_booking,
)
from app.services.gateway import GatewayRegistry, get_gateway_registry
from app.services.payments import refund_for_cancellation
from app.utils.dates import utcnow
from app.utils.rate_limit import BOOKING_RATE_LIMIT, LIST_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


@router.get("/bookings", response_model=BookingListResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def list_my_bookings(
    request: Request,
    status: BookingStatus | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items, total = await list_customer_bookings(db, user.id, status=status, limit=limit, offset=offset)
    return BookingListResponse(
        items=[booking_list_item(b) for b in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def show_my_booking(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if not booking_lifecycle.can_view(user, booking):
        raise await deny(db, user, "view_booking", booking.id)
    return booking_response(booking, booking.car.name)


@router.post("/bookings/{booking_id}/cancel", response_model=CancelResponse)
@limiter.limit(BOOKING_RATE_LIMIT)
async def cancel_my_booking(
    request: Request,
    booking_id: int,
    body: CancelRequest,
    user: User = Depends(get_current_user),
    registry: GatewayRegistry = Depends(get_gateway_registry),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a pending or confirmed booking.

    Cancellation is always allowed from those states; how close the pickup is
    only decides the refund percentage.
    """
    booking = await lock_booking(db, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if not booking_lifecycle.can_cancel(user, booking):
        raise await deny(db, user, "cancel_booking", booking.id)

    now = utcnow()
    policy = await booking_lifecycle.cancel(db, booking, user, body.reason, now)
    outcome = await refund_for_cancellation(
        db, booking, policy.refund_percentage, registry=registry, actor_id=user.id, now=now
    )
    await record_audit(
        db,
        "booking_cancelled",
        actor_id=user.id,
        booking_id=booking.id,
        detail=booking.cancellation_reason,
        metadata={"refund_percentage": policy.refund_percentage, "refunded_vnd": str(outcome.refunded_vnd)},
    )

    message = policy.message
    refund_pending = bool(outcome.pending_transactions or outcome.failed_payment_ids)
    if refund_pending:
        message = f"{message} Your refund is being processed and will be confirmed separately."
    return CancelResponse(
        id=booking.id,
        booking_code=booking.booking_code,
        status=booking.status,
        free_cancellation=policy.free,
        hours_until_pickup=round(policy.hours_until_pickup, 1),
        refund_percentage=policy.refund_percentage,
        message=message,
        refunded_amount=outcome.refunded_vnd,
        refund_pending=refund_pending,
    )


@router.get("/dashboard", response_model=CustomerDashboardResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def my_dashboard(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stats = await customer_dashboard_stats(db, user.id, utcnow())
    return CustomerDashboardResponse(**stats)


@router.post("/bookings/{booking_id}/review", response_model=ReviewResponse, status_code=201)
@limiter.limit("10/minute")
async def review_my_booking(
    request: Request,
    booking_id: int,
    body: ReviewCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Rate a completed rental. Each booking takes one review."""
    booking = await get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if booking.customer_id != user.id:
        raise await deny(db, user, "review_booking", booking.id)
    if BookingStatus(booking.status) != BookingStatus.COMPLETED:
        raise InvalidStateTransition("booking", BookingStatus(booking.status).value, "reviewed")
    if await get_review(db, booking.id) is not None:
        raise DuplicateError("This booking has already been reviewed.")

    review = Review(
        booking_id=booking.id,
        car_id=booking.car_id,
        customer_id=user.id,
        rating=body.rating,
        comment=body.comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        raise DuplicateError("This booking has already been reviewed.") from None
    logger.info("booking_reviewed", booking_id=booking.id, rating=body.rating)
    return review
