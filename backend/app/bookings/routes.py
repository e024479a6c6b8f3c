import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_user, get_optional_user
from app.exceptions import RejectedError, Rejection
from app.models.user import User
from app.schemas.booking import (
    BookingRequest,
    CalculateResponse,
    ChargeResponse,
    StoreResponse,
    charge_response,
)
from app.services import bookings
from app.utils.dates import utcnow
from app.utils.rate_limit import BOOKING_RATE_LIMIT, CALCULATE_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


@router.post("/calculate", response_model=CalculateResponse)
@limiter.limit(CALCULATE_RATE_LIMIT)
async def calculate_booking(
    request: Request,
    body: BookingRequest,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Price a prospective booking without saving anything."""
    result = await bookings.quote(db, body, user_id=user.id if user else None, now=utcnow())
    if isinstance(result, Rejection):
        raise RejectedError(result)
    return charge_response(result)


@router.post("/store", response_model=StoreResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(BOOKING_RATE_LIMIT)
async def store_booking(
    request: Request,
    body: BookingRequest,
    customer: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create the booking with its charge snapshot. Payment happens through /payment/process."""
    result = await bookings.store(db, body, customer, utcnow())
    if isinstance(result, Rejection):
        raise RejectedError(result)
    return StoreResponse(
        id=result.id,
        booking_code=result.booking_code,
        status=result.status,
        charge=ChargeResponse.model_validate(result.charge),
    )
