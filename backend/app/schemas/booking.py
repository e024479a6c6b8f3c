from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.booking import Booking
from app.models.enums import BookingStatus, PromotionSource
from app.services.pricing import ChargeBreakdown
from app.utils.dates import ensure_utc


class BookingRequest(BaseModel):
    """Shared by /booking/calculate and /booking/store."""

    car_id: int
    pickup_datetime: datetime
    return_datetime: datetime
    pickup_location_id: int | None = None
    return_location_id: int | None = None
    with_driver: bool = False
    driver_id: int | None = None
    is_delivery: bool = False
    delivery_address: str | None = Field(None, max_length=500)
    delivery_lat: float | None = Field(None, ge=-90, le=90)
    delivery_lng: float | None = Field(None, ge=-180, le=180)
    delivery_distance: Decimal | None = Field(None, ge=0)
    with_insurance: bool = False
    promotion_code: str | None = Field(None, max_length=20)
    customer_notes: str | None = Field(None, max_length=2000)
    driver_notes: str | None = Field(None, max_length=2000)

    @field_validator("pickup_datetime", "return_datetime")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("promotion_code")
    @classmethod
    def blank_code_is_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip().upper()

    @model_validator(mode="after")
    def check_dependent_fields(self) -> "BookingRequest":
        if self.pickup_datetime >= self.return_datetime:
            raise ValueError("return_datetime must be after pickup_datetime")
        if self.with_driver and self.driver_id is None:
            raise ValueError("driver_id is required when with_driver is set")
        if self.is_delivery and not self.delivery_address:
            raise ValueError("delivery_address is required for delivery")
        if (self.delivery_lat is None) != (self.delivery_lng is None):
            raise ValueError("delivery_lat and delivery_lng must be given together")
        return self


class CancelRequest(BaseModel):
    reason: str = Field(max_length=1000)


class PromotionApplied(BaseModel):
    code: str
    name: str | None = None
    discount_amount: Decimal
    applied_by: PromotionSource


class ChargeResponse(BaseModel):
    total_hours: int
    total_days: int
    billed_days: int
    hourly_rate: Decimal
    daily_rate: Decimal
    base_amount: Decimal
    delivery_fee: Decimal
    driver_fee_amount: Decimal
    insurance_fee: Decimal
    extra_fee: Decimal
    extra_fee_details: list[dict] = []
    discount_amount: Decimal
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    deposit_amount: Decimal
    amount_paid: Decimal = Decimal("0")
    balance_due: Decimal
    refund_amount: Decimal = Decimal("0")

    model_config = {"from_attributes": True}


class CalculateResponse(BaseModel):
    charge: ChargeResponse
    promotion: PromotionApplied | None = None
    delivery_distance: Decimal | None = None
    driver_hours: int = 0


class PaymentSummary(BaseModel):
    id: int
    transaction_id: str
    payment_method: str
    payment_type: str
    amount_vnd: Decimal
    amount_usd: Decimal
    exchange_rate: Decimal
    refunded_amount_vnd: Decimal
    status: str
    paid_at: datetime | None = None

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: int
    booking_code: str
    status: BookingStatus
    customer_id: int
    car_id: int
    car_name: str | None = None
    driver_id: int | None = None
    pickup_datetime: datetime
    return_datetime: datetime
    actual_pickup_datetime: datetime | None = None
    actual_return_datetime: datetime | None = None
    with_driver: bool
    is_delivery: bool
    delivery_address: str | None = None
    with_insurance: bool
    customer_notes: str | None = None
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    rejection_reason: str | None = None
    refund_percentage: int | None = None
    created_at: datetime
    charge: ChargeResponse | None = None
    promotions: list[PromotionApplied] = []
    payments: list[PaymentSummary] = []


class BookingListItem(BaseModel):
    id: int
    booking_code: str
    status: BookingStatus
    car_id: int
    car_name: str | None = None
    pickup_datetime: datetime
    return_datetime: datetime
    total_amount: Decimal | None = None
    balance_due: Decimal | None = None
    created_at: datetime


class BookingListResponse(BaseModel):
    items: list[BookingListItem]
    total: int
    limit: int
    offset: int


class StoreResponse(BaseModel):
    id: int
    booking_code: str
    status: BookingStatus
    charge: ChargeResponse


class CancelResponse(BaseModel):
    id: int
    booking_code: str
    status: BookingStatus
    free_cancellation: bool
    hours_until_pickup: float
    refund_percentage: int
    message: str
    refunded_amount: Decimal = Decimal("0")
    refund_pending: bool = False


class CustomerDashboardResponse(BaseModel):
    total_bookings: int
    upcoming_bookings: int
    active_bookings: int
    completed_bookings: int
    total_spent: Decimal
    pending_reviews: int


# --- Projections. Callers load the aggregate; these only shape it. ---


def charge_response(breakdown: ChargeBreakdown) -> CalculateResponse:
    quote = breakdown.promotion
    promotion = None
    if quote is not None:
        promotion = PromotionApplied(
            code=quote.promotion.code,
            name=quote.promotion.name,
            discount_amount=quote.discount_amount,
            applied_by=quote.applied_by,
        )
    charge = ChargeResponse(
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
        discount_amount=breakdown.discount_amount,
        subtotal=breakdown.subtotal,
        vat_rate=breakdown.vat_rate,
        vat_amount=breakdown.vat_amount,
        total_amount=breakdown.total_amount,
        deposit_amount=breakdown.deposit_amount,
        balance_due=breakdown.total_amount,
    )
    return CalculateResponse(
        charge=charge,
        promotion=promotion,
        delivery_distance=breakdown.delivery_distance,
        driver_hours=breakdown.driver_hours,
    )


def booking_response(booking: Booking, car_name: str | None = None) -> BookingResponse:
    """Requires the charge, promotions and payments to be loaded (they are selectin)."""
    return BookingResponse(
        id=booking.id,
        booking_code=booking.booking_code,
        status=booking.status,
        customer_id=booking.customer_id,
        car_id=booking.car_id,
        car_name=car_name,
        driver_id=booking.driver_id,
        pickup_datetime=ensure_utc(booking.pickup_datetime),
        return_datetime=ensure_utc(booking.return_datetime),
        actual_pickup_datetime=booking.actual_pickup_datetime,
        actual_return_datetime=booking.actual_return_datetime,
        with_driver=booking.with_driver,
        is_delivery=booking.is_delivery,
        delivery_address=booking.delivery_address,
        with_insurance=booking.with_insurance,
        customer_notes=booking.customer_notes,
        confirmed_at=booking.confirmed_at,
        cancelled_at=booking.cancelled_at,
        cancellation_reason=booking.cancellation_reason,
        rejection_reason=booking.rejection_reason,
        refund_percentage=booking.refund_percentage,
        created_at=booking.created_at,
        charge=ChargeResponse.model_validate(booking.charge) if booking.charge else None,
        promotions=[
            PromotionApplied(
                code=bp.code,
                name=(bp.promotion_snapshot or {}).get("name"),
                discount_amount=bp.discount_amount,
                applied_by=bp.applied_by,
            )
            for bp in booking.promotions
        ],
        payments=[PaymentSummary.model_validate(p) for p in booking.payments],
    )


def booking_list_item(booking: Booking) -> BookingListItem:
    """Requires ``booking.car`` to be loaded."""
    charge = booking.charge
    return BookingListItem(
        id=booking.id,
        booking_code=booking.booking_code,
        status=booking.status,
        car_id=booking.car_id,
        car_name=booking.car.name,
        pickup_datetime=ensure_utc(booking.pickup_datetime),
        return_datetime=ensure_utc(booking.return_datetime),
        total_amount=charge.total_amount if charge else None,
        balance_due=charge.balance_due if charge else None,
        created_at=booking.created_at,
    )
