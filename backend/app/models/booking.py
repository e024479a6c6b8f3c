from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import BookingStatus
from app.utils.dates import utcnow


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("pickup_datetime < return_datetime", name="ck_booking_period_order"),
        Index("ix_booking_customer_created", "customer_id", "created_at"),
        Index("ix_booking_car_period", "car_id", "pickup_datetime", "return_datetime"),
        Index("ix_booking_status_pickup", "status", "pickup_datetime"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    car_id: Mapped[int] = mapped_column(ForeignKey("cars.id", ondelete="RESTRICT"), nullable=False)
    driver_id: Mapped[int | None] = mapped_column(
        ForeignKey("driver_profiles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    pickup_location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)
    return_location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)

    # Period
    pickup_datetime: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    return_datetime: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_pickup_datetime: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_return_datetime: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Rates copied from the car at booking time. Never re-read from the car afterwards.
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    daily_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    daily_hour_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    # Driver service
    with_driver: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    driver_hourly_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    driver_daily_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    driver_daily_hour_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_driver_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    driver_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Delivery service
    is_delivery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_lat: Mapped[float | None] = mapped_column(Numeric(10, 7), nullable=True)
    delivery_lng: Mapped[float | None] = mapped_column(Numeric(10, 7), nullable=True)
    delivery_distance: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    delivery_fee_per_km: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    with_insurance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[BookingStatus] = mapped_column(String(20), nullable=False, default=BookingStatus.PENDING, index=True)
    customer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Transition metadata. Each timestamp is written once, on the transition that owns it.
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    charge: Mapped["BookingCharge"] = relationship(
        "BookingCharge", back_populates="booking", uselist=False, lazy="selectin", cascade="all, delete-orphan"
    )
    promotions: Mapped[list["BookingPromotion"]] = relationship(
        "BookingPromotion", back_populates="booking", lazy="selectin", cascade="all, delete-orphan"
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment", back_populates="booking", lazy="selectin", order_by="Payment.id"
    )
    customer: Mapped["User"] = relationship("User", foreign_keys=[customer_id], lazy="raise")
    car: Mapped["Car"] = relationship("Car", lazy="raise")
    driver: Mapped["DriverProfile | None"] = relationship("DriverProfile", lazy="raise")
