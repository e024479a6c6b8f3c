from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import CarStatus
from app.utils.dates import utcnow


class Car(Base):
    __tablename__ = "cars"
    __table_args__ = (
        CheckConstraint("hourly_rate >= 0", name="ck_car_hourly_rate_positive"),
        CheckConstraint("daily_rate >= 0", name="ck_car_daily_rate_positive"),
        CheckConstraint(
            "daily_hour_threshold >= 1 AND daily_hour_threshold <= 24",
            name="ck_car_daily_hour_threshold_range",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    location_id: Mapped[int | None] = mapped_column(
        ForeignKey("locations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    license_plate: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    seats: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    status: Mapped[CarStatus] = mapped_column(String(20), nullable=False, default=CarStatus.AVAILABLE, index=True)

    # Rental rates (VND)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    daily_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    daily_hour_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    min_rental_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    overtime_fee_per_hour: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # Delivery
    is_delivery_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_fee_per_km: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    max_delivery_distance: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)

    rental_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    location: Mapped["Location | None"] = relationship("Location", lazy="raise")
