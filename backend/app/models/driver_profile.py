from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import DriverStatus


class DriverProfile(Base):
    __tablename__ = "driver_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    hourly_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    daily_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    daily_hour_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    overtime_fee_per_hour: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    status: Mapped[DriverStatus] = mapped_column(String(20), nullable=False, default=DriverStatus.PENDING)
    is_available_for_booking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    completed_trips: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_hours_driven: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    user: Mapped["User"] = relationship("User", foreign_keys=[user_id], lazy="raise")
