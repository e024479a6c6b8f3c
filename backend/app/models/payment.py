from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import PaymentMethod, PaymentStatus, PaymentType
from app.utils.dates import utcnow


class Payment(Base):
    """A single gateway transaction against a booking.

    ``amount_usd`` and ``exchange_rate`` are captured when the gateway order is
    created and are never recalculated.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount_vnd >= 0", name="ck_payment_amount_positive"),
        CheckConstraint("refunded_amount_vnd >= 0", name="ck_payment_refunded_positive"),
        Index("ix_payment_status_updated", "status", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    parent_payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True
    )
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(String(20), nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(String(20), nullable=False)
    amount_vnd: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    refunded_amount_vnd: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    status: Mapped[PaymentStatus] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING, index=True)

    gateway_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    gateway_capture_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Key sent with the last capture or refund call; reconciliation resends it unchanged
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="payments", lazy="raise")

    @property
    def refundable_amount_vnd(self) -> Decimal:
        return max(Decimal("0"), self.amount_vnd - (self.refunded_amount_vnd or Decimal("0")))
