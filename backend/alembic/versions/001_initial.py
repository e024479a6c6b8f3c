"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Locations
    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("latitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("longitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # Cars
    op.create_table(
        "cars",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("brand", sa.String(100), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("license_plate", sa.String(20), nullable=False, unique=True),
        sa.Column("seats", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("status", sa.String(20), nullable=False, server_default="available"),
        sa.Column("hourly_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("daily_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("daily_hour_threshold", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("min_rental_hours", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("overtime_fee_per_hour", sa.Numeric(12, 2), nullable=True),
        sa.Column("is_delivery_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivery_fee_per_km", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_delivery_distance", sa.Numeric(8, 2), nullable=True),
        sa.Column("rental_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("hourly_rate >= 0", name="ck_car_hourly_rate_positive"),
        sa.CheckConstraint("daily_rate >= 0", name="ck_car_daily_rate_positive"),
        sa.CheckConstraint(
            "daily_hour_threshold >= 1 AND daily_hour_threshold <= 24",
            name="ck_car_daily_hour_threshold_range",
        ),
    )
    op.create_index("ix_cars_owner_id", "cars", ["owner_id"])
    op.create_index("ix_cars_location_id", "cars", ["location_id"])
    op.create_index("ix_cars_status", "cars", ["status"])

    # Driver profiles
    op.create_table(
        "driver_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("hourly_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("daily_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("daily_hour_threshold", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("overtime_fee_per_hour", sa.Numeric(12, 2), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("is_available_for_booking", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("completed_trips", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_hours_driven", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_driver_profiles_owner_id", "driver_profiles", ["owner_id"])

    # Bookings
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_code", sa.String(20), nullable=False, unique=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("car_id", sa.Integer(), sa.ForeignKey("cars.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("driver_id", sa.Integer(), sa.ForeignKey("driver_profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("pickup_location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("return_location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("pickup_datetime", sa.DateTime(timezone=True), nullable=False),
        sa.Column("return_datetime", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actual_pickup_datetime", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_return_datetime", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hourly_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("daily_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("daily_hour_threshold", sa.Integer(), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("with_driver", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("driver_hourly_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("driver_daily_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("driver_daily_hour_threshold", sa.Integer(), nullable=True),
        sa.Column("total_driver_hours", sa.Integer(), nullable=True),
        sa.Column("driver_notes", sa.Text(), nullable=True),
        sa.Column("is_delivery", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivery_address", sa.Text(), nullable=True),
        sa.Column("delivery_lat", sa.Numeric(10, 7), nullable=True),
        sa.Column("delivery_lng", sa.Numeric(10, 7), nullable=True),
        sa.Column("delivery_distance", sa.Numeric(8, 2), nullable=True),
        sa.Column("delivery_fee_per_km", sa.Numeric(12, 2), nullable=True),
        sa.Column("with_insurance", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("customer_notes", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("refund_percentage", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("pickup_datetime < return_datetime", name="ck_booking_period_order"),
    )
    op.create_index("ix_bookings_owner_id", "bookings", ["owner_id"])
    op.create_index("ix_bookings_driver_id", "bookings", ["driver_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_booking_customer_created", "bookings", ["customer_id", "created_at"])
    op.create_index("ix_booking_car_period", "bookings", ["car_id", "pickup_datetime", "return_datetime"])
    op.create_index("ix_booking_status_pickup", "bookings", ["status", "pickup_datetime"])

    # Booking charges
    op.create_table(
        "booking_charges",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("total_hours", sa.Integer(), nullable=False),
        sa.Column("total_days", sa.Integer(), nullable=False),
        sa.Column("billed_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("hourly_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("daily_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("base_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("delivery_fee", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("driver_fee_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("insurance_fee", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("extra_fee", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("extra_fee_details", sa.JSON(), nullable=True),
        sa.Column("discount_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False),
        sa.Column("vat_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("vat_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("balance_due", sa.Numeric(14, 2), nullable=False),
        sa.Column("refund_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.CheckConstraint("subtotal >= 0", name="ck_charge_subtotal_positive"),
        sa.CheckConstraint("amount_paid >= 0", name="ck_charge_amount_paid_positive"),
    )

    # Promotions
    op.create_table(
        "promotions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", sa.String(20), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_discount", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("min_rental_hours", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("max_uses_per_user", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("is_auto_apply", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("discount_value >= 0", name="ck_promotion_discount_value_positive"),
        sa.CheckConstraint("used_count >= 0", name="ck_promotion_used_count_positive"),
        sa.CheckConstraint("max_uses IS NULL OR used_count <= max_uses", name="ck_promotion_used_count_cap"),
    )
    op.create_index("ix_promotions_code", "promotions", ["code"], unique=True)
    op.create_index("ix_promotions_status", "promotions", ["status"])

    op.create_table(
        "booking_promotions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("promotion_id", sa.Integer(), sa.ForeignKey("promotions.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("code", sa.String(20), nullable=False),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("promotion_snapshot", sa.JSON(), nullable=False),
        sa.Column("applied_by", sa.String(10), nullable=False, server_default="code"),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("booking_id", "promotion_id", name="uq_booking_promotion"),
    )
    op.create_index("ix_booking_promotions_booking_id", "booking_promotions", ["booking_id"])
    op.create_index("ix_booking_promotions_promotion_id", "booking_promotions", ["promotion_id"])

    # Payments
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("parent_payment_id", sa.Integer(), sa.ForeignKey("payments.id", ondelete="SET NULL"), nullable=True),
        sa.Column("transaction_id", sa.String(64), nullable=False, unique=True),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("payment_type", sa.String(20), nullable=False),
        sa.Column("amount_vnd", sa.Numeric(14, 2), nullable=False),
        sa.Column("amount_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("exchange_rate", sa.Numeric(12, 4), nullable=False),
        sa.Column("refunded_amount_vnd", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("gateway_order_id", sa.String(255), nullable=True, unique=True),
        sa.Column("gateway_capture_id", sa.String(255), nullable=True),
        sa.Column("payer_id", sa.String(255), nullable=True),
        sa.Column("payer_email", sa.String(255), nullable=True),
        sa.Column("gateway_response", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount_vnd >= 0", name="ck_payment_amount_positive"),
        sa.CheckConstraint("refunded_amount_vnd >= 0", name="ck_payment_refunded_positive"),
    )
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"])
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_parent_payment_id", "payments", ["parent_payment_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    # Notification outbox
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False, server_default="email"),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "kind IN ('confirmation', 'reminder', 'cancellation')",
            name="ck_notification_kind",
        ),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notification_booking_kind", "notifications", ["booking_id", "kind"])
    op.create_index("ix_notification_status_created", "notifications", ["status", "created_at"])

    # Audit trail
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])
    op.create_index("ix_audit_logs_booking_id", "audit_logs", ["booking_id"])

    # Webhook idempotency
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("gateway", sa.String(20), nullable=False, server_default="stripe"),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_table("audit_logs")
    op.drop_table("notifications")
    op.drop_table("payments")
    op.drop_table("booking_promotions")
    op.drop_table("promotions")
    op.drop_table("booking_charges")
    op.drop_table("bookings")
    op.drop_table("driver_profiles")
    op.drop_table("cars")
    op.drop_table("locations")
    op.drop_table("users")
