"""Prometheus business metrics for the rental platform."""

from prometheus_client import Counter, Histogram

# Booking lifecycle counters
BOOKINGS_CREATED = Counter(
    "carrental_bookings_created_total",
    "Total bookings created",
    ["with_driver", "is_delivery"],
)
BOOKINGS_TRANSITIONS = Counter(
    "carrental_booking_transitions_total",
    "Booking status transitions applied",
    ["from_status", "to_status"],
)
BOOKINGS_CANCELLED = Counter(
    "carrental_bookings_cancelled_total",
    "Total bookings cancelled",
    ["cancelled_by", "free"],
)
BOOKING_REJECTIONS = Counter(
    "carrental_booking_rejections_total",
    "Charge computations refused for a business reason",
    ["code"],
)

# Promotions
PROMOTIONS_REDEEMED = Counter(
    "carrental_promotions_redeemed_total",
    "Promotion redemptions",
    ["applied_by"],
)

# Payment counters
PAYMENTS_CAPTURED = Counter(
    "carrental_payments_captured_total",
    "Total payments captured",
    ["payment_method"],
)
PAYMENTS_REFUNDED = Counter(
    "carrental_payments_refunded_total",
    "Total payments refunded",
    ["payment_method"],
)
PAYMENTS_PENDING_RECONCILIATION = Counter(
    "carrental_payments_pending_reconciliation_total",
    "Gateway calls that exhausted retries and left a payment pending",
    ["operation"],
)

# Gateway API call duration
GATEWAY_CALL_DURATION = Histogram(
    "carrental_gateway_call_duration_seconds",
    "Duration of payment gateway API calls",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

# Exchange rate
EXCHANGE_RATE_REFRESHES = Counter(
    "carrental_exchange_rate_refreshes_total",
    "Exchange rate fetch attempts",
    ["status"],
)

# Scheduler job counters
SCHEDULER_JOB_RUNS = Counter(
    "carrental_scheduler_job_runs_total",
    "Total scheduler job executions",
    ["job_name", "status"],
)
