"""Tests for the rental pricing engine."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.config import settings
from app.exceptions import Rejection
from app.models.booking_charge import BookingCharge
from app.services.pricing import (
    BookingDraft,
    RateCard,
    add_extra_fee,
    apply_totals,
    charge_from_breakdown,
    delivery_fee,
    overtime_fee,
    price_draft,
    rental_hours,
    tiered_amount,
    with_discount,
)

PICKUP = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
CAR_RATES = RateCard(Decimal("50000"), Decimal("800000"), 18)
DRIVER_RATES = RateCard(Decimal("30000"), Decimal("400000"), 10)


def _draft(hours: float = 22, **kwargs) -> BookingDraft:
    defaults = dict(
        pickup_datetime=PICKUP,
        return_datetime=PICKUP + timedelta(hours=hours),
        car_rates=CAR_RATES,
        car_deposit=Decimal("2000000"),
    )
    defaults.update(kwargs)
    return BookingDraft(**defaults)


# ============ rental_hours ============


def test_rental_hours_rounds_partial_hour_up():
    assert rental_hours(PICKUP, PICKUP + timedelta(hours=5, minutes=1)) == 6


def test_rental_hours_exact():
    assert rental_hours(PICKUP, PICKUP + timedelta(hours=48)) == 48


def test_rental_hours_rejects_return_before_pickup():
    result = rental_hours(PICKUP, PICKUP - timedelta(hours=1))
    assert isinstance(result, Rejection)
    assert result.code == "invalid_period"
    assert result.field == "return_datetime"


def test_rental_hours_rejects_equal_times():
    assert isinstance(rental_hours(PICKUP, PICKUP), Rejection)


# ============ tiered_amount ============


def test_22_hours_bills_one_full_day():
    result = tiered_amount(22, CAR_RATES)
    assert result.amount == Decimal("800000.00")
    assert result.billed_days == 1
    assert result.hourly_hours == 0


def test_remaining_hours_below_threshold_bill_hourly():
    # 1 day + 5 hours: 800000 + 5 * 50000
    result = tiered_amount(29, CAR_RATES)
    assert result.amount == Decimal("1050000.00")
    assert result.billed_days == 1
    assert result.hourly_hours == 5


def test_remaining_hours_at_threshold_round_up_to_day():
    result = tiered_amount(24 + 18, CAR_RATES)
    assert result.amount == Decimal("1600000.00")
    assert result.billed_days == 2


def test_whole_days_bill_daily():
    result = tiered_amount(72, CAR_RATES)
    assert result.amount == Decimal("2400000.00")
    assert result.billed_days == 3


def test_short_rental_is_purely_hourly():
    result = tiered_amount(4, CAR_RATES)
    assert result.amount == Decimal("200000.00")
    assert result.billed_days == 0
    assert result.hourly_hours == 4


# ============ price_draft ============


def test_price_draft_22_hours_totals():
    breakdown = price_draft(_draft(22))
    assert breakdown.total_hours == 22
    assert breakdown.total_days == 0
    assert breakdown.billed_days == 1
    assert breakdown.base_amount == Decimal("800000.00")
    assert breakdown.subtotal == Decimal("800000.00")
    assert breakdown.vat_amount == Decimal("80000.00")
    assert breakdown.total_amount == Decimal("880000.00")
    # Car deposit is capped at the total
    assert breakdown.deposit_amount == Decimal("880000.00")


def test_price_draft_deposit_below_total():
    breakdown = price_draft(_draft(72))
    assert breakdown.total_amount == Decimal("2640000.00")
    assert breakdown.deposit_amount == Decimal("2000000.00")


def test_price_draft_min_rental_hours():
    result = price_draft(_draft(3, min_rental_hours=4))
    assert isinstance(result, Rejection)
    assert result.code == "min_rental_hours"


def test_price_draft_with_driver():
    breakdown = price_draft(_draft(22, with_driver=True, driver_rates=DRIVER_RATES))
    # 22h >= driver threshold 10: one driver day
    assert breakdown.driver_fee_amount == Decimal("400000.00")
    assert breakdown.driver_hours == 22
    assert breakdown.subtotal == Decimal("1200000.00")


def test_price_draft_driver_without_rates_rejected():
    result = price_draft(_draft(22, with_driver=True))
    assert isinstance(result, Rejection)
    assert result.code == "driver_unavailable"


def test_price_draft_with_delivery():
    breakdown = price_draft(
        _draft(
            22,
            is_delivery=True,
            delivery_available=True,
            delivery_distance=Decimal("12.5"),
            delivery_fee_per_km=Decimal("10000"),
            max_delivery_distance=Decimal("30"),
        )
    )
    assert breakdown.delivery_fee == Decimal("125000.00")
    assert breakdown.delivery_distance == Decimal("12.5")
    assert breakdown.subtotal == Decimal("925000.00")


def test_insurance_percentage_mode(monkeypatch):
    monkeypatch.setattr(settings, "INSURANCE_MODE", "percentage")
    monkeypatch.setattr(settings, "INSURANCE_RATE", Decimal("0.05"))
    breakdown = price_draft(_draft(22, with_insurance=True))
    assert breakdown.insurance_fee == Decimal("40000.00")


def test_insurance_flat_mode(monkeypatch):
    monkeypatch.setattr(settings, "INSURANCE_MODE", "flat")
    monkeypatch.setattr(settings, "INSURANCE_FLAT_FEE", Decimal("150000"))
    breakdown = price_draft(_draft(22, with_insurance=True))
    assert breakdown.insurance_fee == Decimal("150000.00")


def test_insurance_ignored_when_not_requested(monkeypatch):
    monkeypatch.setattr(settings, "INSURANCE_MODE", "flat")
    breakdown = price_draft(_draft(22, with_insurance=False))
    assert breakdown.insurance_fee == Decimal("0")


def test_insurance_disabled_mode():
    breakdown = price_draft(_draft(22, with_insurance=True))
    assert breakdown.insurance_fee == Decimal("0")


# ============ delivery_fee ============


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"delivery_available": False}, "delivery_unavailable"),
        ({"delivery_available": True, "delivery_fee_per_km": None}, "delivery_fee_missing"),
        (
            {"delivery_available": True, "delivery_fee_per_km": Decimal("10000"), "delivery_distance": None},
            "delivery_distance_missing",
        ),
        (
            {
                "delivery_available": True,
                "delivery_fee_per_km": Decimal("10000"),
                "delivery_distance": Decimal("31"),
                "max_delivery_distance": Decimal("30"),
            },
            "delivery_too_far",
        ),
    ],
)
def test_delivery_rejections(kwargs, code):
    result = delivery_fee(_draft(22, is_delivery=True, **kwargs))
    assert isinstance(result, Rejection)
    assert result.code == code


def test_delivery_not_requested_is_free():
    assert delivery_fee(_draft(22, is_delivery=False, delivery_available=False)) == Decimal("0")


# ============ totals and discounts ============


def test_discount_larger_than_gross_clamps_subtotal_to_zero():
    breakdown = price_draft(_draft(4))
    priced = with_discount(breakdown, Decimal("999999999"), None, Decimal("2000000"))
    assert priced.discount_amount == breakdown.subtotal
    assert priced.subtotal == Decimal("0.00")
    assert priced.vat_amount == Decimal("0.00")
    assert priced.total_amount == Decimal("0.00")
    assert priced.deposit_amount == Decimal("0.00")


def test_total_is_subtotal_plus_vat():
    for hours in (4, 7, 22, 29, 45, 100):
        breakdown = price_draft(_draft(hours))
        discounted = with_discount(breakdown, Decimal("12345"), None, Decimal("2000000"))
        for priced in (breakdown, discounted):
            assert priced.subtotal >= 0
            assert priced.total_amount == priced.subtotal + priced.vat_amount


def test_apply_totals_custom_vat_rate():
    breakdown = price_draft(_draft(22))
    priced = apply_totals(breakdown, Decimal("0.08"))
    assert priced.vat_amount == Decimal("64000.00")
    assert priced.total_amount == Decimal("864000.00")


# ============ persisted charge ============


def test_charge_from_breakdown_sets_balance():
    charge = charge_from_breakdown(price_draft(_draft(22)))
    assert isinstance(charge, BookingCharge)
    assert charge.amount_paid == Decimal("0")
    assert charge.balance_due == Decimal("880000.00")


def test_add_extra_fee_reprices():
    charge = charge_from_breakdown(price_draft(_draft(22)))
    add_extra_fee(charge, "overtime", Decimal("200000"), "2 late hours")
    assert charge.extra_fee == Decimal("200000.00")
    assert charge.subtotal == Decimal("1000000.00")
    assert charge.vat_amount == Decimal("100000.00")
    assert charge.total_amount == Decimal("1100000.00")
    assert charge.balance_due == Decimal("1100000.00")
    assert charge.extra_fee_details == [
        {"type": "overtime", "amount": "200000.00", "description": "2 late hours"}
    ]


def test_add_extra_fee_ignores_zero():
    charge = charge_from_breakdown(price_draft(_draft(22)))
    add_extra_fee(charge, "cleaning", Decimal("0"), "none")
    assert charge.extra_fee_details == []
    assert charge.total_amount == Decimal("880000.00")


# ============ overtime ============


def test_overtime_rounds_up_late_hours():
    scheduled = PICKUP + timedelta(hours=22)
    hours, fee = overtime_fee(scheduled, scheduled + timedelta(hours=1, minutes=10), Decimal("100000"))
    assert hours == 2
    assert fee == Decimal("200000.00")


def test_overtime_on_time_is_free():
    scheduled = PICKUP + timedelta(hours=22)
    assert overtime_fee(scheduled, scheduled - timedelta(minutes=30), Decimal("100000")) == (0, Decimal("0"))


def test_overtime_without_rate_is_free():
    scheduled = PICKUP + timedelta(hours=22)
    assert overtime_fee(scheduled, scheduled + timedelta(hours=3), None) == (0, Decimal("0"))
