"""Tests for payment processing, gateway callbacks and refunds."""

from decimal import Decimal
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
import stripe
from sqlalchemy import func, select

from app.config import settings
from app.database import get_db
from app.exceptions import GatewayDeclined, GatewayError, PaymentPending, ValidationError
from app.main import app
from app.models.enums import BookingStatus, PaymentMethod, PaymentStatus, PaymentType
from app.models.payment import Payment
from app.models.webhook_event import ProcessedWebhookEvent
from app.services import payments
from app.services.currency import CurrencyService, RateCache
from app.services.gateway import (
    CAPTURE_COMPLETED,
    CAPTURE_FAILED,
    CaptureResult,
    GatewayOrder,
    GatewayRegistry,
    RefundResult,
    call_with_retry,
    get_gateway_registry,
)
from app.utils.dates import utcnow


class FlakyGateway:
    """Fails the first ``failures`` calls of each operation with a transient error."""

    name = "flaky"

    def __init__(self, failures: int = 0, refund_failures: int = 0, decline: bool = False, refund_decline: bool = False):
        self.failures = failures
        self.refund_failures = refund_failures
        self.decline = decline
        self.refund_decline = refund_decline
        self.create_calls = 0
        self.refund_calls = 0
        self.idempotency_keys: list[str] = []

    async def create_order(self, *, transaction_id, amount_usd, reference, description):
        self.create_calls += 1
        if self.create_calls <= self.failures:
            raise GatewayError("read timeout", gateway=self.name, operation="create_order")
        if self.decline:
            return GatewayOrder(order_id=None, declined=True, raw={"reason": "card_declined"})
        return GatewayOrder(order_id=f"FLAKY-{transaction_id}", approval_url="https://pay.example/approve")

    async def capture_order(self, order_id, *, idempotency_key):
        self.idempotency_keys.append(idempotency_key)
        return CaptureResult(status=CAPTURE_COMPLETED, capture_id=f"CAP-{order_id}")

    async def refund(self, capture_id, amount_usd, *, idempotency_key):
        self.refund_calls += 1
        self.idempotency_keys.append(idempotency_key)
        if self.refund_calls <= self.refund_failures:
            raise GatewayError("read timeout", gateway=self.name, operation="refund")
        if self.refund_decline:
            raise GatewayDeclined("The gateway refused the refund.")
        return RefundResult(refund_id=f"RF-{idempotency_key}", status="COMPLETED")


def _use_registry(registry: GatewayRegistry) -> None:
    app.dependency_overrides[get_gateway_registry] = lambda: registry


async def _process(client, booking, user, auth_headers, method="paypal", payment_type="full_payment", **extra):
    return await client.post(
        "/payment/process",
        json={"booking_id": booking.id, "payment_method": method, "payment_type": payment_type, **extra},
        headers=auth_headers(user),
    )


def _token(approval_url: str) -> str:
    return parse_qs(urlparse(approval_url).query)["token"][0]


# ============ /payment/process ============


@pytest.mark.asyncio
async def test_process_paypal_returns_approval_url(client, make_booking, customer, auth_headers):
    booking = await make_booking()
    resp = await _process(client, booking, customer, auth_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "pending"
    assert data["payment_method"] == "paypal"
    assert data["transaction_id"].startswith("TXN-")
    assert Decimal(data["amount_vnd"]) == Decimal("880000")
    assert Decimal(data["amount_usd"]) == Decimal("35.20")
    assert Decimal(data["exchange_rate"]) == Decimal("25000")
    assert _token(data["approval_url"]) == f"PAYPAL-MOCK-{data['transaction_id']}"
    assert booking.charge.amount_paid == Decimal("0")


@pytest.mark.asyncio
async def test_process_deposit_amount(client, db, car, make_booking, customer, auth_headers):
    booking = await make_booking(duration_hours=72)
    resp = await _process(client, booking, customer, auth_headers, payment_type="deposit")
    assert resp.status_code == 200
    # 2,640,000 total; the car deposit of 2,000,000 applies
    assert Decimal(resp.json()["amount_vnd"]) == Decimal("2000000")
    assert Decimal(resp.json()["amount_usd"]) == Decimal("80.00")


@pytest.mark.asyncio
async def test_process_partial_over_balance(client, make_booking, customer, auth_headers):
    booking = await make_booking()
    resp = await _process(client, booking, customer, auth_headers, payment_type="partial", amount="900000")
    assert resp.status_code == 422
    assert "amount" in resp.json()["errors"]


@pytest.mark.asyncio
async def test_process_cash_not_supported(client, make_booking, customer, auth_headers):
    booking = await make_booking()
    resp = await _process(client, booking, customer, auth_headers, method="cash")
    assert resp.status_code == 422
    assert "payment_method" in resp.json()["errors"]


@pytest.mark.asyncio
async def test_process_someone_elses_booking(client, make_booking, other_customer, auth_headers):
    booking = await make_booking()
    resp = await _process(client, booking, other_customer, auth_headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_process_cancelled_booking(client, make_booking, customer, auth_headers):
    booking = await make_booking(status=BookingStatus.CANCELLED)
    resp = await _process(client, booking, customer, auth_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_process_declined_marks_payment_failed(client, db, make_booking, customer, auth_headers):
    _use_registry(GatewayRegistry({PaymentMethod.PAYPAL: FlakyGateway(decline=True)}))
    booking = await make_booking()
    resp = await _process(client, booking, customer, auth_headers)
    assert resp.status_code == 402
    payment = (await db.execute(select(Payment).where(Payment.transaction_id == resp.json()["transaction_id"]))).scalar_one()
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_transient_failures_are_retried(client, make_booking, customer, auth_headers):
    gateway = FlakyGateway(failures=2)
    _use_registry(GatewayRegistry({PaymentMethod.PAYPAL: gateway}))
    booking = await make_booking()
    resp = await _process(client, booking, customer, auth_headers)
    assert resp.status_code == 200
    assert gateway.create_calls == 3


@pytest.mark.asyncio
async def test_exhausted_retries_leave_payment_pending(client, db, make_booking, customer, auth_headers):
    gateway = FlakyGateway(failures=10)
    _use_registry(GatewayRegistry({PaymentMethod.PAYPAL: gateway}))
    booking = await make_booking()
    resp = await _process(client, booking, customer, auth_headers)

    assert resp.status_code == 202
    data = resp.json()
    assert data["status"] == "pending"
    assert gateway.create_calls == settings.GATEWAY_MAX_ATTEMPTS

    payment = (await db.execute(select(Payment).where(Payment.transaction_id == data["transaction_id"]))).scalar_one()
    assert payment.status == PaymentStatus.PENDING
    assert booking.charge.amount_paid == Decimal("0")


@pytest.mark.asyncio
async def test_call_with_retry_raises_payment_pending():
    calls = 0

    async def always_times_out():
        nonlocal calls
        calls += 1
        raise GatewayError("timeout")

    with pytest.raises(PaymentPending) as exc_info:
        await call_with_retry("capture_order", "paypal", always_times_out, transaction_id="TXN-1")
    assert exc_info.value.transaction_id == "TXN-1"
    assert calls == settings.GATEWAY_MAX_ATTEMPTS


# ============ PayPal callbacks ============


@pytest.mark.asyncio
async def test_paypal_success_captures_and_confirms(client, make_booking, customer, auth_headers):
    booking = await make_booking()
    data = (await _process(client, booking, customer, auth_headers)).json()

    resp = await client.get("/payment/paypal/success", params={"token": _token(data["approval_url"])})
    assert resp.status_code == 200
    callback = resp.json()
    assert callback["status"] == "success"
    assert callback["booking_status"] == "confirmed"
    assert Decimal(callback["amount_paid"]) == Decimal("880000")
    assert Decimal(callback["balance_due"]) == Decimal("0")
    assert callback["redirect_url"].endswith(f"/customer/bookings/{booking.id}?payment=success")

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.confirmed_by is None


@pytest.mark.asyncio
async def test_paypal_success_replay_is_idempotent(client, make_booking, customer, auth_headers):
    booking = await make_booking()
    data = (await _process(client, booking, customer, auth_headers)).json()
    params = {"token": _token(data["approval_url"])}

    first = await client.get("/payment/paypal/success", params=params)
    second = await client.get("/payment/paypal/success", params=params)
    assert first.status_code == second.status_code == 200
    assert Decimal(second.json()["amount_paid"]) == Decimal("880000")
    assert booking.charge.amount_paid == Decimal("880000")


@pytest.mark.asyncio
async def test_paypal_cancel(client, db, make_booking, customer, auth_headers):
    booking = await make_booking()
    data = (await _process(client, booking, customer, auth_headers)).json()

    resp = await client.get("/payment/paypal/cancel", params={"token": _token(data["approval_url"])})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["booking_status"] == "pending"

    payment = await db.get(Payment, data["payment_id"])
    assert payment.status == PaymentStatus.CANCELLED


@pytest.mark.asyncio
async def test_paypal_success_unknown_token(client):
    resp = await client.get("/payment/paypal/success", params={"token": "PAYPAL-UNKNOWN"})
    assert resp.status_code == 404


# ============ capture reconciliation ============


@pytest.mark.asyncio
async def test_confirm_capture_twice_counts_money_once(db, make_booking, customer, currency, registry):
    booking = await make_booking()
    payment = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.PARTIAL, amount_vnd=Decimal("300000"), currency=currency,
    )
    await payments.start_gateway_payment(db, booking, payment, registry.for_method(PaymentMethod.PAYPAL))
    result = CaptureResult(status=CAPTURE_COMPLETED, capture_id="CAP-1")

    await payments.confirm_capture(db, payment.transaction_id, result, utcnow())
    await payments.confirm_capture(db, payment.transaction_id, result, utcnow())

    charge = booking.charge
    assert charge.amount_paid == Decimal("300000.00")
    assert charge.balance_due == charge.total_amount - charge.amount_paid
    assert payment.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_capture_does_not_touch_charge(db, make_booking, customer, currency, registry):
    booking = await make_booking()
    payment = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.FULL_PAYMENT, amount_vnd=Decimal("880000"), currency=currency,
    )
    await payments.confirm_capture(db, payment.transaction_id, CaptureResult(status=CAPTURE_FAILED), utcnow())
    assert payment.status == PaymentStatus.FAILED
    assert booking.charge.amount_paid == Decimal("0")
    assert booking.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_auto_confirm_on_full_balance(db, make_booking, customer, currency, registry, monkeypatch):
    monkeypatch.setattr(settings, "BOOKING_AUTO_CONFIRM", "on_full_balance")
    booking = await make_booking()
    gateway = registry.for_method(PaymentMethod.PAYPAL)

    partial = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.PARTIAL, amount_vnd=Decimal("300000"), currency=currency,
    )
    await payments.start_gateway_payment(db, booking, partial, gateway)
    await payments.capture_and_confirm(db, partial.transaction_id, gateway, utcnow())
    assert booking.status == BookingStatus.PENDING

    rest = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.FULL_PAYMENT, amount_vnd=payments.amount_for(booking.charge, PaymentType.FULL_PAYMENT),
        currency=currency,
    )
    await payments.start_gateway_payment(db, booking, rest, gateway)
    await payments.capture_and_confirm(db, rest.transaction_id, gateway, utcnow())
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.charge.balance_due == Decimal("0")


@pytest.mark.asyncio
async def test_partial_capture_keeps_booking_pending(db, make_booking, customer, currency, registry):
    booking = await make_booking()
    gateway = registry.for_method(PaymentMethod.PAYPAL)
    payment = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.PARTIAL, amount_vnd=Decimal("1000"), currency=currency,
    )
    await payments.start_gateway_payment(db, booking, payment, gateway)
    await payments.capture_and_confirm(db, payment.transaction_id, gateway, utcnow())

    assert payment.status == PaymentStatus.COMPLETED
    assert booking.charge.amount_paid == Decimal("1000.00")
    assert booking.status == BookingStatus.PENDING
    assert booking.confirmed_at is None


@pytest.mark.asyncio
async def test_deposit_capture_confirms_booking(db, make_booking, customer, currency, registry):
    booking = await make_booking(duration_hours=72)
    gateway = registry.for_method(PaymentMethod.PAYPAL)
    deposit = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.DEPOSIT, amount_vnd=payments.amount_for(booking.charge, PaymentType.DEPOSIT),
        currency=currency,
    )
    await payments.start_gateway_payment(db, booking, deposit, gateway)
    await payments.capture_and_confirm(db, deposit.transaction_id, gateway, utcnow())

    assert booking.charge.balance_due == Decimal("640000.00")
    assert booking.status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_nothing_to_pay_once_settled(db, make_booking):
    booking = await make_booking()
    booking.charge.amount_paid = booking.charge.total_amount
    booking.charge.balance_due = Decimal("0")
    with pytest.raises(ValidationError):
        payments.amount_for(booking.charge, PaymentType.FULL_PAYMENT)


# ============ refunds ============


@pytest.mark.asyncio
async def test_refund_uses_original_exchange_rate(db, make_booking, customer, admin, registry):
    booking = await make_booking()
    paid_at_24k = CurrencyService(RateCache(60), fixed_rate=Decimal("24000"))
    gateway = registry.for_method(PaymentMethod.PAYPAL)

    payment = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.FULL_PAYMENT, amount_vnd=Decimal("880000"), currency=paid_at_24k,
    )
    await payments.start_gateway_payment(db, booking, payment, gateway)
    await payments.capture_and_confirm(db, payment.transaction_id, gateway, utcnow())
    assert payment.amount_usd == Decimal("36.67")

    # The live rate has since moved to 25000; the refund still uses 24000
    refund = await payments.record_refund(
        db, payment.id, Decimal("440000"), registry=registry, actor_id=admin.id, now=utcnow()
    )
    assert refund.payment_type == PaymentType.REFUND
    assert refund.parent_payment_id == payment.id
    assert refund.exchange_rate == Decimal("24000")
    assert refund.amount_usd == Decimal("18.33")
    assert refund.status == PaymentStatus.COMPLETED
    assert refund.gateway_capture_id == f"REFUND-MOCK-refund-{payment.transaction_id}-1"

    assert payment.refunded_amount_vnd == Decimal("440000.00")
    assert payment.status == PaymentStatus.COMPLETED
    charge = booking.charge
    assert charge.refund_amount == Decimal("440000.00")
    assert charge.amount_paid == Decimal("440000.00")
    assert charge.balance_due == charge.total_amount - charge.amount_paid

    second = await payments.record_refund(
        db, payment.id, Decimal("440000"), registry=registry, actor_id=admin.id, now=utcnow()
    )
    assert second.gateway_capture_id.endswith("-2")
    assert payment.status == PaymentStatus.REFUNDED

    with pytest.raises(ValidationError):
        await payments.record_refund(db, payment.id, Decimal("1"), registry=registry, actor_id=admin.id, now=utcnow())


@pytest.mark.asyncio
async def test_refund_more_than_paid_rejected(db, make_booking, customer, admin, currency, registry):
    booking = await make_booking()
    gateway = registry.for_method(PaymentMethod.PAYPAL)
    payment = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.PARTIAL, amount_vnd=Decimal("100000"), currency=currency,
    )
    await payments.start_gateway_payment(db, booking, payment, gateway)
    await payments.capture_and_confirm(db, payment.transaction_id, gateway, utcnow())

    with pytest.raises(ValidationError) as exc_info:
        await payments.record_refund(db, payment.id, Decimal("100001"), registry=registry, actor_id=admin.id, now=utcnow())
    assert "amount" in exc_info.value.errors


@pytest.mark.asyncio
async def test_pending_payment_cannot_be_refunded(db, make_booking, customer, admin, currency, registry):
    booking = await make_booking()
    payment = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.FULL_PAYMENT, amount_vnd=Decimal("880000"), currency=currency,
    )
    with pytest.raises(ValidationError):
        await payments.record_refund(db, payment.id, Decimal("1000"), registry=registry, actor_id=admin.id, now=utcnow())


async def _paid_in_full(db, booking, customer, currency, registry) -> Payment:
    gateway = registry.for_method(PaymentMethod.PAYPAL)
    payment = await payments.record_attempt(
        db, booking, user_id=customer.id, method=PaymentMethod.PAYPAL,
        payment_type=PaymentType.FULL_PAYMENT, amount_vnd=Decimal("880000"), currency=currency,
    )
    await payments.start_gateway_payment(db, booking, payment, gateway)
    await payments.capture_and_confirm(db, payment.transaction_id, gateway, utcnow())
    return payment


@pytest.mark.asyncio
async def test_pending_refund_holds_its_amount(db, make_booking, customer, admin, currency, registry):
    booking = await make_booking()
    payment = await _paid_in_full(db, booking, customer, currency, registry)
    unreachable = GatewayRegistry({PaymentMethod.PAYPAL: FlakyGateway(refund_failures=10)})

    with pytest.raises(PaymentPending):
        await payments.record_refund(
            db, payment.id, Decimal("880000"), registry=unreachable, actor_id=admin.id, now=utcnow()
        )
    assert payments.refund_headroom(booking, payment) == Decimal("0")

    # A second full refund while the first is still in flight would pay out twice
    with pytest.raises(ValidationError):
        await payments.record_refund(db, payment.id, Decimal("880000"), registry=registry, actor_id=admin.id, now=utcnow())
    with pytest.raises(ValidationError):
        await payments.record_refund(db, payment.id, Decimal("1"), registry=registry, actor_id=admin.id, now=utcnow())

    refunds = [p for p in booking.payments if p.parent_payment_id == payment.id]
    assert [p.status for p in refunds] == [PaymentStatus.PENDING]
    assert booking.charge.refund_amount == Decimal("0")


@pytest.mark.asyncio
async def test_reconcile_refund_resends_stored_key(db, make_booking, customer, admin, currency, registry):
    booking = await make_booking()
    payment = await _paid_in_full(db, booking, customer, currency, registry)
    gateway = FlakyGateway(refund_failures=settings.GATEWAY_MAX_ATTEMPTS)
    flaky = GatewayRegistry({PaymentMethod.PAYPAL: gateway})

    with pytest.raises(PaymentPending) as exc_info:
        await payments.record_refund(db, payment.id, Decimal("880000"), registry=flaky, actor_id=admin.id, now=utcnow())
    refund = await payments.get_payment_by_transaction(db, exc_info.value.transaction_id)
    assert refund.idempotency_key == f"refund-{payment.transaction_id}-1"
    assert await payments.find_pending_reconciliation(db, utcnow()) == [refund]

    settled = await payments.reconcile_refund(db, refund.id, registry=flaky, now=utcnow())
    assert settled.status == PaymentStatus.COMPLETED
    assert settled.gateway_capture_id == f"RF-refund-{payment.transaction_id}-1"
    assert set(gateway.idempotency_keys) == {refund.idempotency_key}
    assert gateway.refund_calls == settings.GATEWAY_MAX_ATTEMPTS + 1

    assert payment.status == PaymentStatus.REFUNDED
    assert booking.charge.refund_amount == Decimal("880000.00")
    assert booking.charge.amount_paid == Decimal("0")
    assert await payments.find_pending_reconciliation(db, utcnow()) == []

    # Already settled: nothing is sent again
    await payments.reconcile_refund(db, refund.id, registry=flaky, now=utcnow())
    assert gateway.refund_calls == settings.GATEWAY_MAX_ATTEMPTS + 1


@pytest.mark.asyncio
async def test_reconcile_declined_refund_releases_amount(db, make_booking, customer, admin, currency, registry):
    booking = await make_booking()
    payment = await _paid_in_full(db, booking, customer, currency, registry)
    gateway = FlakyGateway(refund_failures=settings.GATEWAY_MAX_ATTEMPTS, refund_decline=True)
    flaky = GatewayRegistry({PaymentMethod.PAYPAL: gateway})

    with pytest.raises(PaymentPending) as exc_info:
        await payments.record_refund(db, payment.id, Decimal("300000"), registry=flaky, actor_id=admin.id, now=utcnow())
    refund = await payments.get_payment_by_transaction(db, exc_info.value.transaction_id)

    await payments.reconcile_refund(db, refund.id, registry=flaky, now=utcnow())
    assert refund.status == PaymentStatus.FAILED
    assert payments.refund_headroom(booking, payment) == Decimal("880000.00")
    assert booking.charge.refund_amount == Decimal("0")


@pytest.mark.asyncio
async def test_declined_refund_record_survives_the_request(
    client, db, session_factory, make_booking, customer, admin, auth_headers
):
    booking = await make_booking()
    data = (await _process(client, booking, customer, auth_headers)).json()
    await client.get("/payment/paypal/success", params={"token": _token(data["approval_url"])})
    await db.commit()

    # Use the real request-scoped session so its commit/rollback policy applies
    app.dependency_overrides.pop(get_db)
    _use_registry(GatewayRegistry({PaymentMethod.PAYPAL: FlakyGateway(refund_decline=True)}))
    with patch("app.database.async_session", session_factory):
        resp = await client.post(
            f"/admin/payments/{data['payment_id']}/refund",
            json={"amount": "200000", "reason": "Scratched bumper"},
            headers=auth_headers(admin),
        )
    assert resp.status_code == 402

    result = await db.execute(
        select(Payment)
        .where(Payment.parent_payment_id == data["payment_id"])
        .execution_options(populate_existing=True)
    )
    refund = result.scalar_one()
    assert refund.status == PaymentStatus.FAILED
    assert refund.notes == "The gateway refused the refund."


@pytest.mark.asyncio
async def test_cancel_after_payment_refunds_by_policy(client, db, make_booking, customer, auth_headers):
    booking = await make_booking(pickup_in_hours=10)
    data = (await _process(client, booking, customer, auth_headers)).json()
    await client.get("/payment/paypal/success", params={"token": _token(data["approval_url"])})

    resp = await client.post(
        f"/customer/bookings/{booking.id}/cancel",
        json={"reason": "Plans changed at the last minute"},
        headers=auth_headers(customer),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["refund_percentage"] == 50
    assert Decimal(body["refunded_amount"]) == Decimal("440000")
    assert body["refund_pending"] is False

    payment = await db.get(Payment, data["payment_id"])
    assert payment.refunded_amount_vnd == Decimal("440000.00")
    assert booking.charge.refund_amount == Decimal("440000.00")


@pytest.mark.asyncio
async def test_cancel_with_unreachable_gateway_still_cancels(client, db, make_booking, customer, auth_headers):
    booking = await make_booking(pickup_in_hours=48)
    data = (await _process(client, booking, customer, auth_headers)).json()
    await client.get("/payment/paypal/success", params={"token": _token(data["approval_url"])})

    gateway = FlakyGateway(refund_failures=10)
    _use_registry(GatewayRegistry({PaymentMethod.PAYPAL: gateway}))
    resp = await client.post(
        f"/customer/bookings/{booking.id}/cancel",
        json={"reason": "My flight was rescheduled"},
        headers=auth_headers(customer),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "cancelled"
    assert body["refund_pending"] is True
    assert Decimal(body["refunded_amount"]) == Decimal("0")
    # Every retry carried the same idempotency key
    assert len(set(gateway.idempotency_keys)) == 1
    assert gateway.refund_calls == settings.GATEWAY_MAX_ATTEMPTS


# ============ Stripe webhook ============


def _intent_event(event_id: str, event_type: str, intent_id: str) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": {"id": intent_id}}}


@pytest.mark.asyncio
async def test_stripe_webhook_completes_payment(client, db, make_booking, customer, auth_headers):
    booking = await make_booking()
    data = (await _process(client, booking, customer, auth_headers, method="credit_card")).json()
    assert data["client_secret"].startswith("pi_mock_")
    intent_id = f"pi_mock_{data['transaction_id']}"

    event = _intent_event("evt_1", "payment_intent.succeeded", intent_id)
    with patch("app.payments.routes.verify_webhook_signature", return_value=event):
        resp = await client.post("/payment/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1"})
        assert resp.json() == {"status": "ok"}
        replay = await client.post("/payment/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1"})
        assert replay.json() == {"status": "already_processed"}

    payment = await db.get(Payment, data["payment_id"])
    assert payment.status == PaymentStatus.COMPLETED
    assert booking.charge.amount_paid == Decimal("880000.00")
    assert booking.status == BookingStatus.CONFIRMED
    count = await db.execute(select(func.count()).select_from(ProcessedWebhookEvent))
    assert count.scalar() == 1


@pytest.mark.asyncio
async def test_stripe_webhook_payment_failed(client, db, make_booking, customer, auth_headers):
    booking = await make_booking()
    data = (await _process(client, booking, customer, auth_headers, method="credit_card")).json()
    event = _intent_event("evt_2", "payment_intent.payment_failed", f"pi_mock_{data['transaction_id']}")
    with patch("app.payments.routes.verify_webhook_signature", return_value=event):
        resp = await client.post("/payment/webhooks/stripe", content=b"{}")
    assert resp.json() == {"status": "ok"}
    payment = await db.get(Payment, data["payment_id"])
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_stripe_webhook_unknown_intent(client):
    event = _intent_event("evt_3", "payment_intent.succeeded", "pi_unknown")
    with patch("app.payments.routes.verify_webhook_signature", return_value=event):
        resp = await client.post("/payment/webhooks/stripe", content=b"{}")
    assert resp.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_stripe_webhook_bad_signature(client):
    error = stripe.SignatureVerificationError("No signatures found", "t=1")
    with patch("app.payments.routes.verify_webhook_signature", side_effect=error):
        resp = await client.post("/payment/webhooks/stripe", content=b"{}")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_stripe_webhook_without_secret(client):
    resp = await client.post("/payment/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1"})
    assert resp.status_code == 501


@pytest.mark.asyncio
async def test_stripe_webhook_payload_too_large(client):
    resp = await client.post("/payment/webhooks/stripe", content=b"x" * 70_000)
    assert resp.status_code == 413


# ============ read endpoints ============


@pytest.mark.asyncio
async def test_exchange_rate_endpoint(client):
    resp = await client.get("/payment/exchange-rate")
    assert resp.status_code == 200
    data = resp.json()
    assert Decimal(data["rate"]) == Decimal("25000")
    assert data["mode"] == "fixed"
    assert Decimal(data["sample_usd"]) == Decimal("40.00")
    assert data["formatted_vnd"] == "1.000.000 ₫"
    assert data["formatted_usd"] == "$40.00"


@pytest.mark.asyncio
async def test_payment_detail_permissions(client, make_booking, customer, other_customer, owner, auth_headers):
    booking = await make_booking()
    data = (await _process(client, booking, customer, auth_headers)).json()
    url = f"/payment/{data['payment_id']}"

    resp = await client.get(url, headers=auth_headers(customer))
    assert resp.status_code == 200
    assert resp.json()["transaction_id"] == data["transaction_id"]
    assert resp.json()["payment_type"] == "full_payment"

    assert (await client.get(url, headers=auth_headers(owner))).status_code == 200
    assert (await client.get(url, headers=auth_headers(other_customer))).status_code == 403
    assert (await client.get("/payment/99999", headers=auth_headers(customer))).status_code == 404
