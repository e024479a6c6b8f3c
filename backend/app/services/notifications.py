"""Booking notifications: an outbox table written inside the booking transaction
and a dispatcher that delivers queued rows by email through Resend."""

from html import escape

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.models.booking import Booking
from app.models.enums import NotificationKind, NotificationStatus
from app.models.notification import Notification
from app.services.currency import format_vnd
from app.utils.dates import utcnow
from app.utils.log_mask import mask_email

logger = structlog.get_logger()

RESEND_API_URL = "https://api.resend.com/emails"
MAX_DELIVERY_ATTEMPTS = 5

_email_client: httpx.AsyncClient | None = None


def _get_email_client() -> httpx.AsyncClient:
    global _email_client
    if _email_client is None or _email_client.is_closed:
        _email_client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
        )
    return _email_client


async def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send an email via Resend API.

    If RESEND_API_KEY is not configured, logs and returns True (dev mode).
    """
    if not settings.RESEND_API_KEY:
        logger.info("email_send_dev_mode", to=mask_email(to_email), subject=subject)
        return True

    try:
        client = _get_email_client()
        response = await client.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            json={
                "from": settings.EMAIL_FROM,
                "to": [to_email],
                "subject": subject,
                "html": body,
            },
        )
    except httpx.HTTPError as exc:
        logger.error("email_send_error", to=mask_email(to_email), subject=subject, error=str(exc))
        return False

    if response.is_success:
        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True
    logger.error(
        "email_send_failed",
        to=mask_email(to_email),
        subject=subject,
        status_code=response.status_code,
    )
    return False


async def enqueue_booking_notification(
    db: AsyncSession, booking_id: int, kind: NotificationKind
) -> Notification:
    """Queue an email for the booking's customer. Delivered by ``dispatch_pending``."""
    result = await db.execute(select(Booking.customer_id).where(Booking.id == booking_id))
    customer_id = result.scalar_one()
    notification = Notification(booking_id=booking_id, user_id=customer_id, kind=kind.value)
    db.add(notification)
    await db.flush()
    logger.info("notification_enqueued", booking_id=booking_id, kind=kind.value)
    return notification


def render(kind: str, booking: Booking, customer_name: str) -> tuple[str, str]:
    """Subject and HTML body for a booking email."""
    name = escape(customer_name)
    code = escape(booking.booking_code)
    pickup = booking.pickup_datetime.strftime("%d/%m/%Y %H:%M")
    return_ = booking.return_datetime.strftime("%d/%m/%Y %H:%M")
    total = format_vnd(booking.charge.total_amount) if booking.charge else ""

    if kind == NotificationKind.CONFIRMATION:
        subject = f"Booking {booking.booking_code} received"
        lead = "Thank you for your booking."
    elif kind == NotificationKind.REMINDER:
        subject = f"Reminder: your rental {booking.booking_code} starts tomorrow"
        lead = "This is a reminder that your rental starts in about 24 hours."
    else:
        subject = f"Booking {booking.booking_code} cancelled"
        reason = escape(booking.cancellation_reason or booking.rejection_reason or "")
        lead = f"Your booking has been cancelled. Reason: {reason}"

    body = (
        f"<p>Hello {name},</p>"
        f"<p>{lead}</p>"
        f"<p>Booking: {code}<br>Pickup: {pickup}<br>Return: {return_}<br>Total: {total}</p>"
        f"<p><a href=\"{settings.FRONTEND_URL}/customer/bookings/{booking.id}\">View booking</a></p>"
    )
    return subject, body


async def dispatch_pending(db: AsyncSession, limit: int = 50) -> int:
    """Deliver queued notifications, committing after each one. Returns the number sent."""
    result = await db.execute(
        select(Notification)
        .where(
            Notification.status == NotificationStatus.QUEUED,
            Notification.attempts < MAX_DELIVERY_ATTEMPTS,
        )
        .options(selectinload(Notification.booking), selectinload(Notification.user))
        .order_by(Notification.id)
        .limit(limit)
    )
    sent = 0
    for notification in result.scalars().all():
        subject, body = render(notification.kind, notification.booking, notification.user.name)
        delivered = await send_email(notification.user.email, subject, body)
        notification.attempts += 1
        if delivered:
            notification.status = NotificationStatus.SENT
            notification.sent_at = utcnow()
            sent += 1
        elif notification.attempts >= MAX_DELIVERY_ATTEMPTS:
            notification.status = NotificationStatus.FAILED
            notification.last_error = "delivery attempts exhausted"
        await db.commit()
    return sent
