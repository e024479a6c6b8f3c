# APScheduler job store configuration.
# When REDIS_URL is available the job definitions are persisted in Redis so that
# several API workers share one schedule. Every job also takes a Redis lock before
# running, so only one worker executes a given run.
# Without Redis the default MemoryJobStore is used (dev/test).

from datetime import timedelta
from decimal import Decimal

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import delete

from app.database import async_session
from app.config import settings
from app.metrics import SCHEDULER_JOB_RUNS
from app.exceptions import PaymentPending
from app.models.enums import NotificationKind, PaymentStatus, PromotionStatus
from app.models.payment import Payment
from app.models.webhook_event import ProcessedWebhookEvent
from app.services.booking_queries import find_due_for_reminder
from app.services.currency import CurrencyFetchError, currency_service
from app.services.gateway import get_gateway_registry
from app.services.notifications import dispatch_pending, enqueue_booking_notification
from app.services.payments import find_pending_reconciliation, reconcile_payment
from app.services.promotions import find_expired_promotions
from app.utils.dates import utcnow

logger = structlog.get_logger()

_jobstores: dict = {}
if settings.REDIS_URL:
    try:
        from urllib.parse import urlparse
        from apscheduler.jobstores.redis import RedisJobStore
        _parsed = urlparse(settings.REDIS_URL)
        # Pass ssl=True when using rediss:// (TLS) to preserve encryption
        _redis_kwargs: dict = {
            "host": _parsed.hostname or "localhost",
            "port": _parsed.port or 6379,
            "db": int(_parsed.path.lstrip("/") or 0),
            "password": _parsed.password,
        }
        if _parsed.scheme == "rediss":
            _redis_kwargs["ssl"] = True
        _jobstores["default"] = RedisJobStore(**_redis_kwargs)
        logger.info("scheduler_using_redis_jobstore", redis_url="[redacted]")
    except Exception as exc:
        # Connection refused, bad URL, etc. -- fall back to MemoryJobStore.
        logger.warning(
            "scheduler_redis_jobstore_failed",
            error=str(exc),
            fallback="MemoryJobStore",
        )

scheduler = AsyncIOScheduler(jobstores=_jobstores if _jobstores else {})

SCHEDULER_BATCH_SIZE = 100
WEBHOOK_EVENT_RETENTION_DAYS = 7
RECONCILE_GRACE = timedelta(minutes=10)


async def _acquire_scheduler_lock(job_name: str, ttl: int = 300) -> bool:
    """Try to acquire a distributed Redis lock for a scheduler job.

    Returns True if the lock was acquired (this worker should run the job).
    Returns False if another worker already holds the lock.
    Falls back to True (allow execution) if Redis is unavailable.
    """
    if not settings.REDIS_URL:
        return True
    try:
        import redis.asyncio as aioredis
        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        key = f"scheduler_lock:{job_name}"
        acquired = await r.set(key, "1", nx=True, ex=ttl)
        await r.aclose()
        return bool(acquired)
    except Exception:
        # Redis unavailable -- fall back to running the job (dev / single-worker mode)
        return True


async def refresh_exchange_rate() -> Decimal | None:
    """Hourly: fetch a new VND/USD rate. No-op in fixed mode.

    A failed fetch keeps the cached rate and counts the run as an error.
    """
    if currency_service.is_fixed:
        logger.info("exchange_rate_refresh_skipped", reason="fixed_rate_mode")
        SCHEDULER_JOB_RUNS.labels(job_name="refresh_exchange_rate", status="skipped").inc()
        return None
    if not await _acquire_scheduler_lock("refresh_exchange_rate", ttl=120):
        return None
    try:
        rate = await currency_service.refresh()
    except CurrencyFetchError as exc:
        SCHEDULER_JOB_RUNS.labels(job_name="refresh_exchange_rate", status="error").inc()
        logger.warning("exchange_rate_job_failed", error=str(exc))
        return None
    SCHEDULER_JOB_RUNS.labels(job_name="refresh_exchange_rate", status="success").inc()
    logger.info("exchange_rate_job_done", rate=str(rate))
    return rate


async def send_booking_reminders() -> int:
    """Hourly: queue one reminder per confirmed booking picking up in 23-25 hours.

    Bookings that already have a reminder in the outbox are not selected again,
    so re-running inside the same window queues nothing new.
    """
    if not await _acquire_scheduler_lock("send_booking_reminders"):
        return 0
    queued = 0
    async with async_session() as db:
        bookings = await find_due_for_reminder(db, utcnow(), limit=SCHEDULER_BATCH_SIZE)
        booking_ids = [booking.id for booking in bookings]
        for booking_id in booking_ids:
            try:
                await enqueue_booking_notification(db, booking_id, NotificationKind.REMINDER)
                # Commit per booking so one failure does not undo the others
                await db.commit()
                queued += 1
            except Exception as e:
                await db.rollback()
                logger.exception("booking_reminder_failed", booking_id=booking_id, error_type=type(e).__name__)
    SCHEDULER_JOB_RUNS.labels(job_name="send_booking_reminders", status="success").inc()
    if queued:
        logger.info("booking_reminders_queued", count=queued)
    return queued


async def dispatch_notifications() -> int:
    """Every minute: deliver queued notification emails."""
    if not await _acquire_scheduler_lock("dispatch_notifications", ttl=55):
        return 0
    async with async_session() as db:
        sent = await dispatch_pending(db)
    SCHEDULER_JOB_RUNS.labels(job_name="dispatch_notifications", status="success").inc()
    return sent


async def archive_expired_promotions() -> int:
    """Daily: archive promotions past their end date or out of uses."""
    if not await _acquire_scheduler_lock("archive_expired_promotions"):
        return 0
    async with async_session() as db:
        promotions = await find_expired_promotions(db, utcnow(), limit=SCHEDULER_BATCH_SIZE)
        for promotion in promotions:
            promotion.status = PromotionStatus.ARCHIVED
            logger.info("promotion_archived", promotion_id=promotion.id, code=promotion.code)
        await db.commit()
    SCHEDULER_JOB_RUNS.labels(job_name="archive_expired_promotions", status="success").inc()
    return len(promotions)


async def reconcile_pending_payments() -> int:
    """Every 15 minutes: resend captures and refunds whose gateway retries ran out.

    Each one is resent with the idempotency key stored on its row, so a call
    that did reach the gateway the first time is not applied twice.
    """
    if not await _acquire_scheduler_lock("reconcile_pending_payments", ttl=600):
        return 0
    registry = get_gateway_registry()
    settled = 0
    async with async_session() as db:
        candidates = await find_pending_reconciliation(db, utcnow() - RECONCILE_GRACE, limit=SCHEDULER_BATCH_SIZE)
        pending = [(payment.id, payment.transaction_id) for payment in candidates]
        for payment_id, transaction_id in pending:
            try:
                payment = await db.get(Payment, payment_id)
                result = await reconcile_payment(db, payment, registry=registry, now=utcnow())
                await db.commit()
            except PaymentPending:
                # Still unreachable; keep the stored key for the next run
                await db.commit()
                continue
            except Exception as e:
                await db.rollback()
                logger.exception("payment_reconcile_failed", transaction_id=transaction_id, error_type=type(e).__name__)
                continue
            if PaymentStatus(result.status) != PaymentStatus.PENDING:
                settled += 1
    SCHEDULER_JOB_RUNS.labels(job_name="reconcile_pending_payments", status="success").inc()
    if settled:
        logger.info("pending_payments_reconciled", count=settled)
    return settled


async def cleanup_old_webhook_events() -> None:
    """Delete processed webhook events older than 7 days."""
    if not await _acquire_scheduler_lock("cleanup_old_webhook_events"):
        return
    async with async_session() as db:
        cutoff = utcnow() - timedelta(days=WEBHOOK_EVENT_RETENTION_DAYS)
        result = await db.execute(
            delete(ProcessedWebhookEvent).where(
                ProcessedWebhookEvent.processed_at < cutoff
            )
        )
        count = result.rowcount
        await db.commit()
        if count:
            logger.info("webhook_events_cleaned_up", deleted_count=count)
    SCHEDULER_JOB_RUNS.labels(job_name="cleanup_old_webhook_events", status="success").inc()


def _on_job_event(event) -> None:
    if event.code == EVENT_JOB_ERROR:
        SCHEDULER_JOB_RUNS.labels(job_name=event.job_id, status="error").inc()
        logger.error("scheduler_job_failed", job_id=event.job_id, error=str(event.exception))
    else:
        logger.warning("scheduler_job_missed", job_id=event.job_id)


def start_scheduler() -> None:
    """Start the APScheduler with recurring jobs."""
    scheduler.add_job(
        refresh_exchange_rate,
        "cron",
        minute=0,
        id="refresh_exchange_rate",
        replace_existing=True,
        misfire_grace_time=600,
    )
    scheduler.add_job(
        send_booking_reminders,
        "cron",
        minute=5,
        id="send_booking_reminders",
        replace_existing=True,
        misfire_grace_time=600,
    )
    scheduler.add_job(
        dispatch_notifications,
        "interval",
        minutes=1,
        id="dispatch_notifications",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        reconcile_pending_payments,
        "interval",
        minutes=15,
        id="reconcile_pending_payments",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        archive_expired_promotions,
        "cron",
        hour=0,
        minute=15,
        id="archive_expired_promotions",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_job(
        cleanup_old_webhook_events,
        "cron",
        hour=3,
        minute=0,
        id="cleanup_webhook_events",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_listener(_on_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
    scheduler.start()
    logger.info("scheduler_started", jobs=len(scheduler.get_jobs()))
