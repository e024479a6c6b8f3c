import re as _re
import uuid as _uuid
from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app import models  # noqa: F401  registers every mapper
from app.admin.routes import router as admin_router
from app.bookings.routes import router as bookings_router
from app.config import settings
from app.customer.routes import router as customer_router
from app.database import async_session
from app.exceptions import DomainError, PaymentPending, RejectedError, ValidationError
from app.middleware import SecurityHeadersMiddleware
from app.payments.routes import router as payments_router
from app.utils.rate_limit import limiter

from prometheus_fastapi_instrumentator import Instrumentator

# Configure structlog: JSON in production, console in development
processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]
if settings.is_production:
    processors.append(structlog.processors.JSONRenderer())
else:
    processors.append(structlog.dev.ConsoleRenderer())

structlog.configure(
    processors=processors,
    wrapper_class=structlog.make_filtering_bound_logger(0),
)

logger = structlog.get_logger()

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment=settings.APP_ENV,
        send_default_pii=False,
    )


async def _check_alembic_migration_version() -> None:
    """Log a warning when the database is not at the alembic head revision.

    Best-effort only: a failure here never stops the application.
    """
    try:
        from alembic.config import Config as AlembicConfig
        from alembic.script import ScriptDirectory

        alembic_cfg = AlembicConfig("alembic.ini")
        head_rev = ScriptDirectory.from_config(alembic_cfg).get_current_head()

        async with async_session() as session:
            conn = await session.connection()

            def _get_current_rev(connection):
                if not connection.dialect.has_table(connection, "alembic_version"):
                    return None
                row = connection.execute(text("SELECT version_num FROM alembic_version")).fetchone()
                return row[0] if row else None

            current_rev = await conn.run_sync(_get_current_rev)

        if current_rev is None:
            logger.warning("alembic_version_check", status="no_alembic_version_table")
        elif current_rev != head_rev:
            logger.warning(
                "alembic_version_mismatch",
                current=current_rev,
                head=head_rev,
                message="Run 'alembic upgrade head'.",
            )
        else:
            logger.info("alembic_version_ok", version=current_rev)
    except Exception as exc:
        logger.warning("alembic_version_check_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.services.scheduler import scheduler, start_scheduler

    logger.info(
        "carrental_startup",
        env=settings.APP_ENV,
        exchange_rate_mode="fixed" if settings.USE_FIXED_EXCHANGE_RATE else "live",
    )
    await _check_alembic_migration_version()

    if settings.STRIPE_SECRET_KEY and not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("stripe_webhook_secret_empty", message="Stripe webhook signatures cannot be verified.")

    start_scheduler()
    yield
    scheduler.shutdown(wait=True)
    logger.info("carrental_shutdown")


app = FastAPI(
    title="Car Rental API",
    description="Booking, pricing, promotions and payments for self-drive and chauffeured car rental",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    """Render the domain error taxonomy as JSON."""
    if isinstance(exc, RejectedError):
        logger.info("booking_rejected", code=exc.rejection.code, path=request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.rejection.code, "field": exc.rejection.field},
        )
    if isinstance(exc, ValidationError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "errors": exc.errors},
        )
    if isinstance(exc, PaymentPending):
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "pending", "detail": exc.message, "transaction_id": exc.transaction_id},
        )
    if exc.status_code >= 500:
        logger.warning("domain_error", error_type=type(exc).__name__, path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions and return a safe 500 response outside development."""
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV != "development":
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    raise exc


# Middleware is LIFO: CORS is added first so it runs last.
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware, is_production=settings.is_production)


_REQUEST_ID_RE = _re.compile(r"^[a-zA-Z0-9\-]{1,64}$")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a request ID to the log context and time every request."""
    import time as _time

    # Client-supplied ids are only trusted when they cannot inject into log lines
    client_id = request.headers.get("X-Request-ID")
    request_id = client_id if client_id and _REQUEST_ID_RE.match(client_id) else str(_uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    start = _time.monotonic()
    try:
        response = await call_next(request)
        duration_ms = (_time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        if duration_ms > 1000:
            logger.warning(
                "slow_request",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                status_code=response.status_code,
            )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


# Hand-registered metrics instead of metrics.default(), which fails on
# non-numeric Content-Length headers.
def _http_metrics(info) -> None:
    from prometheus_client import Counter, Histogram

    if not hasattr(_http_metrics, "_total"):
        _http_metrics._total = Counter(
            "carrental_http_requests_total",
            "Total HTTP requests",
            ["method", "status", "handler"],
        )
        _http_metrics._latency = Histogram(
            "carrental_http_request_duration_seconds",
            "Request latency",
            ["method", "handler"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
        )
    _http_metrics._total.labels(info.method, info.modified_status, info.modified_handler).inc()
    _http_metrics._latency.labels(info.method, info.modified_handler).observe(info.modified_duration)


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).add(_http_metrics).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request):
    """Prometheus metrics, protected by METRICS_API_KEY when set."""
    from prometheus_client import generate_latest
    from starlette.responses import Response as StarletteResponse

    if settings.is_production and not settings.METRICS_API_KEY:
        raise HTTPException(status_code=503, detail="Metrics not available")

    if settings.METRICS_API_KEY:
        if request.headers.get("x-metrics-key", "") != settings.METRICS_API_KEY:
            raise HTTPException(status_code=403, detail="Invalid metrics API key")

    return StarletteResponse(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(bookings_router, prefix="/booking", tags=["booking"])
app.include_router(customer_router, prefix="/customer", tags=["customer"])
app.include_router(payments_router, prefix="/payment", tags=["payment"])
app.include_router(admin_router)


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check with database, Redis and scheduler status."""
    result: dict = {"status": "ok", "database": "connected", "redis": "connected"}

    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "redis": "unknown"},
        )

    # Redis is optional: rate limits and the rate cache fall back to memory
    if settings.REDIS_URL:
        try:
            import redis.asyncio as aioredis

            r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
            await r.ping()
            await r.aclose()
        except Exception:
            result["redis"] = "unavailable"
    else:
        result["redis"] = "disabled"

    from app.services.scheduler import scheduler

    result["scheduler"] = "running" if scheduler.running else "stopped"
    result["exchange_rate_mode"] = "fixed" if settings.USE_FIXED_EXCHANGE_RATE else "live"

    if settings.is_production:
        healthy = result["redis"] == "connected" and result["scheduler"] == "running"
        result["status"] = "ok" if healthy else "unhealthy"
    return result
