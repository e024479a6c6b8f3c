from collections.abc import AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings
from app.exceptions import AuthorizationError, DomainError, GatewayDeclined, PaymentPending

logger = structlog.get_logger()

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

_engine_kwargs: dict = {"echo": settings.APP_DEBUG}
if not _is_sqlite:
    _engine_kwargs.update(
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=3600,
        pool_timeout=30,
    )
    # Hosted Postgres requires TLS outside development
    if settings.APP_ENV in ("production", "staging"):
        _engine_kwargs["connect_args"] = {"ssl": "require"}

engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: one transaction per request, rolled back on any error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except (AuthorizationError, GatewayDeclined, PaymentPending):
            # Raised before any aggregate mutation: keep the audit row, the
            # failed refund record or the pending attempt for reconciliation
            await session.commit()
            raise
        except DomainError:
            await session.rollback()
            raise
        except Exception:
            await session.rollback()
            logger.exception("db_session_failed")
            raise
