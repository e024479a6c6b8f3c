import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AuthorizationError
from app.models.audit_log import AuditLog
from app.models.user import User

logger = structlog.get_logger()


async def record_audit(
    db: AsyncSession,
    action: str,
    *,
    actor_id: int | None,
    booking_id: int | None = None,
    detail: str | None = None,
    metadata: dict | None = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        actor_user_id=actor_id,
        booking_id=booking_id,
        detail=detail,
        metadata_json=metadata,
    )
    db.add(entry)
    await db.flush()
    return entry


async def deny(db: AsyncSession, actor: User, action: str, booking_id: int | None = None) -> AuthorizationError:
    """Record a refused action and return the error for the caller to raise.

    ``get_db`` commits before propagating AuthorizationError, so the audit row
    survives the failed request.
    """
    await record_audit(
        db,
        "access_denied",
        actor_id=actor.id,
        booking_id=booking_id,
        detail=action,
        metadata={"role": getattr(actor.role, "value", actor.role)},
    )
    logger.warning("authorization_denied", user_id=actor.id, action=action, booking_id=booking_id)
    return AuthorizationError("You are not allowed to perform this action on this booking.")
