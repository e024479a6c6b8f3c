import secrets
import uuid
from datetime import datetime


def generate_booking_code(now: datetime) -> str:
    """Human-readable booking reference, e.g. BK-2026-048213."""
    return f"BK-{now.year}-{secrets.randbelow(1_000_000):06d}"


def generate_transaction_id() -> str:
    """Payment correlation id, created before any gateway call and reused as idempotency key."""
    return f"TXN-{uuid.uuid4().hex[:24].upper()}"
