from app.exceptions import InvalidStateTransition
from app.models.enums import BookingStatus, PaymentStatus

# Defines all valid status transitions for a booking
ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.REJECTED,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.ACTIVE,
        BookingStatus.CANCELLED,
        BookingStatus.REJECTED,
    },
    BookingStatus.ACTIVE: {
        BookingStatus.COMPLETED,
    },
    BookingStatus.COMPLETED: set(),  # Terminal state
    BookingStatus.CANCELLED: set(),  # Terminal state
    BookingStatus.REJECTED: set(),  # Terminal state
}

# Re-requesting these targets on a booking already there is a no-op.
# Cancelling twice is always an error.
IDEMPOTENT_TARGETS: frozenset[BookingStatus] = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.ACTIVE, BookingStatus.COMPLETED, BookingStatus.REJECTED}
)

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.CANCELLED: set(),
}


def validate_transition(current: BookingStatus | str, new: BookingStatus) -> bool:
    """Check a booking status transition.

    Returns True when the transition should be applied, False when the booking
    is already in an idempotent target state. Raises InvalidStateTransition otherwise.
    """
    current = BookingStatus(current)
    if current == new and new in IDEMPOTENT_TARGETS:
        return False
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition("booking", current.value, new.value)
    return True


def validate_payment_transition(current: PaymentStatus | str, new: PaymentStatus) -> bool:
    """Same contract as validate_transition, for payments. Every target is idempotent."""
    current = PaymentStatus(current)
    if current == new:
        return False
    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition("payment", current.value, new.value)
    return True


def is_cancellable(current: BookingStatus | str) -> bool:
    return BookingStatus.CANCELLED in ALLOWED_TRANSITIONS.get(BookingStatus(current), set())
