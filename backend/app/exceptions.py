"""Domain error taxonomy.

Rejections are plain values returned by the pricing engine and the promotion
validator; everything else is raised and mapped to an HTTP response by the
handlers registered in ``app.main``.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Rejection:
    """A business-rule refusal, rendered to the customer as a form error."""

    code: str
    message: str
    field: str | None = None


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    status_code = 422

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.errors = errors or {}


class RejectedError(DomainError):
    """Raised when a Rejection surfaces mid-write and the transaction must roll back."""

    status_code = 422

    def __init__(self, rejection: Rejection):
        super().__init__(rejection.message)
        self.rejection = rejection


class NotFoundError(DomainError):
    status_code = 404


class InvalidStateTransition(DomainError):
    status_code = 409

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Cannot transition {entity} from '{current}' to '{target}'")
        self.entity = entity
        self.current = current
        self.target = target


class AuthorizationError(DomainError):
    status_code = 403


class DuplicateError(DomainError):
    status_code = 409


class ConcurrencyConflict(DomainError):
    status_code = 409

    def __init__(self, message: str = "Please try again."):
        super().__init__(message)


class GatewayError(DomainError):
    """Transient or ambiguous gateway failure. Retried, never final."""

    status_code = 502

    def __init__(self, message: str, gateway: str = "", operation: str = ""):
        super().__init__(message)
        self.gateway = gateway
        self.operation = operation


class GatewayDeclined(DomainError):
    """Explicit negative answer from the gateway."""

    status_code = 402


class PaymentPending(DomainError):
    """Gateway retries exhausted; the payment stays pending for reconciliation."""

    status_code = 202

    def __init__(self, transaction_id: str, message: str | None = None):
        super().__init__(
            message
            or "Payment is being processed. We will update your booking once the gateway responds."
        )
        self.transaction_id = transaction_id
