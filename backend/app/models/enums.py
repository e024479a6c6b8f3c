import enum

# These enums are stored as VARCHAR columns. Comparisons always go through the
# enum members, never through raw strings.


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    OWNER = "owner"
    DRIVER = "driver"
    ADMIN = "admin"


class CarStatus(str, enum.Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"
    INACTIVE = "inactive"


class DriverStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class PromotionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    UPCOMING = "upcoming"
    ARCHIVED = "archived"


class PromotionSource(str, enum.Enum):
    CODE = "code"
    AUTO = "auto"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    PAYPAL = "paypal"
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"


class PaymentType(str, enum.Enum):
    DEPOSIT = "deposit"
    FULL_PAYMENT = "full_payment"
    PARTIAL = "partial"
    REFUND = "refund"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class NotificationKind(str, enum.Enum):
    CONFIRMATION = "confirmation"
    REMINDER = "reminder"
    CANCELLATION = "cancellation"


class NotificationStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
