from app.models.audit_log import AuditLog
from app.models.booking import Booking
from app.models.booking_charge import BookingCharge
from app.models.car import Car
from app.models.driver_profile import DriverProfile
from app.models.location import Location
from app.models.notification import Notification
from app.models.payment import Payment
from app.models.promotion import BookingPromotion, Promotion
from app.models.review import Review
from app.models.user import User
from app.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "AuditLog",
    "User",
    "Location",
    "Car",
    "DriverProfile",
    "Booking",
    "BookingCharge",
    "BookingPromotion",
    "Promotion",
    "Payment",
    "Notification",
    "Review",
    "ProcessedWebhookEvent",
]
