from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.dates import utcnow


class ProcessedWebhookEvent(Base):
    """Gateway webhook ids already handled. Inserted before processing."""

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False, default="stripe")
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
