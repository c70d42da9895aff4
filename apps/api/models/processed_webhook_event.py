"""Processed payment webhook events."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from database import Base


class ProcessedWebhookEvent(Base):
    """One row per applied provider event id."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="applied")
    result_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
