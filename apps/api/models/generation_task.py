"""Generation task model."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
import uuid

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationTask(Base):
    """Async generation job with its credit reservation."""

    __tablename__ = "generation_tasks"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False, default="image")
    model = Column(String, nullable=True)
    prompt = Column(Text, nullable=True)
    external_task_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="reserved", index=True)
    credits_reserved = Column(Integer, nullable=False, default=0)
    lock_id = Column(String, nullable=True)
    asset_key = Column(String, nullable=True)
    asset_url = Column(String, nullable=True)
    settled_by = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="generation_tasks")
