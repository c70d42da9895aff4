"""Daily check-in reward model."""

import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class DailyCheckin(Base):
    """Check-in record, one per user per calendar day."""

    __tablename__ = "daily_checkins"
    __table_args__ = (UniqueConstraint("user_id", "checkin_date", name="uq_daily_checkins_user_date"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    checkin_date = Column(Date, nullable=False)
    consecutive_days = Column(Integer, nullable=False, default=1)
    credits_earned = Column(Integer, nullable=False, default=0)
    weekly_bonus_earned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
