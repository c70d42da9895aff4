"""Referral model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from database import Base

REFERRAL_TRIGGERS = ("first_generation", "subscription", "credit_pack")


class Referral(Base):
    """Links a referred user to the referrer who is paid once for them."""

    __tablename__ = "referrals"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    referred_user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True)
    referral_code = Column(String, nullable=False)
    credits_awarded = Column(Boolean, nullable=False, default=False)
    first_generation_completed = Column(Boolean, nullable=False, default=False)
    reward_trigger = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    credits_awarded_at = Column(DateTime(timezone=True), nullable=True)
