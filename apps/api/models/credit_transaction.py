"""CreditTransaction model: append-only ledger entries."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_TYPES = ("earn", "spend", "freeze", "unfreeze", "admin_adjust")
TRANSACTION_SOURCES = ("purchase", "subscription", "checkin", "signup", "referral", "api_call", "admin", "refund")


class CreditTransaction(Base):
    """Immutable credit ledger entry, unique per reference_id."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False, default=0)
    source = Column(String, nullable=False)
    reference_id = Column(String, nullable=False, unique=True)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)

    user = relationship("User", back_populates="credit_transactions")
