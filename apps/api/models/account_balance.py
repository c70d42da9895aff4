"""AccountBalance model: one aggregate credit row per user."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountBalance(Base):
    """Balance aggregate mutated only through the credit ledger."""

    __tablename__ = "account_balances"
    __table_args__ = (
        CheckConstraint("frozen_balance >= 0", name="ck_account_balances_frozen_non_negative"),
        CheckConstraint("balance - frozen_balance >= 0", name="ck_account_balances_available_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    balance = Column(Integer, nullable=False, default=0)
    frozen_balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="account_balance")

    @property
    def available_balance(self) -> int:
        return int(self.balance or 0) - int(self.frozen_balance or 0)
