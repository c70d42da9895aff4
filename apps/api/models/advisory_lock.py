"""Advisory lock model with explicit expiry."""

from sqlalchemy import Column, DateTime, String

from database import Base


class AdvisoryLock(Base):
    """Row-per-key mutual exclusion; expired rows may be taken over."""

    __tablename__ = "advisory_locks"

    lock_key = Column(String, primary_key=True)
    lock_id = Column(String, nullable=False)
    holder = Column(String, nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
