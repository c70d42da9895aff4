"""Cron execution record model."""

import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, String

from database import Base


class CronExecution(Base):
    """Execution record for one scheduler run."""

    __tablename__ = "cron_executions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_name = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="running", index=True)
    results_json = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
