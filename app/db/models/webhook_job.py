"""
Webhook Job Model - the durable delivery queue

One row per (event, subscription) fan-out. The row carries a snapshot of
everything needed to deliver, so later edits or deletion of the subscription
do not affect it.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String

from app.db.database import Base
from app.db.models.webhook_subscription import generate_id


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"


# Statuses a worker may claim once next_attempt_at is due
CLAIMABLE_STATUSES = (JobStatus.QUEUED, JobStatus.RETRY_SCHEDULED)
FINISHED_STATUSES = (JobStatus.SUCCEEDED, JobStatus.EXHAUSTED)


class WebhookJob(Base):
    """A queued delivery with its retry bookkeeping"""

    __tablename__ = "webhook_jobs"

    id = Column(String(36), primary_key=True, default=generate_id)

    # Snapshot taken at dispatch time; no foreign key on purpose
    subscription_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    event = Column(String(200), nullable=False)
    url = Column(String(2048), nullable=False)
    secret = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_attempt_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    locked_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_jobs_status_next_attempt", "status", "next_attempt_at"),
    )
