"""
Webhook Delivery Model - append-only log, one row per attempt
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text

from app.db.database import Base
from app.db.models.webhook_subscription import generate_id


class WebhookDelivery(Base):
    """A single delivery attempt. Inserted once, never updated."""

    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=generate_id)
    webhook_id = Column(String(36), nullable=False, index=True)
    job_id = Column(String(36), nullable=False, index=True)

    event = Column(String(200), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    url = Column(String(2048), nullable=False)  # as sent, not re-resolved

    status_code = Column(Integer, nullable=True)  # None on transport failure
    response_body = Column(Text, nullable=True)
    error = Column(String(1000), nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    delivered_at = Column(DateTime, nullable=True)  # set on 2xx only

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_webhook_deliveries_webhook_job", "webhook_id", "job_id", "attempts"),
    )
