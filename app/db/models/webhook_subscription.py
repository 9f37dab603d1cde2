"""
Webhook Subscription Model - a tenant's registration of a target URL
"""
import secrets
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, JSON, String

from app.db.database import Base

SECRET_BYTES = 32


def generate_webhook_secret() -> str:
    """64 hex chars of server-side randomness, used as the HMAC key"""
    return secrets.token_hex(SECRET_BYTES)


def generate_id() -> str:
    return str(uuid.uuid4())


class WebhookSubscription(Base):
    """Target URL plus the set of event names a tenant wants delivered"""

    __tablename__ = "webhook_subscriptions"

    id = Column(String(36), primary_key=True, default=generate_id)
    tenant_id = Column(String(64), nullable=False, index=True)

    url = Column(String(2048), nullable=False)
    events = Column(JSON, nullable=False)  # non-empty list of event names
    secret = Column(String(64), nullable=False, default=generate_webhook_secret)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    description = Column(String(500), nullable=True)

    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_webhook_subscriptions_tenant_active", "tenant_id", "is_active"),
    )

    def subscribes_to(self, event: str) -> bool:
        return event in (self.events or [])
