"""
Webhook Registration Model - local mirror of a provider-side webhook.

The provider caps the number of live registrations, so one registration may
serve several jobs whose filters overlap.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index
from sqlalchemy.orm import relationship

from app.db.database import Base


class RegistrationStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class WebhookRegistration(Base):
    """Provider webhook registration with its shared secret and filter predicate"""

    __tablename__ = "webhook_registrations"

    id = Column(Integer, primary_key=True, index=True)
    provider_webhook_id = Column(String(100), nullable=False, unique=True)
    owner_id = Column(String(100), nullable=False, index=True)

    callback_url = Column(String(500), nullable=False)
    secret = Column(String(200), nullable=False)

    account_addresses = Column(JSON, nullable=False, default=list)
    program_ids = Column(JSON, nullable=False, default=list)
    transaction_types = Column(JSON, nullable=False, default=list)

    status = Column(SQLEnum(RegistrationStatus), default=RegistrationStatus.ACTIVE, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    # last-touched time: reuse and inbound deliveries bump it
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    delivery_logs = relationship(
        "WebhookDeliveryLog",
        back_populates="registration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_webhook_registrations_status_updated", "status", "updated_at"),
    )

    @property
    def filter_set(self) -> set[str]:
        return set(self.account_addresses or []) | set(self.program_ids or [])
