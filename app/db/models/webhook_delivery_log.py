"""
Webhook Delivery Log Model - append-only record of every inbound delivery attempt
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, ForeignKey, Text
from sqlalchemy.orm import relationship

from app.db.database import Base


class DeliveryLogStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    # accepted but not applied (no running job on the registration)
    NOTIFICATION = "notification"


class WebhookDeliveryLog(Base):
    """One row per processing attempt of an inbound delivery"""

    __tablename__ = "webhook_delivery_logs"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(
        Integer,
        ForeignKey("webhook_registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(SQLEnum(DeliveryLogStatus), nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False)
    error = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)

    registration = relationship("WebhookRegistration", back_populates="delivery_logs")
