import enum
import uuid
from typing import Any, Dict

from sqlalchemy import Column, String, Text, JSON, Index
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime, enum_column_type


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    REJECTED = "rejected"


class WebhookEvent(Base):
    """Audit record of every inbound gateway callback, stored before processing"""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    external_id = Column(String(100), nullable=True)
    order_reference = Column(String(100), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    signature = Column(Text, nullable=True)
    status = Column(enum_column_type(WebhookEventStatus), nullable=False, default=WebhookEventStatus.RECEIVED)
    error = Column(Text, nullable=True)

    received_at = Column(UTCDateTime, server_default=func.now())
    processed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_provider_external", "provider", "external_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "event_type": self.event_type,
            "external_id": self.external_id,
            "order_reference": self.order_reference,
            "status": self.status.value,
            "error": self.error,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
