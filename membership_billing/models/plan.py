import uuid
from sqlalchemy import Column, String, Integer, Boolean, Text, Numeric
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime


class Plan(Base):
    """Membership plans a subscription bills against"""
    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    # Pricing
    price = Column(Numeric(12, 2), nullable=False, default=0.00)
    currency = Column(String(3), nullable=False, default="KES")
    billing_period_days = Column(Integer, nullable=False, default=30)

    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())
