import uuid
from sqlalchemy import Column, String, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime


class Subscription(Base):
    """
    Base subscription record owned by the billing domain.

    Only the fields the renewal core consumes are modelled here. Renewal and
    failure bookkeeping lives on ``SubscriptionEnhancement`` so this schema
    never has to change for it.
    """
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    subscriber_id = Column(String(36), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("plans.id"), nullable=False, index=True)

    starts_at = Column(UTCDateTime, nullable=False)
    ends_at = Column(UTCDateTime, nullable=True, index=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    plan = relationship("Plan", lazy="joined")
    enhancement = relationship(
        "SubscriptionEnhancement",
        back_populates="subscription",
        uselist=False,
    )
