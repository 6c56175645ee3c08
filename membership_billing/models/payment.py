import enum
import uuid
from typing import Any, Dict

from sqlalchemy import Column, String, Numeric, JSON, ForeignKey
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime, enum_column_type


class PaymentStatus(str, enum.Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class Payment(Base):
    """Confirmed payment - the application side of the reconciliation ledger"""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True, index=True)

    reference = Column(String(100), nullable=False, unique=True, index=True)  # Merchant reference
    transaction_id = Column(String(100), nullable=True, index=True)  # Gateway id
    amount = Column(Numeric(12, 2), nullable=False)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")
    gateway = Column(String(50), nullable=False, default="mock")
    status = Column(enum_column_type(PaymentStatus), nullable=False, default=PaymentStatus.COMPLETED)

    paid_at = Column(UTCDateTime, nullable=False, index=True)
    payment_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    def to_ledger_record(self) -> Dict[str, Any]:
        """Shape consumed by the reconciliation engine"""
        return {
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "amount": self.amount,
            "date": self.paid_at,
        }
