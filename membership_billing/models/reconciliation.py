import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import Column, String, Integer, Text, Numeric, JSON, ForeignKey, Date
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime, enum_column_type


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ItemSource(str, enum.Enum):
    APP = "app"
    GATEWAY = "gateway"


class ItemStatus(str, enum.Enum):
    MATCHED = "matched"
    UNMATCHED_APP = "unmatched_app"
    UNMATCHED_GATEWAY = "unmatched_gateway"
    AMOUNT_MISMATCH = "amount_mismatch"


class ReconciliationRun(Base):
    """One execution of the ledger matcher"""
    __tablename__ = "reconciliation_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), nullable=False, unique=True, index=True, default=lambda: str(uuid.uuid4()))
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    status = Column(enum_column_type(RunStatus), nullable=False, default=RunStatus.RUNNING, index=True)

    period_start = Column(Date, nullable=True)
    period_end = Column(Date, nullable=True)

    # Aggregates - always derived from the items via recompute_totals()
    total_matched = Column(Integer, nullable=False, default=0)
    total_unmatched_app = Column(Integer, nullable=False, default=0)
    total_unmatched_gateway = Column(Integer, nullable=False, default=0)
    total_amount_mismatch = Column(Integer, nullable=False, default=0)
    total_discrepancy = Column(Numeric(14, 2), nullable=False, default=0)
    total_app_amount = Column(Numeric(14, 2), nullable=False, default=0)
    total_gateway_amount = Column(Numeric(14, 2), nullable=False, default=0)

    notes = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    run_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(UTCDateTime, server_default=func.now())

    items = relationship(
        "ReconciliationItem",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ReconciliationItem.id",
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("run_id", str(uuid.uuid4()))
        kwargs.setdefault("started_at", datetime.now(timezone.utc))
        kwargs.setdefault("status", RunStatus.RUNNING)
        super().__init__(**kwargs)
        self.reset_totals()

    def reset_totals(self) -> None:
        self.total_matched = 0
        self.total_unmatched_app = 0
        self.total_unmatched_gateway = 0
        self.total_amount_mismatch = 0
        self.total_discrepancy = Decimal("0")
        self.total_app_amount = Decimal("0")
        self.total_gateway_amount = Decimal("0")

    def recompute_totals(self, items: Optional[Iterable["ReconciliationItem"]] = None) -> None:
        """Derive every aggregate from the item classifications.

        Matched pairs and amount mismatches are counted on the app side only,
        so each pair contributes exactly once.
        """
        self.reset_totals()
        for item in (self.items if items is None else items):
            amount = Decimal(item.amount or 0)
            if item.source == ItemSource.APP:
                self.total_app_amount += amount
                if item.reconciliation_status == ItemStatus.MATCHED:
                    self.total_matched += 1
                elif item.reconciliation_status == ItemStatus.AMOUNT_MISMATCH:
                    self.total_amount_mismatch += 1
                    self.total_discrepancy += Decimal(item.discrepancy_amount or 0)
                elif item.reconciliation_status == ItemStatus.UNMATCHED_APP:
                    self.total_unmatched_app += 1
            else:
                self.total_gateway_amount += amount
                if item.reconciliation_status == ItemStatus.UNMATCHED_GATEWAY:
                    self.total_unmatched_gateway += 1

    def mark_completed(self, status: RunStatus = RunStatus.SUCCESS, error_message: Optional[str] = None,
                       now: Optional[datetime] = None) -> None:
        self.status = status
        self.error_message = error_message
        self.completed_at = now or datetime.now(timezone.utc)

    def totals(self) -> Dict[str, Any]:
        return {
            "total_matched": self.total_matched,
            "total_unmatched_app": self.total_unmatched_app,
            "total_unmatched_gateway": self.total_unmatched_gateway,
            "total_amount_mismatch": self.total_amount_mismatch,
            "total_discrepancy": str(self.total_discrepancy),
            "total_app_amount": str(self.total_app_amount),
            "total_gateway_amount": str(self.total_gateway_amount),
        }

    def to_dict(self, include_items: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        data = {
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "notes": self.notes,
            "error_message": self.error_message,
            "created_by": self.created_by,
            **self.totals(),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ReconciliationItem(Base):
    """One ledger row classified by a run"""
    __tablename__ = "reconciliation_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reconciliation_run_id = Column(Integer, ForeignKey("reconciliation_runs.id"), nullable=False, index=True)

    source = Column(enum_column_type(ItemSource), nullable=False)
    transaction_id = Column(String(100), nullable=True, index=True)
    reference = Column(String(100), nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    transaction_date = Column(UTCDateTime, nullable=True)

    reconciliation_status = Column(enum_column_type(ItemStatus), nullable=False, index=True)
    match_reference = Column(String(100), nullable=True, index=True)
    discrepancy_amount = Column(Numeric(12, 2), nullable=True)
    notes = Column(Text, nullable=True)

    run = relationship("ReconciliationRun", back_populates="items")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "amount": str(self.amount),
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "reconciliation_status": self.reconciliation_status.value,
            "match_reference": self.match_reference,
            "discrepancy_amount": str(self.discrepancy_amount) if self.discrepancy_amount is not None else None,
        }
