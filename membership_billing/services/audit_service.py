"""
Audit Service for tracking billing state changes.

Every state change made on behalf of an actor (admin, scheduler, gateway
callback) is logged here: who did what, to which record, and the state before
and after. The actor is always passed in explicitly.
"""
import uuid
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any
from sqlalchemy import Column, String, Text, JSON, Index
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from ..core.database import Base, UTCDateTime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActorContext:
    """Identity and request context of whoever triggered an operation"""
    actor_id: str
    actor_type: str = "system"  # system | admin | gateway | user
    email: Optional[str] = None
    ip_address: Optional[str] = None
    request_id: Optional[str] = None


SYSTEM_ACTOR = ActorContext(actor_id="system", actor_type="system")


def gateway_actor(provider: str, request_id: Optional[str] = None) -> ActorContext:
    return ActorContext(actor_id=f"gateway:{provider}", actor_type="gateway", request_id=request_id)


class AuditLog(Base):
    """
    Model for tracking billing state changes.
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))

    # Who
    actor_id = Column(String(100), nullable=False, index=True)
    actor_type = Column(String(20), nullable=False)
    actor_email = Column(String(255), nullable=True)
    ip_address = Column(String(50), nullable=True)
    request_id = Column(String(64), nullable=True)

    # What
    action = Column(String(100), nullable=False, index=True)
    target_type = Column(String(50), nullable=False, index=True)
    target_id = Column(String(64), nullable=False, index=True)

    # State tracking
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    action_metadata = Column(JSON, nullable=True, default=dict)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_audit_logs_target', 'target_type', 'target_id', 'created_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "action": self.action,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "reason": self.reason,
            "action_metadata": self.action_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AuditService:
    """
    Centralized audit logging.

    ``log_action`` only adds the row to the session; it is committed with the
    state change it describes.
    """

    def __init__(self, db: Session):
        self.db = db

    def log_action(
        self,
        actor: ActorContext,
        action: str,
        target_type: str,
        target_id: str,
        before_state: Optional[Dict] = None,
        after_state: Optional[Dict] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ) -> AuditLog:
        """
        Record an action.

        Args:
            actor: Who performed the action
            action: Dotted action name (e.g., 'payment.completed', 'refund.approved')
            target_type: Type of record being modified (e.g., 'pending_payment')
            target_id: ID of the record being modified
            before_state: State of the record before the action
            after_state: State of the record after the action
            reason: Free-text reason
            metadata: Additional context
        """
        entry = AuditLog(
            actor_id=actor.actor_id,
            actor_type=actor.actor_type,
            actor_email=actor.email,
            ip_address=actor.ip_address,
            request_id=actor.request_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            before_state=before_state,
            after_state=after_state,
            reason=reason,
            action_metadata=metadata or {},
        )
        self.db.add(entry)

        logger.info(
            f"Audit: {action} on {target_type} {target_id} by {actor.actor_id}",
            extra={"action": action, "target_type": target_type, "target_id": target_id}
        )
        return entry

    def get_history(self, target_type: str, target_id: str, limit: int = 100):
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.target_type == target_type, AuditLog.target_id == str(target_id))
            .order_by(AuditLog.created_at.asc())
            .limit(limit)
            .all()
        )
