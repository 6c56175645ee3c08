"""
Scheduled batch passes for subscription renewals.

These jobs run periodically to:
- Charge subscriptions that are due for renewal (or for a retry)
- Suspend subscriptions whose grace period has ended
- Expire pending payments that never received a gateway outcome

Each pass holds a Redis lock so only one service instance runs it at a time,
and uses its own database session.
"""
import asyncio
import logging
from typing import Dict, Optional

from ..core.database import SessionLocal
from ..core.redis_lock import distributed_lock
from ..services.audit_service import SYSTEM_ACTOR
from ..services.renewal_service import AutoRenewalService

logger = logging.getLogger(__name__)


def run_auto_renewals() -> Optional[Dict[str, int]]:
    """
    Attempt every due renewal and retry.

    Runs: Hourly
    Lock: Prevents duplicate execution across multiple instances
    """
    with distributed_lock("run_auto_renewals", timeout=3000) as acquired:
        if not acquired:
            logger.info("Auto-renewal pass already running on another instance")
            return None

        logger.info("Starting auto-renewal pass")
        db = SessionLocal()

        try:
            service = AutoRenewalService(db)
            summary = asyncio.run(service.run_renewal_pass(actor=SYSTEM_ACTOR))
            logger.info(f"Auto-renewal pass completed: {summary}")
            return summary

        except Exception as e:
            logger.error(f"Error in auto-renewal pass: {e}", exc_info=True)
            db.rollback()
            raise

        finally:
            db.close()


def sweep_grace_periods() -> Optional[int]:
    """
    Suspend subscriptions whose grace period has ended.

    Runs: Daily at 00:15 AM UTC
    Lock: Prevents duplicate execution across multiple instances
    """
    with distributed_lock("sweep_grace_periods", timeout=1800) as acquired:
        if not acquired:
            logger.info("Grace period sweep already running on another instance")
            return None

        logger.info("Starting grace period expiry sweep")
        db = SessionLocal()

        try:
            suspended = AutoRenewalService(db).sweep_expired_grace_periods(actor=SYSTEM_ACTOR)
            logger.info(f"Grace period sweep completed: {suspended} subscriptions suspended")
            return suspended

        except Exception as e:
            logger.error(f"Error in grace period sweep: {e}", exc_info=True)
            db.rollback()
            raise

        finally:
            db.close()


def expire_pending_payments() -> Optional[int]:
    """
    Expire pending payments past their expiry time.

    Runs: Every 15 minutes
    Lock: Prevents duplicate execution across multiple instances
    """
    with distributed_lock("expire_pending_payments", timeout=600) as acquired:
        if not acquired:
            logger.info("Pending payment reaper already running on another instance")
            return None

        db = SessionLocal()

        try:
            expired = AutoRenewalService(db).expire_pending_payments(actor=SYSTEM_ACTOR)
            if expired:
                logger.info(f"Expired {expired} pending payments")
            return expired

        except Exception as e:
            logger.error(f"Error expiring pending payments: {e}", exc_info=True)
            db.rollback()
            raise

        finally:
            db.close()
