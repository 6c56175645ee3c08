"""
Admin API Endpoints for billing operators

These endpoints require the billing admin authority. Every mutation is
performed on behalf of the authenticated admin, who is recorded in the
audit log.
"""
import io
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..models.auto_renewal_job import RenewalJobStatus
from ..models.reconciliation import RunStatus
from ..models.refund import RefundReason, RefundStatus, RefundTarget, RefundableKind
from ..models.webhook_event import WebhookEventStatus
from ..services.audit_service import ActorContext
from ..services.reconciliation_queue import reconciliation_queue
from ..services.reconciliation_service import ReconciliationEngine
from ..services.refund_service import RefundService
from ..services.renewal_service import AutoRenewalService
from ..services.scheduler import list_jobs
from ..services.webhook_service import WebhookService
from .dependencies import get_admin_actor

router = APIRouter(prefix="/admin", tags=["Admin - Billing"])


# ============================================================================
# Request Schemas
# ============================================================================

class ReconciliationRequest(BaseModel):
    """Ledgers to reconcile; omit app_records to use recorded payments"""
    gateway_records: List[Dict[str, Any]] = Field(default_factory=list)
    app_records: Optional[List[Dict[str, Any]]] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    dry_run: bool = False
    sync: bool = True
    notes: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the subscription is being cancelled")


class RefundRequest(BaseModel):
    refundable_kind: RefundableKind
    refundable_id: str
    reason: RefundReason = RefundReason.OTHER
    amount: Optional[Decimal] = Field(None, gt=0)
    customer_notes: Optional[str] = None
    payment_id: Optional[str] = None


class RefundDecision(BaseModel):
    notes: Optional[str] = None


# ============================================================================
# Reconciliation
# ============================================================================

@router.post("/reconciliation/runs")
async def trigger_reconciliation(
    body: ReconciliationRequest,
    response: Response,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    """Run (or queue) a reconciliation"""
    if not body.sync and not body.dry_run:
        queued = reconciliation_queue.publish_run_request(
            gateway_records=body.gateway_records,
            app_records=body.app_records,
            period_start=body.period_start.isoformat() if body.period_start else None,
            period_end=body.period_end.isoformat() if body.period_end else None,
            notes=body.notes,
            requested_by=actor.actor_id,
        )
        if not queued:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                                detail="Reconciliation queue unavailable")
        response.status_code = status.HTTP_202_ACCEPTED
        return {"queued": True}

    engine = ReconciliationEngine(db)
    if body.app_records is None:
        run = engine.run_for_period(body.gateway_records, body.period_start, body.period_end,
                                    actor=actor, dry_run=body.dry_run, notes=body.notes)
    else:
        run = engine.run_from_data(body.app_records, body.gateway_records, body.period_start, body.period_end,
                                   actor=actor, dry_run=body.dry_run, notes=body.notes)

    if run.status == RunStatus.FAILED:
        response.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return {"dry_run": body.dry_run, **run.to_dict(include_items=True)}


@router.get("/reconciliation/runs")
async def list_reconciliation_runs(
    status_filter: Optional[RunStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    runs = ReconciliationEngine(db).list_runs(status=status_filter, limit=limit, offset=offset)
    return {"items": [run.to_dict() for run in runs], "limit": limit, "offset": offset}


def _get_run_or_404(db: Session, run_id: str):
    run = ReconciliationEngine(db).get_run(run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reconciliation run not found")
    return run


@router.get("/reconciliation/runs/{run_id}")
async def get_reconciliation_run(
    run_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    return _get_run_or_404(db, run_id).to_dict(include_items=True)


@router.get("/reconciliation/runs/{run_id}/export")
async def export_reconciliation_run(
    run_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Response:
    run = _get_run_or_404(db, run_id)
    buffer = io.StringIO()
    ReconciliationEngine.export_items_csv(run.items, buffer)
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="reconciliation-{run.run_id}.csv"'},
    )


# ============================================================================
# Renewals and subscriptions
# ============================================================================

@router.get("/renewal-jobs")
async def list_renewal_jobs(
    subscription_id: Optional[str] = None,
    status_filter: Optional[RenewalJobStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    service = AutoRenewalService(db)
    jobs = service.list_jobs(subscription_id=subscription_id, status=status_filter, limit=limit)
    return {"items": [job.to_dict() for job in jobs]}


@router.get("/scheduler/jobs")
async def list_scheduled_jobs(actor: ActorContext = Depends(get_admin_actor)) -> Dict[str, Any]:
    return {"items": list_jobs()}


@router.get("/subscriptions/{subscription_id}/billing-state")
async def get_billing_state(
    subscription_id: str,
    legacy_status: bool = Query(False, description="Render short legacy status names"),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    service = AutoRenewalService(db)
    subscription = service.get_subscription(subscription_id)
    enhancement = service.get_or_create_enhancement(subscription)
    db.commit()
    return enhancement.to_dict(legacy_status=legacy_status)


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    body: CancelSubscriptionRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    enhancement = AutoRenewalService(db).cancel_subscription(subscription_id, actor, reason=body.reason)
    return enhancement.to_dict()


@router.post("/pending-payments/{payment_id}/refresh")
async def refresh_pending_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    """Poll the gateway for a pending payment and apply the result"""
    service = AutoRenewalService(db)
    changed = await service.confirm_pending_payment(payment_id, actor=actor)
    return {"changed": changed, **service.tracker.get(payment_id).to_dict()}


# ============================================================================
# Refunds
# ============================================================================

@router.post("/refunds", status_code=status.HTTP_201_CREATED)
async def request_refund(
    body: RefundRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    refund = RefundService(db).request_refund(
        RefundTarget(kind=body.refundable_kind, id=body.refundable_id),
        actor,
        reason=body.reason,
        amount=body.amount,
        customer_notes=body.customer_notes,
        payment_id=body.payment_id,
    )
    return refund.to_dict()


@router.get("/refunds")
async def list_refunds(
    status_filter: Optional[RefundStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    return {"items": [refund.to_dict() for refund in RefundService(db).list_refunds(status_filter, limit)]}


@router.post("/refunds/{refund_id}/approve")
async def approve_refund(
    refund_id: str,
    body: RefundDecision,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    return RefundService(db).approve(refund_id, actor, notes=body.notes).to_dict()


@router.post("/refunds/{refund_id}/reject")
async def reject_refund(
    refund_id: str,
    body: RefundDecision,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    return RefundService(db).reject(refund_id, actor, reason=body.notes).to_dict()


@router.post("/refunds/{refund_id}/process")
async def process_refund(
    refund_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    refund = await RefundService(db).process_refund(refund_id, actor)
    return refund.to_dict()


# ============================================================================
# Webhook events
# ============================================================================

@router.get("/webhook-events")
async def list_webhook_events(
    provider: Optional[str] = None,
    status_filter: Optional[WebhookEventStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_admin_actor)
) -> Dict[str, Any]:
    events = WebhookService(db).list_events(provider=provider, status=status_filter, limit=limit)
    return {"items": [event.to_dict() for event in events]}
