"""Inbound payment gateway callbacks"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.logging_config import generate_request_id
from ..services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADERS = ("x-paystack-signature", "x-webhook-signature")


@router.post("/{provider}", response_model=Dict[str, Any])
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """
    Receive a gateway callback.

    Invalid signatures get 401, a busy subscription gets 409 so the provider
    redelivers; everything else is acknowledged with 200.
    """
    body = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
    request_id = request.headers.get("x-request-id") or generate_request_id()

    result = WebhookService(db).handle(provider.lower(), body, signature, request_id=request_id)

    return {
        "success": True,
        "event_id": result.event.id,
        "status": result.event.status.value,
        "duplicate": result.duplicate,
        "applied": result.applied,
    }
