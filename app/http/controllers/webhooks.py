"""
Webhook routes: persisted delivery log for admins and the shipping webhook aliases.
Courier receivers are public (no JWT); they authenticate with the provider's shared token.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.auth import CurrentUser, require_admin
from app.database import get_db
from app.http.controllers.shipments import handle_shipping_webhook
from app.models import WebhookEvent
from app.services.idempotency import IdempotencyLedger, get_idempotency_ledger
from app.services.shipping_providers import ShippingProvider, default_shipping_provider, get_shipping_provider

logger = logging.getLogger(__name__)
router = APIRouter()


def provider_from_path(provider: str) -> ShippingProvider:
    """Resolve /api/webhooks/{provider}; unknown names are a 400."""
    return get_shipping_provider(provider)


@router.get("")
async def list_webhook_events(
    source: Optional[str] = Query(None),
    failed: Optional[bool] = Query(None, description="Only deliveries whose processing failed"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    """Recent webhook deliveries, newest first."""
    query = db.query(WebhookEvent)
    if source:
        query = query.filter(WebhookEvent.source == source)
    if failed is True:
        query = query.filter(WebhookEvent.error.isnot(None))
    elif failed is False:
        query = query.filter(WebhookEvent.error.is_(None))
    events = query.order_by(WebhookEvent.created_at.desc(), WebhookEvent.id).limit(limit).all()
    return {
        "events": [
            {
                "id": e.id,
                "source": e.source,
                "topic": e.topic,
                "eventKey": e.event_key,
                "reference": e.reference,
                "orderId": e.order_id,
                "duplicate": e.duplicate,
                "processedAt": e.processed_at.isoformat() if e.processed_at else None,
                "error": e.error,
                "payloadSummary": e.payload_summary,
                "createdAt": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ]
    }


@router.post("/shipping")
async def shipping_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
):
    return await handle_shipping_webhook(request, db, provider, ledger)


@router.post("/{provider}")
async def provider_webhook(
    request: Request,
    db: Session = Depends(get_db),
    shipping_provider: ShippingProvider = Depends(provider_from_path),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
):
    """Courier-specific receiver, e.g. /api/webhooks/delhivery."""
    return await handle_shipping_webhook(request, db, shipping_provider, ledger)
