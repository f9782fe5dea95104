"""
Order routes: customer-facing status, live updates over SSE, admin status override.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from app.auth import CurrentUser, get_current_user, require_admin
from app.database import get_db
from app.http.requests.schemas import StatusOverrideRequest
from app.models import Order
from app.services import realtime_service as realtime
from app.services.errors import NotFoundError
from app.services.order_locator import locate
from app.services.order_locks import order_locks
from app.services.order_reconciler import override_status

logger = logging.getLogger(__name__)
router = APIRouter()


def _visible_order(db: Session, order_id: str, order_type: Optional[str], user: CurrentUser) -> Order:
    """Customers only see their own orders; someone else's order is reported as missing."""
    order = locate(db, order_id, order_type).order
    if not user.is_admin and order.user_id and order.user_id != user.id:
        raise NotFoundError("Order not found", {"orderId": order_id})
    return order


def _order_summary(order: Order) -> dict:
    return {
        "orderId": order.id,
        "orderType": order.order_type,
        "reference": order.reference,
        "status": order.status.value,
        "paymentStatus": order.payment_status.value,
        "refundStatus": order.refund_status.value,
        "refundAmount": str(order.refund_amount or 0),
        "total": str(order.total),
        "shipment": {
            "provider": order.shipment_provider,
            "trackingCode": order.tracking_code,
            "courierName": order.courier_name,
            "status": order.shipment_status,
            "trackingUrl": order.tracking_url,
            "lastSyncedAt": order.last_synced_at.isoformat() if order.last_synced_at else None,
            "deliveredAt": order.delivered_at.isoformat() if order.delivered_at else None,
        },
        "trackingHistory": list(order.tracking_history or []),
        "cancellationReason": order.cancellation_reason,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
    }


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    order_type: Optional[str] = Query(None, alias="orderType"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    order = _visible_order(db, order_id, order_type, current_user)
    return {"success": True, "data": _order_summary(order)}


@router.get("/{order_id}/events")
async def order_events(
    order_id: str,
    request: Request,
    order_type: Optional[str] = Query(None, alias="orderType"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Server-Sent Events stream of status, payment and refund updates for one order."""
    order = _visible_order(db, order_id, order_type, current_user)
    return EventSourceResponse(realtime.realtime_service.generate_events(request, order.id))


@router.patch("/{order_id}/status")
async def override_order_status(
    order_id: str,
    body: StatusOverrideRequest,
    order_type: Optional[str] = Query(None, alias="orderType"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    """Admin correction. The only path that may move an order backwards or out of a terminal status."""
    order = locate(db, order_id, order_type).order
    async with order_locks.hold(order.id):
        order = override_status(db, order, body.status, body.note, actor=current_user.email or current_user.id)
    return {"success": True, "message": "Order status updated", "data": _order_summary(order)}
