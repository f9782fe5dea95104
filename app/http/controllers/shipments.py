"""
Shipping routes: shipment lifecycle (admin), public tracking and serviceability,
the courier push webhook and admin-triggered tracking sync.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.auth import CurrentUser, require_admin
from app.database import get_db
from app.http.requests.schemas import (
    AssignCourierRequest,
    CancelShipmentRequest,
    CreateShipmentRequest,
    GenerateLabelRequest,
    RequestPickupRequest,
)
from app.services.errors import AlreadyShipped
from app.services.idempotency import IdempotencyLedger, get_idempotency_ledger
from app.services.order_reconciler import ShippingWebhookReconciler
from app.services.shipment_manager import ShipmentManager, ShipmentOptions
from app.services.shipping_providers import ShippingProvider, default_shipping_provider
from app.services.tracking_sync import sync_active_orders, sync_order, track_identifier

logger = logging.getLogger(__name__)
router = APIRouter()


async def handle_shipping_webhook(
    request: Request,
    db: Session,
    provider: ShippingProvider,
    ledger: IdempotencyLedger,
) -> dict:
    """
    Shared by /api/shipping/webhook and the /api/webhooks aliases.
    AuthenticationError propagates (401) before the body is read; everything after is a 200.
    """
    reconciler = ShippingWebhookReconciler(db, provider, ledger)
    reconciler.authenticate(request.headers)
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"{}")
    except (ValueError, UnicodeDecodeError):
        logger.warning("%s webhook: unparseable body (%s bytes)", provider.name, len(raw_body))
        return {"success": False, "message": "Invalid JSON payload"}
    return await reconciler.handle(payload)


@router.post("/create-shipment")
async def create_shipment(
    body: CreateShipmentRequest,
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    current_user: CurrentUser = Depends(require_admin),
):
    """Book a shipment with the courier. An order that already has one answers 200 with alreadyExists."""
    dims = body.dimensions
    options = ShipmentOptions(
        pickup_location=body.pickup_location,
        length=dims.length if dims else None,
        breadth=dims.breadth if dims else None,
        height=dims.height if dims else None,
        weight=body.weight,
    )
    try:
        shipment = await ShipmentManager(db, provider).create_shipment(body.order_id, body.order_type, options)
    except AlreadyShipped as e:
        logger.info("Create shipment for %s skipped: already exists", body.order_id)
        return JSONResponse(
            status_code=200,
            content={"success": True, "alreadyExists": True, "message": e.message, "data": e.shipment},
        )
    return {"success": True, "message": "Shipment created successfully", "data": shipment}


@router.post("/assign-courier")
async def assign_courier(
    body: AssignCourierRequest,
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    current_user: CurrentUser = Depends(require_admin),
):
    shipment = await ShipmentManager(db, provider).assign_courier(body.order_id, body.order_type, body.courier_id)
    return {"success": True, "message": "Courier assigned successfully", "data": shipment}


@router.post("/request-pickup")
async def request_pickup(
    body: RequestPickupRequest,
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    current_user: CurrentUser = Depends(require_admin),
):
    shipment = await ShipmentManager(db, provider).request_pickup(
        body.order_id, body.order_type, body.pickup_date, body.slot_from, body.slot_to
    )
    return {"success": True, "message": "Pickup requested successfully", "data": shipment}


@router.post("/cancel-shipment")
async def cancel_shipment(
    body: CancelShipmentRequest,
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    current_user: CurrentUser = Depends(require_admin),
):
    shipment = await ShipmentManager(db, provider).cancel_shipment(body.order_id, body.order_type, body.reason)
    return {"success": True, "message": "Shipment cancelled successfully", "data": shipment}


@router.post("/generate-label")
async def generate_label(
    body: GenerateLabelRequest,
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    current_user: CurrentUser = Depends(require_admin),
):
    """Labels for a batch of orders; per-order outcome, never all-or-nothing."""
    results = await ShipmentManager(db, provider).generate_labels(body.order_ids, body.order_type)
    return {
        "success": bool(results["succeeded"]),
        "data": {
            "succeeded": results["succeeded"],
            "missingShipment": results["missing_shipment"],
            "failed": results["failed"],
        },
    }


@router.get("/track/{identifier}")
async def track(
    identifier: str,
    order_type: Optional[str] = Query(None, alias="orderType"),
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
):
    """Public tracking by order id, order reference or AWB."""
    data = await track_identifier(db, identifier.strip(), ledger, order_type, provider)
    return {"success": True, "data": data}


@router.get("/check-serviceability")
async def check_serviceability(
    delivery_pincode: str = Query(..., alias="deliveryPincode"),
    pickup_pincode: Optional[str] = Query(None, alias="pickupPincode"),
    weight: Optional[float] = Query(None),
    cod: bool = Query(False),
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
):
    data = await ShipmentManager(db, provider).check_serviceability(pickup_pincode, delivery_pincode, weight, cod)
    return {"success": True, "data": data}


@router.get("/pickup-locations")
async def pickup_locations(
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    current_user: CurrentUser = Depends(require_admin),
):
    locations = await ShipmentManager(db, provider).pickup_locations()
    return {"success": True, "data": locations}


@router.get("/recommended-couriers/{order_id}")
async def recommended_couriers(
    order_id: str,
    order_type: Optional[str] = Query(None, alias="orderType"),
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    current_user: CurrentUser = Depends(require_admin),
):
    data = await ShipmentManager(db, provider).recommended_couriers(order_id, order_type)
    return {"success": True, "data": data}


@router.post("/webhook")
async def shipping_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
):
    """Courier push. 401 on a bad token; 200 for everything else, including processing errors."""
    return await handle_shipping_webhook(request, db, provider, ledger)


@router.post("/sync/{order_id}")
async def sync_one(
    order_id: str,
    order_type: Optional[str] = Query(None, alias="orderType"),
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
    current_user: CurrentUser = Depends(require_admin),
):
    result = await sync_order(db, order_id, ledger, order_type, provider)
    return {"success": not result.stale, "data": result.to_dict()}


@router.post("/sync")
async def sync_all(
    limit: int = Query(500, ge=1, le=5000),
    db: Session = Depends(get_db),
    provider: ShippingProvider = Depends(default_shipping_provider),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
    current_user: CurrentUser = Depends(require_admin),
):
    """Run the tracking sweep now instead of waiting for the scheduler."""
    result = await sync_active_orders(db, ledger, provider, limit=limit)
    logger.info("Manual tracking sweep by %s: %s", current_user.id, result)
    return {"success": True, "data": result}
