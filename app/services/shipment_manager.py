"""
Shipment lifecycle: create, assign courier, request pickup, cancel, labels.

One shipment per order. create_shipment claims the order's shipment slot with a conditional
UPDATE before calling the courier, so two concurrent creates (in this process or another)
cannot both book a shipment; the loser sees AlreadyShipped or an in-progress error.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config import settings
from app.models import Order, OrderStatus, OrderType
from app.services import realtime_service as realtime
from app.services.errors import AlreadyShipped, PreconditionFailed, ReconciliationError, ValidationError
from app.services.order_locator import locate
from app.services.order_locks import OrderLockRegistry, order_locks
from app.services.order_reconciler import can_transition, mutate_order, utcnow
from app.services.shipping_providers import ShipmentRequest, ShippingProvider

logger = logging.getLogger(__name__)

ADDRESS_MIN_LENGTH = 5
DEFAULT_WEIGHT_KG = 0.15
MIN_WEIGHT_KG = 0.05
MAX_WEIGHT_KG = 30.0
DEFAULT_DIMENSIONS = {"length": 17, "breadth": 4, "height": 2}
CREATING = "creating"
CLAIM_TIMEOUT = timedelta(minutes=5)


@dataclass
class ShipmentOptions:
    pickup_location: Optional[str] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    weight: Optional[float] = None


@dataclass
class AddressCheck:
    address: str
    repaired: bool
    repairs: list[str]


def normalize_weight_kg(weight: Optional[float]) -> float:
    """Weights above the kg ceiling are taken as grams; result is clamped to the courier range."""
    if weight is None or weight <= 0:
        return DEFAULT_WEIGHT_KG
    kg = float(weight)
    if kg > MAX_WEIGHT_KG:
        kg = kg / 1000.0
    return round(min(max(kg, MIN_WEIGHT_KG), MAX_WEIGHT_KG), 3)


def _address_failures(address: str) -> list[str]:
    failures = []
    if len(address) < ADDRESS_MIN_LENGTH:
        failures.append("min_length")
    if " " not in address:
        failures.append("has_space")
    if not re.search(r"\d", address):
        failures.append("has_digit")
    return failures


def validate_address(address: Optional[str], postal_code: Optional[str] = None) -> AddressCheck:
    """
    Courier address rules: at least 5 characters, one space, one digit.
    Near misses are repaired (postal code appended for a missing digit, separator for a
    missing space); a too-short address is rejected as is. Raises ValidationError naming
    the first rule still failing.
    """
    text = " ".join((address or "").split())
    failures = _address_failures(text)
    if not failures:
        return AddressCheck(address=text, repaired=False, repairs=[])
    if "min_length" in failures:
        raise ValidationError(
            f"Shipping address must be at least {ADDRESS_MIN_LENGTH} characters",
            rule="min_length",
            details={"address": text, "length": len(text), "minLength": ADDRESS_MIN_LENGTH},
        )

    repaired = text
    repairs = []
    postal = (postal_code or "").strip()
    if "has_digit" in failures and postal:
        repaired = f"{repaired} {postal}"
        repairs.append("appended_postal_code")
    elif "has_space" in failures:
        repaired = f"{repaired}, {postal}" if postal else f"{repaired} ,"
        repairs.append("appended_separator")

    remaining = _address_failures(repaired)
    if remaining:
        rule = remaining[0]
        raise ValidationError(
            "Shipping address must contain at least one number and one space",
            rule=rule,
            details={"address": text, "attempted": repaired, "failedRules": remaining},
        )
    logger.info("Repaired shipping address %r -> %r (%s)", text, repaired, ", ".join(repairs))
    return AddressCheck(address=repaired, repaired=True, repairs=repairs)


def shipment_view(order: Order) -> dict[str, Any]:
    return {
        "orderId": order.id,
        "orderType": order.order_type,
        "provider": order.shipment_provider,
        "shipmentId": order.shipment_provider_shipment_id,
        "providerOrderId": order.shipment_provider_order_id,
        "trackingCode": order.tracking_code,
        "courierId": order.courier_id,
        "courierName": order.courier_name,
        "status": order.shipment_status,
        "orderStatus": order.status.value if order.status else None,
        "trackingUrl": order.tracking_url,
        "labelUrl": order.label_url,
        "lastSyncedAt": order.last_synced_at.isoformat() if order.last_synced_at else None,
    }


class ShipmentManager:
    def __init__(self, db: Session, provider: ShippingProvider, locks: OrderLockRegistry = order_locks):
        self.db = db
        self.provider = provider
        self.locks = locks

    def _order(self, order_id: str, order_type: Union[str, OrderType, None] = None) -> Order:
        return locate(self.db, order_id, order_type).order

    @staticmethod
    def _require_shipment(order: Order, operation: str) -> None:
        if not order.shipment_provider_shipment_id:
            raise PreconditionFailed(
                f"Cannot {operation}: no shipment has been created for this order",
                {"orderId": order.id, "operation": operation},
            )

    def _build_request(self, order: Order, address: str, options: ShipmentOptions) -> ShipmentRequest:
        missing = [
            name for name, value in (
                ("city", order.shipping_city),
                ("state", order.shipping_state),
                ("postal_code", order.shipping_postal_code),
                ("phone", order.shipping_phone),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError(
                f"Shipping address is missing {', '.join(missing)}",
                rule="required_fields",
                details={"missing": missing},
            )
        weight = options.weight if options.weight is not None else order.total_weight_kg()
        created = order.created_at
        return ShipmentRequest(
            order_reference=order.reference,
            order_date=created.date() if created else date.today(),
            customer_name=order.shipping_name or order.customer_name or "Customer",
            address=address,
            city=order.shipping_city,
            state=order.shipping_state,
            pincode=order.shipping_postal_code.strip(),
            phone=order.shipping_phone.strip(),
            email=order.shipping_email or order.customer_email,
            country=order.shipping_country or "India",
            items=order.line_items(),
            payment_method="COD" if (order.payment_method or "").lower() == "cod" else "Prepaid",
            sub_total=float(order.total),
            weight_kg=normalize_weight_kg(weight),
            length_cm=options.length or DEFAULT_DIMENSIONS["length"],
            breadth_cm=options.breadth or DEFAULT_DIMENSIONS["breadth"],
            height_cm=options.height or DEFAULT_DIMENSIONS["height"],
            pickup_location=options.pickup_location,
        )

    def _claim(self, order: Order) -> bool:
        now = utcnow()
        claimed = (
            self.db.query(Order)
            .filter(
                Order.id == order.id,
                Order.shipment_provider_shipment_id.is_(None),
                or_(
                    Order.shipment_status.is_(None),
                    Order.shipment_status != CREATING,
                    Order.last_synced_at < now - CLAIM_TIMEOUT,
                ),
            )
            .update(
                {Order.shipment_status: CREATING, Order.last_synced_at: now, Order.version: Order.version + 1},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    def _release_claim(self, order_id: str, previous_status: Optional[str]) -> None:
        self.db.rollback()
        self.db.query(Order).filter(
            Order.id == order_id,
            Order.shipment_provider_shipment_id.is_(None),
            Order.shipment_status == CREATING,
        ).update(
            {Order.shipment_status: previous_status, Order.version: Order.version + 1},
            synchronize_session=False,
        )
        self.db.commit()

    async def create_shipment(
        self,
        order_id: str,
        order_type: Union[str, OrderType, None] = None,
        options: Optional[ShipmentOptions] = None,
    ) -> dict[str, Any]:
        """
        Book a shipment with the courier. Raises AlreadyShipped (carrying the existing
        shipment) when the order already has one; never calls the courier twice for an order.
        """
        options = options or ShipmentOptions()
        order = self._order(order_id, order_type)
        async with self.locks.hold(order.id):
            self.db.refresh(order)
            if order.has_shipment:
                raise AlreadyShipped("Shipment already created for this order", shipment_view(order))
            address = validate_address(
                ", ".join(p.strip() for p in (order.shipping_address1, order.shipping_address2) if p and p.strip()),
                order.shipping_postal_code,
            )
            request = self._build_request(order, address.address, options)

            previous_status = order.shipment_status if order.shipment_status != CREATING else None
            if not self._claim(order):
                self.db.refresh(order)
                if order.has_shipment:
                    raise AlreadyShipped("Shipment already created for this order", shipment_view(order))
                raise PreconditionFailed("Shipment creation already in progress for this order", {"orderId": order.id})

            try:
                created = await self.provider.create_shipment(request)
            except Exception:
                logger.error("Shipment creation failed for order %s via %s", order.id, self.provider.name)
                self._release_claim(order.id, previous_status)
                raise

            def _persist(o: Order) -> None:
                now = utcnow()
                o.shipment_provider = created.provider
                o.shipment_provider_shipment_id = created.provider_shipment_id
                o.shipment_provider_order_id = created.provider_order_id
                o.tracking_code = created.tracking_code
                o.courier_id = created.courier_id
                o.courier_name = created.courier_name
                o.shipment_status = created.status or "NEW"
                o.tracking_url = created.tracking_url
                o.last_synced_at = now
                o.tracking_history.append({
                    "status": o.shipment_status,
                    "timestamp": now.isoformat(),
                    "location": created.pickup_location,
                    "note": f"Shipment created with {created.provider}",
                })
                if can_transition(o.status, OrderStatus.PROCESSING):
                    o.status = OrderStatus.PROCESSING

            order, _ = mutate_order(self.db, order, _persist)

        logger.info(
            "Shipment created order=%s provider=%s shipment=%s awb=%s",
            order.id, created.provider, created.provider_shipment_id, created.tracking_code,
        )
        realtime.realtime_service.publish(order, realtime.ORDER_STATUS_UPDATED, {"shipment": shipment_view(order)})
        return shipment_view(order)

    async def assign_courier(self, order_id: str, order_type: Union[str, OrderType, None] = None,
                             courier_id: Optional[str] = None) -> dict[str, Any]:
        order = self._order(order_id, order_type)
        self._require_shipment(order, "assign courier")
        result = await self.provider.assign_awb(order.shipment_provider_shipment_id, courier_id)

        def _persist(o: Order) -> None:
            o.tracking_code = result.get("trackingCode") or o.tracking_code
            o.courier_id = result.get("courierId") or o.courier_id
            o.courier_name = result.get("courierName") or o.courier_name
            o.shipment_status = "AWB Assigned"
            o.last_synced_at = utcnow()
            if can_transition(o.status, OrderStatus.PROCESSING):
                o.status = OrderStatus.PROCESSING

        async with self.locks.hold(order.id):
            order, _ = mutate_order(self.db, order, _persist)
        logger.info("AWB %s assigned to order %s (%s)", order.tracking_code, order.id, order.courier_name)
        return shipment_view(order)

    async def request_pickup(self, order_id: str, order_type: Union[str, OrderType, None] = None,
                             pickup_date: Optional[date] = None, slot_from: Optional[str] = None,
                             slot_to: Optional[str] = None) -> dict[str, Any]:
        order = self._order(order_id, order_type)
        self._require_shipment(order, "request pickup")
        result = await self.provider.request_pickup(order.shipment_provider_shipment_id, pickup_date, slot_from, slot_to)

        def _persist(o: Order) -> None:
            now = utcnow()
            o.last_synced_at = now
            o.tracking_history.append({
                "status": "Pickup Requested",
                "timestamp": now.isoformat(),
                "location": None,
                "note": f"Pickup scheduled for {result.get('pickupDate') or 'next slot'}",
            })

        async with self.locks.hold(order.id):
            order, _ = mutate_order(self.db, order, _persist)
        logger.info("Pickup requested for order %s: %s", order.id, result.get("pickupDate"))
        return {**shipment_view(order), "pickup": {k: v for k, v in result.items() if k != "raw"}}

    async def cancel_shipment(self, order_id: str, order_type: Union[str, OrderType, None] = None,
                              reason: Optional[str] = None) -> dict[str, Any]:
        order = self._order(order_id, order_type)
        self._require_shipment(order, "cancel shipment")
        if not can_transition(order.status, OrderStatus.CANCELLED):
            raise PreconditionFailed(
                f"Order in status {order.status.value} cannot be cancelled",
                {"orderId": order.id, "status": order.status.value},
            )
        await self.provider.cancel(order.tracking_code, order.shipment_provider_shipment_id)
        reason = reason or "Cancelled by admin"

        def _persist(o: Order) -> None:
            now = utcnow()
            o.shipment_status = "Cancelled"
            o.cancellation_reason = reason
            o.last_synced_at = now
            if can_transition(o.status, OrderStatus.CANCELLED):
                o.status = OrderStatus.CANCELLED
            o.tracking_history.append({"status": "Cancelled", "timestamp": now.isoformat(), "location": None, "note": reason})

        async with self.locks.hold(order.id):
            order, _ = mutate_order(self.db, order, _persist)
        logger.info("Shipment cancelled for order %s: %s", order.id, reason)
        realtime.realtime_service.publish(order, realtime.ORDER_STATUS_UPDATED, {"reason": reason})
        return shipment_view(order)

    async def generate_labels(self, order_ids: list[str], order_type: Union[str, OrderType, None] = None) -> dict[str, list]:
        """Per-order outcome; one bad id never fails the batch."""
        results: dict[str, list] = {"succeeded": [], "missing_shipment": [], "failed": []}
        for order_id in order_ids:
            try:
                order = self._order(order_id, order_type)
                if not order.shipment_provider_shipment_id:
                    results["missing_shipment"].append({"orderId": order.id})
                    continue
                urls = await self.provider.generate_label([order.shipment_provider_shipment_id])
                url = urls.get(str(order.shipment_provider_shipment_id))
                if not url:
                    results["failed"].append({"orderId": order.id, "error": "Courier returned no label"})
                    continue

                def _persist(o: Order) -> None:
                    o.label_url = url
                    o.last_synced_at = utcnow()

                mutate_order(self.db, order, _persist)
                results["succeeded"].append({"orderId": order.id, "labelUrl": url})
            except ReconciliationError as e:
                self.db.rollback()
                results["failed"].append({"orderId": order_id, "error": e.message})
        logger.info(
            "Labels: %s succeeded, %s without shipment, %s failed",
            len(results["succeeded"]), len(results["missing_shipment"]), len(results["failed"]),
        )
        return results

    async def recommended_couriers(self, order_id: str, order_type: Union[str, OrderType, None] = None) -> dict[str, Any]:
        order = self._order(order_id, order_type)
        if not order.shipping_postal_code:
            raise ValidationError("Order has no delivery pincode", rule="postal_code")
        result = await self.provider.check_serviceability(
            settings.SHIPROCKET_PICKUP_PINCODE,
            order.shipping_postal_code,
            normalize_weight_kg(order.total_weight_kg()),
            cod=(order.payment_method or "").lower() == "cod",
        )
        couriers = sorted(result.get("couriers") or [], key=lambda c: float(c.get("freight_charge") or 0))
        return {"couriers": couriers, "count": len(couriers), "recommendedCourierId": result.get("recommendedCourierId")}

    async def check_serviceability(self, pickup_pincode: Optional[str], delivery_pincode: str,
                                   weight: Optional[float] = None, cod: bool = False) -> dict[str, Any]:
        if not delivery_pincode:
            raise ValidationError("deliveryPincode is required", rule="delivery_pincode")
        result = await self.provider.check_serviceability(
            pickup_pincode or settings.SHIPROCKET_PICKUP_PINCODE,
            delivery_pincode,
            normalize_weight_kg(weight if weight is not None else 0.5),
            cod,
        )
        return {"serviceable": bool(result.get("serviceable")), "availableCouriers": int(result.get("availableCouriers") or 0)}

    async def pickup_locations(self) -> list[dict]:
        return await self.provider.get_pickup_locations()
