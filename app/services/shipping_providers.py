"""
Shipping provider interface and registry.

Both courier integrations (Shiprocket, Delhivery) implement ShippingProvider; the
shipment manager, webhook reconciler and tracking sync depend only on this interface,
so tests swap in fakes through get_shipping_provider / the FastAPI dependency.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from app.config import settings
from app.services.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ShipmentRequest:
    """Everything a courier needs to book one order."""
    order_reference: str
    order_date: date
    customer_name: str
    address: str
    city: str
    state: str
    pincode: str
    phone: str
    email: Optional[str] = None
    country: str = "India"
    items: list[dict] = field(default_factory=list)
    payment_method: str = "Prepaid"
    sub_total: float = 0.0
    weight_kg: float = 0.15
    length_cm: float = 17
    breadth_cm: float = 4
    height_cm: float = 2
    pickup_location: Optional[str] = None


@dataclass
class CreatedShipment:
    provider: str
    provider_shipment_id: str
    provider_order_id: Optional[str] = None
    tracking_code: Optional[str] = None
    courier_id: Optional[str] = None
    courier_name: Optional[str] = None
    status: Optional[str] = None
    tracking_url: Optional[str] = None
    pickup_location: Optional[str] = None
    raw: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "shipmentId": self.provider_shipment_id,
            "providerOrderId": self.provider_order_id,
            "trackingCode": self.tracking_code,
            "courierId": self.courier_id,
            "courierName": self.courier_name,
            "status": self.status,
            "trackingUrl": self.tracking_url,
        }


@dataclass
class ShipmentUpdate:
    """
    One observed shipment status, from a push webhook or a tracking pull.
    Both paths hand this to apply_shipment_update.
    """
    raw_status: str
    tracking_code: Optional[str] = None
    order_reference: Optional[str] = None
    location: Optional[str] = None
    timestamp: Optional[str] = None
    note: Optional[str] = None
    delivered_date: Optional[str] = None
    reason: Optional[str] = None
    scans: list[dict] = field(default_factory=list)
    payload: dict = field(default_factory=dict)

    @property
    def is_test(self) -> bool:
        return (self.tracking_code or "").lower() == "test" or (self.order_reference or "").lower() == "test"


class ShippingProvider(ABC):
    """Courier integration. All calls are async and raise ProviderError on failure."""

    name: str = ""

    @property
    @abstractmethod
    def webhook_secret(self) -> str:
        ...

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> CreatedShipment:
        ...

    @abstractmethod
    async def assign_awb(self, shipment_id: str, courier_id: Optional[str] = None) -> dict:
        """Returns {trackingCode, courierId, courierName}."""

    @abstractmethod
    async def request_pickup(self, shipment_id: str, pickup_date: Optional[date] = None,
                             slot_from: Optional[str] = None, slot_to: Optional[str] = None) -> dict:
        ...

    @abstractmethod
    async def cancel(self, tracking_code: Optional[str], shipment_id: Optional[str] = None) -> dict:
        ...

    @abstractmethod
    async def generate_label(self, shipment_ids: list[str]) -> dict[str, Optional[str]]:
        """Label url per shipment id (None where the provider returned none)."""

    @abstractmethod
    async def track(self, tracking_code: str) -> ShipmentUpdate:
        ...

    @abstractmethod
    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str,
                                   weight_kg: float = 0.5, cod: bool = False) -> dict:
        """Returns {serviceable, availableCouriers, couriers}."""

    @abstractmethod
    async def get_pickup_locations(self) -> list[dict]:
        ...

    def parse_webhook(self, payload: dict) -> ShipmentUpdate:
        """
        Flat push payload: { waybill|awb|awb_code, order|order_id|reference_number,
        status|current_status, location?, delivered_date?, instructions? }.
        """
        raw_status = payload.get("current_status") or payload.get("status") or payload.get("shipment_status") or ""
        if isinstance(raw_status, dict):
            raw_status = raw_status.get("status") or raw_status.get("Status") or ""
        tracking_code = payload.get("waybill") or payload.get("awb") or payload.get("awb_code")
        order_reference = payload.get("order") or payload.get("order_id") or payload.get("reference_number")
        return ShipmentUpdate(
            raw_status=str(raw_status),
            tracking_code=str(tracking_code).strip() if tracking_code else None,
            order_reference=str(order_reference).strip() if order_reference else None,
            location=payload.get("location") or payload.get("current_location"),
            timestamp=payload.get("current_timestamp") or payload.get("scan_timestamp") or payload.get("timestamp"),
            note=payload.get("instructions") or payload.get("activity"),
            delivered_date=payload.get("delivered_date"),
            reason=payload.get("reason"),
            scans=payload.get("scans") if isinstance(payload.get("scans"), list) else [],
            payload=payload,
        )


_providers: dict[str, ShippingProvider] = {}


def get_shipping_provider(name: Optional[str] = None) -> ShippingProvider:
    """Provider by name (defaults to SHIPPING_PROVIDER). Instances are cached so auth tokens are reused."""
    key = (name or settings.SHIPPING_PROVIDER or "shiprocket").strip().lower()
    if key not in _providers:
        if key == "shiprocket":
            from app.services.shiprocket_service import ShiprocketClient
            _providers[key] = ShiprocketClient()
        elif key == "delhivery":
            from app.services.delhivery_service import get_client
            _providers[key] = get_client()
        else:
            raise ValidationError(f"Unknown shipping provider: {name}", rule="provider")
        logger.info("Shipping provider initialised: %s", key)
    return _providers[key]


def default_shipping_provider() -> ShippingProvider:
    """FastAPI dependency for the configured provider."""
    return get_shipping_provider()
