"""
Delhivery B2C API client.
Authorization: Token <API_KEY>
Create: POST /api/cmu/create.json (form: format=json&data=<json>); the waybill doubles as shipment id.
Tracking: GET /api/v1/packages/json/?waybill=XXXX
Cancel: POST /api/p/edit {waybill, cancellation}; labels: GET /api/p/packing_slip?wbns=...
Pickup: POST /fm/request/new/; serviceability: GET /c/api/pin-codes/json/?filter_codes=PIN
"""
import json
import logging
from datetime import date, timedelta
from typing import Any, Optional

import httpx

from app.config import settings
from app.services.errors import ProviderError
from app.services.http_client import get_with_retry, is_transient_status, request_with_retry
from app.services.shipping_providers import (
    CreatedShipment,
    ShipmentRequest,
    ShipmentUpdate,
    ShippingProvider,
)

logger = logging.getLogger(__name__)

COURIER_NAME = "Delhivery"


def get_client(api_key: Optional[str] = None) -> "DelhiveryClient":
    """Return a client instance. Api key from env if not passed."""
    key = api_key or settings.DELHIVERY_API_KEY or ""
    return DelhiveryClient(
        api_key=key,
        base_url=settings.DELHIVERY_BASE_URL,
        tracking_base_url=settings.DELHIVERY_TRACKING_BASE_URL,
    )


def _shipment_block(data: Any) -> dict:
    # Response shape: { "ShipmentData": [ { "Shipment": { "AWB": "...", "Status": {...}, "Scans": [...] } } ] }
    if not isinstance(data, dict):
        return {}
    shipment_data = data.get("ShipmentData") or data.get("shipmentData") or []
    if not shipment_data:
        return {}
    first = shipment_data[0] if isinstance(shipment_data[0], dict) else {}
    return first.get("Shipment") or first.get("shipment") or first


def _scan_rows(shipment: dict) -> list[dict]:
    rows = []
    for scan in shipment.get("Scans") or shipment.get("scans") or []:
        detail = scan.get("ScanDetail") or scan if isinstance(scan, dict) else {}
        rows.append({
            "status": detail.get("Scan") or detail.get("ScanType"),
            "timestamp": detail.get("ScanDateTime") or detail.get("StatusDateTime"),
            "location": detail.get("ScannedLocation"),
            "note": detail.get("Instructions"),
        })
    return rows


class DelhiveryClient(ShippingProvider):
    name = "delhivery"

    def __init__(self, api_key: str, base_url: str = "https://track.delhivery.com",
                 tracking_base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.tracking_base_url = (tracking_base_url or base_url).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SEC

    @property
    def webhook_secret(self) -> str:
        return settings.DELHIVERY_WEBHOOK_TOKEN

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("DELHIVERY_API_KEY not set", provider=self.name)
        return {"Authorization": f"Token {self.api_key}", "Accept": "application/json"}

    def _check(self, resp: httpx.Response, what: str) -> Any:
        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text[:500]}
        if resp.status_code >= 400:
            logger.warning("Delhivery %s HTTP error status=%s body=%s", what, resp.status_code, body)
            message = body.get("rmk") or body.get("error") if isinstance(body, dict) else None
            raise ProviderError(
                message or f"Delhivery {what} returned HTTP {resp.status_code}",
                provider=self.name,
                transient=is_transient_status(resp.status_code),
                provider_status=resp.status_code,
                body=body,
            )
        return body

    async def _call(self, method: str, url: str, what: str, **kwargs: Any) -> Any:
        try:
            resp = await request_with_retry(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Delhivery %s failed: %s", what, e)
            raise ProviderError(f"Delhivery {what} failed: {e}", provider=self.name, transient=True)
        return self._check(resp, what)

    async def create_shipment(self, request: ShipmentRequest) -> CreatedShipment:
        pickup_name = request.pickup_location or settings.DELHIVERY_PICKUP_LOCATION
        shipment = {
            "name": request.customer_name,
            "add": request.address,
            "pin": request.pincode,
            "city": request.city,
            "state": request.state,
            "country": request.country,
            "phone": request.phone,
            "order": request.order_reference,
            "payment_mode": "COD" if request.payment_method.upper() == "COD" else "Prepaid",
            "products_desc": ", ".join(str(i.get("name")) for i in request.items) or "Mobile Cover",
            "hsn_code": "392690",
            "cod_amount": request.sub_total if request.payment_method.upper() == "COD" else 0,
            "order_date": request.order_date.strftime("%Y-%m-%d"),
            "total_amount": request.sub_total,
            "quantity": sum(int(i.get("units") or 1) for i in request.items) or 1,
            "weight": round(request.weight_kg * 1000),  # grams
            "shipment_length": request.length_cm,
            "shipment_width": request.breadth_cm,
            "shipment_height": request.height_cm,
            "shipping_mode": "Surface",
            "address_type": "home",
        }
        payload = {"shipments": [shipment], "pickup_location": {"name": pickup_name}}
        logger.info("Creating Delhivery shipment %s pickup=%s", request.order_reference, pickup_name)
        body = await self._call(
            "POST",
            f"{self.base_url}/api/cmu/create.json",
            "create",
            data={"format": "json", "data": json.dumps(payload)},
        )
        packages = body.get("packages") or [] if isinstance(body, dict) else []
        package = packages[0] if packages else {}
        waybill = package.get("waybill")
        if not waybill or (isinstance(body, dict) and body.get("success") is False):
            remarks = package.get("remarks") or body.get("rmk") if isinstance(body, dict) else None
            if isinstance(remarks, list):
                remarks = "; ".join(str(r) for r in remarks)
            raise ProviderError(remarks or "Delhivery did not return a waybill", provider=self.name, body=body)
        return CreatedShipment(
            provider=self.name,
            provider_shipment_id=str(waybill),
            provider_order_id=package.get("refnum") or request.order_reference,
            tracking_code=str(waybill),
            courier_id=self.name,
            courier_name=COURIER_NAME,
            status=package.get("status") or "Manifested",
            tracking_url=f"https://www.delhivery.com/track/package/{waybill}",
            pickup_location=pickup_name,
            raw=body,
        )

    async def assign_awb(self, shipment_id: str, courier_id: Optional[str] = None) -> dict:
        # Delhivery allots the waybill at manifest time; there is no separate courier choice.
        return {"trackingCode": shipment_id, "courierId": self.name, "courierName": COURIER_NAME, "raw": {}}

    async def request_pickup(self, shipment_id: str, pickup_date: Optional[date] = None,
                             slot_from: Optional[str] = None, slot_to: Optional[str] = None) -> dict:
        pickup_date = pickup_date or (date.today() + timedelta(days=1))
        payload = {
            "pickup_time": slot_from or "11:00:00",
            "pickup_date": pickup_date.strftime("%Y-%m-%d"),
            "pickup_location": settings.DELHIVERY_PICKUP_LOCATION,
            "expected_package_count": 1,
        }
        body = await self._call("POST", f"{self.base_url}/fm/request/new/", "pickup", json=payload)
        return {
            "scheduled": bool(isinstance(body, dict) and (body.get("pickup_id") or body.get("success"))),
            "pickupDate": payload["pickup_date"],
            "pickupToken": body.get("pickup_id") if isinstance(body, dict) else None,
            "raw": body,
        }

    async def cancel(self, tracking_code: Optional[str], shipment_id: Optional[str] = None) -> dict:
        waybill = tracking_code or shipment_id
        body = await self._call(
            "POST", f"{self.base_url}/api/p/edit", "cancel", json={"waybill": waybill, "cancellation": "true"}
        )
        if isinstance(body, dict) and body.get("status") is False:
            raise ProviderError(body.get("remark") or "Delhivery refused cancellation", provider=self.name, body=body)
        return {"cancelled": True, "raw": body}

    async def generate_label(self, shipment_ids: list[str]) -> dict[str, Optional[str]]:
        body = await self._call(
            "GET",
            f"{self.base_url}/api/p/packing_slip",
            "label",
            params={"wbns": ",".join(shipment_ids), "pdf": "true"},
        )
        urls = {
            str(p.get("wbn")): p.get("pdf_download_link")
            for p in (body.get("packages") or [] if isinstance(body, dict) else [])
            if isinstance(p, dict)
        }
        return {str(s): urls.get(str(s)) for s in shipment_ids}

    async def track(self, tracking_code: str) -> ShipmentUpdate:
        url = f"{self.tracking_base_url}/api/v1/packages/json/"
        try:
            resp = await get_with_retry(url, params={"waybill": tracking_code}, headers=self._headers(), timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("Delhivery API error waybill=%s: %s", tracking_code, e)
            raise ProviderError(f"Delhivery tracking failed: {e}", provider=self.name, transient=True)
        data = self._check(resp, "tracking")
        shipment = _shipment_block(data)
        if not shipment:
            raise ProviderError("No ShipmentData in response", provider=self.name, body=data)
        status_block = shipment.get("Status") or shipment.get("status") or {}
        if not isinstance(status_block, dict):
            status_block = {"Status": status_block}
        return ShipmentUpdate(
            raw_status=str(status_block.get("Status") or status_block.get("status") or ""),
            tracking_code=str(shipment.get("AWB") or tracking_code),
            order_reference=shipment.get("ReferenceNo"),
            location=status_block.get("StatusLocation"),
            timestamp=status_block.get("StatusDateTime"),
            note=status_block.get("Instructions"),
            delivered_date=shipment.get("DeliveryDate"),
            reason=status_block.get("Instructions") if "rto" in str(status_block.get("Status", "")).lower() else None,
            scans=_scan_rows(shipment),
            payload=data,
        )

    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str,
                                   weight_kg: float = 0.5, cod: bool = False) -> dict:
        body = await self._call(
            "GET", f"{self.base_url}/c/api/pin-codes/json/", "serviceability", params={"filter_codes": delivery_pincode}
        )
        codes = body.get("delivery_codes") or [] if isinstance(body, dict) else []
        serviceable = False
        for entry in codes:
            postal = entry.get("postal_code") or {} if isinstance(entry, dict) else {}
            flag = postal.get("cod") if cod else postal.get("pre_paid")
            if str(flag).upper() == "Y":
                serviceable = True
        couriers = [{"courier_name": COURIER_NAME, "courier_company_id": self.name}] if serviceable else []
        return {"serviceable": serviceable, "availableCouriers": len(couriers), "couriers": couriers}

    async def get_pickup_locations(self) -> list[dict]:
        body = await self._call("GET", f"{self.base_url}/api/backend/clientwarehouse/all/", "warehouses")
        if isinstance(body, dict):
            body = body.get("data") or []
        return body if isinstance(body, list) else []

    def parse_webhook(self, payload: dict) -> ShipmentUpdate:
        """Delhivery pushes the same Shipment block as tracking; flat payloads fall back to the shared parser."""
        shipment = payload.get("Shipment") if isinstance(payload.get("Shipment"), dict) else None
        if shipment is None:
            return super().parse_webhook(payload)
        status_block = shipment.get("Status") if isinstance(shipment.get("Status"), dict) else {"Status": shipment.get("Status")}
        return ShipmentUpdate(
            raw_status=str(status_block.get("Status") or ""),
            tracking_code=str(shipment.get("AWB") or "").strip() or None,
            order_reference=shipment.get("ReferenceNo"),
            location=status_block.get("StatusLocation"),
            timestamp=status_block.get("StatusDateTime"),
            note=status_block.get("Instructions"),
            delivered_date=shipment.get("DeliveryDate"),
            payload=payload,
        )
