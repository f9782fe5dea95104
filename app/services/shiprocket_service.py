"""
Shiprocket API client.
Auth: POST /auth/login with email/password -> bearer token (valid ~24h, cached 23h).
Create order: POST /orders/create/adhoc; AWB: POST /courier/assign/awb; pickup: POST /courier/generate/pickup;
labels: POST /courier/generate/label; tracking: GET /courier/track/awb/{awb};
serviceability: GET /courier/serviceability/; pickup locations: GET /settings/company/pickup.
"""
import asyncio
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from app.config import settings
from app.services.errors import ProviderError
from app.services.http_client import is_transient_status, request_with_retry
from app.services.shipping_providers import (
    CreatedShipment,
    ShipmentRequest,
    ShipmentUpdate,
    ShippingProvider,
)

logger = logging.getLogger(__name__)

TOKEN_TTL = timedelta(hours=23)
PICKUP_SUGGESTION_RE = re.compile(r"Available pickup locations:\s*([^(]+?)\s*\(ID:\s*([^)]+)\)", re.IGNORECASE)


def _clamp_weight(weight_kg: float) -> float:
    return min(max(float(weight_kg or 0.5), 0.05), 30.0)


def pickup_location_suggestion(message: str, body: Any) -> Optional[str]:
    """
    Name of a valid pickup location from a Shiprocket rejection, or None.
    The message text ("Available pickup locations: NAME (ID: X)") wins over the data list.
    """
    match = PICKUP_SUGGESTION_RE.search(message or "")
    if match:
        return match.group(1).strip()
    data = body.get("data") if isinstance(body, dict) else None
    locations = data.get("data") if isinstance(data, dict) else None
    if isinstance(locations, dict):
        locations = list(locations.values())
    if isinstance(locations, list) and locations:
        first = locations[0] if isinstance(locations[0], dict) else {}
        return first.get("pickup_location") or first.get("name")
    return None


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str) and message:
            return message
        errors = body.get("errors")
        if isinstance(errors, dict) and errors:
            return "; ".join(f"{k}: {v}" for k, v in errors.items())
    return default


class ShiprocketClient(ShippingProvider):
    name = "shiprocket"

    def __init__(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.email = email or settings.SHIPROCKET_EMAIL
        self.password = password or settings.SHIPROCKET_PASSWORD
        self.base_url = (base_url or settings.SHIPROCKET_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SEC
        self._token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

    @property
    def webhook_secret(self) -> str:
        return settings.SHIPROCKET_WEBHOOK_SECRET

    def _token_valid(self) -> bool:
        return bool(self._token and self._token_expiry and datetime.now(timezone.utc) < self._token_expiry)

    def clear_token(self) -> None:
        self._token = None
        self._token_expiry = None

    async def authenticate(self) -> str:
        if self._token_valid():
            return self._token  # type: ignore
        async with self._token_lock:
            if self._token_valid():
                return self._token  # type: ignore
            if not self.email or not self.password:
                raise ProviderError("SHIPROCKET_EMAIL and SHIPROCKET_PASSWORD must be set", provider=self.name)
            try:
                resp = await request_with_retry(
                    "POST",
                    f"{self.base_url}/auth/login",
                    json={"email": self.email, "password": self.password},
                    timeout=self.timeout,
                )
            except httpx.HTTPError as e:
                raise ProviderError(f"Shiprocket login failed: {e}", provider=self.name, transient=True)
            body = self._json(resp)
            token = body.get("token") if isinstance(body, dict) else None
            if resp.status_code >= 400 or not token:
                raise ProviderError(
                    _error_message(body, "Shiprocket authentication failed"),
                    provider=self.name,
                    transient=is_transient_status(resp.status_code),
                    provider_status=resp.status_code,
                    body=body,
                )
            self._token = token
            self._token_expiry = datetime.now(timezone.utc) + TOKEN_TTL
            logger.info("Shiprocket authentication successful")
            return token

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text[:500]}

    async def _request(self, method: str, path: str, *, json: Optional[dict] = None,
                       params: Optional[dict] = None, reauth: bool = True) -> Any:
        token = await self.authenticate()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        url = f"{self.base_url}{path}"
        logger.debug("Shiprocket %s %s", method, path)
        try:
            resp = await request_with_retry(method, url, json=json, params=params, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise ProviderError(f"Shiprocket {method} {path} failed: {e}", provider=self.name, transient=True)
        if resp.status_code == 401 and reauth:
            logger.warning("Shiprocket token rejected, re-authenticating")
            self.clear_token()
            return await self._request(method, path, json=json, params=params, reauth=False)
        body = self._json(resp)
        if resp.status_code >= 400:
            logger.error("Shiprocket %s %s returned %s: %s", method, path, resp.status_code, body)
            raise ProviderError(
                _error_message(body, f"Shiprocket returned HTTP {resp.status_code}"),
                provider=self.name,
                transient=is_transient_status(resp.status_code),
                provider_status=resp.status_code,
                body=body,
            )
        return body

    def _order_payload(self, request: ShipmentRequest, pickup_location: str) -> dict:
        return {
            "order_id": request.order_reference,
            "order_date": request.order_date.strftime("%Y-%m-%d"),
            "pickup_location": pickup_location,
            "comment": f"Order {request.order_reference}",
            "billing_customer_name": request.customer_name,
            "billing_last_name": "",
            "billing_address": request.address,
            "billing_city": request.city,
            "billing_pincode": request.pincode,
            "billing_state": request.state,
            "billing_country": request.country,
            "billing_email": request.email or "",
            "billing_phone": request.phone,
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item.get("name") or "Product",
                    "sku": item.get("sku") or request.order_reference,
                    "units": item.get("units") or 1,
                    "selling_price": item.get("selling_price") or 0,
                    "discount": 0,
                    "tax": 0,
                    "hsn": item.get("hsn") or "999999",
                }
                for item in request.items
            ],
            "payment_method": "COD" if request.payment_method.upper() == "COD" else "Prepaid",
            "shipping_charges": 0,
            "giftwrap_charges": 0,
            "transaction_charges": 0,
            "total_discount": 0,
            "sub_total": request.sub_total,
            "length": request.length_cm,
            "breadth": request.breadth_cm,
            "height": request.height_cm,
            "weight": _clamp_weight(request.weight_kg),
        }

    async def _create_order(self, payload: dict) -> dict:
        body = await self._request("POST", "/orders/create/adhoc", json=payload)
        # Shiprocket sometimes answers 200 with {message, data} and no order_id
        if not isinstance(body, dict) or not (body.get("order_id") or body.get("shipment_id")):
            raise ProviderError(
                _error_message(body, "Shiprocket did not return an order id"),
                provider=self.name,
                provider_status=200,
                body=body,
            )
        return body

    async def create_shipment(self, request: ShipmentRequest) -> CreatedShipment:
        pickup_location = request.pickup_location or settings.SHIPROCKET_PICKUP_LOCATION
        payload = self._order_payload(request, pickup_location)
        logger.info("Creating Shiprocket order %s pickup=%s", request.order_reference, pickup_location)
        try:
            body = await self._create_order(payload)
        except ProviderError as e:
            if e.transient or "pickup location" not in e.message.lower():
                raise
            suggestion = pickup_location_suggestion(e.message, e.body)
            if not suggestion or suggestion == pickup_location:
                raise
            logger.warning(
                "Shiprocket rejected pickup location %r for %s; retrying once with %r",
                pickup_location, request.order_reference, suggestion,
            )
            pickup_location = suggestion
            body = await self._create_order({**payload, "pickup_location": pickup_location})

        awb = body.get("awb_code") or None
        return CreatedShipment(
            provider=self.name,
            provider_shipment_id=str(body.get("shipment_id")),
            provider_order_id=str(body["order_id"]) if body.get("order_id") else None,
            tracking_code=str(awb) if awb else None,
            courier_id=str(body["courier_company_id"]) if body.get("courier_company_id") else None,
            courier_name=body.get("courier_name") or None,
            status=body.get("status") or "NEW",
            tracking_url=f"https://shiprocket.co/tracking/{awb}" if awb else None,
            pickup_location=pickup_location,
            raw=body,
        )

    async def assign_awb(self, shipment_id: str, courier_id: Optional[str] = None) -> dict:
        payload: dict[str, Any] = {"shipment_id": shipment_id}
        if courier_id:
            payload["courier_id"] = courier_id
        body = await self._request("POST", "/courier/assign/awb", json=payload)
        data = ((body.get("response") or {}).get("data") or {}) if isinstance(body, dict) else {}
        if not data.get("awb_code"):
            raise ProviderError(
                _error_message(data or body, "Shiprocket did not assign an AWB"),
                provider=self.name,
                body=body,
            )
        return {
            "trackingCode": str(data["awb_code"]),
            "courierId": str(data.get("courier_company_id") or courier_id or ""),
            "courierName": data.get("courier_name"),
            "raw": body,
        }

    async def request_pickup(self, shipment_id: str, pickup_date: Optional[date] = None,
                             slot_from: Optional[str] = None, slot_to: Optional[str] = None) -> dict:
        payload: dict[str, Any] = {"shipment_id": [shipment_id]}
        if pickup_date:
            payload["pickup_date"] = [pickup_date.strftime("%Y-%m-%d")]
        body = await self._request("POST", "/courier/generate/pickup", json=payload)
        if not isinstance(body, dict):
            body = {}
        response = body.get("response") or {}
        return {
            "scheduled": bool(body.get("pickup_status")),
            "pickupDate": response.get("pickup_scheduled_date"),
            "pickupToken": response.get("pickup_token_number"),
            "raw": body,
        }

    async def cancel(self, tracking_code: Optional[str], shipment_id: Optional[str] = None) -> dict:
        if tracking_code:
            body = await self._request("POST", "/orders/cancel/shipment/awbs", json={"awbs": [tracking_code]})
        else:
            body = await self._request("POST", "/orders/cancel", json={"ids": [shipment_id]})
        return {"cancelled": True, "raw": body}

    async def generate_label(self, shipment_ids: list[str]) -> dict[str, Optional[str]]:
        body = await self._request("POST", "/courier/generate/label", json={"shipment_id": list(shipment_ids)})
        label_url = body.get("label_url") if isinstance(body, dict) else None
        not_created = {str(s) for s in (body.get("not_created") or [])} if isinstance(body, dict) else set()
        return {str(s): (None if str(s) in not_created else label_url) for s in shipment_ids}

    async def track(self, tracking_code: str) -> ShipmentUpdate:
        body = await self._request("GET", f"/courier/track/awb/{tracking_code}")
        tracking = body.get("tracking_data") if isinstance(body, dict) else None
        if not isinstance(tracking, dict):
            tracking = (body.get("data") or body) if isinstance(body, dict) else {}
        if tracking.get("error"):
            raise ProviderError(str(tracking["error"]), provider=self.name, body=body)

        activities = tracking.get("shipment_track_activities") or []
        scans = [
            {
                "status": a.get("sr-status-label") or a.get("status"),
                "timestamp": a.get("date"),
                "location": a.get("location"),
                "note": a.get("activity"),
            }
            for a in activities
            if isinstance(a, dict)
        ]
        track_rows = tracking.get("shipment_track") or []
        current = track_rows[0] if track_rows and isinstance(track_rows[0], dict) else {}
        latest = activities[0] if activities and isinstance(activities[0], dict) else {}
        raw_status = current.get("current_status") or latest.get("sr-status-label") or latest.get("status") or ""
        return ShipmentUpdate(
            raw_status=str(raw_status),
            tracking_code=tracking_code,
            location=latest.get("location") or current.get("destination"),
            timestamp=latest.get("date") or current.get("updated_time"),
            note=latest.get("activity"),
            delivered_date=current.get("delivered_date") or None,
            scans=scans,
            payload=body if isinstance(body, dict) else {},
        )

    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str,
                                   weight_kg: float = 0.5, cod: bool = False) -> dict:
        params = {
            "pickup_postcode": pickup_pincode,
            "delivery_postcode": delivery_pincode,
            "cod": 1 if cod else 0,
            "weight": _clamp_weight(weight_kg),
        }
        body = await self._request("GET", "/courier/serviceability/", params=params)
        data = (body.get("data") or {}) if isinstance(body, dict) else {}
        couriers = data.get("available_courier_companies") or []
        return {
            "serviceable": bool(couriers),
            "availableCouriers": len(couriers),
            "recommendedCourierId": data.get("recommended_courier_company_id"),
            "couriers": couriers,
        }

    async def get_pickup_locations(self) -> list[dict]:
        body = await self._request("GET", "/settings/company/pickup")
        data = (body.get("data") or {}) if isinstance(body, dict) else {}
        locations = data.get("shipping_address") if isinstance(data, dict) else data
        return locations if isinstance(locations, list) else []
