"""
Shiprocket client: pickup-location retry, tracking response parsing and webhook payloads.
HTTP is replaced by overriding the client's request hooks.
"""
import asyncio
from datetime import date

import pytest

from app.services.errors import ProviderError
from app.services.shipping_providers import ShipmentRequest
from app.services.shiprocket_service import ShiprocketClient, pickup_location_suggestion

REJECTION = "Wrong Pickup location entered. Available pickup locations: Warehouse Main (ID: 4512)"


def _request(**overrides):
    values = dict(
        order_reference="ORD-1",
        order_date=date(2024, 5, 1),
        customer_name="Asha Rao",
        address="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        pincode="560001",
        phone="9876543210",
        items=[{"name": "Matte Case", "sku": "CASE-01", "units": 1, "selling_price": 499}],
        sub_total=499.0,
        pickup_location="Home",
    )
    values.update(overrides)
    return ShipmentRequest(**values)


class ScriptedShiprocket(ShiprocketClient):
    """Answers _create_order from a list of outcomes and records the payloads."""

    def __init__(self, outcomes):
        super().__init__(email="ops@coverghar.in", password="secret", base_url="https://sr.test")
        self.outcomes = list(outcomes)
        self.payloads = []

    async def _create_order(self, payload):
        self.payloads.append(payload)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _pickup_rejection(message=REJECTION, body=None):
    return ProviderError(message, provider="shiprocket", provider_status=422, body=body or {"message": message})


class TestPickupLocationSuggestion:
    def test_from_message(self):
        assert pickup_location_suggestion(REJECTION, {}) == "Warehouse Main"

    def test_from_data_list(self):
        body = {"message": "Invalid pickup location", "data": {"data": [{"pickup_location": "Backup Hub"}]}}
        assert pickup_location_suggestion(body["message"], body) == "Backup Hub"

    def test_none_when_nothing_offered(self):
        assert pickup_location_suggestion("Invalid pickup location", {"message": "x"}) is None
        assert pickup_location_suggestion("", None) is None


class TestCreateShipment:
    def test_retries_once_with_suggested_location(self):
        client = ScriptedShiprocket([
            _pickup_rejection(),
            {"order_id": 901, "shipment_id": 801, "awb_code": "", "status": "NEW"},
        ])
        created = asyncio.run(client.create_shipment(_request()))
        assert [p["pickup_location"] for p in client.payloads] == ["Home", "Warehouse Main"]
        assert created.pickup_location == "Warehouse Main"
        assert created.provider_shipment_id == "801"
        assert created.provider_order_id == "901"
        assert created.tracking_code is None

    def test_second_rejection_is_raised(self):
        client = ScriptedShiprocket([_pickup_rejection(), _pickup_rejection()])
        with pytest.raises(ProviderError):
            asyncio.run(client.create_shipment(_request()))
        assert len(client.payloads) == 2

    def test_other_errors_are_not_retried(self):
        client = ScriptedShiprocket([ProviderError("Invalid pincode", provider="shiprocket", provider_status=422)])
        with pytest.raises(ProviderError):
            asyncio.run(client.create_shipment(_request()))
        assert len(client.payloads) == 1

    def test_no_retry_when_suggestion_matches(self):
        rejection = _pickup_rejection("Wrong Pickup location entered. Available pickup locations: Home (ID: 1)")
        client = ScriptedShiprocket([rejection])
        with pytest.raises(ProviderError):
            asyncio.run(client.create_shipment(_request()))
        assert len(client.payloads) == 1

    def test_payload_shape(self):
        client = ScriptedShiprocket([{"order_id": 1, "shipment_id": 2, "awb_code": "AWB9", "courier_company_id": 12}])
        created = asyncio.run(client.create_shipment(_request(weight_kg=45, payment_method="cod")))
        payload = client.payloads[0]
        assert payload["order_id"] == "ORD-1"
        assert payload["order_date"] == "2024-05-01"
        assert payload["payment_method"] == "COD"
        assert payload["weight"] == 30.0
        assert payload["order_items"][0]["sku"] == "CASE-01"
        assert created.tracking_code == "AWB9"
        assert created.courier_id == "12"
        assert created.tracking_url == "https://shiprocket.co/tracking/AWB9"


class CannedShiprocket(ShiprocketClient):
    def __init__(self, body):
        super().__init__(email="ops@coverghar.in", password="secret", base_url="https://sr.test")
        self.body = body
        self.calls = []

    async def _request(self, method, path, *, json=None, params=None, reauth=True):
        self.calls.append((method, path, json))
        return self.body


class TestTracking:
    def test_latest_activity_wins(self):
        body = {"tracking_data": {
            "shipment_track": [{"current_status": "In Transit", "destination": "Bengaluru"}],
            "shipment_track_activities": [
                {"date": "2024-05-02 09:00:00", "sr-status-label": "IN TRANSIT", "location": "Pune Hub", "activity": "Bagged"},
                {"date": "2024-05-01 18:00:00", "sr-status-label": "PICKED UP", "location": "Mumbai", "activity": "Picked"},
            ],
        }}
        update = asyncio.run(CannedShiprocket(body).track("AWB1"))
        assert update.raw_status == "In Transit"
        assert update.tracking_code == "AWB1"
        assert update.location == "Pune Hub"
        assert update.timestamp == "2024-05-02 09:00:00"
        assert [s["status"] for s in update.scans] == ["IN TRANSIT", "PICKED UP"]

    def test_tracking_error_raises(self):
        with pytest.raises(ProviderError):
            asyncio.run(CannedShiprocket({"tracking_data": {"error": "Awb not found"}}).track("AWB404"))

    def test_labels_skip_not_created(self):
        client = CannedShiprocket({"label_url": "https://sr.test/label.pdf", "not_created": [802]})
        labels = asyncio.run(client.generate_label(["801", "802"]))
        assert labels == {"801": "https://sr.test/label.pdf", "802": None}

    def test_assign_awb_requires_code(self):
        client = CannedShiprocket({"awb_assign_status": 0, "response": {"data": {"awb_assign_error": "No courier"}}})
        with pytest.raises(ProviderError):
            asyncio.run(client.assign_awb("801"))


class TestWebhookPayload:
    def test_flat_payload(self):
        update = ShiprocketClient(email="x", password="y").parse_webhook({
            "awb": 123456, "order_id": "ORD-abc", "current_status": "OUT FOR DELIVERY",
            "current_timestamp": "2024-05-02 10:00:00", "location": "Bengaluru",
        })
        assert update.tracking_code == "123456"
        assert update.order_reference == "ORD-abc"
        assert update.raw_status == "OUT FOR DELIVERY"
        assert update.location == "Bengaluru"
        assert not update.is_test

    def test_test_waybill(self):
        assert ShiprocketClient(email="x", password="y").parse_webhook({"awb": "TEST"}).is_test
