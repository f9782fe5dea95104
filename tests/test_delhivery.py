"""
Delhivery client and the shared retrying HTTP helper, with the network stubbed out.
"""
import asyncio
import json
from datetime import date

import httpx
import pytest

from app.services import delhivery_service, http_client
from app.services.delhivery_service import DelhiveryClient
from app.services.errors import ProviderError
from app.services.shipping_providers import ShipmentRequest

TRACKING_BODY = {"ShipmentData": [{"Shipment": {
    "AWB": "1490011", "ReferenceNo": "ORD-1",
    "Status": {"Status": "RTO Initiated", "StatusLocation": "Pune_Hub", "StatusDateTime": "2024-05-03T08:00:00",
               "Instructions": "Consignee refused"},
    "Scans": [{"ScanDetail": {"Scan": "Manifested", "ScanDateTime": "2024-05-01T10:00:00", "ScannedLocation": "Mumbai"}}],
}}]}


def _response(status_code, body, method="GET"):
    return httpx.Response(status_code, json=body, request=httpx.Request(method, "https://dlv.test"))


@pytest.fixture
def client():
    return DelhiveryClient(api_key="dlv-key", base_url="https://dlv.test")


class TestDelhiveryTracking:
    def test_status_block_is_parsed(self, client, monkeypatch):
        async def _get(url, **kwargs):
            assert kwargs["params"] == {"waybill": "1490011"}
            assert kwargs["headers"]["Authorization"] == "Token dlv-key"
            return _response(200, TRACKING_BODY)

        monkeypatch.setattr(delhivery_service, "get_with_retry", _get)
        update = asyncio.run(client.track("1490011"))
        assert update.raw_status == "RTO Initiated"
        assert update.order_reference == "ORD-1"
        assert update.location == "Pune_Hub"
        assert update.reason == "Consignee refused"
        assert update.scans[0]["status"] == "Manifested"

    def test_empty_shipment_data_raises(self, client, monkeypatch):
        async def _get(url, **kwargs):
            return _response(200, {"ShipmentData": []})

        monkeypatch.setattr(delhivery_service, "get_with_retry", _get)
        with pytest.raises(ProviderError):
            asyncio.run(client.track("1490011"))

    def test_http_error_carries_transience(self, client, monkeypatch):
        async def _get(url, **kwargs):
            return _response(503, {"error": "maintenance"})

        monkeypatch.setattr(delhivery_service, "get_with_retry", _get)
        with pytest.raises(ProviderError) as exc:
            asyncio.run(client.track("1490011"))
        assert exc.value.transient is True
        assert exc.value.provider_status == 503

    def test_missing_api_key(self):
        with pytest.raises(ProviderError):
            asyncio.run(DelhiveryClient(api_key="").track("1490011"))


class TestDelhiveryBooking:
    def test_create_sends_grams_and_returns_waybill(self, client, monkeypatch):
        sent = {}

        async def _request(method, url, **kwargs):
            sent.update(kwargs["data"])
            return _response(200, {"success": True, "packages": [{"waybill": "1490099", "refnum": "ORD-1"}]}, method)

        monkeypatch.setattr(delhivery_service, "request_with_retry", _request)
        request = ShipmentRequest(
            order_reference="ORD-1", order_date=date(2024, 5, 1), customer_name="Asha Rao",
            address="12 MG Road", city="Bengaluru", state="Karnataka", pincode="560001",
            phone="9876543210", weight_kg=0.25, pickup_location="Home",
        )
        created = asyncio.run(client.create_shipment(request))
        shipment = json.loads(sent["data"])["shipments"][0]
        assert shipment["weight"] == 250
        assert created.tracking_code == "1490099"
        assert created.provider_shipment_id == "1490099"

        awb = asyncio.run(client.assign_awb("1490099"))
        assert awb["trackingCode"] == "1490099"

    def test_rejected_create_raises_with_remarks(self, client, monkeypatch):
        async def _request(method, url, **kwargs):
            return _response(200, {"success": False, "packages": [{"remarks": ["Pincode not serviceable"]}]}, method)

        monkeypatch.setattr(delhivery_service, "request_with_retry", _request)
        request = ShipmentRequest(
            order_reference="ORD-2", order_date=date(2024, 5, 1), customer_name="Asha Rao",
            address="12 MG Road", city="Leh", state="Ladakh", pincode="194101", phone="9876543210",
        )
        with pytest.raises(ProviderError) as exc:
            asyncio.run(client.create_shipment(request))
        assert "Pincode not serviceable" in exc.value.message

    def test_webhook_shipment_block(self, client):
        update = client.parse_webhook(TRACKING_BODY["ShipmentData"][0])
        assert update.tracking_code == "1490011"
        assert update.raw_status == "RTO Initiated"
        assert update.timestamp == "2024-05-03T08:00:00"


class TestRequestWithRetry:
    def _patch_transport(self, monkeypatch, handler):
        real_client = httpx.AsyncClient

        def _client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        async def _no_sleep(attempt):
            return None

        monkeypatch.setattr(http_client.httpx, "AsyncClient", _client)
        monkeypatch.setattr(http_client, "_sleep_backoff", _no_sleep)

    def test_retries_transient_status(self, monkeypatch):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(503 if len(seen) < 3 else 200, json={"ok": len(seen)})

        self._patch_transport(monkeypatch, handler)
        resp = asyncio.run(http_client.request_with_retry("GET", "https://provider.test/x", max_retries=3))
        assert resp.status_code == 200
        assert len(seen) == 3

    def test_client_errors_are_not_retried(self, monkeypatch):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(422, json={"message": "bad"})

        self._patch_transport(monkeypatch, handler)
        resp = asyncio.run(http_client.request_with_retry("POST", "https://provider.test/x", max_retries=3))
        assert resp.status_code == 422
        assert len(seen) == 1

    def test_connect_errors_raise_after_retries(self, monkeypatch):
        seen = []

        def handler(request):
            seen.append(request)
            raise httpx.ConnectError("refused", request=request)

        self._patch_transport(monkeypatch, handler)
        with pytest.raises(httpx.ConnectError):
            asyncio.run(http_client.request_with_retry("GET", "https://provider.test/x", max_retries=2))
        assert len(seen) == 3
