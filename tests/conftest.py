"""
Shared fixtures: in-memory SQLite, memory idempotency ledger, a fake courier and auth tokens.
Environment is set before the app is imported; Settings reads it at import time.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WORKERS_ENABLED"] = "false"
os.environ["IDEMPOTENCY_BACKEND"] = "memory"
os.environ["SHIPPING_PROVIDER"] = "shiprocket"
os.environ["SHIPROCKET_WEBHOOK_SECRET"] = "test-shipping-secret"
os.environ["DELHIVERY_WEBHOOK_TOKEN"] = "test-delhivery-token"
os.environ["RAZORPAY_KEY_ID"] = ""
os.environ["RAZORPAY_KEY_SECRET"] = "test-key-secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test-razorpay-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"

from collections import Counter
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.auth import create_access_token
from app.database import Base, get_db
from app.http.controllers.webhooks import provider_from_path
from app.models import CustomOrder, OrderItem, OrderType, RegularOrder
from app.services.errors import ProviderError
from app.services.idempotency import IdempotencyLedger, InMemoryIdempotencyStore, get_idempotency_ledger
from app.services.order_locks import OrderLockRegistry
from app.services.shipping_providers import CreatedShipment, ShipmentUpdate, ShippingProvider, default_shipping_provider

SHIPPING_SECRET = "test-shipping-secret"
RAZORPAY_WEBHOOK_SECRET = "test-razorpay-secret"
RAZORPAY_KEY_SECRET = "test-key-secret"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeShippingProvider(ShippingProvider):
    """Courier double: records calls, returns canned data, raises what a test asks it to."""

    name = "shiprocket"

    def __init__(self, secret: str = SHIPPING_SECRET):
        self.secret = secret
        self.calls = Counter()
        self.requests = []
        self.create_error = None
        self.track_update = None
        self.track_error = None
        self.labels = {}

    @property
    def webhook_secret(self) -> str:
        return self.secret

    async def create_shipment(self, request):
        self.calls["create_shipment"] += 1
        self.requests.append(request)
        if self.create_error is not None:
            raise self.create_error
        n = self.calls["create_shipment"]
        return CreatedShipment(
            provider=self.name,
            provider_shipment_id=f"SHIP{n}",
            provider_order_id=f"SR{n}",
            tracking_code=f"AWB{n}",
            courier_id="12",
            courier_name="Delhivery Surface",
            status="NEW",
            tracking_url=f"https://shiprocket.co/tracking/AWB{n}",
            pickup_location=request.pickup_location or "Home",
        )

    async def assign_awb(self, shipment_id, courier_id=None):
        self.calls["assign_awb"] += 1
        return {"trackingCode": f"AWB-{shipment_id}", "courierId": courier_id or "12", "courierName": "Xpressbees"}

    async def request_pickup(self, shipment_id, pickup_date=None, slot_from=None, slot_to=None):
        self.calls["request_pickup"] += 1
        return {"pickupDate": str(pickup_date) if pickup_date else None}

    async def cancel(self, tracking_code, shipment_id=None):
        self.calls["cancel"] += 1
        return {"cancelled": True}

    async def generate_label(self, shipment_ids):
        self.calls["generate_label"] += 1
        return {str(sid): self.labels.get(str(sid)) for sid in shipment_ids}

    async def track(self, tracking_code):
        self.calls["track"] += 1
        if self.track_error is not None:
            raise self.track_error
        if self.track_update is not None:
            return self.track_update
        return ShipmentUpdate(raw_status="", tracking_code=tracking_code)

    async def check_serviceability(self, pickup_pincode, delivery_pincode, weight_kg=0.5, cod=False):
        self.calls["check_serviceability"] += 1
        couriers = [
            {"courier_company_id": 1, "courier_name": "Slow", "freight_charge": 90},
            {"courier_company_id": 2, "courier_name": "Cheap", "freight_charge": 45},
        ]
        return {"serviceable": True, "availableCouriers": len(couriers), "couriers": couriers}

    async def get_pickup_locations(self):
        self.calls["get_pickup_locations"] += 1
        return [{"pickup_location": "Home", "pin_code": "400001"}]


def provider_failure(message="Courier unavailable", transient=True):
    return ProviderError(message, provider="shiprocket", transient=transient, provider_status=503)


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def memory_ledger():
    return IdempotencyLedger(InMemoryIdempotencyStore(), ttl_seconds=3600)


@pytest.fixture
def fake_provider():
    return FakeShippingProvider()


@pytest.fixture
def locks():
    return OrderLockRegistry()


@pytest.fixture
def client(db_session, memory_ledger, fake_provider):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_idempotency_ledger] = lambda: memory_ledger
    app.dependency_overrides[default_shipping_provider] = lambda: fake_provider
    app.dependency_overrides[provider_from_path] = lambda: fake_provider
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('admin-1', role='admin', email='ops@coverghar.in')}"}


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {create_access_token('user-1', role='user')}"}


@pytest.fixture
def make_order(db_session):
    """Factory for committed orders; keyword arguments override column values."""

    def _make(order_type=OrderType.REGULAR, **fields):
        values = dict(
            customer_name="Asha Rao",
            customer_email="asha@example.com",
            order_total=Decimal("499.00"),
            shipping_name="Asha Rao",
            shipping_phone="9876543210",
            shipping_address1="12 MG Road",
            shipping_city="Bengaluru",
            shipping_state="Karnataka",
            shipping_postal_code="560001",
        )
        values.update(fields)
        if order_type == OrderType.CUSTOM:
            values.setdefault("design_model_name", "iPhone 15")
            values.setdefault("design_sku", "CUST-IP15")
            values.setdefault("unit_price", Decimal("499.00"))
            order = CustomOrder(**values)
        else:
            order = RegularOrder(**values)
            order.items.append(OrderItem(sku="CASE-01", title="Matte Case", qty=1, price=Decimal("499.00")))
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make
