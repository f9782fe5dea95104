"""
Razorpay webhook and checkout: signature checks, duplicate deliveries and refund totals.
"""
import hashlib
import hmac
import json
from decimal import Decimal

from conftest import RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET

from main import app
from app.models import Order, OrderStatus, PaymentStatus, RefundStatus, WebhookEvent
from app.services.razorpay_service import RazorpayService, get_razorpay_service


def _sign(raw: bytes, secret: str = RAZORPAY_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def _post(client, event, signature=None):
    raw = json.dumps(event).encode()
    return client.post(
        "/api/payment/webhook",
        content=raw,
        headers={
            "content-type": "application/json",
            "x-razorpay-signature": signature if signature is not None else _sign(raw),
        },
    )


def _payment_event(name, payment_id="pay_1", order_id="order_RZP1", **entity):
    return {
        "event": name,
        "payload": {"payment": {"entity": {
            "id": payment_id, "order_id": order_id, "amount": 49900, "created_at": 1714550400, **entity,
        }}},
    }


def _refund_event(name, refund_id, amount, payment_id="pay_1"):
    return {
        "event": name,
        "payload": {"refund": {"entity": {"id": refund_id, "payment_id": payment_id, "amount": amount}}},
    }


def _reload(db_session, order_id):
    db_session.expire_all()
    return db_session.get(Order, order_id)


class TestSignature:
    def test_bad_signature_is_400_and_untouched(self, client, db_session, make_order, memory_ledger):
        order = make_order(payment_provider_order_id="order_RZP1")
        response = _post(client, _payment_event("payment.captured"), signature="deadbeef")
        assert response.status_code == 400
        assert response.json()["details"]["rule"] == "signature"
        assert len(memory_ledger.store) == 0
        assert db_session.query(WebhookEvent).count() == 0
        assert _reload(db_session, order.id).payment_status == PaymentStatus.PENDING

    def test_missing_signature_is_400(self, client, make_order):
        make_order(payment_provider_order_id="order_RZP1")
        raw = json.dumps(_payment_event("payment.captured")).encode()
        response = client.post("/api/payment/webhook", content=raw, headers={"content-type": "application/json"})
        assert response.status_code == 400

    def test_unconfigured_secret_is_500(self, client, make_order):
        make_order(payment_provider_order_id="order_RZP1")
        app.dependency_overrides[get_razorpay_service] = lambda: RazorpayService("", "", "")
        response = _post(client, _payment_event("payment.captured"))
        assert response.status_code == 500
        assert response.json()["success"] is False


class TestPaymentEvents:
    def test_captured_is_applied_once(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        first = _post(client, _payment_event("payment.captured"))
        assert first.status_code == 200
        assert first.json()["message"] == "Payment captured successfully"

        stored = _reload(db_session, order.id)
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.payment_provider_payment_id == "pay_1"
        paid_at = stored.payment_paid_at
        assert paid_at is not None

        duplicate = _post(client, _payment_event("payment.captured"))
        assert duplicate.json()["duplicate"] is True

        order_paid = {
            "event": "order.paid",
            "payload": {
                "order": {"entity": {"id": "order_RZP1"}},
                "payment": {"entity": {"id": "pay_1", "order_id": "order_RZP1", "created_at": 1714559999}},
            },
        }
        assert _post(client, order_paid).json()["message"] == "Already processed"
        assert db_session.query(WebhookEvent).filter(WebhookEvent.duplicate.is_(True)).count() == 2
        assert _reload(db_session, order.id).payment_paid_at == paid_at

    def test_failure_after_capture_is_ignored(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.captured"))
        late = _post(client, _payment_event("payment.failed", payment_id="pay_0", error_description="Card declined"))
        assert late.json()["message"] == "Payment already settled"
        assert _reload(db_session, order.id).payment_status == PaymentStatus.PAID

    def test_failure_before_capture_is_recorded(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.failed", error_description="Card declined"))
        stored = _reload(db_session, order.id)
        assert stored.payment_status == PaymentStatus.FAILED
        assert "Card declined" in stored.notes

    def test_unknown_order_is_acknowledged(self, client, db_session, memory_ledger):
        response = _post(client, _payment_event("payment.captured", order_id="order_missing", payment_id="pay_x"))
        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "Order not found"}
        assert len(memory_ledger.store) == 0
        assert db_session.query(WebhookEvent).one().error

    def test_unhandled_event_is_acknowledged(self, client):
        response = _post(client, {"event": "invoice.paid", "payload": {}})
        assert response.status_code == 200
        assert "acknowledged" in response.json()["message"]

    def test_invalid_json_is_400(self, client):
        raw = b"{not json"
        response = client.post(
            "/api/payment/webhook",
            content=raw,
            headers={"content-type": "application/json", "x-razorpay-signature": _sign(raw)},
        )
        assert response.status_code == 400


class TestRefunds:
    def test_partial_then_full_refund(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.captured"))

        _post(client, _refund_event("refund.processed", "rfnd_1", 10000))
        stored = _reload(db_session, order.id)
        assert stored.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        assert stored.refund_status == RefundStatus.COMPLETED
        assert stored.refund_amount == Decimal("100.00")
        assert stored.status == OrderStatus.CONFIRMED

        _post(client, _refund_event("refund.processed", "rfnd_2", 39900))
        stored = _reload(db_session, order.id)
        assert stored.payment_status == PaymentStatus.REFUNDED
        assert stored.refund_amount == Decimal("499.00")
        assert stored.status == OrderStatus.REFUNDED

        _post(client, _refund_event("refund.created", "rfnd_1", 10000))
        stored = _reload(db_session, order.id)
        assert stored.refund_amount == Decimal("499.00")
        assert stored.refund_status == RefundStatus.COMPLETED
        assert {r["refundId"]: r["status"] for r in stored.refunds} == {"rfnd_1": "processed", "rfnd_2": "processed"}

    def test_created_then_processed_counts_once(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.captured"))
        _post(client, _refund_event("refund.created", "rfnd_1", 10000))
        assert _reload(db_session, order.id).refund_status == RefundStatus.PROCESSING

        _post(client, _refund_event("refund.processed", "rfnd_1", 10000))
        stored = _reload(db_session, order.id)
        assert stored.refund_amount == Decimal("100.00")
        assert len(stored.refunds) == 1

    def test_late_payment_events_keep_refunded_state(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.captured"))
        _post(client, _refund_event("refund.processed", "rfnd_1", 49900))

        paid = {
            "event": "order.paid",
            "payload": {
                "order": {"entity": {"id": "order_RZP1"}},
                "payment": {"entity": {"id": "pay_1", "order_id": "order_RZP1", "amount": 49900}},
            },
        }
        response = _post(client, paid)
        assert response.json()["message"] == "Already processed"
        response = _post(client, _payment_event("payment.captured", payment_id="pay_2"))
        assert response.json()["message"] == "Already processed"

        stored = _reload(db_session, order.id)
        assert stored.payment_status == PaymentStatus.REFUNDED
        assert stored.status == OrderStatus.REFUNDED
        assert stored.refund_amount == Decimal("499.00")
        assert stored.payment_provider_payment_id == "pay_1"

    def test_late_capture_keeps_partial_refund(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.captured"))
        _post(client, _refund_event("refund.processed", "rfnd_1", 10000))
        _post(client, _payment_event("payment.captured", payment_id="pay_2"))
        assert _reload(db_session, order.id).payment_status == PaymentStatus.PARTIALLY_REFUNDED

    def test_refund_failure(self, client, db_session, make_order):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.captured"))
        event = _refund_event("refund.failed", "rfnd_1", 10000)
        event["payload"]["refund"]["entity"]["failure_reason"] = "Bank rejected"
        _post(client, event)
        stored = _reload(db_session, order.id)
        assert stored.refund_status == RefundStatus.FAILED
        assert stored.refund_amount == Decimal("0.00")
        assert stored.payment_status == PaymentStatus.PAID


class TestCheckoutRoutes:
    def _signature(self, rzp_order, payment):
        return hmac.new(RAZORPAY_KEY_SECRET.encode(), f"{rzp_order}|{payment}".encode(), hashlib.sha256).hexdigest()

    def test_verify_marks_paid_and_webhook_is_noop(self, client, db_session, make_order, user_headers):
        order = make_order(payment_provider_order_id="order_RZP1")
        response = client.post(
            "/api/payment/verify",
            json={
                "orderId": order.id,
                "razorpayOrderId": "order_RZP1",
                "razorpayPaymentId": "pay_1",
                "razorpaySignature": self._signature("order_RZP1", "pay_1"),
            },
            headers=user_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["paymentStatus"] == "paid"

        webhook = _post(client, _payment_event("payment.captured"))
        assert webhook.json()["duplicate"] is True
        assert _reload(db_session, order.id).payment_status == PaymentStatus.PAID

    def test_verify_rejects_bad_signature(self, client, db_session, make_order, user_headers):
        order = make_order(payment_provider_order_id="order_RZP1")
        response = client.post(
            "/api/payment/verify",
            json={
                "orderId": order.id,
                "razorpayOrderId": "order_RZP1",
                "razorpayPaymentId": "pay_1",
                "razorpaySignature": "forged",
            },
            headers=user_headers,
        )
        assert response.status_code == 400
        assert response.json()["details"]["rule"] == "signature"
        assert _reload(db_session, order.id).payment_status == PaymentStatus.PENDING

    def test_verify_rejects_foreign_razorpay_order(self, client, make_order, user_headers):
        order = make_order(payment_provider_order_id="order_RZP1")
        response = client.post(
            "/api/payment/verify",
            json={
                "orderId": order.id,
                "razorpayOrderId": "order_OTHER",
                "razorpayPaymentId": "pay_1",
                "razorpaySignature": self._signature("order_OTHER", "pay_1"),
            },
            headers=user_headers,
        )
        assert response.status_code == 400
        assert response.json()["details"]["rule"] == "payment_order_id"

    def test_status_route(self, client, make_order, user_headers):
        order = make_order(payment_provider_order_id="order_RZP1")
        _post(client, _payment_event("payment.captured"))
        _post(client, _refund_event("refund.processed", "rfnd_1", 10000))

        response = client.get(f"/api/payment/status/{order.id}", headers=user_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["paymentStatus"] == "partially_refunded"
        assert data["razorpayPaymentId"] == "pay_1"
        assert data["razorpayStatus"] is None
        assert data["refundAmount"] == "100.00"
        assert data["paidAt"] is not None

    def test_status_requires_auth(self, client, make_order):
        order = make_order()
        assert client.get(f"/api/payment/status/{order.id}").status_code == 401
