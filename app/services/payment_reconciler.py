"""
Razorpay webhook reconciliation.

The signature is verified over the raw body bytes before anything is parsed. After that
every delivery is acknowledged with 200; processing errors are logged and stored on the
webhook event row instead of being returned to Razorpay.

Refunds are tracked per refund id in order.refunds, so refund.created / refund.processed
arriving in any order (or twice) produce the same refund_amount.
"""
import hashlib
import json
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.models import Order, OrderStatus, PaymentStatus, RefundStatus
from app.services import realtime_service as realtime
from app.services.errors import AuthenticationError, DuplicateEvent, NotFoundError, ReconciliationError, ValidationError
from app.services.idempotency import IdempotencyLedger, build_event_key
from app.services.order_locator import locate_by_payment_id, locate_by_payment_order_id
from app.services.order_locks import OrderLockRegistry, order_locks
from app.services.order_reconciler import (
    can_transition,
    finish_webhook_event,
    mutate_order,
    parse_timestamp,
    record_webhook_event,
    utcnow,
)
from app.services.razorpay_service import RazorpayService

logger = logging.getLogger(__name__)

SOURCE = "razorpay"

# Payment states a late capture or failure must leave alone.
SETTLED_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED)


class WebhookSecretMissing(ReconciliationError):
    status_code = 500


def paise_to_rupees(amount: Any) -> Decimal:
    return (Decimal(str(amount or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def payment_event_key(event: dict, raw_body: bytes) -> str:
    """event:<entity id>; bodies without an entity id fall back to a digest of the raw bytes."""
    event_type = event.get("event") or "unknown"
    payload = event.get("payload") or {}
    entity_id = None
    for kind in ("refund", "payment", "order"):
        entity = (payload.get(kind) or {}).get("entity") or {}
        if entity.get("id"):
            entity_id = entity["id"]
            break
    if not entity_id:
        entity_id = "sha256:" + hashlib.sha256(raw_body).hexdigest()
    return build_event_key(SOURCE, event_type, entity_id)


def _entity(event: dict, kind: str) -> dict:
    return ((event.get("payload") or {}).get(kind) or {}).get("entity") or {}


class PaymentWebhookReconciler:
    def __init__(
        self,
        db: Session,
        razorpay: RazorpayService,
        ledger: IdempotencyLedger,
        locks: OrderLockRegistry = order_locks,
    ):
        self.db = db
        self.razorpay = razorpay
        self.ledger = ledger
        self.locks = locks
        self.handlers = {
            "payment.captured": self._payment_captured,
            "payment.authorized": self._payment_authorized,
            "payment.failed": self._payment_failed,
            "refund.created": self._refund_created,
            "refund.processed": self._refund_processed,
            "refund.failed": self._refund_failed,
            "order.paid": self._order_paid,
        }

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not self.razorpay.webhook_secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET is not configured")
            raise WebhookSecretMissing("Webhook secret not configured")
        if not self.razorpay.verify_webhook_signature(raw_body, signature):
            logger.warning("Razorpay webhook rejected: invalid signature")
            raise AuthenticationError("Invalid signature")

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> dict[str, Any]:
        """
        Verify then process one delivery. Raises AuthenticationError / WebhookSecretMissing /
        ValidationError (unparseable body) before any state is touched; anything later is
        swallowed into the returned body.
        """
        self.verify(raw_body, signature)
        try:
            event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON payload", rule="json")
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON payload", rule="json")

        event_type = event.get("event") or "unknown"
        event_key = payment_event_key(event, raw_body)
        row = record_webhook_event(self.db, SOURCE, event_type, event, self._reference(event), event_key)

        if not self.ledger.should_process(event_key, source=SOURCE):
            finish_webhook_event(self.db, row, duplicate=True)
            return {"success": True, "message": "Event already processed", "duplicate": True}

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("Razorpay event %s acknowledged but not processed", event_type)
            finish_webhook_event(self.db, row)
            return {"success": True, "message": f"Event {event_type} acknowledged but not processed"}

        try:
            order, result = await handler(event)
            finish_webhook_event(self.db, row, order_id=order.id if order else None)
            return result
        except DuplicateEvent as e:
            logger.info("Razorpay %s already recorded (%s)", event_key, e)
            finish_webhook_event(self.db, row, duplicate=True)
            return {"success": True, "message": "Already processed", "duplicate": True}
        except NotFoundError as e:
            self.ledger.release(event_key)
            logger.warning("Razorpay %s: %s", event_type, e.message)
            finish_webhook_event(self.db, row, error=e.message)
            return {"success": False, "message": "Order not found"}
        except Exception as e:
            self.ledger.release(event_key)
            logger.exception("Razorpay %s processing failed", event_type)
            finish_webhook_event(self.db, row, error=f"{type(e).__name__}: {e}")
            return {"success": False, "message": "Error processing webhook, logged for review"}

    @staticmethod
    def _reference(event: dict) -> Optional[str]:
        payment = _entity(event, "payment")
        refund = _entity(event, "refund")
        order = _entity(event, "order")
        return payment.get("order_id") or refund.get("payment_id") or order.get("id")

    def _order_for_payment(self, payment: dict) -> Order:
        order = locate_by_payment_order_id(self.db, payment.get("order_id"))
        if order is None:
            order = locate_by_payment_id(self.db, payment.get("id"))
        if order is None:
            raise NotFoundError(
                f"Order not found for Razorpay order {payment.get('order_id')}",
                {"razorpayOrderId": payment.get("order_id"), "paymentId": payment.get("id")},
            )
        return order

    def _order_for_refund(self, refund: dict, payment: Optional[dict] = None) -> Order:
        payment_id = refund.get("payment_id") or (payment or {}).get("id")
        order = locate_by_payment_id(self.db, payment_id)
        if order is None and payment:
            order = locate_by_payment_order_id(self.db, payment.get("order_id"))
        if order is None:
            raise NotFoundError(f"Order not found for payment {payment_id}", {"paymentId": payment_id})
        return order

    async def _mutate(self, order: Order, mutate):
        async with self.locks.hold(order.id):
            return mutate_order(self.db, order, mutate)

    def _mark_paid(self, o: Order, payment_id: Optional[str], paid_at) -> bool:
        if o.payment_status in SETTLED_PAYMENT_STATUSES:
            return False
        if payment_id:
            o.payment_provider_payment_id = payment_id
        o.payment_status = PaymentStatus.PAID
        if o.payment_paid_at is None:
            o.payment_paid_at = paid_at or utcnow()
        if can_transition(o.status, OrderStatus.CONFIRMED):
            o.status = OrderStatus.CONFIRMED
        return True

    async def _payment_captured(self, event: dict):
        payment = _entity(event, "payment")
        order = self._order_for_payment(payment)
        order, changed = await self._mutate(
            order, lambda o: self._mark_paid(o, payment.get("id"), parse_timestamp(payment.get("created_at")))
        )
        if not changed:
            raise DuplicateEvent(f"payment {payment.get('id')} for order {order.id}")
        logger.info("Payment captured order=%s payment=%s amount=%s", order.id, payment.get("id"),
                    paise_to_rupees(payment.get("amount")))
        realtime.realtime_service.publish(order, realtime.PAYMENT_SUCCESS, {"paymentId": payment.get("id")})
        return order, {"success": True, "message": "Payment captured successfully"}

    async def _order_paid(self, event: dict):
        rzp_order = _entity(event, "order")
        payment = _entity(event, "payment")
        order = locate_by_payment_order_id(self.db, rzp_order.get("id"))
        if order is None:
            raise NotFoundError(f"Order not found for Razorpay order {rzp_order.get('id')}",
                                {"razorpayOrderId": rzp_order.get("id")})
        order, changed = await self._mutate(
            order, lambda o: self._mark_paid(o, payment.get("id"), parse_timestamp(payment.get("created_at")))
        )
        if not changed:
            raise DuplicateEvent(f"order.paid {rzp_order.get('id')} for order {order.id}")
        realtime.realtime_service.publish(order, realtime.PAYMENT_SUCCESS, {"paymentId": payment.get("id")})
        return order, {"success": True, "message": "Order paid"}

    async def _payment_authorized(self, event: dict):
        payment = _entity(event, "payment")
        order = self._order_for_payment(payment)

        def _apply(o: Order) -> bool:
            if o.payment_provider_payment_id:
                return False
            o.payment_provider_payment_id = payment.get("id")
            return True

        order, _ = await self._mutate(order, _apply)
        logger.info("Payment authorized order=%s payment=%s", order.id, payment.get("id"))
        return order, {"success": True, "message": "Payment authorized"}

    async def _payment_failed(self, event: dict):
        payment = _entity(event, "payment")
        order = self._order_for_payment(payment)
        reason = payment.get("error_description") or payment.get("error_reason") or "Unknown error"

        def _apply(o: Order) -> bool:
            # A late failure for an earlier attempt must not undo a captured payment.
            if o.payment_status in SETTLED_PAYMENT_STATUSES:
                return False
            o.payment_status = PaymentStatus.FAILED
            o.notes = f"Payment failed: {reason}"
            return True

        order, changed = await self._mutate(order, _apply)
        if not changed:
            logger.info("Ignoring payment.failed for order %s already %s", order.id, order.payment_status.value)
            return order, {"success": True, "message": "Payment already settled"}
        logger.warning("Payment failed order=%s payment=%s reason=%s", order.id, payment.get("id"), reason)
        realtime.realtime_service.publish(order, realtime.PAYMENT_FAILED, {"reason": reason})
        return order, {"success": True, "message": "Payment failure recorded"}

    @staticmethod
    def _upsert_refund(o: Order, refund: dict, status: str) -> Decimal:
        """Record one refund id; returns the total over distinct refund ids."""
        refund_id = refund.get("id")
        amount = paise_to_rupees(refund.get("amount"))
        entries = o.refunds
        for i, entry in enumerate(entries):
            if entry.get("refundId") == refund_id:
                if entry.get("status") != "processed" or status == "processed":
                    entries[i] = {**entry, "amount": str(amount), "status": status}
                break
        else:
            entries.append({"refundId": refund_id, "amount": str(amount), "status": status})
        total = sum((Decimal(e["amount"]) for e in entries if e.get("status") != "failed"), Decimal("0"))
        o.refund_amount = total
        return total

    async def _refund_created(self, event: dict):
        refund = _entity(event, "refund")
        order = self._order_for_refund(refund, _entity(event, "payment") or None)

        def _apply(o: Order) -> Decimal:
            total = self._upsert_refund(o, refund, "created")
            if o.refund_status != RefundStatus.COMPLETED:
                o.refund_status = RefundStatus.PROCESSING
            return total

        order, total = await self._mutate(order, _apply)
        logger.info("Refund %s created for order %s total_refunded=%s", refund.get("id"), order.id, total)
        realtime.realtime_service.publish(
            order, realtime.REFUND_INITIATED,
            {"refundId": refund.get("id"), "refundAmount": str(paise_to_rupees(refund.get("amount")))},
        )
        return order, {"success": True, "message": "Refund recorded"}

    async def _refund_processed(self, event: dict):
        refund = _entity(event, "refund")
        order = self._order_for_refund(refund, _entity(event, "payment") or None)

        def _apply(o: Order) -> Decimal:
            total = self._upsert_refund(o, refund, "processed")
            pending = any(e.get("status") == "created" for e in o.refunds)
            o.refund_status = RefundStatus.PROCESSING if pending else RefundStatus.COMPLETED
            if total >= o.total:
                o.payment_status = PaymentStatus.REFUNDED
                if can_transition(o.status, OrderStatus.REFUNDED):
                    o.status = OrderStatus.REFUNDED
            elif total > 0:
                o.payment_status = PaymentStatus.PARTIALLY_REFUNDED
            return total

        order, total = await self._mutate(order, _apply)
        logger.info("Refund %s processed for order %s total_refunded=%s payment_status=%s",
                    refund.get("id"), order.id, total, order.payment_status.value)
        realtime.realtime_service.publish(
            order, realtime.REFUND_COMPLETED, {"refundId": refund.get("id"), "totalRefunded": str(total)}
        )
        return order, {"success": True, "message": "Refund completed"}

    async def _refund_failed(self, event: dict):
        refund = _entity(event, "refund")
        order = self._order_for_refund(refund, _entity(event, "payment") or None)
        reason = refund.get("failure_reason") or "Unknown reason"

        def _apply(o: Order) -> Decimal:
            total = self._upsert_refund(o, refund, "failed")
            o.refund_status = RefundStatus.FAILED
            o.notes = f"Refund failed: {reason}"
            return total

        order, _ = await self._mutate(order, _apply)
        logger.warning("Refund %s failed for order %s: %s", refund.get("id"), order.id, reason)
        realtime.realtime_service.publish(order, realtime.REFUND_FAILED, {"refundId": refund.get("id"), "reason": reason})
        return order, {"success": True, "message": "Refund failure recorded"}

    async def confirm_checkout(self, order: Order, razorpay_order_id: str, payment_id: str,
                               signature: Optional[str]) -> Order:
        """
        Storefront checkout callback. Same effect as payment.captured, so whichever of the
        two arrives second is a no-op.
        """
        if not self.razorpay.verify_payment_signature(razorpay_order_id, payment_id, signature):
            logger.warning("Checkout verification failed order=%s payment=%s", order.id, payment_id)
            raise ValidationError("Payment verification failed", rule="signature")
        if order.payment_provider_order_id and order.payment_provider_order_id != razorpay_order_id:
            raise ValidationError(
                "Razorpay order does not belong to this order",
                rule="payment_order_id",
                details={"orderId": order.id, "razorpayOrderId": razorpay_order_id},
            )

        def _apply(o: Order) -> bool:
            o.payment_provider_order_id = o.payment_provider_order_id or razorpay_order_id
            return self._mark_paid(o, payment_id, None)

        order, changed = await self._mutate(order, _apply)
        if changed:
            # The payment.captured delivery for this payment is now a ledger duplicate.
            self.ledger.mark_processed(build_event_key(SOURCE, "payment.captured", payment_id), source="checkout")
            logger.info("Payment verified at checkout order=%s payment=%s", order.id, payment_id)
            realtime.realtime_service.publish(order, realtime.PAYMENT_SUCCESS, {"paymentId": payment_id})
        return order
