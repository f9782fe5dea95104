"""
Order reconciliation core.

apply_shipment_update() is the single write path for courier status, shared by the
shipping webhook (push) and tracking sync (pull). It mirrors the raw courier status,
appends history, and moves order.status only forward along

    pending -> confirmed -> processing -> shipped -> delivered

with cancelled / failed / refunded reachable from any non-terminal state. Out-of-order
or replayed deliveries still land in history but never regress the status.

Each apply is one commit guarded by the order's version column; a concurrent writer
makes the commit fail with StaleDataError and the update is re-applied on fresh state.
"""
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.models import Order, OrderStatus, WebhookEvent
from app.services import realtime_service as realtime
from app.services.errors import AuthenticationError, NotFoundError, ReconciliationError
from app.services.idempotency import IdempotencyLedger, build_event_key
from app.services.order_locator import locate
from app.services.order_locks import OrderLockRegistry, order_locks
from app.services.shipping_providers import ShipmentUpdate, ShippingProvider
from app.services.status_mapper import StatusMapping, map_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_APPLY_ATTEMPTS = 3
PAYLOAD_SUMMARY_LIMIT = 2000

FORWARD_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
}
ABSORBING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.REFUNDED})
TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED}) | ABSORBING_STATUSES


def can_transition(current: Optional[OrderStatus], target: Optional[OrderStatus]) -> bool:
    """Whether an automated update may move an order from current to target."""
    if target is None or current == target:
        return False
    if current is None:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if target in ABSORBING_STATUSES:
        return True
    return FORWARD_RANK[target] > FORWARD_RANK[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort parse of provider timestamps (ISO strings, 'YYYY-MM-DD HH:MM:SS', epoch seconds)."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip().replace("Z", "+00:00")
    for candidate in (text, text.replace(" ", "T", 1)):
        try:
            parsed = datetime.fromisoformat(candidate)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def normalize_status(raw_status: Optional[str]) -> str:
    return " ".join((raw_status or "").strip().lower().replace("_", " ").replace("-", " ").split())


def shipment_event_key(provider_name: str, update: ShipmentUpdate) -> str:
    """One key per (waybill, status, scan time); the same key on push and pull dedupes across both."""
    entity = update.tracking_code or update.order_reference or "unknown"
    return build_event_key(provider_name, "shipment", entity, normalize_status(update.raw_status) or "empty", update.timestamp)


def mutate_order(db: Session, order: Order, mutate: Callable[[Order], T], attempts: int = MAX_APPLY_ATTEMPTS) -> tuple[Order, T]:
    """
    Apply mutate(order) and commit under the version check. On a concurrent write the
    session is rolled back, the order reloaded and mutate re-run, up to `attempts` times.
    """
    order_id = order.id
    for attempt in range(1, attempts + 1):
        try:
            result = mutate(order)
            db.commit()
            return order, result
        except StaleDataError:
            db.rollback()
            if attempt == attempts:
                logger.error("Order %s still contended after %s attempts", order_id, attempts)
                raise
            logger.warning("Concurrent update on order %s, retrying (attempt %s)", order_id, attempt + 1)
            reloaded = db.get(Order, order_id, populate_existing=True)
            if reloaded is None:
                raise NotFoundError(f"Order {order_id} disappeared during update", {"orderId": order_id})
            order = reloaded
    raise AssertionError("unreachable")


@dataclass
class ApplyResult:
    order: Order
    mapping: StatusMapping
    previous_status: OrderStatus
    status_changed: bool
    history_appended: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order.id,
            "status": self.order.status.value,
            "previousStatus": self.previous_status.value if self.previous_status else None,
            "statusChanged": self.status_changed,
            "shipmentStatus": self.order.shipment_status,
            "mappedStatus": self.mapping.canonical.value,
        }


def _same_entry(last: Mapping[str, Any], entry: Mapping[str, Any], has_timestamp: bool) -> bool:
    if last.get("status") != entry.get("status") or last.get("location") != entry.get("location"):
        return False
    return not has_timestamp or last.get("timestamp") == entry.get("timestamp")


def apply_shipment_update(
    db: Session,
    order: Order,
    update: ShipmentUpdate,
    source: str,
    push: bool = True,
    mapping: Optional[StatusMapping] = None,
) -> ApplyResult:
    """Mirror one courier status onto the order in a single versioned commit."""
    mapping = mapping or map_status(source, update.raw_status)

    def _apply(o: Order) -> ApplyResult:
        now = utcnow()
        previous = o.status
        if update.raw_status:
            o.shipment_status = update.raw_status
        if push:
            o.webhook_history.append({
                "rawStatus": update.raw_status,
                "mappedStatus": mapping.canonical.value,
                "rto": mapping.rto,
                "payload": update.payload,
                "receivedAt": now.isoformat(),
            })
        entry = {
            "status": update.raw_status,
            "timestamp": update.timestamp or now.isoformat(),
            "location": update.location,
            "note": update.note,
        }
        history = o.tracking_history
        appended = False
        if not history or not _same_entry(history[-1], entry, bool(update.timestamp)):
            history.append(entry)
            appended = True

        target = mapping.order_status
        changed = can_transition(o.status, target)
        if changed:
            o.status = target
            if target == OrderStatus.CANCELLED:
                o.cancellation_reason = update.reason or update.note or "Cancelled by courier"
        elif target is not None and target != o.status:
            logger.info(
                "Order %s: ignoring %s -> %s from %s (%r)",
                o.id, o.status.value, target.value, source, update.raw_status,
            )
        if mapping.rto:
            o.rto_reason = update.reason or update.note or "Return to origin"
        if o.status == OrderStatus.DELIVERED and o.delivered_at is None:
            o.delivered_at = parse_timestamp(update.delivered_date) or now
        o.last_synced_at = now
        return ApplyResult(order=o, mapping=mapping, previous_status=previous,
                           status_changed=changed, history_appended=appended)

    order, result = mutate_order(db, order, _apply)
    result.order = order
    if result.status_changed:
        logger.info("Order %s status %s -> %s via %s", order.id, result.previous_status.value, order.status.value, source)
    return result


def override_status(db: Session, order: Order, status: OrderStatus, note: Optional[str] = None,
                    actor: Optional[str] = None) -> Order:
    """Administrative status change. Bypasses the forward-only guard; recorded in tracking history."""
    def _apply(o: Order) -> OrderStatus:
        previous = o.status
        o.status = status
        if status == OrderStatus.DELIVERED and o.delivered_at is None:
            o.delivered_at = utcnow()
        if status == OrderStatus.CANCELLED and note:
            o.cancellation_reason = note
        o.tracking_history.append({
            "status": f"Status set to {status.value} by admin",
            "timestamp": utcnow().isoformat(),
            "location": None,
            "note": note,
        })
        return previous

    order, previous = mutate_order(db, order, _apply)
    logger.warning("Order %s status overridden %s -> %s by %s", order.id, previous.value, status.value, actor or "admin")
    realtime.realtime_service.publish(order, realtime.ORDER_STATUS_UPDATED, {"previousStatus": previous.value, "override": True})
    return order


def summarize_payload(payload: Any) -> str:
    try:
        text = json.dumps(payload, default=str, sort_keys=True)
    except (TypeError, ValueError):
        text = str(payload)
    return text[:PAYLOAD_SUMMARY_LIMIT]


def record_webhook_event(db: Session, source: str, topic: Optional[str], payload: Any,
                         reference: Optional[str] = None, event_key: Optional[str] = None) -> WebhookEvent:
    event = WebhookEvent(
        source=source,
        topic=topic,
        reference=reference,
        event_key=event_key,
        payload_summary=summarize_payload(payload),
    )
    db.add(event)
    db.commit()
    return event


def finish_webhook_event(db: Session, event: WebhookEvent, *, order_id: Optional[str] = None,
                         duplicate: bool = False, error: Optional[str] = None) -> None:
    """Stamp the outcome on a logged delivery. Errors are kept so swallowed failures stay queryable."""
    if error is not None:
        db.rollback()
    if order_id:
        event.order_id = order_id
    event.duplicate = duplicate
    if error is None:
        event.processed_at = utcnow()
    else:
        event.error = error[:1000]
    db.commit()


def extract_token(headers: Mapping[str, str]) -> Optional[str]:
    token = headers.get("x-api-key")
    if token:
        return token.strip()
    auth = headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return auth.strip() or None


class ShippingWebhookReconciler:
    """Authenticate -> dedupe -> locate -> map -> apply -> acknowledge, for one courier push."""

    def __init__(
        self,
        db: Session,
        provider: ShippingProvider,
        ledger: IdempotencyLedger,
        locks: OrderLockRegistry = order_locks,
    ):
        self.db = db
        self.provider = provider
        self.ledger = ledger
        self.locks = locks

    def authenticate(self, headers: Mapping[str, str]) -> None:
        """Constant-time shared-secret check. Raises AuthenticationError without touching state."""
        expected = self.provider.webhook_secret
        received = extract_token(headers)
        if not expected:
            logger.error("%s webhook secret is not configured; rejecting delivery", self.provider.name)
            raise AuthenticationError("Unauthorized")
        if not received or not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("%s webhook rejected: invalid token", self.provider.name)
            raise AuthenticationError("Unauthorized")

    def _locate(self, update: ShipmentUpdate) -> Order:
        if update.tracking_code:
            try:
                return locate(self.db, update.tracking_code).order
            except NotFoundError:
                if not update.order_reference:
                    raise
        return locate(self.db, update.order_reference).order

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Process an authenticated delivery. Always returns a body for a 200 response."""
        try:
            update = self.provider.parse_webhook(payload if isinstance(payload, dict) else {})
        except Exception as e:
            logger.exception("%s webhook payload could not be parsed", self.provider.name)
            event = record_webhook_event(self.db, self.provider.name, None, payload)
            finish_webhook_event(self.db, event, error=f"{type(e).__name__}: {e}")
            return {"success": False, "message": "Error processing webhook, logged for review"}
        if update.is_test:
            logger.info("%s test webhook acknowledged", self.provider.name)
            return {"success": True, "message": "Test webhook acknowledged", "isTest": True}

        reference = update.tracking_code or update.order_reference
        event_key = shipment_event_key(self.provider.name, update) if reference else None
        event = record_webhook_event(self.db, self.provider.name, update.raw_status, payload, reference, event_key)
        if not reference:
            logger.warning("%s webhook without waybill or order reference", self.provider.name)
            finish_webhook_event(self.db, event, error="Missing waybill and order reference")
            return {"success": False, "message": "Missing waybill or order reference"}

        if not self.ledger.should_process(event_key, source=self.provider.name):
            finish_webhook_event(self.db, event, duplicate=True)
            return {"success": True, "message": "Event already processed", "duplicate": True}

        try:
            order = self._locate(update)
            mapping = map_status(self.provider.name, update.raw_status)
            async with self.locks.hold(order.id):
                result = apply_shipment_update(self.db, order, update, self.provider.name, push=True, mapping=mapping)
            realtime.realtime_service.publish(
                result.order, realtime.ORDER_STATUS_UPDATED,
                {"previousStatus": result.previous_status.value, "statusChanged": result.status_changed},
            )
            finish_webhook_event(self.db, event, order_id=result.order.id)
            return {"success": True, "message": "Webhook processed successfully", "data": result.to_dict()}
        except NotFoundError as e:
            self.ledger.release(event_key)
            logger.warning("%s webhook: order not found for %s", self.provider.name, reference)
            finish_webhook_event(self.db, event, error=e.message)
            return {"success": False, "message": "Order not found"}
        except ReconciliationError as e:
            self.ledger.release(event_key)
            logger.error("%s webhook for %s failed: %s", self.provider.name, reference, e.message)
            finish_webhook_event(self.db, event, error=e.message)
            return {"success": False, "message": "Error processing webhook, logged for review"}
        except Exception as e:
            self.ledger.release(event_key)
            logger.exception("%s webhook for %s failed", self.provider.name, reference)
            finish_webhook_event(self.db, event, error=f"{type(e).__name__}: {e}")
            return {"success": False, "message": "Error processing webhook, logged for review"}
