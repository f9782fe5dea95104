"""
Pull-based tracking reconciliation.

sync_order() asks the courier for the latest status and funnels it through the same
apply_shipment_update() and ledger key as the webhook path, so a scan seen by both is
applied once. Provider failures are not fatal to reads: the persisted state is returned
with stale=True.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from app.models import Order, OrderType
from app.services import realtime_service as realtime
from app.services.errors import NotFoundError, ProviderError, ReconciliationError
from app.services.idempotency import IdempotencyLedger
from app.services.order_locator import locate
from app.services.order_locks import OrderLockRegistry, order_locks
from app.services.order_reconciler import (
    TERMINAL_STATUSES,
    apply_shipment_update,
    mutate_order,
    shipment_event_key,
    utcnow,
)
from app.services.shipping_providers import ShippingProvider, get_shipping_provider

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    order_id: str
    status: str
    shipment_status: Optional[str]
    tracking_code: Optional[str]
    stale: bool = False
    updated: bool = False
    status_changed: bool = False
    error: Optional[str] = None
    location: Optional[str] = None
    date_time: Optional[str] = None
    tracking_history: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "status": self.status,
            "shipmentStatus": self.shipment_status,
            "trackingCode": self.tracking_code,
            "location": self.location,
            "dateTime": self.date_time,
            "trackingHistory": self.tracking_history,
            "stale": self.stale,
            "updated": self.updated,
            "statusChanged": self.status_changed,
        }


def _persisted(order: Order, stale: bool, error: Optional[str] = None, **kwargs: Any) -> SyncResult:
    history = list(order.tracking_history or [])
    last = history[-1] if history else {}
    return SyncResult(
        order_id=order.id,
        status=order.status.value,
        shipment_status=order.shipment_status,
        tracking_code=order.tracking_code,
        stale=stale,
        error=error,
        location=last.get("location"),
        date_time=last.get("timestamp") or (order.last_synced_at.isoformat() if order.last_synced_at else None),
        tracking_history=history,
        **kwargs,
    )


class TrackingSync:
    def __init__(
        self,
        db: Session,
        ledger: IdempotencyLedger,
        provider: Optional[ShippingProvider] = None,
        locks: OrderLockRegistry = order_locks,
    ):
        self.db = db
        self.ledger = ledger
        self.provider = provider
        self.locks = locks

    def _provider_for(self, order: Order) -> ShippingProvider:
        # An order booked with another courier is tracked with that courier.
        if self.provider is not None and order.shipment_provider in (None, self.provider.name):
            return self.provider
        return get_shipping_provider(order.shipment_provider)

    async def sync(self, order: Order) -> SyncResult:
        if not order.tracking_code:
            return _persisted(order, stale=False)
        provider = self._provider_for(order)
        try:
            update = await provider.track(order.tracking_code)
        except ProviderError as e:
            logger.warning("Tracking refresh failed for order %s (%s): %s", order.id, order.tracking_code, e.message)
            return _persisted(order, stale=True, error=e.message)

        if not update.raw_status:
            logger.info("No tracking status yet for %s", order.tracking_code)
            return _persisted(order, stale=False)

        update.tracking_code = update.tracking_code or order.tracking_code
        event_key = shipment_event_key(provider.name, update)
        async with self.locks.hold(order.id):
            if not self.ledger.should_process(event_key, source=provider.name):
                def _touch(o: Order) -> None:
                    o.last_synced_at = utcnow()
                order, _ = mutate_order(self.db, order, _touch)
                return _persisted(order, stale=False)
            try:
                result = apply_shipment_update(self.db, order, update, provider.name, push=False)
            except Exception:
                self.ledger.release(event_key)
                self.db.rollback()
                raise
        order = result.order
        realtime.realtime_service.publish(
            order, realtime.ORDER_STATUS_UPDATED,
            {"previousStatus": result.previous_status.value, "statusChanged": result.status_changed, "source": "sync"},
        )
        return _persisted(order, stale=False, updated=True, status_changed=result.status_changed)


async def sync_order(
    db: Session,
    order_id: str,
    ledger: IdempotencyLedger,
    order_type: Union[str, OrderType, None] = None,
    provider: Optional[ShippingProvider] = None,
) -> SyncResult:
    """Refresh one order from its courier. Raises NotFoundError for an unknown order."""
    order = locate(db, order_id, order_type).order
    return await TrackingSync(db, ledger, provider).sync(order)


async def track_identifier(
    db: Session,
    identifier: str,
    ledger: IdempotencyLedger,
    order_type: Union[str, OrderType, None] = None,
    provider: Optional[ShippingProvider] = None,
) -> dict[str, Any]:
    """
    Public "track my order": an order id/reference refreshes and returns the order's state;
    a bare AWB that matches no order is tracked read-only.
    """
    try:
        order = locate(db, identifier, order_type).order
    except NotFoundError:
        provider = provider or get_shipping_provider()
        try:
            update = await provider.track(identifier)
        except ProviderError as e:
            raise NotFoundError("No tracking information found for this AWB", {"awbCode": identifier, "reason": e.message})
        return {
            "orderId": None,
            "trackingCode": identifier,
            "status": update.raw_status,
            "location": update.location,
            "dateTime": update.timestamp,
            "trackingHistory": update.scans,
            "stale": False,
        }
    if not order.tracking_code:
        raise NotFoundError("No tracking information for this order yet", {"orderId": order.id})
    return (await TrackingSync(db, ledger, provider).sync(order)).to_dict()


async def sync_active_orders(
    db: Session,
    ledger: IdempotencyLedger,
    provider: Optional[ShippingProvider] = None,
    limit: int = 500,
) -> dict[str, Any]:
    """
    Sweep orders with a tracking code in a non-terminal status.
    Returns { synced, updated, stale, errors }.
    """
    active = (
        db.query(Order)
        .filter(Order.tracking_code.isnot(None))
        .filter(Order.status.notin_(list(TERMINAL_STATUSES)))
        .order_by(Order.last_synced_at.asc())
        .limit(limit)
        .all()
    )
    syncer = TrackingSync(db, ledger, provider)
    synced = updated = stale = 0
    errors: list[str] = []
    for order in active:
        try:
            result = await syncer.sync(order)
            synced += 1
            if result.updated:
                updated += 1
            if result.stale:
                stale += 1
                errors.append(f"{order.tracking_code}: {result.error}")
        except ReconciliationError as e:
            db.rollback()
            logger.warning("Sync order %s failed: %s", order.id, e.message)
            errors.append(f"{order.tracking_code}: {e.message}")
        except Exception as e:
            db.rollback()
            logger.exception("Sync order %s failed", order.id)
            errors.append(f"{order.tracking_code}: {e}")
    logger.info("Tracking sweep: %s synced, %s updated, %s stale, %s errors", synced, updated, stale, len(errors))
    return {"synced": synced, "updated": updated, "stale": stale, "errors": errors[:50]}
