"""
Real-time order notifications using Server-Sent Events (SSE).
Clients subscribe per order; every applied reconciliation publishes one event to that order's subscribers.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import Request

logger = logging.getLogger(__name__)

ORDER_STATUS_UPDATED = "orderStatusUpdated"
PAYMENT_SUCCESS = "paymentSuccess"
PAYMENT_FAILED = "paymentFailed"
REFUND_INITIATED = "refundInitiated"
REFUND_COMPLETED = "refundCompleted"
REFUND_FAILED = "refundFailed"

KEEPALIVE_SECONDS = 15


class RealtimeService:
    def __init__(self):
        # Active subscriber queues by order id
        self.connections: Dict[str, Set[asyncio.Queue]] = {}
        self.published = 0

    async def connect(self, order_id: str) -> asyncio.Queue:
        """Add a subscriber for an order and return its event queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=100)
        self.connections.setdefault(order_id, set()).add(queue)
        logger.info("Subscriber connected to order %s", order_id)
        return queue

    async def disconnect(self, order_id: str, queue: asyncio.Queue):
        """Remove a subscriber."""
        if order_id in self.connections:
            self.connections[order_id].discard(queue)
            if not self.connections[order_id]:
                del self.connections[order_id]
        logger.info("Subscriber disconnected from order %s", order_id)

    def subscriber_count(self, order_id: str) -> int:
        return len(self.connections.get(order_id, ()))

    def publish(self, order, event_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Queue an event for every subscriber of the order. Slow subscribers drop events."""
        event = {
            "type": event_type,
            "data": {
                "orderId": order.id,
                "orderType": order.order_type,
                "status": order.status.value if order.status else None,
                "paymentStatus": order.payment_status.value if order.payment_status else None,
                "shipmentStatus": order.shipment_status,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **(data or {}),
            },
        }
        self.published += 1
        message = json.dumps(event, default=str)
        for queue in list(self.connections.get(order.id, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Dropping %s event for slow subscriber on order %s", event_type, order.id)
        logger.debug("Published %s for order %s", event_type, order.id)
        return event

    async def generate_events(self, request: Request, order_id: str):
        """Generate SSE events for a connected client."""
        queue = await self.connect(order_id)
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield {"event": "ping", "data": ""}
                    continue
                event_type = json.loads(message).get("type", "update")
                yield {"event": event_type, "data": message}
        finally:
            await self.disconnect(order_id, queue)

# Global instance
realtime_service = RealtimeService()
