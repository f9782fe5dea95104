"""
Courier status string -> canonical OrderStatus.

Case-insensitive substring matching against an ordered pattern table; the first
matching row wins, so specific patterns sit above broad ones ("cancelled in transit"
is a cancellation, "RTO Delivered" is a return, not a delivery).
Unrecognized strings map to MappedStatus.UNKNOWN: they are mirrored on the
shipment but never change order.status.
"""
import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from app.models import OrderStatus

logger = logging.getLogger(__name__)


class MappedStatus(str, enum.Enum):
    UNKNOWN = "unknown"


CanonicalStatus = Union[OrderStatus, MappedStatus]


@dataclass(frozen=True)
class StatusMapping:
    raw_status: str
    canonical: CanonicalStatus
    rto: bool = False

    @property
    def is_known(self) -> bool:
        return self.rto or self.canonical != MappedStatus.UNKNOWN

    @property
    def order_status(self) -> Optional[OrderStatus]:
        return self.canonical if isinstance(self.canonical, OrderStatus) else None


# (pattern, canonical status, rto annotation). Order matters.
_PATTERNS: list[tuple[re.Pattern, CanonicalStatus, bool]] = [
    (re.compile(r"cancel"), OrderStatus.CANCELLED, False),
    (re.compile(r"\brto\b|return"), MappedStatus.UNKNOWN, True),
    (re.compile(r"\blost\b|damaged|destroyed"), OrderStatus.FAILED, False),
    (re.compile(r"undelivered|not delivered"), OrderStatus.SHIPPED, False),
    (re.compile(r"delivered"), OrderStatus.DELIVERED, False),
    (re.compile(r"out for delivery"), OrderStatus.SHIPPED, False),
    (re.compile(r"transit|pickup|picked up|shipped|dispatched|reached"), OrderStatus.SHIPPED, False),
    (re.compile(r"manifested|awb assigned|label generated|ready to ship|\bnew\b"), OrderStatus.PROCESSING, False),
]

# Provider-specific rows checked before the shared table.
_PROVIDER_PATTERNS: dict[str, list[tuple[re.Pattern, CanonicalStatus, bool]]] = {
    "delhivery": [
        # Delhivery "Pending" is an in-network scan awaiting the next hop.
        (re.compile(r"^pending$"), OrderStatus.SHIPPED, False),
    ],
}


def map_status(provider_name: Optional[str], raw_status: Optional[str]) -> StatusMapping:
    """
    Map a provider status string to the canonical order status.
    Total: never raises; unknown or empty strings map to MappedStatus.UNKNOWN.
    """
    raw = raw_status if isinstance(raw_status, str) else ("" if raw_status is None else str(raw_status))
    normalized = " ".join(raw.strip().lower().replace("_", " ").replace("-", " ").split())
    provider = (provider_name or "").strip().lower()
    if normalized:
        for pattern, canonical, rto in _PROVIDER_PATTERNS.get(provider, []) + _PATTERNS:
            if pattern.search(normalized):
                return StatusMapping(raw_status=raw, canonical=canonical, rto=rto)
    logger.warning("Unmapped courier status provider=%s raw_status=%r", provider or "-", raw)
    return StatusMapping(raw_status=raw, canonical=MappedStatus.UNKNOWN, rto=False)
