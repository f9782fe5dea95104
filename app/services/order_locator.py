"""
Resolve an external reference to exactly one order.

Strategies, first match wins:
  internal_id      canonical UUID (the order primary key)
  prefixed_id      ORD-<uuid> / CUST-<uuid> references sent to couriers
  tracking_code    courier AWB / waybill
  payment_provider_order_id, payment_provider_payment_id, shipment_provider_order_id

Internal ids are tried first and only for strings that are canonical UUIDs, so a
tracking code can never shadow an internal id.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from app.models import Order, OrderType, ORDER_CLASSES
from app.services.errors import AmbiguousReferenceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
PREFIXED_RE = re.compile(r"^(ORD|CUST)-([0-9a-fA-F-]{36})$", re.IGNORECASE)

PREFIX_TYPES = {"ORD": OrderType.REGULAR, "CUST": OrderType.CUSTOM}

# Secondary identifiers, queried in this order.
SECONDARY_STRATEGIES = (
    ("tracking_code", Order.tracking_code),
    ("payment_provider_order_id", Order.payment_provider_order_id),
    ("payment_provider_payment_id", Order.payment_provider_payment_id),
    ("shipment_provider_order_id", Order.shipment_provider_order_id),
)


@dataclass
class LocateResult:
    order: Order
    order_type: OrderType
    strategy: str


def parse_order_type(value: Union[str, OrderType, None]) -> Optional[OrderType]:
    if value is None or value == "":
        return None
    if isinstance(value, OrderType):
        return value
    try:
        return OrderType(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown order type: {value}", rule="order_type")


def _model_for(order_type: Optional[OrderType]):
    return ORDER_CLASSES[order_type] if order_type else Order


def _by_id(db: Session, order_id: str, order_type: Optional[OrderType]) -> Optional[Order]:
    return db.query(_model_for(order_type)).filter(Order.id == order_id).first()


def _result(order: Order, strategy: str) -> LocateResult:
    return LocateResult(order=order, order_type=OrderType(order.order_type), strategy=strategy)


def locate(db: Session, reference: Optional[str], order_type: Union[str, OrderType, None] = None) -> LocateResult:
    """
    Find the single order a reference points at.
    Raises NotFoundError when nothing matches, AmbiguousReferenceError when a secondary
    identifier matches more than one order.
    """
    ref = (reference or "").strip()
    if not ref:
        raise NotFoundError("Order reference is empty", {"reference": reference})
    wanted = parse_order_type(order_type)

    if UUID_RE.match(ref):
        order = _by_id(db, ref, wanted)
        if order:
            return _result(order, "internal_id")

    prefixed = PREFIXED_RE.match(ref)
    if prefixed:
        prefix_type = PREFIX_TYPES[prefixed.group(1).upper()]
        order_id = prefixed.group(2).lower()
        if wanted is None or wanted == prefix_type:
            order = _by_id(db, order_id, prefix_type)
            if order:
                return _result(order, "prefixed_id")

    model = _model_for(wanted)
    for strategy, column in SECONDARY_STRATEGIES:
        matches = db.query(model).filter(column == ref).limit(2).all()
        if len(matches) > 1:
            logger.error("Reference %s matches multiple orders via %s", ref, strategy)
            raise AmbiguousReferenceError(
                f"Reference {ref} matches more than one order",
                {"reference": ref, "strategy": strategy, "orderIds": [o.id for o in matches]},
            )
        if matches:
            return _result(matches[0], strategy)

    raise NotFoundError(
        f"Order not found for reference {ref}",
        {"reference": ref, "orderType": wanted.value if wanted else None},
    )


def locate_by_payment_order_id(db: Session, provider_order_id: Optional[str]) -> Optional[Order]:
    if not provider_order_id:
        return None
    return db.query(Order).filter(Order.payment_provider_order_id == provider_order_id).first()


def locate_by_payment_id(db: Session, provider_payment_id: Optional[str]) -> Optional[Order]:
    if not provider_payment_id:
        return None
    matches = db.query(Order).filter(Order.payment_provider_payment_id == provider_payment_id).limit(2).all()
    if len(matches) > 1:
        raise AmbiguousReferenceError(
            f"Payment {provider_payment_id} matches more than one order",
            {"paymentId": provider_payment_id, "orderIds": [o.id for o in matches]},
        )
    return matches[0] if matches else None
