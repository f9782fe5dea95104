"""
SQLAlchemy models.
All model and enum definitions live here for simplicity and to avoid circular imports.

Orders are one table with single-table inheritance on order_type (regular | custom);
the payment and shipment sub-records are columns of the order row itself.
"""
from decimal import Decimal

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Numeric, Enum as SQLEnum, JSON
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base
import enum
import uuid

# Enums
class OrderType(str, enum.Enum):
    REGULAR = "regular"
    CUSTOM = "custom"

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"

class RefundStatus(str, enum.Enum):
    NONE = "none"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


# Models
class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_new_id)
    order_type = Column("order_type", String(16), nullable=False, index=True)
    version = Column("version", Integer, nullable=False)
    user_id = Column("user_id", String, nullable=True, index=True)
    customer_name = Column("customer_name", String, nullable=False)
    customer_email = Column("customer_email", String, nullable=True)
    order_total = Column("order_total", Numeric(10, 2), nullable=False, default=0)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    notes = Column("notes", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    # Shipping address
    shipping_name = Column("shipping_name", String, nullable=True)
    shipping_phone = Column("shipping_phone", String, nullable=True)
    shipping_email = Column("shipping_email", String, nullable=True)
    shipping_address1 = Column("shipping_address1", String, nullable=True)
    shipping_address2 = Column("shipping_address2", String, nullable=True)
    shipping_city = Column("shipping_city", String, nullable=True)
    shipping_state = Column("shipping_state", String, nullable=True)
    shipping_postal_code = Column("shipping_postal_code", String, nullable=True)
    shipping_country = Column("shipping_country", String, nullable=True, default="India")

    # Payment sub-record (Razorpay)
    payment_method = Column("payment_method", String, nullable=True, default="prepaid")
    payment_provider_order_id = Column("payment_provider_order_id", String, unique=True, nullable=True)
    payment_provider_payment_id = Column("payment_provider_payment_id", String, nullable=True, index=True)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_paid_at = Column("payment_paid_at", DateTime(timezone=True), nullable=True)
    refund_amount = Column("refund_amount", Numeric(10, 2), nullable=False, default=0)
    refund_status = Column(SQLEnum(RefundStatus), nullable=False, default=RefundStatus.NONE)
    refunds = Column("refunds", MutableList.as_mutable(JSON), nullable=False, default=list)

    # Shipment sub-record (Shiprocket / Delhivery); tracking_code is unique once assigned
    shipment_provider = Column("shipment_provider", String, nullable=True)
    shipment_provider_shipment_id = Column("shipment_provider_shipment_id", String, nullable=True, index=True)
    shipment_provider_order_id = Column("shipment_provider_order_id", String, nullable=True, index=True)
    tracking_code = Column("tracking_code", String, unique=True, nullable=True)
    courier_id = Column("courier_id", String, nullable=True)
    courier_name = Column("courier_name", String, nullable=True)
    shipment_status = Column("shipment_status", String, nullable=True)
    tracking_url = Column("tracking_url", String, nullable=True)
    label_url = Column("label_url", String, nullable=True)
    tracking_history = Column("tracking_history", MutableList.as_mutable(JSON), nullable=False, default=list)
    webhook_history = Column("webhook_history", MutableList.as_mutable(JSON), nullable=False, default=list)
    last_synced_at = Column("last_synced_at", DateTime(timezone=True), nullable=True)
    delivered_at = Column("delivered_at", DateTime(timezone=True), nullable=True)
    rto_reason = Column("rto_reason", String, nullable=True)
    cancellation_reason = Column("cancellation_reason", String, nullable=True)

    __mapper_args__ = {
        "polymorphic_on": order_type,
        "version_id_col": version,
    }

    reference_prefix = "ORD"

    @property
    def reference(self) -> str:
        """Order reference sent to couriers (ORD-<id> / CUST-<id>)."""
        return f"{self.reference_prefix}-{self.id}"

    @property
    def total(self) -> Decimal:
        return Decimal(str(self.order_total or 0))

    @property
    def has_shipment(self) -> bool:
        return bool(self.shipment_provider_shipment_id)

    def line_items(self) -> list[dict]:
        """Courier line items; subclasses describe what was bought."""
        return []

    def total_weight_kg(self) -> float:
        return 0.15


class RegularOrder(Order):
    """Catalog order with one or more line items."""

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    __mapper_args__ = {"polymorphic_identity": OrderType.REGULAR.value}

    def line_items(self) -> list[dict]:
        return [
            {
                "name": item.title or "Mobile Cover",
                "sku": item.sku,
                "units": item.qty,
                "selling_price": float(item.price or 0),
            }
            for item in self.items
        ]

    def total_weight_kg(self) -> float:
        weight = sum(float(item.weight_kg or 0.15) * (item.qty or 1) for item in self.items)
        return weight or 0.15


class CustomOrder(Order):
    """Custom-design order: a single designed product."""

    design_model_name = Column("design_model_name", String, nullable=True)
    design_sku = Column("design_sku", String, nullable=True)
    design_image_url = Column("design_image_url", String, nullable=True)
    quantity = Column("quantity", Integer, nullable=True, default=1)
    unit_price = Column("unit_price", Numeric(10, 2), nullable=True)

    __mapper_args__ = {"polymorphic_identity": OrderType.CUSTOM.value}

    reference_prefix = "CUST"

    def line_items(self) -> list[dict]:
        return [
            {
                "name": f"Custom {self.design_model_name or 'Mobile Cover'}",
                "sku": self.design_sku or f"CUSTOM-{self.id}",
                "units": self.quantity or 1,
                "selling_price": float(self.unit_price if self.unit_price is not None else self.total),
            }
        ]


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=_new_id)
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    sku = Column(String, nullable=False)
    title = Column(String, nullable=False)
    qty = Column(Integer, nullable=False, default=1)
    price = Column("price", Numeric(10, 2), nullable=False)
    weight_kg = Column("weight_kg", Numeric(6, 3), nullable=True)

    order = relationship("RegularOrder", back_populates="items")


ORDER_CLASSES = {
    OrderType.REGULAR: RegularOrder,
    OrderType.CUSTOM: CustomOrder,
}


class ProcessedEvent(Base):
    """Idempotency ledger row: one per external event key."""
    __tablename__ = "processed_events"

    event_key = Column("event_key", String(255), primary_key=True)
    source = Column("source", String, nullable=True)
    processed_at = Column("processed_at", DateTime(timezone=True), nullable=False, index=True)


class WebhookEvent(Base):
    """Every authenticated webhook delivery, with its outcome."""
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=_new_id)
    source = Column("source", String, nullable=False, index=True)
    topic = Column("topic", String, nullable=True, index=True)
    event_key = Column("event_key", String(255), nullable=True, index=True)
    reference = Column("reference", String, nullable=True, index=True)
    order_id = Column("order_id", String, nullable=True, index=True)
    payload_summary = Column("payload_summary", String, nullable=True)
    duplicate = Column("duplicate", Boolean, default=False, nullable=False)
    processed_at = Column("processed_at", DateTime(timezone=True), nullable=True)
    error = Column("error", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
