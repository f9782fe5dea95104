"""
Pydantic schemas for request validation (Http/Requests).
Bodies arrive camelCase from the storefront/admin UI; snake_case is accepted too.
"""
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, validator

from app.models import OrderStatus, OrderType


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Shipping Schemas
class Dimensions(CamelModel):
    length: Optional[float] = Field(None, gt=0)
    breadth: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)


class CreateShipmentRequest(CamelModel):
    order_id: str = Field(..., alias="orderId", min_length=1)
    order_type: Optional[OrderType] = Field(None, alias="orderType")
    pickup_location: Optional[str] = Field(None, alias="pickupLocationId")
    dimensions: Optional[Dimensions] = None
    weight: Optional[float] = None


class AssignCourierRequest(CamelModel):
    order_id: str = Field(..., alias="orderId", min_length=1)
    order_type: Optional[OrderType] = Field(None, alias="orderType")
    courier_id: Optional[str] = Field(None, alias="courierId")

    @validator("courier_id", pre=True)
    def stringify_courier_id(cls, v):
        return str(v) if v is not None else None


class RequestPickupRequest(CamelModel):
    order_id: str = Field(..., alias="orderId", min_length=1)
    order_type: Optional[OrderType] = Field(None, alias="orderType")
    pickup_date: Optional[date] = Field(None, alias="pickupDate")
    slot_from: Optional[str] = Field(None, alias="from")
    slot_to: Optional[str] = Field(None, alias="to")


class CancelShipmentRequest(CamelModel):
    order_id: str = Field(..., alias="orderId", min_length=1)
    order_type: Optional[OrderType] = Field(None, alias="orderType")
    reason: Optional[str] = None


class GenerateLabelRequest(CamelModel):
    order_ids: List[str] = Field(..., alias="orderIds", min_length=1)
    order_type: Optional[OrderType] = Field(None, alias="orderType")


# Payment Schemas
class VerifyPaymentRequest(CamelModel):
    order_id: str = Field(..., alias="orderId", min_length=1)
    order_type: Optional[OrderType] = Field(None, alias="orderType")
    razorpay_order_id: str = Field(..., alias="razorpayOrderId", min_length=1)
    razorpay_payment_id: str = Field(..., alias="razorpayPaymentId", min_length=1)
    razorpay_signature: str = Field(..., alias="razorpaySignature", min_length=1)


# Order Schemas
class StatusOverrideRequest(CamelModel):
    status: OrderStatus
    note: Optional[str] = None

    @validator("note")
    def strip_note(cls, v):
        if v is None:
            return v
        return v.strip() or None
