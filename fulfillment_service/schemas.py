# schemas.py
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fulfillment_service.lattice import DeliveryStatus, OrderStatus, PaymentStatus


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Address(BaseModel):
    line: Optional[str] = None
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)

    @property
    def line_total(self) -> float:
        return round(self.quantity * self.unit_price, 2)


# ------------------------- ORDERS -------------------------
class OrderCreate(BaseModel):
    tenant_id: str
    store_id: str
    customer_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    currency: str = "usd"
    pickup_address: Address
    dropoff_address: Address


class Order(BaseModel):
    id: str
    tenant_id: str
    store_id: str
    customer_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    items: List[OrderItem]
    total: float
    currency: str
    pickup_address: Address
    dropoff_address: Address
    gateway_payment_id: Optional[str] = None
    captured_amount: float = 0.0
    refunded_amount: float = 0.0
    needs_review: bool = False
    review_reason: Optional[str] = None
    dispatch_requested: bool = False
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int


class OrderPage(BaseModel):
    items: List[Order]
    page: int
    limit: int
    total: int
    has_next: bool


class OrderStatusUpdate(BaseModel):
    target_status: OrderStatus
    expected_version: int
    reason: Optional[str] = None


class DisputeRequest(BaseModel):
    expected_version: int
    reason: Optional[str] = None


# ------------------------- PAYMENTS -------------------------
class CaptureRequest(BaseModel):
    order_id: str
    gateway_payment_id: str
    amount: Optional[float] = None
    currency: Optional[str] = None


class RefundRequest(BaseModel):
    order_id: str
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None


# ------------------------- DELIVERIES -------------------------
class LocationPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None
    accuracy: Optional[float] = Field(None, ge=0)
    heading: Optional[float] = Field(None, ge=0, le=360)
    speed: Optional[float] = Field(None, ge=0)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return _naive_utc(value)


class TrackingPoint(BaseModel):
    lat: float
    lng: float
    timestamp: datetime
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    flags: List[str] = []


class Delivery(BaseModel):
    id: str
    order_id: str
    driver_id: Optional[str] = None
    status: DeliveryStatus
    pickup_address: Address
    dropoff_address: Address
    assigned_at: Optional[datetime] = None
    accept_deadline: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    driver_earnings: Optional[float] = None
    tip_amount: float = 0.0
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int
    tracking_points: List[TrackingPoint] = []


class DeliveryStatusUpdate(BaseModel):
    # earnings and tips are never taken from the driver
    model_config = ConfigDict(extra="forbid")

    status: DeliveryStatus
    location: Optional[LocationPoint] = None
    reason: Optional[str] = None


# ------------------------- DRIVERS -------------------------
class DriverCreate(BaseModel):
    id: Optional[str] = None
    name: str
    vehicle: Optional[str] = None
    is_available: bool = False
    current_location: Optional[Address] = None


class Driver(BaseModel):
    id: str
    name: str
    vehicle: Optional[str] = None
    is_available: bool
    current_location: Optional[Address] = None
    location_updated_at: Optional[datetime] = None
    active_delivery_id: Optional[str] = None
    idle_since: Optional[datetime] = None
