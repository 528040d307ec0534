# models.py
from datetime import datetime, timezone
from sqlalchemy import (
    Table, Column, String, Float, Integer, Boolean, DateTime, JSON, UniqueConstraint,
)
from fulfillment_service.database import metadata


def utcnow() -> datetime:
    # naive UTC, so values compare cleanly after a round trip through the DB
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ------------------------
# Orders table
# ------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("store_id", String, nullable=False, index=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("status", String, nullable=False, default="pending"),
    Column("payment_status", String, nullable=False, default="pending"),
    Column("items", JSON, nullable=False),
    Column("total", Float, nullable=False),
    Column("currency", String, nullable=False, default="usd"),
    Column("pickup_address", JSON, nullable=False),
    Column("dropoff_address", JSON, nullable=False),
    Column("gateway_payment_id", String, nullable=True),
    Column("captured_amount", Float, nullable=False, default=0.0),
    Column("refunded_amount", Float, nullable=False, default=0.0),
    Column("needs_review", Boolean, nullable=False, default=False),
    Column("review_reason", String, nullable=True),
    Column("dispatch_requested", Boolean, nullable=False, default=False),
    Column("cancel_reason", String, nullable=True),
    Column("created_at", DateTime, default=utcnow),
    Column("updated_at", DateTime, default=utcnow),
    Column("version", Integer, nullable=False, default=1),
)

# ------------------------
# Deliveries table
# ------------------------
deliveries = Table(
    "deliveries",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, unique=True),
    Column("driver_id", String, nullable=True, index=True),
    Column("status", String, nullable=False, default="pending"),
    Column("pickup_address", JSON, nullable=False),
    Column("dropoff_address", JSON, nullable=False),
    Column("assigned_at", DateTime, nullable=True),
    Column("accept_deadline", DateTime, nullable=True),
    Column("accepted_at", DateTime, nullable=True),
    Column("picked_up_at", DateTime, nullable=True),
    Column("delivered_at", DateTime, nullable=True),
    Column("driver_earnings", Float, nullable=True),
    Column("tip_amount", Float, nullable=False, default=0.0),
    Column("cancel_reason", String, nullable=True),
    Column("created_at", DateTime, default=utcnow),
    Column("updated_at", DateTime, default=utcnow),
    Column("version", Integer, nullable=False, default=1),
)

tracking_points = Table(
    "tracking_points",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("delivery_id", String, nullable=False, index=True),
    Column("driver_id", String, nullable=False),
    Column("lat", Float, nullable=False),
    Column("lng", Float, nullable=False),
    Column("timestamp", DateTime, nullable=False),
    Column("accuracy", Float, nullable=True),
    Column("heading", Float, nullable=True),
    Column("speed", Float, nullable=True),
    Column("flags", JSON, nullable=False),

    UniqueConstraint("delivery_id", "driver_id", "timestamp", name="uix_tracking_point")
)

# ------------------------
# Drivers table
# ------------------------
drivers = Table(
    "drivers",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("vehicle", String, nullable=True),
    Column("is_available", Boolean, nullable=False, default=False),
    Column("current_location", JSON, nullable=True),
    Column("location_updated_at", DateTime, nullable=True),
    Column("active_delivery_id", String, nullable=True),
    Column("idle_since", DateTime, default=utcnow),
)

# ------------------------
# Payments
# ------------------------
payment_captures = Table(
    "payment_captures",
    metadata,
    Column("gateway_payment_id", String, primary_key=True),
    Column("order_id", String, nullable=False, unique=True),
    Column("amount", Float, nullable=False),
    Column("currency", String, nullable=False),
    Column("captured_at", DateTime, default=utcnow),
)

refunds = Table(
    "refunds",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("gateway_payment_id", String, nullable=False),
    Column("gateway_refund_id", String, nullable=True),
    Column("amount", Float, nullable=False),
    Column("reason", String, nullable=True),
    Column("created_at", DateTime, default=utcnow),
)

processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("source_service", String, nullable=False),
    Column("processed_at", DateTime, default=utcnow),
)
