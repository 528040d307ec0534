# store.py
from typing import List, Optional

from databases import Database
from sqlalchemy import Table

from fulfillment_service.errors import not_found
from fulfillment_service.models import deliveries, drivers, orders, tracking_points, utcnow
from fulfillment_service.schemas import Delivery, Driver, Order, TrackingPoint


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


def row_to_dict(table: Table, row) -> dict:
    return {column.name: row[column.name] for column in table.columns}


def format_order(row) -> Order:
    return Order(**row_to_dict(orders, row))


def format_delivery(row, points: Optional[List[TrackingPoint]] = None) -> Delivery:
    data = row_to_dict(deliveries, row)
    data["tip_amount"] = data.get("tip_amount") or 0.0
    return Delivery(**data, tracking_points=points or [])


def format_driver(row) -> Driver:
    return Driver(**row_to_dict(drivers, row))


# ------------------------- READS -------------------------
async def fetch_order(db: Database, order_id: str) -> Order:
    row = await db.fetch_one(orders.select().where(orders.c.id == order_id))
    if not row:
        raise not_found("order", order_id)
    return format_order(row)


async def fetch_delivery(db: Database, delivery_id: str, with_points: bool = False) -> Delivery:
    row = await db.fetch_one(deliveries.select().where(deliveries.c.id == delivery_id))
    if not row:
        raise not_found("delivery", delivery_id)
    points = await fetch_tracking_points(db, delivery_id) if with_points else None
    return format_delivery(row, points)


async def fetch_delivery_for_order(db: Database, order_id: str) -> Optional[Delivery]:
    row = await db.fetch_one(deliveries.select().where(deliveries.c.order_id == order_id))
    return format_delivery(row) if row else None


async def fetch_driver(db: Database, driver_id: str) -> Driver:
    row = await db.fetch_one(drivers.select().where(drivers.c.id == driver_id))
    if not row:
        raise not_found("driver", driver_id)
    return format_driver(row)


async def fetch_tracking_points(db: Database, delivery_id: str) -> List[TrackingPoint]:
    rows = await db.fetch_all(
        tracking_points.select()
        .where(tracking_points.c.delivery_id == delivery_id)
        .order_by(tracking_points.c.timestamp.asc())
    )
    return [TrackingPoint(**row_to_dict(tracking_points, row)) for row in rows]


# ------------------------- WRITES -------------------------
async def update_versioned(db: Database, table: Table, entity_id: str, expected_version: int, **values) -> None:
    """Write guarded by the version the caller read. Callers hold the entity lock."""
    await db.execute(
        table.update()
        .where((table.c.id == entity_id) & (table.c.version == expected_version))
        .values(version=expected_version + 1, updated_at=utcnow(), **values)
    )
