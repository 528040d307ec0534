# tracking.py
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

from databases import Database

from fulfillment_service.config import (
    LOCATION_CLOCK_SKEW_SECONDS, LOCATION_MAX_ACCURACY_METERS, LOCATION_STALE_SECONDS,
)
from fulfillment_service.database import INTEGRITY_ERRORS
from fulfillment_service.events import LOCATION_UPDATED, EventBroadcaster, delivery_scopes
from fulfillment_service.lattice import DeliveryStatus
from fulfillment_service.metrics import LOCATION_POINTS
from fulfillment_service.models import deliveries, drivers, tracking_points, utcnow
from fulfillment_service.schemas import LocationPoint
from fulfillment_service.store import fetch_order, format_delivery

logger = logging.getLogger("fulfillment-service.tracking")
logger.setLevel(logging.INFO)

# Deliveries that record a breadcrumb trail.
TRACKED_STATUSES = frozenset({
    DeliveryStatus.DRIVER_ACCEPTED, DeliveryStatus.AT_PICKUP, DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT, DeliveryStatus.AT_DROPOFF,
})


@dataclass(frozen=True)
class TrackedLocation:
    driver_id: str
    lat: float
    lng: float
    timestamp: datetime
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    flags: Tuple[str, ...] = ()
    received_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return {
            "driver_id": self.driver_id,
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp.isoformat(),
            "accuracy": self.accuracy,
            "heading": self.heading,
            "speed": self.speed,
            "flags": list(self.flags),
        }


class LocationTracker:
    """
    Ingests driver positions.

    ``report_location`` only touches memory and enqueues; a single worker
    applies queued points to the driver row and the active delivery's trail,
    so ingestion never waits on delivery writes. Questionable points are
    flagged, not dropped.
    """

    def __init__(self, db: Database, broadcaster: EventBroadcaster,
                 max_accuracy: float = LOCATION_MAX_ACCURACY_METERS,
                 stale_after: float = LOCATION_STALE_SECONDS,
                 clock_skew: float = LOCATION_CLOCK_SKEW_SECONDS):
        self.db = db
        self.broadcaster = broadcaster
        self.max_accuracy = max_accuracy
        self.stale_after = stale_after
        self.clock_skew = clock_skew
        self._last_known: Dict[str, TrackedLocation] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    # ------------------------- INGESTION -------------------------
    def report_location(self, driver_id: str, point: LocationPoint) -> TrackedLocation:
        now = utcnow()
        timestamp = point.timestamp or now
        previous = self._last_known.get(driver_id)

        location = TrackedLocation(
            driver_id=driver_id,
            lat=point.lat,
            lng=point.lng,
            timestamp=timestamp,
            accuracy=point.accuracy,
            heading=point.heading,
            speed=point.speed,
            flags=self._flags(point, timestamp, now, previous),
            received_at=now,
        )
        if previous is None or timestamp >= previous.timestamp:
            self._last_known[driver_id] = location

        for flag in location.flags or ("ok",):
            LOCATION_POINTS.labels(flag=flag).inc()
        self._queue.put_nowait(location)
        return location

    def get_last_known(self, driver_id: str) -> Optional[TrackedLocation]:
        return self._last_known.get(driver_id)

    def _flags(self, point: LocationPoint, timestamp: datetime, now: datetime,
               previous: Optional[TrackedLocation]) -> Tuple[str, ...]:
        flags = []
        if point.accuracy is not None and point.accuracy > self.max_accuracy:
            flags.append("low_accuracy")
        age = (now - timestamp).total_seconds()
        if age > self.stale_after:
            flags.append("stale")
        elif -age > self.clock_skew:
            flags.append("clock_skew")
        if previous is not None and timestamp < previous.timestamp:
            flags.append("out_of_order")
        return tuple(flags)

    # ------------------------- WORKER -------------------------
    async def start(self):
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
            logger.info("📍 Location worker started")

    async def stop(self):
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    async def drain(self):
        """Wait until every queued point has been applied."""
        await self._queue.join()

    async def _run(self):
        while True:
            location = await self._queue.get()
            try:
                await self.apply(location)
            except Exception:
                logger.exception(f"[Location] Failed to apply point for driver {location.driver_id}")
            finally:
                self._queue.task_done()

    async def apply(self, location: TrackedLocation):
        driver = await self.db.fetch_one(drivers.select().where(drivers.c.id == location.driver_id))
        if not driver:
            logger.warning(f"[Location] Unknown driver {location.driver_id}, point kept in memory only")
            return

        if "out_of_order" not in location.flags:
            await self.db.execute(
                drivers.update().where(drivers.c.id == location.driver_id).values(
                    current_location={"lat": location.lat, "lng": location.lng},
                    location_updated_at=location.timestamp,
                )
            )

        delivery_id = driver["active_delivery_id"]
        if not delivery_id:
            return
        row = await self.db.fetch_one(deliveries.select().where(deliveries.c.id == delivery_id))
        if not row:
            return
        delivery = format_delivery(row)
        if delivery.status not in TRACKED_STATUSES or delivery.driver_id != location.driver_id:
            return

        last = await self.db.fetch_one(
            tracking_points.select()
            .where(tracking_points.c.delivery_id == delivery_id)
            .order_by(tracking_points.c.timestamp.desc())
            .limit(1)
        )
        if last and location.timestamp <= last["timestamp"]:
            if location.timestamp < last["timestamp"]:
                logger.info(f"[Location] Out-of-order point for delivery {delivery_id} not appended")
            return

        try:
            await self.db.execute(
                tracking_points.insert().values(
                    delivery_id=delivery_id,
                    driver_id=location.driver_id,
                    lat=location.lat,
                    lng=location.lng,
                    timestamp=location.timestamp,
                    accuracy=location.accuracy,
                    heading=location.heading,
                    speed=location.speed,
                    flags=list(location.flags),
                )
            )
        except INTEGRITY_ERRORS:
            # same driver + timestamp already stored: redelivered point
            return

        order = await fetch_order(self.db, delivery.order_id)
        await self.broadcaster.publish(
            LOCATION_UPDATED,
            {"delivery_id": delivery_id, "order_id": delivery.order_id, **location.as_dict()},
            entity=f"delivery:{delivery_id}",
            scopes=delivery_scopes(delivery, order),
        )
