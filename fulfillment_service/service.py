# service.py
import logging
import uuid
from typing import Optional

from databases import Database

from fulfillment_service.assignment import DispatchEngine
from fulfillment_service.deliveries import DeliveryStateMachine
from fulfillment_service.earnings import EarningsPolicy
from fulfillment_service.events import EventBroadcaster
from fulfillment_service.locks import EntityLocks
from fulfillment_service.models import drivers, utcnow
from fulfillment_service.orders import OrderStateMachine
from fulfillment_service.payments import PaymentGateway, PaymentReconciler, build_gateway
from fulfillment_service.schemas import Driver, DriverCreate
from fulfillment_service.store import fetch_driver
from fulfillment_service.tracking import LocationTracker

logger = logging.getLogger("fulfillment-service")
logger.setLevel(logging.INFO)


class FulfillmentService:
    """
    Wires the pipeline together over one database handle.

    Timer and threshold overrides are passed through as keyword arguments
    (``assignment_timeout``, ``search_timeout``, ``max_rounds``,
    ``poll_interval``, ``stale_after`` ...), so tests can run the dispatch
    loop on millisecond timers.
    """

    def __init__(self, db: Database, gateway: Optional[PaymentGateway] = None,
                 broadcaster: Optional[EventBroadcaster] = None, earnings: Optional[EarningsPolicy] = None,
                 **options):
        self.db = db
        self.locks = EntityLocks()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.orders = OrderStateMachine(db, self.locks, self.broadcaster)
        self.tracker = LocationTracker(db, self.broadcaster, **_pick(options, "max_accuracy", "stale_after", "clock_skew"))
        self.deliveries = DeliveryStateMachine(
            db, self.locks, self.broadcaster, self.orders, tracker=self.tracker, earnings=earnings,
            **_pick(options, "assignment_timeout", "average_speed_kmh", "eta_buffer"),
        )
        self.payments = PaymentReconciler(db, self.locks, self.orders, self.broadcaster, gateway or build_gateway())
        self.dispatch = DispatchEngine(
            db, self.deliveries, reconciler=self.payments,
            **_pick(options, "search_timeout", "max_rounds", "poll_interval", "radius_km"),
        )

        self.orders.on_confirmed = self.dispatch.request_delivery
        self.orders.on_cancelled = self.dispatch.stop_for_order

    async def start(self):
        await self.broadcaster.start()
        await self.tracker.start()
        await self.dispatch.recover()
        logger.info("🚀 Fulfillment pipeline started")

    async def stop(self):
        await self.dispatch.stop()
        await self.tracker.stop()
        await self.broadcaster.stop()
        logger.info("🛑 Fulfillment pipeline stopped")

    # ------------------------- DRIVERS -------------------------
    async def register_driver(self, data: DriverCreate) -> Driver:
        driver_id = data.id or str(uuid.uuid4())
        await self.db.execute(
            drivers.insert().values(
                id=driver_id,
                name=data.name,
                vehicle=data.vehicle,
                is_available=data.is_available,
                current_location=data.current_location.model_dump() if data.current_location else None,
                location_updated_at=utcnow() if data.current_location else None,
                active_delivery_id=None,
                idle_since=utcnow(),
            )
        )
        logger.info(f"✅ Driver {driver_id} registered ({data.name})")
        return await fetch_driver(self.db, driver_id)

    async def set_availability(self, driver_id: str, available: Optional[bool] = None) -> Driver:
        """Flip ``is_available``, or force it when ``available`` is given."""
        async with self.locks.driver(driver_id):
            driver = await fetch_driver(self.db, driver_id)
            value = (not driver.is_available) if available is None else available
            values = {"is_available": value}
            if value and not driver.is_available:
                values["idle_since"] = utcnow()
            await self.db.execute(drivers.update().where(drivers.c.id == driver_id).values(**values))
            updated = await fetch_driver(self.db, driver_id)

        logger.info(f"Driver {driver_id} is now {'available' if value else 'offline'}")
        if value:
            self.dispatch.notify_driver_available()
        return updated


def _pick(options: dict, *names) -> dict:
    return {name: options[name] for name in names if name in options}
