# assignment.py
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from databases import Database

from fulfillment_service.config import (
    DISPATCH_MAX_ROUNDS, DISPATCH_POLL_INTERVAL_SECONDS, DISPATCH_RADIUS_KM, DISPATCH_SEARCH_TIMEOUT_SECONDS,
)
from fulfillment_service.deliveries import DeliveryStateMachine
from fulfillment_service.errors import (
    DriverUnavailable, FulfillmentError, IllegalTransition, NoDriverAvailable, OfferExpired,
)
from fulfillment_service.geo import distance_km
from fulfillment_service.lattice import DeliveryStatus, OrderStatus
from fulfillment_service.metrics import ACTIVE_SEARCHES, DISPATCH_OFFERS
from fulfillment_service.models import deliveries, drivers, orders, utcnow
from fulfillment_service.schemas import Delivery, Driver, Order
from fulfillment_service.store import fetch_delivery_for_order, fetch_driver, format_delivery, format_driver, format_order

logger = logging.getLogger("fulfillment-service.dispatch")
logger.setLevel(logging.INFO)

D = DeliveryStatus

NO_DRIVER_AVAILABLE = "no_driver_available"

# Deliveries a restarted process must pick back up.
RECOVERABLE_STATUSES = (D.PENDING.value, D.SEARCHING_DRIVER.value, D.DRIVER_ASSIGNED.value)


@dataclass
class AssignmentOffer:
    delivery_id: str
    driver_id: str
    offered_at: datetime
    deadline: datetime
    resolved: asyncio.Event = field(default_factory=asyncio.Event)
    outcome: Optional[str] = None

    def resolve(self, outcome: str):
        if not self.resolved.is_set():
            self.outcome = outcome
            self.resolved.set()

    def as_dict(self) -> dict:
        return {
            "delivery_id": self.delivery_id,
            "driver_id": self.driver_id,
            "offered_at": self.offered_at.isoformat(),
            "deadline": self.deadline.isoformat(),
        }


class DispatchEngine:
    """
    Finds a driver for every confirmed order.

    One search task runs per delivery. A round ranks the free drivers by
    distance to the pickup (longest idle first on ties), offers the delivery
    to the best one and waits for an answer or the offer deadline. Drivers who
    reject or let an offer lapse are not asked again for that delivery.

    The search gives up after ``max_rounds`` consecutive rounds without a
    single candidate, or once ``search_timeout`` has elapsed. Giving up
    cancels the delivery and the order and refunds the captured payment.
    """

    def __init__(self, db: Database, deliveries: DeliveryStateMachine, reconciler=None,
                 search_timeout: float = DISPATCH_SEARCH_TIMEOUT_SECONDS,
                 max_rounds: int = DISPATCH_MAX_ROUNDS,
                 poll_interval: float = DISPATCH_POLL_INTERVAL_SECONDS,
                 radius_km: float = DISPATCH_RADIUS_KM):
        self.db = db
        self.deliveries = deliveries
        self.reconciler = reconciler
        self.search_timeout = search_timeout
        self.max_rounds = max_rounds
        self.poll_interval = poll_interval
        self.radius_km = radius_km
        self._tasks: Dict[str, asyncio.Task] = {}
        self._offers: Dict[str, AssignmentOffer] = {}
        self._excluded: Dict[str, Set[str]] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}

    # ------------------------- ENTRY POINTS -------------------------
    async def request_delivery(self, order: Order, trace_id: Optional[str] = None) -> Delivery:
        """Hook for an order entering ``confirmed``. Safe to call more than once."""
        delivery = await self.deliveries.create_for_order(order, trace_id)
        delivery = await self.deliveries.start_search(delivery.id, trace_id)
        if delivery.status in (D.SEARCHING_DRIVER, D.DRIVER_ASSIGNED):
            self._spawn(delivery.id, trace_id)
        return delivery

    async def stop_for_order(self, order: Order, trace_id: Optional[str] = None):
        """Hook for an order entering ``cancelled``: stop its search and cancel the delivery."""
        delivery = await fetch_delivery_for_order(self.db, order.id)
        if delivery is None:
            return

        task = self._tasks.get(delivery.id)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        try:
            await self.deliveries.cancel(delivery.id, reason=order.cancel_reason or "order_cancelled", trace_id=trace_id)
        except IllegalTransition:
            # already terminal, or past pickup
            pass

    async def accept(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        """
        Driver says yes. An open offer to that driver is accepted; a delivery
        still searching is claimed directly (polling fallback).
        """
        delivery = await self.deliveries.get(delivery_id)
        if delivery.status == D.SEARCHING_DRIVER:
            return await self.claim(delivery_id, driver_id, trace_id)

        offer = self._offers.get(delivery_id)
        try:
            accepted = await self.deliveries.driver_accept(delivery_id, driver_id, trace_id)
        except OfferExpired:
            # let the search withdraw it now instead of at the next timer tick
            if offer is not None and offer.driver_id == driver_id:
                offer.resolve("expired")
            raise
        if offer is not None and offer.driver_id == driver_id:
            offer.resolve("accepted")
        return accepted

    async def reject(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        delivery = await self.deliveries.driver_reject(delivery_id, driver_id, trace_id)
        self._excluded.setdefault(delivery_id, set()).add(driver_id)
        offer = self._offers.get(delivery_id)
        if offer is not None and offer.driver_id == driver_id:
            offer.resolve("rejected")
        return delivery

    async def claim(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        if driver_id in self._excluded.get(delivery_id, ()):
            raise DriverUnavailable(f"Driver {driver_id} already passed on delivery {delivery_id}")
        delivery = await self.deliveries.claim(delivery_id, driver_id, trace_id)
        DISPATCH_OFFERS.labels(outcome="claimed").inc()
        self._wake(delivery_id)
        return delivery

    async def available_for(self, driver_id: str, radius_km: Optional[float] = None) -> dict:
        """Open offers for the driver plus searching deliveries near them."""
        radius_km = self.radius_km if radius_km is None else radius_km
        offered = await self.db.fetch_all(
            deliveries.select()
            .where(deliveries.c.driver_id == driver_id)
            .where(deliveries.c.status == D.DRIVER_ASSIGNED.value)
        )

        driver = await fetch_driver(self.db, driver_id)
        position = self._position(driver)
        nearby = []
        if position is not None:
            rows = await self.db.fetch_all(
                deliveries.select().where(deliveries.c.status == D.SEARCHING_DRIVER.value)
            )
            for row in rows:
                delivery = format_delivery(row)
                if driver_id in self._excluded.get(delivery.id, ()):
                    continue
                km = distance_km(position, delivery.pickup_address)
                if km <= radius_km:
                    nearby.append({"delivery": delivery, "distance_km": round(km, 3)})
            nearby.sort(key=lambda entry: entry["distance_km"])

        return {"offers": [format_delivery(row) for row in offered], "nearby": nearby}

    def notify_driver_available(self):
        """A driver came online: searches sleeping between rounds look again now."""
        for event in self._wakeups.values():
            event.set()

    # ------------------------- LIFECYCLE -------------------------
    async def recover(self):
        """Resume searches interrupted by a restart."""
        rows = await self.db.fetch_all(
            deliveries.select().where(deliveries.c.status.in_(RECOVERABLE_STATUSES))
        )
        for row in rows:
            self._spawn(row["id"], None)

        # confirmed before the delivery row was written
        orphans = await self.db.fetch_all(
            orders.select()
            .where(orders.c.status == OrderStatus.CONFIRMED.value)
            .where(orders.c.dispatch_requested.is_(True))
        )
        for row in orphans:
            order = format_order(row)
            if await fetch_delivery_for_order(self.db, order.id) is None:
                await self.request_delivery(order)

        if rows or orphans:
            logger.info(f"🔁 Dispatch recovery: {len(rows)} search(es) resumed")

    async def join(self, delivery_id: str):
        task = self._tasks.get(delivery_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def open_offer(self, delivery_id: str) -> Optional[AssignmentOffer]:
        return self._offers.get(delivery_id)

    def is_searching(self, delivery_id: str) -> bool:
        task = self._tasks.get(delivery_id)
        return task is not None and not task.done()

    # ------------------------- SEARCH -------------------------
    def _spawn(self, delivery_id: str, trace_id: Optional[str]):
        if self.is_searching(delivery_id):
            return
        task = asyncio.create_task(self._search(delivery_id, trace_id))
        self._tasks[delivery_id] = task

        def _cleanup(done: asyncio.Task):
            if self._tasks.get(delivery_id) is done:
                self._tasks.pop(delivery_id, None)
                self._offers.pop(delivery_id, None)
                self._excluded.pop(delivery_id, None)
                self._wakeups.pop(delivery_id, None)

        task.add_done_callback(_cleanup)

    async def _search(self, delivery_id: str, trace_id: Optional[str]):
        ACTIVE_SEARCHES.inc()
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + self.search_timeout
        excluded = self._excluded.setdefault(delivery_id, set())
        empty_rounds = 0
        logger.info(f"[TRACE {trace_id}] 🔎 Searching driver for delivery {delivery_id}")
        try:
            await self.deliveries.start_search(delivery_id, trace_id)
            while True:
                delivery = await self.deliveries.get(delivery_id)
                if delivery.status == D.DRIVER_ASSIGNED:
                    await self._watch_offer(delivery, excluded, trace_id)
                    continue
                if delivery.status != D.SEARCHING_DRIVER:
                    return

                if loop.time() >= give_up_at:
                    await self._give_up(delivery, "search timed out", trace_id)
                    return

                candidates = await self.rank_candidates(delivery, excluded)
                if await self._offer_first(delivery, candidates, trace_id):
                    empty_rounds = 0
                    continue

                empty_rounds += 1
                logger.info(f"[TRACE {trace_id}] No driver for delivery {delivery_id} (round {empty_rounds}/{self.max_rounds})")
                if empty_rounds >= self.max_rounds:
                    await self._give_up(delivery, f"{empty_rounds} rounds without a candidate", trace_id)
                    return
                await self._sleep(delivery_id, min(self.poll_interval, max(give_up_at - loop.time(), 0)))
        except asyncio.CancelledError:
            logger.info(f"[TRACE {trace_id}] Search for delivery {delivery_id} stopped")
            raise
        except Exception:
            logger.exception(f"[TRACE {trace_id}] ❌ Search for delivery {delivery_id} crashed")
        finally:
            ACTIVE_SEARCHES.dec()

    async def rank_candidates(self, delivery: Delivery, excluded: Set[str] = frozenset()) -> List[Driver]:
        rows = await self.db.fetch_all(
            drivers.select()
            .where(drivers.c.is_available.is_(True))
            .where(drivers.c.active_delivery_id.is_(None))
        )
        candidates = [format_driver(row) for row in rows if row["id"] not in excluded]

        def rank(driver: Driver):
            position = self._position(driver)
            km = distance_km(position, delivery.pickup_address) if position is not None else float("inf")
            return (km, driver.idle_since or datetime.min, driver.id)

        return sorted(candidates, key=rank)

    async def _offer_first(self, delivery: Delivery, candidates: List[Driver], trace_id: Optional[str]) -> bool:
        for driver in candidates:
            try:
                await self.deliveries.assign(delivery.id, driver.id, trace_id)
            except DriverUnavailable:
                # went busy or offline since the candidate query
                continue
            except IllegalTransition:
                # claimed or cancelled in the meantime; the loop re-reads the status
                return True
            DISPATCH_OFFERS.labels(outcome="offered").inc()
            logger.info(f"[TRACE {trace_id}] 📨 Delivery {delivery.id} offered to driver {driver.id}")
            return True
        return False

    async def _watch_offer(self, delivery: Delivery, excluded: Set[str], trace_id: Optional[str]):
        offer = self._offers.get(delivery.id)
        if offer is None or offer.driver_id != delivery.driver_id:
            offer = AssignmentOffer(
                delivery_id=delivery.id,
                driver_id=delivery.driver_id,
                offered_at=delivery.assigned_at or utcnow(),
                deadline=delivery.accept_deadline or utcnow(),
            )
            self._offers[delivery.id] = offer

        timeout = max((offer.deadline - utcnow()).total_seconds(), 0)
        try:
            await asyncio.wait_for(offer.resolved.wait(), timeout)
        except asyncio.TimeoutError:
            pass

        withdrawn = await self.deliveries.expire_offer(delivery.id, offer.driver_id, trace_id)
        outcome = "expired" if withdrawn is not None else (offer.outcome or "withdrawn")
        offer.resolve(outcome)
        self._offers.pop(delivery.id, None)
        DISPATCH_OFFERS.labels(outcome=outcome).inc()

        if outcome != "accepted":
            excluded.add(offer.driver_id)
            logger.info(f"[TRACE {trace_id}] Offer of delivery {delivery.id} to {offer.driver_id} {outcome}, re-offering")

    async def _give_up(self, delivery: Delivery, why: str, trace_id: Optional[str]):
        error = NoDriverAvailable(f"No driver for delivery {delivery.id}: {why}", delivery_id=delivery.id)
        logger.warning(f"[TRACE {trace_id}] 🚫 {error.message}")
        DISPATCH_OFFERS.labels(outcome=NO_DRIVER_AVAILABLE).inc()
        try:
            await self.deliveries.cancel(delivery.id, reason=NO_DRIVER_AVAILABLE, trace_id=trace_id)
        except IllegalTransition:
            return

        if self.reconciler is None:
            return
        try:
            await self.reconciler.refund(delivery.order_id, reason=NO_DRIVER_AVAILABLE, trace_id=trace_id)
        except FulfillmentError as e:
            logger.warning(f"[TRACE {trace_id}] Refund for order {delivery.order_id} skipped: {e.message}")

    # ------------------------- HELPERS -------------------------
    def _position(self, driver: Driver):
        tracker = self.deliveries.tracker
        if tracker is not None:
            last = tracker.get_last_known(driver.id)
            if last is not None:
                return last
        return driver.current_location

    def _wake(self, delivery_id: str):
        event = self._wakeups.get(delivery_id)
        if event is not None:
            event.set()

    async def _sleep(self, delivery_id: str, seconds: float):
        event = self._wakeups.setdefault(delivery_id, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            event.clear()
