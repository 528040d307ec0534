# deliveries.py
import logging
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from databases import Database

from fulfillment_service.config import ASSIGNMENT_TIMEOUT_SECONDS, AVERAGE_SPEED_KMH, ETA_BUFFER_SECONDS
from fulfillment_service.database import INTEGRITY_ERRORS
from fulfillment_service.earnings import DistanceEarningsPolicy, EarningsPolicy
from fulfillment_service.errors import (
    DriverMismatch, DriverUnavailable, IllegalTransition, OfferExpired, VersionConflict,
)
from fulfillment_service.events import (
    DELIVERY_CREATED, DELIVERY_OFFERED, DELIVERY_STATUS_CHANGED, EventBroadcaster, delivery_scopes,
)
from fulfillment_service.geo import distance_km
from fulfillment_service.lattice import (
    OFFER_WITHDRAWAL, DeliveryStatus, EntityKind, OrderStatus, ensure_legal, is_legal, is_terminal,
)
from fulfillment_service.locks import EntityLocks
from fulfillment_service.metrics import DELIVERY_TRANSITIONS
from fulfillment_service.models import deliveries, drivers, utcnow
from fulfillment_service.orders import OrderStateMachine
from fulfillment_service.schemas import Delivery, Order
from fulfillment_service.store import (
    fetch_delivery, fetch_delivery_for_order, fetch_driver, fetch_order, format_delivery, update_versioned,
)

logger = logging.getLogger("fulfillment-service.deliveries")
logger.setLevel(logging.INFO)

D = DeliveryStatus

# Order status that follows a delivery status.
ORDER_SYNC = {
    D.PICKED_UP: OrderStatus.PICKED_UP,
    D.IN_TRANSIT: OrderStatus.IN_TRANSIT,
    D.DELIVERED: OrderStatus.DELIVERED,
    D.FAILED: OrderStatus.FAILED,
    D.CANCELLED: OrderStatus.CANCELLED,
}

PRE_PICKUP_STATUSES = frozenset({D.DRIVER_ASSIGNED, D.DRIVER_ACCEPTED, D.AT_PICKUP})


class DeliveryStateMachine:
    """
    Owns one delivery's lifecycle, coupled 1:1 with its order.

    Lock order inside this class is delivery -> order -> driver. The driver
    lock is always the innermost one and never wraps another acquisition.
    """

    def __init__(self, db: Database, locks: EntityLocks, broadcaster: EventBroadcaster,
                 orders: OrderStateMachine, tracker=None, earnings: Optional[EarningsPolicy] = None,
                 assignment_timeout: float = ASSIGNMENT_TIMEOUT_SECONDS,
                 average_speed_kmh: float = AVERAGE_SPEED_KMH, eta_buffer: float = ETA_BUFFER_SECONDS):
        self.db = db
        self.locks = locks
        self.broadcaster = broadcaster
        self.orders = orders
        self.tracker = tracker
        self.earnings = earnings or DistanceEarningsPolicy()
        self.assignment_timeout = assignment_timeout
        self.average_speed_kmh = average_speed_kmh
        self.eta_buffer = eta_buffer

    # ------------------------- READS -------------------------
    async def get(self, delivery_id: str, with_points: bool = False) -> Delivery:
        return await fetch_delivery(self.db, delivery_id, with_points=with_points)

    async def list_for_driver(self, driver_id: str, status: Optional[str] = None) -> List[Delivery]:
        query = deliveries.select().where(deliveries.c.driver_id == driver_id)
        if status:
            query = query.where(deliveries.c.status == status)
        rows = await self.db.fetch_all(query.order_by(deliveries.c.created_at.desc()))
        return [format_delivery(row) for row in rows]

    # ------------------------- CREATION -------------------------
    async def create_for_order(self, order: Order, trace_id: Optional[str] = None) -> Delivery:
        existing = await fetch_delivery_for_order(self.db, order.id)
        if existing:
            return existing

        delivery_id = str(uuid.uuid4())
        now = utcnow()
        try:
            await self.db.execute(
                deliveries.insert().values(
                    id=delivery_id,
                    order_id=order.id,
                    driver_id=None,
                    status=D.PENDING.value,
                    pickup_address=order.pickup_address.model_dump(),
                    dropoff_address=order.dropoff_address.model_dump(),
                    tip_amount=0.0,
                    created_at=now,
                    updated_at=now,
                    version=1,
                )
            )
        except INTEGRITY_ERRORS:
            logger.info(f"[TRACE {trace_id}] Delivery for order {order.id} already exists")
            return await fetch_delivery_for_order(self.db, order.id)

        delivery = await fetch_delivery(self.db, delivery_id)
        await self.broadcaster.publish(
            DELIVERY_CREATED, delivery.model_dump(mode="json"),
            entity=f"delivery:{delivery_id}", scopes=delivery_scopes(delivery, order), trace_id=trace_id,
        )
        logger.info(f"[TRACE {trace_id}] 📦 Delivery {delivery_id} created for order {order.id}")
        return delivery

    # ------------------------- GENERIC TRANSITION -------------------------
    async def transition(self, delivery_id: str, target, expected_version: int,
                         reason: Optional[str] = None, trace_id: Optional[str] = None) -> Delivery:
        """Version-checked lattice step that needs no driver context."""
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            if delivery.version != expected_version:
                raise VersionConflict("delivery", delivery_id, expected_version, delivery.version)
            ensure_legal(EntityKind.DELIVERY, delivery.status, target)
            if D(target) == D.DRIVER_ASSIGNED:
                raise IllegalTransition("A driver can only be attached through assign()",
                                        from_status=delivery.status.value, to_status=D.DRIVER_ASSIGNED.value)
            updated, order = await self._apply(delivery, D(target), {}, reason, trace_id)
        await self._order_side_effects(order, trace_id)
        return updated

    async def start_search(self, delivery_id: str, trace_id: Optional[str] = None) -> Delivery:
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            if delivery.status != D.PENDING:
                return delivery
            updated, _ = await self._apply(delivery, D.SEARCHING_DRIVER, {}, None, trace_id)
        return updated

    # ------------------------- OFFERS -------------------------
    async def assign(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            return await self._assign_locked(delivery, driver_id, trace_id)

    async def driver_accept(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            self._check_offer(delivery, driver_id)
            if delivery.accept_deadline and utcnow() > delivery.accept_deadline:
                raise OfferExpired(f"Offer for delivery {delivery_id} expired at {delivery.accept_deadline.isoformat()}")
            updated, _ = await self._apply(delivery, D.DRIVER_ACCEPTED, {"accepted_at": utcnow()}, None, trace_id)
        logger.info(f"[TRACE {trace_id}] 🤝 Driver {driver_id} accepted delivery {delivery_id}")
        return updated

    async def driver_reject(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            self._check_offer(delivery, driver_id)
            return await self._withdraw_offer(delivery, "rejected", trace_id)

    async def expire_offer(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Optional[Delivery]:
        """Timer path. A no-op when the offer was already accepted or withdrawn."""
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            if delivery.status != D.DRIVER_ASSIGNED or delivery.driver_id != driver_id:
                return None
            return await self._withdraw_offer(delivery, "expired", trace_id)

    async def claim(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        """Self-assignment from the polling list: assign and accept in one exclusive section."""
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            assigned = await self._assign_locked(delivery, driver_id, trace_id)
            updated, _ = await self._apply(assigned, D.DRIVER_ACCEPTED, {"accepted_at": utcnow()}, None, trace_id)
        logger.info(f"[TRACE {trace_id}] 🙋 Driver {driver_id} claimed delivery {delivery_id}")
        return updated

    # ------------------------- DRIVER ACTIONS -------------------------
    async def record_arrival(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        return await self._driver_step(delivery_id, driver_id, D.AT_PICKUP, {}, trace_id)

    async def record_pickup(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        return await self._driver_step(delivery_id, driver_id, D.PICKED_UP, {"picked_up_at": utcnow()}, trace_id)

    async def start_transit(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        return await self._driver_step(delivery_id, driver_id, D.IN_TRANSIT, {}, trace_id)

    async def record_dropoff(self, delivery_id: str, driver_id: str, trace_id: Optional[str] = None) -> Delivery:
        return await self._driver_step(delivery_id, driver_id, D.AT_DROPOFF, {}, trace_id)

    async def complete(self, delivery_id: str, driver_id: str, final_earnings: Optional[float] = None,
                       tip: float = 0.0, trace_id: Optional[str] = None) -> Delivery:
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            self._check_driver(delivery, driver_id)
            earnings = final_earnings if final_earnings is not None else self.earnings.compute(delivery)
            values = {"delivered_at": utcnow(), "driver_earnings": round(earnings, 2), "tip_amount": round(tip, 2)}
            updated, order = await self._apply(delivery, D.DELIVERED, values, None, trace_id)
        await self._order_side_effects(order, trace_id)
        logger.info(f"[TRACE {trace_id}] 🏁 Delivery {delivery_id} delivered by {driver_id} (earnings={values['driver_earnings']}, tip={values['tip_amount']})")
        return updated

    async def fail(self, delivery_id: str, driver_id: str, reason: Optional[str] = None,
                   trace_id: Optional[str] = None) -> Delivery:
        return await self._driver_step(delivery_id, driver_id, D.FAILED, {"cancel_reason": reason}, trace_id, reason)

    async def cancel(self, delivery_id: str, reason: Optional[str] = None, trace_id: Optional[str] = None) -> Delivery:
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            updated, order = await self._apply(delivery, D.CANCELLED, {"cancel_reason": reason}, reason, trace_id)
        await self._order_side_effects(order, trace_id)
        return updated

    async def driver_action(self, delivery_id: str, driver_id: str, status, reason: Optional[str] = None,
                            trace_id: Optional[str] = None) -> Delivery:
        """Route a driver-reported status to its operation. Pay always comes from the earnings policy."""
        status = D(status)
        if status == D.AT_PICKUP:
            return await self.record_arrival(delivery_id, driver_id, trace_id)
        if status == D.PICKED_UP:
            return await self.record_pickup(delivery_id, driver_id, trace_id)
        if status == D.IN_TRANSIT:
            return await self.start_transit(delivery_id, driver_id, trace_id)
        if status == D.AT_DROPOFF:
            return await self.record_dropoff(delivery_id, driver_id, trace_id)
        if status == D.DELIVERED:
            return await self.complete(delivery_id, driver_id, trace_id=trace_id)
        if status == D.FAILED:
            return await self.fail(delivery_id, driver_id, reason, trace_id)
        raise IllegalTransition(f"Drivers cannot report status '{status.value}'", to_status=status.value)

    # ------------------------- ETA -------------------------
    async def estimate_eta(self, delivery_id: str) -> Optional[dict]:
        delivery = await fetch_delivery(self.db, delivery_id)
        if self.tracker is None or not delivery.driver_id or is_terminal(EntityKind.DELIVERY, delivery.status):
            return None
        position = self.tracker.get_last_known(delivery.driver_id)
        if position is None:
            return None

        if delivery.status in PRE_PICKUP_STATUSES:
            km = distance_km(position, delivery.pickup_address) + distance_km(delivery.pickup_address, delivery.dropoff_address)
            next_stop = "pickup"
        else:
            km = distance_km(position, delivery.dropoff_address)
            next_stop = "dropoff"
        seconds = km / self.average_speed_kmh * 3600 + self.eta_buffer
        return {
            "delivery_id": delivery_id,
            "next_stop": next_stop,
            "distance_km": round(km, 3),
            "eta_seconds": int(round(seconds)),
            "position_timestamp": position.timestamp.isoformat(),
            "position_flags": list(position.flags),
        }

    # ------------------------- INTERNALS -------------------------
    def _check_driver(self, delivery: Delivery, driver_id: str):
        if delivery.driver_id != driver_id:
            logger.warning(
                f"[INTEGRITY] Driver {driver_id} acted on delivery {delivery.id} held by {delivery.driver_id}"
            )
            raise DriverMismatch(f"Delivery {delivery.id} is not held by driver {driver_id}")

    def _check_offer(self, delivery: Delivery, driver_id: str):
        if delivery.driver_id is not None:
            self._check_driver(delivery, driver_id)
        if delivery.status != D.DRIVER_ASSIGNED:
            raise IllegalTransition(
                f"Delivery {delivery.id} has no open offer (status {delivery.status.value})",
                from_status=delivery.status.value,
            )

    async def _driver_step(self, delivery_id: str, driver_id: str, target: DeliveryStatus, values: dict,
                           trace_id: Optional[str], reason: Optional[str] = None) -> Delivery:
        async with self.locks.delivery(delivery_id):
            delivery = await fetch_delivery(self.db, delivery_id)
            self._check_driver(delivery, driver_id)
            updated, order = await self._apply(delivery, target, values, reason, trace_id)
        await self._order_side_effects(order, trace_id)
        return updated

    async def _assign_locked(self, delivery: Delivery, driver_id: str, trace_id: Optional[str]) -> Delivery:
        ensure_legal(EntityKind.DELIVERY, delivery.status, D.DRIVER_ASSIGNED)

        now = utcnow()
        deadline = now + timedelta(seconds=self.assignment_timeout)
        values = {"driver_id": driver_id, "assigned_at": now, "accept_deadline": deadline}
        try:
            await self._reserve_driver(driver_id, delivery.id)
            updated, _ = await self._apply(delivery, D.DRIVER_ASSIGNED, values, None, trace_id)
        except BaseException:
            # includes cancellation of the search task mid-assignment; a no-op
            # unless the driver was reserved for this delivery
            await self._release_driver(driver_id, delivery.id, touch_idle=False)
            raise

        order = await fetch_order(self.db, delivery.order_id)
        await self.broadcaster.publish(
            DELIVERY_OFFERED,
            {"delivery_id": delivery.id, "driver_id": driver_id, "offered_at": now.isoformat(),
             "deadline": deadline.isoformat(), "pickup_address": delivery.pickup_address.model_dump()},
            entity=f"delivery:{delivery.id}", scopes=delivery_scopes(updated, order), trace_id=trace_id,
        )
        return updated

    async def _withdraw_offer(self, delivery: Delivery, why: str, trace_id: Optional[str]) -> Delivery:
        # driver_assigned -> searching_driver lives outside the lattice tables;
        # reject and expiry are the only callers.
        if (delivery.status, D.SEARCHING_DRIVER) != OFFER_WITHDRAWAL:
            raise IllegalTransition(
                f"Delivery {delivery.id} has no offer to withdraw (status {delivery.status.value})",
                from_status=delivery.status.value, to_status=D.SEARCHING_DRIVER.value,
            )
        async with self.broadcaster.deferred(), self.db.transaction():
            await self._release_driver(delivery.driver_id, delivery.id, touch_idle=False)
            await update_versioned(
                self.db, deliveries, delivery.id, delivery.version,
                status=D.SEARCHING_DRIVER.value, driver_id=None, assigned_at=None, accept_deadline=None,
            )
            updated = await fetch_delivery(self.db, delivery.id)
            await self._publish_status(delivery, updated, why, trace_id)
        logger.info(f"[TRACE {trace_id}] ↩️ Offer of delivery {delivery.id} to {delivery.driver_id} {why}")
        return updated

    async def _apply(self, delivery: Delivery, target: DeliveryStatus, values: dict,
                     reason: Optional[str], trace_id: Optional[str]) -> Tuple[Delivery, Optional[Order]]:
        """
        One lattice step plus order sync, committed as a single transaction.
        The caller holds the delivery lock. Inside the transaction the driver
        lock is taken before the first write and nothing else waits on a lock.
        """
        ensure_legal(EntityKind.DELIVERY, delivery.status, target)

        async with self.locks.order(delivery.order_id):
            order = await fetch_order(self.db, delivery.order_id)
            order_target = self._order_target(delivery, target, order)

            values = dict(values, status=target.value)
            if target in (D.FAILED, D.CANCELLED):
                values["driver_id"] = None

            async with self.broadcaster.deferred(), self.db.transaction():
                if is_terminal(EntityKind.DELIVERY, target) and delivery.driver_id:
                    await self._release_driver(delivery.driver_id, delivery.id, touch_idle=True)
                await update_versioned(self.db, deliveries, delivery.id, delivery.version, **values)
                updated = await fetch_delivery(self.db, delivery.id)
                await self._publish_status(delivery, updated, reason, trace_id, order)

                synced = None
                if order_target is not None:
                    synced = await self.orders.transition_locked(order.id, order_target, order.version, reason, trace_id)
        return updated, synced

    def _order_target(self, delivery: Delivery, target: DeliveryStatus, order: Order) -> Optional[OrderStatus]:
        order_target = ORDER_SYNC.get(target)
        if order_target is None:
            return None
        if is_legal(EntityKind.ORDER, order.status, order_target):
            return order_target
        if target == D.CANCELLED:
            # order already terminal or past the point where it can be cancelled
            return None
        raise IllegalTransition(
            f"Delivery {delivery.id} cannot move to {target.value} while order {order.id} is {order.status.value}",
            from_status=delivery.status.value, to_status=target.value,
        )

    async def _publish_status(self, before: Delivery, after: Delivery, reason: Optional[str],
                              trace_id: Optional[str], order: Optional[Order] = None):
        if order is None:
            order = await fetch_order(self.db, after.order_id)
        DELIVERY_TRANSITIONS.labels(to_status=after.status.value).inc()
        await self.broadcaster.publish(
            DELIVERY_STATUS_CHANGED,
            {
                "delivery_id": after.id,
                "order_id": after.order_id,
                "from": before.status.value,
                "to": after.status.value,
                "driver_id": after.driver_id or before.driver_id,
                "version": after.version,
                "reason": reason,
            },
            entity=f"delivery:{after.id}",
            scopes=delivery_scopes(after, order, driver_id=before.driver_id),
            trace_id=trace_id,
            final=is_terminal(EntityKind.DELIVERY, after.status),
        )
        logger.info(f"[TRACE {trace_id}] Delivery {after.id}: {before.status.value} → {after.status.value}")

    async def _order_side_effects(self, order: Optional[Order], trace_id: Optional[str]):
        if order is not None:
            await self.orders.run_side_effects(order, trace_id)

    # ------------------------- DRIVER EXCLUSIVITY -------------------------
    async def _reserve_driver(self, driver_id: str, delivery_id: str):
        async with self.locks.driver(driver_id):
            driver = await fetch_driver(self.db, driver_id)
            if not driver.is_available or driver.active_delivery_id:
                raise DriverUnavailable(
                    f"Driver {driver_id} is not available (active delivery: {driver.active_delivery_id})"
                )
            await self.db.execute(
                drivers.update()
                .where((drivers.c.id == driver_id) & (drivers.c.active_delivery_id.is_(None)))
                .values(active_delivery_id=delivery_id)
            )

    async def _release_driver(self, driver_id: str, delivery_id: str, touch_idle: bool):
        values = {"active_delivery_id": None}
        if touch_idle:
            values["idle_since"] = utcnow()
        async with self.locks.driver(driver_id):
            await self.db.execute(
                drivers.update()
                .where((drivers.c.id == driver_id) & (drivers.c.active_delivery_id == delivery_id))
                .values(**values)
            )
