# orders.py
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, Tuple

from databases import Database
from sqlalchemy import func, select

from fulfillment_service.errors import IllegalTransition, PaymentRequired, VersionConflict
from fulfillment_service.events import (
    EventBroadcaster, ORDER_CREATED, ORDER_FLAGGED, ORDER_STATUS_CHANGED, order_scopes,
)
from fulfillment_service.lattice import (
    DISPUTE_ENTRY, EntityKind, OrderStatus, PaymentStatus, ensure_legal, is_terminal,
)
from fulfillment_service.locks import EntityLocks
from fulfillment_service.metrics import ORDER_TRANSITIONS
from fulfillment_service.models import orders, utcnow
from fulfillment_service.schemas import Order, OrderCreate
from fulfillment_service.store import fetch_order, format_order, update_versioned

logger = logging.getLogger("fulfillment-service.orders")
logger.setLevel(logging.INFO)

OrderHook = Callable[[Order, Optional[str]], Awaitable[None]]


class OrderStateMachine:
    """
    Owns the order lifecycle. Every write happens under the order's lock and
    is stamped with the version the caller read.

    ``on_confirmed`` and ``on_cancelled`` run after the lock is released; the
    dispatch engine hooks into them to create or stop a delivery search.
    """

    def __init__(self, db: Database, locks: EntityLocks, broadcaster: EventBroadcaster):
        self.db = db
        self.locks = locks
        self.broadcaster = broadcaster
        self.on_confirmed: Optional[OrderHook] = None
        self.on_cancelled: Optional[OrderHook] = None

    async def get(self, order_id: str) -> Order:
        return await fetch_order(self.db, order_id)

    async def list_orders(self, customer_id: Optional[str] = None, store_id: Optional[str] = None,
                          status: Optional[str] = None, page: int = 1, limit: int = 20) -> Tuple[List[Order], int]:
        """Newest first. Returns one page and the total number of matches."""
        conditions = []
        if customer_id:
            conditions.append(orders.c.customer_id == customer_id)
        if store_id:
            conditions.append(orders.c.store_id == store_id)
        if status:
            conditions.append(orders.c.status == OrderStatus(status).value)

        query = orders.select().where(*conditions).order_by(orders.c.created_at.desc(), orders.c.id)
        rows = await self.db.fetch_all(query.limit(limit).offset((page - 1) * limit))
        total = await self.db.fetch_val(select(func.count()).select_from(orders).where(*conditions))
        return [format_order(row) for row in rows], total

    async def create(self, data: OrderCreate, trace_id: Optional[str] = None) -> Order:
        order_id = str(uuid.uuid4())
        now = utcnow()
        total = round(sum(item.line_total for item in data.items), 2)

        await self.db.execute(
            orders.insert().values(
                id=order_id,
                tenant_id=data.tenant_id,
                store_id=data.store_id,
                customer_id=data.customer_id,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                items=[item.model_dump() for item in data.items],
                total=total,
                currency=data.currency.lower(),
                pickup_address=data.pickup_address.model_dump(),
                dropoff_address=data.dropoff_address.model_dump(),
                gateway_payment_id=None,
                captured_amount=0.0,
                refunded_amount=0.0,
                needs_review=False,
                review_reason=None,
                dispatch_requested=False,
                cancel_reason=None,
                created_at=now,
                updated_at=now,
                version=1,
            )
        )
        order = await fetch_order(self.db, order_id)
        await self.broadcaster.publish(
            ORDER_CREATED, order.model_dump(mode="json"),
            entity=f"order:{order_id}", scopes=order_scopes(order), trace_id=trace_id,
        )
        logger.info(f"[TRACE {trace_id}] ✅ Order {order_id} created for customer {data.customer_id} (total={total})")
        return order

    async def transition(self, order_id: str, target, expected_version: int,
                         reason: Optional[str] = None, trace_id: Optional[str] = None) -> Order:
        async with self.locks.order(order_id):
            order = await self.transition_locked(order_id, target, expected_version, reason, trace_id)
        await self.run_side_effects(order, trace_id)
        return order

    async def transition_locked(self, order_id: str, target, expected_version: int,
                                reason: Optional[str] = None, trace_id: Optional[str] = None) -> Order:
        """Apply one lattice step. The caller must hold ``locks.order(order_id)``."""
        order = await fetch_order(self.db, order_id)
        if order.version != expected_version:
            raise VersionConflict("order", order_id, expected_version, order.version)

        ensure_legal(EntityKind.ORDER, order.status, target)
        target = OrderStatus(target)
        if target == OrderStatus.CONFIRMED and order.payment_status != PaymentStatus.CAPTURED:
            raise PaymentRequired(
                f"Order {order_id} cannot be confirmed before payment is captured",
                from_status=order.status.value, to_status=target.value,
            )

        values = {"status": target.value}
        if target == OrderStatus.CONFIRMED:
            values["dispatch_requested"] = True
        if target == OrderStatus.CANCELLED:
            values["cancel_reason"] = reason

        return await self._write_status(order, target, values, reason, trace_id)

    async def open_dispute(self, order_id: str, expected_version: int,
                           reason: Optional[str] = None, trace_id: Optional[str] = None) -> Order:
        """Administrative entry into ``disputed``; only a delivered order qualifies."""
        async with self.locks.order(order_id):
            order = await fetch_order(self.db, order_id)
            if order.version != expected_version:
                raise VersionConflict("order", order_id, expected_version, order.version)
            if (order.status, OrderStatus.DISPUTED) != DISPUTE_ENTRY:
                raise IllegalTransition(
                    f"Only delivered orders can be disputed (order {order_id} is {order.status.value})",
                    from_status=order.status.value, to_status=OrderStatus.DISPUTED.value,
                )
            return await self._write_status(
                order, OrderStatus.DISPUTED, {"status": OrderStatus.DISPUTED.value}, reason, trace_id,
            )

    async def flag_for_review(self, order_id: str, reason: str, trace_id: Optional[str] = None) -> Order:
        async with self.locks.order(order_id):
            order = await fetch_order(self.db, order_id)
            return await self.flag_locked(order, reason, trace_id)

    async def flag_locked(self, order: Order, reason: str, trace_id: Optional[str] = None) -> Order:
        """Mark an order for manual review. The caller holds the order lock."""
        await self.db.execute(
            orders.update().where(orders.c.id == order.id).values(needs_review=True, review_reason=reason)
        )
        flagged = await fetch_order(self.db, order.id)
        await self.broadcaster.publish(
            ORDER_FLAGGED, {"order_id": order.id, "reason": reason},
            entity=f"order:{order.id}", scopes=order_scopes(flagged), trace_id=trace_id,
        )
        logger.warning(f"[TRACE {trace_id}] 🚩 Order {order.id} flagged for review: {reason}")
        return flagged

    async def run_side_effects(self, order: Order, trace_id: Optional[str] = None):
        """Hooks for a transition that has been committed. Runs without the order lock."""
        if order.status == OrderStatus.CONFIRMED and self.on_confirmed:
            await self.on_confirmed(order, trace_id)
        elif order.status == OrderStatus.CANCELLED and self.on_cancelled:
            await self.on_cancelled(order, trace_id)

    async def _write_status(self, order: Order, target: OrderStatus, values: dict,
                            reason: Optional[str], trace_id: Optional[str]) -> Order:
        await update_versioned(self.db, orders, order.id, order.version, **values)
        updated = await fetch_order(self.db, order.id)

        ORDER_TRANSITIONS.labels(to_status=target.value).inc()
        await self.broadcaster.publish(
            ORDER_STATUS_CHANGED,
            {
                "order_id": order.id,
                "from": order.status.value,
                "to": target.value,
                "version": updated.version,
                "reason": reason,
            },
            entity=f"order:{order.id}", scopes=order_scopes(updated), trace_id=trace_id,
            final=is_terminal(EntityKind.ORDER, target),
        )
        logger.info(f"[TRACE {trace_id}] Order {order.id}: {order.status.value} → {target.value}")
        return updated
