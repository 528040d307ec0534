"""
Status lattice for orders and deliveries.

Both tables are closed: every status of an entity kind has an entry, and a
move not listed here is illegal. There is no catch-all branch.
"""
from enum import Enum
from typing import Dict, FrozenSet

from fulfillment_service.errors import IllegalTransition


class EntityKind(str, Enum):
    ORDER = "order"
    DELIVERY = "delivery"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    RESOLVED = "resolved"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SEARCHING_DRIVER = "searching_driver"
    DRIVER_ASSIGNED = "driver_assigned"
    DRIVER_ACCEPTED = "driver_accepted"
    AT_PICKUP = "at_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    AT_DROPOFF = "at_dropoff"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


O, D = OrderStatus, DeliveryStatus

ORDER_STATUS_FLOW: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    O.PENDING: frozenset({O.CONFIRMED, O.CANCELLED}),
    O.CONFIRMED: frozenset({O.PREPARING, O.CANCELLED}),
    O.PREPARING: frozenset({O.READY_FOR_PICKUP, O.CANCELLED}),
    O.READY_FOR_PICKUP: frozenset({O.PICKED_UP, O.CANCELLED}),
    O.PICKED_UP: frozenset({O.IN_TRANSIT}),
    O.IN_TRANSIT: frozenset({O.DELIVERED, O.FAILED}),
    O.DELIVERED: frozenset(),
    O.FAILED: frozenset(),
    O.CANCELLED: frozenset(),
    O.REFUNDED: frozenset(),
    O.DISPUTED: frozenset({O.RESOLVED}),
    O.RESOLVED: frozenset(),
}

DELIVERY_STATUS_FLOW: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
    D.PENDING: frozenset({D.SEARCHING_DRIVER, D.CANCELLED}),
    D.SEARCHING_DRIVER: frozenset({D.DRIVER_ASSIGNED, D.CANCELLED}),
    D.DRIVER_ASSIGNED: frozenset({D.DRIVER_ACCEPTED, D.CANCELLED}),
    D.DRIVER_ACCEPTED: frozenset({D.AT_PICKUP, D.CANCELLED}),
    D.AT_PICKUP: frozenset({D.PICKED_UP, D.CANCELLED}),
    D.PICKED_UP: frozenset({D.IN_TRANSIT, D.CANCELLED}),
    D.IN_TRANSIT: frozenset({D.AT_DROPOFF, D.FAILED}),
    D.AT_DROPOFF: frozenset({D.DELIVERED, D.FAILED}),
    D.DELIVERED: frozenset(),
    D.FAILED: frozenset(),
    D.CANCELLED: frozenset(),
}

_FLOWS = {
    EntityKind.ORDER: (OrderStatus, ORDER_STATUS_FLOW),
    EntityKind.DELIVERY: (DeliveryStatus, DELIVERY_STATUS_FLOW),
}

for _enum, _flow in _FLOWS.values():
    if set(_flow) != set(_enum):
        raise RuntimeError(f"{_enum.__name__} flow is not exhaustive")

# Statuses in which a delivery holds a driver.
DRIVER_HOLDING_STATUSES = frozenset({
    D.DRIVER_ASSIGNED, D.DRIVER_ACCEPTED, D.AT_PICKUP, D.PICKED_UP,
    D.IN_TRANSIT, D.AT_DROPOFF, D.DELIVERED,
})

# The two moves that exist outside the tables. Each is reachable only through
# its own operation (offer withdrawal, dispute entry), never via transition().
OFFER_WITHDRAWAL = (D.DRIVER_ASSIGNED, D.SEARCHING_DRIVER)
DISPUTE_ENTRY = (O.DELIVERED, O.DISPUTED)


def _coerce(kind: EntityKind, status):
    enum, _ = _FLOWS[EntityKind(kind)]
    try:
        return enum(status)
    except ValueError:
        raise IllegalTransition(f"Unknown {EntityKind(kind).value} status '{status}'")


def allowed_next(kind: EntityKind, current) -> FrozenSet:
    _, flow = _FLOWS[EntityKind(kind)]
    return flow[_coerce(kind, current)]


def is_terminal(kind: EntityKind, current) -> bool:
    return not allowed_next(kind, current)


def is_legal(kind: EntityKind, from_status, to_status) -> bool:
    try:
        target = _coerce(kind, to_status)
        return target in allowed_next(kind, from_status)
    except IllegalTransition:
        return False


def ensure_legal(kind: EntityKind, from_status, to_status) -> None:
    if not is_legal(kind, from_status, to_status):
        raise IllegalTransition(
            f"Cannot transition {EntityKind(kind).value} from {from_status} to {to_status}",
            from_status=str(getattr(from_status, "value", from_status)),
            to_status=str(getattr(to_status, "value", to_status)),
        )
