# locks.py
import asyncio
import weakref


class EntityLocks:
    """
    One asyncio.Lock per (kind, id). Locks are weakly held, so an entity
    nobody is waiting on does not keep its lock alive.

    Acquisition order is delivery -> order -> driver. The driver lock is a
    leaf, and an order lock is never held while a delivery lock is acquired.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get(self, kind: str, entity_id: str) -> asyncio.Lock:
        key = (kind, entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def order(self, order_id: str) -> asyncio.Lock:
        return self._get("order", order_id)

    def delivery(self, delivery_id: str) -> asyncio.Lock:
        return self._get("delivery", delivery_id)

    def driver(self, driver_id: str) -> asyncio.Lock:
        return self._get("driver", driver_id)
