# events.py
import asyncio
import json
import logging
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Set

import aioboto3

from fulfillment_service.config import (
    AWS_REGION, EVENTS_QUEUE_URL, EVENTS_RETIRED_ENTITIES, EVENTS_SUBSCRIBER_QUEUE_SIZE, USE_AWS,
)
from fulfillment_service.models import utcnow

logger = logging.getLogger("fulfillment-service.events")
logger.setLevel(logging.INFO)

session = aioboto3.Session()

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
ORDER_FLAGGED = "order.flagged"
PAYMENT_STATUS_CHANGED = "payment.status_changed"
DELIVERY_CREATED = "delivery.created"
DELIVERY_STATUS_CHANGED = "delivery.status_changed"
DELIVERY_OFFERED = "delivery.offered"
LOCATION_UPDATED = "location.updated"


def order_scopes(order) -> list:
    return [f"order:{order.id}", f"store:{order.store_id}", f"customer:{order.customer_id}"]


def delivery_scopes(delivery, order=None, driver_id: Optional[str] = None) -> list:
    scopes = [f"delivery:{delivery.id}", f"order:{delivery.order_id}"]
    if order is not None:
        scopes += [f"store:{order.store_id}", f"customer:{order.customer_id}"]
    holder = driver_id or delivery.driver_id
    if holder:
        scopes.append(f"driver:{holder}")
    return scopes


class Subscription:
    def __init__(self, scopes: Iterable[str], maxsize: int = EVENTS_SUBSCRIBER_QUEUE_SIZE):
        self.id = str(uuid.uuid4())
        self.scopes: Set[str] = set(scopes)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def matches(self, scopes: Iterable[str]) -> bool:
        return bool(self.scopes.intersection(scopes))

    def close(self):
        """Drop whatever is queued and leave a single ``None`` to tell the reader to stop."""
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class EventBroadcaster:
    """
    Fans lifecycle and location events out to subscribers.

    Every envelope carries a per-entity sequence number. Each subscription
    owns a single bounded FIFO queue, so events about one entity reach a
    subscriber in the order they were published. A subscriber whose queue
    fills up is closed; it reconnects and refetches state.

    Counters of entities published with ``final=True`` move to a bounded
    retired map, so a late event (a refund on a cancelled order) still
    continues the entity's sequence.
    """

    def __init__(self, use_aws: bool = USE_AWS, queue_url: Optional[str] = EVENTS_QUEUE_URL,
                 region: str = AWS_REGION, queue_size: int = EVENTS_SUBSCRIBER_QUEUE_SIZE,
                 retired_limit: int = EVENTS_RETIRED_ENTITIES):
        self.use_aws = use_aws and bool(queue_url)
        self.queue_url = queue_url
        self.region = region
        self.queue_size = queue_size
        self.retired_limit = retired_limit
        self._subscriptions: Set[Subscription] = set()
        self._sequences: Dict[str, int] = {}
        self._retired: "OrderedDict[str, int]" = OrderedDict()
        self._held: Dict[asyncio.Task, List[tuple]] = {}
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._forwarder: Optional[asyncio.Task] = None

    # ---- subscribers ----
    def subscribe(self, scopes: Iterable[str]) -> Subscription:
        subscription = Subscription(scopes, maxsize=self.queue_size)
        self._subscriptions.add(subscription)
        logger.info(f"[SUBSCRIBE] {subscription.id} scopes={sorted(subscription.scopes)}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        self._subscriptions.discard(subscription)

    # ---- publishing ----
    async def publish(self, event_type: str, data: dict, entity: str, scopes: Iterable[str],
                      trace_id: Optional[str] = None, final: bool = False) -> Optional[dict]:
        """
        Emit one event. ``final`` marks the entity as finished so its counter
        can be retired. Inside ``deferred()`` the event is held and ``None``
        is returned.
        """
        held = self._held.get(asyncio.current_task())
        if held is not None:
            held.append((event_type, data, entity, list(scopes), trace_id, final))
            return None
        return self._emit(event_type, data, entity, list(scopes), trace_id, final)

    @asynccontextmanager
    async def deferred(self):
        """
        Hold this task's publishes until the block exits cleanly, then emit
        them in order. Events from a block that raises are dropped, so wrap a
        DB transaction in it: ``async with broadcaster.deferred(), db.transaction():``.
        """
        task = asyncio.current_task()
        if task in self._held:
            yield
            return

        held = self._held[task] = []
        try:
            yield
        finally:
            self._held.pop(task, None)
        for args in held:
            self._emit(*args)

    def _next_sequence(self, entity: str, final: bool) -> int:
        sequence = self._sequences.pop(entity, None)
        if sequence is None:
            sequence = self._retired.pop(entity, 0)
        sequence += 1
        if final:
            self._retired[entity] = sequence
            while len(self._retired) > self.retired_limit:
                self._retired.popitem(last=False)
        else:
            self._sequences[entity] = sequence
        return sequence

    def _emit(self, event_type: str, data: dict, entity: str, scopes: List[str],
              trace_id: Optional[str], final: bool) -> dict:
        envelope = {
            "type": event_type,
            "event_id": str(uuid.uuid4()),
            "entity": entity,
            "sequence": self._next_sequence(entity, final),
            "data": data,
            "trace_id": trace_id,
            "timestamp": utcnow().isoformat(),
        }

        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.matches(scopes):
                continue
            try:
                subscription.queue.put_nowait(envelope)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"[SUBSCRIBE] {subscription.id} fell {self.queue_size} events behind, closing it")
                self.unsubscribe(subscription)
                subscription.close()

        if self.use_aws:
            self._outbox.put_nowait(envelope)
        else:
            logger.info(f"[LOCAL EVENT] {event_type} {entity}#{envelope['sequence']} → {delivered} subscriber(s)")
        return envelope

    # ---- SQS forwarding ----
    async def start(self):
        if self.use_aws and self._forwarder is None:
            self._forwarder = asyncio.create_task(self._forward_loop())
            logger.info(f"🚀 Forwarding events to SQS queue {self.queue_url}")

    async def stop(self):
        if self._forwarder is not None:
            self._forwarder.cancel()
            await asyncio.gather(self._forwarder, return_exceptions=True)
            self._forwarder = None

    async def _forward_loop(self):
        fifo = self.queue_url.endswith(".fifo")
        async with session.client("sqs", region_name=self.region) as sqs:
            while True:
                envelope = await self._outbox.get()
                kwargs = {"QueueUrl": self.queue_url, "MessageBody": json.dumps(envelope, default=str)}
                if fifo:
                    # one message group per entity keeps SQS delivery ordered per entity
                    kwargs["MessageGroupId"] = envelope["entity"]
                    kwargs["MessageDeduplicationId"] = envelope["event_id"]
                try:
                    await sqs.send_message(**kwargs)
                    logger.info(f"[SQS] {envelope['type']} event_id={envelope['event_id']}")
                except Exception as e:
                    logger.warning(f"[SQS ERROR] {envelope['type']} event_id={envelope['event_id']}: {e}")
