import asyncio
import json
import uuid

import pytest
from databases import Database

from fulfillment_service.database import init_db
from fulfillment_service.events import EventBroadcaster
from fulfillment_service.payments import GatewayPayment, PaymentGateway
from fulfillment_service.schemas import Address, DriverCreate, OrderCreate, OrderItem
from fulfillment_service.service import FulfillmentService

PICKUP = {"line": "1 Market St", "lat": 40.7128, "lng": -74.0060}
DROPOFF = {"line": "200 Broadway", "lat": 40.7306, "lng": -73.9866}


class FakeGateway(PaymentGateway):
    """Gateway double: reports whatever the test configures and records refunds."""

    def __init__(self):
        self.status = "succeeded"
        self.amount = None
        self.currency = None
        self.retrieved = []
        self.refunds = []

    async def retrieve(self, payment_id, reported_amount=None, reported_currency=None):
        self.retrieved.append(payment_id)
        amount = self.amount if self.amount is not None else reported_amount
        currency = self.currency or reported_currency
        return GatewayPayment(id=payment_id, status=self.status, amount=amount, currency=currency)

    async def refund(self, payment_id, amount, reason=None):
        self.refunds.append({"payment_id": payment_id, "amount": amount, "reason": reason})
        return f"re_test_{len(self.refunds)}"

    def parse_webhook(self, payload, signature):
        return json.loads(payload)


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}"
    init_db(url)
    return url


@pytest.fixture
async def db(db_url):
    database = Database(db_url)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def broadcaster():
    return EventBroadcaster(use_aws=False)


@pytest.fixture
async def make_service(db, gateway, broadcaster):
    started = []

    async def factory(dispatch: bool = True, **options):
        settings = dict(assignment_timeout=5.0, search_timeout=30.0, max_rounds=3, poll_interval=0.05)
        settings.update(options)
        service = FulfillmentService(db, gateway=gateway, broadcaster=broadcaster, **settings)
        if not dispatch:
            service.orders.on_confirmed = None
        await service.start()
        started.append(service)
        return service

    yield factory
    for service in started:
        await service.stop()


@pytest.fixture
async def service(make_service):
    """Pipeline with dispatch detached, for driving deliveries by hand."""
    return await make_service(dispatch=False)


def order_payload(customer_id="cust-1", store_id="store-1", **overrides) -> OrderCreate:
    data = dict(
        tenant_id="tenant-1",
        store_id=store_id,
        customer_id=customer_id,
        items=[OrderItem(product_id="sku-1", quantity=2, unit_price=20.0),
               OrderItem(product_id="sku-2", quantity=1, unit_price=10.0)],
        pickup_address=Address(**PICKUP),
        dropoff_address=Address(**DROPOFF),
    )
    data.update(overrides)
    return OrderCreate(**data)


async def add_driver(service, driver_id=None, lat=40.7130, lng=-74.0050, available=True, **extra):
    return await service.register_driver(DriverCreate(
        id=driver_id or f"drv-{uuid.uuid4().hex[:6]}",
        name=extra.pop("name", "Test Driver"),
        is_available=available,
        current_location=Address(lat=lat, lng=lng),
        **extra,
    ))


async def paid_order(service, **overrides):
    """Create an order and capture its $50 payment."""
    order = await service.orders.create(order_payload(**overrides))
    return await service.payments.confirm_capture(order.id, f"pi_{uuid.uuid4().hex[:10]}", amount=order.total)


async def searching_delivery(service, **overrides):
    """A paid order whose delivery is searching, with no search task attached."""
    order = await paid_order(service, **overrides)
    delivery = await service.deliveries.create_for_order(order)
    delivery = await service.deliveries.start_search(delivery.id)
    return order, delivery


async def wait_for(check, timeout=5.0, interval=0.02):
    """Poll an async predicate until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await check()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
