"""HTTP and WebSocket surface, end to end through FastAPI's TestClient."""
import time

import pytest
from databases import Database
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from fulfillment_service.main import create_app
from shared.auth import issue_token
from tests.conftest import DROPOFF, PICKUP, FakeGateway


def bearer(user_id, role, store_ids=None):
    return {"Authorization": f"Bearer {issue_token(user_id, role, store_ids)}"}


CUSTOMER = bearer("cust-1", "customer")
OTHER_CUSTOMER = bearer("cust-2", "customer")
STORE = bearer("staff-1", "store_staff", ["store-1"])
ADMIN = bearer("admin-1", "admin")
DRIVER = bearer("drv-a", "driver")

ORDER = {
    "tenant_id": "tenant-1",
    "store_id": "store-1",
    "customer_id": "cust-1",
    "items": [{"product_id": "sku-1", "quantity": 2, "unit_price": 20.0},
              {"product_id": "sku-2", "quantity": 1, "unit_price": 10.0}],
    "pickup_address": PICKUP,
    "dropoff_address": DROPOFF,
}


@pytest.fixture
def client(db_url):
    app = create_app(Database(db_url), gateway=FakeGateway(), init_schema=False,
                     assignment_timeout=30.0, max_rounds=1000, poll_interval=0.05)
    with TestClient(app) as client:
        yield client


def poll(fetch, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        value = fetch()
        if predicate(value):
            return value
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not met, last value: {value}")
        time.sleep(0.02)


def create_paid_order(client):
    order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
    response = client.post("/payments/capture", headers=CUSTOMER,
                           json={"order_id": order["id"], "gateway_payment_id": f"pi_{order['id'][:8]}",
                                 "amount": 50.0})
    assert response.status_code == 200
    return response.json()


class TestOps:
    def test_health(self, client):
        assert client.get("/health").json() == {"service": "fulfillment-service", "status": "healthy"}

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "order_transitions_total" in response.text


class TestAuth:
    def test_missing_token(self, client):
        assert client.post("/orders", json=ORDER).status_code == 401

    def test_customer_orders_for_themselves_only(self, client):
        assert client.post("/orders", json=ORDER, headers=OTHER_CUSTOMER).status_code == 403

    def test_drivers_cannot_order(self, client):
        assert client.post("/orders", json=ORDER, headers=DRIVER).status_code == 403

    def test_order_visible_to_owner_store_and_admin(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        for headers, expected in ((CUSTOMER, 200), (STORE, 200), (ADMIN, 200), (OTHER_CUSTOMER, 403),
                                  (bearer("staff-9", "store_staff", ["store-9"]), 403)):
            assert client.get(f"/orders/{order['id']}", headers=headers).status_code == expected

    def test_customer_may_only_cancel(self, client):
        order = create_paid_order(client)
        response = client.put(f"/orders/{order['id']}/status", headers=CUSTOMER,
                              json={"target_status": "preparing", "expected_version": order["version"]})
        assert response.status_code == 403

    def test_dispute_is_admin_only(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        response = client.post(f"/orders/{order['id']}/dispute", headers=STORE, json={"expected_version": 1})
        assert response.status_code == 403


class TestErrors:
    def test_unknown_order(self, client):
        response = client.get("/orders/nope", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_illegal_transition(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        response = client.put(f"/orders/{order['id']}/status", headers=STORE,
                              json={"target_status": "preparing", "expected_version": 1})
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATUS_TRANSITION"

    def test_confirm_without_payment(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        response = client.put(f"/orders/{order['id']}/status", headers=STORE,
                              json={"target_status": "confirmed", "expected_version": 1})
        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_NOT_CAPTURED"

    def test_version_conflict(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        response = client.put(f"/orders/{order['id']}/status", headers=CUSTOMER,
                              json={"target_status": "cancelled", "expected_version": 9})
        assert response.status_code == 409
        assert response.json()["current_version"] == 1

    def test_amount_mismatch(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        response = client.post("/payments/capture", headers=CUSTOMER,
                               json={"order_id": order["id"], "gateway_payment_id": "pi_x", "amount": 40.0})
        assert response.status_code == 422
        assert response.json()["code"] == "PAYMENT_AMOUNT_MISMATCH"
        order = client.get(f"/orders/{order['id']}", headers=CUSTOMER).json()
        assert order["status"] == "pending"
        assert order["needs_review"] is True


class TestListings:
    def test_customer_sees_only_their_orders(self, client):
        first = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        second = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        client.post("/orders", json=dict(ORDER, customer_id="cust-2"), headers=OTHER_CUSTOMER)

        page = client.get("/orders/my", headers=CUSTOMER).json()
        assert [o["id"] for o in page["items"]] == [second["id"], first["id"]]
        assert (page["total"], page["has_next"]) == (2, False)

        first_page = client.get("/orders/my", headers=CUSTOMER, params={"limit": 1}).json()
        assert [o["id"] for o in first_page["items"]] == [second["id"]]
        assert first_page["has_next"] is True

    def test_my_orders_filters_by_status(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        client.put(f"/orders/{order['id']}/status", headers=CUSTOMER,
                   json={"target_status": "cancelled", "expected_version": 1})
        client.post("/orders", json=ORDER, headers=CUSTOMER)

        cancelled = client.get("/orders/my", headers=CUSTOMER, params={"status": "cancelled"}).json()
        assert [o["id"] for o in cancelled["items"]] == [order["id"]]

    def test_my_orders_is_for_customers(self, client):
        assert client.get("/orders/my", headers=DRIVER).status_code == 403

    def test_store_dashboard_lists_store_orders(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        client.post("/orders", json=dict(ORDER, store_id="store-9"), headers=CUSTOMER)

        page = client.get("/orders/store/store-1", headers=STORE).json()
        assert [o["id"] for o in page["items"]] == [order["id"]]
        assert client.get("/orders/store/store-9", headers=ADMIN).json()["total"] == 1

    def test_store_dashboard_requires_membership(self, client):
        for headers in (STORE, CUSTOMER, bearer("staff-9", "store_staff", ["store-9"])):
            expected = 200 if headers is STORE else 403
            assert client.get("/orders/store/store-1", headers=headers).status_code == expected


class TestEndToEnd:
    def test_driver_cannot_set_own_pay(self, client):
        client.post("/drivers", headers=ADMIN, json={"id": "drv-a", "name": "Alex", "is_available": True,
                                                     "current_location": {"lat": 40.7130, "lng": -74.0050}})
        create_paid_order(client)
        offers = poll(lambda: client.get("/deliveries/available", headers=DRIVER).json(),
                      lambda body: body["offers"])
        delivery_id = offers["offers"][0]["id"]
        client.post(f"/deliveries/{delivery_id}/accept", headers=DRIVER)

        for extra in ({"earnings": 9999}, {"tip": 50}):
            response = client.put(f"/deliveries/{delivery_id}/status", headers=DRIVER,
                                  json={"status": "at_pickup", **extra})
            assert response.status_code == 422

        delivery = client.get(f"/deliveries/{delivery_id}", headers=ADMIN).json()["delivery"]
        assert delivery["status"] == "driver_accepted"
        assert delivery["driver_earnings"] is None

    def test_order_to_doorstep(self, client):
        driver = client.post("/drivers", headers=ADMIN, json={
            "id": "drv-a", "name": "Alex", "vehicle": "bike", "is_available": False,
            "current_location": {"lat": 40.7130, "lng": -74.0050},
        })
        assert driver.status_code == 201
        toggled = client.post("/deliveries/toggle-availability", headers=DRIVER, json={"is_available": True})
        assert toggled.json()["is_available"] is True

        order = create_paid_order(client)
        assert order["status"] == "confirmed"

        offers = poll(lambda: client.get("/deliveries/available", headers=DRIVER).json(),
                      lambda body: body["offers"])
        delivery_id = offers["offers"][0]["id"]
        accepted = client.post(f"/deliveries/{delivery_id}/accept", headers=DRIVER).json()
        assert accepted["status"] == "driver_accepted"

        order = client.get(f"/orders/{order['id']}", headers=STORE).json()
        for target in ("preparing", "ready_for_pickup"):
            order = client.put(f"/orders/{order['id']}/status", headers=STORE,
                               json={"target_status": target, "expected_version": order["version"]}).json()

        location = client.put("/deliveries/location", headers=DRIVER, json={"lat": 40.7129, "lng": -74.0059})
        assert location.json() == {"accepted": True, "flags": []}

        expected_order = {"at_pickup": "ready_for_pickup", "picked_up": "picked_up", "in_transit": "in_transit",
                          "at_dropoff": "in_transit", "delivered": "delivered"}
        for status, order_status in expected_order.items():
            response = client.put(f"/deliveries/{delivery_id}/status", headers=DRIVER, json={"status": status})
            assert response.status_code == 200, response.text
            assert response.json()["status"] == status
            assert client.get(f"/orders/{order['id']}", headers=CUSTOMER).json()["status"] == order_status

        view = client.get(f"/deliveries/{delivery_id}", headers=CUSTOMER).json()
        assert view["delivery"]["tip_amount"] == 0.0
        assert view["delivery"]["driver_earnings"] > 0
        assert view["eta"] is None

        mine = client.get("/deliveries/my", headers=DRIVER, params={"status": "delivered"}).json()
        assert [d["id"] for d in mine] == [delivery_id]
        assert client.get("/drivers/drv-a/location", headers=STORE).json()["lat"] == 40.7129

    def test_reject_and_admin_cancel(self, client):
        client.post("/drivers", headers=ADMIN, json={"id": "drv-a", "name": "Alex", "is_available": True,
                                                     "current_location": {"lat": 40.7130, "lng": -74.0050}})
        order = create_paid_order(client)
        offers = poll(lambda: client.get("/deliveries/available", headers=DRIVER).json(),
                      lambda body: body["offers"])
        delivery_id = offers["offers"][0]["id"]

        rejected = client.post(f"/deliveries/{delivery_id}/reject", headers=DRIVER).json()
        assert rejected["status"] == "searching_driver"

        assert client.put(f"/deliveries/{delivery_id}/status", headers=DRIVER,
                          json={"status": "cancelled"}).status_code == 403
        cancelled = client.put(f"/deliveries/{delivery_id}/status", headers=ADMIN,
                               json={"status": "cancelled", "reason": "duplicate order"})
        assert cancelled.json()["status"] == "cancelled"
        assert client.get(f"/orders/{order['id']}", headers=CUSTOMER).json()["status"] == "cancelled"

    def test_refund_by_store(self, client):
        order = create_paid_order(client)
        assert client.post("/payments/refund", headers=CUSTOMER, json={"order_id": order["id"]}).status_code == 403
        refunded = client.post("/payments/refund", headers=STORE,
                               json={"order_id": order["id"], "amount": 5.0, "reason": "late"}).json()
        assert refunded["payment_status"] == "partially_refunded"

    def test_webhook(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        event = {"id": "evt_1", "type": "payment_intent.succeeded",
                 "data": {"object": {"id": "pi_wh", "amount_received": 5000, "currency": "usd",
                                     "metadata": {"order_id": order["id"]}}}}
        assert client.post("/payments/webhook", json=event).json()["status"] == "processed"
        assert client.post("/payments/webhook", json=event).json()["status"] == "duplicate"
        assert client.get(f"/orders/{order['id']}", headers=CUSTOMER).json()["status"] == "confirmed"


class TestRealtime:
    def test_owner_receives_order_events(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        token = issue_token("cust-1", "customer")
        with client.websocket_connect(f"/ws/events?token={token}&scope=order:{order['id']}") as ws:
            client.put(f"/orders/{order['id']}/status", headers=CUSTOMER,
                       json={"target_status": "cancelled", "expected_version": 1})
            envelope = ws.receive_json()
            assert envelope["type"] == "order.status_changed"
            assert envelope["data"]["to"] == "cancelled"

            ws.send_text("ping")
            assert ws.receive_json() == {"type": "pong"}

    def test_foreign_scope_is_refused(self, client):
        order = client.post("/orders", json=ORDER, headers=CUSTOMER).json()
        token = issue_token("cust-2", "customer")
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/events?token={token}&scope=order:{order['id']}") as ws:
                ws.receive_json()

    def test_bad_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/events?token=garbage") as ws:
                ws.receive_json()
