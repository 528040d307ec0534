"""PaymentReconciler: idempotent capture, amount checks, refunds, webhooks."""
import asyncio
import json

import pytest

from fulfillment_service.errors import (
    IllegalTransition, PaymentAmountMismatch, PaymentConflict, PaymentNotCaptured, RefundNotAllowed,
)
from fulfillment_service import payments as payments_module
from fulfillment_service.events import ORDER_STATUS_CHANGED, PAYMENT_STATUS_CHANGED
from fulfillment_service.lattice import OrderStatus, PaymentStatus
from fulfillment_service.models import payment_captures, refunds
from fulfillment_service.payments import LocalGateway, PaymentGateway
from fulfillment_service.store import fetch_delivery_for_order
from tests.conftest import order_payload, paid_order


def drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


def webhook(event_id, event_type, order_id, payment_id="pi_hook", amount_cents=5000, **extra):
    intent = {"id": payment_id, "amount": amount_cents, "amount_received": amount_cents, "currency": "usd",
              "metadata": {"order_id": order_id}, **extra}
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": intent}}).encode()


class TestConfirmCapture:
    async def test_capture_confirms_order(self, service):
        order = await service.orders.create(order_payload())
        confirmed = await service.payments.confirm_capture(order.id, "pi_1", amount=50.0, currency="usd")
        assert confirmed.status == OrderStatus.CONFIRMED
        assert confirmed.payment_status == PaymentStatus.CAPTURED
        assert confirmed.gateway_payment_id == "pi_1"
        assert confirmed.captured_amount == 50.0

    async def test_capture_is_idempotent(self, service, broadcaster):
        order = await service.orders.create(order_payload())
        subscription = broadcaster.subscribe([f"order:{order.id}"])

        first = await service.payments.confirm_capture(order.id, "pi_1", amount=50.0)
        second = await service.payments.confirm_capture(order.id, "pi_1", amount=50.0)

        assert first.version == second.version
        rows = await service.db.fetch_all(payment_captures.select())
        assert len(rows) == 1
        confirmations = [e for e in drain(subscription)
                         if e["type"] == ORDER_STATUS_CHANGED and e["data"]["to"] == "confirmed"]
        assert len(confirmations) == 1

    async def test_concurrent_duplicate_captures(self, service):
        order = await service.orders.create(order_payload())
        results = await asyncio.gather(*[
            service.payments.confirm_capture(order.id, "pi_1", amount=50.0) for _ in range(3)
        ])
        assert {r.status for r in results} == {OrderStatus.CONFIRMED}
        rows = await service.db.fetch_all(payment_captures.select())
        assert len(rows) == 1

    async def test_amount_mismatch_flags_order(self, make_service):
        service = await make_service()
        order = await service.orders.create(order_payload())
        with pytest.raises(PaymentAmountMismatch):
            await service.payments.confirm_capture(order.id, "pi_short", amount=40.0)

        order = await service.orders.get(order.id)
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.needs_review is True
        assert await fetch_delivery_for_order(service.db, order.id) is None
        assert await service.db.fetch_all(payment_captures.select()) == []

    async def test_amount_compared_to_the_cent(self, service):
        order = await service.orders.create(order_payload())
        confirmed = await service.payments.confirm_capture(order.id, "pi_1", amount=50.001)
        assert confirmed.status == OrderStatus.CONFIRMED

    async def test_currency_mismatch(self, service):
        order = await service.orders.create(order_payload())
        with pytest.raises(PaymentAmountMismatch):
            await service.payments.confirm_capture(order.id, "pi_1", amount=50.0, currency="eur")

    async def test_gateway_amount_wins_over_reported(self, service, gateway):
        gateway.amount = 12.0
        order = await service.orders.create(order_payload())
        with pytest.raises(PaymentAmountMismatch):
            await service.payments.confirm_capture(order.id, "pi_1", amount=50.0)

    async def test_unsucceeded_payment(self, service, gateway):
        gateway.status = "requires_payment_method"
        order = await service.orders.create(order_payload())
        with pytest.raises(PaymentNotCaptured):
            await service.payments.confirm_capture(order.id, "pi_1", amount=50.0)
        assert (await service.orders.get(order.id)).status == OrderStatus.PENDING

    async def test_second_payment_for_paid_order(self, service):
        order = await paid_order(service)
        with pytest.raises(PaymentConflict):
            await service.payments.confirm_capture(order.id, "pi_other", amount=50.0)

    async def test_payment_reused_for_another_order(self, service):
        first = await service.orders.create(order_payload())
        second = await service.orders.create(order_payload())
        await service.payments.confirm_capture(first.id, "pi_1", amount=50.0)
        with pytest.raises(PaymentConflict):
            await service.payments.confirm_capture(second.id, "pi_1", amount=50.0)

    async def test_cancelled_order_cannot_be_captured(self, service):
        order = await service.orders.create(order_payload())
        await service.orders.transition(order.id, OrderStatus.CANCELLED, 1)
        with pytest.raises(IllegalTransition):
            await service.payments.confirm_capture(order.id, "pi_1", amount=50.0)

    async def test_failed_confirmation_rolls_back_capture(self, service, broadcaster, monkeypatch):
        order = await service.orders.create(order_payload())
        subscription = broadcaster.subscribe([f"order:{order.id}"])

        async def unavailable(*args, **kwargs):
            raise ConnectionError("database went away")

        monkeypatch.setattr(service.orders, "transition_locked", unavailable)
        with pytest.raises(ConnectionError):
            await service.payments.confirm_capture(order.id, "pi_1", amount=50.0)

        stuck = await service.orders.get(order.id)
        assert stuck.status == OrderStatus.PENDING
        assert stuck.payment_status == PaymentStatus.PENDING
        assert stuck.version == order.version
        assert await service.db.fetch_all(payment_captures.select()) == []
        assert [e["type"] for e in drain(subscription)] == []

        monkeypatch.undo()
        confirmed = await service.payments.confirm_capture(order.id, "pi_1", amount=50.0)
        assert confirmed.status == OrderStatus.CONFIRMED
        assert confirmed.payment_status == PaymentStatus.CAPTURED
        assert [e["type"] for e in drain(subscription)] == [PAYMENT_STATUS_CHANGED, ORDER_STATUS_CHANGED]


class TestRefund:
    async def test_partial_then_full(self, service, gateway):
        order = await paid_order(service)

        partial = await service.payments.refund(order.id, amount=20.0, reason="damaged item")
        assert partial.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        assert partial.refunded_amount == 20.0
        assert partial.status == OrderStatus.CONFIRMED

        full = await service.payments.refund(order.id)
        assert full.payment_status == PaymentStatus.REFUNDED
        assert full.refunded_amount == 50.0
        assert full.status == OrderStatus.CONFIRMED

        assert [r["amount"] for r in gateway.refunds] == [20.0, 30.0]
        assert len(await service.db.fetch_all(refunds.select())) == 2

        with pytest.raises(RefundNotAllowed):
            await service.payments.refund(order.id)

    async def test_refund_before_capture(self, service):
        order = await service.orders.create(order_payload())
        with pytest.raises(RefundNotAllowed):
            await service.payments.refund(order.id)

    async def test_refund_above_captured(self, service, gateway):
        order = await paid_order(service)
        with pytest.raises(RefundNotAllowed):
            await service.payments.refund(order.id, amount=60.0)
        assert gateway.refunds == []

    async def test_failed_refund_write_leaves_order_untouched(self, service, broadcaster, monkeypatch):
        order = await paid_order(service)
        subscription = broadcaster.subscribe([f"order:{order.id}"])

        async def unavailable(*args, **kwargs):
            raise ConnectionError("database went away")

        monkeypatch.setattr(payments_module, "update_versioned", unavailable)
        with pytest.raises(ConnectionError):
            await service.payments.refund(order.id, amount=20.0)

        unchanged = await service.orders.get(order.id)
        assert unchanged.payment_status == PaymentStatus.CAPTURED
        assert unchanged.refunded_amount == 0.0
        assert await service.db.fetch_all(refunds.select()) == []
        assert drain(subscription) == []


class TestFailureAndWebhooks:
    async def test_record_failure(self, service):
        order = await service.orders.create(order_payload())
        failed = await service.payments.record_failure(order.id, "pi_1", "card declined")
        assert failed.payment_status == PaymentStatus.FAILED
        assert failed.status == OrderStatus.PENDING

        retried = await service.payments.confirm_capture(order.id, "pi_2", amount=50.0)
        assert retried.status == OrderStatus.CONFIRMED

    async def test_succeeded_webhook_is_processed_once(self, service):
        order = await service.orders.create(order_payload())
        payload = webhook("evt_1", "payment_intent.succeeded", order.id)

        assert (await service.payments.handle_webhook(payload, None))["status"] == "processed"
        assert (await service.payments.handle_webhook(payload, None))["status"] == "duplicate"
        assert (await service.orders.get(order.id)).status == OrderStatus.CONFIRMED
        assert len(await service.db.fetch_all(payment_captures.select())) == 1

    async def test_failed_webhook(self, service):
        order = await service.orders.create(order_payload())
        payload = webhook("evt_2", "payment_intent.payment_failed", order.id,
                          last_payment_error={"message": "insufficient funds"})
        result = await service.payments.handle_webhook(payload, None)
        assert result["status"] == "processed"
        assert (await service.orders.get(order.id)).payment_status == PaymentStatus.FAILED

    async def test_mismatched_webhook_is_rejected_not_retried(self, service):
        order = await service.orders.create(order_payload())
        payload = webhook("evt_3", "payment_intent.succeeded", order.id, amount_cents=4000)
        result = await service.payments.handle_webhook(payload, None)
        assert result["status"] == "rejected"
        assert result["code"] == "PAYMENT_AMOUNT_MISMATCH"
        assert (await service.orders.get(order.id)).needs_review is True

    async def test_unrelated_event_is_ignored(self, service):
        payload = json.dumps({"id": "evt_4", "type": "charge.updated", "data": {"object": {"id": "ch_1"}}}).encode()
        assert (await service.payments.handle_webhook(payload, None))["status"] == "ignored"


class TestLocalGateway:
    async def test_trusts_reported_amount(self):
        payment = await LocalGateway().retrieve("pi_1", 12.5, "usd")
        assert payment.status == "succeeded"
        assert payment.amount == 12.5

    async def test_refund_ids_are_unique(self):
        gateway = LocalGateway()
        assert await gateway.refund("pi_1", 1.0) != await gateway.refund("pi_1", 1.0)

    def test_gateway_interface_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            PaymentGateway()

        class RetrieveOnly(PaymentGateway):
            async def retrieve(self, payment_id, reported_amount=None, reported_currency=None):
                return None

        with pytest.raises(TypeError):
            RetrieveOnly()
