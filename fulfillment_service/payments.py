# payments.py
import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import stripe
from databases import Database

from fulfillment_service.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, USE_STRIPE
from fulfillment_service.database import INTEGRITY_ERRORS
from fulfillment_service.errors import (
    IllegalTransition, InvalidWebhook, PaymentAmountMismatch, PaymentConflict, PaymentNotCaptured,
    RefundNotAllowed,
)
from fulfillment_service.events import PAYMENT_STATUS_CHANGED, EventBroadcaster, order_scopes
from fulfillment_service.lattice import EntityKind, OrderStatus, PaymentStatus, is_terminal
from fulfillment_service.locks import EntityLocks
from fulfillment_service.metrics import PAYMENT_CAPTURES
from fulfillment_service.models import orders, payment_captures, processed_events, refunds, utcnow
from fulfillment_service.orders import OrderStateMachine
from fulfillment_service.schemas import Order
from fulfillment_service.store import fetch_order, to_cents, update_versioned

logger = logging.getLogger("fulfillment-service.payments")
logger.setLevel(logging.INFO)

SUCCEEDED = "succeeded"
REFUNDABLE = (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED)
SETTLED = (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED)


@dataclass
class GatewayPayment:
    id: str
    status: str
    amount: Optional[float]
    currency: Optional[str]


# ───────────────────────────────────────────────────────────
# Gateways
# ───────────────────────────────────────────────────────────
class PaymentGateway(ABC):
    """The opaque capture/refund API in front of the payment provider."""

    @abstractmethod
    async def retrieve(self, payment_id: str, reported_amount: Optional[float] = None,
                       reported_currency: Optional[str] = None) -> GatewayPayment:
        ...

    @abstractmethod
    async def refund(self, payment_id: str, amount: float, reason: Optional[str] = None) -> str:
        ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        ...


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents. Stripe works in cents; everything here is in currency units."""

    def __init__(self, api_key: str = STRIPE_SECRET_KEY, webhook_secret: Optional[str] = STRIPE_WEBHOOK_SECRET):
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY must be set in environment for real payments")
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret

    async def retrieve(self, payment_id, reported_amount=None, reported_currency=None) -> GatewayPayment:
        # the SDK is blocking
        intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, payment_id)
        cents = intent.amount_received or intent.amount or 0
        return GatewayPayment(id=intent.id, status=intent.status, amount=cents / 100.0, currency=intent.currency)

    async def refund(self, payment_id, amount, reason=None) -> str:
        refund = await asyncio.to_thread(
            stripe.Refund.create,
            payment_intent=payment_id,
            amount=to_cents(amount),
            metadata={"reason": reason or ""},
        )
        return refund.id

    def parse_webhook(self, payload, signature) -> dict:
        if not self.webhook_secret:
            raise InvalidWebhook("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise InvalidWebhook("Invalid webhook payload")
        except stripe.SignatureVerificationError:
            raise InvalidWebhook("Invalid webhook signature")


class LocalGateway(PaymentGateway):
    """Local mode: every payment succeeded for exactly what the caller reports."""

    async def retrieve(self, payment_id, reported_amount=None, reported_currency=None) -> GatewayPayment:
        return GatewayPayment(id=payment_id, status=SUCCEEDED, amount=reported_amount, currency=reported_currency)

    async def refund(self, payment_id, amount, reason=None) -> str:
        refund_id = f"re_local_{uuid.uuid4().hex[:12]}"
        logger.info(f"💸 [LOCAL] Refunded {amount} on {payment_id} ({refund_id})")
        return refund_id

    def parse_webhook(self, payload, signature) -> dict:
        try:
            return json.loads(payload)
        except ValueError:
            raise InvalidWebhook("Invalid webhook payload")


def build_gateway() -> PaymentGateway:
    if USE_STRIPE:
        logger.info("💳 Stripe mode enabled")
        return StripeGateway()
    logger.info("💳 Local payment mode")
    return LocalGateway()


# ───────────────────────────────────────────────────────────
# Reconciler
# ───────────────────────────────────────────────────────────
class PaymentReconciler:
    """
    Turns gateway payment confirmations into order state.

    Captures are idempotent on the gateway payment id: the second
    confirmation of the same payment returns the order as it is and creates
    no second capture record and no second ``confirmed`` transition.
    """

    def __init__(self, db: Database, locks: EntityLocks, orders_sm: OrderStateMachine,
                 broadcaster: EventBroadcaster, gateway: PaymentGateway):
        self.db = db
        self.locks = locks
        self.orders = orders_sm
        self.broadcaster = broadcaster
        self.gateway = gateway

    async def confirm_capture(self, order_id: str, gateway_payment_id: str, amount: Optional[float] = None,
                              currency: Optional[str] = None, trace_id: Optional[str] = None) -> Order:
        if await self._already_captured(order_id, gateway_payment_id, trace_id):
            return await self.orders.get(order_id)

        payment = await self.gateway.retrieve(gateway_payment_id, amount, currency)
        if payment.status != SUCCEEDED:
            PAYMENT_CAPTURES.labels(result="not_succeeded").inc()
            raise PaymentNotCaptured(f"Payment {gateway_payment_id} is {payment.status}", order_id=order_id)

        async with self.locks.order(order_id):
            if await self._already_captured(order_id, gateway_payment_id, trace_id):
                return await self.orders.get(order_id)

            order = await fetch_order(self.db, order_id)
            if order.payment_status in SETTLED:
                PAYMENT_CAPTURES.labels(result="conflict").inc()
                raise PaymentConflict(
                    f"Order {order_id} is already paid by {order.gateway_payment_id}",
                    gateway_payment_id=gateway_payment_id,
                )
            if order.status != OrderStatus.PENDING:
                raise IllegalTransition(
                    f"Order {order_id} is {order.status.value}, payment can no longer confirm it",
                    from_status=order.status.value, to_status=OrderStatus.CONFIRMED.value,
                )

            received = order.total if payment.amount is None else payment.amount
            received_currency = (payment.currency or order.currency).lower()
            if to_cents(received) != to_cents(order.total) or received_currency != order.currency:
                reason = f"captured {received:.2f} {received_currency}, expected {order.total:.2f} {order.currency}"
                await self.orders.flag_locked(order, f"payment_mismatch: {reason}", trace_id)
                PAYMENT_CAPTURES.labels(result="mismatch").inc()
                raise PaymentAmountMismatch(
                    f"Payment {gateway_payment_id} does not match order {order_id}: {reason}",
                    expected=order.total, received=received,
                )

            # capture record, payment status and confirmation commit together
            async with self.broadcaster.deferred(), self.db.transaction():
                try:
                    await self.db.execute(
                        payment_captures.insert().values(
                            gateway_payment_id=gateway_payment_id,
                            order_id=order_id,
                            amount=received,
                            currency=received_currency,
                            captured_at=utcnow(),
                        )
                    )
                except INTEGRITY_ERRORS:
                    PAYMENT_CAPTURES.labels(result="conflict").inc()
                    raise PaymentConflict(
                        f"Payment {gateway_payment_id} is already recorded against another order",
                        gateway_payment_id=gateway_payment_id,
                    )

                await update_versioned(
                    self.db, orders, order_id, order.version,
                    payment_status=PaymentStatus.CAPTURED.value,
                    gateway_payment_id=gateway_payment_id,
                    captured_amount=received,
                )
                await self._publish(order_id, order.payment_status, PaymentStatus.CAPTURED, trace_id,
                                    gateway_payment_id=gateway_payment_id, amount=received)
                confirmed = await self.orders.transition_locked(
                    order_id, OrderStatus.CONFIRMED, order.version + 1, "payment_captured", trace_id,
                )

        PAYMENT_CAPTURES.labels(result="captured").inc()
        logger.info(f"[TRACE {trace_id}] 💰 Payment {gateway_payment_id} captured for order {order_id}")
        await self.orders.run_side_effects(confirmed, trace_id)
        return confirmed

    async def refund(self, order_id: str, amount: Optional[float] = None, reason: Optional[str] = None,
                     trace_id: Optional[str] = None) -> Order:
        """Full refund when ``amount`` is omitted. Order status is left alone."""
        async with self.locks.order(order_id):
            order = await fetch_order(self.db, order_id)
            if order.payment_status not in REFUNDABLE:
                raise RefundNotAllowed(
                    f"Order {order_id} payment is {order.payment_status.value}, nothing to refund",
                    payment_status=order.payment_status.value,
                )

            remaining = round(order.captured_amount - order.refunded_amount, 2)
            amount = remaining if amount is None else round(amount, 2)
            if to_cents(amount) <= 0 or to_cents(amount) > to_cents(remaining):
                raise RefundNotAllowed(
                    f"Refund of {amount:.2f} exceeds the refundable {remaining:.2f} on order {order_id}",
                    refundable=remaining,
                )

            # the provider call cannot be rolled back, so it stays outside the transaction
            gateway_refund_id = await self.gateway.refund(order.gateway_payment_id, amount, reason)

            refunded = round(order.refunded_amount + amount, 2)
            status = (
                PaymentStatus.REFUNDED if to_cents(refunded) >= to_cents(order.captured_amount)
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            async with self.broadcaster.deferred(), self.db.transaction():
                await self.db.execute(
                    refunds.insert().values(
                        id=str(uuid.uuid4()),
                        order_id=order_id,
                        gateway_payment_id=order.gateway_payment_id,
                        gateway_refund_id=gateway_refund_id,
                        amount=amount,
                        reason=reason,
                        created_at=utcnow(),
                    )
                )
                await update_versioned(
                    self.db, orders, order_id, order.version,
                    payment_status=status.value, refunded_amount=refunded,
                )
                await self._publish(order_id, order.payment_status, status, trace_id, amount=amount, reason=reason)
                updated = await fetch_order(self.db, order_id)

        logger.info(f"[TRACE {trace_id}] ↩️ Refunded {amount:.2f} on order {order_id} ({status.value})")
        return updated

    async def record_failure(self, order_id: str, gateway_payment_id: str, message: Optional[str] = None,
                             trace_id: Optional[str] = None) -> Order:
        async with self.locks.order(order_id):
            order = await fetch_order(self.db, order_id)
            if order.payment_status in SETTLED:
                logger.info(f"[TRACE {trace_id}] Ignoring failure of {gateway_payment_id}, order {order_id} already paid")
                return order
            await update_versioned(self.db, orders, order_id, order.version,
                                   payment_status=PaymentStatus.FAILED.value)
            await self._publish(order_id, order.payment_status, PaymentStatus.FAILED, trace_id,
                                gateway_payment_id=gateway_payment_id, message=message)
            updated = await fetch_order(self.db, order_id)
        PAYMENT_CAPTURES.labels(result="failed").inc()
        logger.warning(f"[TRACE {trace_id}] ❌ Payment {gateway_payment_id} failed for order {order_id}: {message}")
        return updated

    async def handle_webhook(self, payload: bytes, signature: Optional[str], trace_id: Optional[str] = None) -> dict:
        event = self.gateway.parse_webhook(payload, signature)
        event_id, event_type = event["id"], event["type"]

        try:
            await self.db.execute(
                processed_events.insert().values(
                    event_id=event_id, event_type=event_type, source_service="stripe", processed_at=utcnow(),
                )
            )
        except INTEGRITY_ERRORS:
            logger.info(f"[TRACE {trace_id}] Skipping duplicate webhook {event_id}")
            return {"status": "duplicate", "event_id": event_id}

        intent = event["data"]["object"]
        order_id = (intent.get("metadata") or {}).get("order_id")
        try:
            if not order_id:
                logger.warning(f"[TRACE {trace_id}] Webhook {event_id} ({event_type}) carries no order_id")
                return {"status": "ignored", "event_id": event_id}

            if event_type == "payment_intent.succeeded":
                cents = intent.get("amount_received") or intent.get("amount")
                await self.confirm_capture(
                    order_id, intent["id"],
                    amount=cents / 100.0 if cents is not None else None,
                    currency=intent.get("currency"),
                    trace_id=trace_id,
                )
            elif event_type == "payment_intent.payment_failed":
                error = intent.get("last_payment_error") or {}
                await self.record_failure(order_id, intent["id"], error.get("message"), trace_id)
            else:
                return {"status": "ignored", "event_id": event_id}
        except (PaymentAmountMismatch, PaymentConflict, IllegalTransition) as e:
            # settled on our side; the provider must not retry
            logger.warning(f"[TRACE {trace_id}] Webhook {event_id} not applied: {e.message}")
            return {"status": "rejected", "event_id": event_id, "code": e.code}
        except Exception:
            # let the provider redeliver it
            await self.db.execute(processed_events.delete().where(processed_events.c.event_id == event_id))
            raise

        return {"status": "processed", "event_id": event_id}

    # ------------------------- INTERNALS -------------------------
    async def _already_captured(self, order_id: str, gateway_payment_id: str, trace_id: Optional[str]) -> bool:
        row = await self.db.fetch_one(
            payment_captures.select().where(payment_captures.c.gateway_payment_id == gateway_payment_id)
        )
        if row is None:
            return False
        if row["order_id"] != order_id:
            raise PaymentConflict(
                f"Payment {gateway_payment_id} is already recorded against another order",
                gateway_payment_id=gateway_payment_id,
            )
        PAYMENT_CAPTURES.labels(result="duplicate").inc()
        logger.info(f"[TRACE {trace_id}] Payment {gateway_payment_id} already captured for order {order_id}, skipping")
        return True

    async def _publish(self, order_id: str, before: PaymentStatus, after: PaymentStatus,
                       trace_id: Optional[str], **extra):
        order = await fetch_order(self.db, order_id)
        await self.broadcaster.publish(
            PAYMENT_STATUS_CHANGED,
            {"order_id": order_id, "from": PaymentStatus(before).value, "to": after.value, **extra},
            entity=f"order:{order_id}", scopes=order_scopes(order), trace_id=trace_id,
            final=is_terminal(EntityKind.ORDER, order.status),
        )
