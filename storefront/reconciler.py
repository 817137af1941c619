"""
Storefront: payment reconciler

Connects the payment channels to the order lifecycle.

  Gateway flow:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Price the cart (catalog + coupon evaluation)             │
  │  2. Create the gateway intent for the exact total            │
  │     └─ failure → GatewayUnavailable, nothing stored          │
  │  3. Store the pending order with the intent id               │
  │  4. Browser pays, returns payment id + signature → verify    │
  │     ├─ signature ok  → settle                                │
  │     └─ mismatch      → InvalidSignature, order stays pending │
  │  5. Webhook payment.captured / payment.failed (any order,    │
  │     any number of times) → settle / fail, no-op if settled   │
  └──────────────────────────────────────────────────────────────┘

  Manual flow (WhatsApp, cash on delivery): the order is stored pending and
  an admin settles it later through an admin transition.
"""

import json
import logging
import time
from collections.abc import Callable

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, gateway, lifecycle, queries
from .errors import (
    InvalidSignature,
    OrderAccessDenied,
    PartialSettlementFailure,
    PaymentMethodDisabled,
    ValidationError,
)
from .gateway import Intent, RazorpayClient
from .models import (
    Customer,
    Order,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
    Settings,
    ShippingAddress,
    to_minor,
)

logger = logging.getLogger(__name__)

CAPTURED = "payment.captured"
FAILED = "payment.failed"


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class PaymentReconciler:
    """Drives orders from the payment side: gateway, webhooks and manual handoff."""

    def __init__(
        self,
        redis: aioredis.Redis | None,
        gateway_factory: Callable[[Settings], RazorpayClient] = gateway.client_for,
    ):
        self.redis = redis
        self.gateway_factory = gateway_factory

    # ── Gateway flow ─────────────────────────────

    async def start_gateway_checkout(
        self,
        session: AsyncSession,
        settings: Settings,
        customer: Customer,
        items: list[tuple[str, int]],
        shipping_address: ShippingAddress,
        coupon_code: str | None = None,
    ) -> tuple[Order, Intent]:
        if not settings.payment_methods.razorpay.enabled:
            raise PaymentMethodDisabled(PaymentMethod.RAZORPAY.value)

        quote = await commands.prepare_quote(session, settings, customer.id, items, coupon_code)
        order_number = commands.generate_order_number()

        # The intent comes first: if the gateway is down there is no local order to clean up.
        client = self.gateway_factory(settings)
        intent = await client.create_intent(to_minor(quote.total), settings.currency, order_number)

        try:
            order = await commands.create_order(
                session,
                self.redis,
                settings,
                customer=customer,
                quote=quote,
                shipping_address=shipping_address,
                payment_method=PaymentMethod.RAZORPAY,
                payment_details=PaymentDetails(gateway_order_id=intent.id),
                order_number=order_number,
            )
        except Exception:
            logger.error("Gateway intent %s (receipt %s) has no local order", intent.id, order_number)
            raise
        return order, intent

    async def verify_payment(
        self,
        session: AsyncSession,
        settings: Settings,
        order_id: str,
        user_id: str,
        intent_id: str,
        payment_id: str,
        signature: str,
    ) -> Order:
        """
        Check the browser-supplied signature, then settle.

        A genuine payment for an order that can no longer take it raises
        PartialSettlementFailure after the order has been flagged.
        """
        order = await commands.load_order(session, order_id)
        if order.user_id != user_id:
            raise OrderAccessDenied()

        secret = settings.payment_methods.razorpay.key_secret
        if order.payment_details.gateway_order_id != intent_id:
            logger.warning("Verification for order %s named a foreign intent %s", order.order_number, intent_id)
            raise InvalidSignature()
        if not gateway.verify_payment_signature(secret, intent_id, payment_id, signature):
            logger.warning("Invalid payment signature for order %s", order.order_number)
            raise InvalidSignature()

        payment = {"gateway_payment_id": payment_id, "gateway_signature": signature}
        return await self._apply_capture(session, order, payment)

    async def record_failure(
        self,
        session: AsyncSession,
        order_id: str,
        user_id: str,
        reason: str | None = None,
    ) -> Order:
        """The browser reports that the payment did not go through."""
        order = await commands.load_order(session, order_id)
        if order.user_id != user_id:
            raise OrderAccessDenied()
        failed, _ = await commands.fail_order(session, self.redis, order.id, reason or "Unknown error")
        return failed

    async def handle_webhook(
        self,
        session: AsyncSession,
        settings: Settings,
        raw_body: bytes,
        signature: str | None,
    ) -> dict:
        """
        Apply a gateway webhook. Always idempotent.

        Returns a small status dict for the response body; unknown events and
        unknown intents are acknowledged so the gateway stops retrying.
        """
        secret = settings.payment_methods.razorpay.webhook_secret
        if secret and not gateway.verify_webhook_signature(secret, raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignature("Invalid webhook signature")

        try:
            body = json.loads(raw_body)
            event = body["event"]
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError("Malformed webhook payload") from e

        if event not in (CAPTURED, FAILED):
            logger.info("Unhandled webhook event: %s", event)
            return {"status": "ignored", "event": event}

        try:
            entity = body["payload"]["payment"]["entity"]
            intent_id = entity["order_id"]
            payment_id = entity["id"]
        except (KeyError, TypeError) as e:
            raise ValidationError("Malformed webhook payload") from e

        order = await queries.find_order_by_gateway_order(session, intent_id)
        if order is None:
            logger.warning("Webhook %s for unknown intent %s", event, intent_id)
            return {"status": "ignored", "event": event}

        if event == CAPTURED:
            try:
                order = await self._apply_capture(session, order, {"gateway_payment_id": payment_id})
            except PartialSettlementFailure:
                # Already flagged and alerted; acknowledging stops redelivery.
                return {"status": "reconciliation_required", "event": event, "order_number": order.order_number}
        else:
            reason = entity.get("error_description") or "Payment failed at gateway"
            order, _ = await commands.fail_order(session, self.redis, order.id, reason)

        return {
            "status": "ok",
            "event": event,
            "order_number": order.order_number,
            "payment_status": order.payment_status.value,
        }

    async def _apply_capture(self, session: AsyncSession, order: Order, payment: dict) -> Order:
        """
        Settle ``order`` for a captured payment.

        Raises PartialSettlementFailure when the money can't be booked against
        the order, including a capture for an order that was closed unpaid.
        """
        if lifecycle.is_settleable(order):
            settled, _ = await commands.settle_order(session, self.redis, order.id, payment)
            return settled

        if order.payment_status == PaymentStatus.COMPLETED:
            logger.info("Order %s already settled; capture ignored", order.order_number)
            return order

        # Money arrived for an order that was closed without payment.
        if order.needs_reconciliation and order.payment_details.gateway_payment_id == payment.get("gateway_payment_id"):
            raise PartialSettlementFailure(order.order_number, order.reconciliation_note)
        reason = f"Payment captured for {order.order_status.value} order; refund or reinstate manually"
        await commands.flag_for_reconciliation(session, self.redis, order.id, reason, payment)
        raise PartialSettlementFailure(order.order_number, reason)

    # ── Manual flow ──────────────────────────────

    async def start_manual_checkout(
        self,
        session: AsyncSession,
        settings: Settings,
        method: PaymentMethod,
        customer: Customer,
        items: list[tuple[str, int]],
        shipping_address: ShippingAddress,
        coupon_code: str | None = None,
        notes: str = "",
    ) -> Order:
        methods = settings.payment_methods
        if method == PaymentMethod.WHATSAPP:
            if not methods.whatsapp.enabled:
                raise PaymentMethodDisabled(method.value, "WhatsApp order is currently disabled")
            details = PaymentDetails(whatsapp_order_id=f"WA_{_epoch_ms()}")
        elif method == PaymentMethod.COD:
            if not methods.cod.enabled:
                raise PaymentMethodDisabled(method.value, "Cash on delivery is currently disabled")
            details = PaymentDetails(transaction_id=f"COD_{_epoch_ms()}")
        else:
            raise ValidationError(f"{method.value} is not a manual payment method")

        quote = await commands.prepare_quote(session, settings, customer.id, items, coupon_code)
        if method == PaymentMethod.COD and quote.total < methods.cod.min_order_amount:
            raise ValidationError(
                f"Cash on delivery requires a minimum order of ₹{methods.cod.min_order_amount}"
            )

        return await commands.create_order(
            session,
            self.redis,
            settings,
            customer=customer,
            quote=quote,
            shipping_address=shipping_address,
            payment_method=method,
            payment_details=details,
            notes=notes,
        )
