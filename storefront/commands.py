"""
Storefront: order commands (write side)

Each command loads the order, checks the lifecycle rules, then writes the
order row, the inventory/coupon side effects and an event-store entry in a
single transaction. The order UPDATE is guarded by the version it was read
at (and, for settlement, by "still pending"), so a transition that lost a
race changes nothing.

After commit the event is published on Redis for the other consumers
(confirmation mail). Publishing is best-effort: the order is already
committed by then.
"""

import json
import logging
import secrets
import string
import time
from datetime import timedelta
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, coupons, event_store, lifecycle, pricing, queries
from .config import ORDER_EVENTS_CHANNEL
from .errors import (
    CouponLimitReached,
    OrderNotFound,
    OutOfStock,
    PartialSettlementFailure,
    StaleOrderState,
    StockConflict,
)
from .event_store import OrderEvent
from .models import (
    Customer,
    Order,
    OrderStatus,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
    Quote,
    Settings,
    ShippingAddress,
    StatusEntry,
    to_minor,
    utcnow,
)

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase


def generate_order_number(epoch_ms: int | None = None) -> str:
    """ORD-<last 6 digits of epoch millis>-<6 random base36 chars>."""
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"ORD-{str(epoch_ms)[-6:]}-{suffix}"


async def publish_event(redis: aioredis.Redis | None, event: OrderEvent, data: dict) -> None:
    if redis is None:
        return
    try:
        await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": event.value,
            "data": data,
        }, default=str))
    except Exception:
        logger.exception("Failed to publish %s for order %s", event.value, data.get("order_id"))


def _history_json(history: list[StatusEntry]) -> str:
    return json.dumps([entry.model_dump(mode="json") for entry in history])


def _event_data(order: Order, **extra) -> dict:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "order_status": order.order_status.value,
        "payment_status": order.payment_status.value,
        "total": str(order.total),
        "timestamp": utcnow().isoformat(),
    }
    data.update(extra)
    return data


async def load_order(session: AsyncSession, order_id: str) -> Order:
    order = await queries.get_order(session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def _update_order(
    session: AsyncSession,
    order: Order,
    patch: dict,
    require_pending: bool = False,
) -> bool:
    """
    Apply ``patch`` (column -> DB value) if the row is still at ``order.version``.

    Returns False when another writer got there first.
    """
    assignments = ", ".join(f"{column} = :{column}" for column in patch)
    sql = f"""
        UPDATE orders
        SET {assignments}, version = version + 1, updated_at = :updated_at
        WHERE id = :id AND version = :expected_version
    """
    if require_pending:
        sql += " AND payment_status = 'pending' AND order_status = 'pending'"
    params = dict(patch)
    params.update({
        "id": order.id,
        "expected_version": order.version,
        "updated_at": utcnow().isoformat(),
    })
    result = await session.execute(text(sql), params)
    return result.rowcount == 1


async def _restore_stock(session: AsyncSession, order: Order) -> None:
    for item in order.items:
        restored = await catalog.adjust_stock(session, item.product_id, item.quantity, -item.quantity)
        if not restored:
            logger.warning(
                "Could not restore %s x %s for order %s: product missing",
                item.quantity, item.product_id, order.order_number,
            )


# ── Quote ────────────────────────────────────────


async def prepare_quote(
    session: AsyncSession,
    settings: Settings,
    user_id: str,
    requested: list[tuple[str, int]],
    coupon_code: str | None = None,
) -> Quote:
    """Price a cart from catalog data, evaluating (not committing) the coupon."""
    lines = []
    for product_id, quantity in pricing.merge_quantities(requested):
        product = await catalog.find_product(session, product_id)
        lines.append((product, product_id, quantity))

    items, subtotal = pricing.price_items(lines)
    discount = await coupons.evaluate(session, coupon_code, user_id, subtotal)
    return pricing.compute_totals(
        items, subtotal, settings, coupons.normalize_code(coupon_code), discount
    )


# ── Create ───────────────────────────────────────


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    settings: Settings,
    *,
    customer: Customer,
    quote: Quote,
    shipping_address: ShippingAddress,
    payment_method: PaymentMethod,
    payment_details: PaymentDetails,
    order_number: str | None = None,
    notes: str = "",
) -> Order:
    """
    Persist a new pending order.

    Stock is only taken here when the inventory policy says so for this
    payment method; otherwise settlement takes it.
    """
    now = utcnow()
    reserve_now = payment_method in settings.inventory.reserve_stock_on_creation
    order = Order(
        id=str(uuid4()),
        order_number=order_number or generate_order_number(),
        user_id=customer.id,
        customer=customer,
        items=quote.items,
        shipping_address=shipping_address,
        payment_method=payment_method,
        status_history=[lifecycle.history_entry(OrderStatus.PENDING, "Order placed")],
        subtotal=quote.subtotal,
        coupon_code=quote.coupon_code,
        coupon_discount=quote.coupon_discount,
        shipping_fee=quote.shipping_fee,
        tax=quote.tax,
        total=quote.total,
        payment_details=payment_details,
        notes=notes,
        estimated_delivery=now + timedelta(days=settings.shipping.estimated_delivery_days),
        stock_committed=reserve_now,
        version=1,
        created_at=now,
        updated_at=now,
    )

    if reserve_now:
        for item in order.items:
            taken = await catalog.adjust_stock(session, item.product_id, -item.quantity, item.quantity)
            if not taken:
                await session.rollback()
                product = await catalog.find_product(session, item.product_id)
                raise OutOfStock(
                    item.product_id, item.name, item.quantity, product.stock if product else 0
                )

    await session.execute(
        text("""
            INSERT INTO orders
                (id, order_number, user_id, customer, line_items, shipping_address,
                 payment_method, payment_status, order_status, status_history,
                 subtotal_minor, coupon_code, coupon_discount_minor, shipping_fee_minor,
                 tax_minor, total_minor, payment_details, gateway_order_id, notes,
                 estimated_delivery, stock_committed, version, created_at, updated_at)
            VALUES
                (:id, :order_number, :user_id, :customer, :line_items, :shipping_address,
                 :payment_method, :payment_status, :order_status, :status_history,
                 :subtotal_minor, :coupon_code, :coupon_discount_minor, :shipping_fee_minor,
                 :tax_minor, :total_minor, :payment_details, :gateway_order_id, :notes,
                 :estimated_delivery, :stock_committed, :version, :now, :now)
        """),
        {
            "id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "customer": order.customer.model_dump_json(),
            "line_items": json.dumps([item.model_dump(mode="json") for item in order.items]),
            "shipping_address": order.shipping_address.model_dump_json(),
            "payment_method": order.payment_method.value,
            "payment_status": order.payment_status.value,
            "order_status": order.order_status.value,
            "status_history": _history_json(order.status_history),
            "subtotal_minor": to_minor(order.subtotal),
            "coupon_code": order.coupon_code,
            "coupon_discount_minor": to_minor(order.coupon_discount),
            "shipping_fee_minor": to_minor(order.shipping_fee),
            "tax_minor": to_minor(order.tax),
            "total_minor": to_minor(order.total),
            "payment_details": order.payment_details.model_dump_json(),
            "gateway_order_id": order.payment_details.gateway_order_id,
            "notes": order.notes,
            "estimated_delivery": order.estimated_delivery.isoformat(),
            "stock_committed": int(order.stock_committed),
            "version": order.version,
            "now": now.isoformat(),
        },
    )
    created = _event_data(order, payment_method=order.payment_method.value)
    await event_store.record(session, order.id, OrderEvent.CREATED, created, order.version)
    await session.commit()

    logger.info("Created order %s (%s, total %s)", order.order_number, order.payment_method.value, order.total)
    await publish_event(redis, OrderEvent.CREATED, created)
    return order


# ── Settle ───────────────────────────────────────


async def settle_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    payment: dict | None = None,
    note: str = "Payment received",
) -> tuple[Order, bool]:
    """
    Confirm payment for a pending order.

    Returns (order, True) when this call settled it and (order, False) when
    it was not pending any more, which is what a duplicate webhook or a
    second verification sees.
    """
    order = await load_order(session, order_id)
    if not lifecycle.is_settleable(order):
        logger.info(
            "Order %s is %s/%s; settlement skipped",
            order.order_number, order.order_status.value, order.payment_status.value,
        )
        return order, False
    return await _settle(session, redis, order, payment or {}, note, OrderStatus.CONFIRMED)


async def _settle(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order: Order,
    payment: dict,
    note: str,
    target: OrderStatus,
    extra_patch: dict | None = None,
) -> tuple[Order, bool]:
    now = utcnow()
    details = order.payment_details.model_copy(update=payment)
    settled = order.model_copy(update={
        "payment_status": PaymentStatus.COMPLETED,
        "order_status": target,
        "status_history": order.status_history + [lifecycle.history_entry(target, note)],
        "payment_details": details,
        "stock_committed": True,
        "needs_reconciliation": False,
        "reconciliation_note": "",
        "version": order.version + 1,
        "updated_at": now,
    })
    patch = {
        "payment_status": settled.payment_status.value,
        "order_status": settled.order_status.value,
        "status_history": _history_json(settled.status_history),
        "payment_details": details.model_dump_json(),
        "stock_committed": 1,
        "needs_reconciliation": 0,
        "reconciliation_note": "",
    }
    if target == OrderStatus.DELIVERED and order.actual_delivery is None:
        settled.actual_delivery = now
        patch["actual_delivery"] = now.isoformat()
    for column, value in (extra_patch or {}).items():
        patch[column] = value
        setattr(settled, column, value)

    try:
        if not await _update_order(session, order, patch, require_pending=True):
            await session.rollback()
            current = await load_order(session, order.id)
            if not lifecycle.is_settleable(current):
                logger.info("Order %s was settled concurrently; nothing to do", order.order_number)
                return current, False
            raise StaleOrderState(order.order_number, "pending")

        if not order.stock_committed:
            for item in order.items:
                taken = await catalog.adjust_stock(session, item.product_id, -item.quantity, item.quantity)
                if not taken:
                    raise StockConflict(item.product_id, -item.quantity)

        if order.coupon_code and order.coupon_discount > 0:
            await coupons.commit_usage(session, order.coupon_code, order.user_id, now)

        data = _event_data(settled, gateway_payment_id=details.gateway_payment_id)
        await event_store.record(session, order.id, OrderEvent.SETTLED, data, settled.version)
        await session.commit()
    except (StockConflict, CouponLimitReached) as exc:
        await session.rollback()
        await flag_for_reconciliation(session, redis, order.id, exc.message, payment)
        raise PartialSettlementFailure(order.order_number, exc.message) from exc

    logger.info("Settled order %s (%s)", order.order_number, target.value)
    await publish_event(redis, OrderEvent.SETTLED, data)
    return settled, True


async def flag_for_reconciliation(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    reason: str,
    payment: dict | None = None,
) -> Order:
    """
    Mark an order for manual review and raise the operational alert.

    Payment references are kept so that an operator can find the payment
    at the gateway. Order and payment status are left unchanged. The write
    is guarded by the version it read and retried once if another writer
    got in between.
    """
    for _ in range(2):
        order = await load_order(session, order_id)
        details = order.payment_details.model_copy(update=payment or {})
        patch = {
            "needs_reconciliation": 1,
            "reconciliation_note": reason,
            "payment_details": details.model_dump_json(),
        }
        if await _update_order(session, order, patch):
            break
        await session.rollback()
    else:
        logger.error("Order %s needs manual reconciliation but kept changing: %s", order.order_number, reason)
        raise StaleOrderState(order.order_number, f"version {order.version}")

    data = _event_data(order, reason=reason, gateway_payment_id=details.gateway_payment_id)
    await event_store.record(
        session, order.id, OrderEvent.RECONCILIATION_REQUIRED, data, order.version + 1
    )
    await session.commit()

    logger.error("Order %s needs manual reconciliation: %s", order.order_number, reason)
    await publish_event(redis, OrderEvent.RECONCILIATION_REQUIRED, data)
    return await load_order(session, order.id)


# ── Fail ─────────────────────────────────────────


async def fail_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    reason: str = "Unknown error",
) -> tuple[Order, bool]:
    """Record a failed payment. No-op unless the order is still pending."""
    order = await load_order(session, order_id)
    if not lifecycle.is_settleable(order):
        logger.info(
            "Order %s is %s/%s; payment failure ignored",
            order.order_number, order.order_status.value, order.payment_status.value,
        )
        return order, False

    note = f"Payment failed: {reason}"
    failed = order.model_copy(update={
        "payment_status": PaymentStatus.FAILED,
        "order_status": OrderStatus.CANCELLED,
        "status_history": order.status_history + [lifecycle.history_entry(OrderStatus.CANCELLED, note)],
        "notes": note,
        "stock_committed": False,
        "version": order.version + 1,
        "updated_at": utcnow(),
    })
    patch = {
        "payment_status": failed.payment_status.value,
        "order_status": failed.order_status.value,
        "status_history": _history_json(failed.status_history),
        "notes": note,
        "stock_committed": 0,
    }
    if not await _update_order(session, order, patch, require_pending=True):
        await session.rollback()
        current = await load_order(session, order.id)
        if not lifecycle.is_settleable(current):
            return current, False
        raise StaleOrderState(order.order_number, "pending")

    if order.stock_committed:
        await _restore_stock(session, order)

    data = _event_data(failed, reason=reason)
    await event_store.record(session, order.id, OrderEvent.PAYMENT_FAILED, data, failed.version)
    await session.commit()

    logger.info("Payment failed for order %s: %s", order.order_number, reason)
    await publish_event(redis, OrderEvent.PAYMENT_FAILED, data)
    return failed, True


# ── Admin transition ─────────────────────────────


async def admin_transition(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    target: OrderStatus,
    tracking_number: str | None = None,
    admin_notes: str | None = None,
    note: str = "",
) -> Order:
    order = await load_order(session, order_id)
    lifecycle.check_admin_transition(order, target)

    extra = {}
    if tracking_number:
        extra["tracking_number"] = tracking_number
    if admin_notes:
        extra["admin_notes"] = admin_notes

    if lifecycle.settles_on_admin_transition(order, target):
        settled, _ = await _settle(
            session, redis, order, {}, note or "Payment confirmed by admin", target, extra
        )
        return settled

    now = utcnow()
    changes = dict(extra)
    patch = dict(extra)
    status_changed = target != order.order_status
    if status_changed:
        history = order.status_history + [lifecycle.history_entry(target, note)]
        changes.update({"order_status": target, "status_history": history})
        patch.update({"order_status": target.value, "status_history": _history_json(history)})
    if target == OrderStatus.DELIVERED and order.actual_delivery is None:
        changes["actual_delivery"] = now
        patch["actual_delivery"] = now.isoformat()
    restore = lifecycle.restores_stock(order, target)
    if restore:
        changes["stock_committed"] = False
        patch["stock_committed"] = 0

    if not patch:
        return order

    if not await _update_order(session, order, patch):
        await session.rollback()
        raise StaleOrderState(order.order_number, order.order_status.value)
    if restore:
        await _restore_stock(session, order)

    changes.update({"version": order.version + 1, "updated_at": now})
    updated = order.model_copy(update=changes)
    event = OrderEvent.STATUS_CHANGED if status_changed else OrderEvent.UPDATED
    data = _event_data(updated, previous_status=order.order_status.value, stock_restored=restore)
    await event_store.record(session, order.id, event, data, updated.version)
    await session.commit()

    logger.info("Order %s: %s -> %s", order.order_number, order.order_status.value, target.value)
    await publish_event(redis, event, data)
    return updated


# ── User cancel ──────────────────────────────────


async def user_cancel(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    user_id: str,
    reason: str | None = None,
) -> Order:
    """Customer cancellation; gives back any stock the order had taken."""
    order = await load_order(session, order_id)
    lifecycle.check_user_cancel(order, user_id)

    note = reason or "Cancelled by user"
    restore = order.stock_committed
    cancelled = order.model_copy(update={
        "order_status": OrderStatus.CANCELLED,
        "status_history": order.status_history + [lifecycle.history_entry(OrderStatus.CANCELLED, note)],
        "notes": note,
        "stock_committed": False,
        "version": order.version + 1,
        "updated_at": utcnow(),
    })
    patch = {
        "order_status": cancelled.order_status.value,
        "status_history": _history_json(cancelled.status_history),
        "notes": note,
        "stock_committed": 0,
    }
    if not await _update_order(session, order, patch):
        await session.rollback()
        raise StaleOrderState(order.order_number, order.order_status.value)
    if restore:
        await _restore_stock(session, order)

    data = _event_data(cancelled, reason=note, stock_restored=restore)
    await event_store.record(session, order.id, OrderEvent.CANCELLED, data, cancelled.version)
    await session.commit()

    logger.info("Order %s cancelled by user %s", order.order_number, user_id)
    await publish_event(redis, OrderEvent.CANCELLED, data)
    return cancelled
