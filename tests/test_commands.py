import asyncio
from decimal import Decimal

import pytest

from conftest import make_address, make_coupon, make_customer, make_product, make_settings
from storefront import catalog, commands, coupons, event_store
from storefront.errors import (
    InvalidTransition,
    OrderAccessDenied,
    OrderNotFound,
    PartialSettlementFailure,
    StaleOrderState,
)
from storefront.models import (
    InventorySettings,
    OrderStatus,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
)


async def place_order(
    session,
    redis,
    settings=None,
    items=(("p1", 2),),
    user_id="user-1",
    coupon_code=None,
    method=PaymentMethod.RAZORPAY,
):
    settings = settings or make_settings()
    quote = await commands.prepare_quote(session, settings, user_id, list(items), coupon_code)
    return await commands.create_order(
        session,
        redis,
        settings,
        customer=make_customer(user_id),
        quote=quote,
        shipping_address=make_address(),
        payment_method=method,
        payment_details=PaymentDetails(gateway_order_id=f"order_{user_id}_{len(redis.published)}"),
    )


async def stock_of(session, product_id="p1"):
    product = await catalog.find_product(session, product_id)
    return product.stock, product.sold_count


def test_order_number_format():
    number = commands.generate_order_number(1700000123456)
    prefix, millis, suffix = number.split("-")
    assert prefix == "ORD"
    assert millis == "123456"
    assert len(suffix) == 6
    assert suffix.isalnum() and suffix.upper() == suffix


@pytest.mark.asyncio
async def test_create_leaves_stock_alone(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)

    assert order.order_status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.total == Decimal("900.00")
    assert order.status_history[0].status == OrderStatus.PENDING
    assert await stock_of(session) == (10, 0)
    assert redis.event_types() == ["OrderCreated"]


@pytest.mark.asyncio
async def test_settling_twice_decrements_stock_once(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)

    settled, changed = await commands.settle_order(session, redis, order.id, {"gateway_payment_id": "pay_1"})
    assert changed
    assert settled.order_status == OrderStatus.CONFIRMED
    assert settled.payment_status == PaymentStatus.COMPLETED
    assert settled.payment_details.gateway_payment_id == "pay_1"

    again, changed = await commands.settle_order(session, redis, order.id, {"gateway_payment_id": "pay_1"})
    assert not changed
    assert again.payment_status == PaymentStatus.COMPLETED
    assert await stock_of(session) == (8, 2)
    assert redis.event_types().count("OrderSettled") == 1


@pytest.mark.asyncio
async def test_concurrent_settlements_apply_once(db, session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)

    async def settle():
        async with db() as own:
            _, changed = await commands.settle_order(own, redis, order.id, {"gateway_payment_id": "pay_1"})
            return changed

    results = await asyncio.gather(settle(), settle())

    assert sorted(results) == [False, True]
    async with db() as fresh:
        assert await stock_of(fresh) == (8, 2)
        stored = await commands.load_order(fresh, order.id)
    assert stored.payment_status == PaymentStatus.COMPLETED
    assert redis.event_types().count("OrderSettled") == 1


@pytest.mark.asyncio
async def test_events_are_versioned(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)

    events = await event_store.history(session, order.id)
    assert [(e.event_type, e.version) for e in events] == [("OrderCreated", 1), ("OrderSettled", 2)]
    stored = await commands.load_order(session, order.id)
    assert stored.version == 2


@pytest.mark.asyncio
async def test_cancel_confirmed_order_restores_stock(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)

    cancelled = await commands.user_cancel(session, redis, order.id, "user-1", "Changed my mind")
    assert cancelled.order_status == OrderStatus.CANCELLED
    assert cancelled.notes == "Changed my mind"
    assert await stock_of(session) == (10, 0)

    stored = await commands.load_order(session, order.id)
    assert not stored.stock_committed


@pytest.mark.asyncio
async def test_cancel_pending_order_touches_no_stock(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.user_cancel(session, redis, order.id, "user-1")
    assert await stock_of(session) == (10, 0)

    # A late capture is not a settlement any more.
    _, changed = await commands.settle_order(session, redis, order.id)
    assert not changed
    assert await stock_of(session) == (10, 0)


@pytest.mark.asyncio
async def test_only_owner_can_cancel(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    with pytest.raises(OrderAccessDenied):
        await commands.user_cancel(session, redis, order.id, "someone-else")


@pytest.mark.asyncio
async def test_shipped_order_cannot_be_cancelled_by_user(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)
    await commands.admin_transition(session, redis, order.id, OrderStatus.SHIPPED)

    with pytest.raises(InvalidTransition):
        await commands.user_cancel(session, redis, order.id, "user-1")


@pytest.mark.asyncio
async def test_fail_then_settle_is_noop(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)

    failed, changed = await commands.fail_order(session, redis, order.id, "card declined")
    assert changed
    assert failed.payment_status == PaymentStatus.FAILED
    assert failed.order_status == OrderStatus.CANCELLED
    assert "card declined" in failed.notes

    _, changed = await commands.fail_order(session, redis, order.id, "again")
    assert not changed
    _, changed = await commands.settle_order(session, redis, order.id)
    assert not changed
    assert await stock_of(session) == (10, 0)


@pytest.mark.asyncio
async def test_unknown_order(session, redis):
    with pytest.raises(OrderNotFound):
        await commands.settle_order(session, redis, "missing")


# ── Partial settlement ───────────────────────────


@pytest.mark.asyncio
async def test_per_user_coupon_limit_across_two_orders(session, redis, seed):
    await seed(products=[make_product()], coupons=[make_coupon(user_usage_limit=1)])
    first = await place_order(session, redis, coupon_code="PERCENT10")
    second = await place_order(session, redis, coupon_code="PERCENT10")
    assert first.coupon_discount == second.coupon_discount == Decimal("90.00")

    await commands.settle_order(session, redis, first.id)
    with pytest.raises(PartialSettlementFailure):
        await commands.settle_order(session, redis, second.id, {"gateway_payment_id": "pay_2"})

    flagged = await commands.load_order(session, second.id)
    assert flagged.needs_reconciliation
    assert flagged.payment_status == PaymentStatus.PENDING
    assert flagged.payment_details.gateway_payment_id == "pay_2"
    assert "per-user" in flagged.reconciliation_note

    coupon = await coupons.find_by_code(session, "PERCENT10")
    assert coupon.used_count == 1
    # The second settlement's stock decrement was rolled back with it.
    assert await stock_of(session) == (8, 2)
    assert "OrderReconciliationRequired" in redis.event_types()


@pytest.mark.asyncio
async def test_stock_conflict_flags_order(session, redis, seed):
    await seed(products=[make_product(stock=2)])
    first = await place_order(session, redis, user_id="user-1")
    second = await place_order(session, redis, user_id="user-2")

    await commands.settle_order(session, redis, first.id)
    with pytest.raises(PartialSettlementFailure):
        await commands.settle_order(session, redis, second.id)

    assert await stock_of(session) == (0, 2)
    flagged = await commands.load_order(session, second.id)
    assert flagged.needs_reconciliation
    assert flagged.order_status == OrderStatus.PENDING


def _stale_reads(monkeypatch, times):
    """Make the next ``times`` order reads return the order one version behind."""
    real_load = commands.load_order
    calls = {"n": 0}

    async def load(session, order_id):
        order = await real_load(session, order_id)
        calls["n"] += 1
        if calls["n"] <= times:
            return order.model_copy(update={"version": order.version - 1})
        return order

    monkeypatch.setattr(commands, "load_order", load)


@pytest.mark.asyncio
async def test_flag_retries_after_concurrent_change(session, redis, seed, monkeypatch):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    _stale_reads(monkeypatch, times=1)

    flagged = await commands.flag_for_reconciliation(session, redis, order.id, "check stock", {"gateway_payment_id": "pay_9"})

    assert flagged.needs_reconciliation
    assert flagged.reconciliation_note == "check stock"
    assert flagged.payment_details.gateway_payment_id == "pay_9"
    assert flagged.version == order.version + 1
    events = await event_store.history(session, order.id)
    assert events[-1].event_type == "OrderReconciliationRequired"
    assert events[-1].version == flagged.version


@pytest.mark.asyncio
async def test_flag_gives_up_when_order_keeps_changing(session, redis, seed, monkeypatch):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    _stale_reads(monkeypatch, times=2)

    with pytest.raises(StaleOrderState):
        await commands.flag_for_reconciliation(session, redis, order.id, "check stock")

    monkeypatch.undo()
    stored = await commands.load_order(session, order.id)
    assert not stored.needs_reconciliation
    assert stored.version == order.version
    assert "OrderReconciliationRequired" not in redis.event_types()


@pytest.mark.asyncio
async def test_event_versions_follow_the_order(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)
    await commands.admin_transition(session, redis, order.id, OrderStatus.PROCESSING)
    await commands.user_cancel(session, redis, order.id, "user-1")

    stored = await commands.load_order(session, order.id)
    events = await event_store.history(session, order.id)
    assert [e.version for e in events] == list(range(1, stored.version + 1))
    assert [e.event_type for e in events] == [
        "OrderCreated",
        "OrderSettled",
        "OrderStatusChanged",
        "OrderCancelled",
    ]


# ── Admin transitions ────────────────────────────


@pytest.mark.asyncio
async def test_gateway_order_awaiting_payment_cannot_be_advanced(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    with pytest.raises(InvalidTransition):
        await commands.admin_transition(session, redis, order.id, OrderStatus.PROCESSING)

    cancelled = await commands.admin_transition(session, redis, order.id, OrderStatus.CANCELLED)
    assert cancelled.order_status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_manual_order_settled_by_first_fulfilment_step(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis, method=PaymentMethod.WHATSAPP)

    processing = await commands.admin_transition(
        session, redis, order.id, OrderStatus.PROCESSING, tracking_number="TRK1"
    )
    assert processing.order_status == OrderStatus.PROCESSING
    assert processing.payment_status == PaymentStatus.COMPLETED
    assert processing.tracking_number == "TRK1"
    assert await stock_of(session) == (8, 2)

    stored = await commands.load_order(session, order.id)
    assert stored.tracking_number == "TRK1"
    assert stored.stock_committed


@pytest.mark.asyncio
async def test_delivery_is_stamped_once(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)

    delivered = await commands.admin_transition(session, redis, order.id, OrderStatus.DELIVERED)
    stamped = delivered.actual_delivery
    assert stamped is not None

    again = await commands.admin_transition(
        session, redis, order.id, OrderStatus.DELIVERED, admin_notes="left at door"
    )
    assert again.actual_delivery == stamped
    assert again.admin_notes == "left at door"
    history = [entry.status for entry in again.status_history]
    assert history.count(OrderStatus.DELIVERED) == 1


@pytest.mark.asyncio
async def test_return_restores_stock_and_closes_order(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)
    await commands.admin_transition(session, redis, order.id, OrderStatus.SHIPPED)

    returned = await commands.admin_transition(session, redis, order.id, OrderStatus.RETURNED)
    assert returned.order_status == OrderStatus.RETURNED
    assert await stock_of(session) == (10, 0)

    with pytest.raises(InvalidTransition):
        await commands.admin_transition(session, redis, order.id, OrderStatus.SHIPPED)
    with pytest.raises(InvalidTransition):
        await commands.admin_transition(session, redis, order.id, OrderStatus.CANCELLED)
    assert await stock_of(session) == (10, 0)


@pytest.mark.asyncio
async def test_return_requires_shipment(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)
    with pytest.raises(InvalidTransition):
        await commands.admin_transition(session, redis, order.id, OrderStatus.RETURNED)


@pytest.mark.asyncio
async def test_delivered_can_only_be_returned(session, redis, seed):
    await seed(products=[make_product()])
    order = await place_order(session, redis)
    await commands.settle_order(session, redis, order.id)
    await commands.admin_transition(session, redis, order.id, OrderStatus.DELIVERED)
    with pytest.raises(InvalidTransition):
        await commands.admin_transition(session, redis, order.id, OrderStatus.PROCESSING)


# ── Inventory policy ─────────────────────────────


@pytest.mark.asyncio
async def test_reserve_on_creation_policy(session, redis, seed):
    await seed(products=[make_product()])
    settings = make_settings(inventory=InventorySettings(reserve_stock_on_creation=[PaymentMethod.COD]))

    order = await place_order(session, redis, settings=settings, method=PaymentMethod.COD)
    assert order.stock_committed
    assert await stock_of(session) == (8, 2)

    await commands.admin_transition(session, redis, order.id, OrderStatus.CONFIRMED)
    assert await stock_of(session) == (8, 2)

    await commands.user_cancel(session, redis, order.id, "user-1")
    assert await stock_of(session) == (10, 0)
