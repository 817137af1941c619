"""
Storefront: order lifecycle rules

State is the pair (order_status, payment_status).

    pending/pending ──settle──▶ confirmed/completed ──▶ processing ──▶ shipped ──▶ delivered
          │                          │                      │                         │
          ├──fail──▶ cancelled/failed                       │                         └──▶ returned
          └──cancel──▶ cancelled ◀───┴──────────────────────┘

Only the checks live here; commands.py performs the writes.
"""

from .errors import InvalidTransition, OrderAccessDenied
from .models import Order, OrderStatus, PaymentMethod, PaymentStatus, StatusEntry, utcnow

ADMIN_TARGETS = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
})
FULFILMENT = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})
USER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})
TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED})
RESTOCKING = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})
RETURNABLE_FROM = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})

# Paid outside the gateway; an admin confirms them by hand.
MANUAL_METHODS = frozenset({PaymentMethod.WHATSAPP, PaymentMethod.COD})


def history_entry(status: OrderStatus, note: str = "") -> StatusEntry:
    return StatusEntry(status=status, timestamp=utcnow(), note=note)


def is_settleable(order: Order) -> bool:
    return (
        order.payment_status == PaymentStatus.PENDING
        and order.order_status == OrderStatus.PENDING
    )


def check_admin_transition(order: Order, target: OrderStatus) -> None:
    """Raise InvalidTransition unless an admin may move ``order`` to ``target``."""
    current = order.order_status
    if target not in ADMIN_TARGETS:
        raise InvalidTransition(order.order_number, current.value, target.value)
    if target == current:
        return
    if current in (OrderStatus.CANCELLED, OrderStatus.RETURNED):
        raise InvalidTransition(order.order_number, current.value, target.value, "order is closed")
    if current == OrderStatus.DELIVERED and target != OrderStatus.RETURNED:
        raise InvalidTransition(order.order_number, current.value, target.value, "order was delivered")
    if target == OrderStatus.RETURNED and current not in RETURNABLE_FROM:
        raise InvalidTransition(order.order_number, current.value, target.value, "order has not shipped")
    if (
        target in FULFILMENT
        and order.payment_status == PaymentStatus.PENDING
        and order.payment_method not in MANUAL_METHODS
    ):
        raise InvalidTransition(
            order.order_number, current.value, target.value, "payment has not been received"
        )


def settles_on_admin_transition(order: Order, target: OrderStatus) -> bool:
    """A manual order awaiting payment is settled by the first fulfilment status."""
    return (
        is_settleable(order)
        and order.payment_method in MANUAL_METHODS
        and target in FULFILMENT
    )


def restores_stock(order: Order, target: OrderStatus) -> bool:
    return (
        target in RESTOCKING
        and order.order_status != target
        and order.stock_committed
    )


def check_user_cancel(order: Order, user_id: str) -> None:
    if order.user_id != user_id:
        raise OrderAccessDenied()
    if order.order_status not in USER_CANCELLABLE:
        raise InvalidTransition(
            order.order_number,
            order.order_status.value,
            OrderStatus.CANCELLED.value,
            "order cannot be cancelled at this stage",
        )
