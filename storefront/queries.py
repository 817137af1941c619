"""
Storefront: order queries (read side)

Orders are stored one row each, with nested parts as JSON text. These
helpers turn rows back into ``Order`` models.
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Customer,
    LineItem,
    Order,
    PaymentDetails,
    ShippingAddress,
    StatusEntry,
    from_minor,
)


def _load(value):
    return json.loads(value) if isinstance(value, str) else value


def _ts(value) -> datetime | None:
    if not value:
        return None
    return value if isinstance(value, datetime) else datetime.fromisoformat(value)


def row_to_order(row) -> Order:
    m = row._mapping
    return Order(
        id=m["id"],
        order_number=m["order_number"],
        user_id=m["user_id"],
        customer=Customer(**_load(m["customer"])),
        items=[LineItem(**item) for item in _load(m["line_items"])],
        shipping_address=ShippingAddress(**_load(m["shipping_address"])),
        payment_method=m["payment_method"],
        payment_status=m["payment_status"],
        order_status=m["order_status"],
        status_history=[StatusEntry(**entry) for entry in _load(m["status_history"])],
        subtotal=from_minor(m["subtotal_minor"]),
        coupon_code=m["coupon_code"],
        coupon_discount=from_minor(m["coupon_discount_minor"]),
        shipping_fee=from_minor(m["shipping_fee_minor"]),
        tax=from_minor(m["tax_minor"]),
        total=from_minor(m["total_minor"]),
        payment_details=PaymentDetails(**_load(m["payment_details"])),
        tracking_number=m["tracking_number"],
        notes=m["notes"],
        admin_notes=m["admin_notes"],
        estimated_delivery=_ts(m["estimated_delivery"]),
        actual_delivery=_ts(m["actual_delivery"]),
        stock_committed=bool(m["stock_committed"]),
        needs_reconciliation=bool(m["needs_reconciliation"]),
        reconciliation_note=m["reconciliation_note"],
        version=m["version"],
        created_at=_ts(m["created_at"]),
        updated_at=_ts(m["updated_at"]),
    )


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return row_to_order(row)


async def find_order_by_gateway_order(session: AsyncSession, gateway_order_id: str) -> Order | None:
    """Look an order up by the payment gateway's intent id."""
    result = await session.execute(
        text("SELECT * FROM orders WHERE gateway_order_id = :gateway_order_id"),
        {"gateway_order_id": gateway_order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return row_to_order(row)
