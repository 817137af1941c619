"""
Storefront: order event log

Each order transition leaves one immutable entry, written in the same
transaction as the order row. The entry carries the version the order row
was just written with, so the log and the row can't drift apart:

    orders.version = 3   ⇔   order_events (order_id, 1..3)

The (order_id, version) primary key is a second lock behind the guarded
UPDATE: two writers that both moved the order to the same version can't
both commit.
"""

import json
from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import utcnow


class OrderEvent(str, Enum):
    CREATED = "OrderCreated"
    SETTLED = "OrderSettled"
    PAYMENT_FAILED = "OrderPaymentFailed"
    STATUS_CHANGED = "OrderStatusChanged"
    UPDATED = "OrderUpdated"
    CANCELLED = "OrderCancelled"
    RECONCILIATION_REQUIRED = "OrderReconciliationRequired"


class StoredEvent(BaseModel):
    event_type: OrderEvent
    event_data: dict
    version: int
    created_at: datetime


async def record(
    session: AsyncSession,
    order_id: str,
    event: OrderEvent,
    data: dict,
    order_version: int,
) -> None:
    """Log ``event`` under ``order_version``. Runs in the caller's transaction."""
    await session.execute(
        text("""
            INSERT INTO order_events (order_id, event_type, event_data, version, created_at)
            VALUES (:order_id, :event_type, :event_data, :version, :now)
        """),
        {
            "order_id": order_id,
            "event_type": event.value,
            "event_data": json.dumps(data, default=str),
            "version": order_version,
            "now": utcnow().isoformat(),
        },
    )


async def history(session: AsyncSession, order_id: str) -> list[StoredEvent]:
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM order_events
            WHERE order_id = :order_id
            ORDER BY version
        """),
        {"order_id": order_id},
    )
    return [
        StoredEvent(
            event_type=row.event_type,
            event_data=json.loads(row.event_data),
            version=row.version,
            created_at=datetime.fromisoformat(row.created_at),
        )
        for row in result.fetchall()
    ]
