"""
Storefront: database setup

Async engine and session factory plus the table definitions. Queries are
written as raw SQL with ``sqlalchemy.text``; the DDL sticks to types that
both PostgreSQL and SQLite understand.

- money columns hold integer minor units (``*_minor``)
- timestamps are ISO-8601 UTC text
- nested documents (line items, address, history) are JSON text
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        image TEXT NOT NULL DEFAULT '',
        price_minor BIGINT NOT NULL,
        discount_active INTEGER NOT NULL DEFAULT 0,
        discount_percentage DOUBLE PRECISION NOT NULL DEFAULT 0,
        discount_amount_minor BIGINT NOT NULL DEFAULT 0,
        stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        sold_count INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupons (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT '',
        discount_type TEXT NOT NULL,
        discount_value DOUBLE PRECISION NOT NULL,
        minimum_order_minor BIGINT NOT NULL DEFAULT 0,
        maximum_discount_minor BIGINT NOT NULL DEFAULT 0,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        usage_limit INTEGER NOT NULL DEFAULT 0,
        used_count INTEGER NOT NULL DEFAULT 0,
        user_usage_limit INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupon_usages (
        coupon_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        used_count INTEGER NOT NULL DEFAULT 0,
        last_used TEXT NOT NULL,
        PRIMARY KEY (coupon_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        id INTEGER PRIMARY KEY,
        document TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        order_number TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        customer TEXT NOT NULL,
        line_items TEXT NOT NULL,
        shipping_address TEXT NOT NULL,
        payment_method TEXT NOT NULL,
        payment_status TEXT NOT NULL,
        order_status TEXT NOT NULL,
        status_history TEXT NOT NULL,
        subtotal_minor BIGINT NOT NULL,
        coupon_code TEXT NOT NULL DEFAULT '',
        coupon_discount_minor BIGINT NOT NULL DEFAULT 0,
        shipping_fee_minor BIGINT NOT NULL DEFAULT 0,
        tax_minor BIGINT NOT NULL DEFAULT 0,
        total_minor BIGINT NOT NULL,
        payment_details TEXT NOT NULL,
        gateway_order_id TEXT UNIQUE,
        tracking_number TEXT NOT NULL DEFAULT '',
        notes TEXT NOT NULL DEFAULT '',
        admin_notes TEXT NOT NULL DEFAULT '',
        estimated_delivery TEXT,
        actual_delivery TEXT,
        stock_committed INTEGER NOT NULL DEFAULT 0,
        needs_reconciliation INTEGER NOT NULL DEFAULT 0,
        reconciliation_note TEXT NOT NULL DEFAULT '',
        version INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user ON orders (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders (order_status, payment_status)",
    """
    CREATE TABLE IF NOT EXISTS order_events (
        order_id TEXT NOT NULL REFERENCES orders (id),
        event_type TEXT NOT NULL,
        event_data TEXT NOT NULL,
        version INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (order_id, version)
    )
    """,
]


def make_engine(database_url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, **kwargs)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Create tables that don't exist yet."""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))
