"""
Storefront: catalog store

Product reads and stock bookkeeping. Stock only ever changes through
``adjust_stock``, a single conditional UPDATE: the "still enough stock"
check and the write happen in the same statement, so two concurrent
settlements can never both take the last unit.
"""

from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Product, ProductDiscount, from_minor, to_minor, utcnow


def _row_to_product(row) -> Product:
    m = row._mapping
    return Product(
        id=m["id"],
        name=m["name"],
        image=m["image"],
        price=from_minor(m["price_minor"]),
        discount=ProductDiscount(
            is_active=bool(m["discount_active"]),
            percentage=Decimal(str(m["discount_percentage"])),
            amount=from_minor(m["discount_amount_minor"]),
        ),
        stock=m["stock"],
        sold_count=m["sold_count"],
        is_active=bool(m["is_active"]),
    )


async def find_product(session: AsyncSession, product_id: str) -> Product | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _row_to_product(row)


async def adjust_stock(
    session: AsyncSession,
    product_id: str,
    delta_qty: int,
    delta_sold: int,
) -> bool:
    """
    Move stock by ``delta_qty`` and sold count by ``delta_sold``.

    Returns False (and changes nothing) when the product is missing or the
    stock would go negative. Runs inside the caller's transaction.
    """
    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock + :delta_qty,
                sold_count = sold_count + :delta_sold,
                updated_at = :now
            WHERE id = :id AND stock + :delta_qty >= 0
        """),
        {
            "id": product_id,
            "delta_qty": delta_qty,
            "delta_sold": delta_sold,
            "now": utcnow().isoformat(),
        },
    )
    return result.rowcount == 1


async def save_product(session: AsyncSession, product: Product) -> None:
    """Insert or replace a product (catalog admin / seeding). Does not commit."""
    await session.execute(
        text("""
            INSERT INTO products
                (id, name, image, price_minor, discount_active, discount_percentage,
                 discount_amount_minor, stock, sold_count, is_active, updated_at)
            VALUES
                (:id, :name, :image, :price_minor, :discount_active, :discount_percentage,
                 :discount_amount_minor, :stock, :sold_count, :is_active, :now)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                image = excluded.image,
                price_minor = excluded.price_minor,
                discount_active = excluded.discount_active,
                discount_percentage = excluded.discount_percentage,
                discount_amount_minor = excluded.discount_amount_minor,
                stock = excluded.stock,
                sold_count = excluded.sold_count,
                is_active = excluded.is_active,
                updated_at = excluded.updated_at
        """),
        {
            "id": product.id,
            "name": product.name,
            "image": product.image,
            "price_minor": to_minor(product.price),
            "discount_active": int(product.discount.is_active),
            "discount_percentage": float(product.discount.percentage),
            "discount_amount_minor": to_minor(product.discount.amount),
            "stock": product.stock,
            "sold_count": product.sold_count,
            "is_active": int(product.is_active),
            "now": utcnow().isoformat(),
        },
    )
