"""
Storefront: pricing engine

Pure functions. Only product references and quantities come from the
client; every price is taken from the catalog.

    lines ──▶ price_items ──▶ (items, subtotal)
                                   │  coupon discount (CouponLedger)
                                   ▼
                         compute_totals ──▶ Quote
"""

from decimal import Decimal

from .errors import OutOfStock, ProductUnavailable
from .models import ZERO, LineItem, Product, Quote, Settings, money

# (product or None when the lookup missed, requested product id, quantity)
CartLine = tuple[Product | None, str, int]


def merge_quantities(requested: list[tuple[str, int]]) -> list[tuple[str, int]]:
    """Collapse repeated product ids so stock is checked against the full quantity."""
    merged: dict[str, int] = {}
    for product_id, quantity in requested:
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def price_items(lines: list[CartLine]) -> tuple[list[LineItem], Decimal]:
    """
    Validate every line and price it.

    Raises ProductUnavailable / OutOfStock before anything is summed.
    """
    for product, product_id, quantity in lines:
        if product is None or not product.is_active:
            raise ProductUnavailable(product_id)
        if quantity > product.stock:
            raise OutOfStock(product.id, product.name, quantity, product.stock)

    items: list[LineItem] = []
    subtotal = ZERO
    for product, _product_id, quantity in lines:
        unit = product.discounted_price
        line_total = money(unit * quantity)
        subtotal += line_total
        items.append(
            LineItem(
                product_id=product.id,
                name=product.name,
                image=product.image,
                price=money(product.price),
                discounted_price=unit,
                quantity=quantity,
                total=line_total,
            )
        )
    return items, money(subtotal)


def shipping_fee_for(subtotal: Decimal, settings: Settings) -> Decimal:
    if subtotal >= settings.shipping.free_shipping_threshold:
        return ZERO
    return money(settings.shipping.standard_shipping_fee)


def tax_for(
    subtotal: Decimal,
    coupon_discount: Decimal,
    shipping_fee: Decimal,
    settings: Settings,
) -> Decimal:
    if not settings.tax.enabled:
        return ZERO
    if settings.tax.inclusive:
        taxable = subtotal
    else:
        taxable = subtotal - coupon_discount + shipping_fee
    return money(taxable * settings.tax.rate / 100)


def compute_totals(
    items: list[LineItem],
    subtotal: Decimal,
    settings: Settings,
    coupon_code: str = "",
    coupon_discount: Decimal = ZERO,
) -> Quote:
    """Apply shipping and tax on top of an already priced subtotal."""
    coupon_discount = money(coupon_discount)
    shipping_fee = shipping_fee_for(subtotal, settings)
    tax = tax_for(subtotal, coupon_discount, shipping_fee, settings)
    # Components are already rounded, so the identity holds exactly.
    total = money(subtotal - coupon_discount + shipping_fee + tax)
    return Quote(
        items=items,
        subtotal=subtotal,
        coupon_code=coupon_code if coupon_discount > 0 else "",
        coupon_discount=coupon_discount,
        shipping_fee=shipping_fee,
        tax=tax,
        total=total,
    )
