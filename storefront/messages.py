"""Order summary text for orders handed off over WhatsApp."""

from urllib.parse import quote

from .models import Order


def _amount(value) -> str:
    return f"₹{value}"


def order_summary(order: Order, store_name: str) -> str:
    customer = order.customer
    lines = [
        f"🛒 *New Order from {store_name}*",
        "",
        "*Order Details:*",
        f"Order ID: {order.order_number}",
        f"Customer: {customer.name}",
        f"Email: {customer.email}",
        f"Phone: {customer.phone or 'Not provided'}",
        "",
        "*Products:*",
    ]
    for index, item in enumerate(order.items, start=1):
        lines.append(f"{index}. {item.name}")
        lines.append(f"   Quantity: {item.quantity}")
        lines.append(f"   Price: {_amount(item.discounted_price)} each")
        lines.append(f"   Total: {_amount(item.total)}")
        if item.image:
            lines.append(f"   Image: {item.image}")
        lines.append("")

    lines.append("*Order Summary:*")
    lines.append(f"Subtotal: {_amount(order.subtotal)}")
    if order.coupon_discount > 0:
        lines.append(f"Coupon Discount ({order.coupon_code}): -{_amount(order.coupon_discount)}")
    if order.shipping_fee > 0:
        lines.append(f"Shipping: {_amount(order.shipping_fee)}")
    if order.tax > 0:
        lines.append(f"Tax: {_amount(order.tax)}")
    lines.append(f"*Total: {_amount(order.total)}*")
    lines.append("")

    address = order.shipping_address
    lines.extend([
        "*Shipping Address:*",
        address.full_name,
        address.address,
        f"{address.city}, {address.state}",
        f"{address.pincode}, {address.country}",
        "",
        "Please confirm this order and provide payment instructions.",
    ])
    return "\n".join(lines)


def whatsapp_url(number: str, message: str) -> str:
    digits = "".join(ch for ch in number if ch.isdigit())
    return f"https://wa.me/{digits}?text={quote(message, safe='')}"
