"""
Storefront: order notifications

Subscribes to the order_events channel and mails the customer once an order
is settled. This runs beside the request path, so a mail failure is logged
and never undoes a settlement.

Note: Redis pub/sub is fire-and-forget; events published while the
subscriber is down are not replayed.
"""

import asyncio
import json
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate

import aiosmtplib
import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from . import config, queries
from .event_store import OrderEvent
from .models import Customer, Order

logger = logging.getLogger(__name__)


def render_confirmation(customer: Customer, order: Order, store_name: str) -> tuple[str, str]:
    """Plain-text and HTML bodies of the confirmation mail."""
    rows = "".join(
        f"<tr><td>{item.name}</td><td>{item.quantity}</td><td>₹{item.total}</td></tr>"
        for item in order.items
    )
    html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2>Order Confirmed!</h2>
      <p>Hi {customer.name},</p>
      <p>Thank you for your order. Your order <strong>{order.order_number}</strong> has been confirmed.</p>
      <table style="width: 100%; border-collapse: collapse;">
        <tr><th>Product</th><th>Qty</th><th>Total</th></tr>
        {rows}
      </table>
      <p>Subtotal: ₹{order.subtotal}<br>
         Discount: -₹{order.coupon_discount}<br>
         Shipping: ₹{order.shipping_fee}<br>
         Tax: ₹{order.tax}<br>
         <strong>Total: ₹{order.total}</strong></p>
      <p>Best regards,<br>The {store_name} Team</p>
    </div>
    """
    text_lines = [
        f"Hi {customer.name},",
        "",
        f"Your order {order.order_number} has been confirmed.",
        "",
    ]
    text_lines += [f"- {item.name} x {item.quantity}: ₹{item.total}" for item in order.items]
    text_lines += ["", f"Total: ₹{order.total}", "", f"The {store_name} Team"]
    return "\n".join(text_lines), html


class EmailNotifier:
    """Sends order mails through SMTP with aiosmtplib."""

    def __init__(
        self,
        host: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        username: str = config.SMTP_USER,
        password: str = config.SMTP_PASSWORD,
        sender: str = config.MAIL_FROM,
        store_name: str = config.STORE_NAME,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.store_name = store_name
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.sender)

    def build_message(self, customer: Customer, order: Order) -> MIMEMultipart:
        text_body, html_body = render_confirmation(customer, order, self.store_name)
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.store_name, self.sender))
        msg["To"] = customer.email
        msg["Subject"] = f"Order Confirmation - {order.order_number}"
        msg["Date"] = formatdate(localtime=True)
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    async def send_order_confirmation(self, customer: Customer, order: Order) -> bool:
        if not self.enabled:
            logger.info("SMTP not configured; skipping confirmation for %s", order.order_number)
            return False
        if not customer.email:
            logger.info("No email on file for order %s", order.order_number)
            return False

        await aiosmtplib.send(
            self.build_message(customer, order),
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            start_tls=True,
            timeout=self.timeout,
        )
        logger.info("Confirmation mail sent for order %s", order.order_number)
        return True


async def handle_event(
    async_session_factory: sessionmaker,
    notifier: EmailNotifier,
    event_type: str,
    data: dict,
) -> None:
    if event_type != OrderEvent.SETTLED:
        return
    async with async_session_factory() as session:
        order = await queries.get_order(session, data["order_id"])
    if order is None:
        logger.warning("Settled order %s not found", data.get("order_id"))
        return
    await notifier.send_order_confirmation(order.customer, order)


async def run_subscriber(
    redis_url: str,
    async_session_factory: sessionmaker,
    notifier: EmailNotifier,
    shutdown_event: asyncio.Event,
) -> None:
    """Consume order_events until ``shutdown_event`` is set."""
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(config.ORDER_EVENTS_CHANNEL)
    logger.info("Subscribed to %s channel", config.ORDER_EVENTS_CHANNEL)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    event = json.loads(message["data"])
                    await handle_event(
                        async_session_factory,
                        notifier,
                        event.get("event_type"),
                        event.get("data", {}),
                    )
                except Exception:
                    logger.exception("Failed to handle order event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(config.ORDER_EVENTS_CHANNEL)
        await pubsub.aclose()
        await redis_conn.aclose()
