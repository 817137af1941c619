"""
Shared fixtures: a file-backed SQLite database, a recording Redis double,
a mocked payment gateway and an HTTP client bound to the app.
"""

import json
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest

from storefront import gateway
from storefront.catalog import save_product
from storefront.coupons import save as save_coupon
from storefront.database import init_schema, make_engine, make_session_factory
from storefront.main import create_app
from storefront.models import (
    Coupon,
    Customer,
    DiscountType,
    Product,
    ProductDiscount,
    Settings,
    ShippingAddress,
    utcnow,
)
from storefront.notifications import EmailNotifier
from storefront.settings_store import save_settings

KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"


class RecordingRedis:
    """Stands in for the Redis publisher; keeps what was published."""

    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self) -> list[str]:
        return [message["event_type"] for _, message in self.published]


class FakeGateway:
    """Razorpay Orders API double served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[dict] = []
        self.fail_with: int | None = None
        self.timeout = False
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        body = json.loads(request.content)
        self.requests.append(body)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"description": "gateway down"}})
        return httpx.Response(200, json={
            "id": f"order_{len(self.requests):04d}",
            "entity": "order",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body["receipt"],
            "status": "created",
        })

    def factory(self, settings: Settings) -> gateway.RazorpayClient:
        return gateway.client_for(settings, transport=self.transport)


def make_product(product_id: str = "p1", price: str = "500", percentage: str = "10", stock: int = 10, **kw) -> Product:
    return Product(
        id=product_id,
        name=kw.pop("name", f"Product {product_id}"),
        price=Decimal(price),
        discount=ProductDiscount(is_active=bool(Decimal(percentage)), percentage=Decimal(percentage)),
        stock=stock,
        **kw,
    )


def make_coupon(code: str = "PERCENT10", **kw) -> Coupon:
    now = utcnow()
    values = {
        "id": str(uuid4()),
        "code": code,
        "discount_type": DiscountType.PERCENTAGE,
        "discount_value": Decimal("10"),
        "start_date": now - timedelta(days=1),
        "end_date": now + timedelta(days=30),
    }
    values.update(kw)
    return Coupon(**values)


def make_customer(user_id: str = "user-1") -> Customer:
    return Customer(id=user_id, name="Asha Rao", email="asha@example.com", phone="9876543210")


def make_address() -> ShippingAddress:
    return ShippingAddress(
        full_name="Asha Rao",
        address="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        pincode="560001",
    )


def make_settings(**kw) -> Settings:
    settings = Settings()
    settings.payment_methods.razorpay.key_id = KEY_ID
    settings.payment_methods.razorpay.key_secret = KEY_SECRET
    settings.payment_methods.razorpay.webhook_secret = ""
    settings.payment_methods.whatsapp.number = "+91 98765 43210"
    settings.payment_methods.cod.enabled = True
    for key, value in kw.items():
        setattr(settings, key, value)
    return settings


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(engine):
    """Session factory; tests open short-lived sessions with ``async with db() as session``."""
    return make_session_factory(engine)


@pytest.fixture
async def session(db):
    async with db() as session:
        yield session


@pytest.fixture
async def settings(db):
    settings = make_settings()
    async with db() as session:
        await save_settings(session, settings)
        await session.commit()
    return settings


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
async def seed(db):
    """Insert products and coupons in their own committed transaction."""

    async def _seed(products=(), coupons=()):
        async with db() as session:
            for product in products:
                await save_product(session, product)
            for coupon in coupons:
                await save_coupon(session, coupon)
            await session.commit()

    return _seed


@pytest.fixture
async def client(db, redis, fake_gateway, settings):
    app = create_app(
        session_factory=db,
        redis=redis,
        gateway_factory=fake_gateway.factory,
        notifier=EmailNotifier(host=""),
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
