"""
Storefront: domain models

Orders, coupons, products and the settings document as pydantic models.
Amounts are Decimals quantized to two places; the stores persist them as
integer minor units (paise) so that every database sees exact integers.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field

from . import config

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    """Round to the currency's minor unit."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal) -> int:
    return int((money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor(value: int | None) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(TWO_PLACES)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentMethod(str, Enum):
    RAZORPAY = "razorpay"
    WHATSAPP = "whatsapp"
    COD = "cod"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# ── Catalog ──────────────────────────────────────


class ProductDiscount(BaseModel):
    is_active: bool = False
    percentage: Decimal = ZERO
    amount: Decimal = ZERO


class Product(BaseModel):
    id: str
    name: str
    image: str = ""
    price: Decimal
    discount: ProductDiscount = Field(default_factory=ProductDiscount)
    stock: int = 0
    sold_count: int = 0
    is_active: bool = True

    @property
    def discounted_price(self) -> Decimal:
        """
        Unit price after the product's own discount.

        Percentage wins over a fixed amount; the result stays within
        [0, price].
        """
        price = money(self.price)
        if not self.discount.is_active:
            return price
        if self.discount.percentage > 0:
            pct = min(self.discount.percentage, Decimal(100))
            return money(price - price * pct / 100)
        if self.discount.amount > 0:
            return money(max(ZERO, price - self.discount.amount))
        return price


# ── Orders ───────────────────────────────────────


class Customer(BaseModel):
    """Contact snapshot of the authenticated user placing the order."""

    id: str
    name: str = ""
    email: str = ""
    phone: str = ""


class ShippingAddress(BaseModel):
    full_name: str
    address: str
    city: str
    state: str
    pincode: str
    country: str = "India"


class LineItem(BaseModel):
    """Product data captured at order creation; later catalog edits don't touch it."""

    product_id: str
    name: str
    image: str = ""
    price: Decimal
    discounted_price: Decimal
    quantity: int
    total: Decimal


class StatusEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: str = ""


class PaymentDetails(BaseModel):
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    gateway_signature: str | None = None
    whatsapp_order_id: str | None = None
    transaction_id: str | None = None


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    customer: Customer
    items: list[LineItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.PENDING
    status_history: list[StatusEntry] = Field(default_factory=list)
    subtotal: Decimal
    coupon_code: str = ""
    coupon_discount: Decimal = ZERO
    shipping_fee: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    tracking_number: str = ""
    notes: str = ""
    admin_notes: str = ""
    estimated_delivery: datetime | None = None
    actual_delivery: datetime | None = None
    stock_committed: bool = False
    needs_reconciliation: bool = False
    reconciliation_note: str = ""
    version: int = 0
    created_at: datetime
    updated_at: datetime


class Quote(BaseModel):
    """Server-side price breakdown for a cart."""

    items: list[LineItem]
    subtotal: Decimal
    coupon_code: str = ""
    coupon_discount: Decimal = ZERO
    shipping_fee: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal


# ── Coupons ──────────────────────────────────────


class CouponUsage(BaseModel):
    user_id: str
    used_count: int = 1
    last_used: datetime


class Coupon(BaseModel):
    id: str
    code: str
    description: str = ""
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: Decimal = Field(ge=0)
    minimum_order_amount: Decimal = Field(default=ZERO, ge=0)
    maximum_discount_amount: Decimal = Field(default=ZERO, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: int = Field(default=0, ge=0)  # 0 = unlimited
    used_count: int = 0
    user_usage_limit: int = Field(default=1, ge=1)
    is_active: bool = True
    used_by: list[CouponUsage] = Field(default_factory=list)

    def is_valid(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if now < self.start_date or now > self.end_date:
            return False
        if self.usage_limit > 0 and self.used_count >= self.usage_limit:
            return False
        return True

    def usage_for(self, user_id: str) -> int:
        for usage in self.used_by:
            if usage.user_id == user_id:
                return usage.used_count
        return 0

    def can_user_use(self, user_id: str, now: datetime) -> bool:
        return self.is_valid(now) and self.usage_for(user_id) < self.user_usage_limit

    def calculate_discount(self, order_amount: Decimal) -> Decimal:
        if order_amount < self.minimum_order_amount:
            return ZERO
        if self.discount_type == DiscountType.PERCENTAGE:
            discount = order_amount * self.discount_value / 100
            if self.maximum_discount_amount > 0 and discount > self.maximum_discount_amount:
                discount = self.maximum_discount_amount
        else:
            discount = self.discount_value
        # Never more than the order itself.
        return money(min(discount, order_amount))


# ── Settings document ────────────────────────────


class RazorpaySettings(BaseModel):
    enabled: bool = True
    key_id: str = Field(default_factory=lambda: config.RAZORPAY_KEY_ID)
    key_secret: str = Field(default_factory=lambda: config.RAZORPAY_KEY_SECRET)
    webhook_secret: str = Field(default_factory=lambda: config.RAZORPAY_WEBHOOK_SECRET)


class WhatsAppSettings(BaseModel):
    enabled: bool = True
    number: str = Field(default_factory=lambda: config.WHATSAPP_NUMBER)


class CodSettings(BaseModel):
    enabled: bool = False
    min_order_amount: Decimal = ZERO


class PaymentMethodSettings(BaseModel):
    razorpay: RazorpaySettings = Field(default_factory=RazorpaySettings)
    whatsapp: WhatsAppSettings = Field(default_factory=WhatsAppSettings)
    cod: CodSettings = Field(default_factory=CodSettings)


class ShippingSettings(BaseModel):
    free_shipping_threshold: Decimal = Decimal("500")
    standard_shipping_fee: Decimal = Decimal("50")
    express_shipping_fee: Decimal = Decimal("100")
    estimated_delivery_days: int = 7


class TaxSettings(BaseModel):
    enabled: bool = False
    rate: Decimal = ZERO  # percent
    inclusive: bool = False


class InventorySettings(BaseModel):
    # Orders paid with these methods take stock at creation instead of settlement.
    reserve_stock_on_creation: list[PaymentMethod] = Field(default_factory=list)


class Settings(BaseModel):
    payment_methods: PaymentMethodSettings = Field(default_factory=PaymentMethodSettings)
    shipping: ShippingSettings = Field(default_factory=ShippingSettings)
    tax: TaxSettings = Field(default_factory=TaxSettings)
    inventory: InventorySettings = Field(default_factory=InventorySettings)
    currency: str = "INR"
    store_name: str = Field(default_factory=lambda: config.STORE_NAME)
