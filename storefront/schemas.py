"""Request models for the HTTP API.

Carts carry product ids and quantities only; prices always come from the
catalog.
"""

from pydantic import BaseModel, Field

from .models import OrderStatus, ShippingAddress


class CartItem(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class ContactInfo(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""


class QuoteRequest(BaseModel):
    items: list[CartItem] = Field(min_length=1)
    coupon_code: str | None = None


class CheckoutRequest(QuoteRequest):
    shipping_address: ShippingAddress
    customer: ContactInfo = Field(default_factory=ContactInfo)
    notes: str = ""


class VerifyPaymentRequest(BaseModel):
    order_id: str
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentFailureRequest(BaseModel):
    order_id: str
    error: str | None = None


class CancelOrderRequest(BaseModel):
    reason: str | None = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    tracking_number: str | None = None
    admin_notes: str | None = None
    note: str = ""
