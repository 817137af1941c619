"""Exceptions raised by the checkout pipeline.

Every error carries a stable ``kind`` and the HTTP status the API renders it
with; the message is safe to show to the customer.
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    kind = "storefront_error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StorefrontError):
    """Raised when a request is well-formed JSON but semantically invalid."""

    kind = "validation_error"
    status_code = 400


class ProductUnavailable(StorefrontError):
    """Raised when a product is missing or inactive."""

    kind = "product_unavailable"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found or unavailable: {product_id}")


class OutOfStock(StorefrontError):
    """Raised when the requested quantity exceeds the available stock."""

    kind = "out_of_stock"

    def __init__(self, product_id: str, product_name: str, requested: int, available: int):
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}: requested={requested}, available={available}"
        )


class InvalidCoupon(StorefrontError):
    """A coupon that cannot be applied.

    Never surfaced over HTTP: checkout continues with a zero discount.
    """

    kind = "invalid_coupon"

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"Coupon {code} cannot be applied: {reason}")


class PaymentMethodDisabled(StorefrontError):
    kind = "payment_method_disabled"

    def __init__(self, method: str, reason: str | None = None):
        self.method = method
        msg = f"Payment method '{method}' is currently disabled"
        if reason:
            msg = reason
        super().__init__(msg)


class InvalidSignature(StorefrontError):
    """Raised when a payment or webhook signature does not verify."""

    kind = "invalid_signature"

    def __init__(self, message: str = "Invalid payment signature"):
        super().__init__(message)


class OrderNotFound(StorefrontError):
    kind = "order_not_found"
    status_code = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderAccessDenied(StorefrontError):
    kind = "access_denied"
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class InvalidTransition(StorefrontError):
    """Raised when an order status change is not allowed from its current state."""

    kind = "invalid_transition"

    def __init__(self, order_number: str, current: str, target: str, reason: str | None = None):
        self.order_number = order_number
        self.current = current
        self.target = target
        msg = f"Order {order_number} cannot move from '{current}' to '{target}'"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class StaleOrderState(StorefrontError):
    """Raised when an order changed underneath a guarded update."""

    kind = "stale_order_state"
    status_code = 409

    def __init__(self, order_number: str, expected: str):
        self.order_number = order_number
        self.expected = expected
        super().__init__(
            f"Order {order_number} is no longer in the expected state ({expected}); reload and retry"
        )


class GatewayUnavailable(StorefrontError):
    """Raised when the payment gateway cannot be reached or refuses the request."""

    kind = "gateway_unavailable"
    status_code = 502

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Payment gateway unavailable: {reason}")


class PartialSettlementFailure(StorefrontError):
    """Payment was confirmed but could not be booked against the order.

    Inventory or coupon bookkeeping failed, or the order was already closed.

    The order is flagged for manual reconciliation before this is raised.
    """

    kind = "partial_settlement_failure"
    status_code = 409

    def __init__(self, order_number: str, reason: str):
        self.order_number = order_number
        self.reason = reason
        super().__init__(
            f"Payment for order {order_number} was received but could not be settled: {reason}. "
            "The order has been flagged for manual review."
        )


class StockConflict(StorefrontError):
    """A conditional stock update matched no row."""

    kind = "stock_conflict"
    status_code = 409

    def __init__(self, product_id: str, delta: int):
        self.product_id = product_id
        self.delta = delta
        super().__init__(f"Stock for product {product_id} cannot change by {delta}")


class CouponLimitReached(StorefrontError):
    """A conditional coupon usage update matched no row."""

    kind = "coupon_limit_reached"
    status_code = 409

    def __init__(self, code: str, scope: str):
        self.code = code
        self.scope = scope
        super().__init__(f"Coupon {code} has reached its {scope} usage limit")


class NotAuthenticated(StorefrontError):
    kind = "not_authenticated"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)
