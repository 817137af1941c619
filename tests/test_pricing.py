from decimal import Decimal

import pytest
from pydantic import ValidationError

from conftest import make_coupon, make_product, make_settings
from storefront import pricing
from storefront.errors import OutOfStock, ProductUnavailable
from storefront.models import DiscountType, Product, ProductDiscount, TaxSettings


def _lines(*products_and_qty):
    return [(product, product.id, qty) for product, qty in products_and_qty]


class TestDiscountedPrice:
    def test_percentage_discount(self):
        assert make_product(price="500", percentage="10").discounted_price == Decimal("450.00")

    def test_inactive_discount_is_ignored(self):
        product = Product(
            id="p1", name="Mug", price=Decimal("300"),
            discount=ProductDiscount(is_active=False, percentage=Decimal("50")),
        )
        assert product.discounted_price == Decimal("300.00")

    def test_percentage_wins_over_amount(self):
        product = Product(
            id="p1", name="Mug", price=Decimal("200"),
            discount=ProductDiscount(is_active=True, percentage=Decimal("25"), amount=Decimal("150")),
        )
        assert product.discounted_price == Decimal("150.00")

    def test_fixed_amount_never_goes_negative(self):
        product = Product(
            id="p1", name="Mug", price=Decimal("100"),
            discount=ProductDiscount(is_active=True, amount=Decimal("250")),
        )
        assert product.discounted_price == Decimal("0.00")

    def test_percentage_clamped_to_100(self):
        product = Product(
            id="p1", name="Mug", price=Decimal("100"),
            discount=ProductDiscount(is_active=True, percentage=Decimal("120")),
        )
        assert product.discounted_price == Decimal("0.00")


class TestPriceItems:
    def test_cart_without_coupon(self):
        settings = make_settings()
        items, subtotal = pricing.price_items(_lines((make_product(), 2)))
        quote = pricing.compute_totals(items, subtotal, settings)

        assert subtotal == Decimal("900.00")
        assert quote.coupon_discount == Decimal("0.00")
        assert quote.shipping_fee == Decimal("0.00")
        assert quote.tax == Decimal("0.00")
        assert quote.total == Decimal("900.00")
        assert items[0].discounted_price == Decimal("450.00")
        assert items[0].total == Decimal("900.00")

    def test_cart_with_percent10_coupon(self):
        settings = make_settings()
        items, subtotal = pricing.price_items(_lines((make_product(), 2)))
        discount = make_coupon().calculate_discount(subtotal)
        quote = pricing.compute_totals(items, subtotal, settings, "PERCENT10", discount)

        assert quote.coupon_discount == Decimal("90.00")
        assert quote.total == Decimal("810.00")
        assert quote.coupon_code == "PERCENT10"

    def test_zero_discount_drops_coupon_code(self):
        items, subtotal = pricing.price_items(_lines((make_product(), 1)))
        quote = pricing.compute_totals(items, subtotal, make_settings(), "PERCENT10", Decimal("0"))
        assert quote.coupon_code == ""

    def test_missing_product(self):
        with pytest.raises(ProductUnavailable):
            pricing.price_items([(None, "ghost", 1)])

    def test_inactive_product(self):
        product = make_product(is_active=False)
        with pytest.raises(ProductUnavailable):
            pricing.price_items(_lines((product, 1)))

    def test_out_of_stock_names_product(self):
        product = make_product(stock=1, name="Brass Lamp")
        with pytest.raises(OutOfStock) as exc_info:
            pricing.price_items(_lines((product, 2)))
        assert "Brass Lamp" in exc_info.value.message
        assert exc_info.value.available == 1

    def test_validation_happens_before_pricing(self):
        good = make_product("p1")
        with pytest.raises(ProductUnavailable):
            pricing.price_items([(good, "p1", 1), (None, "ghost", 1)])

    def test_merge_quantities(self):
        merged = pricing.merge_quantities([("p1", 2), ("p2", 1), ("p1", 3)])
        assert merged == [("p1", 5), ("p2", 1)]


class TestShippingAndTax:
    def test_shipping_threshold(self):
        settings = make_settings()
        assert pricing.shipping_fee_for(Decimal("500.00"), settings) == Decimal("0.00")
        assert pricing.shipping_fee_for(Decimal("499.99"), settings) == Decimal("50.00")

    def test_exclusive_tax_on_discounted_total_plus_shipping(self):
        settings = make_settings(tax=TaxSettings(enabled=True, rate=Decimal("18")))
        items, subtotal = pricing.price_items(_lines((make_product(price="100", percentage="0"), 2)))
        quote = pricing.compute_totals(items, subtotal, settings, "FLAT", Decimal("20"))

        # (200 - 20 + 50) * 18%
        assert quote.shipping_fee == Decimal("50.00")
        assert quote.tax == Decimal("41.40")
        assert quote.total == Decimal("271.40")

    def test_inclusive_tax_on_subtotal(self):
        settings = make_settings(tax=TaxSettings(enabled=True, rate=Decimal("5"), inclusive=True))
        items, subtotal = pricing.price_items(_lines((make_product(price="1000", percentage="0"), 1)))
        quote = pricing.compute_totals(items, subtotal, settings)
        assert quote.tax == Decimal("50.00")

    @pytest.mark.parametrize("price,qty,discount,rate", [
        ("333.33", 3, "17.77", "18"),
        ("19.99", 7, "0", "12.5"),
        ("1249.50", 1, "125.00", "5"),
    ])
    def test_total_identity(self, price, qty, discount, rate):
        settings = make_settings(tax=TaxSettings(enabled=True, rate=Decimal(rate)))
        items, subtotal = pricing.price_items(_lines((make_product(price=price, percentage="0", stock=100), qty)))
        quote = pricing.compute_totals(items, subtotal, settings, "X", Decimal(discount))
        assert quote.total == quote.subtotal - quote.coupon_discount + quote.shipping_fee + quote.tax


class TestCouponDiscount:
    def test_percentage_capped(self):
        coupon = make_coupon(discount_value=Decimal("20"), maximum_discount_amount=Decimal("150"))
        assert coupon.calculate_discount(Decimal("1000")) == Decimal("150.00")

    def test_fixed_capped_at_amount(self):
        coupon = make_coupon(discount_type=DiscountType.FIXED, discount_value=Decimal("300"))
        assert coupon.calculate_discount(Decimal("250")) == Decimal("250.00")

    def test_below_minimum_order(self):
        coupon = make_coupon(minimum_order_amount=Decimal("1000"))
        assert coupon.calculate_discount(Decimal("999.99")) == Decimal("0.00")

    def test_percentage_over_100_never_exceeds_order(self):
        coupon = make_coupon(discount_value=Decimal("150"))
        assert coupon.calculate_discount(Decimal("900")) == Decimal("900.00")

    def test_oversized_coupon_never_makes_total_negative(self):
        items, subtotal = pricing.price_items(_lines((make_product(), 2)))
        discount = make_coupon(discount_value=Decimal("150")).calculate_discount(subtotal)
        quote = pricing.compute_totals(items, subtotal, make_settings(), "PERCENT10", discount)

        assert quote.coupon_discount == Decimal("900.00")
        assert quote.total == Decimal("0.00")

    @pytest.mark.parametrize("field, value", [
        ("discount_value", Decimal("-10")),
        ("minimum_order_amount", Decimal("-1")),
        ("maximum_discount_amount", Decimal("-5")),
        ("usage_limit", -1),
        ("user_usage_limit", 0),
    ])
    def test_negative_bounds_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            make_coupon(**{field: value})
