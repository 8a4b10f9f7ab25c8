"""Tests for the pricing calculator."""

from decimal import Decimal

import pytest

from checkout_service.domain.exceptions import CouponMinimumNotMetError
from checkout_service.domain.models import Address, Coupon, DiscountType, ShippingMethod
from checkout_service.domain.pricing import PricingCalculator, PricingConfig, PricingLine

from factories import WELCOME10, make_product, make_variant


@pytest.fixture
def calculator():
    return PricingCalculator(PricingConfig())


def test_standard_cart_breakdown(calculator):
    """Test the reference cart: two items at 1000, standard shipping, no coupon."""
    breakdown = calculator.calculate([PricingLine(make_product("A", price="1000"), 2)])

    assert breakdown.subtotal == Decimal("2000.00")
    assert breakdown.tax_amount == Decimal("320.00")
    assert breakdown.shipping_amount == Decimal("300.00")
    assert breakdown.discount_amount == Decimal("0.00")
    assert breakdown.total_amount == Decimal("2620.00")
    assert breakdown.labels["tax"] == "16% VAT: KES 320.00"
    assert breakdown.labels["discount"] is None


def test_welcome_coupon_breakdown(calculator):
    """Test the reference cart with the 10% WELCOME10 coupon."""
    breakdown = calculator.calculate(
        [PricingLine(make_product("A", price="1000"), 2)], coupon=WELCOME10
    )

    assert breakdown.discount_amount == Decimal("200.00")
    assert breakdown.total_amount == Decimal("2420.00")
    assert breakdown.coupon_code == "WELCOME10"


def test_pricing_is_deterministic(calculator):
    """Test that identical inputs give identical breakdowns."""
    lines = [
        PricingLine(make_product("A", price="333.33", discount=Decimal("15")), 3),
        PricingLine(make_product("B", price="49.99"), 7),
    ]
    address = Address(name="x", phone="0712345678", street="s", city="Lodwar", county="Turkana")

    first = calculator.calculate(lines, ShippingMethod.EXPRESS, WELCOME10, address)
    second = calculator.calculate(lines, ShippingMethod.EXPRESS, WELCOME10, address)

    assert first == second


def test_free_shipping_at_threshold(calculator):
    breakdown = calculator.calculate(
        [PricingLine(make_product("A", price="2500"), 2)], ShippingMethod.OVERNIGHT
    )

    assert breakdown.subtotal == Decimal("5000.00")
    assert breakdown.shipping_amount == Decimal("0.00")


def test_remote_area_surcharge(calculator):
    """Test that remote counties pay 1.5x the shipping rate."""
    address = Address(name="x", phone="0712345678", street="s", city="Mandera", county="Mandera")
    breakdown = calculator.calculate(
        [PricingLine(make_product("A", price="100"), 1)], ShippingMethod.EXPRESS, shipping_address=address
    )

    assert breakdown.shipping_amount == Decimal("750.00")


def test_product_discount_and_variant_price(calculator):
    """Test that a variant price wins over the discounted product price."""
    product = make_product(
        "A", price="1000", discount=Decimal("20"),
        variants=[make_variant(0, 5, size="M"), make_variant(1, 5, price="1500", size="XL")],
    )

    assert calculator.effective_price(product, {}) == Decimal("800.00")
    assert calculator.effective_price(product, {"size": "M"}) == Decimal("800.00")
    assert calculator.effective_price(product, {"size": "XL"}) == Decimal("1500.00")


def test_free_variant_price_is_honoured(calculator):
    product = make_product("A", price="1000", variants=[make_variant(0, 5, price="0", size="sample")])

    assert calculator.effective_price(product, {"size": "sample"}) == Decimal("0.00")


def test_fixed_coupon_never_exceeds_subtotal(calculator):
    coupon = Coupon(code="BIG", discount_type=DiscountType.FIXED, value=Decimal("5000"))
    breakdown = calculator.calculate([PricingLine(make_product("A", price="100"), 1)], coupon=coupon)

    assert breakdown.discount_amount == Decimal("100.00")
    assert breakdown.total_amount == Decimal("316.00")


def test_percentage_coupon_never_exceeds_subtotal(calculator):
    coupon = Coupon(code="HUGE", discount_type=DiscountType.PERCENTAGE, value=Decimal("150"))
    breakdown = calculator.calculate([PricingLine(make_product("A", price="100"), 1)], coupon=coupon)

    assert breakdown.discount_amount == Decimal("100.00")
    assert breakdown.total_amount == Decimal("316.00")


def test_coupon_minimum_not_met(calculator):
    with pytest.raises(CouponMinimumNotMetError) as exc:
        calculator.calculate([PricingLine(make_product("A", price="500"), 1)], coupon=WELCOME10)

    assert exc.value.code == "WELCOME10"


def test_rates_come_from_config():
    """Test that tax and free-shipping threshold are injected, not hard-coded."""
    calculator = PricingCalculator(PricingConfig(tax_rate=Decimal("0.08"), free_shipping_threshold=Decimal("1000")))
    breakdown = calculator.calculate([PricingLine(make_product("A", price="1000"), 2)])

    assert breakdown.tax_amount == Decimal("160.00")
    assert breakdown.shipping_amount == Decimal("0.00")
    assert breakdown.total_amount == Decimal("2160.00")
