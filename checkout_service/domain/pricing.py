from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from checkout_service.domain.exceptions import CouponMinimumNotMetError
from checkout_service.domain.models import (
    Address, Coupon, DiscountType, ItemPricing, PriceBreakdown, Product, ShippingMethod
)

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingConfig:
    tax_rate: Decimal = Decimal("0.16")
    free_shipping_threshold: Decimal = Decimal("5000")
    shipping_rates: dict = field(default_factory=lambda: {
        ShippingMethod.STANDARD: Decimal("300"),
        ShippingMethod.EXPRESS: Decimal("500"),
        ShippingMethod.OVERNIGHT: Decimal("1000"),
        ShippingMethod.PICKUP: Decimal("0"),
    })
    remote_areas: frozenset = frozenset({"Turkana", "Marsabit", "Mandera", "Wajir"})
    remote_area_surcharge: Decimal = Decimal("1.5")
    currency: str = "KES"


@dataclass(frozen=True)
class PricingLine:
    product: Product
    quantity: int
    variant: dict = field(default_factory=dict)


class PricingCalculator:
    """Computes totals for a cart snapshot.

    Pure: reads nothing but its arguments and the injected config, so the
    same inputs always give the same breakdown.
    """

    def __init__(self, config: PricingConfig):
        self._config = config

    def effective_price(self, product: Product, variant: dict) -> Decimal:
        price = product.price
        if product.discount > 0:
            price = money(product.price * (1 - product.discount / 100))
        matched = product.find_variant(variant)
        if matched is not None and matched.price is not None:
            price = matched.price
        return money(price)

    def shipping_cost(self, subtotal: Decimal, method: ShippingMethod, address: Optional[Address]) -> Decimal:
        if subtotal >= self._config.free_shipping_threshold:
            return money(0)
        rates = self._config.shipping_rates
        rate = rates.get(method, rates[ShippingMethod.STANDARD])
        if address is not None and address.county in self._config.remote_areas:
            rate = rate * self._config.remote_area_surcharge
        return money(rate)

    def coupon_discount(self, coupon: Optional[Coupon], subtotal: Decimal) -> Decimal:
        if coupon is None:
            return money(0)
        if subtotal < coupon.min_order:
            raise CouponMinimumNotMetError(coupon.code, coupon.min_order, subtotal)
        if coupon.discount_type == DiscountType.PERCENTAGE:
            return money(min(subtotal * coupon.value / 100, subtotal))
        return money(min(coupon.value, subtotal))

    def calculate(
        self,
        lines: list[PricingLine],
        shipping_method: ShippingMethod = ShippingMethod.STANDARD,
        coupon: Optional[Coupon] = None,
        shipping_address: Optional[Address] = None,
    ) -> PriceBreakdown:
        items = []
        subtotal = money(0)
        for line in lines:
            price = self.effective_price(line.product, line.variant)
            item_total = money(price * line.quantity)
            subtotal += item_total
            items.append(ItemPricing(
                product_id=line.product.id,
                product_name=line.product.name,
                unit_price=money(line.product.price),
                effective_price=price,
                quantity=line.quantity,
                item_total=item_total,
            ))

        tax_amount = money(subtotal * self._config.tax_rate)
        shipping_amount = self.shipping_cost(subtotal, shipping_method, shipping_address)
        discount_amount = self.coupon_discount(coupon, subtotal)
        total_amount = subtotal + tax_amount + shipping_amount - discount_amount

        currency = self._config.currency
        rate_pct = (self._config.tax_rate * 100).normalize()
        return PriceBreakdown(
            subtotal=subtotal,
            tax_amount=tax_amount,
            shipping_amount=shipping_amount,
            discount_amount=discount_amount,
            total_amount=total_amount,
            tax_rate=self._config.tax_rate,
            shipping_method=shipping_method,
            coupon_code=coupon.code if coupon else None,
            currency=currency,
            items=items,
            labels={
                "tax": f"{rate_pct:f}% VAT: {currency} {tax_amount}",
                "shipping": f"{shipping_method.value}: {currency} {shipping_amount}",
                "discount": f"Coupon {coupon.code}: -{currency} {discount_amount}" if coupon else None,
                "total": f"Total: {currency} {total_amount}",
            },
        )
