from dataclasses import dataclass
from typing import Optional


class DomainException(Exception):
    pass


class CheckoutValidationError(DomainException):
    """Bad input, rejected before any mutation"""
    pass


class EmptyCartError(CheckoutValidationError):
    def __init__(self):
        super().__init__("Cart is empty")


class InvalidCouponError(CheckoutValidationError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Invalid coupon code: {code}")


class CouponMinimumNotMetError(CheckoutValidationError):
    def __init__(self, code: str, min_order, subtotal):
        self.code = code
        self.min_order = min_order
        self.subtotal = subtotal
        super().__init__(f"Minimum order of {min_order} required for coupon {code}")


class ProductNotFoundError(CheckoutValidationError):
    pass


class UnsupportedPaymentMethodError(CheckoutValidationError):
    pass


class InvalidPaymentDetailsError(CheckoutValidationError):
    pass


class OrderAlreadyPaidError(CheckoutValidationError):
    pass


@dataclass(frozen=True)
class StockShortfall:
    product_id: str
    target: str
    requested: int
    available: int
    reason: str
    product_name: Optional[str] = None

    def describe(self) -> str:
        name = self.product_name or self.product_id
        if self.reason != "insufficient stock":
            return f"{name}: {self.reason}"
        return f"{name}: requested {self.requested}, only {self.available} available"


class InsufficientStockError(DomainException):
    def __init__(self, shortfalls: list[StockShortfall]):
        self.shortfalls = shortfalls
        super().__init__("Some items are not available: " + "; ".join(s.describe() for s in shortfalls))


class PaymentGatewayError(DomainException):
    """Network or provider-side failure, not a business decline"""
    pass


class InvalidCallbackError(DomainException):
    pass


class IllegalTransitionError(DomainException):
    def __init__(self, current, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} an order in status {getattr(current, 'value', current)}")


class ConcurrentOrderUpdateError(DomainException):
    def __init__(self, order_id: str, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"Order {order_id} changed concurrently (expected version {expected_version})")


class ReservationReleaseError(DomainException):
    pass


class OrderNotFoundError(DomainException):
    pass


class OrderAccessDeniedError(DomainException):
    pass


class CartServiceError(DomainException):
    pass
