from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OrderStatus(str, Enum):
    CREATED = "created"
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    CARD = "card"
    PAYSTACK = "paystack"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"


class PaymentOutcome(str, Enum):
    """Result of talking to a provider: terminal or still waiting."""
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    PICKUP = "pickup"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
)


class Address(BaseModel):
    """Value Object: address snapshot copied onto the order"""
    name: str
    phone: str
    email: Optional[str] = None
    street: str
    city: str
    county: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "KE"


class CartItem(BaseModel):
    """Line of the user's cart as returned by the cart service"""
    product_id: str
    quantity: int = Field(gt=0)
    variant: dict[str, str] = Field(default_factory=dict)


class ProductVariant(BaseModel):
    index: int
    attributes: dict[str, str] = Field(default_factory=dict)
    price: Optional[Decimal] = None
    stock: int
    reserved: int = 0

    def matches(self, selected: dict[str, str]) -> bool:
        return all(self.attributes.get(key) == value for key, value in selected.items())


class Product(BaseModel):
    """Catalog product together with its stock pools"""
    id: str
    name: str
    sku: str
    price: Decimal
    discount: Decimal = Decimal("0")
    image_url: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE
    stock: int
    reserved: int = 0
    purchases: int = 0
    low_stock_threshold: int = 5
    variants: list[ProductVariant] = Field(default_factory=list)

    def find_variant(self, selected: dict[str, str]) -> Optional[ProductVariant]:
        if not selected:
            return None
        for variant in self.variants:
            if variant.matches(selected):
                return variant
        return None


class Coupon(BaseModel):
    """Reference data, read only for checkout"""
    code: str
    discount_type: DiscountType
    value: Decimal
    min_order: Decimal = Decimal("0")
    active: bool = True


class ItemPricing(BaseModel):
    product_id: str
    product_name: str
    unit_price: Decimal
    effective_price: Decimal
    quantity: int
    item_total: Decimal


class PriceBreakdown(BaseModel):
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    tax_rate: Decimal
    shipping_method: ShippingMethod
    coupon_code: Optional[str] = None
    currency: str = "KES"
    items: list[ItemPricing] = Field(default_factory=list)
    labels: dict[str, Optional[str]] = Field(default_factory=dict)


class OrderItem(BaseModel):
    """Immutable snapshot of a product at order time"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    sku: str
    image_url: Optional[str] = None
    unit_price: Decimal
    quantity: int
    variant: dict[str, str] = Field(default_factory=dict)
    line_total: Decimal


class StatusChange(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None
    actor: str
    timestamp: datetime


class PaymentAttempt(BaseModel):
    id: str
    provider: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    correlation_id: Optional[str] = None
    provider_refs: dict = Field(default_factory=dict)
    phone_number: Optional[str] = None
    card_reference: Optional[str] = None
    result_code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class TrackingInfo(BaseModel):
    tracking_number: str
    carrier: str
    shipped_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None


class Order(BaseModel):
    """Domain Entity: order aggregate root"""
    id: str
    order_number: str
    user_id: str
    items: list[OrderItem]
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    coupon_code: Optional[str] = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.CREATED
    payment_attempts: list[PaymentAttempt] = Field(default_factory=list)
    provider_metadata: dict = Field(default_factory=dict)
    tracking: Optional[TrackingInfo] = None
    status_history: list[StatusChange] = Field(default_factory=list)
    idempotency_key: Optional[str] = None
    delivery_instructions: Optional[str] = None
    notes: Optional[str] = None
    version: int = 1
    created_at: datetime
    updated_at: datetime
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_total(self) -> "Order":
        expected = self.subtotal + self.tax_amount + self.shipping_amount - self.discount_amount
        if expected != self.total_amount:
            raise ValueError(f"total_amount {self.total_amount} does not match breakdown {expected}")
        return self

    @property
    def is_payment_terminal(self) -> bool:
        return self.payment_status in TERMINAL_PAYMENT_STATUSES

    def find_attempt(self, correlation_id: str) -> Optional[PaymentAttempt]:
        for attempt in self.payment_attempts:
            if attempt.correlation_id == correlation_id:
                return attempt
        return None

    def pending_attempts(self) -> list[PaymentAttempt]:
        return [a for a in self.payment_attempts if a.status == PaymentStatus.PROCESSING]

    def completed_attempt(self) -> Optional[PaymentAttempt]:
        for attempt in self.payment_attempts:
            if attempt.status == PaymentStatus.COMPLETED:
                return attempt
        return None


class StockReservation(BaseModel):
    id: str
    order_id: str
    product_id: str
    variant_index: Optional[int] = None
    quantity: int
    status: ReservationStatus
    created_at: datetime
    expires_at: datetime

    @property
    def target(self) -> str:
        return "main" if self.variant_index is None else f"variant:{self.variant_index}"


class ProviderResponse(BaseModel):
    """What a payment provider said about one attempt"""
    outcome: PaymentOutcome
    correlation_id: Optional[str] = None
    provider_refs: dict = Field(default_factory=dict)
    result_code: Optional[str] = None
    failure_reason: Optional[str] = None
    customer_message: Optional[str] = None


class PaymentResult(BaseModel):
    order_id: str
    order_number: str
    status: PaymentOutcome
    payment_status: PaymentStatus
    order_status: OrderStatus
    correlation_id: Optional[str] = None
    message: str
    failure_reason: Optional[str] = None
    retry_path: Optional[str] = None
    provider_data: dict = Field(default_factory=dict)
