from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from checkout_service.application.update_order_status import StatusAction
from checkout_service.domain.models import (
    Address, CartItem, Order, OrderItem, OrderStatus, PaymentMethod, PaymentResult, PaymentStatus,
    PriceBreakdown, ShippingMethod, StatusChange, TrackingInfo
)


class InitiateCheckoutRequest(BaseModel):
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: Optional[str] = None
    payment_method: PaymentMethod
    payment_details: Optional[dict] = None
    delivery_instructions: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    idempotency_key: Optional[str] = None


class PaymentRequest(BaseModel):
    payment_data: dict = Field(default_factory=dict)


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    action: StatusAction
    reason: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class PaymentAttemptView(BaseModel):
    provider: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    correlation_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class OrderResponse(BaseModel):
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
    shipping_method: ShippingMethod
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    status: OrderStatus
    payment_attempts: list[PaymentAttemptView]
    tracking: Optional[TrackingInfo] = None
    status_history: list[StatusChange]
    delivery_instructions: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order):
        data = order.model_dump(exclude={"provider_metadata", "idempotency_key", "version"})
        data["payment_attempts"] = [PaymentAttemptView(**a) for a in data["payment_attempts"]]
        return cls(**data)


class CheckoutSummaryResponse(BaseModel):
    items: list[CartItem]
    pricing: PriceBreakdown


class CheckoutResponse(BaseModel):
    message: str
    order: OrderResponse
    pricing: Optional[PriceBreakdown] = None
    payment: Optional[PaymentResult] = None


class CheckoutStatusResponse(BaseModel):
    order_id: str
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    total_amount: Decimal
    correlation_id: Optional[str] = None

    @classmethod
    def from_domain(cls, order: Order):
        pending = order.pending_attempts()
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            total_amount=order.total_amount,
            correlation_id=pending[-1].correlation_id if pending else None,
        )


class ErrorResponse(BaseModel):
    detail: str
