import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel

from checkout_service.application.interfaces import CartService
from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.application.process_payment import PaymentGatewayOrchestrator
from checkout_service.domain.exceptions import (
    EmptyCartError, InsufficientStockError, InvalidCouponError, ProductNotFoundError, ReservationReleaseError
)
from checkout_service.domain.models import (
    Address, CartItem, Order, OrderItem, OrderStatus, PaymentMethod, PaymentResult, PriceBreakdown,
    Product, ShippingMethod, StatusChange
)
from checkout_service.domain.pricing import PricingCalculator, PricingLine

logger = logging.getLogger(__name__)


class CheckoutSummaryDTO(BaseModel):
    user_id: str
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: Optional[str] = None
    shipping_address: Optional[Address] = None
    county: Optional[str] = None


class InitiateCheckoutDTO(BaseModel):
    user_id: str
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: Optional[str] = None
    payment_method: PaymentMethod
    payment_details: Optional[dict] = None
    delivery_instructions: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


class CheckoutQuote(BaseModel):
    items: list[CartItem]
    pricing: PriceBreakdown


class CheckoutResult(BaseModel):
    order: Order
    pricing: Optional[PriceBreakdown] = None
    payment: Optional[PaymentResult] = None
    replayed: bool = False


class CheckoutOrchestrator:
    """Turns a cart into an order awaiting (or done with) payment.

    Sequence: cart -> availability -> pricing -> order in pending_payment ->
    reservation -> optional payment. Past order creation nothing is left
    half done: if the reservation or the start of payment raises, the order
    is failed and its stock released before the error propagates.
    """

    def __init__(
        self,
        unit_of_work,
        cart_service: CartService,
        pricing: PricingCalculator,
        inventory: InventoryReservationManager,
        lifecycle: OrderLifecycle,
        payments: PaymentGatewayOrchestrator,
        hold_minutes: int = 30,
        estimated_delivery_days: int = 7,
    ):
        self._uow = unit_of_work
        self._cart = cart_service
        self._pricing = pricing
        self._inventory = inventory
        self._lifecycle = lifecycle
        self._payments = payments
        self._hold_minutes = hold_minutes
        self._estimated_delivery_days = estimated_delivery_days

    async def get_summary(self, dto: CheckoutSummaryDTO) -> CheckoutQuote:
        cart = await self._load_cart(dto.user_id)
        async with self._uow() as uow:
            products = await uow.products.get_many([i.product_id for i in cart])
            address = dto.shipping_address
            if address is None and dto.county:
                # only the county matters for a quote
                address = Address.model_construct(county=dto.county)
            pricing = await self._quote(uow, cart, products, dto.shipping_method, dto.coupon_code, address)
        return CheckoutQuote(items=cart, pricing=pricing)

    async def initiate(self, dto: InitiateCheckoutDTO) -> CheckoutResult:
        logger.info(f"Checkout for user {dto.user_id}, payment method {dto.payment_method.value}")

        if dto.idempotency_key:
            async with self._uow() as uow:
                existing = await uow.orders.get_by_idempotency_key(dto.user_id, dto.idempotency_key)
            if existing:
                logger.info(f"Checkout already done for key {dto.idempotency_key}: order {existing.id}")
                return CheckoutResult(order=existing, replayed=True)

        self._payments.provider_for(dto.payment_method)
        cart = await self._load_cart(dto.user_id)

        async with self._uow() as uow:
            reports = await self._inventory.check_availability(uow, cart)
            unavailable = [r for r in reports if not r.available]
            if unavailable:
                raise InsufficientStockError([r.as_shortfall() for r in unavailable])
            products = await uow.products.get_many([i.product_id for i in cart])
            pricing = await self._quote(uow, cart, products, dto.shipping_method, dto.coupon_code, dto.shipping_address)

        order = self._build_order(dto, cart, products, pricing)
        async with self._uow() as uow:
            await uow.orders.create(order)
            order = await self._lifecycle.submit(uow, order, f"user:{dto.user_id}")
            await uow.commit()
        logger.info(f"Order {order.id} ({order.order_number}) created, total {order.total_amount}")

        try:
            async with self._uow() as uow:
                await self._inventory.reserve(uow, cart, order.id, self._hold_minutes)
                await uow.commit()
        except Exception as e:
            await self._fail_order(order.id, f"inventory reservation failed: {e}")
            raise

        payment = None
        if dto.payment_details is not None:
            try:
                payment = await self._payments.pay_order(order, dto.payment_details)
            except Exception as e:
                logger.warning(f"Payment for order {order.id} could not be started: {e}")
                await self._fail_order(order.id, f"payment could not be started: {e}")
                raise
            async with self._uow() as uow:
                order = await uow.orders.get_by_id(order.id)
        return CheckoutResult(order=order, pricing=pricing, payment=payment)

    async def _load_cart(self, user_id: str) -> list[CartItem]:
        cart = await self._cart.get_cart(user_id)
        if not cart:
            raise EmptyCartError()
        return cart

    async def _quote(
        self, uow, cart: list[CartItem], products: dict[str, Product],
        shipping_method: ShippingMethod, coupon_code: Optional[str], shipping_address: Optional[Address],
    ) -> PriceBreakdown:
        missing = [i.product_id for i in cart if i.product_id not in products]
        if missing:
            raise ProductNotFoundError(f"Products not found: {', '.join(missing)}")
        coupon = None
        if coupon_code:
            coupon = await uow.coupons.get_by_code(coupon_code)
            if coupon is None or not coupon.active:
                raise InvalidCouponError(coupon_code)
        lines = [PricingLine(products[i.product_id], i.quantity, i.variant) for i in cart]
        return self._pricing.calculate(lines, shipping_method, coupon, shipping_address)

    def _build_order(
        self, dto: InitiateCheckoutDTO, cart: list[CartItem], products: dict[str, Product], pricing: PriceBreakdown
    ) -> Order:
        now = datetime.now(timezone.utc)
        items = []
        for cart_item, line in zip(cart, pricing.items):
            product = products[cart_item.product_id]
            items.append(OrderItem(
                product_id=product.id,
                name=product.name,
                sku=product.sku,
                image_url=product.image_url,
                unit_price=line.effective_price,
                quantity=cart_item.quantity,
                variant=cart_item.variant,
                line_total=line.item_total,
            ))
        return Order(
            id=str(uuid.uuid4()),
            order_number=f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}",
            user_id=dto.user_id,
            items=items,
            subtotal=pricing.subtotal,
            tax_amount=pricing.tax_amount,
            shipping_amount=pricing.shipping_amount,
            discount_amount=pricing.discount_amount,
            total_amount=pricing.total_amount,
            coupon_code=pricing.coupon_code,
            shipping_method=dto.shipping_method,
            shipping_address=dto.shipping_address,
            billing_address=dto.billing_address or dto.shipping_address,
            payment_method=dto.payment_method,
            status=OrderStatus.CREATED,
            status_history=[StatusChange(
                status=OrderStatus.CREATED, reason="order created", actor=f"user:{dto.user_id}", timestamp=now
            )],
            idempotency_key=dto.idempotency_key,
            delivery_instructions=dto.delivery_instructions,
            notes=dto.notes,
            created_at=now,
            updated_at=now,
            estimated_delivery=now + timedelta(days=self._estimated_delivery_days),
        )

    async def _fail_order(self, order_id: str, reason: str) -> None:
        try:
            async with self._uow() as uow:
                order = await uow.orders.get_by_id(order_id)
                if order.status != OrderStatus.PENDING_PAYMENT:
                    logger.info(f"Order {order_id} already {order.status.value}, nothing to undo")
                    return
                await self._lifecycle.fail_payment(uow, order, reason, "system:checkout")
                await uow.commit()
        except Exception as e:
            logger.critical(f"ALERT: could not fail order {order_id} and release its stock: {e}")
            raise ReservationReleaseError(f"Order {order_id} left in pending_payment") from e
