"""In-memory collaborators and seeding helpers shared by the tests."""

from decimal import Decimal

from checkout_service.application.interfaces import (
    CartService, EventPublisher, NotificationsService, PaymentProvider
)
from checkout_service.domain.models import (
    CartItem, Coupon, DiscountType, PaymentMethod, PaymentOutcome, Product, ProductVariant, ProviderResponse
)


class FakeCart(CartService):
    def __init__(self):
        self.carts: dict[str, list[CartItem]] = {}
        self.cleared: list[str] = []

    def put(self, user_id: str, *items: CartItem):
        self.carts[user_id] = list(items)

    async def get_cart(self, user_id):
        return list(self.carts.get(user_id, []))

    async def clear_cart(self, user_id):
        self.cleared.append(user_id)
        self.carts.pop(user_id, None)
        return True


class FakeNotifications(NotificationsService):
    def __init__(self, succeed: bool = True):
        self.sent = []
        self.succeed = succeed

    async def send(self, message, reference_id, idempotency_key, user_id):
        self.sent.append({"message": message, "reference_id": reference_id,
                          "idempotency_key": idempotency_key, "user_id": user_id})
        return self.succeed


class FakePublisher(EventPublisher):
    def __init__(self):
        self.published = []

    async def publish(self, event_type, payload, key):
        self.published.append((event_type, payload, key))
        return True


class FakeProvider(PaymentProvider):
    """Scripted provider: initiate/query_status pop their next answer
    (a ProviderResponse or an exception to raise). Status queries with
    nothing scripted report the payment as still pending."""

    def __init__(
        self, method: PaymentMethod, is_async: bool = False, supports_status_query: bool = False,
        signed_callbacks: bool = True,
    ):
        self.method = method
        self.is_async = is_async
        self.supports_status_query = supports_status_query
        self.signed_callbacks = signed_callbacks
        self.initiate_results = []
        self.status_results = []
        self.initiated = []

    async def initiate(self, order, details):
        self.initiated.append((order.id, details))
        result = self.initiate_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def query_status(self, correlation_id):
        if not self.status_results:
            return pending(correlation_id)
        result = self.status_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def parse_callback(self, payload):
        return ProviderResponse(**payload)


def completed(correlation_id=None, **refs):
    return ProviderResponse(outcome=PaymentOutcome.COMPLETED, correlation_id=correlation_id, provider_refs=refs)


def pending(correlation_id):
    return ProviderResponse(outcome=PaymentOutcome.PENDING, correlation_id=correlation_id)


def failed(reason="Insufficient funds", correlation_id=None):
    return ProviderResponse(
        outcome=PaymentOutcome.FAILED, correlation_id=correlation_id, failure_reason=reason, result_code="1"
    )


def make_product(product_id="p1", price="1000", stock=10, **kwargs) -> Product:
    return Product(
        id=product_id,
        name=kwargs.pop("name", f"Product {product_id}"),
        sku=kwargs.pop("sku", f"SKU-{product_id}"),
        price=Decimal(price),
        stock=stock,
        **kwargs,
    )


def make_variant(index, stock, price=None, **attributes) -> ProductVariant:
    return ProductVariant(index=index, attributes=attributes, stock=stock,
                          price=Decimal(price) if price is not None else None)


async def seed(uow, *products, coupons=()):
    async with uow() as tx:
        for product in products:
            await tx.products.create(product)
        for coupon in coupons:
            await tx.coupons.create(coupon)
        await tx.commit()


async def get_product(uow, product_id):
    async with uow() as tx:
        return await tx.products.get_by_id(product_id)


async def get_order(uow, order_id):
    async with uow() as tx:
        return await tx.orders.get_by_id(order_id)


async def outbox_events(uow, event_type=None):
    async with uow() as tx:
        events = await tx.outbox.get_pending(limit=1000)
    return [e for e in events if event_type is None or e["event_type"] == event_type]


WELCOME10 = Coupon(code="WELCOME10", discount_type=DiscountType.PERCENTAGE, value=Decimal("10"),
                   min_order=Decimal("1000"))

