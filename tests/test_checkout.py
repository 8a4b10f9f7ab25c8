"""Tests for the checkout orchestrator."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from checkout_service.application.checkout import CheckoutOrchestrator, CheckoutSummaryDTO, InitiateCheckoutDTO
from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.domain.exceptions import (
    EmptyCartError, InsufficientStockError, InvalidCouponError, InvalidPaymentDetailsError,
    UnsupportedPaymentMethodError
)
from checkout_service.domain.models import (
    CartItem, OrderStatus, PaymentMethod, PaymentOutcome, ReservationStatus, ShippingMethod
)

from factories import WELCOME10, completed, get_order, get_product, make_product, seed


async def test_initiate_creates_pending_order_with_reservation(uow, start_checkout):
    await seed(uow, make_product("A", price="1000", stock=10), coupons=[WELCOME10])

    result = await start_checkout(CartItem(product_id="A", quantity=2), coupon_code="WELCOME10")

    order = result.order
    assert order.status == OrderStatus.PENDING_PAYMENT
    assert order.order_number.startswith("ORD-")
    assert order.total_amount == Decimal("2420.00")
    assert order.coupon_code == "WELCOME10"
    assert [h.status for h in order.status_history] == [OrderStatus.CREATED, OrderStatus.PENDING_PAYMENT]
    assert order.items[0].unit_price == Decimal("1000.00")
    assert result.payment is None

    product = await get_product(uow, "A")
    assert (product.stock, product.reserved) == (8, 2)
    async with uow() as tx:
        reservations = await tx.reservations.list_by_order(order.id)
    assert [r.status for r in reservations] == [ReservationStatus.ACTIVE]


async def test_initiate_with_payment_details_pays_immediately(uow, card, start_checkout):
    await seed(uow, make_product("A", stock=10))
    card.initiate_results.append(completed("pi_9"))

    result = await start_checkout(
        CartItem(product_id="A", quantity=1),
        payment_method=PaymentMethod.CARD,
        payment_details={"payment_method_id": "pm_card_visa"},
    )

    assert result.payment.status == PaymentOutcome.COMPLETED
    assert result.order.status == OrderStatus.CONFIRMED


async def test_empty_cart_is_rejected(checkout, address):
    with pytest.raises(EmptyCartError):
        await checkout.initiate(InitiateCheckoutDTO(
            user_id="nobody", shipping_address=address, payment_method=PaymentMethod.MPESA
        ))


async def test_unknown_coupon_is_rejected_before_reserving(uow, start_checkout):
    await seed(uow, make_product("A", stock=10))

    with pytest.raises(InvalidCouponError):
        await start_checkout(CartItem(product_id="A", quantity=1), coupon_code="NOPE")

    assert (await get_product(uow, "A")).reserved == 0


async def test_shortfalls_are_reported_together(uow, start_checkout):
    await seed(uow, make_product("A", stock=1), make_product("B", stock=0), make_product("C", stock=5))

    with pytest.raises(InsufficientStockError) as exc:
        await start_checkout(
            CartItem(product_id="A", quantity=2),
            CartItem(product_id="B", quantity=1),
            CartItem(product_id="C", quantity=1),
        )

    assert {s.product_id for s in exc.value.shortfalls} == {"A", "B"}
    assert (await get_product(uow, "C")).reserved == 0


async def test_lost_reservation_race_fails_the_order(uow, cart, pricing, lifecycle, payments, address):
    """Test that an order whose reservation fails after creation ends in failed."""

    class OptimisticInventory(InventoryReservationManager):
        async def check_availability(self, uow, cart_items):
            return []

    await seed(uow, make_product("A", stock=1))
    checkout = CheckoutOrchestrator(uow, cart, pricing, OptimisticInventory(), lifecycle, payments)
    cart.put("u1", CartItem(product_id="A", quantity=3))

    with pytest.raises(InsufficientStockError):
        await checkout.initiate(InitiateCheckoutDTO(
            user_id="u1", shipping_address=address, payment_method=PaymentMethod.MPESA, idempotency_key="k-race"
        ))

    async with uow() as tx:
        order = await tx.orders.get_by_idempotency_key("u1", "k-race")
    assert order.status == OrderStatus.FAILED
    assert (await get_product(uow, "A")).stock == 1


async def test_idempotency_key_replays_existing_order(uow, start_checkout):
    await seed(uow, make_product("A", stock=10))

    first = await start_checkout(CartItem(product_id="A", quantity=1), idempotency_key="k-1")
    second = await start_checkout(CartItem(product_id="A", quantity=1), idempotency_key="k-1")

    assert second.replayed
    assert second.order.id == first.order.id
    assert (await get_product(uow, "A")).reserved == 1
    assert (await get_order(uow, first.order.id)).status == OrderStatus.PENDING_PAYMENT


async def test_summary_quotes_without_reserving(uow, checkout, cart):
    await seed(uow, make_product("A", price="100", stock=10))
    cart.put("u1", CartItem(product_id="A", quantity=1))

    quote = await checkout.get_summary(CheckoutSummaryDTO(
        user_id="u1", shipping_method=ShippingMethod.EXPRESS, county="Mandera"
    ))

    assert quote.pricing.shipping_amount == Decimal("750.00")
    assert quote.pricing.total_amount == Decimal("866.00")
    assert (await get_product(uow, "A")).reserved == 0


async def test_payment_that_cannot_start_fails_the_order(uow, mpesa, start_checkout):
    await seed(uow, make_product("A", stock=5))
    mpesa.initiate_results.append(InvalidPaymentDetailsError("Invalid phone number: 123"))

    with pytest.raises(InvalidPaymentDetailsError):
        await start_checkout(
            CartItem(product_id="A", quantity=2), payment_details={"phone_number": "123"}, idempotency_key="k-pay"
        )

    async with uow() as tx:
        order = await tx.orders.get_by_idempotency_key("u1", "k-pay")
        reservations = await tx.reservations.list_by_order(order.id)
    assert order.status == OrderStatus.FAILED
    assert [r.status for r in reservations] == [ReservationStatus.RELEASED]
    product = await get_product(uow, "A")
    assert (product.stock, product.reserved) == (5, 0)


async def test_reservation_error_fails_the_order(uow, cart, pricing, lifecycle, payments, address):
    """Test that an unexpected error while reserving leaves no order stuck in pending_payment."""

    class FlakyInventory(InventoryReservationManager):
        async def reserve(self, uow, cart_items, order_id, hold_minutes, now=None):
            await super().reserve(uow, cart_items, order_id, hold_minutes, now)
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

    await seed(uow, make_product("A", stock=5))
    checkout = CheckoutOrchestrator(uow, cart, pricing, FlakyInventory(), lifecycle, payments)
    cart.put("u1", CartItem(product_id="A", quantity=2))

    with pytest.raises(OperationalError):
        await checkout.initiate(InitiateCheckoutDTO(
            user_id="u1", shipping_address=address, payment_method=PaymentMethod.MPESA, idempotency_key="k-db"
        ))

    async with uow() as tx:
        order = await tx.orders.get_by_idempotency_key("u1", "k-db")
        reservations = await tx.reservations.list_by_order(order.id)
    assert order.status == OrderStatus.FAILED
    assert reservations == []
    product = await get_product(uow, "A")
    assert (product.stock, product.reserved) == (5, 0)


async def test_unsupported_payment_method_is_rejected_before_ordering(uow, start_checkout):
    await seed(uow, make_product("A", stock=5))

    with pytest.raises(UnsupportedPaymentMethodError):
        await start_checkout(CartItem(product_id="A", quantity=1), payment_method=PaymentMethod.BANK_TRANSFER)

    assert (await get_product(uow, "A")).reserved == 0


async def test_idempotency_key_is_scoped_to_the_user(uow, start_checkout):
    await seed(uow, make_product("A", stock=10))

    alice = await start_checkout(CartItem(product_id="A", quantity=1), user_id="alice", idempotency_key="k1")
    bob = await start_checkout(CartItem(product_id="A", quantity=1), user_id="bob", idempotency_key="k1")

    assert not bob.replayed
    assert bob.order.id != alice.order.id
    assert bob.order.user_id == "bob"
    assert (await get_product(uow, "A")).reserved == 2
