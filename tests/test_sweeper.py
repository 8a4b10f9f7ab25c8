"""Tests for the expired reservation sweeper."""

from datetime import datetime, timedelta, timezone

import pytest

from checkout_service.application.expire_reservations import EXPIRY_REASON, ExpireReservationsUseCase
from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.domain.models import (
    CartItem, OrderStatus, PaymentMethod, PaymentStatus, ReservationStatus
)

from factories import get_order, get_product, make_product, outbox_events, pending, seed


def later(minutes=31):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def sweeper(uow, inventory, lifecycle):
    return ExpireReservationsUseCase(uow, inventory, lifecycle)


async def test_expired_checkout_is_cancelled_and_stock_restored(uow, sweeper, start_checkout):
    await seed(uow, make_product("p1", stock=3))
    order = (await start_checkout(CartItem(product_id="p1", quantity=3))).order
    assert (await get_product(uow, "p1")).stock == 0

    report = await sweeper(now=later())

    assert report.cancelled == [order.id]
    stored = await get_order(uow, order.id)
    assert stored.status == OrderStatus.CANCELLED
    assert stored.status_history[-1].reason == EXPIRY_REASON
    assert stored.status_history[-1].actor == "system:sweeper"
    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved) == (3, 0)
    async with uow() as tx:
        reservations = await tx.reservations.list_by_order(order.id)
    assert [r.status for r in reservations] == [ReservationStatus.EXPIRED]
    events = await outbox_events(uow, "order.status_changed")
    assert events[-1]["event_data"]["status"] == "cancelled"


async def test_reservations_within_hold_window_are_kept(uow, sweeper, start_checkout):
    await seed(uow, make_product("p1", stock=3))
    order = (await start_checkout(CartItem(product_id="p1", quantity=1))).order

    report = await sweeper(now=later(minutes=5))

    assert report.cancelled == []
    assert (await get_order(uow, order.id)).status == OrderStatus.PENDING_PAYMENT


async def test_second_sweep_finds_nothing(uow, sweeper, start_checkout):
    await seed(uow, make_product("p1", stock=3))
    await start_checkout(CartItem(product_id="p1", quantity=1))

    await sweeper(now=later())
    report = await sweeper(now=later())

    assert report.cancelled == report.expired_only == report.skipped == []
    assert (await get_product(uow, "p1")).stock == 3


async def test_orphan_reservations_are_expired(uow, inventory, sweeper):
    await seed(uow, make_product("p1", stock=5))
    async with uow() as tx:
        await inventory.reserve(
            tx, [CartItem(product_id="p1", quantity=2)], "ghost", hold_minutes=30,
            now=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        await tx.commit()

    report = await sweeper()

    assert report.expired_only == ["ghost"]
    assert (await get_product(uow, "p1")).stock == 5


async def test_payment_confirmed_during_sweep_wins(uow, inventory, payments, mpesa, start_checkout):
    """Test that a callback landing between the sweeper's read and write keeps the order confirmed."""
    await seed(uow, make_product("p1", stock=5))
    order = (await start_checkout(CartItem(product_id="p1", quantity=2))).order
    mpesa.initiate_results.append(pending("ws_CO_race"))
    await payments.pay(order.id, "u1", {"phone_number": "0712345678"})

    class RacingLifecycle(OrderLifecycle):
        async def cancel(self, uow, order, reason, actor):
            await payments.handle_callback(PaymentMethod.MPESA, {
                "outcome": "completed", "correlation_id": "ws_CO_race", "provider_refs": {"mpesa_receipt": "R1"},
            })
            return await super().cancel(uow, order, reason, actor)

    sweeper = ExpireReservationsUseCase(uow, inventory, RacingLifecycle(inventory))
    report = await sweeper(now=later())

    assert report.skipped == [order.id]
    stored = await get_order(uow, order.id)
    assert (stored.status, stored.payment_status) == (OrderStatus.CONFIRMED, PaymentStatus.COMPLETED)
    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved, product.purchases) == (3, 0, 2)
    async with uow() as tx:
        reservations = await tx.reservations.list_by_order(order.id)
    assert [r.status for r in reservations] == [ReservationStatus.CONFIRMED]


async def test_failed_release_raises_alert_and_sweep_continues(uow, inventory, start_checkout, caplog):
    await seed(uow, make_product("p1", stock=5), make_product("p2", stock=5))
    broken = (await start_checkout(CartItem(product_id="p1", quantity=1), user_id="u1")).order
    healthy = (await start_checkout(CartItem(product_id="p2", quantity=1), user_id="u2")).order

    class BrokenLifecycle(OrderLifecycle):
        async def cancel(self, uow, order, reason, actor):
            if order.id == broken.id:
                raise RuntimeError("database went away")
            return await super().cancel(uow, order, reason, actor)

    report = await ExpireReservationsUseCase(uow, inventory, BrokenLifecycle(inventory))(now=later())

    assert report.failed == [broken.id]
    assert report.cancelled == [healthy.id]
    assert (await get_order(uow, broken.id)).status == OrderStatus.PENDING_PAYMENT
    assert (await get_product(uow, "p1")).reserved == 1
    alerts = [r for r in caplog.records if r.levelname == "CRITICAL"]
    assert len(alerts) == 1
    assert alerts[0].getMessage().startswith(f"ALERT: release of expired reservations for order {broken.id}")
