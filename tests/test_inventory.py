"""Tests for stock reservation against the real repositories."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from checkout_service.domain.exceptions import InsufficientStockError
from checkout_service.domain.models import CartItem, ProductStatus, ReservationStatus

from factories import get_product, make_product, make_variant, seed


async def reserve(uow, inventory, items, order_id="o1", now=None):
    async with uow() as tx:
        try:
            reservations = await inventory.reserve(tx, items, order_id, hold_minutes=30, now=now)
            await tx.commit()
            return reservations
        except InsufficientStockError:
            await tx.rollback()
            raise


async def test_reserve_moves_stock_to_reserved(uow, inventory):
    await seed(uow, make_product("p1", stock=5))

    reservations = await reserve(uow, inventory, [CartItem(product_id="p1", quantity=2)])

    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved) == (3, 2)
    assert len(reservations) == 1
    assert reservations[0].status == ReservationStatus.ACTIVE


async def test_reserve_is_all_or_nothing(uow, inventory):
    """Test that one short line leaves every pool untouched and reports each shortfall."""
    await seed(uow, make_product("p1", stock=5), make_product("p2", stock=1), make_product("p3", stock=0))
    items = [
        CartItem(product_id="p1", quantity=2),
        CartItem(product_id="p2", quantity=3),
        CartItem(product_id="p3", quantity=1),
    ]

    with pytest.raises(InsufficientStockError) as exc:
        await reserve(uow, inventory, items)

    assert [(s.product_id, s.requested, s.available) for s in exc.value.shortfalls] == [("p2", 3, 1), ("p3", 1, 0)]
    for product_id, stock in (("p1", 5), ("p2", 1), ("p3", 0)):
        product = await get_product(uow, product_id)
        assert (product.stock, product.reserved) == (stock, 0)
    async with uow() as tx:
        assert await tx.reservations.list_by_order("o1") == []


async def test_two_concurrent_reservations_for_last_unit(uow, inventory):
    """Test that with stock 1 exactly one of two concurrent reservations wins."""
    await seed(uow, make_product("p1", stock=1))
    item = [CartItem(product_id="p1", quantity=1)]

    results = await asyncio.gather(
        reserve(uow, inventory, item, order_id="o1"),
        reserve(uow, inventory, item, order_id="o2"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, list)) == 1
    assert sum(1 for r in results if isinstance(r, InsufficientStockError)) == 1
    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved) == (0, 1)
    assert product.status == ProductStatus.OUT_OF_STOCK


async def test_release_is_idempotent_and_conserves_stock(uow, inventory):
    await seed(uow, make_product("p1", stock=4))
    await reserve(uow, inventory, [CartItem(product_id="p1", quantity=4)])
    assert (await get_product(uow, "p1")).status == ProductStatus.OUT_OF_STOCK

    async with uow() as tx:
        assert await inventory.release(tx, "o1") == 1
        await tx.commit()
    async with uow() as tx:
        assert await inventory.release(tx, "o1") == 0
        await tx.commit()

    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved) == (4, 0)
    assert product.status == ProductStatus.ACTIVE


async def test_confirm_settles_reservation(uow, inventory):
    await seed(uow, make_product("p1", stock=10))
    await reserve(uow, inventory, [CartItem(product_id="p1", quantity=3)])

    async with uow() as tx:
        await inventory.confirm(tx, "o1")
        await tx.commit()

    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved, product.purchases) == (7, 0, 3)
    async with uow() as tx:
        reservations = await tx.reservations.list_by_order("o1")
    assert [r.status for r in reservations] == [ReservationStatus.CONFIRMED]


async def test_variant_lines_use_their_own_pool(uow, inventory):
    await seed(uow, make_product(
        "shirt", stock=50, variants=[make_variant(0, 2, size="M"), make_variant(1, 0, size="XL")]
    ))

    await reserve(uow, inventory, [CartItem(product_id="shirt", quantity=2, variant={"size": "M"})])
    with pytest.raises(InsufficientStockError) as exc:
        await reserve(uow, inventory, [CartItem(product_id="shirt", quantity=1, variant={"size": "XL"})], "o2")

    assert exc.value.shortfalls[0].target == "variant:1"
    product = await get_product(uow, "shirt")
    assert product.stock == 50
    assert [(v.stock, v.reserved) for v in product.variants] == [(0, 2), (0, 0)]


async def test_check_availability_reports_every_line(uow, inventory):
    await seed(uow, make_product("p1", stock=3), make_product("p2", stock=9, status=ProductStatus.INACTIVE))

    async with uow() as tx:
        reports = await inventory.check_availability(tx, [
            CartItem(product_id="p1", quantity=2),
            CartItem(product_id="p2", quantity=1),
            CartItem(product_id="missing", quantity=1),
        ])

    assert [(r.available, r.reason) for r in reports] == [
        (True, "available"), (False, "product not active"), (False, "product not found"),
    ]
    assert reports[0].is_low_stock


async def test_expired_reservations_are_listed_by_order(uow, inventory):
    await seed(uow, make_product("p1", stock=10))
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    await reserve(uow, inventory, [CartItem(product_id="p1", quantity=1)], order_id="old", now=past)
    await reserve(uow, inventory, [CartItem(product_id="p1", quantity=1)], order_id="fresh")

    async with uow() as tx:
        expired = await inventory.list_expired_order_ids(tx, datetime.now(timezone.utc))

    assert expired == ["old"]
