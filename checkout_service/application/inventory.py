import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from checkout_service.domain.exceptions import InsufficientStockError, StockShortfall
from checkout_service.domain.models import (
    CartItem, Product, ProductStatus, ReservationStatus, StockReservation
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilityReport:
    product_id: str
    product_name: Optional[str]
    available: bool
    reason: str
    requested_quantity: int
    available_quantity: int
    is_low_stock: bool = False

    def as_shortfall(self, target: str = "main") -> StockShortfall:
        return StockShortfall(
            product_id=self.product_id,
            target=target,
            requested=self.requested_quantity,
            available=self.available_quantity,
            reason=self.reason,
            product_name=self.product_name,
        )


def _resolve_pool(product: Product, item: CartItem) -> tuple[bool, Optional[int], int]:
    """Returns (found, variant_index, available) for the pool a cart line draws from."""
    if item.variant:
        variant = product.find_variant(item.variant)
        if variant is None:
            return False, None, 0
        return True, variant.index, variant.stock
    return True, None, product.stock


def _target(variant_index: Optional[int]) -> str:
    return "main" if variant_index is None else f"variant:{variant_index}"


class InventoryReservationManager:
    """The only component that writes stock pools.

    Every method runs inside the caller's unit of work and never commits;
    the caller decides whether the whole batch (plus any order transition
    that goes with it) becomes visible.
    """

    async def check_availability(self, uow, cart_items: list[CartItem]) -> list[AvailabilityReport]:
        products = await uow.products.get_many(list({i.product_id for i in cart_items}))
        reports = []
        for item in cart_items:
            product = products.get(item.product_id)
            if product is None:
                reports.append(AvailabilityReport(
                    item.product_id, None, False, "product not found", item.quantity, 0
                ))
                continue
            if product.status == ProductStatus.INACTIVE:
                reports.append(AvailabilityReport(
                    item.product_id, product.name, False, "product not active", item.quantity, 0
                ))
                continue
            found, _, available = _resolve_pool(product, item)
            if not found:
                reports.append(AvailabilityReport(
                    item.product_id, product.name, False, "variant not found", item.quantity, 0
                ))
                continue
            ok = available >= item.quantity
            reports.append(AvailabilityReport(
                product_id=item.product_id,
                product_name=product.name,
                available=ok,
                reason="available" if ok else "insufficient stock",
                requested_quantity=item.quantity,
                available_quantity=available,
                is_low_stock=available <= product.low_stock_threshold,
            ))
        return reports

    async def reserve(
        self,
        uow,
        cart_items: list[CartItem],
        order_id: str,
        hold_minutes: int,
        now: Optional[datetime] = None,
    ) -> list[StockReservation]:
        """Reserves every line or none.

        Each pool is decremented with a conditional UPDATE. Shortfalls are
        collected for all lines before raising, and the raise leaves the
        caller's transaction to roll back whatever did succeed.
        """
        now = now or datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=hold_minutes)
        products = await uow.products.get_many(list({i.product_id for i in cart_items}))

        shortfalls: list[StockShortfall] = []
        reservations: list[StockReservation] = []
        for item in cart_items:
            product = products.get(item.product_id)
            if product is None:
                shortfalls.append(StockShortfall(item.product_id, "main", item.quantity, 0, "product not found"))
                continue
            found, variant_index, _ = _resolve_pool(product, item)
            if not found:
                shortfalls.append(StockShortfall(
                    item.product_id, "variant", item.quantity, 0, "variant not found", product.name
                ))
                continue

            if not await uow.products.decrement_stock(product.id, variant_index, item.quantity):
                current = await uow.products.get_by_id(product.id)
                _, _, available = _resolve_pool(current, item)
                shortfalls.append(StockShortfall(
                    product.id, _target(variant_index), item.quantity, available,
                    "insufficient stock", product.name,
                ))
                continue

            reservation = StockReservation(
                id=str(uuid.uuid4()),
                order_id=order_id,
                product_id=product.id,
                variant_index=variant_index,
                quantity=item.quantity,
                status=ReservationStatus.ACTIVE,
                created_at=now,
                expires_at=expires_at,
            )
            await uow.reservations.add(reservation)
            reservations.append(reservation)

        if shortfalls:
            logger.info(f"Reservation for order {order_id} rejected: {len(shortfalls)} item(s) short")
            raise InsufficientStockError(shortfalls)

        for product_id in {r.product_id for r in reservations}:
            await uow.products.refresh_status(product_id)
        logger.info(f"Reserved {len(reservations)} pool(s) for order {order_id} until {expires_at.isoformat()}")
        return reservations

    async def release(self, uow, order_id: str, status: ReservationStatus = ReservationStatus.RELEASED) -> int:
        """Puts active reservations back. Returns how many were restored; 0 is fine."""
        active = await uow.reservations.list_by_order(order_id, ReservationStatus.ACTIVE)
        if not active:
            return 0
        for reservation in active:
            await uow.products.restore_stock(reservation.product_id, reservation.variant_index, reservation.quantity)
        await uow.reservations.update_status([r.id for r in active], status)
        for product_id in {r.product_id for r in active}:
            await uow.products.refresh_status(product_id)
        logger.info(f"Released {len(active)} reservation(s) of order {order_id} as {status.value}")
        return len(active)

    async def confirm(self, uow, order_id: str) -> int:
        active = await uow.reservations.list_by_order(order_id, ReservationStatus.ACTIVE)
        for reservation in active:
            await uow.products.settle_reserved(reservation.product_id, reservation.variant_index, reservation.quantity)
            await uow.products.add_purchases(reservation.product_id, reservation.quantity)
        await uow.reservations.update_status([r.id for r in active], ReservationStatus.CONFIRMED)
        logger.info(f"Confirmed {len(active)} reservation(s) of order {order_id}")
        return len(active)

    async def restock(self, uow, order_id: str) -> int:
        """Returns stock of an already confirmed order (cancelled after payment)."""
        confirmed = await uow.reservations.list_by_order(order_id, ReservationStatus.CONFIRMED)
        for reservation in confirmed:
            await uow.products.restock_confirmed(reservation.product_id, reservation.variant_index, reservation.quantity)
        await uow.reservations.update_status([r.id for r in confirmed], ReservationStatus.RELEASED)
        for product_id in {r.product_id for r in confirmed}:
            await uow.products.refresh_status(product_id)
        if confirmed:
            logger.info(f"Restocked {len(confirmed)} confirmed reservation(s) of order {order_id}")
        return len(confirmed)

    async def list_expired_order_ids(self, uow, now: datetime, limit: int = 50) -> list[str]:
        return await uow.reservations.list_expired_order_ids(now, limit)
