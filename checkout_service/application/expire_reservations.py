import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.application.order_lifecycle import OrderLifecycle, SWEEPER_ACTOR
from checkout_service.domain.exceptions import ConcurrentOrderUpdateError, IllegalTransitionError
from checkout_service.domain.models import OrderStatus, ReservationStatus

logger = logging.getLogger(__name__)

EXPIRY_REASON = "payment not completed in time"


@dataclass
class SweepReport:
    cancelled: list[str] = field(default_factory=list)
    expired_only: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ExpireReservationsUseCase:
    """Reclaims stock held by checkouts whose hold window has passed.

    Each order is handled in its own unit of work so one broken order does
    not block the rest of the batch.
    """

    def __init__(self, unit_of_work, inventory: InventoryReservationManager, lifecycle: OrderLifecycle):
        self._uow = unit_of_work
        self._inventory = inventory
        self._lifecycle = lifecycle

    async def __call__(self, now: Optional[datetime] = None, limit: int = 50) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        async with self._uow() as uow:
            order_ids = await self._inventory.list_expired_order_ids(uow, now, limit)

        report = SweepReport()
        if not order_ids:
            return report
        logger.info(f"Sweeping {len(order_ids)} order(s) with expired reservations")

        for order_id in order_ids:
            try:
                outcome = await self._sweep_order(order_id)
                getattr(report, outcome).append(order_id)
            except Exception as e:
                logger.critical(
                    f"ALERT: release of expired reservations for order {order_id} not confirmed: {e}",
                    exc_info=True,
                )
                report.failed.append(order_id)
        return report

    async def _sweep_order(self, order_id: str) -> str:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)

            if order is not None and order.status == OrderStatus.PENDING_PAYMENT:
                try:
                    await self._lifecycle.cancel(uow, order, EXPIRY_REASON, SWEEPER_ACTOR)
                    await uow.commit()
                except (ConcurrentOrderUpdateError, IllegalTransitionError) as e:
                    # a payment result got there first
                    await uow.rollback()
                    logger.info(f"Order {order_id} changed while sweeping, leaving it: {e}")
                    return "skipped"
                logger.info(f"Order {order_id} cancelled: {EXPIRY_REASON}")
                return "cancelled"

            if order is None or order.status in (OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.CREATED):
                await self._inventory.release(uow, order_id, ReservationStatus.EXPIRED)
                await uow.commit()
                return "expired_only"

            logger.warning(f"Order {order_id} in status {order.status.value} still holds active reservations")
            return "skipped"
