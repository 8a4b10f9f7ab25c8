import asyncio
import logging

from checkout_service.database import AsyncSessionLocal
from checkout_service.infrastructure.unit_of_work import UnitOfWork
from checkout_service.application.expire_reservations import ExpireReservationsUseCase
from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.config import settings

logger = logging.getLogger(__name__)


def build_sweeper(session_factory=AsyncSessionLocal) -> ExpireReservationsUseCase:
    inventory = InventoryReservationManager()
    return ExpireReservationsUseCase(UnitOfWork(session_factory), inventory, OrderLifecycle(inventory))


async def sweeper_loop(use_case: ExpireReservationsUseCase, interval: float, batch_size: int):
    """Reclaims expired reservations every `interval` seconds until cancelled"""
    logger.info(f"Reservation sweeper started, every {interval}s")
    while True:
        try:
            report = await use_case(limit=batch_size)
            if report.cancelled or report.expired_only or report.failed:
                logger.info(
                    f"Sweep done: {len(report.cancelled)} cancelled, {len(report.expired_only)} expired, "
                    f"{len(report.skipped)} skipped, {len(report.failed)} failed"
                )
        except Exception as e:
            logger.error(f"Sweeper error: {e}", exc_info=True)
        await asyncio.sleep(interval)


async def main():
    await sweeper_loop(build_sweeper(), settings.SWEEP_INTERVAL_SECONDS, settings.SWEEP_BATCH_SIZE)


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    asyncio.run(main())
