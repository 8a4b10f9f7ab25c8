import asyncio
import logging

from checkout_service.database import AsyncSessionLocal
from checkout_service.infrastructure.unit_of_work import UnitOfWork
from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.application.process_inbox import ProcessInboxEventsUseCase
from checkout_service.config import settings

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def inbox_worker():
    """Applies shipment events stored by the shipping consumer"""
    logger.info("Inbox worker started")

    use_case = ProcessInboxEventsUseCase(
        unit_of_work=UnitOfWork(AsyncSessionLocal),
        lifecycle=OrderLifecycle(InventoryReservationManager()),
    )

    while True:
        try:
            processed = await use_case(limit=10)
            if processed:
                logger.info(f"Processed {processed} inbox events")

            await asyncio.sleep(2)

        except Exception as e:
            logger.error(f"Inbox worker error: {e}", exc_info=True)
            await asyncio.sleep(10)


async def main():
    await inbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
