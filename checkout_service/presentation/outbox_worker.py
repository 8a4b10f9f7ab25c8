import asyncio
import logging

from checkout_service.database import AsyncSessionLocal
from checkout_service.infrastructure.unit_of_work import UnitOfWork
from checkout_service.infrastructure.http_clients import HTTPCartClient, HTTPNotificationsClient
from checkout_service.infrastructure.kafka_producer import KafkaProducerClient
from checkout_service.application.process_outbox import ProcessOutboxEventsUseCase
from checkout_service.config import settings

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

kafka_producer = KafkaProducerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_ORDER_TOPIC)
cart_client = HTTPCartClient(settings.CART_BASE_URL, settings.API_TOKEN)
notifications_client = HTTPNotificationsClient(settings.NOTIFICATIONS_BASE_URL, settings.API_TOKEN, max_retries=3)


async def outbox_worker():
    """Delivers outbox events to the cart service, notifications and Kafka"""
    logger.info("Outbox worker started")

    await kafka_producer.start()

    try:
        while True:
            try:
                use_case = ProcessOutboxEventsUseCase(
                    unit_of_work=UnitOfWork(AsyncSessionLocal),
                    cart_service=cart_client,
                    notifications_client=notifications_client,
                    event_publisher=kafka_producer,
                )

                delivered = await use_case(limit=10)
                if delivered:
                    logger.info(f"Delivered {delivered} outbox events")

                await asyncio.sleep(3)

            except Exception as e:
                logger.error(f"Outbox worker error: {e}", exc_info=True)
                await asyncio.sleep(10)
    finally:
        await kafka_producer.stop()


async def main():
    await outbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
