import asyncio
import logging

from checkout_service.database import AsyncSessionLocal
from checkout_service.infrastructure.kafka_consumer import KafkaConsumerClient
from checkout_service.infrastructure.repositories import SQLAlchemyInboxRepository
from checkout_service.application.process_inbox import SHIPMENT_EVENT_TYPES
from checkout_service.config import settings

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def handle_shipment_event(event_data: dict, session_factory=AsyncSessionLocal) -> bool:
    """Stores a logistics event in the inbox; the inbox worker applies it.

    Returns False for events that were ignored or already stored.
    """
    event_type = event_data.get("event_type")
    order_id = event_data.get("order_id")
    if event_type not in SHIPMENT_EVENT_TYPES or not order_id:
        logger.info(f"Ignoring event {event_type} for order {order_id}")
        return False
    idempotency_key = f"{event_type}_{order_id}"

    async with session_factory() as db:
        inbox_repo = SQLAlchemyInboxRepository(db)

        if await inbox_repo.exists(idempotency_key):
            logger.info(f"Event {idempotency_key} already stored")
            return False

        await inbox_repo.create(
            event_type=event_type,
            event_data=event_data,
            order_id=order_id,
            idempotency_key=idempotency_key
        )
        await db.commit()
        logger.info(f"Stored {event_type} in inbox for order {order_id}")
        return True


async def shipping_consumer():
    """Consumer for logistics shipment events"""
    logger.info("Shipping consumer started")

    consumer = KafkaConsumerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_SHIPMENT_TOPIC)
    await consumer.start()

    try:
        await consumer.consume(handle_shipment_event)
    finally:
        await consumer.stop()


async def main():
    await shipping_consumer()


if __name__ == "__main__":
    asyncio.run(main())
