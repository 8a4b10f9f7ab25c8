import logging
import json

from checkout_service.application.interfaces import CartService, EventPublisher, NotificationsService

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    """Delivers pending outbox rows to their collaborators.

    A row is marked published only after its collaborator accepted it;
    anything else stays pending for the next run. Orders are never touched.
    """

    def __init__(
        self,
        unit_of_work,
        cart_service: CartService,
        notifications_client: NotificationsService,
        event_publisher: EventPublisher,
    ):
        self._uow = unit_of_work
        self._cart = cart_service
        self._notifications = notifications_client
        self._publisher = event_publisher

    async def __call__(self, limit: int = 10) -> int:
        """Returns how many events were delivered."""
        delivered = 0
        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(limit=limit)

            for event in pending:
                try:
                    event_data = event["event_data"]
                    if isinstance(event_data, str):
                        event_data = json.loads(event_data)

                    if await self._dispatch(event["event_type"], event_data, event["order_id"]):
                        await uow.outbox.mark_as_published(event["id"])
                        delivered += 1
                    else:
                        logger.warning(f"Outbox event {event['id']} ({event['event_type']}) not delivered, will retry")
                except Exception as e:
                    logger.error(f"Error processing outbox event {event['id']}: {e}")

            await uow.commit()

        return delivered

    async def _dispatch(self, event_type: str, data: dict, order_id: str) -> bool:
        if event_type == "cart.clear":
            return await self._cart.clear_cart(data["user_id"])
        if event_type == "notification.send":
            return await self._notifications.send(
                message=data["message"],
                reference_id=data["reference_id"],
                idempotency_key=data["idempotency_key"],
                user_id=data["user_id"],
            )
        if event_type == "order.status_changed":
            return await self._publisher.publish(event_type, data, key=order_id)
        logger.error(f"Unknown outbox event type {event_type}")
        return False
