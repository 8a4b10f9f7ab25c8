import logging
from datetime import datetime
from typing import Optional

from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.domain.exceptions import ConcurrentOrderUpdateError, IllegalTransitionError
from checkout_service.domain.models import OrderStatus

logger = logging.getLogger(__name__)

SHIPMENT_EVENT_TYPES = ["order.shipped", "order.delivered"]
LOGISTICS_ACTOR = "system:logistics"


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class ProcessInboxEventsUseCase:
    def __init__(self, unit_of_work, lifecycle: OrderLifecycle):
        self._uow = unit_of_work
        self._lifecycle = lifecycle

    async def __call__(self, limit: int = 10) -> int:
        """Applies pending shipment events. Returns how many were handled."""
        async with self._uow() as uow:
            pending = await uow.inbox.get_pending(limit=limit, event_types=SHIPMENT_EVENT_TYPES)

        if not pending:
            return 0
        logger.info(f"Processing {len(pending)} inbox events")

        handled = 0
        for event in pending:
            try:
                if await self._handle(event):
                    handled += 1
            except ConcurrentOrderUpdateError as e:
                # left pending, picked up again next run
                logger.info(f"Inbox event {event['id']} raced with another writer: {e}")
            except Exception as e:
                logger.error(f"Error processing inbox event {event['id']}: {e}", exc_info=True)
        return handled

    async def _handle(self, event: dict) -> bool:
        event_id = event["id"]
        event_type = event["event_type"]
        data = event["event_data"]

        async with self._uow() as uow:
            order = await uow.orders.get_by_id(event["order_id"])
            if not order:
                logger.error(f"Order {event['order_id']} not found for inbox event {event_id}")
                await uow.inbox.mark_as_failed(event_id)
                await uow.commit()
                return False

            try:
                if event_type == "order.shipped":
                    if order.status == OrderStatus.CONFIRMED:
                        order = await self._lifecycle.mark_processing(
                            uow, order, LOGISTICS_ACTOR, "picked up by logistics"
                        )
                    if order.status != OrderStatus.SHIPPED:
                        await self._lifecycle.ship(
                            uow, order, LOGISTICS_ACTOR,
                            tracking_number=data.get("tracking_number") or "",
                            carrier=data.get("carrier") or "unknown",
                            estimated_delivery=_parse_datetime(data.get("estimated_delivery")),
                        )
                elif order.status != OrderStatus.DELIVERED:
                    await self._lifecycle.deliver(uow, order, LOGISTICS_ACTOR)
            except IllegalTransitionError as e:
                await uow.rollback()
                logger.warning(f"Inbox event {event_id} not applicable to order {order.id}: {e}")
                await uow.inbox.mark_as_failed(event_id)
                await uow.commit()
                return False

            await uow.inbox.mark_as_processed(event_id)
            await uow.commit()
            logger.info(f"Inbox event {event_type} applied to order {order.id}")
            return True
