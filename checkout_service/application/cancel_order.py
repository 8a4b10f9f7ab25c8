import logging
from typing import Optional

from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.application.process_payment import load_owned_order
from checkout_service.domain.models import Order

logger = logging.getLogger(__name__)


class CancelOrderUseCase:
    """Customer cancellation. Allowed until the order ships; stock goes back
    to the pools whether it was still reserved or already confirmed."""

    def __init__(self, unit_of_work, lifecycle: OrderLifecycle):
        self._uow = unit_of_work
        self._lifecycle = lifecycle

    async def __call__(self, order_id: str, user_id: str, reason: Optional[str] = None) -> Order:
        async with self._uow() as uow:
            order = await load_owned_order(uow, order_id, user_id)
            order = await self._lifecycle.cancel(
                uow, order, reason or "cancelled by customer", f"user:{user_id}"
            )
            await uow.commit()
        logger.info(f"Order {order_id} cancelled by its owner")
        return order
