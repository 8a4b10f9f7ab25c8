import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.domain.exceptions import CheckoutValidationError, OrderNotFoundError
from checkout_service.domain.models import Order

logger = logging.getLogger(__name__)


class StatusAction(str, Enum):
    PROCESS = "process"
    SHIP = "ship"
    DELIVER = "deliver"
    RETURN = "return"
    CANCEL = "cancel"


class UpdateOrderStatusDTO(BaseModel):
    order_id: str
    action: StatusAction
    actor: str = "operator"
    reason: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class UpdateOrderStatusUseCase:
    """Operator-driven transitions after payment (fulfilment and returns)."""

    def __init__(self, unit_of_work, lifecycle: OrderLifecycle):
        self._uow = unit_of_work
        self._lifecycle = lifecycle

    async def __call__(self, dto: UpdateOrderStatusDTO) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(dto.order_id)
            if not order:
                raise OrderNotFoundError(f"Order {dto.order_id} not found")

            if dto.action == StatusAction.PROCESS:
                order = await self._lifecycle.mark_processing(uow, order, dto.actor, dto.reason)
            elif dto.action == StatusAction.SHIP:
                if not dto.tracking_number or not dto.carrier:
                    raise CheckoutValidationError("tracking_number and carrier are required to ship an order")
                order = await self._lifecycle.ship(
                    uow, order, dto.actor, dto.tracking_number, dto.carrier, dto.estimated_delivery
                )
            elif dto.action == StatusAction.DELIVER:
                order = await self._lifecycle.deliver(uow, order, dto.actor)
            elif dto.action == StatusAction.RETURN:
                order = await self._lifecycle.mark_returned(uow, order, dto.actor, dto.reason)
            else:
                order = await self._lifecycle.cancel(uow, order, dto.reason or "cancelled by operator", dto.actor)

            await uow.commit()

        logger.info(f"Order {dto.order_id} -> {order.status.value} ({dto.action.value} by {dto.actor})")
        return order
