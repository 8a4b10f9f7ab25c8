from checkout_service.application.process_payment import load_owned_order
from checkout_service.domain.models import Order


class GetOrderUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, order_id: str, user_id: str) -> Order:
        async with self._uow() as uow:
            return await load_owned_order(uow, order_id, user_id)
