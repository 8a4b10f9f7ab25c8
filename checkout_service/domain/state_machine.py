from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from checkout_service.domain.exceptions import IllegalTransitionError
from checkout_service.domain.models import Order, OrderStatus, StatusChange


class Transition(str, Enum):
    SUBMIT = "submit"
    CONFIRM_PAYMENT = "confirm_payment"
    FAIL_PAYMENT = "fail_payment"
    MARK_PROCESSING = "mark_processing"
    SHIP = "ship"
    DELIVER = "deliver"
    CANCEL = "cancel"
    MARK_RETURNED = "mark_returned"


# transition -> (allowed source states, target state)
TRANSITIONS: dict[Transition, tuple[frozenset, OrderStatus]] = {
    Transition.SUBMIT: (frozenset({OrderStatus.CREATED}), OrderStatus.PENDING_PAYMENT),
    Transition.CONFIRM_PAYMENT: (frozenset({OrderStatus.PENDING_PAYMENT}), OrderStatus.CONFIRMED),
    Transition.FAIL_PAYMENT: (
        frozenset({OrderStatus.CREATED, OrderStatus.PENDING_PAYMENT}), OrderStatus.FAILED
    ),
    Transition.MARK_PROCESSING: (frozenset({OrderStatus.CONFIRMED}), OrderStatus.PROCESSING),
    Transition.SHIP: (frozenset({OrderStatus.PROCESSING}), OrderStatus.SHIPPED),
    Transition.DELIVER: (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED),
    Transition.CANCEL: (
        frozenset({
            OrderStatus.CREATED,
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.CONFIRMED,
            OrderStatus.PROCESSING,
        }),
        OrderStatus.CANCELLED,
    ),
    Transition.MARK_RETURNED: (frozenset({OrderStatus.DELIVERED}), OrderStatus.RETURNED),
}

TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
    OrderStatus.FAILED,
})


class OrderStateMachine:
    """Validates order transitions and records them in the order history.

    Works on copies: the order passed in is never mutated, the caller gets a
    new Order with the status changed and one more history entry.
    """

    def can_apply(self, order: Order, transition: Transition) -> bool:
        allowed, _ = TRANSITIONS[transition]
        return order.status in allowed

    def apply(
        self,
        order: Order,
        transition: Transition,
        actor: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        allowed, target = TRANSITIONS[transition]
        if order.status not in allowed:
            raise IllegalTransitionError(order.status, transition.value)
        now = now or datetime.now(timezone.utc)
        entry = StatusChange(status=target, reason=reason, actor=actor, timestamp=now)
        return order.model_copy(update={
            "status": target,
            "status_history": [*order.status_history, entry],
            "updated_at": now,
        })

    def submit(self, order: Order, actor: str) -> Order:
        return self.apply(order, Transition.SUBMIT, actor, "awaiting payment")

    def confirm_payment(self, order: Order, actor: str, reason: Optional[str] = None) -> Order:
        return self.apply(order, Transition.CONFIRM_PAYMENT, actor, reason or "payment confirmed")

    def fail_payment(self, order: Order, actor: str, reason: str) -> Order:
        return self.apply(order, Transition.FAIL_PAYMENT, actor, reason)

    def mark_processing(self, order: Order, actor: str, reason: Optional[str] = None) -> Order:
        return self.apply(order, Transition.MARK_PROCESSING, actor, reason or "order is being prepared for shipment")

    def ship(self, order: Order, actor: str, reason: Optional[str] = None) -> Order:
        return self.apply(order, Transition.SHIP, actor, reason)

    def deliver(self, order: Order, actor: str, reason: Optional[str] = None) -> Order:
        return self.apply(order, Transition.DELIVER, actor, reason or "order successfully delivered")

    def cancel(self, order: Order, actor: str, reason: str) -> Order:
        return self.apply(order, Transition.CANCEL, actor, reason)

    def mark_returned(self, order: Order, actor: str, reason: Optional[str] = None) -> Order:
        return self.apply(order, Transition.MARK_RETURNED, actor, reason)
