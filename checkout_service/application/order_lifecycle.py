import logging
from datetime import datetime, timezone
from typing import Optional

from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.domain.models import (
    Order, OrderStatus, PaymentAttempt, PaymentMethod, PaymentStatus, ReservationStatus, TrackingInfo
)
from checkout_service.domain.state_machine import OrderStateMachine

logger = logging.getLogger(__name__)

SWEEPER_ACTOR = "system:sweeper"


class OrderLifecycle:
    """Drives orders through the state machine and attaches side effects.

    Each method writes the order first (conditional on the version that was
    read) and only then touches inventory and the outbox, all in the
    caller's unit of work. A lost race therefore raises
    ConcurrentOrderUpdateError before any side effect, and the caller's
    rollback discards everything.
    """

    def __init__(self, inventory: InventoryReservationManager, state_machine: Optional[OrderStateMachine] = None):
        self._inventory = inventory
        self._machine = state_machine or OrderStateMachine()

    async def submit(self, uow, order: Order, actor: str) -> Order:
        updated = self._machine.submit(order, actor)
        return await uow.orders.save(updated, order.version)

    async def confirm_payment(self, uow, order: Order, actor: str, attempt: Optional[PaymentAttempt] = None) -> Order:
        updated = self._machine.confirm_payment(order, actor)
        # cash on delivery is only collected at the door
        payment_status = (
            PaymentStatus.PENDING if order.payment_method == PaymentMethod.CASH_ON_DELIVERY
            else PaymentStatus.COMPLETED
        )
        updated = updated.model_copy(update={
            "payment_status": payment_status,
            "payment_attempts": self._with_attempt(order, attempt),
        })
        saved = await uow.orders.save(updated, order.version)

        await self._inventory.confirm(uow, order.id)
        await uow.outbox.create(
            event_type="cart.clear",
            event_data={"user_id": order.user_id, "order_id": order.id},
            order_id=order.id,
        )
        await self._notify(uow, saved, "confirmed", f"Your order {order.order_number} has been confirmed")
        logger.info(f"Order {order.id} confirmed by {actor}")
        return saved

    async def fail_payment(
        self, uow, order: Order, reason: str, actor: str, attempt: Optional[PaymentAttempt] = None
    ) -> Order:
        updated = self._machine.fail_payment(order, actor, reason)
        updated = updated.model_copy(update={
            "payment_status": PaymentStatus.FAILED,
            "payment_attempts": self._with_attempt(order, attempt),
        })
        saved = await uow.orders.save(updated, order.version)
        await self._inventory.release(uow, order.id)
        await self._publish_status(uow, saved, reason)
        logger.info(f"Order {order.id} failed: {reason}")
        return saved

    async def cancel(self, uow, order: Order, reason: str, actor: str) -> Order:
        was_confirmed = order.status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
        updated = self._machine.cancel(order, actor, reason)
        if updated.payment_status == PaymentStatus.PROCESSING:
            updated = updated.model_copy(update={"payment_status": PaymentStatus.FAILED})
        saved = await uow.orders.save(updated, order.version)

        status = ReservationStatus.EXPIRED if actor == SWEEPER_ACTOR else ReservationStatus.RELEASED
        await self._inventory.release(uow, order.id, status)
        if was_confirmed:
            await self._inventory.restock(uow, order.id)
        await self._publish_status(uow, saved, reason)
        logger.info(f"Order {order.id} cancelled by {actor}: {reason}")
        if order.payment_status == PaymentStatus.COMPLETED:
            paid = order.completed_attempt()
            logger.critical(
                f"ALERT: payment {paid.provider_refs if paid else order.provider_metadata} captured for "
                f"order {order.id} cancelled by {actor}; refund required"
            )
        return saved

    async def mark_processing(self, uow, order: Order, actor: str, reason: Optional[str] = None) -> Order:
        updated = self._machine.mark_processing(order, actor, reason)
        saved = await uow.orders.save(updated, order.version)
        await self._publish_status(uow, saved, reason)
        return saved

    async def ship(
        self, uow, order: Order, actor: str, tracking_number: str, carrier: str,
        estimated_delivery: Optional[datetime] = None,
    ) -> Order:
        now = datetime.now(timezone.utc)
        updated = self._machine.ship(order, actor, f"Order shipped via {carrier}")
        updated = updated.model_copy(update={"tracking": TrackingInfo(
            tracking_number=tracking_number,
            carrier=carrier,
            shipped_at=now,
            estimated_delivery=estimated_delivery or order.estimated_delivery,
        )})
        saved = await uow.orders.save(updated, order.version)
        await self._notify(
            uow, saved, "shipped",
            f"Your order {order.order_number} has shipped via {carrier}, tracking number {tracking_number}",
        )
        return saved

    async def deliver(self, uow, order: Order, actor: str) -> Order:
        now = datetime.now(timezone.utc)
        updated = self._machine.deliver(order, actor)
        changes = {"actual_delivery": now}
        if order.payment_method == PaymentMethod.CASH_ON_DELIVERY and order.payment_status == PaymentStatus.PENDING:
            changes["payment_status"] = PaymentStatus.COMPLETED
            changes["payment_attempts"] = [
                a.model_copy(update={"status": PaymentStatus.COMPLETED, "completed_at": now})
                if a.status == PaymentStatus.PENDING else a
                for a in order.payment_attempts
            ]
        saved = await uow.orders.save(updated.model_copy(update=changes), order.version)
        await self._notify(uow, saved, "delivered", f"Your order {order.order_number} has been delivered")
        return saved

    async def mark_returned(self, uow, order: Order, actor: str, reason: Optional[str] = None) -> Order:
        updated = self._machine.mark_returned(order, actor, reason)
        saved = await uow.orders.save(updated, order.version)
        await self._publish_status(uow, saved, reason)
        return saved

    def _with_attempt(self, order: Order, attempt: Optional[PaymentAttempt]) -> list[PaymentAttempt]:
        if attempt is None:
            return order.payment_attempts
        if any(a.id == attempt.id for a in order.payment_attempts):
            return [attempt if a.id == attempt.id else a for a in order.payment_attempts]
        return [*order.payment_attempts, attempt]

    async def _notify(self, uow, order: Order, event: str, message: str) -> None:
        await uow.outbox.create(
            event_type="notification.send",
            event_data={
                "user_id": order.user_id,
                "message": message,
                "reference_id": order.id,
                "idempotency_key": f"notification_{event}_{order.id}",
            },
            order_id=order.id,
        )
        await self._publish_status(uow, order, event)

    async def _publish_status(self, uow, order: Order, reason: Optional[str]) -> None:
        await uow.outbox.create(
            event_type="order.status_changed",
            event_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "status": order.status.value,
                "payment_status": order.payment_status.value,
                "reason": reason,
            },
            order_id=order.id,
        )
