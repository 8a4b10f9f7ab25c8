import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from checkout_service.application.interfaces import PaymentProvider
from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.domain.exceptions import (
    ConcurrentOrderUpdateError, IllegalTransitionError, OrderAccessDeniedError, OrderAlreadyPaidError,
    OrderNotFoundError, PaymentGatewayError, ReservationReleaseError, UnsupportedPaymentMethodError
)
from checkout_service.domain.models import (
    Order, OrderStatus, PaymentAttempt, PaymentMethod, PaymentOutcome, PaymentResult,
    PaymentStatus, ProviderResponse
)

logger = logging.getLogger(__name__)

RETRY_PATH = "/api/checkout/initiate"
DECLINE_MESSAGE = "Payment was not successful. Please try again or use a different payment method."
MAX_APPLY_ATTEMPTS = 3
GATEWAY_ERROR_CODE = "gateway_error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def load_owned_order(uow, order_id: str, user_id: str) -> Order:
    order = await uow.orders.get_by_id(order_id)
    if not order:
        raise OrderNotFoundError(f"Order {order_id} not found")
    if order.user_id != user_id:
        raise OrderAccessDeniedError(f"Not authorized to access order {order_id}")
    return order


class PaymentGatewayOrchestrator:
    """Single entry point for paying an order, whatever the provider.

    Providers are looked up by payment method. Talking to a provider never
    happens inside a transaction; the outcome is written afterwards in one
    unit of work together with its inventory side effects.
    """

    def __init__(self, unit_of_work, providers: dict[PaymentMethod, PaymentProvider], lifecycle: OrderLifecycle):
        self._uow = unit_of_work
        self._providers = providers
        self._lifecycle = lifecycle

    def provider_for(self, method: PaymentMethod) -> PaymentProvider:
        provider = self._providers.get(method)
        if provider is None:
            raise UnsupportedPaymentMethodError(f"Unsupported payment method: {getattr(method, 'value', method)}")
        return provider

    async def pay(self, order_id: str, user_id: str, details: dict) -> PaymentResult:
        async with self._uow() as uow:
            order = await load_owned_order(uow, order_id, user_id)
        return await self.pay_order(order, details)

    async def pay_order(self, order: Order, details: dict) -> PaymentResult:
        if order.payment_status == PaymentStatus.COMPLETED or order.completed_attempt() is not None:
            raise OrderAlreadyPaidError(f"Order {order.order_number} already paid")
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise IllegalTransitionError(order.status, "confirm_payment")
        provider = self.provider_for(order.payment_method)

        logger.info(f"Initiating {provider.method.value} payment for order {order.id}, amount {order.total_amount}")
        try:
            response = await provider.initiate(order, details)
        except PaymentGatewayError as e:
            logger.warning(f"Payment provider {provider.method.value} error for order {order.id}: {e}")
            response = ProviderResponse(
                outcome=PaymentOutcome.FAILED, result_code=GATEWAY_ERROR_CODE, failure_reason=str(e)
            )

        if response.outcome == PaymentOutcome.PENDING and not response.correlation_id:
            response = response.model_copy(update={
                "outcome": PaymentOutcome.FAILED,
                "failure_reason": "payment provider returned no reference",
            })

        attempt = self._new_attempt(order, provider, response, details)
        current = await self._record_initiation(order.id, provider, response, attempt)
        return self._result(current, response)

    async def handle_callback(
        self, method: PaymentMethod, payload: dict, raw_body: bytes = b"", headers: Optional[dict] = None
    ) -> dict:
        """Processes a provider notification and returns the provider's fixed acknowledgement.

        Providers retry on anything but their expected answer, so the
        acknowledgement does not depend on whether processing succeeded.
        """
        provider = self.provider_for(method)
        ack = provider.callback_ack()
        try:
            if not provider.verify_callback(raw_body, headers or {}):
                logger.warning(f"Rejected {method.value} callback with invalid signature")
                return ack
            notice = provider.parse_callback(payload)
            logger.info(f"{method.value} callback for {notice.correlation_id}: {notice.outcome.value}")
            if not await self._callback_confirmed(provider, notice):
                return ack
            await self._apply_notice_with_retry(provider, notice)
        except Exception:
            logger.exception(f"Error processing {method.value} callback")
        return ack

    async def check_status(self, order_id: str, user_id: str) -> Order:
        async with self._uow() as uow:
            order = await load_owned_order(uow, order_id, user_id)
        if order.payment_status != PaymentStatus.PROCESSING:
            return order
        provider = self._providers.get(order.payment_method)
        if provider is None or not provider.supports_status_query:
            return order

        for attempt in reversed(order.pending_attempts()):
            try:
                notice = await provider.query_status(attempt.correlation_id)
            except PaymentGatewayError as e:
                logger.warning(f"Status query for {attempt.correlation_id} failed: {e}")
                continue
            if notice.outcome == PaymentOutcome.PENDING:
                continue
            if not notice.correlation_id:
                notice = notice.model_copy(update={"correlation_id": attempt.correlation_id})
            await self._apply_notice_with_retry(provider, notice)
            break

        async with self._uow() as uow:
            return await uow.orders.get_by_id(order_id)

    async def _callback_confirmed(self, provider: PaymentProvider, notice: ProviderResponse) -> bool:
        """Unsigned success callbacks are checked against the provider before use."""
        if notice.outcome != PaymentOutcome.COMPLETED or provider.signed_callbacks:
            return True
        if not provider.supports_status_query:
            return True
        confirmed = await provider.query_status(notice.correlation_id)
        if confirmed.outcome != PaymentOutcome.COMPLETED:
            logger.warning(
                f"Ignoring {provider.method.value} success callback for {notice.correlation_id}: "
                f"provider reports {confirmed.outcome.value}"
            )
            return False
        return True

    async def _record_initiation(
        self, order_id: str, provider: PaymentProvider, response: ProviderResponse, attempt: PaymentAttempt
    ) -> Order:
        async with self._uow() as uow:
            current = await uow.orders.get_by_id(order_id)
            try:
                if response.outcome == PaymentOutcome.COMPLETED:
                    current = await self._lifecycle.confirm_payment(
                        uow, current, f"provider:{provider.method.value}", attempt
                    )
                elif response.outcome == PaymentOutcome.FAILED:
                    current = await self._fail(uow, current, response.failure_reason or "payment declined",
                                               f"provider:{provider.method.value}", attempt)
                else:
                    current = await self._record_pending(uow, current, provider, attempt)
                await uow.commit()
                return current
            except (IllegalTransitionError, ConcurrentOrderUpdateError) as e:
                await uow.rollback()
                if response.outcome == PaymentOutcome.COMPLETED:
                    logger.critical(
                        f"ALERT: payment {attempt.provider_refs} captured for order {order_id} "
                        f"that can no longer be confirmed ({e}); refund required"
                    )
                else:
                    logger.info(f"Order {order_id} changed while paying: {e}")
                return await uow.orders.get_by_id(order_id)

    async def _record_pending(self, uow, order: Order, provider: PaymentProvider, attempt: PaymentAttempt) -> Order:
        if order.status != OrderStatus.PENDING_PAYMENT:
            # keep the correlation so a late completion is caught as a refund case
            await uow.orders.add_correlation(attempt.correlation_id, order.id, provider.method)
            logger.warning(
                f"Order {order.id} became {order.status.value} while {attempt.correlation_id} was in flight; "
                f"payment not recorded"
            )
            return order
        updated = order.model_copy(update={
            "payment_status": PaymentStatus.PROCESSING,
            "payment_attempts": [*order.payment_attempts, attempt],
            "provider_metadata": {**order.provider_metadata, provider.method.value: attempt.provider_refs},
            "updated_at": _utcnow(),
        })
        saved = await uow.orders.save(updated, order.version)
        await uow.orders.add_correlation(attempt.correlation_id, order.id, provider.method)
        logger.info(f"Order {order.id} awaiting {provider.method.value} confirmation for {attempt.correlation_id}")

        early = await uow.inbox.get_pending_by_key(self._callback_key(provider.method, attempt.correlation_id))
        if early:
            logger.info(f"Applying callback for {attempt.correlation_id} that arrived before initiation was stored")
            saved = await self._apply_notice(uow, saved, ProviderResponse(**early["event_data"]), provider)
            await uow.inbox.mark_as_processed(early["id"])
        return saved

    async def _apply_notice_with_retry(self, provider: PaymentProvider, notice: ProviderResponse) -> None:
        for _ in range(MAX_APPLY_ATTEMPTS):
            async with self._uow() as uow:
                order = await uow.orders.get_by_correlation_id(notice.correlation_id)
                if order is None:
                    await self._park_notice(uow, provider, notice)
                    return
                try:
                    await self._apply_notice(uow, order, notice, provider)
                    await uow.commit()
                    return
                except ConcurrentOrderUpdateError:
                    await uow.rollback()
                    logger.info(f"Order {order.id} changed concurrently, re-reading before applying notice")
        logger.error(f"Gave up applying notice {notice.correlation_id} after {MAX_APPLY_ATTEMPTS} attempts")

    async def _park_notice(self, uow, provider: PaymentProvider, notice: ProviderResponse) -> None:
        key = self._callback_key(provider.method, notice.correlation_id)
        if not await uow.inbox.exists(key):
            await uow.inbox.create(
                event_type="payment.callback",
                event_data=notice.model_dump(mode="json"),
                order_id=None,
                idempotency_key=key,
            )
            await uow.commit()
        logger.warning(f"No order for correlation id {notice.correlation_id}, notice parked in inbox")

    async def _apply_notice(self, uow, order: Order, notice: ProviderResponse, provider: PaymentProvider) -> Order:
        if order.is_payment_terminal or order.status != OrderStatus.PENDING_PAYMENT:
            if notice.outcome == PaymentOutcome.COMPLETED and order.completed_attempt() is None:
                logger.critical(
                    f"ALERT: payment {notice.correlation_id} completed for order {order.id} "
                    f"in status {order.status.value}; refund required"
                )
            else:
                logger.info(f"Duplicate notice {notice.correlation_id} for order {order.id}, already handled")
            return order
        if notice.outcome == PaymentOutcome.PENDING:
            return order

        actor = f"provider:{provider.method.value}"
        attempt = order.find_attempt(notice.correlation_id)
        if attempt is not None:
            attempt = attempt.model_copy(update={
                "status": (PaymentStatus.COMPLETED if notice.outcome == PaymentOutcome.COMPLETED
                           else PaymentStatus.FAILED),
                "provider_refs": {**attempt.provider_refs, **notice.provider_refs},
                "result_code": notice.result_code,
                "failure_reason": notice.failure_reason,
                "completed_at": _utcnow(),
            })

        if notice.outcome == PaymentOutcome.COMPLETED:
            return await self._lifecycle.confirm_payment(uow, order, actor, attempt)

        still_pending = [a for a in order.pending_attempts() if a.correlation_id != notice.correlation_id]
        if still_pending and attempt is not None:
            logger.info(f"Attempt {notice.correlation_id} failed, order {order.id} still has a pending attempt")
            updated = order.model_copy(update={
                "payment_attempts": [attempt if a.id == attempt.id else a for a in order.payment_attempts],
                "updated_at": _utcnow(),
            })
            return await uow.orders.save(updated, order.version)
        return await self._fail(uow, order, notice.failure_reason or "payment failed", actor, attempt)

    async def _fail(self, uow, order: Order, reason: str, actor: str, attempt: Optional[PaymentAttempt]) -> Order:
        try:
            return await self._lifecycle.fail_payment(uow, order, reason, actor, attempt)
        except (IllegalTransitionError, ConcurrentOrderUpdateError):
            raise
        except Exception as e:
            logger.critical(f"ALERT: could not release reservations of order {order.id}: {e}")
            raise ReservationReleaseError(f"Release of order {order.id} not confirmed") from e

    def _new_attempt(
        self, order: Order, provider: PaymentProvider, response: ProviderResponse, details: dict
    ) -> PaymentAttempt:
        now = _utcnow()
        if response.outcome == PaymentOutcome.PENDING:
            status = PaymentStatus.PROCESSING
        elif response.outcome == PaymentOutcome.FAILED:
            status = PaymentStatus.FAILED
        elif provider.method == PaymentMethod.CASH_ON_DELIVERY:
            status = PaymentStatus.PENDING
        else:
            status = PaymentStatus.COMPLETED
        return PaymentAttempt(
            id=str(uuid.uuid4()),
            provider=provider.method,
            status=status,
            amount=order.total_amount,
            correlation_id=response.correlation_id,
            provider_refs=response.provider_refs,
            phone_number=details.get("phone_number"),
            card_reference=response.provider_refs.get("card_reference"),
            result_code=response.result_code,
            failure_reason=response.failure_reason,
            created_at=now,
            completed_at=None if status in (PaymentStatus.PROCESSING, PaymentStatus.PENDING) else now,
        )

    def _callback_key(self, method: PaymentMethod, correlation_id: str) -> str:
        return f"payment.callback:{method.value}:{correlation_id}"

    def _result(self, order: Order, response: ProviderResponse) -> PaymentResult:
        if order.status == OrderStatus.CONFIRMED:
            status = PaymentOutcome.COMPLETED
            if order.payment_method == PaymentMethod.CASH_ON_DELIVERY:
                message = "Order confirmed. Payment will be collected on delivery."
            else:
                message = "Payment completed successfully"
        elif order.payment_status == PaymentStatus.PROCESSING:
            status = PaymentOutcome.PENDING
            message = response.customer_message or "Payment initiated. Complete it on your device."
        else:
            status = PaymentOutcome.FAILED
            message = DECLINE_MESSAGE
        failure_reason = None
        if status == PaymentOutcome.FAILED and response.result_code != GATEWAY_ERROR_CODE:
            failure_reason = response.failure_reason
        return PaymentResult(
            order_id=order.id,
            order_number=order.order_number,
            status=status,
            payment_status=order.payment_status,
            order_status=order.status,
            correlation_id=response.correlation_id if status == PaymentOutcome.PENDING else None,
            message=message,
            failure_reason=failure_reason,
            retry_path=RETRY_PATH if status == PaymentOutcome.FAILED else None,
            provider_data=response.provider_refs,
        )
