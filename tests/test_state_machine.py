"""Tests for order status transitions."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from checkout_service.domain.exceptions import IllegalTransitionError
from checkout_service.domain.models import Address, Order, OrderStatus, PaymentMethod
from checkout_service.domain.state_machine import TRANSITIONS, OrderStateMachine, Transition


def make_order(status: OrderStatus) -> Order:
    now = datetime.now(timezone.utc)
    address = Address(name="x", phone="0712345678", street="s", city="Nairobi")
    return Order(
        id="o1", order_number="ORD-20261016-ABC123", user_id="u1", items=[],
        subtotal=Decimal("100"), tax_amount=Decimal("16"), shipping_amount=Decimal("300"),
        discount_amount=Decimal("0"), total_amount=Decimal("416"),
        shipping_address=address, billing_address=address, payment_method=PaymentMethod.MPESA,
        status=status, created_at=now, updated_at=now,
    )


@pytest.fixture
def machine():
    return OrderStateMachine()


def test_happy_path_records_history(machine):
    """Test created -> ... -> delivered, one history entry per step."""
    order = make_order(OrderStatus.CREATED)
    order = machine.submit(order, "user:u1")
    order = machine.confirm_payment(order, "provider:mpesa")
    order = machine.mark_processing(order, "operator")
    order = machine.ship(order, "operator", "shipped via G4S")
    order = machine.deliver(order, "system:logistics")

    assert order.status == OrderStatus.DELIVERED
    assert [h.status for h in order.status_history] == [
        OrderStatus.PENDING_PAYMENT, OrderStatus.CONFIRMED, OrderStatus.PROCESSING,
        OrderStatus.SHIPPED, OrderStatus.DELIVERED,
    ]
    assert order.status_history[3].reason == "shipped via G4S"
    assert order.status_history[0].actor == "user:u1"


def test_apply_does_not_mutate_input(machine):
    order = make_order(OrderStatus.PENDING_PAYMENT)
    updated = machine.cancel(order, "user:u1", "changed my mind")

    assert order.status == OrderStatus.PENDING_PAYMENT
    assert order.status_history == []
    assert updated.status == OrderStatus.CANCELLED


@pytest.mark.parametrize("status", [OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.FAILED])
def test_cannot_cancel_after_shipping_or_failure(machine, status):
    with pytest.raises(IllegalTransitionError) as exc:
        machine.cancel(make_order(status), "user:u1", "too late")

    assert exc.value.current == status
    assert exc.value.attempted == "cancel"


def test_payment_cannot_be_confirmed_twice(machine):
    order = machine.confirm_payment(make_order(OrderStatus.PENDING_PAYMENT), "provider:mpesa")

    with pytest.raises(IllegalTransitionError):
        machine.confirm_payment(order, "provider:mpesa")


def test_cancelled_and_failed_orders_accept_nothing(machine):
    """Test that cancelled/failed orders accept no transition, and returned only follows delivered."""
    for status in (OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.RETURNED):
        order = make_order(status)
        assert not any(machine.can_apply(order, t) for t in Transition)

    assert machine.mark_returned(make_order(OrderStatus.DELIVERED), "operator").status == OrderStatus.RETURNED
    assert set(TRANSITIONS) == set(Transition)
