"""Shared fixtures: a throwaway SQLite database and in-memory collaborators."""

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from checkout_service.application.checkout import CheckoutOrchestrator, InitiateCheckoutDTO
from checkout_service.application.inventory import InventoryReservationManager
from checkout_service.application.order_lifecycle import OrderLifecycle
from checkout_service.application.process_payment import PaymentGatewayOrchestrator
from checkout_service.domain.models import Address, PaymentMethod
from checkout_service.domain.pricing import PricingCalculator, PricingConfig
from checkout_service.infrastructure.db_schema import metadata
from checkout_service.infrastructure.unit_of_work import UnitOfWork
from factories import FakeCart, FakeProvider


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow(session_factory):
    return UnitOfWork(session_factory)


@pytest.fixture
def inventory():
    return InventoryReservationManager()


@pytest.fixture
def lifecycle(inventory):
    return OrderLifecycle(inventory)


@pytest.fixture
def pricing():
    return PricingCalculator(PricingConfig())


@pytest.fixture
def cart():
    return FakeCart()


@pytest.fixture
def mpesa():
    return FakeProvider(PaymentMethod.MPESA, is_async=True, supports_status_query=True)


@pytest.fixture
def card():
    return FakeProvider(PaymentMethod.CARD, supports_status_query=True)


@pytest.fixture
def providers(mpesa, card):
    return {
        PaymentMethod.MPESA: mpesa,
        PaymentMethod.CARD: card,
        PaymentMethod.CASH_ON_DELIVERY: FakeProvider(PaymentMethod.CASH_ON_DELIVERY),
    }


@pytest.fixture
def payments(uow, providers, lifecycle):
    return PaymentGatewayOrchestrator(uow, providers, lifecycle)


@pytest.fixture
def checkout(uow, cart, pricing, inventory, lifecycle, payments):
    return CheckoutOrchestrator(uow, cart, pricing, inventory, lifecycle, payments, hold_minutes=30)


@pytest.fixture
def address():
    return Address(name="Jane Wanjiru", phone="0712345678", email="jane@example.com",
                   street="Moi Avenue 12", city="Nairobi", county="Nairobi")


@pytest.fixture
def start_checkout(checkout, cart, address):
    """Puts items in the user's cart and runs initiate; returns the CheckoutResult."""

    async def _start(*items, user_id="u1", payment_method=PaymentMethod.MPESA, **kwargs):
        cart.put(user_id, *items)
        return await checkout.initiate(InitiateCheckoutDTO(
            user_id=user_id, shipping_address=address, payment_method=payment_method, **kwargs
        ))

    return _start
