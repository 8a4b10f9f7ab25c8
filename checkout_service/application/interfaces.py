from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from checkout_service.domain.models import (
    CartItem, Coupon, Order, PaymentMethod, Product, ProviderResponse,
    ReservationStatus, StockReservation
)


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_idempotency_key(self, user_id: str, key: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> None:
        pass

    @abstractmethod
    async def save(self, order: Order, expected_version: int) -> Order:
        """Writes the order only if its stored version is still expected_version."""
        pass

    @abstractmethod
    async def add_correlation(self, correlation_id: str, order_id: str, provider: PaymentMethod) -> None:
        pass


class ProductRepository(ABC):
    @abstractmethod
    async def get_by_id(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_many(self, product_ids: List[str]) -> dict[str, Product]:
        pass

    @abstractmethod
    async def create(self, product: Product) -> None:
        pass

    @abstractmethod
    async def decrement_stock(self, product_id: str, variant_index: Optional[int], quantity: int) -> bool:
        pass

    @abstractmethod
    async def restore_stock(self, product_id: str, variant_index: Optional[int], quantity: int) -> None:
        pass

    @abstractmethod
    async def settle_reserved(self, product_id: str, variant_index: Optional[int], quantity: int) -> None:
        pass

    @abstractmethod
    async def add_purchases(self, product_id: str, quantity: int) -> None:
        pass

    @abstractmethod
    async def restock_confirmed(self, product_id: str, variant_index: Optional[int], quantity: int) -> None:
        pass

    @abstractmethod
    async def refresh_status(self, product_id: str) -> None:
        pass


class ReservationRepository(ABC):
    @abstractmethod
    async def add(self, reservation: StockReservation) -> None:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str, status: Optional[ReservationStatus] = None) -> List[StockReservation]:
        pass

    @abstractmethod
    async def update_status(self, reservation_ids: List[str], status: ReservationStatus) -> None:
        pass

    @abstractmethod
    async def list_expired_order_ids(self, now: datetime, limit: int = 50) -> List[str]:
        pass


class CouponRepository(ABC):
    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def create(self, coupon: Coupon) -> None:
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_published(self, event_id: str) -> None:
        pass


class InboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: Optional[str], idempotency_key: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10, event_types: Optional[List[str]] = None) -> List[dict]:
        pass

    @abstractmethod
    async def get_pending_by_key(self, idempotency_key: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def mark_as_processed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def mark_as_failed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def exists(self, idempotency_key: str) -> bool:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def products(self) -> ProductRepository:
        pass

    @property
    @abstractmethod
    def reservations(self) -> ReservationRepository:
        pass

    @property
    @abstractmethod
    def coupons(self) -> CouponRepository:
        pass

    @property
    @abstractmethod
    def outbox(self) -> OutboxRepository:
        pass

    @property
    @abstractmethod
    def inbox(self) -> InboxRepository:
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class CartService(ABC):
    @abstractmethod
    async def get_cart(self, user_id: str) -> List[CartItem]:
        pass

    @abstractmethod
    async def clear_cart(self, user_id: str) -> bool:
        pass


class NotificationsService(ABC):
    @abstractmethod
    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        pass


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: dict, key: str) -> bool:
        pass


class PaymentProvider(ABC):
    """Capability interface every payment adapter implements.

    Synchronous providers answer `initiate` with a terminal outcome.
    Asynchronous ones answer PENDING plus a correlation id and report the
    real outcome later through a callback (and, where supported, a status
    query). Callbacks from providers without `signed_callbacks` are only
    trusted to report success after a status query agrees.
    """

    method: PaymentMethod
    is_async: bool = False
    supports_status_query: bool = False
    signed_callbacks: bool = False

    @abstractmethod
    async def initiate(self, order: Order, details: dict) -> ProviderResponse:
        pass

    async def query_status(self, correlation_id: str) -> ProviderResponse:
        raise NotImplementedError(f"{self.method.value} does not support status queries")

    def verify_callback(self, raw_body: bytes, headers: dict) -> bool:
        return True

    def parse_callback(self, payload: dict) -> ProviderResponse:
        raise NotImplementedError(f"{self.method.value} does not send callbacks")

    def callback_ack(self) -> dict:
        return {"status": "ok"}
