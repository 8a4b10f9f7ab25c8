import uuid
from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy import select, insert, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_service.domain.exceptions import ConcurrentOrderUpdateError
from checkout_service.domain.models import (
    Coupon, Order, PaymentMethod, Product, ProductStatus, ProductVariant,
    ReservationStatus, StockReservation
)
from checkout_service.infrastructure.db_schema import (
    coupons_tbl, inbox_events_tbl, orders_tbl, outbox_events_tbl, payment_correlations_tbl,
    product_variants_tbl, products_tbl, stock_reservations_tbl
)
from checkout_service.application.interfaces import (
    CouponRepository, InboxRepository, OrderRepository, OutboxRepository,
    ProductRepository, ReservationRepository
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.id == order_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_idempotency_key(self, user_id: str, key: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(
                orders_tbl.c.user_id == user_id,
                orders_tbl.c.idempotency_key == key,
            )
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_correlation_id(self, correlation_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl)
            .join(payment_correlations_tbl, payment_correlations_tbl.c.order_id == orders_tbl.c.id)
            .where(payment_correlations_tbl.c.correlation_id == correlation_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def create(self, order: Order) -> None:
        stmt = insert(orders_tbl).values(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            items=[item.model_dump(mode="json") for item in order.items],
            subtotal=order.subtotal,
            tax_amount=order.tax_amount,
            shipping_amount=order.shipping_amount,
            discount_amount=order.discount_amount,
            total_amount=order.total_amount,
            coupon_code=order.coupon_code,
            shipping_method=order.shipping_method.value,
            shipping_address=order.shipping_address.model_dump(mode="json"),
            billing_address=order.billing_address.model_dump(mode="json"),
            payment_method=order.payment_method.value,
            idempotency_key=order.idempotency_key,
            delivery_instructions=order.delivery_instructions,
            notes=order.notes,
            version=order.version,
            created_at=order.created_at,
            estimated_delivery=order.estimated_delivery,
            **self._mutable_values(order),
        )
        await self._session.execute(stmt)

    async def save(self, order: Order, expected_version: int) -> Order:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order.id, orders_tbl.c.version == expected_version)
            .values(version=expected_version + 1, **self._mutable_values(order))
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrentOrderUpdateError(order.id, expected_version)
        return order.model_copy(update={"version": expected_version + 1})

    async def add_correlation(self, correlation_id: str, order_id: str, provider: PaymentMethod) -> None:
        stmt = insert(payment_correlations_tbl).values(
            correlation_id=correlation_id,
            order_id=order_id,
            provider=provider.value,
            created_at=_utcnow(),
        )
        await self._session.execute(stmt)

    def _mutable_values(self, order: Order) -> dict:
        return {
            "payment_status": order.payment_status.value,
            "status": order.status.value,
            "payment_attempts": [a.model_dump(mode="json") for a in order.payment_attempts],
            "provider_metadata": order.provider_metadata,
            "tracking": order.tracking.model_dump(mode="json") if order.tracking else None,
            "status_history": [h.model_dump(mode="json") for h in order.status_history],
            "updated_at": order.updated_at,
            "actual_delivery": order.actual_delivery,
        }

    def _to_domain(self, row) -> Order:
        """DB row -> Domain"""
        return Order(
            id=row.id,
            order_number=row.order_number,
            user_id=row.user_id,
            items=row.items,
            subtotal=row.subtotal,
            tax_amount=row.tax_amount,
            shipping_amount=row.shipping_amount,
            discount_amount=row.discount_amount,
            total_amount=row.total_amount,
            coupon_code=row.coupon_code,
            shipping_method=row.shipping_method,
            shipping_address=row.shipping_address,
            billing_address=row.billing_address,
            payment_method=row.payment_method,
            payment_status=row.payment_status,
            status=row.status,
            payment_attempts=row.payment_attempts,
            provider_metadata=row.provider_metadata or {},
            tracking=row.tracking,
            status_history=row.status_history,
            idempotency_key=row.idempotency_key,
            delivery_instructions=row.delivery_instructions,
            notes=row.notes,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
            estimated_delivery=row.estimated_delivery,
            actual_delivery=row.actual_delivery,
        )


class SQLAlchemyProductRepository(ProductRepository):
    """Stock pools live on the product row (main) and in product_variants.

    Every stock write is a single conditional UPDATE, so the database does
    the read-validate-write in one step and concurrent writers serialize on
    the row.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, product_id: str) -> Optional[Product]:
        products = await self.get_many([product_id])
        return products.get(product_id)

    async def get_many(self, product_ids: List[str]) -> dict[str, Product]:
        if not product_ids:
            return {}
        result = await self._session.execute(
            select(products_tbl).where(products_tbl.c.id.in_(product_ids))
        )
        rows = result.fetchall()
        variants_result = await self._session.execute(
            select(product_variants_tbl)
            .where(product_variants_tbl.c.product_id.in_(product_ids))
            .order_by(product_variants_tbl.c.variant_index.asc())
        )
        variants: dict[str, list[ProductVariant]] = {}
        for v in variants_result.fetchall():
            variants.setdefault(v.product_id, []).append(ProductVariant(
                index=v.variant_index,
                attributes=v.attributes,
                price=v.price,
                stock=v.stock,
                reserved=v.reserved,
            ))
        return {
            row.id: Product(
                id=row.id,
                name=row.name,
                sku=row.sku,
                price=row.price,
                discount=row.discount,
                image_url=row.image_url,
                status=row.status,
                stock=row.stock,
                reserved=row.reserved,
                purchases=row.purchases,
                low_stock_threshold=row.low_stock_threshold,
                variants=variants.get(row.id, []),
            )
            for row in rows
        }

    async def create(self, product: Product) -> None:
        await self._session.execute(insert(products_tbl).values(
            id=product.id,
            name=product.name,
            sku=product.sku,
            price=product.price,
            discount=product.discount,
            image_url=product.image_url,
            status=product.status.value,
            stock=product.stock,
            reserved=product.reserved,
            purchases=product.purchases,
            low_stock_threshold=product.low_stock_threshold,
        ))
        for variant in product.variants:
            await self._session.execute(insert(product_variants_tbl).values(
                product_id=product.id,
                variant_index=variant.index,
                attributes=variant.attributes,
                price=variant.price,
                stock=variant.stock,
                reserved=variant.reserved,
            ))

    async def decrement_stock(self, product_id: str, variant_index: Optional[int], quantity: int) -> bool:
        tbl = self._pool_table(variant_index)
        stmt = (
            update(tbl)
            .where(*self._pool_filter(product_id, variant_index), tbl.c.stock >= quantity)
            .values(stock=tbl.c.stock - quantity, reserved=tbl.c.reserved + quantity)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def restore_stock(self, product_id: str, variant_index: Optional[int], quantity: int) -> None:
        tbl = self._pool_table(variant_index)
        await self._session.execute(
            update(tbl)
            .where(*self._pool_filter(product_id, variant_index))
            .values(stock=tbl.c.stock + quantity, reserved=tbl.c.reserved - quantity)
        )

    async def settle_reserved(self, product_id: str, variant_index: Optional[int], quantity: int) -> None:
        tbl = self._pool_table(variant_index)
        await self._session.execute(
            update(tbl)
            .where(*self._pool_filter(product_id, variant_index))
            .values(reserved=tbl.c.reserved - quantity)
        )

    async def add_purchases(self, product_id: str, quantity: int) -> None:
        await self._session.execute(
            update(products_tbl)
            .where(products_tbl.c.id == product_id)
            .values(purchases=products_tbl.c.purchases + quantity)
        )

    async def restock_confirmed(self, product_id: str, variant_index: Optional[int], quantity: int) -> None:
        tbl = self._pool_table(variant_index)
        await self._session.execute(
            update(tbl)
            .where(*self._pool_filter(product_id, variant_index))
            .values(stock=tbl.c.stock + quantity)
        )
        await self.add_purchases(product_id, -quantity)

    async def refresh_status(self, product_id: str) -> None:
        product = await self.get_by_id(product_id)
        if product is None or product.status == ProductStatus.INACTIVE:
            return
        empty = product.stock == 0 and all(v.stock == 0 for v in product.variants)
        status = ProductStatus.OUT_OF_STOCK if empty else ProductStatus.ACTIVE
        if status != product.status:
            await self._session.execute(
                update(products_tbl)
                .where(products_tbl.c.id == product_id)
                .values(status=status.value)
            )

    def _pool_table(self, variant_index: Optional[int]):
        return products_tbl if variant_index is None else product_variants_tbl

    def _pool_filter(self, product_id: str, variant_index: Optional[int]) -> tuple:
        if variant_index is None:
            return (products_tbl.c.id == product_id,)
        return (
            product_variants_tbl.c.product_id == product_id,
            product_variants_tbl.c.variant_index == variant_index,
        )


class SQLAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, reservation: StockReservation) -> None:
        await self._session.execute(insert(stock_reservations_tbl).values(
            id=reservation.id,
            order_id=reservation.order_id,
            product_id=reservation.product_id,
            variant_index=reservation.variant_index,
            quantity=reservation.quantity,
            status=reservation.status.value,
            created_at=reservation.created_at,
            expires_at=reservation.expires_at,
        ))

    async def list_by_order(self, order_id: str, status: Optional[ReservationStatus] = None) -> List[StockReservation]:
        stmt = select(stock_reservations_tbl).where(stock_reservations_tbl.c.order_id == order_id)
        if status is not None:
            stmt = stmt.where(stock_reservations_tbl.c.status == status.value)
        result = await self._session.execute(stmt.order_by(stock_reservations_tbl.c.created_at.asc()))
        return [
            StockReservation(
                id=row.id,
                order_id=row.order_id,
                product_id=row.product_id,
                variant_index=row.variant_index,
                quantity=row.quantity,
                status=row.status,
                created_at=row.created_at,
                expires_at=row.expires_at,
            )
            for row in result.fetchall()
        ]

    async def update_status(self, reservation_ids: List[str], status: ReservationStatus) -> None:
        if not reservation_ids:
            return
        await self._session.execute(
            update(stock_reservations_tbl)
            .where(stock_reservations_tbl.c.id.in_(reservation_ids))
            .values(status=status.value, updated_at=_utcnow())
        )

    async def list_expired_order_ids(self, now: datetime, limit: int = 50) -> List[str]:
        result = await self._session.execute(
            select(stock_reservations_tbl.c.order_id)
            .where(
                stock_reservations_tbl.c.status == ReservationStatus.ACTIVE.value,
                stock_reservations_tbl.c.expires_at < now,
            )
            .group_by(stock_reservations_tbl.c.order_id)
            .order_by(func.min(stock_reservations_tbl.c.expires_at).asc())
            .limit(limit)
        )
        return [row.order_id for row in result.fetchall()]


class SQLAlchemyCouponRepository(CouponRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self._session.execute(
            select(coupons_tbl).where(coupons_tbl.c.code == code.upper())
        )
        row = result.fetchone()
        if not row:
            return None
        return Coupon(
            code=row.code,
            discount_type=row.discount_type,
            value=row.value,
            min_order=row.min_order,
            active=row.active,
        )

    async def create(self, coupon: Coupon) -> None:
        await self._session.execute(insert(coupons_tbl).values(
            code=coupon.code.upper(),
            discount_type=coupon.discount_type.value,
            value=coupon.value,
            min_order=coupon.min_order,
            active=coupon.active,
        ))


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(outbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,  # JSON column serializes it
            order_id=order_id,
            status="pending",
            created_at=_utcnow(),
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.status == "pending")
            .order_by(outbox_events_tbl.c.created_at.asc())
            .limit(limit)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "order_id": row.order_id
            }
            for row in rows
        ]

    async def mark_as_published(self, event_id: str) -> None:
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status="published")
        )
        await self._session.execute(stmt)


class SQLAlchemyInboxRepository(InboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: Optional[str], idempotency_key: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(inbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,
            order_id=order_id,
            idempotency_key=idempotency_key,
            status="pending",
            created_at=_utcnow(),
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10, event_types: Optional[List[str]] = None) -> List[dict]:
        stmt = select(inbox_events_tbl).where(inbox_events_tbl.c.status == "pending")
        if event_types:
            stmt = stmt.where(inbox_events_tbl.c.event_type.in_(event_types))
        result = await self._session.execute(
            stmt.order_by(inbox_events_tbl.c.created_at.asc()).limit(limit)
        )
        return [self._to_dict(row) for row in result.fetchall()]

    async def get_pending_by_key(self, idempotency_key: str) -> Optional[dict]:
        result = await self._session.execute(
            select(inbox_events_tbl).where(
                inbox_events_tbl.c.idempotency_key == idempotency_key,
                inbox_events_tbl.c.status == "pending",
            )
        )
        row = result.fetchone()
        return self._to_dict(row) if row else None

    async def mark_as_processed(self, event_id: str) -> None:
        stmt = (
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(
                status="processed",
                processed_at=_utcnow()
            )
        )
        await self._session.execute(stmt)

    async def mark_as_failed(self, event_id: str) -> None:
        stmt = (
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(status="failed")
        )
        await self._session.execute(stmt)

    async def exists(self, idempotency_key: str) -> bool:
        result = await self._session.execute(
            select(inbox_events_tbl.c.id).where(inbox_events_tbl.c.idempotency_key == idempotency_key)
        )
        return result.fetchone() is not None

    def _to_dict(self, row) -> dict:
        return {
            "id": row.id,
            "event_type": row.event_type,
            "event_data": row.event_data,
            "order_id": row.order_id,
            "idempotency_key": row.idempotency_key
        }
