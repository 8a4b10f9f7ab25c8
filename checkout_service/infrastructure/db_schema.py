from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Index, Integer, JSON, MetaData, Numeric, String,
    Table, UniqueConstraint
)
from sqlalchemy.sql import func

metadata = MetaData()

MONEY = Numeric(12, 2)


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_number", String, unique=True, nullable=False),
    Column("user_id", String, nullable=False, index=True),
    Column("items", JSON, nullable=False),
    Column("subtotal", MONEY, nullable=False),
    Column("tax_amount", MONEY, nullable=False),
    Column("shipping_amount", MONEY, nullable=False),
    Column("discount_amount", MONEY, nullable=False),
    Column("total_amount", MONEY, nullable=False),
    Column("coupon_code", String, nullable=True),
    Column("shipping_method", String(32), nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("billing_address", JSON, nullable=False),
    Column("payment_method", String(32), nullable=False),
    Column("payment_status", String(32), nullable=False),
    Column("status", String(32), nullable=False, index=True),
    Column("payment_attempts", JSON, nullable=False),
    Column("provider_metadata", JSON, nullable=False),
    Column("tracking", JSON, nullable=True),
    Column("status_history", JSON, nullable=False),
    Column("idempotency_key", String, nullable=True),
    Column("delivery_instructions", String, nullable=True),
    Column("notes", String, nullable=True),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    Column("estimated_delivery", DateTime(timezone=True), nullable=True),
    Column("actual_delivery", DateTime(timezone=True), nullable=True),
    UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),
)


payment_correlations_tbl = Table(
    "payment_correlations",
    metadata,
    Column("correlation_id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("provider", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


products_tbl = Table(
    "products",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("sku", String, unique=True, nullable=False),
    Column("price", MONEY, nullable=False),
    Column("discount", Numeric(5, 2), nullable=False, default=0),
    Column("image_url", String, nullable=True),
    Column("status", String(32), nullable=False, default="active"),
    Column("stock", Integer, nullable=False),
    Column("reserved", Integer, nullable=False, default=0),
    Column("purchases", Integer, nullable=False, default=0),
    Column("low_stock_threshold", Integer, nullable=False, default=5),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)


product_variants_tbl = Table(
    "product_variants",
    metadata,
    Column("product_id", String, primary_key=True),
    Column("variant_index", Integer, primary_key=True),
    Column("attributes", JSON, nullable=False),
    Column("price", MONEY, nullable=True),
    Column("stock", Integer, nullable=False),
    Column("reserved", Integer, nullable=False, default=0),
    CheckConstraint("stock >= 0", name="ck_variants_stock_non_negative"),
)


stock_reservations_tbl = Table(
    "stock_reservations",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("product_id", String, nullable=False),
    Column("variant_index", Integer, nullable=True),
    Column("quantity", Integer, nullable=False),
    Column("status", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
    Index("ix_stock_reservations_status_expires_at", "status", "expires_at"),
)


coupons_tbl = Table(
    "coupons",
    metadata,
    Column("code", String, primary_key=True),
    Column("discount_type", String(32), nullable=False),
    Column("value", MONEY, nullable=False),
    Column("min_order", MONEY, nullable=False, default=0),
    Column("active", Boolean, nullable=False, default=True),
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)


inbox_events_tbl = Table(
    "inbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=True),
    Column("idempotency_key", String, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    UniqueConstraint("idempotency_key", name="uq_inbox_events_idempotency_key"),
)
