"""
Database models for the seller P&L sync.

All models use SQLAlchemy 2.0 declarative base with type hints. Datetimes are
stored as naive UTC.
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pnl_sync.db.base import Base, JSONType, TimestampMixin

MONEY = Numeric(18, 6)


class SyncRunStatus(str, enum.Enum):
    """Lifecycle of one sync invocation."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class SyncRunType(str, enum.Enum):
    """Kinds of sync invocation."""

    FULL = "full"
    ORDERS = "orders"
    FINANCES = "finances"
    DAILY_SUMMARY = "daily-summary"


class Order(Base, TimestampMixin):
    """
    Marketplace orders.

    Upserted by upstream order id; never deleted by the sync pipeline.
    """

    __tablename__ = "orders"

    amazon_order_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    purchase_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    order_status: Mapped[str] = mapped_column(String(50), nullable=False)
    marketplace_id: Mapped[str] = mapped_column(String(20), nullable=False)
    buyer_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    raw_data: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True, comment="Raw SP-API order"
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    __table_args__ = (
        Index("idx_orders_marketplace_purchase", "marketplace_id", "purchase_date"),
    )


class OrderItem(Base, TimestampMixin):
    """
    Order line items.

    Replaced wholesale on every sync of their order.
    """

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    amazon_order_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("orders.amazon_order_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_item_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    asin: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    quantity_ordered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    item_price: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    item_tax: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    promotion_discount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    is_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    product_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )

    order: Mapped[Order] = relationship(back_populates="items")
    allocations: Mapped[list["RefundAllocation"]] = relationship(
        back_populates="order_item",
        cascade="all, delete-orphan",
    )


class Product(Base, TimestampMixin):
    """
    Catalog products seen on order items, identified by ASIN and/or SKU.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asin: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)


class ProductCost(Base, TimestampMixin):
    """
    Unit cost of goods per SKU or ASIN.
    """

    __tablename__ = "product_costs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    asin: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True)
    unit_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    includes_vat: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class FinancialEvent(Base, TimestampMixin):
    """
    One normalised financial line, deduplicated by content-hash key.

    ``amazon_order_id`` is only set when the order is known locally.
    """

    __tablename__ = "financial_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_key: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    posted_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    marketplace_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    amazon_order_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        ForeignKey("orders.amazon_order_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    asin: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    raw_data: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True, comment="Raw SP-API event entry"
    )

    allocations: Mapped[list["RefundAllocation"]] = relationship(
        back_populates="financial_event",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_financial_events_marketplace_posted", "marketplace_id", "posted_date"),
    )


class RefundAllocation(Base, TimestampMixin):
    """
    Share of a refund event attributed to one order item.
    """

    __tablename__ = "refund_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    financial_event_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("financial_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_item_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    financial_event: Mapped[FinancialEvent] = relationship(back_populates="allocations")
    order_item: Mapped[OrderItem] = relationship(back_populates="allocations")

    __table_args__ = (
        UniqueConstraint("financial_event_id", "order_item_id", name="uq_refund_event_item"),
    )


class DailySummary(Base, TimestampMixin):
    """
    Per-day, per-marketplace P&L metrics. Fully recomputed on every sync.
    """

    __tablename__ = "daily_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    summary_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    marketplace_id: Mapped[str] = mapped_column(String(20), nullable=False)
    sales: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    orders_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunds: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    amazon_fees: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    other_fees: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    net_payout: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    cogs: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    gross_profit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    net_profit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    __table_args__ = (
        UniqueConstraint("date", "marketplace_id", name="uq_daily_summary_date_marketplace"),
        Index("idx_daily_summaries_marketplace_date", "marketplace_id", "date"),
    )


class SyncRun(Base, TimestampMixin):
    """
    Append-only ledger of sync invocations.
    """

    __tablename__ = "sync_runs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    run_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    request_id: Mapped[str] = mapped_column(String(100), nullable=False)
    marketplace_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    limits: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    warnings_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_sync_runs_type_started", "run_type", "started_at"),
        Index("idx_sync_runs_status_started", "status", "started_at"),
    )
