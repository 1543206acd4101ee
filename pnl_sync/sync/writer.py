"""
Reconciliation writer.

Upserts orders, line items and financial events by their natural keys.
One order (header plus item replacement) is one transaction; financial
events are written one batch per transaction.
"""

from collections import defaultdict
from typing import Any, Iterator, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from pnl_sync.core.config import settings
from pnl_sync.core.currency import parse_money_amount
from pnl_sync.core.logging import get_logger
from pnl_sync.core.time import parse_iso, to_db
from pnl_sync.db.models import FinancialEvent, Order, OrderItem, Product
from pnl_sync.db.session import UnitOfWork
from pnl_sync.sync.allocation import apply_refund_allocations, is_refund_event_type
from pnl_sync.sync.types import (
    FinancesWriteCounts,
    FlattenedFinancialEvent,
    OrdersWriteCounts,
    OrderWithItems,
)

logger = get_logger(__name__)


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def upsert_product_from_item(session: Session, item: dict[str, Any]) -> Optional[Product]:
    """
    Find or create the product of a line item.

    Looks up by ASIN, then by SKU, fills identifiers the existing row lacks
    and refreshes the title.

    Args:
        session: Open session
        item: Raw OrderItem

    Returns:
        Product, or None when the item has neither ASIN nor SKU
    """
    asin = _clean(item.get("ASIN"))
    sku = _clean(item.get("SellerSKU"))
    title = _clean(item.get("Title"))

    if not asin and not sku:
        return None

    product = None
    if asin:
        product = session.scalar(select(Product).where(Product.asin == asin))
    if product is None and sku:
        product = session.scalar(select(Product).where(Product.sku == sku))

    if product is None:
        product = Product(asin=asin, sku=sku, title=title)
        session.add(product)
        session.flush()
        return product

    if title:
        product.title = title
    if not product.asin and asin:
        # another row may already own this ASIN
        if session.scalar(select(Product.id).where(Product.asin == asin)) is None:
            product.asin = asin
    if not product.sku and sku:
        if session.scalar(select(Product.id).where(Product.sku == sku)) is None:
            product.sku = sku

    return product


def _build_order_item(item: dict[str, Any], product: Optional[Product]) -> OrderItem:
    quantity = item.get("QuantityOrdered")
    return OrderItem(
        order_item_id=_clean(item.get("OrderItemId")),
        asin=_clean(item.get("ASIN")),
        sku=_clean(item.get("SellerSKU")),
        title=_clean(item.get("Title")),
        quantity_ordered=int(quantity) if isinstance(quantity, (int, float)) else 0,
        item_price=parse_money_amount(item.get("ItemPrice")),
        item_tax=parse_money_amount(item.get("ItemTax")),
        promotion_discount=parse_money_amount(item.get("PromotionDiscount")),
        is_refunded=False,
        product_id=product.id if product is not None else None,
    )


def reallocate_order_refunds(
    session: Session,
    amazon_order_id: str,
    items: Sequence[OrderItem],
) -> int:
    """
    Re-attach every known refund event of an order to its current items.

    Returns:
        Number of refund events processed
    """
    events = session.scalars(
        select(FinancialEvent)
        .where(FinancialEvent.amazon_order_id == amazon_order_id)
        .order_by(FinancialEvent.id)
    ).all()
    refunds = [event for event in events if is_refund_event_type(event.event_type)]

    if refunds:
        for item in items:
            item.is_refunded = True

    for event in refunds:
        apply_refund_allocations(session, event, items)

    return len(refunds)


def persist_order_entry(
    session: Session,
    entry: OrderWithItems,
    default_marketplace_id: str,
    counts: OrdersWriteCounts,
) -> Optional[Order]:
    """
    Upsert one order and replace its line items.

    Orders with an unparsable purchase date are skipped.

    Args:
        session: Open session (one transaction per order)
        entry: Order with fetched items
        default_marketplace_id: Used when the order names no marketplace
        counts: Counters updated in place

    Returns:
        Persisted order, or None when skipped
    """
    raw = entry.order
    purchase_date = parse_iso(raw.get("PurchaseDate"))
    if purchase_date is None:
        logger.warning(
            "Skipping order with invalid purchase date",
            extra={"amazon_order_id": entry.amazon_order_id},
        )
        counts.orders_skipped_invalid += 1
        return None

    order = session.get(Order, entry.amazon_order_id)
    if order is None:
        order = Order(amazon_order_id=entry.amazon_order_id)
        session.add(order)

    order_total = raw.get("OrderTotal") or {}
    shipping_address = raw.get("ShippingAddress") or {}

    order.purchase_date = to_db(purchase_date)
    order.order_status = raw.get("OrderStatus") or "Unknown"
    order.marketplace_id = raw.get("MarketplaceId") or default_marketplace_id
    order.buyer_country = _clean(shipping_address.get("CountryCode"))
    order.total_amount = parse_money_amount(order_total)
    order.currency = _clean(order_total.get("CurrencyCode"))
    order.raw_data = raw

    order.items.clear()
    session.flush()

    for raw_item in entry.items:
        product = upsert_product_from_item(session, raw_item)
        if product is not None:
            counts.products_upserted += 1
        order.items.append(_build_order_item(raw_item, product))
        counts.order_items_upserted += 1

    session.flush()

    counts.refunds_reallocated += reallocate_order_refunds(
        session, order.amazon_order_id, order.items
    )
    counts.orders_upserted += 1
    return order


def persist_order_entries(
    uow: UnitOfWork,
    entries: Sequence[OrderWithItems],
    default_marketplace_id: str,
) -> OrdersWriteCounts:
    """
    Persist collected orders, one transaction per order.

    Args:
        uow: Unit of work of the current run
        entries: Collected orders
        default_marketplace_id: Used when an order names no marketplace

    Returns:
        Write counters
    """
    counts = OrdersWriteCounts()

    for entry in entries:
        with uow.transaction() as session:
            persist_order_entry(session, entry, default_marketplace_id, counts)

    logger.info(
        "Orders persisted",
        extra={
            "orders_upserted": counts.orders_upserted,
            "order_items_upserted": counts.order_items_upserted,
            "dry_run": uow.dry_run,
        },
    )
    return counts


def _batches(
    events: Sequence[FlattenedFinancialEvent], size: int
) -> Iterator[Sequence[FlattenedFinancialEvent]]:
    size = max(size, 1)
    for start in range(0, len(events), size):
        yield events[start : start + size]


def persist_financial_event_batch(
    session: Session,
    batch: Sequence[FlattenedFinancialEvent],
    marketplace_id: str,
    counts: FinancesWriteCounts,
) -> None:
    """
    Upsert one batch of financial events and attribute its refunds.

    Order links are kept only for orders already stored locally. Items of
    orders with refund events are flagged refunded and receive allocations.
    """
    order_ids = {event.amazon_order_id for event in batch if event.amazon_order_id}
    known_order_ids: set[str] = set()
    if order_ids:
        known_order_ids = set(
            session.scalars(
                select(Order.amazon_order_id).where(Order.amazon_order_id.in_(sorted(order_ids)))
            )
        )

    existing = {
        row.event_key: row
        for row in session.scalars(
            select(FinancialEvent).where(
                FinancialEvent.event_key.in_([event.event_key for event in batch])
            )
        )
    }

    refunds_by_order: dict[str, list[FinancialEvent]] = defaultdict(list)

    for event in batch:
        linked_order_id = (
            event.amazon_order_id if event.amazon_order_id in known_order_ids else None
        )

        row = existing.get(event.event_key)
        if row is None:
            row = FinancialEvent(event_key=event.event_key)
            session.add(row)
            existing[event.event_key] = row

        row.posted_date = to_db(event.posted_date)
        row.event_type = event.event_type
        row.amount = event.amount
        row.currency = event.currency
        row.marketplace_id = marketplace_id
        row.amazon_order_id = linked_order_id
        row.asin = event.asin
        row.sku = event.sku
        row.raw_data = event.raw_json

        counts.events_upserted += 1
        if linked_order_id:
            counts.events_linked += 1
            if is_refund_event_type(event.event_type):
                refunds_by_order[linked_order_id].append(row)

    session.flush()

    for amazon_order_id, refund_rows in refunds_by_order.items():
        items = session.scalars(
            select(OrderItem)
            .where(OrderItem.amazon_order_id == amazon_order_id)
            .order_by(OrderItem.id)
        ).all()

        for item in items:
            item.is_refunded = True
        counts.order_items_marked_refunded += len(items)

        for row in refund_rows:
            if apply_refund_allocations(session, row, items):
                counts.refunds_allocated += 1
            else:
                counts.refunds_unattributed += 1
                counts.unattributed_event_keys.append(row.event_key)


def persist_financial_events(
    uow: UnitOfWork,
    events: Sequence[FlattenedFinancialEvent],
    marketplace_id: str,
    batch_size: Optional[int] = None,
) -> FinancesWriteCounts:
    """
    Persist flattened financial events, one transaction per batch.

    Args:
        uow: Unit of work of the current run
        events: Unique flattened events
        marketplace_id: Marketplace the events were fetched for
        batch_size: Events per transaction

    Returns:
        Write counters
    """
    counts = FinancesWriteCounts()

    for batch in _batches(events, batch_size or settings.sync_batch_size):
        with uow.transaction() as session:
            persist_financial_event_batch(session, batch, marketplace_id, counts)

    logger.info(
        "Financial events persisted",
        extra={
            "events_upserted": counts.events_upserted,
            "events_linked": counts.events_linked,
            "refunds_allocated": counts.refunds_allocated,
            "refunds_unattributed": counts.refunds_unattributed,
            "dry_run": uow.dry_run,
        },
    )
    return counts
