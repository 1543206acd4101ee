"""
Unit tests for the reconciliation writer.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select

from conftest import MARKETPLACE_ID, aware, make_item, make_order
from pnl_sync.db.models import FinancialEvent, Order, OrderItem, Product, RefundAllocation
from pnl_sync.db.session import UnitOfWork, session_scope
from pnl_sync.sync.types import FlattenedFinancialEvent, OrderWithItems
from pnl_sync.sync.writer import persist_financial_events, persist_order_entries

ORDER_ID = "206-1234567-1234567"


def entry(order_id: str = ORDER_ID, items: Optional[list] = None, purchase_date: str = "2024-05-01T10:00:00Z") -> OrderWithItems:
    if items is None:
        items = [
            make_item("SKU-A", "B0000000AA", price="10.00", order_item_id="1"),
            make_item("SKU-B", "B0000000BB", price="21.00", order_item_id="2"),
        ]
    return OrderWithItems(order=make_order(order_id, purchase_date), items=items)


def flat_event(
    key: str,
    event_type: str = "RefundEvent",
    amount: str = "-30",
    order_id: Optional[str] = ORDER_ID,
    posted_date: Optional[datetime] = None,
) -> FlattenedFinancialEvent:
    return FlattenedFinancialEvent(
        event_key=key.ljust(40, "0"),
        posted_date=posted_date or aware(2024, 5, 3, 9, 0, 0),
        event_type=event_type,
        amount=Decimal(amount),
        currency="GBP",
        amazon_order_id=order_id,
        sku="SKU-A",
        raw_json={"AmazonOrderId": order_id},
    )


def count(session_factory, model) -> int:
    with session_scope(session_factory) as session:
        return session.scalar(select(func.count()).select_from(model))


def allocations(session_factory) -> list[tuple[str, Decimal]]:
    with session_scope(session_factory) as session:
        rows = session.execute(
            select(OrderItem.sku, RefundAllocation.amount)
            .join(OrderItem, RefundAllocation.order_item_id == OrderItem.id)
            .order_by(OrderItem.sku)
        ).all()
        return [(sku, amount) for sku, amount in rows]


class TestOrderWriter:
    """Test order and line-item upserts."""

    def test_order_upsert_is_idempotent(self, session_factory) -> None:
        """Writing the same orders twice leaves one copy of each row."""
        entries = [entry(), entry("206-7654321-7654321")]

        first = persist_order_entries(UnitOfWork(session_factory), entries, MARKETPLACE_ID)
        second = persist_order_entries(UnitOfWork(session_factory), entries, MARKETPLACE_ID)

        assert first.orders_upserted == second.orders_upserted == 2
        assert first.order_items_upserted == 4
        assert count(session_factory, Order) == 2
        assert count(session_factory, OrderItem) == 4
        assert count(session_factory, Product) == 2

    def test_order_fields_are_stored(self, session_factory) -> None:
        """Header fields come from the raw order."""
        persist_order_entries(UnitOfWork(session_factory), [entry()], MARKETPLACE_ID)

        with session_scope(session_factory) as session:
            order = session.get(Order, ORDER_ID)
            assert order.purchase_date == datetime(2024, 5, 1, 10, 0, 0)
            assert order.order_status == "Shipped"
            assert order.buyer_country == "GB"
            assert order.currency == "GBP"
            assert order.total_amount == Decimal("10.00")
            assert [item.sku for item in order.items] == ["SKU-A", "SKU-B"]
            assert all(item.product_id is not None for item in order.items)

    def test_items_are_replaced(self, session_factory) -> None:
        """A re-fetched order keeps only its latest line items."""
        persist_order_entries(UnitOfWork(session_factory), [entry()], MARKETPLACE_ID)
        persist_order_entries(
            UnitOfWork(session_factory),
            [entry(items=[make_item("SKU-C", price="5.00")])],
            MARKETPLACE_ID,
        )

        with session_scope(session_factory) as session:
            order = session.get(Order, ORDER_ID)
            assert [item.sku for item in order.items] == ["SKU-C"]

    def test_invalid_purchase_date_is_skipped(self, session_factory) -> None:
        """Orders whose purchase date does not parse are not stored."""
        counts = persist_order_entries(
            UnitOfWork(session_factory),
            [entry(purchase_date="not-a-date"), entry("206-7654321-7654321")],
            MARKETPLACE_ID,
        )

        assert counts.orders_skipped_invalid == 1
        assert counts.orders_upserted == 1
        assert count(session_factory, Order) == 1

    def test_product_matched_by_sku_gains_asin(self, session_factory) -> None:
        """A product first seen without ASIN is completed by a later item."""
        persist_order_entries(
            UnitOfWork(session_factory), [entry(items=[make_item("SKU-A")])], MARKETPLACE_ID
        )
        persist_order_entries(
            UnitOfWork(session_factory),
            [entry("206-7654321-7654321", items=[make_item("SKU-A", "B0000000AA", title="New title")])],
            MARKETPLACE_ID,
        )

        with session_scope(session_factory) as session:
            products = session.scalars(select(Product)).all()
            assert len(products) == 1
            assert products[0].asin == "B0000000AA"
            assert products[0].title == "New title"

    def test_items_without_identifiers_have_no_product(self, session_factory) -> None:
        """Items with neither SKU nor ASIN are stored without a product."""
        counts = persist_order_entries(
            UnitOfWork(session_factory), [entry(items=[make_item(None)])], MARKETPLACE_ID
        )

        assert counts.order_items_upserted == 1
        assert counts.products_upserted == 0
        assert count(session_factory, Product) == 0


class TestFinancialEventWriter:
    """Test event upserts, order links and refund attribution."""

    def test_events_link_only_to_known_orders(self, session_factory) -> None:
        """Events of orders not stored locally keep no order link."""
        persist_order_entries(UnitOfWork(session_factory), [entry()], MARKETPLACE_ID)

        counts = persist_financial_events(
            UnitOfWork(session_factory),
            [
                flat_event("a", event_type="ShipmentEvent", amount="17"),
                flat_event("b", event_type="ShipmentEvent", amount="17", order_id="UNKNOWN"),
            ],
            MARKETPLACE_ID,
        )

        assert counts.events_upserted == 2
        assert counts.events_linked == 1
        with session_scope(session_factory) as session:
            linked = dict(session.execute(select(FinancialEvent.event_key, FinancialEvent.amazon_order_id)).all())
            assert linked["a".ljust(40, "0")] == ORDER_ID
            assert linked["b".ljust(40, "0")] is None

    def test_refund_marks_items_and_allocates(self, session_factory) -> None:
        """A refund of a stored order flags its items and splits the amount."""
        persist_order_entries(UnitOfWork(session_factory), [entry()], MARKETPLACE_ID)

        counts = persist_financial_events(
            UnitOfWork(session_factory), [flat_event("r")], MARKETPLACE_ID
        )

        assert counts.refunds_allocated == 1
        assert counts.order_items_marked_refunded == 2
        assert allocations(session_factory) == [
            ("SKU-A", Decimal("9.677419")),
            ("SKU-B", Decimal("20.322581")),
        ]
        with session_scope(session_factory) as session:
            flags = session.scalars(select(OrderItem.is_refunded)).all()
            assert flags == [True, True]

    def test_rewriting_events_is_idempotent(self, session_factory) -> None:
        """The same events written twice leave one row and one allocation set each."""
        persist_order_entries(UnitOfWork(session_factory), [entry()], MARKETPLACE_ID)
        events = [flat_event("r"), flat_event("f", event_type="ServiceFeeEvent", amount="-2.5")]

        persist_financial_events(UnitOfWork(session_factory), events, MARKETPLACE_ID)
        persist_financial_events(UnitOfWork(session_factory), events, MARKETPLACE_ID)

        assert count(session_factory, FinancialEvent) == 2
        assert count(session_factory, RefundAllocation) == 2
        assert sum(amount for _, amount in allocations(session_factory)) == Decimal("30")

    def test_refund_reallocated_when_items_change(self, session_factory) -> None:
        """Replacing an order's items moves its refund onto the new items."""
        persist_order_entries(UnitOfWork(session_factory), [entry()], MARKETPLACE_ID)
        persist_financial_events(UnitOfWork(session_factory), [flat_event("r")], MARKETPLACE_ID)

        counts = persist_order_entries(
            UnitOfWork(session_factory),
            [entry(items=[make_item("SKU-C", price="12.00")])],
            MARKETPLACE_ID,
        )

        assert counts.refunds_reallocated == 1
        assert allocations(session_factory) == [("SKU-C", Decimal("30.000000"))]
        with session_scope(session_factory) as session:
            assert session.scalars(select(OrderItem.is_refunded)).all() == [True]

    def test_refund_without_items_is_unattributed(self, session_factory) -> None:
        """A refund of an order with no line items is counted, not allocated."""
        persist_order_entries(UnitOfWork(session_factory), [entry(items=[])], MARKETPLACE_ID)

        counts = persist_financial_events(
            UnitOfWork(session_factory), [flat_event("r")], MARKETPLACE_ID
        )

        assert counts.refunds_allocated == 0
        assert counts.refunds_unattributed == 1
        assert counts.unattributed_event_keys == ["r".ljust(40, "0")]
        assert count(session_factory, RefundAllocation) == 0

    def test_batch_size_does_not_change_outcome(self, session_factory) -> None:
        """Small batches write the same rows as one large batch."""
        persist_order_entries(UnitOfWork(session_factory), [entry()], MARKETPLACE_ID)
        events = [
            flat_event("a", event_type="ShipmentEvent", amount="31"),
            flat_event("b", event_type="ServiceFeeEvent", amount="-4"),
            flat_event("c"),
        ]

        counts = persist_financial_events(
            UnitOfWork(session_factory), events, MARKETPLACE_ID, batch_size=1
        )

        assert counts.events_upserted == 3
        assert counts.refunds_allocated == 1
        assert count(session_factory, FinancialEvent) == 3


class TestDryRun:
    """Test that dry runs compute counts without persisting."""

    def test_dry_run_rolls_back(self, session_factory) -> None:
        """Counts match a real run while the database stays empty."""
        with UnitOfWork(session_factory, dry_run=True) as uow:
            orders = persist_order_entries(uow, [entry()], MARKETPLACE_ID)
            finances = persist_financial_events(uow, [flat_event("r")], MARKETPLACE_ID)

        assert orders.orders_upserted == 1
        assert finances.events_linked == 1
        assert finances.refunds_allocated == 1
        assert count(session_factory, Order) == 0
        assert count(session_factory, FinancialEvent) == 0
        assert count(session_factory, RefundAllocation) == 0
