"""
Data carried between the collectors, the writer and the pipeline.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


@dataclass
class OrderWithItems:
    """One upstream order and the line items fetched for it."""

    order: dict[str, Any]
    items: list[dict[str, Any]] = field(default_factory=list)

    @property
    def amazon_order_id(self) -> str:
        return self.order["AmazonOrderId"]


@dataclass
class OrdersFetchDiagnostics:
    pages_fetched: int = 0
    page_limit_hit: bool = False
    order_limit_hit: bool = False
    total_orders_fetched: int = 0
    unique_orders_fetched: int = 0
    orders_with_items_fetched: int = 0
    orders_skipped_for_items: int = 0
    item_fetch_failures: int = 0
    max_pages: int = 0
    max_orders: int = 0
    max_orders_with_items: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FetchOrdersResult:
    entries: list[OrderWithItems]
    diagnostics: OrdersFetchDiagnostics
    warnings: list[str] = field(default_factory=list)


@dataclass
class FlattenedFinancialEvent:
    """
    One normalised financial line.

    ``amount`` is the signed sum of every money node in the source entry.
    """

    event_key: str
    posted_date: datetime
    event_type: str
    amount: Decimal
    currency: str
    amazon_order_id: Optional[str] = None
    sku: Optional[str] = None
    asin: Optional[str] = None
    raw_json: Optional[dict[str, Any]] = None
    posted_date_missing: bool = False


@dataclass
class FinanceFetchDiagnostics:
    pages_fetched: int = 0
    page_limit_hit: bool = False
    events_fetched: int = 0
    unique_events: int = 0
    entries_dropped: int = 0
    events_missing_posted_date: int = 0
    max_pages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FetchFinancialEventsResult:
    events: list[FlattenedFinancialEvent]
    diagnostics: FinanceFetchDiagnostics


@dataclass
class OrdersWriteCounts:
    orders_upserted: int = 0
    order_items_upserted: int = 0
    products_upserted: int = 0
    orders_skipped_invalid: int = 0
    refunds_reallocated: int = 0


@dataclass
class FinancesWriteCounts:
    events_upserted: int = 0
    events_linked: int = 0
    order_items_marked_refunded: int = 0
    refunds_allocated: int = 0
    refunds_unattributed: int = 0
    unattributed_event_keys: list[str] = field(default_factory=list)
