"""
Order collector.

Pages through the orders feed, deduplicates, applies the fetch limits and
fetches line items for the most recent orders.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional

from pnl_sync.clients.retry import RetryingTransport
from pnl_sync.clients.sp_api_client import SpApiClient
from pnl_sync.core.config import settings
from pnl_sync.core.logging import get_logger
from pnl_sync.core.time import UTC, parse_iso, utcnow
from pnl_sync.sync.types import FetchOrdersResult, OrdersFetchDiagnostics, OrderWithItems

logger = get_logger(__name__)

# Orders newer than this may still be mid-write upstream.
CREATED_BEFORE_LAG = timedelta(minutes=2)

_OLDEST = datetime.min.replace(tzinfo=UTC)


def compute_order_window(days: int, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """
    Created-after / created-before bounds for a lookback of ``days``.

    Args:
        days: Lookback in days (floored at 1)
        now: Reference time (defaults to current UTC time)

    Returns:
        (created_after, created_before)
    """
    now = now or utcnow()
    return now - timedelta(days=max(days, 1)), now - CREATED_BEFORE_LAG


def _purchase_date(order: dict[str, Any]) -> datetime:
    return parse_iso(order.get("PurchaseDate")) or _OLDEST


def default_orders_transport() -> RetryingTransport:
    return RetryingTransport(
        attempts=settings.retry_attempts,
        base_delay_ms=settings.orders_retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
    )


async def fetch_order_items(
    client: SpApiClient,
    order_id: str,
    transport: RetryingTransport,
) -> list[dict[str, Any]]:
    """
    Fetch every line item of one order, following continuation tokens.

    Args:
        client: SP-API client
        order_id: Amazon order id
        transport: Retry policy for each page

    Returns:
        Raw OrderItem objects
    """
    items: list[dict[str, Any]] = []
    next_token: Optional[str] = None

    while True:
        token = next_token
        payload = await transport.call(lambda: client.get_order_items(order_id, next_token=token))
        items.extend(payload.get("OrderItems") or [])

        next_token = payload.get("NextToken")
        if not next_token:
            return items


async def fetch_orders_with_items(
    client: SpApiClient,
    created_after: datetime,
    created_before: Optional[datetime] = None,
    max_pages: Optional[int] = None,
    max_orders: Optional[int] = None,
    max_orders_with_items: Optional[int] = None,
    item_concurrency: Optional[int] = None,
    page_size: Optional[int] = None,
    transport: Optional[RetryingTransport] = None,
) -> FetchOrdersResult:
    """
    Collect orders and their line items.

    Pagination stops when the continuation token runs out, ``max_pages``
    pages were read, or at least ``max_orders`` orders were accumulated.
    Orders are deduplicated by id (last seen wins) and sorted newest first;
    only the first ``max_orders_with_items`` get their items fetched.

    A failed item fetch keeps the order with an empty item list and adds a
    warning instead of aborting the batch.

    Args:
        client: SP-API client
        created_after: Lower purchase-date bound
        created_before: Upper purchase-date bound
        max_pages: Page limit
        max_orders: Accumulated-order limit
        max_orders_with_items: Number of orders whose items are fetched
        item_concurrency: Concurrent item fetches
        page_size: Orders per page
        transport: Retry policy for order pages; item pages use the same
            policy with the default base delay

    Returns:
        Entries (newest first), diagnostics and warnings
    """
    max_pages = max_pages or settings.sync_max_pages
    max_orders = max_orders or settings.sync_max_orders
    max_orders_with_items = max_orders_with_items or settings.sync_max_orders_with_items
    item_concurrency = max(item_concurrency or settings.item_fetch_concurrency, 1)
    page_size = page_size or settings.sync_page_size
    transport = transport or default_orders_transport()
    item_transport = transport.with_options(base_delay_ms=settings.retry_base_delay_ms)

    diagnostics = OrdersFetchDiagnostics(
        max_pages=max_pages,
        max_orders=max_orders,
        max_orders_with_items=max_orders_with_items,
    )

    orders: list[dict[str, Any]] = []
    next_token: Optional[str] = None

    while True:
        token = next_token
        payload = await transport.call(
            lambda: client.get_orders(
                created_after,
                created_before=created_before,
                page_size=page_size,
                next_token=token,
            )
        )
        orders.extend(payload.get("Orders") or [])

        next_token = payload.get("NextToken")
        diagnostics.pages_fetched += 1

        logger.debug(
            "Fetched orders page",
            extra={"page": diagnostics.pages_fetched, "orders_so_far": len(orders)},
        )

        if len(orders) >= max_orders:
            diagnostics.order_limit_hit = True
            break

        if not next_token or diagnostics.pages_fetched >= max_pages:
            break

    diagnostics.page_limit_hit = bool(next_token) and diagnostics.pages_fetched >= max_pages
    diagnostics.total_orders_fetched = len(orders)

    if len(orders) > max_orders:
        orders = orders[:max_orders]

    unique: dict[str, dict[str, Any]] = {}
    for order in orders:
        order_id = order.get("AmazonOrderId")
        if order_id:
            unique[order_id] = order

    sorted_orders = sorted(unique.values(), key=_purchase_date, reverse=True)
    diagnostics.unique_orders_fetched = len(sorted_orders)

    with_items = sorted_orders[:max_orders_with_items]
    warnings: list[str] = []
    semaphore = asyncio.Semaphore(item_concurrency)

    async def collect(order: dict[str, Any]) -> OrderWithItems:
        order_id = order["AmazonOrderId"]
        async with semaphore:
            try:
                items = await fetch_order_items(client, order_id, item_transport)
            except Exception as e:
                logger.warning(
                    "Order-item fetch failed",
                    extra={"amazon_order_id": order_id, "error": str(e)},
                )
                diagnostics.item_fetch_failures += 1
                warnings.append(f"Order-item fetch failed for {order_id}: {e}")
                items = []
        return OrderWithItems(order=order, items=items)

    entries = list(await asyncio.gather(*(collect(order) for order in with_items)))
    diagnostics.orders_with_items_fetched = len(entries)

    entries.extend(OrderWithItems(order=order) for order in sorted_orders[max_orders_with_items:])
    diagnostics.orders_skipped_for_items = max(
        len(sorted_orders) - diagnostics.orders_with_items_fetched, 0
    )

    logger.info(
        "Orders collected",
        extra={"amazon_orders": len(entries), **diagnostics.to_dict()},
    )

    return FetchOrdersResult(entries=entries, diagnostics=diagnostics, warnings=warnings)
