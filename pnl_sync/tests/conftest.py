"""
Pytest configuration and fixtures.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

import pytest

from pnl_sync.clients.base import APIError
from pnl_sync.clients.retry import RetryingTransport
from pnl_sync.core.config import Settings
from pnl_sync.core.time import UTC
from pnl_sync.db.session import create_db_engine, create_session_factory, init_database

MARKETPLACE_ID = "A1F83G8C2ARO7P"


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeSpApiClient:
    """
    In-memory SP-API feeds.

    Pages are addressed by continuation token: page ``n`` carries
    ``NextToken = str(n + 1)`` when a further page exists.
    """

    def __init__(
        self,
        order_pages: Optional[list[list[dict]]] = None,
        order_items: Optional[dict[str, list[list[dict]]]] = None,
        finance_pages: Optional[list[dict]] = None,
        item_errors: Optional[dict[str, Exception]] = None,
        orders_error: Optional[Exception] = None,
    ) -> None:
        self.order_pages = order_pages or []
        self.order_items = order_items or {}
        self.finance_pages = finance_pages or []
        self.item_errors = item_errors or {}
        self.orders_error = orders_error
        self.calls: dict[str, list[Any]] = defaultdict(list)

    async def __aenter__(self) -> "FakeSpApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    @staticmethod
    def _page_index(next_token: Optional[str]) -> int:
        return int(next_token) if next_token else 0

    async def get_orders(
        self,
        created_after: datetime,
        created_before: Optional[datetime] = None,
        page_size: int = 100,
        next_token: Optional[str] = None,
    ) -> dict:
        self.calls["get_orders"].append(next_token)
        if self.orders_error is not None:
            raise self.orders_error
        if not self.order_pages:
            return {"Orders": []}

        index = self._page_index(next_token)
        payload: dict[str, Any] = {"Orders": self.order_pages[index]}
        if index + 1 < len(self.order_pages):
            payload["NextToken"] = str(index + 1)
        return payload

    async def get_order_items(self, order_id: str, next_token: Optional[str] = None) -> dict:
        self.calls["get_order_items"].append((order_id, next_token))
        if order_id in self.item_errors:
            raise self.item_errors[order_id]

        pages = self.order_items.get(order_id) or [[]]
        index = self._page_index(next_token)
        payload: dict[str, Any] = {"AmazonOrderId": order_id, "OrderItems": pages[index]}
        if index + 1 < len(pages):
            payload["NextToken"] = str(index + 1)
        return payload

    async def list_financial_events(
        self,
        posted_after: datetime,
        posted_before: Optional[datetime] = None,
        page_size: int = 100,
        next_token: Optional[str] = None,
    ) -> dict:
        self.calls["list_financial_events"].append(next_token)
        if not self.finance_pages:
            return {"FinancialEvents": {}}

        index = self._page_index(next_token)
        payload: dict[str, Any] = {"FinancialEvents": self.finance_pages[index]}
        if index + 1 < len(self.finance_pages):
            payload["NextToken"] = str(index + 1)
        return payload


def make_order(
    order_id: str,
    purchase_date: str,
    total: Optional[str] = "10.00",
    status: str = "Shipped",
    marketplace_id: str = MARKETPLACE_ID,
) -> dict:
    """Raw SP-API order."""
    order: dict[str, Any] = {
        "AmazonOrderId": order_id,
        "PurchaseDate": purchase_date,
        "OrderStatus": status,
        "MarketplaceId": marketplace_id,
        "ShippingAddress": {"CountryCode": "GB"},
    }
    if total is not None:
        order["OrderTotal"] = {"CurrencyCode": "GBP", "Amount": total}
    return order


def make_item(
    sku: Optional[str],
    asin: Optional[str] = None,
    quantity: int = 1,
    price: Optional[str] = None,
    tax: Optional[str] = None,
    discount: Optional[str] = None,
    title: str = "Widget",
    order_item_id: str = "1",
) -> dict:
    """Raw SP-API order item."""
    item: dict[str, Any] = {
        "OrderItemId": order_item_id,
        "SellerSKU": sku,
        "ASIN": asin,
        "Title": title,
        "QuantityOrdered": quantity,
    }
    if price is not None:
        item["ItemPrice"] = {"CurrencyCode": "GBP", "Amount": price}
    if tax is not None:
        item["ItemTax"] = {"CurrencyCode": "GBP", "Amount": tax}
    if discount is not None:
        item["PromotionDiscount"] = {"CurrencyCode": "GBP", "Amount": discount}
    return item


def money(amount: float, currency: str = "GBP") -> dict:
    """Finances-API currency node."""
    return {"CurrencyCode": currency, "CurrencyAmount": amount}


def aware(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables."""
    engine = create_db_engine("sqlite://")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_transport(recording_sleep) -> RetryingTransport:
    """Retry policy that never actually waits."""
    return RetryingTransport(attempts=4, base_delay_ms=10, max_delay_ms=100, sleep=recording_sleep)


@pytest.fixture
def sp_settings() -> Settings:
    """Settings with a complete SP-API connection."""
    return Settings(
        _env_file=None,
        sp_api_region="eu",
        sp_api_marketplace_id=MARKETPLACE_ID,
        sp_api_client_id="amzn1.application-oa2-client.test",
        sp_api_client_secret="amzn1.oa2-cs.v1.testsecret",
        sp_api_refresh_token="Atzr|test-refresh-token",
        retry_base_delay_ms=10,
        orders_retry_base_delay_ms=10,
        retry_max_delay_ms=100,
        sync_timeout_seconds=None,
    )


@pytest.fixture
def permanent_error() -> APIError:
    return APIError("HTTP 400: InvalidInput", status_code=400)
