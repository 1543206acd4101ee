"""
Unit tests for financial event flattening and collection.
"""

import hashlib
from decimal import Decimal

import pytest

from conftest import FakeSpApiClient, aware, money
from pnl_sync.core.idempotency import build_event_key
from pnl_sync.sync.finances import (
    collect_money_nodes,
    extract_identity,
    fetch_financial_events,
    find_string_by_key,
    flatten_financial_events,
    normalize_event_type,
)

COLLECTED_AT = aware(2024, 5, 10, 8, 30, 0)


def shipment_entry(order_id: str = "206-1111111-1111111", principal: float = 20.0, fee: float = -3.0) -> dict:
    return {
        "AmazonOrderId": order_id,
        "PostedDate": "2024-05-01T10:00:00Z",
        "ShipmentItemList": [
            {
                "SellerSKU": "SKU-1",
                "ASIN": "B000000001",
                "ItemChargeList": [{"ChargeType": "Principal", "ChargeAmount": money(principal)}],
                "ItemFeeList": [{"FeeType": "FBAPerUnitFulfillmentFee", "FeeAmount": money(fee)}],
            }
        ],
    }


class TestMoneyNodes:
    """Test structural money and key search."""

    def test_collects_nested_amounts_in_order(self) -> None:
        """Amounts are collected depth-first across dicts and lists."""
        nodes: list = []
        collect_money_nodes(shipment_entry(), nodes)

        assert nodes == [(Decimal("20.0"), "GBP"), (Decimal("-3.0"), "GBP")]

    def test_ignores_non_numeric_amounts(self) -> None:
        """Nodes whose amount does not parse are skipped."""
        nodes: list = []
        collect_money_nodes({"Fee": {"CurrencyCode": "GBP", "CurrencyAmount": "n/a"}}, nodes)

        assert nodes == []

    def test_find_string_by_key(self) -> None:
        """The first non-empty string under a key is returned."""
        value = {"a": [{"SellerSKU": ""}, {"b": {"SellerSKU": "SKU-9"}}]}

        assert find_string_by_key(value, "SellerSKU") == "SKU-9"
        assert find_string_by_key(value, "ASIN") is None

    def test_normalize_event_type(self) -> None:
        """The trailing "List" is removed."""
        assert normalize_event_type("ServiceFeeEventList") == "ServiceFeeEvent"
        assert normalize_event_type("Unknown") == "Unknown"


class TestIdentityExtraction:
    """Test typed and structural identity extraction."""

    def test_shipment_identity(self) -> None:
        """Shipment entries read SKU and ASIN from the first item line."""
        identity = extract_identity("ShipmentEventList", shipment_entry())

        assert identity.amazon_order_id == "206-1111111-1111111"
        assert identity.sku == "SKU-1"
        assert identity.asin == "B000000001"
        assert identity.posted_date == "2024-05-01T10:00:00Z"

    def test_camel_case_posted_date(self) -> None:
        """Advertising payments spell the date postedDate."""
        entry = {"postedDate": "2024-05-02T00:00:00Z", "baseValue": money(-12.5)}

        identity = extract_identity("ProductAdsPaymentEventList", entry)

        assert identity.posted_date == "2024-05-02T00:00:00Z"

    def test_camel_case_payment_keeps_order_id(self) -> None:
        """A deal payment naming its order is linked to that order."""
        entry = {
            "AmazonOrderId": "ORDER-9",
            "postedDate": "2024-05-02T00:00:00Z",
            "totalAmount": money(-4.0),
        }

        identity = extract_identity("SellerDealPaymentEventList", entry)

        assert identity.amazon_order_id == "ORDER-9"
        assert identity.posted_date == "2024-05-02T00:00:00Z"

    def test_unknown_category_uses_structural_search(self) -> None:
        """Categories without a model are searched structurally."""
        entry = {"Detail": {"AmazonOrderId": "ORDER-1", "PostedDate": "2024-05-03T00:00:00Z"}}

        identity = extract_identity("BrandNewEventList", entry)

        assert identity.amazon_order_id == "ORDER-1"
        assert identity.posted_date == "2024-05-03T00:00:00Z"

    def test_invalid_entry_falls_back_to_structural_search(self) -> None:
        """An entry that fails typed validation is still identified."""
        entry = {
            "AmazonOrderId": "ORDER-2",
            "ShipmentItemList": "not-a-list",
            "Nested": {"SellerSKU": "SKU-7"},
        }

        identity = extract_identity("ShipmentEventList", entry)

        assert identity.amazon_order_id == "ORDER-2"
        assert identity.sku == "SKU-7"


class TestFlattening:
    """Test flattening of a FinancialEvents page."""

    def test_shipment_amount_is_signed_sum(self) -> None:
        """Charges and fees of one entry sum into a single amount."""
        events, dropped = flatten_financial_events(
            {"ShipmentEventList": [shipment_entry()]}, collected_at=COLLECTED_AT
        )

        assert dropped == 0
        assert len(events) == 1
        event = events[0]
        assert event.event_type == "ShipmentEvent"
        assert event.amount == Decimal("17")
        assert event.currency == "GBP"
        assert event.sku == "SKU-1"
        assert event.posted_date == aware(2024, 5, 1, 10, 0, 0)

    def test_entries_without_money_are_dropped(self) -> None:
        """Entries holding no amount are counted, not emitted."""
        events, dropped = flatten_financial_events(
            {
                "ServiceFeeEventList": [
                    {"FeeReason": "none"},
                    {"FeeList": [{"FeeAmount": money(-39.0)}]},
                ]
            },
            collected_at=COLLECTED_AT,
        )

        assert dropped == 1
        assert [event.amount for event in events] == [Decimal("-39.0")]

    def test_missing_posted_date_uses_collection_time(self) -> None:
        """Entries without a date are posted at the collection timestamp."""
        events, _ = flatten_financial_events(
            {"ServiceFeeEventList": [{"FeeList": [{"FeeAmount": money(-39.0)}]}]},
            collected_at=COLLECTED_AT,
        )

        assert events[0].posted_date == COLLECTED_AT
        assert events[0].posted_date_missing is True

    def test_default_currency_when_none_named(self) -> None:
        """A money node without a code takes the default currency."""
        events, _ = flatten_financial_events(
            {"AdjustmentEventList": [{"AdjustmentAmount": {"CurrencyAmount": 5}}]},
            collected_at=COLLECTED_AT,
            default_currency="EUR",
        )

        assert events[0].currency == "EUR"

    def test_identical_entries_on_one_page_stay_distinct(self) -> None:
        """The intra-list index separates numerically identical entries."""
        events, _ = flatten_financial_events(
            {"ShipmentEventList": [shipment_entry(), shipment_entry()]}, collected_at=COLLECTED_AT
        )

        assert len({event.event_key for event in events}) == 2

    def test_non_object_payload(self) -> None:
        """Anything but an object yields nothing."""
        assert flatten_financial_events(None) == ([], 0)
        assert flatten_financial_events({"ShipmentEventList": "oops"}, COLLECTED_AT) == ([], 0)


class TestEventKey:
    """Test the content-hash key."""

    def test_key_seed_format(self) -> None:
        """The key hashes the pipe-joined semantic fields."""
        key = build_event_key(
            "ShipmentEvent",
            aware(2024, 5, 1, 10, 0, 0),
            "ORDER-1",
            "SKU-1",
            None,
            Decimal("17"),
            "GBP",
            0,
        )

        seed = "ShipmentEvent|2024-05-01T10:00:00.000Z|ORDER-1|SKU-1||17.000000|GBP|0"
        assert key == hashlib.sha1(seed.encode("utf-8")).hexdigest()

    def test_key_is_stable_across_runs(self) -> None:
        """The same entry flattened twice produces the same key."""
        first, _ = flatten_financial_events({"ShipmentEventList": [shipment_entry()]}, COLLECTED_AT)
        second, _ = flatten_financial_events(
            {"ShipmentEventList": [shipment_entry()]}, aware(2024, 6, 1)
        )

        assert first[0].event_key == second[0].event_key


class TestFinancialEventCollection:
    """Test paging through the financial-events feed."""

    @pytest.mark.asyncio
    async def test_repeated_entry_across_pages_is_deduplicated(self, fast_transport) -> None:
        """The same entry at the same position on two pages is stored once."""
        page = {"ShipmentEventList": [shipment_entry()]}
        client = FakeSpApiClient(finance_pages=[page, page])

        result = await fetch_financial_events(
            client, aware(2024, 4, 1), max_pages=5, transport=fast_transport, collected_at=COLLECTED_AT
        )

        assert result.diagnostics.pages_fetched == 2
        assert result.diagnostics.events_fetched == 2
        assert result.diagnostics.unique_events == 1
        assert len(result.events) == 1

    @pytest.mark.asyncio
    async def test_page_limit(self, fast_transport) -> None:
        """Stopping with a token left sets the page-limit flag."""
        client = FakeSpApiClient(
            finance_pages=[
                {"ShipmentEventList": [shipment_entry("A")]},
                {"ShipmentEventList": [shipment_entry("B")]},
                {"ShipmentEventList": [shipment_entry("C")]},
            ]
        )

        result = await fetch_financial_events(
            client, aware(2024, 4, 1), max_pages=2, transport=fast_transport
        )

        assert result.diagnostics.page_limit_hit is True
        assert result.diagnostics.pages_fetched == 2
        assert sorted(event.amazon_order_id for event in result.events) == ["A", "B"]
        assert client.calls["list_financial_events"] == [None, "1"]

    @pytest.mark.asyncio
    async def test_dropped_entries_are_reported(self, fast_transport) -> None:
        """Entries without amounts show up in the diagnostics."""
        client = FakeSpApiClient(
            finance_pages=[{"ShipmentEventList": [shipment_entry(), {"AmazonOrderId": "X"}]}]
        )

        result = await fetch_financial_events(client, aware(2024, 4, 1), transport=fast_transport)

        assert result.diagnostics.entries_dropped == 1
        assert result.diagnostics.page_limit_hit is False
        assert len(result.events) == 1

    @pytest.mark.asyncio
    async def test_undated_events_are_counted(self, fast_transport) -> None:
        """Events falling back to the collection time show up in the diagnostics."""
        client = FakeSpApiClient(
            finance_pages=[
                {
                    "ShipmentEventList": [shipment_entry()],
                    "ServiceFeeEventList": [
                        {"FeeList": [{"FeeAmount": money(-1.0)}]},
                        {"FeeList": [{"FeeAmount": money(-2.0)}]},
                    ],
                }
            ]
        )

        result = await fetch_financial_events(
            client, aware(2024, 4, 1), transport=fast_transport, collected_at=COLLECTED_AT
        )

        assert result.diagnostics.events_missing_posted_date == 2
        assert sorted(event.posted_date_missing for event in result.events) == [False, True, True]
