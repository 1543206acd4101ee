"""
Financial event collector.

The financial-events payload is keyed by category ("ShipmentEventList",
"ServiceFeeEventList", ...), each holding entries of a different shape.
Identity fields (order id, SKU, ASIN, posted date) are read through a typed
model per known category; unknown categories, or entries that fail
validation, fall back to a structural search. Amounts always come from the
structural money walker: every ``CurrencyAmount`` in the entry is summed and
the first ``CurrencyCode`` seen is the event currency.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pnl_sync.clients.retry import RetryingTransport
from pnl_sync.clients.sp_api_client import SpApiClient
from pnl_sync.core.config import settings
from pnl_sync.core.currency import ZERO, to_decimal
from pnl_sync.core.idempotency import build_event_key
from pnl_sync.core.logging import get_logger
from pnl_sync.core.time import parse_iso, utcnow
from pnl_sync.sync.types import (
    FetchFinancialEventsResult,
    FinanceFetchDiagnostics,
    FlattenedFinancialEvent,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventIdentity:
    amazon_order_id: Optional[str] = None
    sku: Optional[str] = None
    asin: Optional[str] = None
    posted_date: Optional[str] = None


class _EventEntry(BaseModel):
    """Common shape of a financial event entry."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    posted_date: Optional[str] = Field(default=None, alias="PostedDate")
    amazon_order_id: Optional[str] = Field(default=None, alias="AmazonOrderId")

    def identity(self) -> EventIdentity:
        return EventIdentity(
            amazon_order_id=self.amazon_order_id,
            posted_date=self.posted_date,
        )


class _SkuLine(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    seller_sku: Optional[str] = Field(default=None, alias="SellerSKU")
    asin: Optional[str] = Field(default=None, alias="ASIN")


def _first_sku_line(*line_lists: Optional[list[_SkuLine]]) -> _SkuLine:
    for lines in line_lists:
        for line in lines or []:
            if line.seller_sku or line.asin:
                return line
    return _SkuLine()


class ShipmentEvent(_EventEntry):
    """Shipment, refund, guarantee-claim and chargeback entries."""

    shipment_items: Optional[list[_SkuLine]] = Field(default=None, alias="ShipmentItemList")
    shipment_item_adjustments: Optional[list[_SkuLine]] = Field(
        default=None, alias="ShipmentItemAdjustmentList"
    )

    def identity(self) -> EventIdentity:
        line = _first_sku_line(self.shipment_items, self.shipment_item_adjustments)
        return EventIdentity(
            amazon_order_id=self.amazon_order_id,
            sku=line.seller_sku,
            asin=line.asin,
            posted_date=self.posted_date,
        )


class ServiceFeeEvent(_EventEntry):
    seller_sku: Optional[str] = Field(default=None, alias="SellerSKU")
    asin: Optional[str] = Field(default=None, alias="ASIN")
    fee_reason: Optional[str] = Field(default=None, alias="FeeReason")

    def identity(self) -> EventIdentity:
        return EventIdentity(
            amazon_order_id=self.amazon_order_id,
            sku=self.seller_sku,
            asin=self.asin,
            posted_date=self.posted_date,
        )


class AdjustmentEvent(_EventEntry):
    adjustment_type: Optional[str] = Field(default=None, alias="AdjustmentType")
    adjustment_items: Optional[list[_SkuLine]] = Field(default=None, alias="AdjustmentItemList")

    def identity(self) -> EventIdentity:
        line = _first_sku_line(self.adjustment_items)
        return EventIdentity(
            amazon_order_id=self.amazon_order_id,
            sku=line.seller_sku,
            asin=line.asin,
            posted_date=self.posted_date,
        )


class CamelCasePaymentEvent(_EventEntry):
    """Advertising and deal payments, which spell the date ``postedDate``."""

    camel_posted_date: Optional[str] = Field(default=None, alias="postedDate")

    def identity(self) -> EventIdentity:
        return EventIdentity(
            amazon_order_id=self.amazon_order_id,
            posted_date=self.posted_date or self.camel_posted_date,
        )


class CouponPaymentEvent(_EventEntry):
    coupon_id: Optional[str] = Field(default=None, alias="CouponId")


class AdhocDisbursementEvent(_EventEntry):
    transaction_type: Optional[str] = Field(default=None, alias="TransactionType")
    transaction_id: Optional[str] = Field(default=None, alias="TransactionId")


class RetrochargeEvent(_EventEntry):
    retrocharge_event_type: Optional[str] = Field(default=None, alias="RetrochargeEventType")


class AffordabilityExpenseEvent(_EventEntry):
    transaction_type: Optional[str] = Field(default=None, alias="TransactionType")


class ValueAddedServiceChargeEvent(_EventEntry):
    transaction_type: Optional[str] = Field(default=None, alias="TransactionType")
    description: Optional[str] = Field(default=None, alias="Description")


class DebtRecoveryEvent(_EventEntry):
    debt_recovery_type: Optional[str] = Field(default=None, alias="DebtRecoveryType")


EXTRACTION_TABLE: dict[str, type[_EventEntry]] = {
    "ShipmentEventList": ShipmentEvent,
    "ShipmentSettleEventList": ShipmentEvent,
    "RefundEventList": ShipmentEvent,
    "GuaranteeClaimEventList": ShipmentEvent,
    "ChargebackEventList": ShipmentEvent,
    "ServiceFeeEventList": ServiceFeeEvent,
    "AdjustmentEventList": AdjustmentEvent,
    "ProductAdsPaymentEventList": CamelCasePaymentEvent,
    "SellerDealPaymentEventList": CamelCasePaymentEvent,
    "CouponPaymentEventList": CouponPaymentEvent,
    "AdhocDisbursementEventList": AdhocDisbursementEvent,
    "RetrochargeEventList": RetrochargeEvent,
    "AffordabilityExpenseEventList": AffordabilityExpenseEvent,
    "AffordabilityExpenseReversalEventList": AffordabilityExpenseEvent,
    "ValueAddedServiceChargeEventList": ValueAddedServiceChargeEvent,
    "DebtRecoveryEventList": DebtRecoveryEvent,
}


def normalize_event_type(list_key: str) -> str:
    """Event type of a source list: its name without a trailing "List"."""
    return list_key[: -len("List")] if list_key.endswith("List") else list_key


def collect_money_nodes(value: Any, output: list[tuple[Decimal, Optional[str]]]) -> None:
    """
    Collect every (CurrencyAmount, CurrencyCode) pair in a nested structure.

    Args:
        value: Any JSON value
        output: List the pairs are appended to, in document order
    """
    if isinstance(value, list):
        for item in value:
            collect_money_nodes(item, output)
        return

    if not isinstance(value, dict):
        return

    amount = to_decimal(value.get("CurrencyAmount"))
    if amount is not None:
        code = value.get("CurrencyCode")
        output.append((amount, code if isinstance(code, str) else None))

    for nested in value.values():
        collect_money_nodes(nested, output)


def find_string_by_key(value: Any, key: str) -> Optional[str]:
    """Depth-first search for the first non-empty string stored under ``key``."""
    if isinstance(value, list):
        for item in value:
            found = find_string_by_key(item, key)
            if found:
                return found
        return None

    if not isinstance(value, dict):
        return None

    candidate = value.get(key)
    if isinstance(candidate, str) and candidate:
        return candidate

    for nested in value.values():
        found = find_string_by_key(nested, key)
        if found:
            return found

    return None


def _structural_identity(entry: Any) -> EventIdentity:
    return EventIdentity(
        amazon_order_id=find_string_by_key(entry, "AmazonOrderId"),
        sku=find_string_by_key(entry, "SellerSKU"),
        asin=find_string_by_key(entry, "ASIN"),
        posted_date=find_string_by_key(entry, "PostedDate"),
    )


def extract_identity(list_key: str, entry: Any) -> EventIdentity:
    """
    Identity fields of one entry.

    Uses the typed model registered for ``list_key``; falls back to the
    structural search for unknown categories or entries that do not validate.
    """
    model = EXTRACTION_TABLE.get(list_key)
    if model is not None and isinstance(entry, dict):
        try:
            return model.model_validate(entry).identity()
        except ValidationError as e:
            logger.debug(
                "Financial event failed typed validation",
                extra={"list_key": list_key, "error_count": e.error_count()},
            )

    return _structural_identity(entry)


def flatten_single_event(
    list_key: str,
    entry: Any,
    index: int,
    collected_at: datetime,
    default_currency: Optional[str] = None,
) -> Optional[FlattenedFinancialEvent]:
    """
    Normalise one entry of a category list.

    Args:
        list_key: Source list name, e.g. "ServiceFeeEventList"
        entry: Raw entry
        index: Position of the entry within its list
        collected_at: Posted date used when the entry carries none
        default_currency: Currency used when no money node names one

    Returns:
        Flattened event, or None when the entry holds no amount
    """
    nodes: list[tuple[Decimal, Optional[str]]] = []
    collect_money_nodes(entry, nodes)

    if not nodes:
        return None

    amount = sum((node_amount for node_amount, _ in nodes), ZERO)
    currency = next(
        (code for _, code in nodes if code),
        default_currency or settings.default_currency,
    )

    identity = extract_identity(list_key, entry)
    parsed_date = parse_iso(identity.posted_date)
    posted_date = parsed_date or collected_at
    event_type = normalize_event_type(list_key)

    return FlattenedFinancialEvent(
        event_key=build_event_key(
            event_type,
            posted_date,
            identity.amazon_order_id,
            identity.sku,
            identity.asin,
            amount,
            currency,
            index,
        ),
        posted_date=posted_date,
        event_type=event_type,
        amount=amount,
        currency=currency,
        amazon_order_id=identity.amazon_order_id,
        sku=identity.sku,
        asin=identity.asin,
        raw_json=entry if isinstance(entry, dict) else None,
        posted_date_missing=parsed_date is None,
    )


def flatten_financial_events(
    financial_events: Any,
    collected_at: Optional[datetime] = None,
    default_currency: Optional[str] = None,
) -> tuple[list[FlattenedFinancialEvent], int]:
    """
    Flatten one page's category-keyed ``FinancialEvents`` object.

    Args:
        financial_events: The ``FinancialEvents`` object of a page
        collected_at: Posted date used for entries that carry none
        default_currency: Currency used when an entry names none

    Returns:
        (events in source order, number of entries dropped for lacking an amount)
    """
    if not isinstance(financial_events, dict):
        return [], 0

    collected_at = collected_at or utcnow()
    flattened: list[FlattenedFinancialEvent] = []
    dropped = 0

    for list_key, entries in financial_events.items():
        if not isinstance(entries, list):
            continue

        for index, entry in enumerate(entries):
            event = flatten_single_event(
                list_key, entry, index, collected_at, default_currency=default_currency
            )
            if event is None:
                dropped += 1
            else:
                flattened.append(event)

    return flattened, dropped


def default_finances_transport() -> RetryingTransport:
    return RetryingTransport(
        attempts=settings.retry_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
    )


async def fetch_financial_events(
    client: SpApiClient,
    posted_after: datetime,
    posted_before: Optional[datetime] = None,
    max_pages: Optional[int] = None,
    page_size: Optional[int] = None,
    transport: Optional[RetryingTransport] = None,
    collected_at: Optional[datetime] = None,
) -> FetchFinancialEventsResult:
    """
    Page through the financial-events feed and flatten every page.

    Events are deduplicated by content-hash key; the last occurrence wins.

    Args:
        client: SP-API client
        posted_after: Lower posted-date bound
        posted_before: Upper posted-date bound
        max_pages: Page limit
        page_size: Events per page
        transport: Retry policy per page
        collected_at: Posted date used for entries that carry none
            (one timestamp for the whole run)

    Returns:
        Unique events and diagnostics
    """
    max_pages = max_pages or settings.finances_max_pages
    page_size = page_size or settings.sync_page_size
    transport = transport or default_finances_transport()
    collected_at = collected_at or utcnow()

    diagnostics = FinanceFetchDiagnostics(max_pages=max_pages)
    events: list[FlattenedFinancialEvent] = []
    next_token: Optional[str] = None

    while True:
        token = next_token
        payload = await transport.call(
            lambda: client.list_financial_events(
                posted_after,
                posted_before=posted_before,
                page_size=page_size,
                next_token=token,
            )
        )

        page_events, dropped = flatten_financial_events(
            payload.get("FinancialEvents"), collected_at=collected_at
        )
        events.extend(page_events)
        diagnostics.entries_dropped += dropped

        next_token = payload.get("NextToken")
        diagnostics.pages_fetched += 1

        if not next_token or diagnostics.pages_fetched >= max_pages:
            break

    diagnostics.page_limit_hit = bool(next_token) and diagnostics.pages_fetched >= max_pages
    diagnostics.events_fetched = len(events)

    deduped: dict[str, FlattenedFinancialEvent] = {}
    for event in events:
        deduped[event.event_key] = event

    diagnostics.unique_events = len(deduped)
    diagnostics.events_missing_posted_date = sum(
        1 for event in deduped.values() if event.posted_date_missing
    )

    logger.info("Financial events collected", extra=diagnostics.to_dict())

    return FetchFinancialEventsResult(events=list(deduped.values()), diagnostics=diagnostics)
