"""
Daily aggregator.

Recomputes per-day, per-marketplace P&L rows from stored orders, line items,
financial events and unit costs. Every day of the window is rewritten in
full, so overlapping runs converge on the same values.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from pnl_sync.core.config import ConfigError, settings
from pnl_sync.core.currency import ZERO, decimal_or_zero
from pnl_sync.core.logging import get_logger
from pnl_sync.core.time import date_key, date_range, day_bounds, utcnow
from pnl_sync.db.models import DailySummary, FinancialEvent, Order, ProductCost

logger = get_logger(__name__)

REFUND_MARKERS = ("REFUND", "CHARGEBACK", "GUARANTEE")
AMAZON_FEE_MARKERS = (
    "SERVICEFEE",
    "VALUEADDEDSERVICECHARGE",
    "LOANSERVICING",
    "CAPACITYRESERVATIONBILLING",
    "DEBTRECOVERY",
    "RETROCHARGE",
)
OTHER_FEE_MARKERS = (
    "PRODUCTADS",
    "COUPON",
    "AFFORDABILITY",
    "SELLERDEAL",
    "SELLERREVIEWENROLLMENT",
)
PAYOUT_MARKERS = ("ADHOCDISBURSEMENT", "PAYWITHAMAZON")


@dataclass(frozen=True)
class EventClassification:
    refund: bool = False
    amazon_fee: bool = False
    other_fee: bool = False
    payout: bool = False


def classify_event(event_type: str) -> EventClassification:
    """
    Place an event type in the fee/refund/payout taxonomy.

    Matching is a case-insensitive substring test; an event may fall in none
    of the categories.
    """
    normalized = event_type.upper()
    return EventClassification(
        refund=any(marker in normalized for marker in REFUND_MARKERS),
        amazon_fee=any(marker in normalized for marker in AMAZON_FEE_MARKERS),
        other_fee=any(marker in normalized for marker in OTHER_FEE_MARKERS),
        payout=any(marker in normalized for marker in PAYOUT_MARKERS),
    )


@dataclass
class DailyAccumulator:
    sales: Decimal = ZERO
    orders_count: int = 0
    units: int = 0
    refunds: Decimal = ZERO
    amazon_fees: Decimal = ZERO
    other_fees: Decimal = ZERO
    net_payout: Decimal = ZERO
    cogs: Decimal = ZERO

    @property
    def gross_profit(self) -> Decimal:
        return self.sales - self.amazon_fees - self.cogs

    @property
    def net_profit(self) -> Decimal:
        return self.gross_profit - self.other_fees

    def add_event(self, amount: Decimal, classification: EventClassification) -> None:
        absolute = abs(amount)
        if classification.refund:
            self.refunds += absolute
        if classification.amazon_fee:
            self.amazon_fees += absolute
        if classification.other_fee:
            self.other_fees += absolute
        if classification.payout:
            self.net_payout += amount


@dataclass
class DailySummaryResult:
    marketplace_id: str
    start_date: date
    end_date: date
    summaries_written: int = 0
    missing_cogs_items: int = 0
    days: dict[date, DailyAccumulator] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "marketplace_id": self.marketplace_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "summaries_written": self.summaries_written,
            "missing_cogs_items": self.missing_cogs_items,
        }


def resolve_marketplace_id(marketplace_id: Optional[str] = None) -> str:
    """
    Marketplace to aggregate for.

    Raises:
        ConfigError: If neither an explicit nor a configured marketplace exists
    """
    explicit = (marketplace_id or "").strip()
    if explicit:
        return explicit
    if settings.sp_api_marketplace_id:
        return settings.sp_api_marketplace_id
    raise ConfigError("Missing marketplace id. Pass one or set SP_API_MARKETPLACE_ID.")


def load_unit_costs(session: Session) -> tuple[dict[str, Decimal], dict[str, Decimal]]:
    """Unit costs keyed by SKU and by ASIN."""
    by_sku: dict[str, Decimal] = {}
    by_asin: dict[str, Decimal] = {}
    for cost in session.scalars(select(ProductCost)):
        unit_cost = decimal_or_zero(cost.unit_cost)
        if cost.sku:
            by_sku[cost.sku] = unit_cost
        if cost.asin:
            by_asin[cost.asin] = unit_cost
    return by_sku, by_asin


def set_unit_cost(
    session: Session,
    unit_cost: Decimal,
    sku: Optional[str] = None,
    asin: Optional[str] = None,
    includes_vat: bool = False,
) -> ProductCost:
    """
    Upsert the unit cost of a product, keyed by SKU or ASIN.

    Raises:
        ValueError: If neither key is given or the cost is negative
    """
    sku = (sku or "").strip() or None
    asin = (asin or "").strip() or None
    if not sku and not asin:
        raise ValueError("A SKU or an ASIN is required")
    if unit_cost < 0:
        raise ValueError("Unit cost must not be negative")

    cost = None
    if sku:
        cost = session.scalar(select(ProductCost).where(ProductCost.sku == sku))
    if cost is None and asin:
        cost = session.scalar(select(ProductCost).where(ProductCost.asin == asin))

    if cost is None:
        cost = ProductCost(sku=sku, asin=asin)
        session.add(cost)
    else:
        cost.sku = cost.sku or sku
        cost.asin = cost.asin or asin

    cost.unit_cost = unit_cost
    cost.includes_vat = includes_vat
    session.flush()

    logger.info("Unit cost set", extra={"sku": sku, "asin": asin, "unit_cost": str(unit_cost)})
    return cost


def recompute_daily_summary(
    session: Session,
    marketplace_id: Optional[str] = None,
    days: Optional[int] = None,
    today: Optional[date] = None,
) -> DailySummaryResult:
    """
    Rebuild the daily summaries of a window.

    The window is ``[today - (days - 1), today]`` in UTC days. Every day in
    it is upserted, with zeros for days without activity.

    Args:
        session: Open session (the caller commits)
        marketplace_id: Target marketplace (defaults to the configured one)
        days: Window length in days
        today: Last day of the window (defaults to the current UTC day)

    Returns:
        Window, rows written and the number of units without a unit cost

    Raises:
        ConfigError: If no marketplace can be resolved
    """
    resolved = resolve_marketplace_id(marketplace_id)
    days = max(days or settings.sync_default_days, 1)
    end_date = today or date_key(utcnow())
    start_date = end_date - timedelta(days=days - 1)

    window_start, _ = day_bounds(start_date)
    _, window_end = day_bounds(end_date)

    result = DailySummaryResult(marketplace_id=resolved, start_date=start_date, end_date=end_date)
    day_map = {day: DailyAccumulator() for day in date_range(start_date, end_date)}

    orders = session.scalars(
        select(Order)
        .where(
            Order.marketplace_id == resolved,
            Order.purchase_date >= window_start,
            Order.purchase_date < window_end,
        )
        .options(selectinload(Order.items))
    ).all()
    order_ids = {order.amazon_order_id for order in orders}

    cogs_by_sku, cogs_by_asin = load_unit_costs(session)

    for order in orders:
        accumulator = day_map[order.purchase_date.date()]
        accumulator.orders_count += 1

        if not order.items:
            accumulator.sales += decimal_or_zero(order.total_amount)
            continue

        for item in order.items:
            quantity = item.quantity_ordered or 0
            accumulator.sales += (
                decimal_or_zero(item.item_price) * quantity
                + decimal_or_zero(item.item_tax)
                - abs(decimal_or_zero(item.promotion_discount))
            )
            accumulator.units += quantity

            unit_cost = ZERO
            if item.sku and item.sku in cogs_by_sku:
                unit_cost = cogs_by_sku[item.sku]
            elif item.asin and item.asin in cogs_by_asin:
                unit_cost = cogs_by_asin[item.asin]

            if unit_cost == 0 and quantity > 0 and (item.sku or item.asin):
                result.missing_cogs_items += quantity

            accumulator.cogs += unit_cost * quantity

    events = session.scalars(
        select(FinancialEvent).where(
            FinancialEvent.posted_date >= window_start,
            FinancialEvent.posted_date < window_end,
        )
    ).all()

    for event in events:
        if (
            event.marketplace_id
            and event.marketplace_id != resolved
            and (not event.amazon_order_id or event.amazon_order_id not in order_ids)
        ):
            continue

        day_map[event.posted_date.date()].add_event(
            decimal_or_zero(event.amount), classify_event(event.event_type)
        )

    existing = {
        row.summary_date: row
        for row in session.scalars(
            select(DailySummary).where(
                DailySummary.marketplace_id == resolved,
                DailySummary.summary_date >= start_date,
                DailySummary.summary_date <= end_date,
            )
        )
    }

    for day, accumulator in day_map.items():
        row = existing.get(day)
        if row is None:
            row = DailySummary(summary_date=day, marketplace_id=resolved)
            session.add(row)

        row.sales = accumulator.sales
        row.orders_count = accumulator.orders_count
        row.units = accumulator.units
        row.refunds = accumulator.refunds
        row.amazon_fees = accumulator.amazon_fees
        row.other_fees = accumulator.other_fees
        row.net_payout = accumulator.net_payout
        row.cogs = accumulator.cogs
        row.gross_profit = accumulator.gross_profit
        row.net_profit = accumulator.net_profit
        result.summaries_written += 1

    session.flush()
    result.days = day_map

    logger.info("Daily summaries recomputed", extra=result.to_dict())
    return result


def summary_row_to_dict(row: DailySummary) -> dict[str, Any]:
    """JSON-safe form of a stored summary row; money as strings."""
    return {
        "date": row.summary_date.isoformat(),
        "marketplace_id": row.marketplace_id,
        "sales": str(row.sales),
        "orders_count": row.orders_count,
        "units": row.units,
        "refunds": str(row.refunds),
        "amazon_fees": str(row.amazon_fees),
        "other_fees": str(row.other_fees),
        "net_payout": str(row.net_payout),
        "cogs": str(row.cogs),
        "gross_profit": str(row.gross_profit),
        "net_profit": str(row.net_profit),
    }


def list_daily_summaries(
    session: Session,
    marketplace_id: str,
    start_date: date,
    end_date: date,
) -> list[DailySummary]:
    """Stored summaries of a marketplace between two days, oldest first."""
    return list(
        session.scalars(
            select(DailySummary)
            .where(
                DailySummary.marketplace_id == marketplace_id,
                DailySummary.summary_date >= start_date,
                DailySummary.summary_date <= end_date,
            )
            .order_by(DailySummary.summary_date)
        )
    )
