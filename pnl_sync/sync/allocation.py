"""
Refund allocator.

Splits a refund event's absolute amount across the line items of its order,
proportionally to each item's economic weight.
"""

from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.orm import Session

from pnl_sync.core.currency import ZERO, decimal_or_zero, round_allocation
from pnl_sync.core.logging import audit_logger
from pnl_sync.db.models import FinancialEvent, OrderItem, RefundAllocation
from pnl_sync.metrics.daily_summary import classify_event


def is_refund_event_type(event_type: str) -> bool:
    """Whether an event type counts as a refund (refund, chargeback, guarantee claim)."""
    return classify_event(event_type).refund


def compute_item_weight(item: OrderItem) -> Decimal:
    """
    Economic weight of a line item.

    ``quantity * unit price + tax - |discount|``; when that is not positive
    the quantity is used, or 1 for items without a quantity.
    """
    quantity = item.quantity_ordered or 0
    gross = (
        Decimal(quantity) * decimal_or_zero(item.item_price)
        + decimal_or_zero(item.item_tax)
        - abs(decimal_or_zero(item.promotion_discount))
    )
    if gross > 0:
        return gross
    if quantity > 0:
        return Decimal(quantity)
    return Decimal(1)


def allocate_refund(amount: Decimal, weights: Sequence[Decimal]) -> list[Decimal]:
    """
    Split ``amount`` proportionally to ``weights``.

    Every share but the last is rounded to 6 decimal places; the last takes
    the exact remainder, so the shares always sum to ``amount``.

    Args:
        amount: Amount to split (absolute refund amount)
        weights: One weight per line item

    Returns:
        One share per weight, or an empty list when there are no weights or
        their total is not positive

    Examples:
        >>> allocate_refund(Decimal("30"), [Decimal("10"), Decimal("21")])
        [Decimal('9.677419'), Decimal('20.322581')]
    """
    if not weights:
        return []

    total = sum(weights, ZERO)
    if total <= 0:
        return []

    shares: list[Decimal] = []
    allocated = ZERO
    for weight in weights[:-1]:
        share = round_allocation(amount * weight / total)
        shares.append(share)
        allocated += share

    shares.append(amount - allocated)
    return shares


def apply_refund_allocations(
    session: Session,
    event: FinancialEvent,
    items: Sequence[OrderItem],
) -> Optional[list[RefundAllocation]]:
    """
    Replace the stored allocations of one refund event.

    Existing allocations of the event are deleted first, so reprocessing an
    event never accumulates shares.

    Args:
        session: Open session
        event: Persisted refund event (must have an id)
        items: Persisted line items of the event's order

    Returns:
        New allocations, or None when the refund stays unattributed
    """
    session.execute(
        delete(RefundAllocation).where(RefundAllocation.financial_event_id == event.id)
    )

    amount = abs(decimal_or_zero(event.amount))
    shares = allocate_refund(amount, [compute_item_weight(item) for item in items])

    if not shares:
        audit_logger.log_refund_unattributed(
            event_key=event.event_key,
            amazon_order_id=event.amazon_order_id or "",
            amount=amount,
            items=len(items),
        )
        return None

    allocations = [
        RefundAllocation(
            financial_event_id=event.id,
            order_item_id=item.id,
            amount=share,
            currency=event.currency,
        )
        for item, share in zip(items, shares)
    ]
    session.add_all(allocations)

    audit_logger.log_refund_allocated(
        event_key=event.event_key,
        amazon_order_id=event.amazon_order_id or "",
        amount=amount,
        items=len(allocations),
    )
    return allocations
