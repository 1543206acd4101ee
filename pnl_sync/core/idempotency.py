"""
Deterministic content-hash keys.

The financial-events feed carries no stable unique id, so events are
deduplicated by a key derived from their semantic fields. Re-running a sync
over the same window must produce the same keys.
"""

import hashlib
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pnl_sync.core.time import format_iso

KEY_SEPARATOR = "|"


def build_event_key(
    event_type: str,
    posted_date: datetime,
    amazon_order_id: Optional[str],
    sku: Optional[str],
    asin: Optional[str],
    amount: Decimal,
    currency: str,
    index: int,
) -> str:
    """
    Build the content-hash key of a flattened financial event.

    The intra-page index is part of the seed so two numerically identical
    events on the same page stay distinct, while the same event repeated at
    the same position on a later page collapses into one.

    Args:
        event_type: Normalised event type (list name without "List")
        posted_date: Event posting timestamp
        amazon_order_id: Upstream order id, if any
        sku: Seller SKU, if any
        asin: ASIN, if any
        amount: Summed event amount
        currency: Currency code
        index: Position of the entry within its source list

    Returns:
        40-character SHA-1 hex digest
    """
    seed = KEY_SEPARATOR.join(
        [
            event_type,
            format_iso(posted_date),
            amazon_order_id or "",
            sku or "",
            asin or "",
            f"{amount:.6f}",
            currency,
            str(index),
        ]
    )

    return hashlib.sha1(seed.encode("utf-8")).hexdigest()

