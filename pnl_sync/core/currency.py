"""
Money parsing, rounding and display helpers.

Amounts are kept in the currency the marketplace reported them in; nothing
here converts between currencies.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from babel.numbers import format_currency as babel_format_currency

ZERO = Decimal("0")
ALLOCATION_QUANTUM = Decimal("0.000001")


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Parse an upstream numeric value into a Decimal.

    Args:
        value: int, float, Decimal or numeric string

    Returns:
        Decimal value, or None when the value is missing or not a finite number

    Examples:
        >>> to_decimal("12.50")
        Decimal("12.50")
        >>> to_decimal("n/a") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None

    if not result.is_finite():
        return None

    return result


def parse_money_amount(money: Any) -> Optional[Decimal]:
    """
    Read the ``Amount`` of an SP-API Money object.

    Args:
        money: Dict like {"CurrencyCode": "GBP", "Amount": "12.50"} or None

    Returns:
        Parsed amount or None
    """
    if not isinstance(money, dict):
        return None
    return to_decimal(money.get("Amount"))


def decimal_or_zero(value: Any) -> Decimal:
    """Coerce a nullable numeric value to Decimal, defaulting to zero."""
    parsed = to_decimal(value)
    return parsed if parsed is not None else ZERO


def round_currency(amount: Decimal, decimals: int = 2) -> Decimal:
    """
    Round currency amount to specified decimals (default 2).

    Uses ROUND_HALF_UP (commercial rounding).

    Args:
        amount: Amount to round
        decimals: Number of decimal places

    Returns:
        Rounded amount
    """
    quantize_to = Decimal(10) ** -decimals
    return amount.quantize(quantize_to, rounding=ROUND_HALF_UP)


def round_allocation(amount: Decimal) -> Decimal:
    """Round a refund share to 6 decimal places."""
    return amount.quantize(ALLOCATION_QUANTUM, rounding=ROUND_HALF_UP)


def format_currency(amount: Decimal, currency: str = "GBP", locale: str = "en_GB") -> str:
    """
    Format currency amount for display.

    Args:
        amount: Amount to format
        currency: Currency code (ISO 4217)
        locale: Locale for formatting

    Returns:
        Formatted currency string (e.g., "£1,234.56")
    """
    return babel_format_currency(amount, currency, locale=locale)
