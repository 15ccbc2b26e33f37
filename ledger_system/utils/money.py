# ledger_system/utils/money.py
"""
Integer minor-unit helpers. Amounts are cents everywhere inside the core.
"""
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Union

import config


def toMinorUnits(value: Union[str, int, float, Decimal]) -> int:
    """Convert a major-unit amount (RM 12.50) to cents, rejecting fractional cents."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")

    cents = amount * 100
    if cents != cents.to_integral_value():
        raise ValueError(f"Amount has fractional cents: {value!r}")
    return int(cents)


def applyRate(amount: int, rate: Decimal) -> int:
    """Rate share of a cent amount, rounded down to whole cents."""
    return int((Decimal(amount) * rate).to_integral_value(rounding=ROUND_DOWN))


def proRataShare(amount: int, units: int, totalUnits: int) -> int:
    """floor(amount * units / totalUnits) without leaving integer arithmetic."""
    if totalUnits <= 0:
        return 0
    return (amount * units) // totalUnits


def formatMinor(amount: int) -> str:
    sign = "-" if amount < 0 else ""
    amount = abs(amount)
    return f"{sign}{config.CURRENCY}{amount // 100}.{amount % 100:02d}"
