"""Decimal helpers for the matching engine.

All quantities and prices are exact Decimals. Division results (unit cost,
fee slices) are rounded half-even to a fixed number of fractional digits.
"""

from decimal import ROUND_HALF_EVEN, Decimal

ZERO = Decimal("0")


def quantum(digits: int) -> Decimal:
    """Smallest step for the given number of fractional digits (e.g. 2 -> 0.01)."""
    return Decimal(1).scaleb(-digits)


def round_half_even(value: Decimal, digits: int) -> Decimal:
    """Round value to digits fractional places using banker's rounding."""
    return value.quantize(quantum(digits), rounding=ROUND_HALF_EVEN)


def dsum(values) -> Decimal:
    return sum(values, start=ZERO)
