"""Canonical rounding for currency and percentage values.

Every monetary aggregate in the engine goes through ``sum_and_round``:
values are summed at full precision and rounded once, never rounded
piecewise first. Rounding is always half-up (never banker's rounding).
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CURRENCY_PRECISION = Decimal("0.01")
PERCENTAGE_PRECISION = Decimal("0.01")
ZERO = Decimal("0")

Numeric = Decimal | int | float | str


def to_decimal(value: Numeric) -> Decimal:
    """Convert a numeric value to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise TypeError("booleans are not numeric amounts")
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as e:
            raise ValueError(f"Not a numeric value: {value!r}") from e
    if not result.is_finite():
        return ZERO
    return result


def round_currency(value: Numeric) -> Decimal:
    """Round to cents using round-half-up."""
    return to_decimal(value).quantize(CURRENCY_PRECISION, rounding=ROUND_HALF_UP)


def round_percentage(value: Numeric) -> Decimal:
    """Round a percentage/rate to 2 decimal places using round-half-up."""
    return to_decimal(value).quantize(PERCENTAGE_PRECISION, rounding=ROUND_HALF_UP)


def sum_and_round(values: Iterable[Numeric]) -> Decimal:
    """Sum at full precision, then round the total once.

    >>> sum_and_round(["0.005", "0.005", "0.005"])
    Decimal('0.02')
    """
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return round_currency(total)

