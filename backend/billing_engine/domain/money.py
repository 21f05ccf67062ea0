"""
Money Helpers

All amounts are Decimal, quantized to two places with ROUND_HALF_UP, and
serialized as fixed two-decimal strings (never floats).
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Union

from pydantic import PlainSerializer


ZERO = Decimal("0.00")
MINOR_UNIT = Decimal("0.01")
MINIMUM_CHARGE = Decimal("0.50")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without going through binary floats."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def quantize_money(value: Number) -> Decimal:
    """Round to two decimal places (half-up)."""
    return to_decimal(value).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def format_money(value: Number) -> str:
    """Render an amount as a fixed two-decimal string."""
    return f"{quantize_money(value):.2f}"


# Decimal on the way in, "12.30" on the way out
Money = Annotated[Decimal, PlainSerializer(format_money, return_type=str)]
