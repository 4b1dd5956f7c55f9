"""
Money helpers.

Amounts are ``Decimal`` values with two fraction digits, matching the
``Numeric(12, 2)`` columns. Rounding happens here and nowhere else.
"""

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
UNIT = Decimal("1")
ZERO = Decimal("0")
CURRENCY_SYMBOL = "\u20b9"


def to_decimal(value) -> Decimal:
    """Coerce ints, strings, floats and None into Decimal without binary float noise."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def quantize(value) -> Decimal:
    """Round to cents, half away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_whole(value) -> Decimal:
    return to_decimal(value).quantize(UNIT, rounding=ROUND_HALF_UP)


def floor_whole(value) -> Decimal:
    return to_decimal(value).quantize(UNIT, rounding=ROUND_FLOOR)


def clamp(value, low, high) -> Decimal:
    return min(to_decimal(high), max(to_decimal(low), to_decimal(value)))


def to_float(value) -> float:
    """Render a money value for JSON payloads."""
    return float(quantize(value))


def format_amount(value) -> str:
    """Whole-unit display string used in nudge copy."""
    return f"{CURRENCY_SYMBOL}{round_whole(value):,.0f}"
