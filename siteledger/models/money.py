"""Decimal helpers shared by the models and the engine."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("0.01")
COST_TOLERANCE = Decimal("0.01")


def to_decimal(value) -> Optional[Decimal]:
    """Convert value to Decimal (floats go through str to avoid binary noise)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_money(value: Decimal) -> Decimal:
    """Round to whole cents, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_match(a: Decimal, b: Decimal, tolerance: Decimal = COST_TOLERANCE) -> bool:
    """Check if two amounts match within tolerance."""
    return abs(a - b) <= tolerance
