# triangle/money.py
"""
Fixed-point money helpers.

Every amount the engine stores or computes is an integer count of minor
units (cents). Decimal only appears at the boundary: parsing request input
and rendering JSON.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

MINOR_UNITS = 100
TWO_PLACES = Decimal("0.01")


def to_minor(value) -> int:
    """Convert a user/config supplied amount to integer minor units."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        if isinstance(value, float):
            value = str(value)
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")

    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    if amount < 0:
        raise ValueError(f"Amount cannot be negative: {value!r}")

    quantized = amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return int(quantized * MINOR_UNITS)


def to_display(minor: int) -> Decimal:
    return (Decimal(int(minor)) / MINOR_UNITS).quantize(TWO_PLACES)


def as_float(minor) -> float:
    """JSON-friendly rendering of a minor-unit amount."""
    if minor is None:
        return 0.0
    return float(to_display(minor))


def percent_of(minor: int, rate) -> int:
    """Apply a rate (e.g. Decimal('0.10')) to a minor-unit amount, half-up."""
    result = Decimal(int(minor)) * Decimal(str(rate))
    return int(result.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
