"""Fixed-point money helpers.

Prices are stored as integer cents so that sums over many lines never
drift. Conversion to a plain number only happens at the API boundary.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")


def to_cents(value: Any) -> int:
    """Convert a user-supplied amount (str, int, float, Decimal) to cents."""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


def cents_to_number(cents: int) -> float:
    return float(from_cents(cents))


def line_total_cents(price_cents: int, quantity: int) -> int:
    return int(price_cents) * int(quantity)
