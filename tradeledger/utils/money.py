"""Helpers for integer minor-unit (cent) arithmetic."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, Decimal, str]

_CENT = Decimal("0.01")


def to_cents(dollars: Number) -> int:
    """Convert a dollar amount to integer cents, rounding half up."""
    value = Decimal(str(dollars)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def gross_cents(price: Number, quantity: Number, multiplier: int = 1) -> int:
    """Cents for price x quantity x multiplier, rounded once at the end."""
    value = Decimal(str(price)) * Decimal(str(quantity)) * multiplier
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_dollars(cents: int) -> float:
    return round(cents / 100, 2)


def format_dollars(cents: int) -> str:
    """Render cents as a plain dollar string with two decimals."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"


def prorate(amount: int, part: float, whole: float) -> int:
    """Share of ``amount`` for ``part`` out of ``whole``, rounded half up."""
    if whole <= 0:
        return 0
    if part >= whole:
        return amount
    share = Decimal(amount) * Decimal(str(part)) / Decimal(str(whole))
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def allocate(amount: int, weights: list[float]) -> list[int]:
    """Split ``amount`` across ``weights``; the last share takes the remainder.

    The returned parts always sum to ``amount`` exactly.
    """
    if not weights:
        return []
    total = sum(weights)
    parts = []
    allocated = 0
    for weight in weights[:-1]:
        part = prorate(amount, weight, total)
        parts.append(part)
        allocated += part
    parts.append(amount - allocated)
    return parts
