from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

_CENT = Decimal("0.01")


def to_cents(amount: Decimal | int | float | str) -> int:
    d = Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(d * 100)


def from_cents(cents: int | None) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(_CENT)


def fmt_cents(cents: int | None) -> str:
    return str(from_cents(cents))


def percent_of(cents: int, percent: Decimal | int | str) -> int:
    """percent_of(4900, 30) -> 1470, rounded half-up to a whole cent."""
    d = Decimal(int(cents)) * Decimal(str(percent)) / Decimal(100)
    return int(d.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
