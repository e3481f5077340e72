"""Currency helpers.

All monetary values are :class:`~decimal.Decimal`. Derived totals are rounded
exactly once, to cents, with ``ROUND_HALF_UP``; intermediate sums are kept
exact so repeated conversions never compound rounding error.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, float, str]


def to_money(value: MoneyLike) -> Decimal:
    """Parse ``value`` into an unrounded :class:`Decimal`.

    Floats are routed through ``str`` so ``0.59`` becomes ``Decimal("0.59")``
    rather than its binary approximation.

    Raises:
        ValueError: If ``value`` cannot be interpreted as a number.
    """

    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary value: {value!r}")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Not a monetary value: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Not a monetary value: {value!r}")
    return result


def round_money(value: MoneyLike) -> Decimal:
    """Round ``value`` to cents using half-up rounding."""

    return to_money(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: MoneyLike) -> str:
    """Render ``value`` for display, e.g. ``$1.94`` or ``-$0.50``."""

    amount = round_money(value)
    if amount < 0:
        return f"-${-amount}"
    return f"${amount}"


__all__ = ["CENT", "ZERO", "MoneyLike", "to_money", "round_money", "format_money"]
