"""In-memory shopping cart and totals for one checkout session.

The cart is never persisted. Lines snapshot the product price when they are
added, stock is only checked at commit time, and every monetary total is
rounded once, at the end, through :func:`grocery_pos.money.round_money`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Optional, Tuple

from . import log
from .data_manager import ProductRow
from .money import ZERO, MoneyLike, round_money, to_money


@dataclass(frozen=True)
class CartLine:
    """One product in the cart with the price it had when it was added."""

    product_id: str
    name: str
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def _require_whole_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Cart quantity must be a whole number, got %r", quantity)
        raise ValueError("Quantity must be a whole number")


class Cart:
    """Mutable, session-local list of :class:`CartLine` objects.

    Args:
        tax_rate: Fraction of the subtotal charged as tax (``0.10`` for 10%).
    """

    def __init__(self, tax_rate: MoneyLike = ZERO) -> None:
        rate = to_money(tax_rate)
        if rate < 0:
            raise ValueError("Tax rate must be zero or positive")
        self.tax_rate = rate
        self._lines: List[CartLine] = []

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self):
        return iter(self._lines)

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def item_count(self) -> int:
        """Total number of units across all lines."""
        return sum(line.quantity for line in self._lines)

    def _index_of(self, product_id: str) -> Optional[int]:
        for index, line in enumerate(self._lines):
            if line.product_id == product_id:
                return index
        return None

    def add_line(self, product: ProductRow, quantity: int = 1) -> CartLine:
        """Add ``quantity`` units of ``product``.

        An existing line for the same product has its quantity increased and
        keeps its original price snapshot; otherwise a new line is appended
        at the product's current price.

        Raises:
            ValueError: If ``quantity`` is not an integer of at least one.
        """
        _require_whole_quantity(quantity)
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        index = self._index_of(product.product_id)
        if index is not None:
            line = replace(self._lines[index], quantity=self._lines[index].quantity + quantity)
            self._lines[index] = line
        else:
            line = CartLine(
                product_id=product.product_id,
                name=product.name,
                unit_price=product.price,
                quantity=quantity,
            )
            self._lines.append(line)
        log.debug("Cart line '%s' now has quantity %d", line.product_id, line.quantity)
        return line

    def set_quantity(self, product_id: str, quantity: int) -> None:
        """Replace a line's quantity; anything below one removes the line.

        Unknown product ids are ignored.

        Raises:
            ValueError: If ``quantity`` is not an integer.
        """
        _require_whole_quantity(quantity)
        if quantity < 1:
            self.remove_line(product_id)
            return
        index = self._index_of(product_id)
        if index is not None:
            self._lines[index] = replace(self._lines[index], quantity=quantity)

    def remove_line(self, product_id: str) -> None:
        self._lines = [line for line in self._lines if line.product_id != product_id]

    def clear(self) -> None:
        self._lines.clear()

    def compute_totals(self) -> Totals:
        """Derive subtotal, tax and total.

        The subtotal is the exact sum of ``unit_price * quantity`` rounded
        once; tax is the rounded product of that subtotal and the tax rate;
        the total is their sum.
        """
        subtotal = round_money(sum((line.unit_price * line.quantity for line in self._lines), ZERO))
        tax = round_money(subtotal * self.tax_rate)
        return Totals(subtotal=subtotal, tax=tax, total=subtotal + tax)

    def compute_change(self, tendered: MoneyLike) -> Decimal:
        """Return ``tendered - total`` rounded to cents.

        A negative result means the cash handed over does not cover the sale.
        """
        return round_money(to_money(tendered) - self.compute_totals().total)
