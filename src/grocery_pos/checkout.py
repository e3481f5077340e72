"""Sale transaction engine.

Turns a :class:`~grocery_pos.cart.Cart` into a committed sale. The workbook
offers no multi-record transaction, so the engine imposes its own order:

1. Validate every precondition against freshly read product and customer
   records. Any failure here aborts with no writes at all.
2. Persist the :class:`~grocery_pos.data_manager.SaleRecord`.
3. For credit sales, raise the customer's balance by the sale total.
4. Decrement stock for every line, attempting all lines even if one fails.

Once step 2 has succeeded the sale is never rolled back. Failures in steps 3
and 4 are collected and raised together as :class:`PartialCommitError` so the
operator can reconcile balances and stock against the sale log.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from . import core_logic, log
from .cart import Cart, Totals
from .constants import PaymentMethod
from .core_logic import BusinessRuleViolation, CreditLimitExceededError, RuntimeContext, Session
from .data_manager import CustomerRow, ProductRow, SaleLine, SaleRecord, StorageError
from .money import ZERO, MoneyLike, round_money, to_money


class SaleState(str, Enum):
    """Lifecycle of a single checkout attempt."""

    PENDING = "pending"
    VALIDATING = "validating"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"


class EmptyCartError(BusinessRuleViolation):
    """Raised when checkout is attempted with no lines in the cart."""

    def __init__(self) -> None:
        super().__init__("Cart is empty. Add products before completing sale.")


class NoCustomerSelectedError(BusinessRuleViolation):
    """Raised when a credit sale has no customer bound to it."""

    def __init__(self) -> None:
        super().__init__("Customer must be selected for credit sales")


class InsufficientTenderError(BusinessRuleViolation):
    """Raised when the cash handed over does not cover the sale total."""

    def __init__(self, *, tendered: Decimal, total: Decimal) -> None:
        self.tendered = tendered
        self.total = total
        self.shortfall = round_money(total - tendered)
        super().__init__(
            f"Tendered ${round_money(tendered)} does not cover total ${total} (short by ${self.shortfall})"
        )


@dataclass(frozen=True)
class StockShortage:
    product_id: str
    name: str
    requested: int
    available: int


class InsufficientStockError(BusinessRuleViolation):
    """Raised when one or more cart lines exceed the product's stock."""

    def __init__(self, shortages: Sequence[StockShortage]) -> None:
        self.shortages = tuple(shortages)
        details = "; ".join(
            f"{shortage.name}: requested {shortage.requested}, only {shortage.available} available"
            for shortage in self.shortages
        )
        super().__init__(f"Insufficient stock. {details}")

    @property
    def product_ids(self) -> List[str]:
        return [shortage.product_id for shortage in self.shortages]


@dataclass(frozen=True)
class StageFailure:
    """One write that failed after the sale record was persisted."""

    stage: str
    reason: str
    product_id: Optional[str] = None


class PartialCommitError(StorageError):
    """Raised when the sale was persisted but later ledger writes failed.

    The sale is not rolled back. ``failures`` lists every balance or stock
    write that did not complete, in the order they were attempted.
    """

    def __init__(self, sale: SaleRecord, failures: Sequence[StageFailure]) -> None:
        self.sale = sale
        self.failures = tuple(failures)
        stages = ", ".join(failure.stage for failure in self.failures)
        super().__init__(
            f"Sale '{sale.sale_id}' was recorded but these updates failed and need reconciliation: {stages}",
            stage=stages,
        )


class SaleTransaction:
    """One checkout attempt, from validation to commit.

    Instances are single-use: :meth:`run` may be called once. ``state``
    reflects how far the attempt got, ``sale`` holds the persisted record once
    written, and ``failures`` collects post-commit write failures.
    """

    def __init__(
        self,
        context: RuntimeContext,
        cart: Cart,
        session: Session,
        *,
        payment_method: Union[PaymentMethod, str],
        tendered: Optional[MoneyLike] = None,
        customer_id: Optional[str] = None,
        allow_credit_overage: bool = False,
        timestamp: Optional[datetime] = None,
    ) -> None:
        self.context = context
        self.cart = cart
        self.session = session
        self.payment_method = _coerce_payment_method(payment_method)
        self.tendered = to_money(tendered) if tendered is not None else None
        self.customer_id = customer_id or None
        self.allow_credit_overage = allow_credit_overage
        self.timestamp = timestamp
        self.state = SaleState.PENDING
        self.totals: Optional[Totals] = None
        self.sale: Optional[SaleRecord] = None
        self.failures: List[StageFailure] = []
        self._customer: Optional[CustomerRow] = None
        self._products: Dict[str, ProductRow] = {}

    def run(self) -> SaleRecord:
        """Validate and commit, returning the persisted sale.

        Raises:
            EmptyCartError, NoCustomerSelectedError, InsufficientTenderError,
            CreditLimitExceededError, InsufficientStockError: A precondition
                failed; nothing was written.
            MissingReferenceError: The selected customer does not exist.
            StorageError: The sale record itself could not be written.
            PartialCommitError: The sale was written but a balance or stock
                update was not.
        """
        if self.state is not SaleState.PENDING:
            raise RuntimeError(f"Sale transaction already {self.state.value}")
        try:
            self.validate()
            return self.commit()
        except Exception:
            self.state = SaleState.FAILED
            raise

    def validate(self) -> Totals:
        """Check every precondition in order without writing anything."""
        self.state = SaleState.VALIDATING

        if self.cart.is_empty:
            log.warning("Checkout rejected: cart is empty")
            raise EmptyCartError()

        totals = self.cart.compute_totals()
        self.totals = totals

        if self.payment_method is PaymentMethod.CREDIT:
            if self.customer_id is None:
                log.warning("Checkout rejected: credit sale without a customer")
                raise NoCustomerSelectedError()
        else:
            tendered = self.tendered if self.tendered is not None else ZERO
            if tendered < totals.total:
                log.warning("Checkout rejected: tendered %s below total %s", tendered, totals.total)
                raise InsufficientTenderError(tendered=tendered, total=totals.total)

        if self.payment_method is PaymentMethod.CREDIT:
            customer = core_logic.get_customer(self.context, self.customer_id)
            if customer.current_balance + totals.total > customer.credit_limit:
                if not self.allow_credit_overage:
                    log.warning(
                        "Checkout rejected: customer '%s' balance %s + %s exceeds limit %s",
                        customer.customer_id,
                        customer.current_balance,
                        totals.total,
                        customer.credit_limit,
                    )
                    raise CreditLimitExceededError(
                        customer_id=customer.customer_id,
                        current_balance=customer.current_balance,
                        limit=customer.credit_limit,
                        attempted_total=totals.total,
                    )
                log.warning(
                    "Credit limit override authorised by '%s' for customer '%s'",
                    self.session.username,
                    customer.customer_id,
                )
            self._customer = customer

        shortages: List[StockShortage] = []
        for line in self.cart.lines:
            product = core_logic.find_product(self.context, line.product_id)
            available = product.stock if product is not None else 0
            if available - line.quantity < 0:
                shortages.append(
                    StockShortage(
                        product_id=line.product_id,
                        name=product.name if product is not None else line.name,
                        requested=line.quantity,
                        available=available,
                    )
                )
            elif product is not None:
                self._products[line.product_id] = product
        if shortages:
            log.warning("Checkout rejected: insufficient stock for %s", ", ".join(s.product_id for s in shortages))
            raise InsufficientStockError(shortages)

        return totals

    def build_sale(self) -> SaleRecord:
        """Materialize the immutable sale record from the validated cart."""
        if self.totals is None:
            raise RuntimeError("Sale must be validated before it is built")
        moment = self.timestamp if self.timestamp is not None else datetime.now(UTC)
        return SaleRecord(
            sale_id=core_logic.generate_id(),
            timestamp_iso=moment.isoformat(),
            items=tuple(
                SaleLine(
                    product_id=line.product_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                )
                for line in self.cart.lines
            ),
            subtotal=self.totals.subtotal,
            tax=self.totals.tax,
            total=self.totals.total,
            payment_method=self.payment_method.value,
            customer_id=self.customer_id if self.payment_method is PaymentMethod.CREDIT else None,
            user_id=self.session.user_id,
        )

    def commit(self) -> SaleRecord:
        """Write the sale, then the balance, then every stock decrement."""
        self.state = SaleState.COMMITTING
        sale = self.build_sale()

        try:
            core_logic.create_sale(self.context, sale)
        except StorageError as exc:
            self.state = SaleState.FAILED
            exc.stage = exc.stage or "sale-write"
            log.error("Checkout failed before any ledger update: %s", exc)
            raise
        self.sale = sale

        if self._customer is not None:
            customer = self._customer
            try:
                core_logic.set_customer_balance(
                    self.context,
                    customer.customer_id,
                    customer.current_balance + sale.total,
                    expected_balance=customer.current_balance,
                )
            except StorageError as exc:
                log.error("Sale '%s': balance update for '%s' failed: %s", sale.sale_id, customer.customer_id, exc)
                self.failures.append(StageFailure(stage="balance-write", reason=str(exc)))

        for line in sale.items:
            product = self._products[line.product_id]
            try:
                core_logic.set_product_stock(
                    self.context,
                    line.product_id,
                    product.stock - line.quantity,
                    expected_stock=product.stock,
                )
            except StorageError as exc:
                log.error("Sale '%s': stock update for '%s' failed: %s", sale.sale_id, line.product_id, exc)
                self.failures.append(
                    StageFailure(stage=f"stock-write:{line.product_id}", reason=str(exc), product_id=line.product_id)
                )

        if self.failures:
            self.state = SaleState.FAILED
            log.error(
                "Sale '%s' committed with %d incomplete ledger update(s); reconciliation required",
                sale.sale_id,
                len(self.failures),
            )
            raise PartialCommitError(sale, self.failures)

        self.cart.clear()
        self.state = SaleState.COMMITTED
        log.info(
            "Completed %s sale '%s' by '%s': %d line(s), total=%s",
            sale.payment_method,
            sale.sale_id,
            self.session.username,
            len(sale.items),
            sale.total,
        )
        return sale


def _coerce_payment_method(value: Union[PaymentMethod, str]) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", value)
        raise BusinessRuleViolation(f"Unsupported payment method: {value}") from exc


def complete_sale(
    context: RuntimeContext,
    cart: Cart,
    session: Session,
    *,
    payment_method: Union[PaymentMethod, str],
    tendered: Optional[MoneyLike] = None,
    customer_id: Optional[str] = None,
    allow_credit_overage: bool = False,
    timestamp: Optional[datetime] = None,
) -> SaleRecord:
    """Commit ``cart`` as a sale attributed to ``session``.

    On success the cart is cleared and the persisted sale returned. See
    :meth:`SaleTransaction.run` for the failure modes.
    """
    transaction = SaleTransaction(
        context,
        cart,
        session,
        payment_method=payment_method,
        tendered=tendered,
        customer_id=customer_id,
        allow_credit_overage=allow_credit_overage,
        timestamp=timestamp,
    )
    return transaction.run()


__all__ = [
    "SaleState",
    "EmptyCartError",
    "NoCustomerSelectedError",
    "InsufficientTenderError",
    "CreditLimitExceededError",
    "StockShortage",
    "InsufficientStockError",
    "StageFailure",
    "PartialCommitError",
    "SaleTransaction",
    "complete_sale",
]
