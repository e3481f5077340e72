"""Read-only reporting over committed sales, products and customers.

Nothing in this module writes to the workbook. Timestamps are stored as
ISO-8601 UTC strings and every date window is evaluated in UTC.
"""

from __future__ import annotations

import calendar
import csv
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import PaymentMethod
from .core_logic import RuntimeContext, Session
from .data_manager import SaleRecord
from .money import ZERO, format_money, round_money

DATE_RANGES = ("all", "today", "week", "month", "custom")

CSV_HEADER = ["Date", "Transaction ID", "Salesperson", "Payment Method", "Subtotal", "Tax", "Total"]


@dataclass(frozen=True)
class SalesSummary:
    revenue: Decimal
    transactions: int
    items_sold: int
    credit_sales: int


def sale_timestamp(sale: SaleRecord) -> datetime:
    """Parse a sale's stored timestamp as an aware UTC datetime.

    Naive timestamps are assumed to be UTC.

    Raises:
        ValueError: If the stored value is not ISO-8601.
    """
    moment = datetime.fromisoformat(sale.timestamp_iso.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=UTC)
    end = datetime.combine(day, time.max, tzinfo=UTC)
    return start, end


def resolve_date_range(
    date_range: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Optional[Tuple[datetime, datetime]]:
    """Translate a named range into inclusive UTC bounds.

    ``today`` covers the current day, ``week`` the last seven days up to
    ``now``, ``month`` the whole calendar month and ``custom`` the days from
    ``start`` to the end of ``end``. ``all`` (and ``custom`` without both
    dates) returns ``None``, meaning no date filter.

    Raises:
        ValueError: If ``date_range`` is not one of :data:`DATE_RANGES`.
    """
    if date_range not in DATE_RANGES:
        raise ValueError(f"Unknown date range: {date_range}")
    now = now if now is not None else datetime.now(UTC)
    today = now.astimezone(UTC).date()

    if date_range == "today":
        return _day_bounds(today)
    if date_range == "week":
        return now - timedelta(days=7), now
    if date_range == "month":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return (
            _day_bounds(today.replace(day=1))[0],
            _day_bounds(today.replace(day=last_day))[1],
        )
    if date_range == "custom" and start is not None and end is not None:
        return _day_bounds(start)[0], _day_bounds(end)[1]
    return None


def sales_in_range(context: RuntimeContext, start: datetime, end: datetime) -> List[SaleRecord]:
    """Return sales whose timestamp falls within ``[start, end]``."""
    return [sale for sale in core_logic.list_sales(context) if start <= sale_timestamp(sale) <= end]


def sales_by_user(context: RuntimeContext, user_id: str) -> List[SaleRecord]:
    return [sale for sale in core_logic.list_sales(context) if sale.user_id == user_id]


def filter_sales(
    context: RuntimeContext,
    session: Session,
    *,
    date_range: str = "all",
    start: Optional[date] = None,
    end: Optional[date] = None,
    payment_method: Optional[PaymentMethod] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[SaleRecord]:
    """Apply the sales-history filters.

    The per-operator filter is honoured only for owners; assistants always
    see the unfiltered operator list.
    """
    sales = core_logic.list_sales(context)
    bounds = resolve_date_range(date_range, start=start, end=end, now=now)
    if bounds is not None:
        lower, upper = bounds
        sales = [sale for sale in sales if lower <= sale_timestamp(sale) <= upper]
    if payment_method is not None:
        method = PaymentMethod(payment_method).value
        sales = [sale for sale in sales if sale.payment_method == method]
    if user_id is not None:
        if session.is_owner:
            sales = [sale for sale in sales if sale.user_id == user_id]
        else:
            log.warning("Ignoring user filter requested by non-owner '%s'", session.username)
    return sales


def summarize_sales(sales: Iterable[SaleRecord]) -> SalesSummary:
    revenue = ZERO
    transactions = 0
    items_sold = 0
    credit_sales = 0
    for sale in sales:
        revenue += sale.total
        transactions += 1
        items_sold += sum(line.quantity for line in sale.items)
        if sale.payment_method == PaymentMethod.CREDIT.value:
            credit_sales += 1
    return SalesSummary(
        revenue=round_money(revenue),
        transactions=transactions,
        items_sold=items_sold,
        credit_sales=credit_sales,
    )


def dashboard_stats(context: RuntimeContext, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Headline figures for the dashboard.

    Returns:
        dict[str, Any]: ``total_sales`` and ``today_sales`` (rounded
            revenue), ``total_products``, ``total_customers`` and
            ``low_stock_count``.
    """
    sales = core_logic.list_sales(context)
    lower, upper = resolve_date_range("today", now=now)
    today_sales = [sale for sale in sales if lower <= sale_timestamp(sale) <= upper]
    stats = {
        "total_sales": summarize_sales(sales).revenue,
        "today_sales": summarize_sales(today_sales).revenue,
        "total_products": len(core_logic.list_products(context)),
        "total_customers": len(core_logic.list_customers(context)),
        "low_stock_count": len(core_logic.low_stock_products(context)),
    }
    log.debug("Computed dashboard stats: %s", stats)
    return stats


def customer_credit_overview(context: RuntimeContext) -> Dict[str, Any]:
    """Outstanding balance across all customers and how many have credit."""
    customers = core_logic.list_customers(context)
    return {
        "total_customers": len(customers),
        "customers_with_credit": sum(1 for customer in customers if customer.credit_limit > 0),
        "total_outstanding": round_money(sum((customer.current_balance for customer in customers), ZERO)),
    }


def sales_csv_rows(context: RuntimeContext, sales: Sequence[SaleRecord]) -> List[List[str]]:
    """Build the export rows, header first.

    The transaction id is shortened to its last eight characters and money
    is rendered as ``$0.00``, matching the on-screen report.
    """
    rows = [list(CSV_HEADER)]
    for sale in sales:
        rows.append(
            [
                sale_timestamp(sale).date().isoformat(),
                sale.sale_id[-8:],
                core_logic.display_name(context, sale.user_id),
                sale.payment_method.upper(),
                format_money(sale.subtotal),
                format_money(sale.tax),
                format_money(sale.total),
            ]
        )
    return rows


def default_export_name(now: Optional[datetime] = None) -> str:
    now = now if now is not None else datetime.now(UTC)
    return f"sales-report-{now.date().isoformat()}.csv"


def export_sales_csv(context: RuntimeContext, sales: Sequence[SaleRecord], destination: Path) -> Path:
    """Write ``sales`` to ``destination`` as CSV and return the resolved path."""
    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    with dest.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerows(sales_csv_rows(context, sales))
    log.info("Exported %d sale(s) to '%s'", len(sales), dest)
    return dest
