"""Tests for sales history filters, dashboard figures and CSV export."""

from __future__ import annotations

import csv
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from grocery_pos import core_logic, reports
from grocery_pos.constants import PaymentMethod
from grocery_pos.data_manager import SaleLine, SaleRecord

NOW = datetime(2024, 2, 15, 12, 0, tzinfo=UTC)


def _record_sale(
    context,
    sale_id: str,
    moment: datetime,
    total: str,
    *,
    user_id: str,
    method: str = "cash",
    customer_id=None,
    quantity: int = 1,
) -> SaleRecord:
    amount = Decimal(total)
    sale = SaleRecord(
        sale_id=sale_id,
        timestamp_iso=moment.isoformat(),
        items=(SaleLine("P-BAN", "Bananas", amount / quantity, quantity),),
        subtotal=amount,
        tax=Decimal("0.00"),
        total=amount,
        payment_method=method,
        customer_id=customer_id,
        user_id=user_id,
    )
    return core_logic.create_sale(context, sale)


@pytest.fixture
def sales_context(stocked_context, owner_session):
    _record_sale(stocked_context, "sale-0000-today-01", NOW - timedelta(hours=2), "3.06", user_id=owner_session.user_id, quantity=2)
    _record_sale(
        stocked_context,
        "sale-0000-today-02",
        NOW - timedelta(hours=1),
        "6.49",
        user_id="U-ASSIST",
        method="credit",
        customer_id="C-MIKE",
    )
    _record_sale(stocked_context, "sale-0000-week-003", NOW - timedelta(days=3), "10.00", user_id="U-ASSIST")
    _record_sale(stocked_context, "sale-0000-jan-0004", datetime(2024, 1, 20, 9, 0, tzinfo=UTC), "20.00", user_id="U-GONE")
    return stocked_context


# ---------------------------------------------------------------------------
# Date windows
# ---------------------------------------------------------------------------


def test_resolve_today():
    lower, upper = reports.resolve_date_range("today", now=NOW)

    assert lower == datetime(2024, 2, 15, tzinfo=UTC)
    assert upper.date() == date(2024, 2, 15)
    assert upper.hour == 23


def test_resolve_week_is_last_seven_days():
    assert reports.resolve_date_range("week", now=NOW) == (NOW - timedelta(days=7), NOW)


def test_resolve_month_covers_leap_february():
    lower, upper = reports.resolve_date_range("month", now=NOW)

    assert lower == datetime(2024, 2, 1, tzinfo=UTC)
    assert upper.date() == date(2024, 2, 29)


def test_resolve_custom_range_is_inclusive_of_end_day():
    lower, upper = reports.resolve_date_range("custom", start=date(2024, 1, 1), end=date(2024, 1, 20), now=NOW)

    assert lower == datetime(2024, 1, 1, tzinfo=UTC)
    assert upper.date() == date(2024, 1, 20)


@pytest.mark.parametrize("kwargs", [{"date_range": "all"}, {"date_range": "custom", "start": date(2024, 1, 1)}])
def test_resolve_without_bounds_returns_none(kwargs):
    assert reports.resolve_date_range(now=NOW, **kwargs) is None


def test_resolve_unknown_range():
    with pytest.raises(ValueError):
        reports.resolve_date_range("fortnight", now=NOW)


def test_sale_timestamp_accepts_zulu_and_naive_values():
    base = SaleRecord("S", "2024-02-15T10:00:00Z", (), Decimal("0"), Decimal("0"), Decimal("0"), "cash", None, "U")

    assert reports.sale_timestamp(base) == datetime(2024, 2, 15, 10, tzinfo=UTC)
    naive = SaleRecord("S", "2024-02-15T10:00:00", (), Decimal("0"), Decimal("0"), Decimal("0"), "cash", None, "U")
    assert reports.sale_timestamp(naive) == datetime(2024, 2, 15, 10, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Sales history
# ---------------------------------------------------------------------------


def test_filter_sales_by_range_and_payment(sales_context, owner_session):
    today = reports.filter_sales(sales_context, owner_session, date_range="today", now=NOW)
    week = reports.filter_sales(sales_context, owner_session, date_range="week", now=NOW)
    credit = reports.filter_sales(sales_context, owner_session, payment_method=PaymentMethod.CREDIT)

    assert [sale.sale_id for sale in today] == ["sale-0000-today-01", "sale-0000-today-02"]
    assert len(week) == 3
    assert [sale.sale_id for sale in credit] == ["sale-0000-today-02"]


def test_user_filter_applies_to_owners_only(sales_context, owner_session, assistant_session):
    by_owner = reports.filter_sales(sales_context, owner_session, user_id="U-ASSIST")
    by_assistant = reports.filter_sales(sales_context, assistant_session, user_id="U-ASSIST")

    assert len(by_owner) == 2
    assert len(by_assistant) == 4


def test_sales_in_range_and_by_user(sales_context):
    january = reports.sales_in_range(
        sales_context, datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 1, 31, tzinfo=UTC)
    )

    assert [sale.sale_id for sale in january] == ["sale-0000-jan-0004"]
    assert len(reports.sales_by_user(sales_context, "U-ASSIST")) == 2


def test_summarize_sales(sales_context):
    summary = reports.summarize_sales(core_logic.list_sales(sales_context))

    assert summary.revenue == Decimal("39.55")
    assert summary.transactions == 4
    assert summary.items_sold == 5
    assert summary.credit_sales == 1


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def test_dashboard_stats(sales_context):
    stats = reports.dashboard_stats(sales_context, now=NOW)

    assert stats == {
        "total_sales": Decimal("39.55"),
        "today_sales": Decimal("9.55"),
        "total_products": 3,
        "total_customers": 2,
        "low_stock_count": 3,
    }


def test_dashboard_stats_defaults_to_current_time(sales_context, set_fixed_datetime):
    set_fixed_datetime(reports, NOW + timedelta(days=1))

    assert reports.dashboard_stats(sales_context)["today_sales"] == Decimal("0.00")


def test_customer_credit_overview(stocked_context):
    core_logic.add_customer(stocked_context, name="Cash Only")

    overview = reports.customer_credit_overview(stocked_context)

    assert overview == {
        "total_customers": 3,
        "customers_with_credit": 2,
        "total_outstanding": Decimal("1300.25"),
    }


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


def test_sales_csv_rows(sales_context):
    rows = reports.sales_csv_rows(sales_context, core_logic.list_sales(sales_context))

    assert rows[0] == reports.CSV_HEADER
    assert rows[1] == ["2024-02-15", "today-01", "Admin User", "CASH", "$3.06", "$0.00", "$3.06"]
    assert rows[2][3] == "CREDIT"
    assert rows[4][2] == "Unknown"


def test_export_sales_csv_writes_file(sales_context, tmp_path):
    destination = tmp_path / "exports" / "report.csv"

    path = reports.export_sales_csv(sales_context, core_logic.list_sales(sales_context), destination)

    with path.open(newline="", encoding="utf-8") as handle:
        rows = list(csv.reader(handle))
    assert path == destination.resolve()
    assert rows[0] == reports.CSV_HEADER
    assert len(rows) == 5


def test_default_export_name(set_fixed_datetime):
    set_fixed_datetime(reports, NOW)

    assert reports.default_export_name() == "sales-report-2024-02-15.csv"
