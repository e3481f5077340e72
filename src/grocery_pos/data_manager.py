"""Data access layer for the grocery POS.

This module provides low-level helpers that read from and write to the
point-of-sale workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows. Each worksheet holds one named collection
   (``Products``, ``Customers``, ``Sales``, ``SaleItems``, ``Users``).
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SHEET_COLUMNS, SheetName
from .money import round_money


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
USERS_SHEET = SheetName.USERS.value

DEFAULT_TAX_RATE = Decimal("0")
DEFAULT_LOW_STOCK_THRESHOLD = 10


class StorageError(Exception):
    """Raised when the backing store cannot complete a read or write.

    ``stage`` names the step of a larger operation that failed (for example
    ``"sale-write"`` or ``"stock-write:P1"``) when the caller knows it.
    """

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class ConcurrentModificationError(StorageError):
    """Raised when a conditional update finds an unexpected stored value."""

    def __init__(self, message: str, *, expected: Any, actual: Any, stage: Optional[str] = None) -> None:
        super().__init__(message, stage=stage)
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    tax_rate: Decimal = DEFAULT_TAX_RATE
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    price: Decimal
    stock: int
    description: Optional[str] = None
    cost: Optional[Decimal] = None
    category: Optional[str] = None
    barcode: Optional[str] = None


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    credit_limit: Decimal
    current_balance: Decimal
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: str
    username: str
    password_hash: str
    pin_hash: Optional[str]
    role: str
    full_name: str = ""


@dataclass(frozen=True)
class SaleLine:
    """Snapshot of one sold line as stored in ``SaleItems``."""

    product_id: str
    name: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class SaleRecord:
    """A committed sale: the ``Sales`` header row plus its ``SaleItems`` rows."""

    sale_id: str
    timestamp_iso: str
    items: Tuple[SaleLine, ...]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    customer_id: Optional[str]
    user_id: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Sales]`` section is optional:
    ``TaxRate`` defaults to ``0`` and ``LowStockThreshold`` to ``10``. A
    relative ``DataFile`` is anchored at ``base_path`` (or the current working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required ``[System]`` option is missing.
        ValueError: If ``TaxRate`` is not a non-negative decimal or
            ``LowStockThreshold`` is not a non-negative integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    tax_raw = parser.get("Sales", "TaxRate", fallback=str(DEFAULT_TAX_RATE))
    try:
        tax_rate = Decimal(tax_raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid TaxRate: {tax_raw!r}") from exc
    if not tax_rate.is_finite() or tax_rate < 0:
        raise ValueError(f"TaxRate must be a non-negative fraction, got {tax_raw!r}")

    threshold_raw = parser.get("Sales", "LowStockThreshold", fallback=str(DEFAULT_LOW_STOCK_THRESHOLD))
    try:
        low_stock_threshold = int(threshold_raw)
    except ValueError as exc:
        raise ValueError(f"Invalid LowStockThreshold: {threshold_raw!r}") from exc
    if low_stock_threshold < 0:
        raise ValueError(f"LowStockThreshold must be zero or positive, got {threshold_raw!r}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        tax_rate=tax_rate,
        low_stock_threshold=low_stock_threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the POS workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        StorageError: If the workbook lacks one of the expected sheets.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise StorageError(f"Workbook {data_file} is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def snapshot_rows(workbook: Workbook, sheet_names: Iterable[str]) -> Dict[str, List[Tuple[Any, ...]]]:
    """Capture the data rows (below the header) of each named sheet."""

    return {
        name: [tuple(row) for row in workbook[name].iter_rows(min_row=2, values_only=True)]
        for name in sheet_names
    }


def restore_rows(workbook: Workbook, snapshot: Mapping[str, Sequence[Tuple[Any, ...]]]) -> None:
    """Put the sheets captured by :func:`snapshot_rows` back as they were.

    Rows are rewritten by index so the restored sheet has no gaps, whatever
    was appended or deleted since the snapshot.
    """

    for name, rows in snapshot.items():
        sheet = workbook[name]
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
        for row_idx, values in enumerate(rows, start=2):
            for col_idx, value in enumerate(values, start=1):
                sheet.cell(row=row_idx, column=col_idx, value=value)
        log.debug("Restored %d rows in sheet '%s'", len(rows), name)


def read_records(workbook: Workbook, sheet_name: str) -> List[Dict[str, Any]]:
    """Return every populated row of ``sheet_name`` keyed by header title.

    Header and fully empty rows are skipped, so the result is exactly the list
    of stored records in sheet order.

    Args:
        workbook (Workbook): Workbook holding the collection.
        sheet_name (str): Worksheet (collection) name.

    Returns:
        list[dict[str, Any]]: One mapping per record.
    """

    sheet = workbook[sheet_name]
    headers = [cell.value for cell in sheet[1]]
    records: List[Dict[str, Any]] = []
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            records.append(dict(zip(headers, raw)))
    return records


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Yield typed product records from the ``Products`` worksheet."""

    for record in read_records(workbook, PRODUCTS_SHEET):
        yield deserialize_product(record)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Yield typed customer records from the ``Customers`` worksheet."""

    for record in read_records(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(record)


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Yield typed operator records from the ``Users`` worksheet."""

    for record in read_records(workbook, USERS_SHEET):
        yield deserialize_user(record)


def iter_sales(workbook: Workbook) -> Iterable[SaleRecord]:
    """Stream committed sales, each joined with its line items.

    Item rows are grouped by ``SaleID`` and ordered by ``LineNo`` so the
    reconstructed ``items`` tuple matches the order in which the lines were
    sold. A sale header without item rows yields an empty ``items`` tuple.

    Args:
        workbook (Workbook): Workbook containing the ``Sales`` and
            ``SaleItems`` sheets.

    Yields:
        SaleRecord: One record per ``Sales`` row, in sheet order.
    """

    lines_by_sale: Dict[str, List[Tuple[int, SaleLine]]] = defaultdict(list)
    for record in read_records(workbook, SALE_ITEMS_SHEET):
        sale_id, line_no, line = deserialize_sale_item(record)
        lines_by_sale[sale_id].append((line_no, line))

    for record in read_records(workbook, SALES_SHEET):
        sale_id = str(record["SaleID"])
        ordered = sorted(lines_by_sale.get(sale_id, []), key=lambda pair: pair[0])
        yield deserialize_sale(record, items=tuple(line for _, line in ordered))


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_user(workbook: Workbook, record: UserRow) -> None:
    """Append an operator record to the ``Users`` worksheet."""

    workbook[USERS_SHEET].append(serialize_user(record))


def append_sale(workbook: Workbook, record: SaleRecord) -> None:
    """Append a sale header and its line items.

    The item rows are written first so that a header row is never visible
    without its lines inside the same workbook snapshot.

    Args:
        workbook (Workbook): Workbook receiving the sale.
        record (SaleRecord): Fully built, immutable sale.
    """

    items_sheet = workbook[SALE_ITEMS_SHEET]
    for line_no, line in enumerate(record.items, start=1):
        items_sheet.append(serialize_sale_item(record.sale_id, line_no, line))
    workbook[SALES_SHEET].append(serialize_sale(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing product.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (Mapping[str, Any]): Column title to replacement value.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values, label="Product")


def update_customer(workbook: Workbook, customer_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing customer.

    Raises:
        KeyError: If the customer or any referenced column cannot be found.
    """

    _update_row(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id, field_values, label="Customer")


def delete_product(workbook: Workbook, product_id: str) -> None:
    """Remove a product row. Historical sales keep their product id.

    Raises:
        KeyError: If no row carries ``product_id``.
    """

    _delete_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, label="Product")


def delete_customer(workbook: Workbook, customer_id: str) -> None:
    """Remove a customer row.

    Raises:
        KeyError: If no row carries ``customer_id``.
    """

    _delete_row(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id, label="Customer")


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: Mapping[str, Any],
    *,
    label: str,
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label} not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown {label.lower()} field: {', '.join(unknown)}")

    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def _delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, *, label: str) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label} not found: {key_value}")
    workbook[sheet_name].delete_rows(row_index)
    log.debug("Deleted row %d from sheet '%s'", row_index, sheet_name)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column. Cells are
            compared as strings because Excel may store numeric-looking ids
            as numbers.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> List[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.name,
        record.description,
        record.price,
        record.cost,
        record.stock,
        record.category,
        record.barcode,
    ]


def serialize_customer(record: CustomerRow) -> List[object]:
    """Convert a customer dataclass into the ``Customers`` column ordering."""

    return [
        record.customer_id,
        record.name,
        record.phone,
        record.email,
        record.address,
        record.credit_limit,
        record.current_balance,
    ]


def serialize_user(record: UserRow) -> List[object]:
    return [
        record.user_id,
        record.username,
        record.password_hash,
        record.pin_hash,
        record.role,
        record.full_name,
    ]


def serialize_sale(record: SaleRecord) -> List[object]:
    """Convert a sale header into the ``Sales`` column ordering.

    ``CustomerID`` is left blank for cash sales so that it deserializes back
    to ``None``.
    """

    return [
        record.sale_id,
        record.timestamp_iso,
        record.subtotal,
        record.tax,
        record.total,
        record.payment_method,
        record.customer_id,
        record.user_id,
    ]


def serialize_sale_item(sale_id: str, line_no: int, line: SaleLine) -> List[object]:
    return [sale_id, line_no, line.product_id, line.name, line.unit_price, line.quantity]


def sale_to_document(record: SaleRecord) -> Dict[str, Any]:
    """Render a sale in the canonical record layout used by reports.

    Keys follow the persisted layout: ``id``, ``timestamp``, ``items`` (each
    with ``productId``, ``name``, ``unitPrice``, ``quantity``), ``subtotal``,
    ``tax``, ``total``, ``paymentMethod``, ``customerId`` (omitted for cash
    sales) and ``userId``. Money is rendered as 2-decimal strings so no float
    conversion can drift the value.
    """

    document: Dict[str, Any] = {
        "id": record.sale_id,
        "timestamp": record.timestamp_iso,
        "items": [
            {
                "productId": line.product_id,
                "name": line.name,
                "unitPrice": str(round_money(line.unit_price)),
                "quantity": line.quantity,
            }
            for line in record.items
        ],
        "subtotal": str(record.subtotal),
        "tax": str(record.tax),
        "total": str(record.total),
        "paymentMethod": record.payment_method,
        "userId": record.user_id,
    }
    if record.customer_id is not None:
        document["customerId"] = record.customer_id
    return document


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def _money(value: object, *, default: Optional[Decimal] = Decimal("0.00")) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    return round_money(Decimal(str(value)))


def _integer(value: object) -> int:
    if value is None or value == "":
        return 0
    return int(Decimal(str(value)))


def deserialize_product(raw: Mapping[str, object]) -> ProductRow:
    """Convert a header-keyed ``Products`` row into a :class:`ProductRow`.

    Identifiers and text are coerced to ``str`` to avoid surprises caused by
    Excel interpreting numeric-looking barcodes as numbers; prices become
    2-place :class:`~decimal.Decimal` values and stock an ``int``.
    """

    return ProductRow(
        product_id=str(raw["ProductID"]),
        name=str(raw["Name"]) if raw.get("Name") is not None else "",
        description=_optional_text(raw.get("Description")),
        price=_money(raw.get("Price")),
        cost=_money(raw.get("Cost"), default=None),
        stock=_integer(raw.get("Stock")),
        category=_optional_text(raw.get("Category")),
        barcode=_optional_text(raw.get("Barcode")),
    )


def deserialize_customer(raw: Mapping[str, object]) -> CustomerRow:
    """Convert a header-keyed ``Customers`` row into a :class:`CustomerRow`.

    A blank balance is read as zero, matching how new accounts are created.
    """

    return CustomerRow(
        customer_id=str(raw["CustomerID"]),
        name=str(raw["Name"]) if raw.get("Name") is not None else "",
        phone=_optional_text(raw.get("Phone")),
        email=_optional_text(raw.get("Email")),
        address=_optional_text(raw.get("Address")),
        credit_limit=_money(raw.get("CreditLimit")),
        current_balance=_money(raw.get("CurrentBalance")),
    )


def deserialize_user(raw: Mapping[str, object]) -> UserRow:
    return UserRow(
        user_id=str(raw["UserID"]),
        username=str(raw["Username"]),
        password_hash=str(raw.get("PasswordHash") or ""),
        pin_hash=_optional_text(raw.get("PinHash")),
        role=str(raw.get("Role") or ""),
        full_name=str(raw.get("FullName") or ""),
    )


def deserialize_sale_item(raw: Mapping[str, object]) -> Tuple[str, int, SaleLine]:
    """Convert a ``SaleItems`` row into ``(sale_id, line_no, SaleLine)``."""

    line = SaleLine(
        product_id=str(raw["ProductID"]),
        name=str(raw.get("Name") or ""),
        unit_price=_money(raw.get("UnitPrice")),
        quantity=_integer(raw.get("Quantity")),
    )
    return str(raw["SaleID"]), _integer(raw.get("LineNo")), line


def deserialize_sale(raw: Mapping[str, object], *, items: Sequence[SaleLine] = ()) -> SaleRecord:
    """Convert a ``Sales`` header row plus its lines into a :class:`SaleRecord`."""

    return SaleRecord(
        sale_id=str(raw["SaleID"]),
        timestamp_iso=str(raw.get("Timestamp") or ""),
        items=tuple(items),
        subtotal=_money(raw.get("Subtotal")),
        tax=_money(raw.get("Tax")),
        total=_money(raw.get("Total")),
        payment_method=str(raw.get("PaymentMethod") or ""),
        customer_id=_optional_text(raw.get("CustomerID")),
        user_id=str(raw.get("UserID") or ""),
    )
