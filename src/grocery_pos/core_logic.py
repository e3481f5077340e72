"""Business logic layer for the grocery POS.

This module is the ledger repository: typed, validated accessors over the
``Products``, ``Customers``, ``Sales`` and ``Users`` collections, plus the
stock and balance adjustment primitives the checkout engine builds on. It
consumes the Data Access Layer (DAL) for all I/O. Every mutation is written
through to disk before the call returns so that each step of a multi-step
operation is durable on completion.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook
from werkzeug.security import check_password_hash, generate_password_hash

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, CreditStatus, UserRole
from .data_manager import ConcurrentModificationError, StorageError
from .money import ZERO, MoneyLike, round_money, to_money


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, sale, or user is unknown."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when the session's role may not perform an operation."""


class AuthenticationError(BusinessRuleViolation):
    """Raised when credentials do not match a known operator."""


class CreditLimitExceededError(BusinessRuleViolation):
    """Raised when a charge would push a customer's balance over the limit."""

    def __init__(self, *, customer_id: str, current_balance: Decimal, limit: Decimal, attempted_total: Decimal) -> None:
        self.customer_id = customer_id
        self.current_balance = current_balance
        self.limit = limit
        self.attempted_total = attempted_total
        super().__init__(
            f"Charge of ${attempted_total} exceeds the credit limit for customer '{customer_id}'. "
            f"Current balance: ${current_balance}, Limit: ${limit}"
        )


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class Session:
    """The operator on whose behalf an operation runs.

    Sessions are passed explicitly into every call that needs attribution or
    authorization; nothing reads the current operator from global state.
    """

    user_id: str
    username: str
    role: UserRole
    full_name: str = ""

    @property
    def is_owner(self) -> bool:
        return self.role is UserRole.OWNER


PRODUCT_FIELDS: Mapping[str, str] = {
    "name": "Name",
    "description": "Description",
    "price": "Price",
    "cost": "Cost",
    "stock": "Stock",
    "category": "Category",
    "barcode": "Barcode",
}

CUSTOMER_FIELDS: Mapping[str, str] = {
    "name": "Name",
    "phone": "Phone",
    "email": "Email",
    "address": "Address",
    "credit_limit": "CreditLimit",
}


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id() -> str:
    """Generate an opaque, globally unique record identifier."""

    return str(uuid.uuid4())


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are simple dictionaries holding precomputed query results for one
    collection (products, customers, sales, users), so repeated lookups do not
    rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking what has been populated.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "customers")
    if "all" not in bucket:
        all_customers = list(data_manager.iter_customers(context.workbook))
        bucket["all"] = all_customers
        bucket["by_id"] = {customer.customer_id: customer for customer in all_customers}
        log.debug("Populated customers cache with %d entries", len(all_customers))
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sales cache bucket on demand.

    Sales are immutable after creation, so caching the full list and a
    ``by_id`` dictionary is safe until the next append invalidates it.
    """

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.workbook))
        bucket["all"] = all_sales
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        log.debug("Populated sales cache with %d entries", len(all_sales))
    return bucket


def _ensure_users_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "users")
    if "all" not in bucket:
        all_users = list(data_manager.iter_users(context.workbook))
        bucket["all"] = all_users
        bucket["by_id"] = {user.user_id: user for user in all_users}
        bucket["by_username"] = {user.username: user for user in all_users}
        log.debug("Populated users cache with %d entries", len(all_users))
    return bucket


_BUCKET_SHEETS: Dict[str, Tuple[str, ...]] = {
    "products": (data_manager.PRODUCTS_SHEET,),
    "customers": (data_manager.CUSTOMERS_SHEET,),
    "sales": (data_manager.SALES_SHEET, data_manager.SALE_ITEMS_SHEET),
    "users": (data_manager.USERS_SHEET,),
}


@contextmanager
def _write_through(context: RuntimeContext, *buckets: str, stage: Optional[str] = None) -> Iterator[None]:
    """Apply the enclosed workbook edits and save them, or undo them.

    The sheets behind ``buckets`` are snapshotted first. If the edits raise
    or the save fails, the snapshot is restored so the in-memory workbook
    matches the file again and a later save cannot persist the failed write.

    Raises:
        StorageError: If the workbook cannot be saved. ``stage`` is attached
            to the error so callers can tell which step failed.
    """

    sheets = [sheet for bucket in buckets for sheet in _BUCKET_SHEETS[bucket]]
    snapshot = data_manager.snapshot_rows(context.workbook, sheets)
    try:
        yield
        persist_context(context)
    except OSError as exc:
        data_manager.restore_rows(context.workbook, snapshot)
        log.error("Failed to persist workbook '%s', edits rolled back: %s", context.settings.data_file, exc)
        raise StorageError(f"Unable to save workbook: {exc}", stage=stage) from exc
    except Exception:
        data_manager.restore_rows(context.workbook, snapshot)
        raise
    finally:
        _invalidate_cache(context, *buckets)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context with an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, returning a fresh context with an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Sessions and users
# ---------------------------------------------------------------------------


def require_role(session: Session, role: UserRole) -> None:
    """Ensure ``session`` holds ``role``.

    Raises:
        PermissionDeniedError: If the operator's role differs.
    """
    if session.role is not role:
        log.warning("User '%s' lacks the '%s' role", session.username, role.value)
        raise PermissionDeniedError(f"Unauthorized. You need {role.value} privileges.")


def list_users(context: RuntimeContext) -> List[data_manager.UserRow]:
    return list(_ensure_users_cache(context)["all"])


def get_user(context: RuntimeContext, user_id: str) -> data_manager.UserRow:
    """Resolve an operator by id.

    Raises:
        MissingReferenceError: If ``user_id`` is unknown.
    """
    try:
        return _ensure_users_cache(context)["by_id"][user_id]
    except KeyError as exc:
        log.warning("User lookup failed for id '%s'", user_id)
        raise MissingReferenceError(f"Unknown user id: {user_id}") from exc


def display_name(context: RuntimeContext, user_id: str) -> str:
    """Return the operator's full name, username, or ``"Unknown"``."""
    user = _ensure_users_cache(context)["by_id"].get(user_id)
    if user is None:
        return "Unknown"
    return user.full_name or user.username


def _session_for(user: data_manager.UserRow) -> Session:
    try:
        role = UserRole(user.role)
    except ValueError as exc:
        log.error("User '%s' has unsupported role '%s'", user.username, user.role)
        raise AuthenticationError(f"User '{user.username}' has an unsupported role") from exc
    return Session(user_id=user.user_id, username=user.username, role=role, full_name=user.full_name)


def login(context: RuntimeContext, username: str, password: str) -> Session:
    """Authenticate an operator by username and password.

    Raises:
        AuthenticationError: If the username is unknown or the password does
            not match. The message does not reveal which of the two failed.
    """
    user = _ensure_users_cache(context)["by_username"].get(username)
    if user is None or not check_password_hash(user.password_hash, password):
        log.warning("Failed login attempt for username '%s'", username)
        raise AuthenticationError("Invalid credentials")
    log.info("User '%s' logged in", username)
    return _session_for(user)


def login_with_pin(context: RuntimeContext, pin: str) -> Session:
    """Authenticate an operator by PIN alone (quick till switch).

    Raises:
        AuthenticationError: If no operator has a matching PIN.
    """
    for user in _ensure_users_cache(context)["all"]:
        if user.pin_hash and check_password_hash(user.pin_hash, pin):
            log.info("User '%s' logged in with PIN", user.username)
            return _session_for(user)
    log.warning("Failed PIN login attempt")
    raise AuthenticationError("Invalid PIN")


def build_user(
    *,
    username: str,
    password: str,
    role: UserRole,
    full_name: str = "",
    pin: Optional[str] = None,
    user_id: Optional[str] = None,
) -> data_manager.UserRow:
    """Create a :class:`UserRow` with hashed credentials.

    Raises:
        ValueError: If the username or password is blank.
    """
    if not username.strip():
        raise ValueError("Username must not be empty")
    if not password:
        raise ValueError("Password must not be empty")
    return data_manager.UserRow(
        user_id=user_id or generate_id(),
        username=username.strip(),
        password_hash=generate_password_hash(password),
        pin_hash=generate_password_hash(pin) if pin else None,
        role=UserRole(role).value,
        full_name=full_name,
    )


def add_user(
    context: RuntimeContext,
    session: Session,
    *,
    username: str,
    password: str,
    role: UserRole,
    full_name: str = "",
    pin: Optional[str] = None,
) -> data_manager.UserRow:
    """Register a new operator. Only owners may add users.

    Raises:
        PermissionDeniedError: If ``session`` is not an owner.
        BusinessRuleViolation: If the username is already taken.
        ValueError: If the username or password is blank.
    """
    require_role(session, UserRole.OWNER)
    if username.strip() in _ensure_users_cache(context)["by_username"]:
        raise BusinessRuleViolation(f"Username '{username}' is already taken")
    record = build_user(username=username, password=password, role=role, full_name=full_name, pin=pin)
    with _write_through(context, "users"):
        data_manager.append_user(context.workbook, record)
    log.info("Added %s user '%s'", record.role, record.username)
    return record


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in sheet order."""
    return list(_ensure_products_cache(context)["all"])


def find_product(context: RuntimeContext, product_id: str) -> Optional[data_manager.ProductRow]:
    """Return the product with ``product_id`` or ``None`` when absent."""
    return _ensure_products_cache(context)["by_id"].get(product_id)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def require_nonnegative_money(amount: Decimal, *, label: str = "Amount") -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed for %s: %s", label, amount)
        raise ValueError(f"{label} must be zero or positive")


def require_positive_amount(amount: Decimal, *, label: str = "Amount") -> None:
    if amount <= Decimal("0"):
        log.error("Monetary value validation failed for %s: %s", label, amount)
        raise ValueError(f"{label} must be greater than zero")


def require_nonnegative_stock(stock: int) -> None:
    """Validate that a stock level is a non-negative integer.

    Raises:
        ValueError: If ``stock`` is negative or not an integer.
    """
    if isinstance(stock, bool) or not isinstance(stock, int):
        raise ValueError(f"Stock must be an integer, got {stock!r}")
    if stock < 0:
        log.error("Stock validation failed: %s", stock)
        raise ValueError("Stock must be zero or positive")


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _normalize_product_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate product field updates and map them onto sheet columns."""
    columns: Dict[str, Any] = {}
    for name, value in changes.items():
        if name not in PRODUCT_FIELDS:
            raise ValueError(f"Unknown product field: {name}")
        if name == "name":
            if not value or not str(value).strip():
                raise ValueError("Product name must not be empty")
            value = str(value).strip()
        elif name == "price":
            value = round_money(value)
            require_nonnegative_money(value, label="Price")
        elif name == "cost":
            if value is not None:
                value = round_money(value)
                require_nonnegative_money(value, label="Cost")
        elif name == "stock":
            require_nonnegative_stock(value)
        else:
            value = _clean_text(value)
        columns[PRODUCT_FIELDS[name]] = value
    return columns


def add_product(
    context: RuntimeContext,
    session: Session,
    *,
    name: str,
    price: MoneyLike,
    stock: int = 0,
    product_id: Optional[str] = None,
    description: Optional[str] = None,
    cost: Optional[MoneyLike] = None,
    category: Optional[str] = None,
    barcode: Optional[str] = None,
) -> data_manager.ProductRow:
    """Validate and append a new product. Only owners manage inventory.

    A uuid4 identifier is generated when ``product_id`` is omitted. Prices are
    rounded to cents once, here, and stored as such.

    Returns:
        data_manager.ProductRow: The stored product.

    Raises:
        PermissionDeniedError: If ``session`` is not an owner.
        BusinessRuleViolation: If ``product_id`` already exists.
        ValueError: If the name is blank, a price is negative, or stock is
            negative.
    """
    require_role(session, UserRole.OWNER)
    fields = _normalize_product_changes(
        {
            "name": name,
            "price": price,
            "stock": stock,
            "description": description,
            "cost": cost,
            "category": category,
            "barcode": barcode,
        }
    )
    product_id = product_id or generate_id()
    if find_product(context, product_id) is not None:
        raise BusinessRuleViolation(f"Product id '{product_id}' already exists")

    record = data_manager.ProductRow(
        product_id=product_id,
        name=fields["Name"],
        price=fields["Price"],
        stock=fields["Stock"],
        description=fields["Description"],
        cost=fields["Cost"],
        category=fields["Category"],
        barcode=fields["Barcode"],
    )
    with _write_through(context, "products"):
        data_manager.append_product(context.workbook, record)
    log.info("Added product '%s' (%s) price=%s stock=%d", record.name, record.product_id, record.price, record.stock)
    return record


def update_product(context: RuntimeContext, session: Session, product_id: str, **changes: Any) -> data_manager.ProductRow:
    """Apply field changes to an existing product.

    Accepted keyword arguments are the keys of :data:`PRODUCT_FIELDS`. Price
    changes never affect lines already sitting in a cart, which keep the
    price snapshotted when they were added.

    Raises:
        PermissionDeniedError: If ``session`` is not an owner.
        MissingReferenceError: If ``product_id`` is unknown.
        ValueError: If a field is unknown or its value invalid.
    """
    require_role(session, UserRole.OWNER)
    get_product(context, product_id)
    columns = _normalize_product_changes(changes)
    if columns:
        with _write_through(context, "products"):
            data_manager.update_product(context.workbook, product_id, field_values=columns)
        log.info("Updated product '%s': %s", product_id, ", ".join(sorted(columns)))
    return get_product(context, product_id)


def delete_product(context: RuntimeContext, session: Session, product_id: str) -> None:
    """Delete a product. Past sales keep referring to its id.

    Raises:
        PermissionDeniedError: If ``session`` is not an owner.
        MissingReferenceError: If ``product_id`` is unknown.
    """
    require_role(session, UserRole.OWNER)
    get_product(context, product_id)
    with _write_through(context, "products"):
        data_manager.delete_product(context.workbook, product_id)
    log.info("Deleted product '%s'", product_id)


def search_products(context: RuntimeContext, query: str) -> List[data_manager.ProductRow]:
    """Match products by name or description (case-insensitive) or barcode."""
    term = query.lower()
    return [
        product
        for product in _ensure_products_cache(context)["all"]
        if term in product.name.lower()
        or (product.description and term in product.description.lower())
        or (product.barcode and query in product.barcode)
    ]


def list_categories(context: RuntimeContext) -> List[str]:
    """Return the distinct, non-empty categories in first-seen order."""
    seen: Dict[str, None] = {}
    for product in _ensure_products_cache(context)["all"]:
        if product.category:
            seen.setdefault(product.category, None)
    return list(seen)


def low_stock_products(context: RuntimeContext, threshold: Optional[int] = None) -> List[data_manager.ProductRow]:
    """Return products whose stock is at or below ``threshold``.

    The threshold defaults to ``LowStockThreshold`` from the configuration.
    """
    if threshold is None:
        threshold = context.settings.low_stock_threshold
    return [product for product in _ensure_products_cache(context)["all"] if product.stock <= threshold]


def filter_products(
    context: RuntimeContext,
    *,
    query: Optional[str] = None,
    category: Optional[str] = None,
    low_stock: bool = False,
) -> List[data_manager.ProductRow]:
    """Combine search, category and low-stock filters as the inventory view does."""
    products = search_products(context, query) if query else list_products(context)
    if category:
        products = [product for product in products if product.category == category]
    if low_stock:
        low_ids = {product.product_id for product in low_stock_products(context)}
        products = [product for product in products if product.product_id in low_ids]
    return products


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    return list(_ensure_customers_cache(context)["all"])


def find_customer(context: RuntimeContext, customer_id: str) -> Optional[data_manager.CustomerRow]:
    """Return the customer with ``customer_id`` or ``None`` when absent."""
    return _ensure_customers_cache(context)["by_id"].get(customer_id)


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    try:
        return _ensure_customers_cache(context)["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def _normalize_customer_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    columns: Dict[str, Any] = {}
    for name, value in changes.items():
        if name not in CUSTOMER_FIELDS:
            raise ValueError(f"Unknown customer field: {name}")
        if name == "name":
            if not value or not str(value).strip():
                raise ValueError("Customer name must not be empty")
            value = str(value).strip()
        elif name == "credit_limit":
            value = round_money(value)
            require_nonnegative_money(value, label="Credit limit")
        else:
            value = _clean_text(value)
        columns[CUSTOMER_FIELDS[name]] = value
    return columns


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    credit_limit: MoneyLike = ZERO,
    current_balance: MoneyLike = ZERO,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> data_manager.CustomerRow:
    """Create a customer account; the balance defaults to zero.

    Raises:
        BusinessRuleViolation: If ``customer_id`` already exists.
        ValueError: If the name is blank or the credit limit negative.
    """
    fields = _normalize_customer_changes(
        {"name": name, "credit_limit": credit_limit, "phone": phone, "email": email, "address": address}
    )
    customer_id = customer_id or generate_id()
    if find_customer(context, customer_id) is not None:
        raise BusinessRuleViolation(f"Customer id '{customer_id}' already exists")

    record = data_manager.CustomerRow(
        customer_id=customer_id,
        name=fields["Name"],
        phone=fields["Phone"],
        email=fields["Email"],
        address=fields["Address"],
        credit_limit=fields["CreditLimit"],
        current_balance=round_money(current_balance),
    )
    with _write_through(context, "customers"):
        data_manager.append_customer(context.workbook, record)
    log.info("Added customer '%s' (%s) limit=%s", record.name, record.customer_id, record.credit_limit)
    return record


def update_customer(context: RuntimeContext, customer_id: str, **changes: Any) -> data_manager.CustomerRow:
    """Apply profile or credit-limit changes to a customer.

    The balance is not editable here; it moves only through sales, charges
    and payments.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
        ValueError: If a field is unknown or its value invalid.
    """
    get_customer(context, customer_id)
    columns = _normalize_customer_changes(changes)
    if columns:
        with _write_through(context, "customers"):
            data_manager.update_customer(context.workbook, customer_id, field_values=columns)
        log.info("Updated customer '%s': %s", customer_id, ", ".join(sorted(columns)))
    return get_customer(context, customer_id)


def delete_customer(context: RuntimeContext, customer_id: str) -> None:
    """Delete a customer account.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    get_customer(context, customer_id)
    with _write_through(context, "customers"):
        data_manager.delete_customer(context.workbook, customer_id)
    log.info("Deleted customer '%s'", customer_id)


def search_customers(context: RuntimeContext, query: str) -> List[data_manager.CustomerRow]:
    """Match customers by name or email (case-insensitive) or phone."""
    term = query.lower()
    return [
        customer
        for customer in _ensure_customers_cache(context)["all"]
        if term in customer.name.lower()
        or (customer.phone and query in customer.phone)
        or (customer.email and term in customer.email.lower())
    ]


def credit_utilization(customer: data_manager.CustomerRow) -> Decimal:
    """Return the balance as a percentage of the limit (0 without a limit)."""
    if customer.credit_limit == 0:
        return Decimal("0")
    return customer.current_balance / customer.credit_limit * 100


def credit_status(utilization: Decimal) -> CreditStatus:
    if utilization >= 90:
        return CreditStatus.CRITICAL
    if utilization >= 70:
        return CreditStatus.WARNING
    return CreditStatus.GOOD


# ---------------------------------------------------------------------------
# Stock and balance primitives
# ---------------------------------------------------------------------------


def set_product_stock(
    context: RuntimeContext,
    product_id: str,
    new_stock: int,
    *,
    expected_stock: Optional[int] = None,
) -> data_manager.ProductRow:
    """Overwrite a product's stock level.

    When ``expected_stock`` is supplied the write only happens if the stored
    stock still equals it, turning a lost update into a detectable conflict.
    Without it the last writer wins.

    Args:
        context (RuntimeContext): Active runtime context.
        product_id (str): Product to update.
        new_stock (int): Replacement stock level.
        expected_stock (int | None): Stock the caller last observed.

    Returns:
        data_manager.ProductRow: The product as stored after the update.

    Raises:
        ValueError: If ``new_stock`` is negative.
        ConcurrentModificationError: If the stored stock differs from
            ``expected_stock``.
        StorageError: If the product no longer exists or the workbook cannot
            be saved.
    """
    stage = f"stock-write:{product_id}"
    require_nonnegative_stock(new_stock)
    current = find_product(context, product_id)
    if current is None:
        log.error("Stock update failed: product '%s' not found", product_id)
        raise StorageError(f"Product not found: {product_id}", stage=stage)
    if expected_stock is not None and current.stock != expected_stock:
        log.error(
            "Stock update conflict for '%s': expected %s, found %s",
            product_id,
            expected_stock,
            current.stock,
        )
        raise ConcurrentModificationError(
            f"Stock for product '{product_id}' changed from {expected_stock} to {current.stock}",
            expected=expected_stock,
            actual=current.stock,
            stage=stage,
        )
    try:
        with _write_through(context, "products", stage=stage):
            data_manager.update_product(context.workbook, product_id, field_values={"Stock": new_stock})
    except KeyError as exc:
        raise StorageError(str(exc), stage=stage) from exc
    log.info("Set stock for product '%s': %d -> %d", product_id, current.stock, new_stock)
    return get_product(context, product_id)


def set_customer_balance(
    context: RuntimeContext,
    customer_id: str,
    new_balance: MoneyLike,
    *,
    expected_balance: Optional[Decimal] = None,
) -> data_manager.CustomerRow:
    """Overwrite a customer's balance, rounded once to cents.

    ``expected_balance`` behaves like ``expected_stock`` in
    :func:`set_product_stock`.

    Raises:
        ConcurrentModificationError: If the stored balance differs from
            ``expected_balance``.
        StorageError: If the customer no longer exists or the workbook cannot
            be saved.
    """
    stage = "balance-write"
    balance = round_money(new_balance)
    current = find_customer(context, customer_id)
    if current is None:
        log.error("Balance update failed: customer '%s' not found", customer_id)
        raise StorageError(f"Customer not found: {customer_id}", stage=stage)
    if expected_balance is not None and current.current_balance != expected_balance:
        log.error(
            "Balance update conflict for '%s': expected %s, found %s",
            customer_id,
            expected_balance,
            current.current_balance,
        )
        raise ConcurrentModificationError(
            f"Balance for customer '{customer_id}' changed from {expected_balance} to {current.current_balance}",
            expected=expected_balance,
            actual=current.current_balance,
            stage=stage,
        )
    try:
        with _write_through(context, "customers", stage=stage):
            data_manager.update_customer(context.workbook, customer_id, field_values={"CurrentBalance": balance})
    except KeyError as exc:
        raise StorageError(str(exc), stage=stage) from exc
    log.info("Set balance for customer '%s': %s -> %s", customer_id, current.current_balance, balance)
    return get_customer(context, customer_id)


def adjust_stock(context: RuntimeContext, product_id: str, delta: int) -> data_manager.ProductRow:
    """Read-modify-write ``stock += delta``.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValueError: If the resulting stock would be negative.
    """
    product = get_product(context, product_id)
    return set_product_stock(context, product_id, product.stock + delta)


def adjust_balance(context: RuntimeContext, customer_id: str, delta: MoneyLike) -> data_manager.CustomerRow:
    """Read-modify-write ``current_balance += delta``.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    customer = get_customer(context, customer_id)
    return set_customer_balance(context, customer_id, customer.current_balance + to_money(delta))


def restock_product(context: RuntimeContext, session: Session, product_id: str, quantity: int) -> data_manager.ProductRow:
    """Add received units to a product's stock. Owners only.

    Raises:
        PermissionDeniedError: If ``session`` is not an owner.
        ValueError: If ``quantity`` is not a positive integer.
    """
    require_role(session, UserRole.OWNER)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError("Quantity must be greater than zero")
    return adjust_stock(context, product_id, quantity)


def record_customer_payment(
    context: RuntimeContext,
    customer_id: str,
    amount: MoneyLike,
    *,
    allow_negative: bool = False,
) -> data_manager.CustomerRow:
    """Reduce a customer's balance by a payment received.

    Raises:
        ValueError: If ``amount`` is not positive.
        BusinessRuleViolation: If the payment would leave a negative balance
            and ``allow_negative`` is not set.
    """
    payment = round_money(amount)
    require_positive_amount(payment, label="Payment")
    customer = get_customer(context, customer_id)
    new_balance = customer.current_balance - payment
    if new_balance < 0 and not allow_negative:
        log.warning("Payment of %s would leave customer '%s' with a negative balance", payment, customer_id)
        raise BusinessRuleViolation(
            f"Payment of ${payment} would leave a negative balance (${new_balance}) for customer '{customer.name}'"
        )
    return set_customer_balance(context, customer_id, new_balance, expected_balance=customer.current_balance)


def add_customer_charge(
    context: RuntimeContext,
    customer_id: str,
    amount: MoneyLike,
    *,
    allow_overage: bool = False,
) -> data_manager.CustomerRow:
    """Increase a customer's balance outside of a sale.

    Raises:
        ValueError: If ``amount`` is not positive.
        CreditLimitExceededError: If the new balance would exceed the limit
            and ``allow_overage`` is not set.
    """
    charge = round_money(amount)
    require_positive_amount(charge, label="Charge")
    customer = get_customer(context, customer_id)
    new_balance = customer.current_balance + charge
    if new_balance > customer.credit_limit and not allow_overage:
        log.warning("Charge of %s exceeds credit limit for customer '%s'", charge, customer_id)
        raise CreditLimitExceededError(
            customer_id=customer_id,
            current_balance=customer.current_balance,
            limit=customer.credit_limit,
            attempted_total=charge,
        )
    return set_customer_balance(context, customer_id, new_balance, expected_balance=customer.current_balance)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def create_sale(context: RuntimeContext, sale: data_manager.SaleRecord) -> data_manager.SaleRecord:
    """Persist a fully built sale (header and line items).

    Raises:
        StorageError: If the sale id already exists or the workbook cannot
            be saved. The error's ``stage`` is ``"sale-write"``.
    """
    stage = "sale-write"
    if sale.sale_id in _ensure_sales_cache(context)["by_id"]:
        raise StorageError(f"Sale id '{sale.sale_id}' already exists", stage=stage)
    with _write_through(context, "sales", stage=stage):
        data_manager.append_sale(context.workbook, sale)
    log.info("Persisted sale '%s' total=%s method=%s", sale.sale_id, sale.total, sale.payment_method)
    return sale


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRecord]:
    """Return every committed sale in the order they were recorded."""
    return list(_ensure_sales_cache(context)["all"])


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRecord:
    """Resolve a committed sale.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
    """
    try:
        return _ensure_sales_cache(context)["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc
