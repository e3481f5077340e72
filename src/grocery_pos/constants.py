"""Enumerations shared across the grocery POS modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), checkout engine and CLI rely on a single source of truth
for payment methods, roles and worksheet layouts.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class PaymentMethod(str, Enum):
    """Enumerate supported payment methods for sales."""

    CASH = "cash"
    CREDIT = "credit"


class UserRole(str, Enum):
    """Enumerate operator roles recognised by the session layer."""

    OWNER = "owner"
    ASSISTANT = "assistant"


class CreditStatus(str, Enum):
    """Credit utilisation bands shown next to customer accounts."""

    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    USERS = "Users"


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "Name",
        "Description",
        "Price",
        "Cost",
        "Stock",
        "Category",
        "Barcode",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "Name",
        "Phone",
        "Email",
        "Address",
        "CreditLimit",
        "CurrentBalance",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "Timestamp",
        "Subtotal",
        "Tax",
        "Total",
        "PaymentMethod",
        "CustomerID",
        "UserID",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleID",
        "LineNo",
        "ProductID",
        "Name",
        "UnitPrice",
        "Quantity",
    ],
    SheetName.USERS.value: [
        "UserID",
        "Username",
        "PasswordHash",
        "PinHash",
        "Role",
        "FullName",
    ],
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PaymentMethod",
    "UserRole",
    "CreditStatus",
    "SheetName",
    "SHEET_COLUMNS",
]
