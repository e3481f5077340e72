"""Utility for initializing the grocery POS workbook.

The module doubles as a script (``grocery-pos-setup``) and as a library used
by tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import core_logic, data_manager
from .constants import SHEET_COLUMNS, SheetName, UserRole

CONFIG_FILE = "config.ini"

# Default owner account created with every new workbook
DEFAULT_OWNER: Mapping[str, str] = {
    "username": "admin",
    "password": "admin123",
    "pin": "1234",
    "full_name": "Admin User",
}

DEMO_PRODUCTS: Sequence[data_manager.ProductRow] = [
    data_manager.ProductRow("P-0001", "Bananas", Decimal("0.59"), 80, "Fresh yellow bananas", Decimal("0.35"), "Produce", "400000001"),
    data_manager.ProductRow("P-0002", "Apples", Decimal("1.29"), 60, "Red delicious apples", Decimal("0.80"), "Produce", "400000002"),
    data_manager.ProductRow("P-0003", "Carrots", Decimal("0.99"), 45, "Organic carrots 1lb", Decimal("0.60"), "Produce", "400000003"),
    data_manager.ProductRow("P-0004", "Milk", Decimal("3.49"), 35, "Whole milk 1 gallon", Decimal("2.20"), "Dairy", "400000005"),
    data_manager.ProductRow("P-0005", "Eggs", Decimal("2.99"), 40, "Large eggs dozen", Decimal("1.80"), "Dairy", "400000006"),
    data_manager.ProductRow("P-0006", "White Bread", Decimal("2.49"), 30, "Fresh white bread loaf", Decimal("1.40"), "Bakery", "400000009"),
    data_manager.ProductRow("P-0007", "Ground Beef", Decimal("6.49"), 18, "80/20 ground beef 1lb", Decimal("4.00"), "Meat", "400000012"),
    data_manager.ProductRow("P-0008", "Coffee", Decimal("7.99"), 8, "Ground coffee 12oz", Decimal("4.50"), "Beverages", "400000015"),
    data_manager.ProductRow("P-0009", "Pasta", Decimal("1.49"), 60, "Spaghetti 1lb", Decimal("0.80"), "Pantry", "400000020"),
    data_manager.ProductRow("P-0010", "Cereal", Decimal("3.49"), 5, "Corn flakes 18oz", Decimal("1.80"), "Pantry", "400000023"),
]

DEMO_CUSTOMERS: Sequence[data_manager.CustomerRow] = [
    data_manager.CustomerRow("C-0001", "Robert Wilson", Decimal("500.00"), Decimal("125.50"), "555-0101", "robert.wilson@email.com", "123 Main St"),
    data_manager.CustomerRow("C-0002", "Lisa Chen", Decimal("300.00"), Decimal("45.75"), "555-0102", "lisa.chen@email.com", "456 Oak Ave"),
    data_manager.CustomerRow("C-0003", "Mike Johnson", Decimal("1000.00"), Decimal("320.25"), "555-0103", "mike.johnson@email.com", "789 Pine Rd"),
    data_manager.CustomerRow("C-0004", "Sarah Davis", Decimal("200.00"), Decimal("89.99"), "555-0104", "sarah.davis@email.com", "321 Elm St"),
    data_manager.CustomerRow("C-0005", "David Martinez", Decimal("750.00"), Decimal("210.00"), "555-0105", "david.martinez@email.com", "654 Maple Dr"),
]


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return SetupSettings(data_file=settings.data_file)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    owner: Mapping[str, str] = DEFAULT_OWNER,
    overwrite: bool = False,
) -> Path:
    """Create the POS workbook at ``destination`` with a default owner.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    data_manager.append_user(
        workbook,
        core_logic.build_user(
            username=owner["username"],
            password=owner["password"],
            pin=owner.get("pin"),
            full_name=owner.get("full_name", ""),
            role=UserRole.OWNER,
        ),
    )

    workbook.save(destination)
    return destination


def seed_demo_data(workbook: Workbook) -> bool:
    """Load the demo catalogue and customers into an empty workbook.

    Returns:
        bool: ``True`` when data was added, ``False`` when the workbook already
            held products or customers and was left untouched.
    """

    has_products = bool(data_manager.read_records(workbook, SheetName.PRODUCTS.value))
    has_customers = bool(data_manager.read_records(workbook, SheetName.CUSTOMERS.value))
    if has_products or has_customers:
        return False

    for product in DEMO_PRODUCTS:
        data_manager.append_product(workbook, product)
    for customer in DEMO_CUSTOMERS:
        data_manager.append_customer(workbook, customer)
    return True


def run_from_config(config_path: Path, *, overwrite: bool = False, seed: bool = False) -> Path:
    """Create the workbook configured in ``config_path``, optionally seeded."""

    settings = load_settings(config_path)
    output = create_master_workbook(settings.data_file, overwrite=overwrite)
    if seed:
        workbook = data_manager.open_workbook(output)
        if seed_demo_data(workbook):
            data_manager.save_workbook(workbook, output)
    return output


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the grocery POS data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Load the demo grocery catalogue and customers.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Grocery POS Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, seed=args.seed)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created workbook at '{output_path}'.")
    print(f"Log in as '{DEFAULT_OWNER['username']}' and change the default password.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
