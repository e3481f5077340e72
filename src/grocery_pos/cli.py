"""Command-line entry points for the grocery POS.

The CLI only wires argparse to the business layer: each sub-command turns its
arguments into calls on :mod:`grocery_pos.core_logic`,
:mod:`grocery_pos.checkout` or :mod:`grocery_pos.reports` and prints the
outcome. Every mutation is written through to the workbook by the business
layer itself, so there is no separate save step here.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import checkout, core_logic, log, reports
from .cart import Cart
from .constants import PaymentMethod, UserRole
from .data_manager import StorageError, sale_to_document
from .money import format_money, round_money, to_money


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="grocery-pos",
        description="Command-line tools for the grocery POS workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    parser.add_argument("--user", dest="username", default=None, help="Operator username.")
    parser.add_argument("--password", default=None, help="Operator password.")
    parser.add_argument("--pin", default=None, help="Operator PIN, instead of username and password.")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and restocks."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "restock": register_restock_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "update-customer": register_update_customer_command(subparsers),
        "delete-customer": register_delete_customer_command(subparsers),
        "charge": register_charge_command(subparsers),
        "payment": register_payment_command(subparsers),
        "add-user": register_add_user_command(subparsers),
        "sale": register_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "products": register_products_command(subparsers),
        "customers": register_customers_command(subparsers),
        "sales": register_sales_command(subparsers),
        "stats": register_stats_command(subparsers),
        "export-sales": register_export_sales_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item(value: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID[:QTY]`` into a product id and a quantity (default 1)."""
    product_id, separator, quantity_raw = value.rpartition(":")
    if not separator:
        product_id, quantity_raw = value, "1"
    if not product_id:
        raise argparse.ArgumentTypeError(f"Missing product id in item '{value}'")
    try:
        quantity = int(quantity_raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in item '{value}'") from exc
    if quantity < 1:
        raise argparse.ArgumentTypeError(f"Quantity must be at least 1 in item '{value}'")
    return product_id, quantity


def _add_product_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--name", required=required)
    parser.add_argument("--price", type=to_money, required=required)
    parser.add_argument("--description", default=None)
    parser.add_argument("--cost", type=to_money, default=None)
    parser.add_argument("--category", default=None)
    parser.add_argument("--barcode", default=None)


def _add_customer_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--name", required=required)
    parser.add_argument("--credit-limit", type=to_money, default=None)
    parser.add_argument("--phone", default=None)
    parser.add_argument("--email", default=None)
    parser.add_argument("--address", default=None)


def _add_sales_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--range", dest="date_range", choices=reports.DATE_RANGES, default="all")
    parser.add_argument("--start", type=date.fromisoformat, default=None, help="First day (YYYY-MM-DD) for --range custom.")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last day (YYYY-MM-DD) for --range custom.")
    parser.add_argument("--payment", choices=[member.value for member in PaymentMethod], default=None)
    parser.add_argument("--user", dest="filter_user_id", default=None, help="Only sales by this user id (owners only).")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--stock", type=int, default=0)
        _add_product_fields(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Change the details of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--stock", type=int, default=None)
        _add_product_fields(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalogue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add received units to a product's stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Open a customer account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--balance", type=to_money, default=None, help="Opening balance (default 0).")
        _add_customer_fields(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_update_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-customer``."""
    name = "update-customer"
    help_text = "Change a customer's profile or credit limit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        _add_customer_fields(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_customer)


def register_delete_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-customer``."""
    name = "delete-customer"
    help_text = "Close a customer account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_customer)


def register_charge_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``charge``."""
    name = "charge"
    help_text = "Add a charge to a customer's balance outside of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", type=to_money, required=True)
        parser.add_argument("--allow-overage", action="store_true", help="Permit exceeding the credit limit.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_charge)


def register_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payment``."""
    name = "payment"
    help_text = "Record a payment against a customer's balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", type=to_money, required=True)
        parser.add_argument(
            "--allow-negative", action="store_true", help="Permit a payment that leaves the balance below zero."
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payment)


def register_add_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-user``."""
    name = "add-user"
    help_text = "Register a new operator account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--username", dest="new_username", required=True)
        parser.add_argument("--new-password", required=True)
        parser.add_argument("--role", choices=[member.value for member in UserRole], default=UserRole.ASSISTANT.value)
        parser.add_argument("--full-name", default="")
        parser.add_argument("--new-pin", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_user)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Ring up a cart and complete the sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            default=[],
            metavar="PRODUCT_ID[:QTY]",
            help="Cart line; repeat for several products.",
        )
        parser.add_argument(
            "--payment",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--tendered", type=to_money, default=None, help="Cash handed over.")
        parser.add_argument("--customer", dest="customer_id", default=None, help="Customer id for credit sales.")
        parser.add_argument("--allow-overage", action="store_true", help="Permit exceeding the credit limit.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List products with their price and stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--low-stock", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    name = "customers"
    help_text = "List customer accounts and credit utilisation."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customers_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display the sales history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_sales_filters(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display dashboard figures."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report)


def register_export_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export-sales``."""
    name = "export-sales"
    help_text = "Export the (filtered) sales history to CSV."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_sales_filters(parser)
        parser.add_argument("--output", type=Path, default=None, help="Target CSV file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_sales)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def authenticate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.Session:
    """Open a session from ``--pin`` or ``--user``/``--password``.

    Raises:
        AuthenticationError: If no credentials were given or they are wrong.
    """
    pin = getattr(args, "pin", None)
    if pin:
        return core_logic.login_with_pin(context, pin)
    username = getattr(args, "username", None)
    password = getattr(args, "password", None)
    if username and password is not None:
        return core_logic.login(context, username, password)
    raise core_logic.AuthenticationError("Login required: pass --user and --password, or --pin")


def _changes(args: argparse.Namespace, fields: Iterable[str]) -> Dict[str, Any]:
    """Collect the optional update flags the operator actually supplied."""
    return {name: getattr(args, name) for name in fields if getattr(args, name, None) is not None}


def build_cart(context: core_logic.RuntimeContext, items: Sequence[Tuple[str, int]]) -> Cart:
    """Fill a cart from ``(product_id, quantity)`` pairs at current prices."""
    cart = Cart(tax_rate=context.settings.tax_rate)
    for product_id, quantity in items:
        cart.add_line(core_logic.get_product(context, product_id), quantity)
    return cart


def _print_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    materialized: List[List[str]] = [[str(value) for value in row] for row in rows]
    widths = [len(header) for header in headers]
    for row in materialized:
        widths = [max(width, len(value)) for width, value in zip(widths, row)]
    print("  ".join(header.ljust(width) for header, width in zip(headers, widths)))
    for row in materialized:
        print("  ".join(value.ljust(width) for value, width in zip(row, widths)))


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    session = authenticate(context, args)
    product = core_logic.add_product(
        context,
        session,
        name=args.name,
        price=args.price,
        stock=args.stock,
        product_id=args.product_id,
        description=args.description,
        cost=args.cost,
        category=args.category,
        barcode=args.barcode,
    )
    print(f"Added product {product.product_id}: {product.name} {format_money(product.price)} stock={product.stock}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    session = authenticate(context, args)
    changes = _changes(args, ("name", "price", "stock", "description", "cost", "category", "barcode"))
    product = core_logic.update_product(context, session, args.product_id, **changes)
    print(f"Updated product {product.product_id}: {product.name} {format_money(product.price)} stock={product.stock}")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    session = authenticate(context, args)
    core_logic.delete_product(context, session, args.product_id)
    print(f"Deleted product {args.product_id}")
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow via the BLL."""
    session = authenticate(context, args)
    product = core_logic.restock_product(context, session, args.product_id, args.quantity)
    print(f"Restocked {product.name}: stock={product.stock}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    authenticate(context, args)
    customer = core_logic.add_customer(
        context,
        name=args.name,
        credit_limit=args.credit_limit if args.credit_limit is not None else 0,
        current_balance=args.balance if args.balance is not None else 0,
        phone=args.phone,
        email=args.email,
        address=args.address,
        customer_id=args.customer_id,
    )
    print(f"Added customer {customer.customer_id}: {customer.name} limit={format_money(customer.credit_limit)}")
    return 0


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    authenticate(context, args)
    changes = _changes(args, ("name", "credit_limit", "phone", "email", "address"))
    customer = core_logic.update_customer(context, args.customer_id, **changes)
    print(f"Updated customer {customer.customer_id}: {customer.name} limit={format_money(customer.credit_limit)}")
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    authenticate(context, args)
    core_logic.delete_customer(context, args.customer_id)
    print(f"Deleted customer {args.customer_id}")
    return 0


def run_charge(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the manual charge workflow via the BLL."""
    authenticate(context, args)
    customer = core_logic.add_customer_charge(
        context, args.customer_id, args.amount, allow_overage=args.allow_overage
    )
    print(f"{customer.name} balance: {format_money(customer.current_balance)}")
    return 0


def run_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer payment workflow via the BLL."""
    authenticate(context, args)
    customer = core_logic.record_customer_payment(
        context, args.customer_id, args.amount, allow_negative=args.allow_negative
    )
    print(f"{customer.name} balance: {format_money(customer.current_balance)}")
    return 0


def run_add_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    session = authenticate(context, args)
    user = core_logic.add_user(
        context,
        session,
        username=args.new_username,
        password=args.new_password,
        role=UserRole(args.role),
        full_name=args.full_name,
        pin=args.new_pin,
    )
    print(f"Added {user.role} {user.username} ({user.user_id})")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow via the sale transaction engine."""
    session = authenticate(context, args)
    cart = build_cart(context, args.items)
    sale = checkout.complete_sale(
        context,
        cart,
        session,
        payment_method=args.payment,
        tendered=args.tendered,
        customer_id=args.customer_id,
        allow_credit_overage=args.allow_overage,
    )
    print(json.dumps(sale_to_document(sale), indent=2))
    if sale.payment_method == PaymentMethod.CASH.value and args.tendered is not None:
        print(f"Change: {format_money(round_money(args.tendered - sale.total))}")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product listing workflow."""
    products = core_logic.filter_products(
        context, query=args.search, category=args.category, low_stock=args.low_stock
    )
    _print_table(
        ("ID", "Name", "Category", "Price", "Stock"),
        (
            (product.product_id, product.name, product.category or "", format_money(product.price), product.stock)
            for product in products
        ),
    )
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer listing workflow."""
    customers = core_logic.search_customers(context, args.search) if args.search else core_logic.list_customers(context)
    rows = []
    for customer in customers:
        utilization = core_logic.credit_utilization(customer)
        rows.append(
            (
                customer.customer_id,
                customer.name,
                format_money(customer.current_balance),
                format_money(customer.credit_limit),
                f"{utilization:.1f}%",
                core_logic.credit_status(utilization).value,
            )
        )
    _print_table(("ID", "Name", "Balance", "Limit", "Used", "Status"), rows)
    overview = reports.customer_credit_overview(context)
    print(f"Total outstanding: {format_money(overview['total_outstanding'])}")
    return 0


def _filtered_sales(
    context: core_logic.RuntimeContext, session: core_logic.Session, args: argparse.Namespace
) -> List[Any]:
    return reports.filter_sales(
        context,
        session,
        date_range=args.date_range,
        start=args.start,
        end=args.end,
        payment_method=PaymentMethod(args.payment) if args.payment else None,
        user_id=args.filter_user_id,
    )


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales history workflow."""
    session = authenticate(context, args)
    sales = _filtered_sales(context, session, args)
    _print_table(reports.CSV_HEADER, reports.sales_csv_rows(context, sales)[1:])
    summary = reports.summarize_sales(sales)
    print(
        f"Revenue: {format_money(summary.revenue)}  Transactions: {summary.transactions}  "
        f"Items sold: {summary.items_sold}  Credit sales: {summary.credit_sales}"
    )
    return 0


def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard workflow."""
    stats = reports.dashboard_stats(context)
    print(f"Shop: {context.settings.shop_name}")
    print(f"Total sales: {format_money(stats['total_sales'])}")
    print(f"Today's sales: {format_money(stats['today_sales'])}")
    print(f"Products: {stats['total_products']}")
    print(f"Customers: {stats['total_customers']}")
    print(f"Low stock items: {stats['low_stock_count']}")
    return 0


def run_export_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the CSV export workflow."""
    session = authenticate(context, args)
    sales = _filtered_sales(context, session, args)
    destination = args.output if args.output is not None else Path(reports.default_export_name())
    path = reports.export_sales_csv(context, sales, destination)
    print(f"Exported {len(sales)} sale(s) to {path}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, checkout.PartialCommitError):
        log.error("%s", error)
        for failure in error.failures:
            log.error("  %s: %s", failure.stage, failure.reason)
        return 4
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, StorageError) and error.stage:
        log.error("%s (stage: %s)", error, error.stage)
        return 1
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
