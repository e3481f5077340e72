"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from grocery_pos import checkout, cli, core_logic
from grocery_pos.data_manager import SaleRecord, StorageError


WRITE_COMMANDS = {
    "add-product",
    "update-product",
    "delete-product",
    "restock",
    "add-customer",
    "update-customer",
    "delete-customer",
    "charge",
    "payment",
    "add-user",
    "sale",
}

READ_COMMANDS = {
    "products",
    "customers",
    "sales",
    "stats",
    "export-sales",
}

OWNER_LOGIN = ["--user", "admin", "--password", "admin123"]


def _run(config_file: Path, *args: str, login=OWNER_LOGIN) -> int:
    return cli.main(["--config", str(config_file), *login, *args])


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()

    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "grocery-pos"


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_unknown_raises(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="nope"), {})


def test_dispatch_command_calls_executor(context):
    execute = Mock(return_value=0)
    spec = cli.CommandSpec("demo", "demo", Mock(), execute)
    args = argparse.Namespace(command="demo")

    assert cli.dispatch_command(context, args, {"demo": spec}) == 0
    execute.assert_called_once_with(context, args)


@pytest.mark.parametrize("value,expected", [("P-1", ("P-1", 1)), ("P-1:3", ("P-1", 3)), ("a:b:2", ("a:b", 2))])
def test_parse_item(value, expected):
    assert cli.parse_item(value) == expected


@pytest.mark.parametrize("value", ["P-1:zero", "P-1:0", ":2"])
def test_parse_item_rejects_bad_values(value):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item(value)


def test_sale_parser_collects_items():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        ["--pin", "1234", "sale", "--item", "P-BAN:3", "--item", "P-APL", "--tendered", "5.00"]
    )

    assert args.items == [("P-BAN", 3), ("P-APL", 1)]
    assert args.payment == "cash"
    assert args.tendered == Decimal("5.00")
    assert args.pin == "1234"


def test_sales_user_filter_does_not_clash_with_login():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["--user", "admin", "--password", "x", "sales", "--user", "U-9"])

    assert args.username == "admin"
    assert args.filter_user_id == "U-9"


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def _partial_commit() -> checkout.PartialCommitError:
    sale = SaleRecord("S-1", "2024-01-01T00:00:00+00:00", (), Decimal("1"), Decimal("0"), Decimal("1"), "cash", None, "U")
    return checkout.PartialCommitError(sale, [checkout.StageFailure("stock-write:P-1", "disk")])


@pytest.mark.parametrize(
    "error,code",
    [
        (core_logic.BusinessRuleViolation("nope"), 2),
        (checkout.EmptyCartError(), 2),
        (core_logic.AuthenticationError("Invalid credentials"), 2),
        (FileNotFoundError("config.ini"), 3),
        (StorageError("locked", stage="sale-write"), 1),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_exit_codes(error, code):
    assert cli.handle_cli_error(error) == code


def test_partial_commit_has_its_own_exit_code():
    assert cli.handle_cli_error(_partial_commit()) == 4


# ---------------------------------------------------------------------------
# End-to-end commands
# ---------------------------------------------------------------------------


def test_missing_config_exits_with_3(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stats"]) == 3


def test_write_command_requires_login(config_file):
    assert _run(config_file, "add-customer", "--name", "Lisa", login=[]) == 2


def test_wrong_password_exits_with_2(config_file):
    assert _run(config_file, "add-customer", "--name", "Lisa", login=["--user", "admin", "--password", "nope"]) == 2


def test_product_lifecycle_through_cli(config_file, capsys):
    assert _run(config_file, "add-product", "--product-id", "P-BAN", "--name", "Bananas", "--price", "0.59", "--stock", "4") == 0
    assert _run(config_file, "restock", "--product-id", "P-BAN", "--quantity", "20") == 0
    assert _run(config_file, "update-product", "--product-id", "P-BAN", "--category", "Produce") == 0
    capsys.readouterr()

    assert _run(config_file, "products", "--category", "Produce") == 0
    output = capsys.readouterr().out
    assert "Bananas" in output
    assert "24" in output

    assert _run(config_file, "delete-product", "--product-id", "P-BAN") == 0
    assert _run(config_file, "delete-product", "--product-id", "P-BAN") == 2


def test_cash_sale_through_cli_prints_sale_and_change(config_file, capsys):
    _run(config_file, "add-product", "--product-id", "P-BAN", "--name", "Bananas", "--price", "0.59", "--stock", "10")
    _run(config_file, "add-product", "--product-id", "P-APL", "--name", "Apples", "--price", "1.29", "--stock", "5")
    capsys.readouterr()

    code = cli.main(
        ["--config", str(config_file), "--pin", "1234", "sale", "--item", "P-BAN:3", "--item", "P-APL", "--tendered", "5.00"]
    )

    output = capsys.readouterr().out
    assert code == 0
    document = json.loads(output[: output.rindex("}") + 1])
    assert document["total"] == "3.06"
    assert "customerId" not in document
    assert "Change: $1.94" in output


def test_credit_sale_over_limit_exits_with_2(config_file):
    _run(config_file, "add-product", "--product-id", "P-HAM", "--name", "Ham", "--price", "50", "--stock", "2")
    _run(config_file, "add-customer", "--customer-id", "C-1", "--name", "Nearly Maxed", "--credit-limit", "1000", "--balance", "980")

    assert _run(config_file, "sale", "--item", "P-HAM", "--payment", "credit", "--customer", "C-1") == 2
    assert _run(
        config_file, "sale", "--item", "P-HAM", "--payment", "credit", "--customer", "C-1", "--allow-overage"
    ) == 0


def test_customer_commands(config_file, capsys):
    assert _run(config_file, "add-customer", "--customer-id", "C-1", "--name", "Mike Johnson", "--credit-limit", "1000") == 0
    assert _run(config_file, "charge", "--customer-id", "C-1", "--amount", "320.25") == 0
    assert _run(config_file, "payment", "--customer-id", "C-1", "--amount", "20.25") == 0
    assert _run(config_file, "update-customer", "--customer-id", "C-1", "--phone", "555-0103") == 0
    capsys.readouterr()

    assert _run(config_file, "customers", "--search", "mike") == 0
    output = capsys.readouterr().out
    assert "$300.00" in output
    assert "Total outstanding: $300.00" in output

    assert _run(config_file, "delete-customer", "--customer-id", "C-1") == 0


def test_payment_below_zero_needs_allow_negative(config_file, capsys):
    _run(config_file, "add-customer", "--customer-id", "C-1", "--name", "Lisa Chen", "--credit-limit", "300", "--balance", "45.75")
    capsys.readouterr()

    assert _run(config_file, "payment", "--customer-id", "C-1", "--amount", "50") == 2
    assert _run(config_file, "payment", "--customer-id", "C-1", "--amount", "50", "--allow-negative") == 0
    assert "Lisa Chen balance: -$4.25" in capsys.readouterr().out


def test_assistant_cannot_add_products(config_file):
    assert _run(config_file, "add-user", "--username", "sam", "--new-password", "pw", "--role", "assistant") == 0

    code = _run(
        config_file,
        "add-product",
        "--name",
        "Milk",
        "--price",
        "3.49",
        login=["--user", "sam", "--password", "pw"],
    )
    assert code == 2


def test_sales_report_and_export(config_file, tmp_path, capsys):
    _run(config_file, "add-product", "--product-id", "P-BAN", "--name", "Bananas", "--price", "0.59", "--stock", "10")
    _run(config_file, "sale", "--item", "P-BAN:2", "--tendered", "2")
    capsys.readouterr()

    assert _run(config_file, "sales", "--range", "today", "--payment", "cash") == 0
    output = capsys.readouterr().out
    assert "Admin User" in output
    assert "Revenue: $1.18" in output

    destination = tmp_path / "out.csv"
    assert _run(config_file, "export-sales", "--output", str(destination)) == 0
    assert destination.read_text(encoding="utf-8").splitlines()[0].startswith("Date,Transaction ID")


def test_stats_command(config_file, capsys):
    assert cli.main(["--config", str(config_file), "stats"]) == 0

    output = capsys.readouterr().out
    assert "Shop: Test Grocery" in output
    assert "Products: 0" in output
