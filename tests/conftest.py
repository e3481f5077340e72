"""Shared pytest fixtures and utilities for grocery POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from grocery_pos import cli, constants, core_logic, data_manager  # noqa: E402
from grocery_pos.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
OWNER_USERNAME = "admin"
OWNER_PASSWORD = "admin123"
OWNER_PIN = "1234"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Sales]\n"
    "TaxRate = {tax_rate}\n"
    "LowStockThreshold = {low_stock_threshold}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized POS workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "grocery_pos.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Grocery",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        tax_rate: str = "0",
        low_stock_threshold: int = 10,
    ) -> ConfigBundle:
        bundle_id = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_id
        workbook_path = workbook_factory(subdir=bundle_id)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                tax_rate=tax_rate,
                low_stock_threshold=low_stock_threshold,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def owner_session(runtime_context: core_logic.RuntimeContext) -> core_logic.Session:
    """Session for the default owner account created with every workbook."""

    return core_logic.login(runtime_context, OWNER_USERNAME, OWNER_PASSWORD)


@pytest.fixture
def assistant_session() -> core_logic.Session:
    return core_logic.Session(
        user_id="U-ASSIST",
        username="clerk",
        role=constants.UserRole.ASSISTANT,
        full_name="Till Clerk",
    )


@pytest.fixture
def stocked_context(
    runtime_context: core_logic.RuntimeContext, owner_session: core_logic.Session
) -> core_logic.RuntimeContext:
    """Runtime context with a small catalogue and two credit customers."""

    core_logic.add_product(runtime_context, owner_session, product_id="P-BAN", name="Bananas", price="0.59", stock=10, category="Produce")
    core_logic.add_product(runtime_context, owner_session, product_id="P-APL", name="Apples", price="1.29", stock=5, category="Produce")
    core_logic.add_product(runtime_context, owner_session, product_id="P-BEEF", name="Ground Beef", price="6.49", stock=3, category="Meat")
    core_logic.add_customer(
        runtime_context,
        customer_id="C-MIKE",
        name="Mike Johnson",
        credit_limit=Decimal("1000.00"),
        current_balance=Decimal("320.25"),
    )
    core_logic.add_customer(
        runtime_context,
        customer_id="C-FULL",
        name="Nearly Maxed",
        credit_limit=Decimal("1000.00"),
        current_balance=Decimal("980.00"),
    )
    return runtime_context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="grocery-pos", description="Grocery POS")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "grocery_pos.xlsx",
        shop_name="Test Grocery",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[..., datetime]:
    """Patch a module's ``datetime`` so ``now`` returns a predetermined moment."""

    def _apply(module, moment: datetime) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(module, "datetime", _FixedDateTime)
        return moment

    return _apply
