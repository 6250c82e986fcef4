"""Shared pytest fixtures and utilities for inventory ledger tests."""

from __future__ import annotations

import argparse
import dataclasses
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Mapping, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from inventory_ledger import cli, constants, core_logic, data_manager, purchase_orders, stock_ledger  # noqa: E402
from inventory_ledger.document_store import DocumentStore  # noqa: E402
from inventory_ledger.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2025, 1, 15, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Inventory]\n"
    "Locations = {locations}\n"
    "DefaultLocation = WH1\n"
    "AllowNegativeStock = {allow_negative}\n\n"
    "[Invoice]\n"
    "DefaultTaxRate = 18\n\n"
    "[Defaults]\n"
    "UserId = {user_id}\n"
    "Role = {role}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


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
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        locations: str = "WH1, WH2",
        allow_negative: bool = False,
        user_id: str = "clerk",
        role: str = "staff",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                company_name=company_name,
                schema_version=schema_version,
                locations=locations,
                allow_negative="true" if allow_negative else "false",
                user_id=user_id,
                role=role,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
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


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="ledger-cli", description="Ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


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
# Ledger fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide configuration settings with two configured locations."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        company_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        locations=("WH1", "WH2"),
        default_location="WH1",
    )


@pytest.fixture
def store() -> DocumentStore:
    """Return an empty store with a frozen clock and no retry back-off."""

    return DocumentStore(backoff_base=0, clock=lambda: FIXED_NOW)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: DocumentStore) -> core_logic.RuntimeContext:
    """Assemble a staff runtime context around the in-memory store."""

    return core_logic.RuntimeContext(
        settings=settings,
        store=store,
        caller=core_logic.Caller(user_id="staff-1", role=constants.Role.STAFF),
    )


@pytest.fixture
def admin_context(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Same store as ``context`` but acting as an administrator."""

    return dataclasses.replace(context, caller=core_logic.Caller(user_id="admin-1", role=constants.Role.ADMIN))


@pytest.fixture
def viewer_context(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Same store as ``context`` but with read-only access."""

    return dataclasses.replace(context, caller=core_logic.Caller(user_id="viewer-1", role=constants.Role.VIEWER))


@pytest.fixture
def make_product(context: core_logic.RuntimeContext) -> Callable[..., str]:
    """Factory that registers a product and stocks the given locations."""

    def _make(
        name: str = "Cement",
        *,
        stock: Mapping[str, int | str] | None = None,
        price: str = "10",
        hsn_code: str = "2523",
    ) -> str:
        product_id = core_logic.add_product(context, name=name, sku=name[:3].upper(), price=price, hsn_code=hsn_code)
        for location, quantity in (stock or {}).items():
            stock_ledger.add_stock(context, product_id=product_id, location=location, quantity=quantity)
        return product_id

    return _make


@pytest.fixture
def make_purchase_order(context: core_logic.RuntimeContext) -> Callable[..., str]:
    """Factory that creates an open purchase order for ``(product_id, qty)`` lines."""

    def _make(lines: Sequence[tuple[str, int | str]], *, po_number: str = "PO-1", customer_id: str = "CUST-1") -> str:
        return purchase_orders.create_purchase_order(
            context,
            po_number=po_number,
            customer_id=customer_id,
            date="2025-01-02",
            lines=[
                purchase_orders.PurchaseOrderLineCommand(product_id=product_id, total_qty=qty, rate="12.5")
                for product_id, qty in lines
            ],
        )

    return _make


def stock_at(context: core_logic.RuntimeContext, product_id: str, location: str) -> Decimal:
    """Return the committed balance of one product location."""

    return core_logic.get_product(context, product_id).available_at(location)
