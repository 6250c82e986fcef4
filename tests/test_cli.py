"""Tests for the command-line wiring and its translation helpers."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path

import pytest

from inventory_ledger import cli, core_logic, invoice_ledger, recycle_bin
from inventory_ledger.constants import Role
from inventory_ledger.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

WRITE_COMMANDS = {
    "add-product",
    "create-po",
    "add-stock",
    "set-stock",
    "transfer",
    "import",
    "local-purchase",
    "invoice",
    "update-invoice",
    "delete-invoice",
    "restore",
    "purge",
    "backfill-dispatches",
}
READ_COMMANDS = {"stock", "recycle-bin"}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


# ---------------------------------------------------------------------------
# Parser wiring
# ---------------------------------------------------------------------------


def test_build_parser_declares_global_options():
    """The top-level parser knows the config path, user and role."""

    parser = cli.build_parser()
    args = parser.parse_args(["--config", "custom.ini", "--user", "ana", "--role", "admin"])

    assert parser.prog == "ledger-cli"
    assert args.config == Path("custom.ini")
    assert (args.user, args.role) == ("ana", "admin")


def test_build_parser_rejects_unknown_role():
    """Roles are limited to the known set."""

    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--role", "root"])


def test_configure_subcommands_registers_every_command():
    """All read and write commands become sub-parsers and table entries."""

    parser = cli.build_parser()
    table = cli.configure_subcommands(parser)

    assert _registered_choices(parser) == WRITE_COMMANDS | READ_COMMANDS
    assert set(table) == WRITE_COMMANDS | READ_COMMANDS
    assert {name for name, spec in table.items() if not spec.mutates} == READ_COMMANDS


def test_register_write_commands_returns_specs(subparsers_action, cli_parser):
    """Write commands are registered onto the supplied sub-parser action."""

    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS


def test_register_read_commands_returns_specs(subparsers_action):
    """Read commands are registered and flagged as non-mutating."""

    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    assert all(not spec.mutates for spec in specs.values())


def test_invoice_command_collects_repeated_lines(cli_parser):
    """Every --line flag is kept in order."""

    subparsers = cli_parser.add_subparsers(dest="command")
    spec = cli.register_invoice_command(subparsers)
    spec.register(subparsers)

    args = cli_parser.parse_args(
        ["invoice", "--invoice-no", "INV-1", "--from-location", "WH1", "--line", "p1:2", "--line", "p2:3:9.5:po1"]
    )

    assert args.command == "invoice"
    assert args.lines == ["p1:2", "p2:3:9.5:po1"]
    assert args.tax_rate is None


def test_delete_invoice_requires_exactly_one_target(cli_parser):
    """The invoice to delete is named by id or number, not both."""

    subparsers = cli_parser.add_subparsers(dest="command")
    spec = cli.register_delete_invoice_command(subparsers)
    spec.register(subparsers)

    assert cli_parser.parse_args(["delete-invoice", "--invoice-no", "INV-1"]).invoice_no == "INV-1"
    with pytest.raises(SystemExit):
        cli_parser.parse_args(["delete-invoice"])
    with pytest.raises(SystemExit):
        cli_parser.parse_args(["delete-invoice", "--invoice-id", "a", "--invoice-no", "b"])


def test_build_command_table_indexes_by_name(command_spec_iterable):
    """Specs are indexed by their command name."""

    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    """Two specs may not share a name."""

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_invokes_executor(command_table_entry):
    """Dispatch resolves the spec by command name and runs it."""

    name, spec = command_table_entry
    result = cli.dispatch_command(object(), argparse.Namespace(command=name), {name: spec})

    assert result == 0
    assert spec.execute.__dict__.get("called") is True


def test_dispatch_command_unknown_raises(command_table_entry):
    """Unknown or missing commands raise KeyError."""

    name, spec = command_table_entry
    with pytest.raises(KeyError):
        cli.dispatch_command(object(), argparse.Namespace(command="nope"), {name: spec})
    with pytest.raises(KeyError):
        cli.dispatch_command(object(), argparse.Namespace(), {name: spec})


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def test_parse_invoice_line_variants():
    """Price and PO id are optional trailing fields."""

    assert cli.parse_invoice_line("p1:12.5 mts") == invoice_ledger.InvoiceLine("p1", "12.5 mts", price="0")
    line = cli.parse_invoice_line("p1:3:9.5:po7")
    assert (line.price, line.purchase_order_id) == ("9.5", "po7")
    assert cli.parse_invoice_line("p1:3::po7").price == "0"


@pytest.mark.parametrize("raw", ["p1", ":3", "p1:"])
def test_parse_invoice_line_rejects_incomplete_values(raw):
    """Product id and quantity are mandatory."""

    with pytest.raises(ValueError):
        cli.parse_invoice_line(raw)


def test_translate_invoice_header_skips_unset_options():
    """Only supplied options reach the invoice header."""

    args = argparse.Namespace(
        invoice_no="INV-1", customer_id=None, customer_name="Buildwell", date=None, tax_rate="5", remarks=None
    )

    assert cli.translate_invoice_header(args) == {"invoiceNo": "INV-1", "customerName": "Buildwell", "taxRate": "5"}


def test_translate_po_lines_parses_rates():
    """PO lines default the rate to zero."""

    commands = cli.translate_po_lines(argparse.Namespace(lines=["p1:50:12.5", "p2:10"]))

    assert [(c.product_id, c.total_qty, c.rate) for c in commands] == [("p1", "50", "12.5"), ("p2", "10", "0")]
    with pytest.raises(ValueError):
        cli.translate_po_lines(argparse.Namespace(lines=["p1"]))


# ---------------------------------------------------------------------------
# Runtime helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_overrides_caller(monkeypatch, context):
    """--user and --role replace the configured caller."""

    seen = {}

    def fake_loader(path):
        seen["path"] = path
        return context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)

    result = cli.load_runtime_context(Path("x.ini"), user="ana", role="viewer")

    assert seen["path"] == Path("x.ini")
    assert result.caller == core_logic.Caller(user_id="ana", role=Role.VIEWER)
    assert result.store is context.store
    assert cli.load_runtime_context(Path("x.ini")) is context


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (ValidationError("bad"), 2),
        (NotFoundError("missing"), 2),
        (ConflictError("dup"), 2),
        (AuthorizationError("no"), 2),
        (FileNotFoundError("config"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    """Domain errors, missing files and other failures map to distinct codes."""

    assert cli.handle_cli_error(error) == code


def test_run_invoice_forwards_translated_request(monkeypatch, context, capsys):
    """The invoice runner passes the header, lines and location through."""

    captured = {}

    def fake_create(ctx, header, lines, location):
        captured.update(header=header, lines=lines, location=location)
        return "inv-123"

    monkeypatch.setattr(invoice_ledger, "create_invoice", fake_create)
    args = argparse.Namespace(
        invoice_no="INV-1",
        customer_id=None,
        customer_name=None,
        date="2025-01-02",
        tax_rate=None,
        remarks=None,
        lines=["p1:4:10"],
        from_location="WH1",
    )

    assert cli.run_invoice(context, args) == 0
    assert captured["header"] == {"invoiceNo": "INV-1", "date": "2025-01-02"}
    assert captured["lines"] == [invoice_ledger.InvoiceLine("p1", "4", price="10")]
    assert captured["location"] == "WH1"
    assert capsys.readouterr().out.strip() == "inv-123"


def test_run_delete_invoice_resolves_number(context, make_product, capsys):
    """Deleting by number looks the invoice up first."""

    product_id = make_product(stock={"WH1": 10})
    invoice_ledger.create_invoice(context, {"invoiceNo": "INV-5"}, [invoice_ledger.InvoiceLine(product_id, 1)], "WH1")

    assert cli.run_delete_invoice(context, argparse.Namespace(invoice_id=None, invoice_no="INV-5")) == 0

    entry_id = capsys.readouterr().out.strip()
    assert [entry["id"] for entry in recycle_bin.list_entries(context)] == [entry_id]


def test_run_stock_report_lists_products(context, make_product, capsys):
    """The stock report prints one tab-separated row per product."""

    product_id = make_product(stock={"WH1": 4, "WH2": 6})

    assert cli.run_stock_report(context, argparse.Namespace(low=False)) == 0

    assert capsys.readouterr().out.strip() == f"{product_id}\tCement\t10.0\tWH1=4.0, WH2=6.0"


# ---------------------------------------------------------------------------
# End-to-end through main()
# ---------------------------------------------------------------------------


def test_main_persists_mutations_to_workbook(config_file: Path, capsys):
    """Commands run through main() are saved and visible on reload."""

    base = ["--config", str(config_file)]
    assert cli.main([*base, "add-product", "--name", "Cement", "--sku", "CEM", "--price", "10"]) == 0
    product_id = capsys.readouterr().out.strip()
    assert cli.main([*base, "add-stock", "--product-id", product_id, "--location", "WH1", "--quantity", "100"]) == 0
    assert (
        cli.main(
            [*base, "invoice", "--invoice-no", "INV-1", "--from-location", "WH1", "--line", f"{product_id}:30:10"]
        )
        == 0
    )
    invoice_id = capsys.readouterr().out.strip()

    context = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(context, product_id).available_at("WH1") == Decimal("70")
    assert invoice_ledger.get_invoice(context, invoice_id)["invoiceNo"] == "INV-1"


def test_main_read_commands_do_not_persist(config_file: Path, monkeypatch):
    """Reports never write the workbook."""

    calls = []
    monkeypatch.setattr(cli, "persist_workbook", lambda context: calls.append(context))

    assert cli.main(["--config", str(config_file), "stock"]) == 0
    assert calls == []


def test_main_reports_authorization_failures(config_file: Path):
    """Viewers get the domain error exit code."""

    args = ["--config", str(config_file), "--role", "viewer", "add-product", "--name", "X", "--sku", "X", "--price", "1"]
    assert cli.main(args) == 2


def test_main_reports_missing_configuration(tmp_path: Path):
    """A missing config file maps to exit code 3."""

    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


def test_main_rejects_schema_mismatch(config_factory):
    """Workbooks with another schema version are refused."""

    bundle = config_factory(schema_version="0.9.0")
    assert cli.main(["--config", str(bundle.config_path), "stock"]) == 1
