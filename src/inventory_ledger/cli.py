"""Command-line entry points for the inventory ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the requests consumed by the ledger engines.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end that wants to expose the
package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import (
    core_logic,
    invoice_ledger,
    ledger_writers,
    log,
    purchase_orders,
    recycle_bin,
    stock_ledger,
)
from .constants import Role
from .errors import LedgerError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the inventory ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--user", default=None, help="User id recorded on every change.")
    parser.add_argument(
        "--role",
        choices=[member.value for member in Role],
        default=None,
        help="Role of the acting user (defaults to [Defaults] Role).",
    )
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
    """Declare mutating CLI commands such as invoices and stock receipts."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "create-po": register_create_po_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
        "set-stock": register_set_stock_command(subparsers),
        "transfer": register_transfer_command(subparsers),
        "import": register_import_command(subparsers),
        "local-purchase": register_local_purchase_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "update-invoice": register_update_invoice_command(subparsers),
        "delete-invoice": register_delete_invoice_command(subparsers),
        "restore": register_restore_command(subparsers),
        "purge": register_purge_command(subparsers),
        "backfill-dispatches": register_backfill_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "recycle-bin": register_recycle_bin_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_invoice_arguments(parser: argparse.ArgumentParser, *, invoice_no_required: bool) -> None:
    parser.add_argument("--invoice-no", required=invoice_no_required)
    parser.add_argument("--from-location", required=True)
    parser.add_argument(
        "--line",
        dest="lines",
        action="append",
        required=True,
        metavar="PRODUCT_ID:QTY[:PRICE[:PO_ID]]",
        help="Invoice line; repeat for every product.",
    )
    parser.add_argument("--customer-id", default=None)
    parser.add_argument("--customer-name", default=None)
    parser.add_argument("--date", default=None, help="Invoice date (YYYY-MM-DD).")
    parser.add_argument("--tax-rate", default=None)
    parser.add_argument("--remarks", default=None)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product with no stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--hsn-code", default="")
        parser.add_argument("--low-stock-threshold", default="10")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_create_po_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-po``."""
    name = "create-po"
    help_text = "Create a customer purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--po-number", required=True)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--date", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            metavar="PRODUCT_ID:QTY[:RATE]",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_po)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""
    name = "add-stock"
    help_text = "Add stock to a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--location", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_stock)


def register_set_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-stock``."""
    name = "set-stock"
    help_text = "Reconcile a location to a counted quantity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--location", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_stock)


def register_transfer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfer``."""
    name = "transfer"
    help_text = "Move stock between two locations."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--from-location", required=True)
        parser.add_argument("--to-location", required=True)
        parser.add_argument("--quantity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import``."""
    name = "import"
    help_text = "Receive imported goods against a bill of entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--location", default=None)
        parser.add_argument("--date", default="")
        parser.add_argument("--be-number", default="")
        parser.add_argument("--bl-number", default="")
        parser.add_argument("--amount-paid", default="0")
        parser.add_argument("--payment-mode", default="Bank Transfer")
        parser.add_argument("--transport-cost", default="0")
        parser.add_argument("--transporter-name", default="")
        parser.add_argument("--transport-payment-type", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import)


def register_local_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``local-purchase``."""
    name = "local-purchase"
    help_text = "Receive goods bought from a local supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--invoice-no", default="")
        parser.add_argument("--location", default=None)
        parser.add_argument("--date", default="")
        parser.add_argument("--total-price", default="0")
        parser.add_argument("--amount-paid", default="0")
        parser.add_argument("--payment-mode", default="Bank Transfer")
        parser.add_argument("--transport-cost", default="0")
        parser.add_argument("--transporter-name", default="")
        parser.add_argument("--transport-payment-type", default="")
        parser.add_argument(
            "--add-to-expense",
            action="store_true",
            help="Book the total price as an overhead when nothing was paid.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_local_purchase)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Create an invoice and dispatch its goods."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_invoice_arguments(parser, invoice_no_required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def register_update_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-invoice``."""
    name = "update-invoice"
    help_text = "Replace the lines and header of an existing invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        _add_invoice_arguments(parser, invoice_no_required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_invoice)


def register_delete_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-invoice``."""
    name = "delete-invoice"
    help_text = "Delete an invoice into the recycle bin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--invoice-id")
        target.add_argument("--invoice-no")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_invoice)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Restore a deleted invoice from the recycle bin (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_purge_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purge``."""
    name = "purge"
    help_text = "Permanently delete a recycle bin entry (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purge)


def register_backfill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``backfill-dispatches``."""
    name = "backfill-dispatches"
    help_text = "Create missing dispatch rows for older invoices."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backfill)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display stock per product and location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only list products at or below their threshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_recycle_bin_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``recycle-bin``."""
    name = "recycle-bin"
    help_text = "List deleted invoices awaiting restore or purge."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recycle_bin_report, mutates=False)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    user: Optional[str] = None,
    role: Optional[str] = None,
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    if user is None and role is None:
        return context
    caller = core_logic.Caller(
        user_id=user or context.caller.user_id,
        role=Role(role) if role else context.caller.role,
    )
    return core_logic.RuntimeContext(
        settings=context.settings, store=context.store, caller=caller, workbook=context.workbook
    )


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


def parse_invoice_line(raw: str) -> invoice_ledger.InvoiceLine:
    """Parse ``PRODUCT_ID:QTY[:PRICE[:PO_ID]]`` into an invoice line.

    Raises:
        ValueError: If the product id or quantity part is missing.
    """
    parts = raw.split(":")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid --line value '{raw}'; expected PRODUCT_ID:QTY[:PRICE[:PO_ID]]")
    price = parts[2] if len(parts) > 2 and parts[2] else "0"
    po_id = parts[3] if len(parts) > 3 and parts[3] else None
    return invoice_ledger.InvoiceLine(product_id=parts[0], quantity=parts[1], price=price, purchase_order_id=po_id)


def translate_invoice_header(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into invoice header fields, skipping unset options."""
    header = {
        "invoiceNo": args.invoice_no,
        "customerId": args.customer_id,
        "customerName": args.customer_name,
        "date": args.date,
        "taxRate": args.tax_rate,
        "remarks": args.remarks,
    }
    return {key: value for key, value in header.items() if value is not None}


def translate_invoice_lines(args: argparse.Namespace) -> List[invoice_ledger.InvoiceLine]:
    return [parse_invoice_line(raw) for raw in args.lines]


def translate_po_lines(args: argparse.Namespace) -> List[purchase_orders.PurchaseOrderLineCommand]:
    """Translate ``PRODUCT_ID:QTY[:RATE]`` values into PO line commands."""
    commands = []
    for raw in args.lines:
        parts = raw.split(":")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid --line value '{raw}'; expected PRODUCT_ID:QTY[:RATE]")
        rate = parts[2] if len(parts) > 2 and parts[2] else "0"
        commands.append(purchase_orders.PurchaseOrderLineCommand(product_id=parts[0], total_qty=parts[1], rate=rate))
    return commands


def translate_import(args: argparse.Namespace) -> stock_ledger.ImportEntryCommand:
    """Translate CLI args into an import command object."""
    return stock_ledger.ImportEntryCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        supplier_name=args.supplier_name,
        location=args.location,
        date=args.date,
        be_number=args.be_number,
        bl_number=args.bl_number,
        amount_paid=args.amount_paid,
        payment_mode=args.payment_mode,
        transport_cost=args.transport_cost,
        transporter_name=args.transporter_name,
        transport_payment_type=args.transport_payment_type,
    )


def translate_local_purchase(args: argparse.Namespace) -> stock_ledger.LocalPurchaseCommand:
    """Translate CLI args into a local purchase command object."""
    return stock_ledger.LocalPurchaseCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        supplier_name=args.supplier_name,
        invoice_no=args.invoice_no,
        location=args.location,
        date=args.date,
        total_price=args.total_price,
        amount_paid=args.amount_paid,
        payment_mode=args.payment_mode,
        transport_cost=args.transport_cost,
        transporter_name=args.transporter_name,
        transport_payment_type=args.transport_payment_type,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product_id = core_logic.add_product(
        context,
        name=args.name,
        sku=args.sku,
        price=args.price,
        hsn_code=args.hsn_code,
        low_stock_threshold=args.low_stock_threshold,
    )
    print(product_id)
    return 0


def run_create_po(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    po_id = purchase_orders.create_purchase_order(
        context,
        po_number=args.po_number,
        customer_id=args.customer_id,
        date=args.date,
        lines=translate_po_lines(args),
    )
    print(po_id)
    return 0


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    stock_ledger.add_stock(
        context, product_id=args.product_id, location=args.location, quantity=args.quantity, reason=args.reason
    )
    return 0


def run_set_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    stock_ledger.update_stock_level(
        context, product_id=args.product_id, location=args.location, new_quantity=args.quantity, reason=args.reason
    )
    return 0


def run_transfer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transfer_id = stock_ledger.transfer_stock(
        context,
        product_id=args.product_id,
        from_location=args.from_location,
        to_location=args.to_location,
        quantity=args.quantity,
    )
    print(transfer_id)
    return 0


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the import workflow, including its expense side effects."""
    receipt = stock_ledger.add_import_entry(context, translate_import(args))
    print(receipt.entry_id)
    return 0


def run_local_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    receipt = stock_ledger.add_local_purchase(
        context, translate_local_purchase(args), add_to_expense=args.add_to_expense
    )
    print(receipt.entry_id)
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice creation workflow."""
    invoice_id = invoice_ledger.create_invoice(
        context, translate_invoice_header(args), translate_invoice_lines(args), args.from_location
    )
    print(invoice_id)
    return 0


def run_update_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice update workflow."""
    invoice_ledger.update_invoice(
        context, args.invoice_id, translate_invoice_header(args), translate_invoice_lines(args), args.from_location
    )
    return 0


def run_delete_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    invoice_id = args.invoice_id or invoice_ledger.find_invoice_id(context, args.invoice_no)
    entry_id = invoice_ledger.delete_invoice(context, invoice_id)
    print(entry_id)
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    invoice_id = recycle_bin.restore_invoice(context, args.entry_id)
    print(invoice_id)
    return 0


def run_purge(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    recycle_bin.purge_entry(context, args.entry_id)
    return 0


def run_backfill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    processed = ledger_writers.backfill_dispatches(context)
    print(f"Backfilled {processed} invoices.")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    records = core_logic.low_stock_report(context) if args.low else core_logic.list_products(context)
    for record in records:
        locations = ", ".join(f"{name}={qty}" for name, qty in sorted(record.locations.items()))
        print(f"{record.product_id}\t{record.name}\t{record.stock_qty}\t{locations}")
    return 0


def run_recycle_bin_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in recycle_bin.list_entries(context):
        invoice_no = (entry.get("data") or {}).get("invoiceNo", "")
        print(f"{entry['id']}\t{entry.get('type')}\t#{invoice_no}\t{entry.get('deletedAt')}\t{entry.get('deletedBy')}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, LedgerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None), user=args.user, role=args.role)
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
