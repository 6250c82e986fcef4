"""Single-product stock operations.

Stock entry, reconciliation, transfers, imports and local purchases each
run as one transaction that updates a product's location balances and
writes a signed ``stockMovements`` row. Imports and local purchases also
write their supplier-linked document and hand the expenses they imply to
:mod:`inventory_ledger.expense_ledger` once the inventory commit succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import expense_ledger, log
from .constants import Collection, ExpenseCategory, MovementType
from .core_logic import RuntimeContext, parse_amount, require_location, require_writer, today
from .data_manager import round_stock
from .document_store import DocumentRef
from .errors import ValidationError
from .expense_ledger import ExpenseEvent
from .ledger_state import LedgerState
from .ledger_writers import build_stock_movement


@dataclass(frozen=True)
class ImportEntryCommand:
    """Goods received from an overseas supplier against a bill of entry."""

    product_id: str
    quantity: Any
    supplier_name: str
    location: Optional[str] = None
    date: str = ""
    be_number: str = ""
    bl_number: str = ""
    amount_paid: Any = 0
    payment_mode: str = "Bank Transfer"
    transport_cost: Any = 0
    transporter_name: str = ""
    transport_payment_type: str = ""
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LocalPurchaseCommand:
    """Goods bought from a domestic supplier against their invoice."""

    product_id: str
    quantity: Any
    supplier_name: str
    invoice_no: str = ""
    location: Optional[str] = None
    date: str = ""
    total_price: Any = 0
    amount_paid: Any = 0
    payment_mode: str = "Bank Transfer"
    transport_cost: Any = 0
    transporter_name: str = ""
    transport_payment_type: str = ""
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StockInReceipt:
    """Outcome of an import or local purchase."""

    entry_id: str
    movement_id: str
    events: Tuple[ExpenseEvent, ...] = ()
    expense_ids: Tuple[str, ...] = ()


def _freight_mode(payment_type: str) -> str:
    return "Bank Transfer" if payment_type == "Paid" else "CREDIT"


# ---------------------------------------------------------------------------
# Stock entry and reconciliation
# ---------------------------------------------------------------------------


def add_stock(
    context: RuntimeContext,
    *,
    product_id: str,
    location: str,
    quantity: Any,
    reason: Optional[str] = None,
) -> str:
    """Increase the balance of one location.

    Returns:
        str: Id of the stock movement row.

    Raises:
        ValidationError: If the quantity is not positive or the location is
            unusable.
        NotFoundError: If the product does not exist.
    """
    require_writer(context)
    location = require_location(context, location)
    amount = parse_amount(quantity, field="quantity", positive=True)
    store = context.store
    movement_ref = store.new_ref(Collection.STOCK_MOVEMENTS)

    def body(transaction):
        state = LedgerState(transaction, store)
        state.read_products([product_id])
        product = state.product(product_id)
        state.adjust_stock(product_id, location, amount)
        timestamp = store.server_timestamp()
        state.flush(timestamp)
        transaction.set(
            movement_ref,
            build_stock_movement(
                product_id=product_id,
                product_name=product.name,
                location=location,
                change_qty=amount,
                movement_type=MovementType.STOCK_ENTRY,
                reason=reason or "Stock Entry",
                user_id=context.caller.user_id,
                timestamp=timestamp,
            ),
        )

    store.run_transaction(body)
    log.info("Added %s of product '%s' at '%s'", amount, product_id, location)
    return movement_ref.id


def update_stock_level(
    context: RuntimeContext,
    *,
    product_id: str,
    location: str,
    new_quantity: Any,
    reason: Optional[str] = None,
) -> Optional[str]:
    """Set one location balance to an absolute, counted quantity.

    The movement row records the implied difference. Nothing is written when
    the balance already equals ``new_quantity``.

    Returns:
        str | None: Id of the stock movement row, or ``None`` when unchanged.

    Raises:
        ValidationError: If the target quantity is negative or not numeric.
        NotFoundError: If the product does not exist.
    """
    require_writer(context)
    location = require_location(context, location)
    try:
        target = parse_amount(new_quantity, field="stock quantity")
    except ValidationError as exc:
        log.warning("Rejected stock level for '%s' at '%s': %s", product_id, location, exc)
        raise
    store = context.store
    movement_ref = store.new_ref(Collection.STOCK_MOVEMENTS)

    def body(transaction):
        state = LedgerState(transaction, store)
        state.read_products([product_id])
        product = state.product(product_id)
        if state.balance(product_id, location) == round_stock(target):
            return None
        change = state.set_stock(product_id, location, target)
        timestamp = store.server_timestamp()
        state.flush(timestamp)
        transaction.set(
            movement_ref,
            build_stock_movement(
                product_id=product_id,
                product_name=product.name,
                location=location,
                change_qty=change,
                movement_type=MovementType.ADJUSTMENT,
                reason=reason or "Stock Correction",
                user_id=context.caller.user_id,
                timestamp=timestamp,
            ),
        )
        return movement_ref.id

    movement_id = store.run_transaction(body)
    if movement_id is None:
        log.info("Stock of '%s' at '%s' already at %s", product_id, location, target)
    else:
        log.info("Reconciled stock of '%s' at '%s' to %s", product_id, location, target)
    return movement_id


def transfer_stock(
    context: RuntimeContext,
    *,
    product_id: str,
    from_location: str,
    to_location: str,
    quantity: Any,
    product_name: Optional[str] = None,
) -> str:
    """Move stock of one product between two locations.

    The source must hold the full quantity; the negative-stock override does
    not apply to transfers.

    Returns:
        str: Id of the ``stockTransfers`` record.

    Raises:
        ValidationError: On a non-positive quantity, identical locations or
            insufficient stock at the source.
        NotFoundError: If the product does not exist.
    """
    require_writer(context)
    amount = parse_amount(quantity, field="transfer quantity", positive=True)
    source = require_location(context, from_location, label="Source location")
    destination = require_location(context, to_location, label="Destination location")
    if source == destination:
        raise ValidationError("Source and destination cannot be the same.")

    store = context.store
    transfer_ref = store.new_ref(Collection.STOCK_TRANSFERS)

    def body(transaction):
        state = LedgerState(transaction, store)
        state.read_products([product_id])
        name = product_name or state.product(product_id).name
        state.adjust_stock(product_id, source, -amount, label=name, strict=True)
        state.adjust_stock(product_id, destination, amount)
        timestamp = store.server_timestamp()
        state.flush(timestamp)
        transaction.set(
            transfer_ref,
            {
                "productId": product_id,
                "productName": name,
                "fromLocation": source,
                "toLocation": destination,
                "quantity": amount,
                "userId": context.caller.user_id,
                "createdAt": timestamp,
            },
        )
        for location, change, movement_type, reason in (
            (source, -amount, MovementType.TRANSFER_OUT, "Transfer Out"),
            (destination, amount, MovementType.TRANSFER_IN, "Transfer In"),
        ):
            transaction.set(
                store.new_ref(Collection.STOCK_MOVEMENTS),
                build_stock_movement(
                    product_id=product_id,
                    product_name=name,
                    location=location,
                    change_qty=change,
                    movement_type=movement_type,
                    reason=reason,
                    user_id=context.caller.user_id,
                    timestamp=timestamp,
                    reference_id=transfer_ref.id,
                ),
            )

    store.run_transaction(body)
    log.info("Transferred %s of '%s' from '%s' to '%s'", amount, product_id, source, destination)
    return transfer_ref.id


# ---------------------------------------------------------------------------
# Supplier receipts
# ---------------------------------------------------------------------------


def _receive(
    context: RuntimeContext,
    *,
    product_id: str,
    location: str,
    quantity: Decimal,
    entry_ref: DocumentRef,
    document: Dict[str, Any],
    movement_type: MovementType,
    reason: str,
) -> str:
    store = context.store
    movement_ref = store.new_ref(Collection.STOCK_MOVEMENTS)

    def body(transaction):
        state = LedgerState(transaction, store)
        state.read_products([product_id])
        product = state.product(product_id)
        state.adjust_stock(product_id, location, quantity)
        timestamp = store.server_timestamp()
        transaction.create(entry_ref, {**document, "userId": context.caller.user_id, "createdAt": timestamp})
        state.flush(timestamp)
        transaction.set(
            movement_ref,
            build_stock_movement(
                product_id=product_id,
                product_name=product.name,
                location=location,
                change_qty=quantity,
                movement_type=movement_type,
                reason=reason,
                user_id=context.caller.user_id,
                timestamp=timestamp,
                reference_id=entry_ref.id,
            ),
        )

    store.run_transaction(body)
    return movement_ref.id


def import_expense_events(
    *, entry_id: str, date: str, supplier_name: str, be_number: str, amount_paid: Decimal,
    payment_mode: str, transport_cost: Decimal, transporter_name: str, transport_payment_type: str,
) -> Tuple[ExpenseEvent, ...]:
    """Return the purchase and freight expenses implied by an import."""
    events: List[ExpenseEvent] = []
    if amount_paid > 0:
        events.append(
            ExpenseEvent(
                date=date,
                category=ExpenseCategory.PURCHASE,
                amount=amount_paid,
                description=f"IMPORT PURCHASE: {supplier_name} (BE: {be_number})".upper(),
                mode=payment_mode or "Bank Transfer",
                source_collection=Collection.IMPORTS,
                source_id=entry_id,
            )
        )
    if transport_cost > 0:
        events.append(
            ExpenseEvent(
                date=date,
                category=ExpenseCategory.LOGISTICS,
                amount=transport_cost,
                description=f"INWARD FREIGHT (IMPORT): {transporter_name} (BE: {be_number})".upper(),
                mode=_freight_mode(transport_payment_type),
                source_collection=Collection.IMPORTS,
                source_id=entry_id,
            )
        )
    return tuple(events)


def local_purchase_expense_events(
    *, entry_id: str, date: str, supplier_name: str, invoice_no: str, amount_paid: Decimal,
    payment_mode: str, total_price: Decimal, add_to_expense: bool, transport_cost: Decimal,
    transporter_name: str, transport_payment_type: str,
) -> Tuple[ExpenseEvent, ...]:
    """Return the purchase and freight expenses implied by a local purchase.

    When nothing was paid up front but ``add_to_expense`` is set, the full
    purchase price is booked as an overhead instead.
    """
    events: List[ExpenseEvent] = []
    if amount_paid > 0:
        events.append(
            ExpenseEvent(
                date=date,
                category=ExpenseCategory.PURCHASE,
                amount=amount_paid,
                description=f"LOCAL PURCHASE: {supplier_name} (INV: {invoice_no})".upper(),
                mode=payment_mode or "Bank Transfer",
                source_collection=Collection.LOCAL_PURCHASES,
                source_id=entry_id,
            )
        )
    elif add_to_expense and total_price > 0:
        events.append(
            ExpenseEvent(
                date=date,
                category=ExpenseCategory.OVERHEADS,
                amount=total_price,
                description=f"LOCAL PURCHASE (LEGACY): {supplier_name} (INV: {invoice_no})".upper(),
                source_collection=Collection.LOCAL_PURCHASES,
                source_id=entry_id,
            )
        )
    if transport_cost > 0:
        events.append(
            ExpenseEvent(
                date=date,
                category=ExpenseCategory.LOGISTICS,
                amount=transport_cost,
                description=f"INWARD FREIGHT (LOCAL): {transporter_name} (INV: {invoice_no})".upper(),
                mode=_freight_mode(transport_payment_type),
                source_collection=Collection.LOCAL_PURCHASES,
                source_id=entry_id,
            )
        )
    return tuple(events)


def add_import_entry(context: RuntimeContext, command: ImportEntryCommand) -> StockInReceipt:
    """Receive imported goods into a location and book the implied expenses.

    Bill of entry and bill of lading numbers are stored upper-cased. The
    location defaults to ``[Inventory] DefaultLocation``.

    Raises:
        ValidationError: On a non-positive quantity or invalid amounts.
        NotFoundError: If the product does not exist.
    """
    require_writer(context)
    location = require_location(context, command.location or context.settings.default_location)
    quantity = parse_amount(command.quantity, field="quantity", positive=True)
    amount_paid = parse_amount(command.amount_paid, field="amount paid")
    transport_cost = parse_amount(command.transport_cost, field="transport cost")
    be_number = str(command.be_number or "").upper()
    bl_number = str(command.bl_number or "").upper()
    date = command.date or today(context)

    entry_ref = context.store.new_ref(Collection.IMPORTS)
    document = {
        **dict(command.extra),
        "productId": command.product_id,
        "location": location,
        "quantity": quantity,
        "supplierName": command.supplier_name,
        "date": date,
        "beNumber": be_number,
        "blNumber": bl_number,
        "amountPaid": amount_paid,
        "paymentMode": command.payment_mode,
        "transportCost": transport_cost,
        "transporterName": command.transporter_name,
        "transportPaymentType": command.transport_payment_type,
    }
    movement_id = _receive(
        context,
        product_id=command.product_id,
        location=location,
        quantity=quantity,
        entry_ref=entry_ref,
        document=document,
        movement_type=MovementType.IMPORT,
        reason=f"Import BE: {be_number}",
    )
    log.info("Imported %s of '%s' into '%s' (BE %s)", quantity, command.product_id, location, be_number)

    events = import_expense_events(
        entry_id=entry_ref.id,
        date=date,
        supplier_name=command.supplier_name,
        be_number=be_number,
        amount_paid=amount_paid,
        payment_mode=command.payment_mode,
        transport_cost=transport_cost,
        transporter_name=command.transporter_name,
        transport_payment_type=command.transport_payment_type,
    )
    expense_ids = expense_ledger.record_expenses(context, events)
    return StockInReceipt(entry_id=entry_ref.id, movement_id=movement_id, events=events, expense_ids=expense_ids)


def add_local_purchase(
    context: RuntimeContext,
    command: LocalPurchaseCommand,
    *,
    add_to_expense: bool = False,
) -> StockInReceipt:
    """Receive locally purchased goods into a location and book expenses.

    Raises:
        ValidationError: On a non-positive quantity or invalid amounts.
        NotFoundError: If the product does not exist.
    """
    require_writer(context)
    location = require_location(context, command.location or context.settings.default_location)
    quantity = parse_amount(command.quantity, field="quantity", positive=True)
    total_price = parse_amount(command.total_price, field="total price")
    amount_paid = parse_amount(command.amount_paid, field="amount paid")
    transport_cost = parse_amount(command.transport_cost, field="transport cost")
    date = command.date or today(context)

    entry_ref = context.store.new_ref(Collection.LOCAL_PURCHASES)
    document = {
        **dict(command.extra),
        "productId": command.product_id,
        "location": location,
        "quantity": quantity,
        "supplierName": command.supplier_name,
        "invoiceNo": command.invoice_no,
        "date": date,
        "totalPrice": total_price,
        "amountPaid": amount_paid,
        "paymentMode": command.payment_mode,
        "transportCost": transport_cost,
        "transporterName": command.transporter_name,
        "transportPaymentType": command.transport_payment_type,
    }
    movement_id = _receive(
        context,
        product_id=command.product_id,
        location=location,
        quantity=quantity,
        entry_ref=entry_ref,
        document=document,
        movement_type=MovementType.LOCAL_PURCHASE,
        reason=f"Local Purchase Inv: {command.invoice_no}",
    )
    log.info("Received local purchase of %s '%s' into '%s'", quantity, command.product_id, location)

    events = local_purchase_expense_events(
        entry_id=entry_ref.id,
        date=date,
        supplier_name=command.supplier_name,
        invoice_no=command.invoice_no,
        amount_paid=amount_paid,
        payment_mode=command.payment_mode,
        total_price=total_price,
        add_to_expense=add_to_expense,
        transport_cost=transport_cost,
        transporter_name=command.transporter_name,
        transport_payment_type=command.transport_payment_type,
    )
    expense_ids = expense_ledger.record_expenses(context, events)
    return StockInReceipt(entry_id=entry_ref.id, movement_id=movement_id, events=events, expense_ids=expense_ids)


def list_stock_movements(context: RuntimeContext, product_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return stock movement rows, oldest first, optionally for one product."""
    filters = {"productId": product_id} if product_id else {}
    rows = [{"id": snapshot.id, **snapshot.to_dict()} for snapshot in context.store.query(Collection.STOCK_MOVEMENTS, **filters)]
    return sorted(rows, key=lambda row: str(row.get("createdAt") or ""))
