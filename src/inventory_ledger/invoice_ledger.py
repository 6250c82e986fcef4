"""Invoice engine: create, update and delete invoices atomically.

Each operation runs as exactly one store transaction that keeps product
location balances, purchase order fulfillments and the derived invoice rows
(items, stock movements and dispatches) consistent with each other. Planning
reads outside the transaction are allowed but never trusted: every product
and purchase order is re-read inside the transaction before it is changed.

Invoice numbers are unique. A query rejects duplicates early, and an
``invoiceNumbers/<invoiceNo>`` index document created in the same transaction
as the invoice makes a concurrent duplicate fail at commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import Collection, MovementType, RecycleType
from .core_logic import (
    RuntimeContext,
    parse_amount,
    parse_quantity,
    require_location,
    require_writer,
    today,
)
from .data_manager import round_stock, to_decimal
from .document_store import DocumentRef, DocumentSnapshot
from .errors import ConflictError, NotFoundError, ValidationError
from .ledger_state import LedgerState
from .ledger_writers import LineSnapshot, items_summary, snapshot_from_item, write_invoice_rows


# Header keys owned by the engine; caller-supplied values for them are ignored.
RESERVED_HEADER_KEYS = frozenset(
    {
        "invoiceNo",
        "fromLocation",
        "taxRate",
        "itemsSummary",
        "userId",
        "createdAt",
        "updatedAt",
        "updatedBy",
        "items",
        "movements",
        "dispatches",
    }
)

StockKey = Tuple[str, str]


@dataclass(frozen=True)
class InvoiceLine:
    """One requested line of an invoice as entered by the caller.

    ``quantity`` may be text such as ``"12.5 mts"``; it is sanitized before
    validation.
    """

    product_id: str
    quantity: Any
    price: Any = Decimal("0")
    name: str = ""
    hsn_code: str = ""
    purchase_order_id: Optional[str] = None
    bags: Any = 0
    bag_weight: Any = 0


@dataclass(frozen=True)
class LineChange:
    before: LineSnapshot
    after: LineSnapshot


@dataclass(frozen=True)
class InvoiceDiff:
    """Before/after comparison of an invoice's lines.

    Old and new lines are paired by product and purchase order in order of
    appearance. ``stock_deltas`` holds the net signed change per
    ``(product_id, location)``: old quantities are credited back at the old
    location and new quantities debited at the new one.
    """

    old_location: str
    new_location: str
    added: Tuple[LineSnapshot, ...] = ()
    removed: Tuple[LineSnapshot, ...] = ()
    changed_quantity: Tuple[LineChange, ...] = ()
    changed_location: Tuple[LineChange, ...] = ()
    unchanged: Tuple[LineChange, ...] = ()
    stock_deltas: Mapping[StockKey, Decimal] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not (self.added or self.removed or self.changed_quantity or self.changed_location)


def compute_invoice_diff(
    old_lines: Sequence[LineSnapshot],
    old_location: str,
    new_lines: Sequence[LineSnapshot],
    new_location: str,
) -> InvoiceDiff:
    """Pair old and new lines and compute the net stock delta map."""
    pending: Dict[Tuple[str, Optional[str]], List[LineSnapshot]] = {}
    for line in old_lines:
        pending.setdefault((line.product_id, line.purchase_order_id), []).append(line)

    added: List[LineSnapshot] = []
    changed_quantity: List[LineChange] = []
    changed_location: List[LineChange] = []
    unchanged: List[LineChange] = []
    for line in new_lines:
        candidates = pending.get((line.product_id, line.purchase_order_id))
        if not candidates:
            added.append(line)
            continue
        change = LineChange(before=candidates.pop(0), after=line)
        if old_location != new_location:
            changed_location.append(change)
        elif change.before.quantity != change.after.quantity:
            changed_quantity.append(change)
        else:
            unchanged.append(change)
    removed = [line for candidates in pending.values() for line in candidates]

    deltas: Dict[StockKey, Decimal] = {}
    for line in old_lines:
        key = (line.product_id, old_location)
        deltas[key] = deltas.get(key, Decimal("0")) + line.quantity
    for line in new_lines:
        key = (line.product_id, new_location)
        deltas[key] = deltas.get(key, Decimal("0")) - line.quantity
    stock_deltas = {key: round_stock(delta) for key, delta in deltas.items() if round_stock(delta) != 0}

    return InvoiceDiff(
        old_location=old_location,
        new_location=new_location,
        added=tuple(added),
        removed=tuple(removed),
        changed_quantity=tuple(changed_quantity),
        changed_location=tuple(changed_location),
        unchanged=tuple(unchanged),
        stock_deltas=stock_deltas,
    )


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _require_invoice_no(header: Mapping[str, Any]) -> str:
    invoice_no = str(header.get("invoiceNo") or "").strip()
    if not invoice_no:
        raise ValidationError("Invoice Number is required.")
    return invoice_no


def _resolve_tax_rate(context: RuntimeContext, header: Mapping[str, Any], fallback: Any = None) -> Decimal:
    raw = header.get("taxRate")
    if raw is None or raw == "":
        raw = fallback
    if raw is None or raw == "":
        return context.settings.default_tax_rate
    try:
        rate = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid tax rate: {raw}") from exc
    if not rate.is_finite() or rate < 0:
        raise ValidationError(f"Invalid tax rate: {raw}")
    return rate


def _fulfillment_date(context: RuntimeContext, header: Mapping[str, Any]) -> str:
    return str(header.get("date") or today(context))


def _parse_lines(lines: Sequence[InvoiceLine]) -> List[LineSnapshot]:
    if not lines:
        raise ValidationError("An invoice needs at least one line item")
    parsed = []
    for line in lines:
        label = line.name or line.product_id or "Unknown"
        if not line.product_id:
            raise ValidationError(f"Product is required for line: {label}")
        parsed.append(
            LineSnapshot(
                product_id=line.product_id,
                product_name=line.name or "",
                quantity=parse_quantity(line.quantity, label=label),
                price=parse_amount(line.price, field=f"price for {label}"),
                hsn_code=line.hsn_code or "",
                purchase_order_id=line.purchase_order_id or None,
                bags=parse_amount(line.bags, field=f"bags for {label}"),
                bag_weight=parse_amount(line.bag_weight, field=f"bag weight for {label}"),
            )
        )
    return parsed


def _complete_line(state: LedgerState, line: LineSnapshot) -> LineSnapshot:
    product = state.product(line.product_id)
    return replace(
        line,
        product_name=line.product_name or product.name,
        hsn_code=line.hsn_code or product.hsn_code,
    )


def _number_ref(context: RuntimeContext, invoice_no: str) -> DocumentRef:
    return context.store.ref(Collection.INVOICE_NUMBERS, invoice_no)


def _ensure_number_free(context: RuntimeContext, invoice_no: str) -> None:
    if context.store.count(Collection.INVOICES, invoiceNo=invoice_no):
        log.warning("Rejected duplicate invoice number '%s'", invoice_no)
        raise ConflictError(f'Invoice Number "{invoice_no}" already exists.')


def _claim_number(transaction, context: RuntimeContext, invoice_no: str) -> DocumentRef:
    ref = _number_ref(context, invoice_no)
    if transaction.get(ref).exists:
        raise ConflictError(f'Invoice Number "{invoice_no}" already exists.')
    return ref


def _header_fields(header: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in header.items() if key not in RESERVED_HEADER_KEYS}


def _load_invoice(context: RuntimeContext, invoice_id: str) -> DocumentSnapshot:
    snapshot = context.store.get(context.store.ref(Collection.INVOICES, invoice_id))
    if not snapshot.exists:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise NotFoundError(f"Invoice not found: {invoice_id}")
    return snapshot


def _related_rows(context: RuntimeContext, invoice_id: str) -> Dict[Collection, List[DocumentSnapshot]]:
    store = context.store
    return {
        Collection.INVOICE_ITEMS: store.query(Collection.INVOICE_ITEMS, invoiceId=invoice_id),
        Collection.STOCK_MOVEMENTS: store.query(Collection.STOCK_MOVEMENTS, relatedInvoiceId=invoice_id),
        Collection.DISPATCHES: store.query(Collection.DISPATCHES, invoiceId=invoice_id),
    }


def _reread(transaction, planned: DocumentSnapshot, rows: Mapping[Collection, Sequence[DocumentSnapshot]]) -> DocumentSnapshot:
    """Re-read an invoice and its rows, failing if they moved since planning."""
    current = transaction.get(planned.ref)
    if not current.exists:
        raise NotFoundError(f"Invoice not found: {planned.id}")
    if current.version != planned.version:
        raise ConflictError(f"Invoice {planned.id} was modified concurrently; reload and retry")
    for snapshots in rows.values():
        for row in snapshots:
            if not transaction.get(row.ref).exists:
                raise ConflictError(f"Invoice {planned.id} was modified concurrently; reload and retry")
    return current


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def create_invoice(
    context: RuntimeContext,
    header: Mapping[str, Any],
    lines: Sequence[InvoiceLine],
    from_location: str,
) -> str:
    """Create an invoice, debiting stock and fulfilling purchase orders.

    Args:
        context: Runtime context carrying the store and the caller.
        header: Invoice metadata; ``invoiceNo`` is required. Optional keys
            include ``customerId``, ``customerName``, ``date``, ``taxRate``,
            ``transport`` and ``remarks``.
        lines: Requested invoice lines.
        from_location: Location the goods are dispatched from.

    Returns:
        str: Id of the new invoice document.

    Raises:
        AuthorizationError: If the caller is read-only.
        ValidationError: On missing fields, bad quantities, insufficient
            stock or PO over-fulfillment.
        NotFoundError: If a product or purchase order does not exist.
        ConflictError: If the invoice number is taken or the transaction
            keeps losing write conflicts.
    """
    require_writer(context)
    location = require_location(context, from_location, label="Dispatch location")
    invoice_no = _require_invoice_no(header)
    requested = _parse_lines(lines)
    tax_rate = _resolve_tax_rate(context, header)
    fulfillment_date = _fulfillment_date(context, header)
    _ensure_number_free(context, invoice_no)

    store = context.store
    user_id = context.caller.user_id
    labels = {line.product_id: line.product_name or line.product_id for line in requested}

    def body(transaction):
        number_ref = _claim_number(transaction, context, invoice_no)
        state = LedgerState(transaction, store, allow_negative_stock=context.settings.allow_negative_stock)
        state.read_orders(line.purchase_order_id for line in requested if line.purchase_order_id)
        state.read_products((line.product_id for line in requested), labels=labels)

        resolved = []
        for line in requested:
            line = _complete_line(state, line)
            if line.purchase_order_id:
                state.fulfil(
                    line.purchase_order_id,
                    line.product_id,
                    line.quantity,
                    invoice_no,
                    fulfillment_date,
                    label=line.product_name,
                )
            state.adjust_stock(line.product_id, location, -line.quantity, label=line.product_name)
            resolved.append(line)

        timestamp = store.server_timestamp()
        invoice_ref = store.new_ref(Collection.INVOICES)
        document = {
            **_header_fields(header),
            "invoiceNo": invoice_no,
            "fromLocation": location,
            "taxRate": tax_rate,
            "itemsSummary": items_summary(resolved),
            "userId": user_id,
            "createdAt": timestamp,
        }
        transaction.create(number_ref, {"invoiceId": invoice_ref.id, "createdAt": timestamp})
        state.flush(timestamp)
        transaction.create(invoice_ref, document)
        write_invoice_rows(
            transaction,
            store,
            invoice_id=invoice_ref.id,
            header=document,
            lines=resolved,
            location=location,
            tax_rate=tax_rate,
            movement_type=MovementType.INVOICE,
            user_id=user_id,
            timestamp=timestamp,
        )
        return invoice_ref.id

    invoice_id = store.run_transaction(body)
    log.info("Created invoice #%s (%s) with %d lines from '%s'", invoice_no, invoice_id, len(requested), location)
    return invoice_id


def update_invoice(
    context: RuntimeContext,
    invoice_id: str,
    header: Mapping[str, Any],
    lines: Sequence[InvoiceLine],
    from_location: str,
) -> InvoiceDiff:
    """Replace an invoice's lines and header by reversing and re-applying.

    The stored items are loaded first and compared with ``lines`` to build an
    :class:`InvoiceDiff`. One transaction then applies the net stock delta
    per product and location, reverses every old PO fulfillment before
    recording the new ones, replaces all item, movement and dispatch rows
    (new movements are typed ``INVOICE_EDIT``) and updates the header.

    Returns:
        InvoiceDiff: The comparison that was applied.

    Raises:
        AuthorizationError: If the caller is read-only.
        ValidationError: On bad input, insufficient stock or PO
            over-fulfillment.
        NotFoundError: If the invoice, a new product or a new purchase order
            does not exist.
        ConflictError: If the new invoice number is taken or the invoice
            changed after it was loaded.
    """
    require_writer(context)
    location = require_location(context, from_location, label="Dispatch location")
    requested = _parse_lines(lines)

    planned = _load_invoice(context, invoice_id)
    old_invoice = planned.to_dict()
    rows = _related_rows(context, invoice_id)
    old_lines = [snapshot_from_item(item.to_dict()) for item in rows[Collection.INVOICE_ITEMS]]
    old_location = str(old_invoice.get("fromLocation") or "")
    old_no = str(old_invoice.get("invoiceNo") or "")
    new_no = str(header.get("invoiceNo") or old_no).strip()
    if not new_no:
        raise ValidationError("Invoice Number is required.")
    if new_no != old_no:
        _ensure_number_free(context, new_no)

    tax_rate = _resolve_tax_rate(context, header, fallback=old_invoice.get("taxRate"))
    fulfillment_date = _fulfillment_date(context, {**old_invoice, **header})
    diff = compute_invoice_diff(old_lines, old_location, requested, location)
    log.debug(
        "Invoice %s diff: %d added, %d removed, %d quantity changes, %d location changes",
        invoice_id,
        len(diff.added),
        len(diff.removed),
        len(diff.changed_quantity),
        len(diff.changed_location),
    )

    store = context.store
    user_id = context.caller.user_id
    new_product_ids = {line.product_id for line in requested}
    new_po_ids = {line.purchase_order_id for line in requested if line.purchase_order_id}
    labels = {line.product_id: line.product_name or line.product_id for line in requested}

    def body(transaction):
        _reread(transaction, planned, rows)
        old_number_ref = _number_ref(context, old_no)
        old_number = transaction.get(old_number_ref)
        new_number_ref = _claim_number(transaction, context, new_no) if new_no != old_no else None

        state = LedgerState(transaction, store, allow_negative_stock=context.settings.allow_negative_stock)
        state.read_orders(new_po_ids)
        state.read_orders(
            (line.purchase_order_id for line in old_lines if line.purchase_order_id and line.purchase_order_id not in new_po_ids),
            required=False,
        )
        state.read_products(new_product_ids, labels=labels)
        state.read_products(
            (line.product_id for line in old_lines if line.product_id not in new_product_ids),
            required=False,
        )

        for line in old_lines:
            if line.purchase_order_id and state.has_order(line.purchase_order_id):
                state.unfulfil(line.purchase_order_id, line.product_id, line.quantity, old_no)

        resolved = []
        for line in requested:
            line = _complete_line(state, line)
            if line.purchase_order_id:
                state.fulfil(
                    line.purchase_order_id,
                    line.product_id,
                    line.quantity,
                    new_no,
                    fulfillment_date,
                    label=line.product_name,
                )
            resolved.append(line)

        for (product_id, stock_location), delta in diff.stock_deltas.items():
            if not state.has_product(product_id):
                log.warning("Skipping stock credit of %s for missing product '%s'", delta, product_id)
                continue
            state.adjust_stock(product_id, stock_location, delta, label=labels.get(product_id, ""))

        timestamp = store.server_timestamp()
        for snapshots in rows.values():
            for row in snapshots:
                transaction.delete(row.ref)
        if new_number_ref is not None:
            if old_number.exists and (old_number.data or {}).get("invoiceId") == invoice_id:
                transaction.delete(old_number_ref)
            transaction.create(new_number_ref, {"invoiceId": invoice_id, "createdAt": timestamp})
        elif not old_number.exists:
            transaction.set(old_number_ref, {"invoiceId": invoice_id, "createdAt": timestamp})

        state.flush(timestamp)
        fields = {
            **_header_fields(header),
            "invoiceNo": new_no,
            "fromLocation": location,
            "taxRate": tax_rate,
            "itemsSummary": items_summary(resolved),
            "updatedAt": timestamp,
            "updatedBy": user_id,
        }
        transaction.update(planned.ref, fields)
        write_invoice_rows(
            transaction,
            store,
            invoice_id=invoice_id,
            header={**old_invoice, **fields},
            lines=resolved,
            location=location,
            tax_rate=tax_rate,
            movement_type=MovementType.INVOICE_EDIT,
            user_id=user_id,
            timestamp=timestamp,
        )

    store.run_transaction(body)
    log.info("Updated invoice #%s (%s)", new_no, invoice_id)
    return diff


def delete_invoice(context: RuntimeContext, invoice_id: str) -> str:
    """Delete an invoice and move a full snapshot to the recycle bin.

    Stock is credited back at the location each item was dispatched from and
    every PO fulfillment recorded by the invoice is reversed. Products or
    purchase orders that no longer exist are skipped with a warning.

    Returns:
        str: Id of the recycle bin entry holding the snapshot.

    Raises:
        AuthorizationError: If the caller is read-only.
        NotFoundError: If the invoice does not exist.
        ConflictError: If the invoice changed after it was loaded.
    """
    require_writer(context)
    planned = _load_invoice(context, invoice_id)
    invoice = planned.to_dict()
    rows = _related_rows(context, invoice_id)
    items = [item.to_dict() for item in rows[Collection.INVOICE_ITEMS]]
    invoice_no = str(invoice.get("invoiceNo") or "")
    default_location = str(invoice.get("fromLocation") or "")

    store = context.store

    def body(transaction):
        _reread(transaction, planned, rows)
        number_ref = _number_ref(context, invoice_no)
        number = transaction.get(number_ref) if invoice_no else None

        state = LedgerState(transaction, store)
        state.read_products((str(item.get("productId")) for item in items), required=False)
        state.read_orders((item["purchaseOrderId"] for item in items if item.get("purchaseOrderId")), required=False)

        for item in items:
            product_id = str(item.get("productId"))
            quantity = to_decimal(item.get("quantity"))
            if state.has_product(product_id):
                state.adjust_stock(product_id, item.get("location") or default_location, quantity, enforce=False)
            po_id = item.get("purchaseOrderId")
            if po_id and state.has_order(po_id):
                state.unfulfil(po_id, product_id, quantity, invoice_no)

        timestamp = store.server_timestamp()
        snapshot = {
            **invoice,
            "items": [{"id": row.id, **row.to_dict()} for row in rows[Collection.INVOICE_ITEMS]],
            "movements": [{"id": row.id, **row.to_dict()} for row in rows[Collection.STOCK_MOVEMENTS]],
            "dispatches": [{"id": row.id, **row.to_dict()} for row in rows[Collection.DISPATCHES]],
        }
        entry_ref = store.new_ref(Collection.RECYCLE_BIN)
        transaction.create(
            entry_ref,
            {
                "originalId": invoice_id,
                "type": RecycleType.INVOICE.value,
                "deletedAt": timestamp,
                "deletedBy": context.caller.user_id,
                "data": snapshot,
            },
        )
        state.flush(timestamp)
        for snapshots in rows.values():
            for row in snapshots:
                transaction.delete(row.ref)
        transaction.delete(planned.ref)
        if number is not None and number.exists and (number.data or {}).get("invoiceId") == invoice_id:
            transaction.delete(number_ref)
        return entry_ref.id

    entry_id = store.run_transaction(body)
    log.info("Deleted invoice #%s (%s) into recycle bin entry %s", invoice_no, invoice_id, entry_id)
    return entry_id


def get_invoice(context: RuntimeContext, invoice_id: str) -> Dict[str, Any]:
    """Return the invoice document with its id under ``"id"``.

    Raises:
        NotFoundError: If the invoice does not exist.
    """
    snapshot = _load_invoice(context, invoice_id)
    return {"id": snapshot.id, **snapshot.to_dict()}


def find_invoice_id(context: RuntimeContext, invoice_no: str) -> str:
    """Resolve an invoice number to the id of the invoice holding it.

    Raises:
        NotFoundError: If no invoice carries ``invoice_no``.
    """
    matches = context.store.query(Collection.INVOICES, invoiceNo=invoice_no)
    if not matches:
        raise NotFoundError(f"Invoice not found: #{invoice_no}")
    return matches[0].id


def list_invoice_items(context: RuntimeContext, invoice_id: str) -> List[Dict[str, Any]]:
    return [{"id": row.id, **row.to_dict()} for row in context.store.query(Collection.INVOICE_ITEMS, invoiceId=invoice_id)]
