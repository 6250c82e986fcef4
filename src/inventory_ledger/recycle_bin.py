"""Recycle bin for deleted invoices.

Deleting an invoice stores a snapshot of the invoice and all of its rows as
a ``recycleBin`` entry. Restoring replays the invoice's stock debits and PO
fulfillments, re-creates every row under its original id and removes the
entry, all in one transaction. Restore and purge are reserved for admins.
"""

from __future__ import annotations

from typing import Any, Dict, List

from . import log
from .constants import Collection, RecycleType
from .core_logic import RuntimeContext, require_admin
from .data_manager import to_decimal
from .document_store import DocumentSnapshot
from .errors import ConflictError, NotFoundError, ValidationError
from .ledger_state import LedgerState


_ROW_COLLECTIONS = (
    ("items", Collection.INVOICE_ITEMS),
    ("movements", Collection.STOCK_MOVEMENTS),
    ("dispatches", Collection.DISPATCHES),
)


def _load_entry(context: RuntimeContext, entry_id: str) -> DocumentSnapshot:
    snapshot = context.store.get(context.store.ref(Collection.RECYCLE_BIN, entry_id))
    if not snapshot.exists:
        log.warning("Recycle bin lookup failed for id '%s'", entry_id)
        raise NotFoundError(f"Recycle bin entry not found: {entry_id}")
    return snapshot


def restore_invoice(context: RuntimeContext, entry_id: str) -> str:
    """Restore a deleted invoice from its recycle bin entry.

    Stock is debited again at each item's location (subject to the usual
    sufficiency check) and PO fulfillments are re-recorded. Fulfillments are
    stamped with the invoice's own date, falling back to its creation date.

    Args:
        context: Runtime context; the caller must be an admin.
        entry_id: Id of the recycle bin entry.

    Returns:
        str: Id of the restored invoice, which is its original id.

    Raises:
        AuthorizationError: If the caller is not an admin.
        NotFoundError: If the entry does not exist.
        ValidationError: If the entry is not an invoice, stock is
            insufficient or a PO no longer has room for the quantity.
        ConflictError: If the original invoice id or number is in use again.
    """
    require_admin(context)
    entry = _load_entry(context, entry_id).to_dict()
    if entry.get("type") != RecycleType.INVOICE.value:
        raise ValidationError(f"Unsupported recycle bin entry type: {entry.get('type')}")

    data: Dict[str, Any] = dict(entry.get("data") or {})
    rows = {key: list(data.pop(key, None) or []) for key, _ in _ROW_COLLECTIONS}
    original_id = str(entry.get("originalId") or "")
    if not original_id:
        raise ValidationError(f"Recycle bin entry {entry_id} has no original id")
    invoice_no = str(data.get("invoiceNo") or "")
    default_location = str(data.get("fromLocation") or "")
    fulfillment_date = str(data.get("date") or str(data.get("createdAt") or "")[:10])

    store = context.store
    entry_ref = store.ref(Collection.RECYCLE_BIN, entry_id)
    invoice_ref = store.ref(Collection.INVOICES, original_id)
    number_ref = store.ref(Collection.INVOICE_NUMBERS, invoice_no) if invoice_no else None
    items = rows["items"]

    def body(transaction):
        if not transaction.get(entry_ref).exists:
            raise NotFoundError(f"Recycle bin entry not found: {entry_id}")
        if transaction.get(invoice_ref).exists:
            raise ConflictError(f"Invoice {original_id} already exists")
        if number_ref is not None and transaction.get(number_ref).exists:
            raise ConflictError(f'Invoice Number "{invoice_no}" already exists.')

        state = LedgerState(transaction, store, allow_negative_stock=context.settings.allow_negative_stock)
        state.read_products((str(item.get("productId")) for item in items), required=False)
        state.read_orders((item["purchaseOrderId"] for item in items if item.get("purchaseOrderId")), required=False)

        for item in items:
            product_id = str(item.get("productId"))
            quantity = to_decimal(item.get("quantity"))
            label = str(item.get("productName") or product_id)
            po_id = item.get("purchaseOrderId")
            if po_id and state.has_order(po_id):
                state.fulfil(po_id, product_id, quantity, invoice_no, fulfillment_date, label=label)
            if state.has_product(product_id):
                state.adjust_stock(product_id, item.get("location") or default_location, -quantity, label=label)

        timestamp = store.server_timestamp()
        state.flush(timestamp)
        for key, collection in _ROW_COLLECTIONS:
            for row in rows[key]:
                row = dict(row)
                row_id = row.pop("id", None)
                ref = store.ref(collection, row_id) if row_id else store.new_ref(collection)
                transaction.set(ref, {**row, "restoredAt": timestamp})
        transaction.create(
            invoice_ref,
            {**data, "updatedAt": timestamp, "restoredAt": timestamp, "restoredBy": context.caller.user_id},
        )
        if number_ref is not None:
            transaction.create(number_ref, {"invoiceId": original_id, "createdAt": timestamp})
        transaction.delete(entry_ref)

    store.run_transaction(body)
    log.info("Restored invoice #%s (%s) from recycle bin entry %s", invoice_no, original_id, entry_id)
    return original_id


def purge_entry(context: RuntimeContext, entry_id: str) -> None:
    """Permanently delete a recycle bin entry.

    Raises:
        AuthorizationError: If the caller is not an admin.
        NotFoundError: If the entry does not exist.
    """
    require_admin(context)
    ref = context.store.ref(Collection.RECYCLE_BIN, entry_id)

    def body(transaction):
        if not transaction.get(ref).exists:
            raise NotFoundError(f"Recycle bin entry not found: {entry_id}")
        transaction.delete(ref)

    context.store.run_transaction(body)
    log.info("Purged recycle bin entry %s", entry_id)


def get_entry(context: RuntimeContext, entry_id: str) -> Dict[str, Any]:
    snapshot = _load_entry(context, entry_id)
    return {"id": snapshot.id, **snapshot.to_dict()}


def list_entries(context: RuntimeContext) -> List[Dict[str, Any]]:
    """Return every recycle bin entry, most recently deleted first."""
    entries = [{"id": snapshot.id, **snapshot.to_dict()} for snapshot in context.store.query(Collection.RECYCLE_BIN)]
    return sorted(entries, key=lambda entry: str(entry.get("deletedAt") or ""), reverse=True)
