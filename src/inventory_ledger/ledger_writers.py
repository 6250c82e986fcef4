"""Builders for the audit rows derived from invoices and stock changes.

Every invoice line produces three documents: an ``invoiceItems`` row, a
signed ``stockMovements`` row and a ``dispatches`` row carrying the line's
tax and total. The builders here only shape documents; the engines decide
when to write them.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import DEFAULT_LOCATION, DEFAULT_TAX_RATE, Collection, MovementType
from .core_logic import RuntimeContext, require_writer
from .data_manager import round_money, to_decimal
from .document_store import DocumentStore, Transaction


@dataclass(frozen=True)
class LineSnapshot:
    """Validated, denormalized view of one invoice line."""

    product_id: str
    product_name: str
    quantity: Decimal
    price: Decimal
    hsn_code: str = ""
    purchase_order_id: Optional[str] = None
    bags: Decimal = Decimal("0")
    bag_weight: Decimal = Decimal("0")


def line_totals(quantity: Decimal, price: Decimal, tax_rate: Decimal) -> Tuple[Decimal, Decimal]:
    """Return ``(taxAmount, itemTotal)`` for one line, rounded to cents."""
    subtotal = Decimal(quantity) * Decimal(price)
    tax = subtotal * Decimal(tax_rate) / Decimal("100")
    return round_money(tax), round_money(subtotal + tax)


def items_summary(lines: Sequence[LineSnapshot]) -> List[Dict[str, Any]]:
    return [
        {
            "productId": line.product_id,
            "productName": line.product_name,
            "quantity": line.quantity,
            "price": line.price,
            "hsnCode": line.hsn_code,
            "purchaseOrderId": line.purchase_order_id,
            "bags": line.bags,
            "bagWeight": line.bag_weight,
        }
        for line in lines
    ]


def build_invoice_item(invoice_id: str, line: LineSnapshot, *, location: str, user_id: str, timestamp: str) -> Dict[str, Any]:
    return {
        "invoiceId": invoice_id,
        "productId": line.product_id,
        "productName": line.product_name,
        "quantity": line.quantity,
        "price": line.price,
        "hsnCode": line.hsn_code,
        "purchaseOrderId": line.purchase_order_id,
        "bags": line.bags,
        "bagWeight": line.bag_weight,
        "location": location,
        "userId": user_id,
        "createdAt": timestamp,
    }


def build_stock_movement(
    *,
    product_id: str,
    product_name: str,
    location: str,
    change_qty: Decimal,
    movement_type: MovementType,
    reason: str,
    user_id: str,
    timestamp: str,
    related_invoice_id: Optional[str] = None,
    reference_id: Optional[str] = None,
    transport: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a ``stockMovements`` row; ``change_qty`` is signed."""
    return {
        "productId": product_id,
        "productName": product_name,
        "location": location,
        "changeQty": change_qty,
        "type": MovementType(movement_type).value,
        "reason": reason,
        "relatedInvoiceId": related_invoice_id,
        "referenceId": reference_id,
        "transport": dict(transport or {}),
        "userId": user_id,
        "createdAt": timestamp,
    }


def build_dispatch(
    invoice_id: str,
    header: Mapping[str, Any],
    line: LineSnapshot,
    *,
    location: str,
    tax_rate: Decimal,
    user_id: str,
    timestamp: str,
) -> Dict[str, Any]:
    tax_amount, item_total = line_totals(line.quantity, line.price, tax_rate)
    return {
        "invoiceId": invoice_id,
        "invoiceNo": header.get("invoiceNo") or "UNKNOWN",
        "customerName": header.get("customerName") or "",
        "remarks": header.get("remarks") or "",
        "productId": line.product_id,
        "productName": line.product_name,
        "quantity": line.quantity,
        "bags": line.bags,
        "bagWeight": line.bag_weight,
        "unitPrice": line.price,
        "taxRate": tax_rate,
        "taxAmount": tax_amount,
        "itemTotal": item_total,
        "location": location,
        "transport": dict(header.get("transport") or {}),
        "userId": user_id,
        "createdAt": timestamp,
    }


def write_invoice_rows(
    transaction: Transaction,
    store: DocumentStore,
    *,
    invoice_id: str,
    header: Mapping[str, Any],
    lines: Sequence[LineSnapshot],
    location: str,
    tax_rate: Decimal,
    movement_type: MovementType,
    user_id: str,
    timestamp: str,
) -> None:
    """Issue the item, movement and dispatch writes for every invoice line."""
    invoice_no = header.get("invoiceNo") or ""
    reason = f"Invoice #{invoice_no}" if movement_type == MovementType.INVOICE else f"Invoice #{invoice_no} (edited)"
    for line in lines:
        transaction.set(
            store.new_ref(Collection.INVOICE_ITEMS),
            build_invoice_item(invoice_id, line, location=location, user_id=user_id, timestamp=timestamp),
        )
        transaction.set(
            store.new_ref(Collection.STOCK_MOVEMENTS),
            build_stock_movement(
                product_id=line.product_id,
                product_name=line.product_name,
                location=location,
                change_qty=-line.quantity,
                movement_type=movement_type,
                reason=reason,
                user_id=user_id,
                timestamp=timestamp,
                related_invoice_id=invoice_id,
                transport=header.get("transport"),
            ),
        )
        transaction.set(
            store.new_ref(Collection.DISPATCHES),
            build_dispatch(
                invoice_id, header, line, location=location, tax_rate=tax_rate, user_id=user_id, timestamp=timestamp
            ),
        )


def snapshot_from_item(item: Mapping[str, Any]) -> LineSnapshot:
    """Rebuild a :class:`LineSnapshot` from a stored ``invoiceItems`` row."""
    return LineSnapshot(
        product_id=str(item.get("productId") or ""),
        product_name=str(item.get("productName") or item.get("name") or ""),
        quantity=to_decimal(item.get("quantity")),
        price=to_decimal(item.get("price")),
        hsn_code=str(item.get("hsnCode") or ""),
        purchase_order_id=item.get("purchaseOrderId") or None,
        bags=to_decimal(item.get("bags")),
        bag_weight=to_decimal(item.get("bagWeight")),
    )


def backfill_dispatches(context: RuntimeContext) -> int:
    """Create dispatch rows for invoices that have none.

    Invoices written before dispatch rows existed only carry item rows. For
    each such invoice a dispatch row is derived from every item, stamped with
    the invoice's own creation time. A missing ``itemsSummary`` is rebuilt
    from the items as well.

    Returns:
        int: Number of invoices that received dispatch rows.
    """
    require_writer(context)
    store = context.store
    processed = 0
    for invoice in store.query(Collection.INVOICES):
        has_dispatches = store.count(Collection.DISPATCHES, invoiceId=invoice.id) > 0
        data = invoice.to_dict()
        if has_dispatches and data.get("itemsSummary"):
            continue
        items = [snapshot_from_item(item.to_dict()) for item in store.query(Collection.INVOICE_ITEMS, invoiceId=invoice.id)]
        invoice_ref = store.ref(Collection.INVOICES, invoice.id)

        def body(transaction, data=data, items=items, invoice_ref=invoice_ref, has_dispatches=has_dispatches):
            current = transaction.get(invoice_ref)
            if not current.exists:
                log.warning("Invoice '%s' vanished during backfill", invoice_ref.id)
                return False
            wrote = False
            if not has_dispatches:
                tax_rate = to_decimal(data.get("taxRate"), DEFAULT_TAX_RATE)
                location = data.get("fromLocation") or DEFAULT_LOCATION
                for line in items:
                    transaction.set(
                        store.new_ref(Collection.DISPATCHES),
                        build_dispatch(
                            invoice_ref.id,
                            data,
                            line,
                            location=location,
                            tax_rate=tax_rate,
                            user_id=data.get("userId") or context.caller.user_id,
                            timestamp=data.get("createdAt") or store.server_timestamp(),
                        ),
                    )
                wrote = bool(items)
            if not data.get("itemsSummary"):
                transaction.update(invoice_ref, {"itemsSummary": items_summary(items)})
            return wrote

        if store.run_transaction(body):
            processed += 1
    log.info("Backfilled dispatch rows for %d invoices", processed)
    return processed
