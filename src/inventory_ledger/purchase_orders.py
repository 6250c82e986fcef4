"""Purchase order bookkeeping.

Purchase orders are created here and otherwise only change as a side effect
of invoices: every invoice line that references a PO records a fulfillment
against the matching line, and deleting or editing the invoice reverses it.
The helpers operating on :class:`PurchaseOrderRecord` values are pure; the
invoice engines persist the results inside their own transactions.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from . import data_manager, log
from .constants import FULFILLMENT_EPSILON, Collection, POStatus
from .core_logic import RuntimeContext, parse_amount, require_writer
from .data_manager import Fulfillment, PurchaseOrderLine, PurchaseOrderRecord, round_po
from .errors import ConflictError, NotFoundError, ValidationError


@dataclass(frozen=True)
class PurchaseOrderLineCommand:
    """Ordered product, quantity and agreed rate for a new purchase order."""

    product_id: str
    total_qty: Any
    rate: Any = Decimal("0")


def derive_status(lines: Sequence[PurchaseOrderLine]) -> POStatus:
    """Return the fulfilment status implied by the delivered quantities.

    A PO is ``Completed`` once nothing remains on any line, ``Partially
    Fulfilled`` while at least one line has deliveries and ``Open`` otherwise.
    """
    if lines and all(line.remaining_qty <= 0 for line in lines):
        return POStatus.COMPLETED
    if any(line.delivered_qty > 0 for line in lines):
        return POStatus.PARTIALLY_FULFILLED
    return POStatus.OPEN


def _line_index(record: PurchaseOrderRecord, product_id: str) -> Optional[int]:
    for index, line in enumerate(record.lines):
        if line.product_id == product_id:
            return index
    return None


def apply_fulfillment(
    record: PurchaseOrderRecord,
    product_id: str,
    quantity: Decimal,
    invoice_no: str,
    date: str,
    *,
    label: str = "",
) -> PurchaseOrderRecord:
    """Record a shipment of ``quantity`` against the PO line for ``product_id``.

    Args:
        record: Current state of the purchase order.
        product_id: Product shipped on the invoice line.
        quantity: Quantity shipped.
        invoice_no: Invoice number recorded in the fulfillment history.
        date: Fulfillment date (``YYYY-MM-DD``).
        label: Product name used in error messages.

    Returns:
        PurchaseOrderRecord: Updated copy with the delivered quantity,
        history and status adjusted.

    Raises:
        ValidationError: If the PO has no line for the product, or the
            quantity exceeds the line's remaining balance.
    """
    label = label or product_id
    index = _line_index(record, product_id)
    if index is None:
        raise ValidationError(f"Product {label} not found in PO #{record.po_number}")

    line = record.lines[index]
    remaining = line.remaining_qty
    if quantity > remaining + FULFILLMENT_EPSILON:
        excess = round_po(quantity - remaining)
        raise ValidationError(
            f"Quantity {quantity} for {label} exceeds PO #{record.po_number} remaining balance "
            f"by {excess}. Available: {remaining}"
        )

    updated = replace(
        line,
        delivered_qty=round_po(line.delivered_qty + quantity),
        fulfillments=line.fulfillments + (Fulfillment(invoice_no=invoice_no, quantity=quantity, date=date),),
    )
    return _with_line(record, index, updated)


def reverse_fulfillment(
    record: PurchaseOrderRecord,
    product_id: str,
    quantity: Decimal,
    invoice_no: str,
) -> PurchaseOrderRecord:
    """Undo a shipment previously recorded by :func:`apply_fulfillment`.

    The delivered quantity never drops below zero and every history entry
    carrying ``invoice_no`` is removed. A PO without a line for the product
    is returned unchanged.
    """
    index = _line_index(record, product_id)
    if index is None:
        log.warning("PO '%s' has no line for product '%s'; nothing to reverse", record.po_id, product_id)
        return record

    line = record.lines[index]
    delivered = round_po(line.delivered_qty - quantity)
    if delivered < 0:
        log.warning(
            "Reversal of %s on PO '%s' product '%s' would make delivered negative; clamping to 0",
            quantity,
            record.po_id,
            product_id,
        )
        delivered = round_po(Decimal("0"))

    updated = replace(
        line,
        delivered_qty=delivered,
        fulfillments=tuple(entry for entry in line.fulfillments if entry.invoice_no != invoice_no),
    )
    return _with_line(record, index, updated)


def _with_line(record: PurchaseOrderRecord, index: int, line: PurchaseOrderLine) -> PurchaseOrderRecord:
    lines = record.lines[:index] + (line,) + record.lines[index + 1:]
    return replace(record, lines=lines, status=derive_status(lines))


def create_purchase_order(
    context: RuntimeContext,
    *,
    po_number: str,
    customer_id: str,
    date: str,
    lines: Sequence[PurchaseOrderLineCommand],
) -> str:
    """Create an ``Open`` purchase order with nothing delivered.

    Returns:
        str: Store-generated id of the purchase order.

    Raises:
        ValidationError: If the PO number is blank, no lines are given or a
            quantity is not positive.
        NotFoundError: If a line references an unknown product.
        ConflictError: If another PO already uses ``po_number``.
    """
    require_writer(context)
    po_number = (po_number or "").strip()
    if not po_number:
        raise ValidationError("PO number is required.")
    if not lines:
        raise ValidationError("A purchase order needs at least one line item")
    parsed = [
        (command.product_id, parse_amount(command.total_qty, field="ordered quantity", positive=True),
         parse_amount(command.rate, field="rate"))
        for command in lines
    ]

    store = context.store
    if store.count(Collection.PURCHASE_ORDERS, poNumber=po_number):
        raise ConflictError(f"PO Number {po_number} already exists.")

    ref = store.new_ref(Collection.PURCHASE_ORDERS)

    def body(transaction):
        products = transaction.get_all(store.ref(Collection.PRODUCTS, product_id) for product_id, _, _ in parsed)
        po_lines = []
        for product_id, total_qty, rate in parsed:
            snapshot = products[store.ref(Collection.PRODUCTS, product_id)]
            if not snapshot.exists:
                raise NotFoundError(f"Product not found: {product_id}")
            po_lines.append(
                PurchaseOrderLine(
                    product_id=product_id,
                    product_name=data_manager.deserialize_product(snapshot).name,
                    total_qty=round_po(total_qty),
                    delivered_qty=round_po(Decimal("0")),
                    rate=rate,
                )
            )
        record = PurchaseOrderRecord(
            po_id=ref.id,
            po_number=po_number,
            customer_id=customer_id,
            date=date,
            lines=tuple(po_lines),
            status=derive_status(po_lines),
        )
        timestamp = store.server_timestamp()
        transaction.create(
            ref,
            {
                "poNumber": po_number,
                "customerId": customer_id,
                "date": date,
                "userId": context.caller.user_id,
                "createdAt": timestamp,
                "updatedAt": timestamp,
                **data_manager.serialize_purchase_order_items(record),
            },
        )

    store.run_transaction(body)
    log.info("Created purchase order #%s (%s) with %d lines", po_number, ref.id, len(parsed))
    return ref.id


def get_purchase_order(context: RuntimeContext, po_id: str) -> PurchaseOrderRecord:
    """Resolve a purchase order by id.

    Raises:
        NotFoundError: If ``po_id`` is unknown.
    """
    snapshot = context.store.get(context.store.ref(Collection.PURCHASE_ORDERS, po_id))
    if not snapshot.exists:
        log.warning("Purchase order lookup failed for id '%s'", po_id)
        raise NotFoundError(f"Purchase order not found: {po_id}")
    return data_manager.deserialize_purchase_order(snapshot)


def list_purchase_orders(context: RuntimeContext, customer_id: Optional[str] = None) -> List[PurchaseOrderRecord]:
    filters = {"customerId": customer_id} if customer_id else {}
    return [
        data_manager.deserialize_purchase_order(snapshot)
        for snapshot in context.store.query(Collection.PURCHASE_ORDERS, **filters)
    ]
