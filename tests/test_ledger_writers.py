"""Tests for derived row builders and the dispatch backfill."""

from __future__ import annotations

from decimal import Decimal

import pytest

from inventory_ledger import ledger_writers
from inventory_ledger.constants import Collection, MovementType
from inventory_ledger.errors import AuthorizationError
from inventory_ledger.ledger_writers import LineSnapshot


def test_line_totals_round_to_cents():
    """Tax and totals are rounded half up to two decimals."""

    assert ledger_writers.line_totals(Decimal("3"), Decimal("3.35"), Decimal("18")) == (Decimal("1.81"), Decimal("11.86"))


def test_build_stock_movement_keeps_reference_keys():
    """Movement rows always carry both reference fields."""

    row = ledger_writers.build_stock_movement(
        product_id="p1",
        product_name="Cement",
        location="WH1",
        change_qty=Decimal("-2"),
        movement_type=MovementType.INVOICE,
        reason="Invoice #1",
        user_id="u",
        timestamp="t",
    )

    assert row["type"] == "INVOICE"
    assert row["relatedInvoiceId"] is None
    assert row["referenceId"] is None
    assert row["transport"] == {}


def test_build_dispatch_defaults_missing_invoice_number():
    """Dispatches without an invoice number are labelled UNKNOWN."""

    line = LineSnapshot(product_id="p1", product_name="Cement", quantity=Decimal("2"), price=Decimal("10"))
    row = ledger_writers.build_dispatch("inv", {}, line, location="WH1", tax_rate=Decimal("5"), user_id="u", timestamp="t")

    assert row["invoiceNo"] == "UNKNOWN"
    assert row["taxAmount"] == Decimal("1.00")
    assert row["itemTotal"] == Decimal("21.00")


def test_snapshot_from_item_reads_stored_row():
    """Stored item rows convert back into line snapshots."""

    line = ledger_writers.snapshot_from_item(
        {"productId": "p1", "name": "Legacy name", "quantity": "4.5", "price": 2, "purchaseOrderId": ""}
    )

    assert line.product_name == "Legacy name"
    assert line.quantity == Decimal("4.5")
    assert line.purchase_order_id is None


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------


def _seed_legacy_invoice(context, *, with_summary=False):
    store = context.store
    invoice_ref = store.ref(Collection.INVOICES, "legacy")
    item_ref = store.ref(Collection.INVOICE_ITEMS, "item1")
    invoice = {
        "invoiceNo": "OLD-1",
        "fromLocation": "WH2",
        "taxRate": Decimal("5"),
        "userId": "founder",
        "createdAt": "2024-06-01T08:00:00+00:00",
    }
    if with_summary:
        invoice["itemsSummary"] = [{"productId": "p1"}]

    def body(transaction):
        transaction.create(invoice_ref, invoice)
        transaction.create(
            item_ref, {"invoiceId": "legacy", "productId": "p1", "productName": "Cement", "quantity": 4, "price": 10}
        )

    store.run_transaction(body)


def test_backfill_creates_dispatches_and_summary(context):
    """Legacy invoices gain dispatch rows and an items summary."""

    _seed_legacy_invoice(context)

    assert ledger_writers.backfill_dispatches(context) == 1

    [dispatch] = [snapshot.to_dict() for snapshot in context.store.query(Collection.DISPATCHES, invoiceId="legacy")]
    assert dispatch["location"] == "WH2"
    assert dispatch["taxAmount"] == Decimal("2.00")
    assert dispatch["userId"] == "founder"
    assert dispatch["createdAt"] == "2024-06-01T08:00:00+00:00"
    invoice = context.store.get(context.store.ref(Collection.INVOICES, "legacy")).to_dict()
    assert invoice["itemsSummary"][0]["productName"] == "Cement"


def test_backfill_is_idempotent(context):
    """A second run finds nothing to do."""

    _seed_legacy_invoice(context, with_summary=True)

    assert ledger_writers.backfill_dispatches(context) == 1
    before = context.store.dump()
    assert ledger_writers.backfill_dispatches(context) == 0
    assert context.store.dump() == before


def test_backfill_requires_writer(viewer_context):
    """Viewers cannot run maintenance jobs."""

    with pytest.raises(AuthorizationError):
        ledger_writers.backfill_dispatches(viewer_context)
