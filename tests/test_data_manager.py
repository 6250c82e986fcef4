"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from inventory_ledger import constants, data_manager
from inventory_ledger.constants import Collection, POStatus, Role
from inventory_ledger.document_store import DocumentSnapshot, DocumentRef, DocumentStore


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    config_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx")
    child = config_dir / "child"
    child.mkdir()
    monkeypatch.chdir(child)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "CompanyName") == "Test Traders"
    assert parser.get("Defaults", "UserId") == "clerk"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()


def test_parse_settings_reads_optional_sections(config_factory):
    """Inventory, invoice and defaults sections map onto typed settings."""

    bundle = config_factory(allow_negative=True, role="Admin")
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.directory)

    assert settings.locations == ("WH1", "WH2")
    assert settings.default_location == "WH1"
    assert settings.allow_negative_stock is True
    assert settings.default_tax_rate == Decimal("18")
    assert settings.default_user_id == "clerk"
    assert settings.default_role is Role.ADMIN
    assert settings.max_transaction_attempts == constants.DEFAULT_MAX_TRANSACTION_ATTEMPTS


def test_parse_settings_defaults_optional_sections(tmp_path):
    """Only the [System] section is mandatory."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=ledger.xlsx\nCompanyName=X\nSchemaVersion=2.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.locations == ()
    assert settings.default_location == constants.DEFAULT_LOCATION
    assert settings.allow_negative_stock is False
    assert settings.default_role is Role.STAFF


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize(
    "extra",
    [
        "[Defaults]\nRole=superuser\n",
        "[Invoice]\nDefaultTaxRate=lots\n",
        "[Store]\nMaxTransactionAttempts=0\n",
    ],
)
def test_parse_settings_rejects_unusable_optional_values(tmp_path, extra):
    """Bad optional values surface as ValueError instead of silent defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=ledger.xlsx\nCompanyName=X\nSchemaVersion=2.0.0\n" + extra)
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(ledger_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {collection.value for collection in Collection}


def test_open_workbook_missing_file_raises(tmp_path):
    """Opening a non-existent workbook should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_initialize_sheet_writes_bold_headers():
    """New collection sheets carry the three bold header cells."""

    workbook = openpyxl.Workbook()
    sheet = data_manager.initialize_sheet(workbook, "products")

    assert [cell.value for cell in sheet[1]] == list(data_manager.SHEET_COLUMNS)
    assert all(cell.font.bold for cell in sheet[1])


def test_iter_sheet_documents_requires_sheet():
    """Loading a collection without a sheet is an error."""

    workbook = openpyxl.Workbook()
    with pytest.raises(KeyError):
        list(data_manager.iter_sheet_documents(workbook, "products"))


def test_save_and_load_store_preserves_documents(ledger_workbook_path):
    """Documents written to the workbook come back with decimals and versions."""

    store = DocumentStore(backoff_base=0)
    ref = store.ref(Collection.PRODUCTS, "p1")
    document = {"name": "Cement", "price": Decimal("12.5"), **data_manager.stock_fields({"WH1": Decimal("3.25")})}
    store.run_transaction(lambda transaction: transaction.create(ref, document))

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.save_store(store, workbook)
    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = data_manager.load_store(data_manager.open_workbook(ledger_workbook_path))
    snapshot = reloaded.get(reloaded.ref(Collection.PRODUCTS, "p1"))
    data = snapshot.to_dict()

    assert snapshot.version == 1
    assert data["price"] == Decimal("12.5")
    assert data["locations"] == {"WH1": Decimal("3.3")}
    assert isinstance(data["stockQty"], Decimal)


def test_save_store_replaces_previous_rows(ledger_workbook_path):
    """Saving twice rewrites a sheet instead of appending duplicates."""

    store = DocumentStore(backoff_base=0)
    ref = store.ref(Collection.EXPENSES, "e1")
    store.run_transaction(lambda transaction: transaction.create(ref, {"amount": Decimal("5.00")}))
    workbook = data_manager.open_workbook(ledger_workbook_path)
    sheet_order = list(workbook.sheetnames)

    data_manager.save_store(store, workbook)
    data_manager.save_store(store, workbook)

    assert workbook["expenses"].max_row == 2
    assert workbook["expenses"].cell(row=2, column=1).value == "e1"
    assert workbook.sheetnames == sheet_order


def test_save_workbook_creates_missing_directories(tmp_path):
    """save_workbook should create parent directories before saving."""

    workbook = openpyxl.Workbook()
    destination = tmp_path / "nested" / "output.xlsx"
    data_manager.save_workbook(workbook, destination)
    assert destination.exists()


# ---------------------------------------------------------------------------
# Numeric helpers and record mapping
# ---------------------------------------------------------------------------


def test_rounding_helpers_round_half_up():
    """Stock rounds to tenths, PO quantities and money to hundredths."""

    assert data_manager.round_stock(Decimal("2.25")) == Decimal("2.3")
    assert data_manager.round_po(Decimal("2.005")) == Decimal("2.01")
    assert data_manager.round_money(Decimal("0.125")) == Decimal("0.13")


def test_stock_fields_recomputes_total():
    """stockQty is always the rounded sum of the rounded location balances."""

    fields = data_manager.stock_fields({"WH1": "10.04", "WH2": Decimal("-2.5"), "WH3": None})

    assert fields["locations"] == {"WH1": Decimal("10.0"), "WH2": Decimal("-2.5"), "WH3": Decimal("0.0")}
    assert fields["stockQty"] == Decimal("7.5")


def test_to_decimal_falls_back_on_garbage():
    """Unreadable stored numbers degrade to the supplied default."""

    assert data_manager.to_decimal("abc", Decimal("1")) == Decimal("1")
    assert data_manager.to_decimal(None) == Decimal("0")
    assert data_manager.to_decimal(3) == Decimal("3")


def test_deserialize_product_derives_stock_from_locations():
    """A stale stored stockQty is ignored in favour of the location sum."""

    snapshot = DocumentSnapshot(
        DocumentRef("products", "p1"),
        {"name": "Cement", "price": 10, "locations": {"WH1": 4, "WH2": 6}, "stockQty": 99},
        1,
    )
    record = data_manager.deserialize_product(snapshot)

    assert record.stock_qty == Decimal("10")
    assert record.available_at("WH2") == Decimal("6")
    assert record.available_at("Nowhere") == Decimal("0")
    assert record.low_stock_threshold == Decimal("10")


def test_deserialize_purchase_order_recomputes_remaining():
    """remainingQty is derived from ordered and delivered quantities."""

    snapshot = DocumentSnapshot(
        DocumentRef("purchaseOrders", "po1"),
        {
            "poNumber": "PO-9",
            "customerId": "C1",
            "status": "Partially Fulfilled",
            "items": [
                {
                    "productId": "p1",
                    "productName": "Cement",
                    "totalQty": 50,
                    "deliveredQty": 20,
                    "remainingQty": 999,
                    "rate": 10,
                    "fulfillments": [{"invoiceNo": "INV-1", "quantity": 20, "date": "2025-01-01"}],
                }
            ],
        },
        3,
    )
    record = data_manager.deserialize_purchase_order(snapshot)

    assert record.status is POStatus.PARTIALLY_FULFILLED
    assert record.lines[0].remaining_qty == Decimal("30")
    assert record.lines[0].fulfillments[0].invoice_no == "INV-1"


def test_deserialize_purchase_order_tolerates_unknown_status():
    """Unknown stored statuses fall back to Open."""

    snapshot = DocumentSnapshot(DocumentRef("purchaseOrders", "po1"), {"status": "Cancelled", "items": []}, 1)

    assert data_manager.deserialize_purchase_order(snapshot).status is POStatus.OPEN


def test_serialize_purchase_order_items_writes_remaining_and_status():
    """Serialized PO items carry the recomputed remaining quantity."""

    record = data_manager.PurchaseOrderRecord(
        po_id="po1",
        po_number="PO-1",
        customer_id="C1",
        date="2025-01-01",
        lines=(
            data_manager.PurchaseOrderLine(
                product_id="p1",
                product_name="Cement",
                total_qty=Decimal("50"),
                delivered_qty=Decimal("50"),
                rate=Decimal("1"),
            ),
        ),
        status=POStatus.COMPLETED,
    )
    payload = data_manager.serialize_purchase_order_items(record)

    assert payload["status"] == "Completed"
    assert payload["items"][0]["remainingQty"] == Decimal("0")
    assert payload["items"][0]["fulfillments"] == []
