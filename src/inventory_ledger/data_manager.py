"""Data access layer for the inventory ledger.

This module provides the low-level helpers shared by every ledger engine.
Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening the Excel workbook that persists the document
   store, loading its sheets into a :class:`DocumentStore` and writing the
   store back.
3. Record mapping: typed views over product and purchase order documents and
   the serializers that turn derived rows back into documents. Derived
   fields such as ``stockQty`` are produced here and nowhere else.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_LOCATION,
    DEFAULT_MAX_TRANSACTION_ATTEMPTS,
    DEFAULT_TAX_RATE,
    MONEY_PRECISION,
    PO_PRECISION,
    STOCK_PRECISION,
    Collection,
    POStatus,
    Role,
)
from .document_store import DocumentSnapshot, DocumentStore, StoredDocument


CONFIG_FILE_NAME = "config.ini"
SHEET_COLUMNS: Tuple[str, ...] = ("DocumentID", "Version", "Payload")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    locations: Tuple[str, ...] = ()
    default_location: str = DEFAULT_LOCATION
    allow_negative_stock: bool = False
    default_tax_rate: Decimal = DEFAULT_TAX_RATE
    max_transaction_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS
    default_user_id: str = "system"
    default_role: Role = Role.STAFF


@dataclass(frozen=True)
class Fulfillment:
    """One shipment recorded against a purchase order line."""

    invoice_no: str
    quantity: Decimal
    date: str


@dataclass(frozen=True)
class PurchaseOrderLine:
    """In-memory view of one entry of a purchase order's ``items`` list."""

    product_id: str
    product_name: str
    total_qty: Decimal
    delivered_qty: Decimal
    rate: Decimal
    fulfillments: Tuple[Fulfillment, ...] = ()

    @property
    def remaining_qty(self) -> Decimal:
        return round_po(self.total_qty - self.delivered_qty)


@dataclass(frozen=True)
class PurchaseOrderRecord:
    """In-memory view of a ``purchaseOrders`` document."""

    po_id: str
    po_number: str
    customer_id: str
    date: str
    lines: Tuple[PurchaseOrderLine, ...]
    status: POStatus = POStatus.OPEN


@dataclass(frozen=True)
class ProductRecord:
    """In-memory view of a ``products`` document.

    ``stock_qty`` is always derived from ``locations``; a stored ``stockQty``
    that disagrees with the per-location balances is ignored.
    """

    product_id: str
    name: str
    sku: str
    hsn_code: str
    price: Decimal
    locations: Mapping[str, Decimal] = field(default_factory=dict)
    low_stock_threshold: Decimal = Decimal("10")

    @property
    def stock_qty(self) -> Decimal:
        return total_stock(self.locations)

    def available_at(self, location: str) -> Decimal:
        return Decimal(self.locations.get(location, Decimal("0")))


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------


def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Coerce stored numeric values into :class:`Decimal` without raising."""

    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        log.warning("Non-numeric stored value '%s' treated as %s", value, default)
        return default


def round_stock(value: Decimal) -> Decimal:
    return Decimal(value).quantize(STOCK_PRECISION, rounding=ROUND_HALF_UP)


def round_po(value: Decimal) -> Decimal:
    return Decimal(value).quantize(PO_PRECISION, rounding=ROUND_HALF_UP)


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_PRECISION, rounding=ROUND_HALF_UP)


def total_stock(locations: Mapping[str, Any]) -> Decimal:
    return round_stock(sum((to_decimal(qty) for qty in locations.values()), Decimal("0")))


def stock_fields(locations: Mapping[str, Any]) -> Dict[str, Any]:
    """Build the only accepted field set for changing a product's stock.

    Every location balance is rounded to one decimal and ``stockQty`` is
    recomputed from them, so callers can never write the two out of sync.
    """

    rounded = {str(name): round_stock(to_decimal(qty)) for name, qty in locations.items()}
    return {"locations": rounded, "stockQty": total_stock(rounded)}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the ledger behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match is authoritative.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory; the ``[Inventory]``, ``[Invoice]``,
    ``[Store]`` and ``[Defaults]`` sections are optional and fall back to the
    package defaults. Relative ``DataFile`` paths are anchored to
    ``base_path`` (or the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If an optional entry holds an unusable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    locations_raw = parser.get("Inventory", "Locations", fallback="")
    locations = tuple(name.strip() for name in locations_raw.split(",") if name.strip())
    default_location = parser.get("Inventory", "DefaultLocation", fallback=DEFAULT_LOCATION).strip()
    allow_negative = parser.getboolean("Inventory", "AllowNegativeStock", fallback=False)

    tax_raw = parser.get("Invoice", "DefaultTaxRate", fallback=str(DEFAULT_TAX_RATE))
    try:
        default_tax_rate = Decimal(tax_raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid DefaultTaxRate: {tax_raw}") from exc

    attempts = parser.getint("Store", "MaxTransactionAttempts", fallback=DEFAULT_MAX_TRANSACTION_ATTEMPTS)
    if attempts < 1:
        raise ValueError("MaxTransactionAttempts must be at least 1")

    role_raw = parser.get("Defaults", "Role", fallback=Role.STAFF.value)
    try:
        default_role = Role(role_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown role in configuration: {role_raw}") from exc

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        locations=locations,
        default_location=default_location,
        allow_negative_stock=allow_negative,
        default_tax_rate=default_tax_rate,
        max_transaction_attempts=attempts,
        default_user_id=parser.get("Defaults", "UserId", fallback="system").strip(),
        default_role=default_role,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def initialize_sheet(workbook: Workbook, sheet_name: str, index: Optional[int] = None):
    """Create a collection worksheet with bold headers and return it."""

    worksheet = workbook.create_sheet(title=sheet_name, index=index)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(SHEET_COLUMNS, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return worksheet


def encode_payload(data: Mapping[str, Any]) -> str:
    """Serialize a document body to JSON, writing decimals as numbers."""

    return json.dumps(data, default=_encode_value, sort_keys=True)


def decode_payload(raw: str) -> Dict[str, Any]:
    """Deserialize a JSON document body, reading fractional numbers as decimals."""

    return json.loads(raw, parse_float=Decimal)


def _encode_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Value of type {type(value).__name__} is not serializable")


def iter_sheet_documents(workbook: Workbook, collection: str) -> Iterable[Tuple[str, StoredDocument]]:
    """Yield ``(document_id, StoredDocument)`` pairs from a collection sheet.

    Raises:
        KeyError: If the workbook has no sheet for ``collection``.
    """

    if collection not in workbook.sheetnames:
        raise KeyError(f"Workbook is missing sheet: {collection}")
    sheet = workbook[collection]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in raw):
            continue
        doc_id, version, payload = raw[:3]
        yield str(doc_id), StoredDocument(int(version or 0), decode_payload(str(payload)))


def load_store(workbook: Workbook, *, max_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS) -> DocumentStore:
    """Build a :class:`DocumentStore` from every collection sheet in ``workbook``."""

    documents: Dict[str, Dict[str, StoredDocument]] = {}
    for collection in Collection:
        documents[collection.value] = dict(iter_sheet_documents(workbook, collection.value))
    total = sum(len(bucket) for bucket in documents.values())
    log.debug("Loaded %d documents from workbook", total)
    return DocumentStore(documents, max_attempts=max_attempts)


def save_store(store: DocumentStore, workbook: Workbook) -> None:
    """Rewrite every collection sheet with the store's committed documents."""

    dumped = store.dump()
    names = [collection.value for collection in Collection]
    names.extend(name for name in dumped if name not in names)
    for name in names:
        index = None
        if name in workbook.sheetnames:
            # Rebuilt from scratch; appending after delete_rows keeps the old row cursor.
            index = workbook.sheetnames.index(name)
            workbook.remove(workbook[name])
        sheet = initialize_sheet(workbook, name, index=index)
        for doc_id, stored in dumped.get(name, {}).items():
            sheet.append([doc_id, stored.version, encode_payload(stored.data)])


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------


def deserialize_product(snapshot: DocumentSnapshot) -> ProductRecord:
    """Convert a product snapshot into a :class:`ProductRecord`."""

    data = snapshot.to_dict()
    locations = {str(name): to_decimal(qty) for name, qty in (data.get("locations") or {}).items()}
    return ProductRecord(
        product_id=snapshot.id,
        name=str(data.get("name") or ""),
        sku=str(data.get("sku") or ""),
        hsn_code=str(data.get("hsnCode") or ""),
        price=to_decimal(data.get("price")),
        locations=locations,
        low_stock_threshold=to_decimal(data.get("lowStockThreshold"), Decimal("10")),
    )


def deserialize_purchase_order(snapshot: DocumentSnapshot) -> PurchaseOrderRecord:
    """Convert a purchase order snapshot into a :class:`PurchaseOrderRecord`.

    ``remainingQty`` is not read back; it is always recomputed from the
    ordered and delivered quantities.
    """

    data = snapshot.to_dict()
    lines = []
    for item in data.get("items") or []:
        fulfillments = tuple(
            Fulfillment(
                invoice_no=str(entry.get("invoiceNo") or ""),
                quantity=to_decimal(entry.get("quantity")),
                date=str(entry.get("date") or ""),
            )
            for entry in item.get("fulfillments") or []
        )
        lines.append(
            PurchaseOrderLine(
                product_id=str(item.get("productId") or ""),
                product_name=str(item.get("productName") or ""),
                total_qty=to_decimal(item.get("totalQty")),
                delivered_qty=to_decimal(item.get("deliveredQty")),
                rate=to_decimal(item.get("rate")),
                fulfillments=fulfillments,
            )
        )
    try:
        status = POStatus(data.get("status") or POStatus.OPEN.value)
    except ValueError:
        log.warning("Purchase order '%s' has unknown status '%s'", snapshot.id, data.get("status"))
        status = POStatus.OPEN
    return PurchaseOrderRecord(
        po_id=snapshot.id,
        po_number=str(data.get("poNumber") or ""),
        customer_id=str(data.get("customerId") or ""),
        date=str(data.get("date") or ""),
        lines=tuple(lines),
        status=status,
    )


def serialize_purchase_order_items(record: PurchaseOrderRecord) -> Dict[str, Any]:
    """Build the ``items``/``status`` update for a purchase order document."""

    items = [
        {
            "productId": line.product_id,
            "productName": line.product_name,
            "totalQty": line.total_qty,
            "deliveredQty": round_po(line.delivered_qty),
            "remainingQty": line.remaining_qty,
            "rate": line.rate,
            "fulfillments": [
                {"invoiceNo": entry.invoice_no, "quantity": entry.quantity, "date": entry.date}
                for entry in line.fulfillments
            ],
        }
        for line in record.lines
    ]
    return {"items": items, "status": record.status.value}
