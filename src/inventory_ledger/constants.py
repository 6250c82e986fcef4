"""Enumerations and numeric constants shared across the inventory ledger.

Centralises domain constants so that the document store, the data access
layer, the ledger engines and the CLI rely on a single source of truth for
collection names, movement types and rounding rules.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Location balances are kept to one decimal place, PO quantities and money to two.
STOCK_PRECISION = Decimal("0.1")
PO_PRECISION = Decimal("0.01")
MONEY_PRECISION = Decimal("0.01")

# Slack allowed when comparing a requested quantity with a PO remaining balance.
FULFILLMENT_EPSILON = Decimal("0.001")

DEFAULT_TAX_RATE = Decimal("18")
DEFAULT_LOCATION = "Warehouse A"
DEFAULT_MAX_TRANSACTION_ATTEMPTS = 5


class Collection(str, Enum):
    """Enumerate the document collections managed by the store."""

    PRODUCTS = "products"
    PURCHASE_ORDERS = "purchaseOrders"
    INVOICES = "invoices"
    INVOICE_NUMBERS = "invoiceNumbers"
    INVOICE_ITEMS = "invoiceItems"
    STOCK_MOVEMENTS = "stockMovements"
    DISPATCHES = "dispatches"
    STOCK_TRANSFERS = "stockTransfers"
    IMPORTS = "imports"
    LOCAL_PURCHASES = "localPurchases"
    EXPENSES = "expenses"
    RECYCLE_BIN = "recycleBin"


class MovementType(str, Enum):
    """Enumerate the signed stock movement kinds written to the audit log."""

    IMPORT = "IMPORT"
    LOCAL_PURCHASE = "LOCAL_PURCHASE"
    INVOICE = "INVOICE"
    INVOICE_EDIT = "INVOICE_EDIT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    STOCK_ENTRY = "STOCK_ENTRY"
    ADJUSTMENT = "ADJUSTMENT"


class POStatus(str, Enum):
    """Enumerate the derived fulfilment states of a purchase order."""

    OPEN = "Open"
    PARTIALLY_FULFILLED = "Partially Fulfilled"
    COMPLETED = "Completed"


class RecycleType(str, Enum):
    """Enumerate the entity kinds that can be held in the recycle bin."""

    INVOICE = "INVOICE"


class Role(str, Enum):
    """Enumerate caller roles used for authorization checks."""

    ADMIN = "admin"
    STAFF = "staff"
    VIEWER = "viewer"


class ExpenseCategory(str, Enum):
    """Enumerate expense categories produced by stock-in side effects."""

    PURCHASE = "Purchase/Stock In"
    LOGISTICS = "Logistics"
    OVERHEADS = "Other OVERHEADS"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "STOCK_PRECISION",
    "PO_PRECISION",
    "MONEY_PRECISION",
    "FULFILLMENT_EPSILON",
    "DEFAULT_TAX_RATE",
    "DEFAULT_LOCATION",
    "DEFAULT_MAX_TRANSACTION_ATTEMPTS",
    "Collection",
    "MovementType",
    "POStatus",
    "RecycleType",
    "Role",
    "ExpenseCategory",
]
