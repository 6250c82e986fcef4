"""Runtime context and shared business rules for the inventory ledger.

This module wires configuration, the persisted workbook and the in-memory
document store into a :class:`RuntimeContext`, and hosts the validation
helpers every ledger engine relies on: caller authorization, quantity
parsing and location checks. Product catalogue maintenance lives here too
since it never touches stock balances.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, Collection, Role
from .document_store import DocumentStore
from .errors import AuthorizationError, NotFoundError, ValidationError


_NON_NUMERIC = re.compile(r"[^0-9.]")


@dataclass(frozen=True)
class Caller:
    """Authenticated identity attached to every mutation for audit."""

    user_id: str
    role: Role = Role.STAFF


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the document store and the caller."""

    settings: data_manager.ConfigSettings
    store: DocumentStore
    caller: Caller
    workbook: Optional[Workbook] = None


def load_runtime_context(config_path: Optional[Path] = None, *, caller: Optional[Caller] = None) -> RuntimeContext:
    """Load configuration settings, the workbook and its document store.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.
        caller (Caller | None): Identity performing the operations. Defaults
            to the ``[Defaults]`` user and role from the configuration.

    Returns:
        RuntimeContext: Fully populated context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    store = data_manager.load_store(workbook, max_attempts=settings.max_transaction_attempts)
    if caller is None:
        caller = Caller(user_id=settings.default_user_id, role=settings.default_role)
    log.info("Loaded runtime context for workbook '%s' as '%s'", settings.data_file, caller.user_id)
    return RuntimeContext(settings=settings, store=store, caller=caller, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Write the store's committed documents to the configured workbook."""
    if context.workbook is None:
        raise RuntimeError("Runtime context has no workbook to persist")
    data_manager.save_store(context.store, context.workbook)
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook and store, discarding unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    store = data_manager.load_store(workbook, max_attempts=context.settings.max_transaction_attempts)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store, caller=context.caller, workbook=workbook)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def require_writer(context: RuntimeContext) -> None:
    """Reject read-only callers before any transaction is opened."""
    if context.caller.role == Role.VIEWER:
        log.warning("Viewer '%s' attempted a mutating operation", context.caller.user_id)
        raise AuthorizationError(f"User '{context.caller.user_id}' has read-only access")


def require_admin(context: RuntimeContext) -> None:
    """Reject callers without the admin role before any transaction is opened."""
    if context.caller.role != Role.ADMIN:
        log.warning("Non-admin '%s' attempted a privileged operation", context.caller.user_id)
        raise AuthorizationError("Only administrators can perform this operation")


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def parse_quantity(raw: Any, *, label: str) -> Decimal:
    """Parse an invoice line quantity.

    Text input is sanitized by stripping every character other than digits
    and the decimal point, so values such as ``"12.5 mts"`` are accepted.
    Missing, empty or unparsable input is rejected, as are negative numbers.

    Raises:
        ValidationError: Naming ``label`` when the value is unusable.
    """
    if raw is None or isinstance(raw, bool) or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError(f"Invalid numeric quantity [{raw}] for product: {label}")

    if isinstance(raw, (int, float, Decimal)):
        value = Decimal(str(raw))
    else:
        try:
            value = Decimal(_NON_NUMERIC.sub("", str(raw)))
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid numeric quantity [{raw}] for product: {label}") from exc

    if not value.is_finite():
        raise ValidationError(f"Invalid numeric quantity [{raw}] for product: {label}")
    if value < 0:
        raise ValidationError(f"Quantity cannot be negative for product: {label}")
    return value


def parse_amount(raw: Any, *, field: str, positive: bool = False) -> Decimal:
    """Parse a numeric amount that must be zero or more (or strictly positive).

    Raises:
        ValidationError: If ``raw`` is not a finite number in range.
    """
    if raw is None or raw == "":
        raw = 0
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid numeric {field}: {raw}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid numeric {field}: {raw}")
    if positive and value <= 0:
        raise ValidationError(f"{field.capitalize()} must be greater than zero")
    if value < 0:
        raise ValidationError(f"{field.capitalize()} cannot be negative")
    return value


def require_location(context: RuntimeContext, location: Optional[str], *, label: str = "Location") -> str:
    """Return ``location`` when it names a usable stock location.

    Raises:
        ValidationError: When the name is empty, or when locations are
            configured and ``location`` is not among them.
    """
    name = (location or "").strip()
    if not name:
        raise ValidationError(f"{label} is required.")
    configured = context.settings.locations
    if configured and name not in configured:
        raise ValidationError(f"Unknown location '{name}'. Configured: {', '.join(configured)}")
    return name


def today(context: RuntimeContext) -> str:
    """Return the store clock's current date as ``YYYY-MM-DD``."""
    return context.store.server_timestamp()[:10]


# ---------------------------------------------------------------------------
# Product catalogue
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    sku: str,
    price: Any,
    hsn_code: str = "",
    low_stock_threshold: Any = Decimal("10"),
) -> str:
    """Register a product with no stock at any location.

    Returns:
        str: Store-generated id of the new product.

    Raises:
        AuthorizationError: If the caller is read-only.
        ValidationError: If the name is blank or a number is out of range.
    """
    require_writer(context)
    if not name or not name.strip():
        raise ValidationError("Product name is required.")
    price_value = parse_amount(price, field="price")
    threshold = parse_amount(low_stock_threshold, field="low stock threshold")

    store = context.store
    ref = store.new_ref(Collection.PRODUCTS)
    timestamp = store.server_timestamp()
    document = {
        "name": name.strip(),
        "sku": sku,
        "hsnCode": hsn_code or "",
        "price": price_value,
        "lowStockThreshold": threshold,
        "userId": context.caller.user_id,
        "createdAt": timestamp,
        "updatedAt": timestamp,
        **data_manager.stock_fields({}),
    }
    store.run_transaction(lambda transaction: transaction.create(ref, document))
    log.info("Added product '%s' (%s)", name, ref.id)
    return ref.id


def update_product_details(
    context: RuntimeContext,
    product_id: str,
    *,
    name: Optional[str] = None,
    sku: Optional[str] = None,
    hsn_code: Optional[str] = None,
    price: Any = None,
    low_stock_threshold: Any = None,
) -> None:
    """Edit catalogue fields of a product.

    Stock balances are deliberately absent from the signature; they change
    only through the stock and invoice ledgers.

    Raises:
        NotFoundError: If the product does not exist.
        ValidationError: If nothing is supplied or a value is invalid.
    """
    require_writer(context)
    fields: dict[str, Any] = {}
    if name is not None:
        if not name.strip():
            raise ValidationError("Product name is required.")
        fields["name"] = name.strip()
    if sku is not None:
        fields["sku"] = sku
    if hsn_code is not None:
        fields["hsnCode"] = hsn_code
    if price is not None:
        fields["price"] = parse_amount(price, field="price")
    if low_stock_threshold is not None:
        fields["lowStockThreshold"] = parse_amount(low_stock_threshold, field="low stock threshold")
    if not fields:
        raise ValidationError("No product fields supplied for update")

    store = context.store
    ref = store.ref(Collection.PRODUCTS, product_id)

    def body(transaction):
        if not transaction.get(ref).exists:
            raise NotFoundError(f"Product not found: {product_id}")
        transaction.update(ref, {**fields, "updatedAt": store.server_timestamp()})

    store.run_transaction(body)
    log.info("Updated product '%s' fields: %s", product_id, ", ".join(sorted(fields)))


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRecord:
    """Resolve a product record by its identifier.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """
    snapshot = context.store.get(context.store.ref(Collection.PRODUCTS, product_id))
    if not snapshot.exists:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Product not found: {product_id}")
    return data_manager.deserialize_product(snapshot)


def list_products(context: RuntimeContext) -> List[data_manager.ProductRecord]:
    """Return every product ordered by name."""
    records = [data_manager.deserialize_product(snapshot) for snapshot in context.store.query(Collection.PRODUCTS)]
    return sorted(records, key=lambda record: record.name.lower())


def low_stock_report(context: RuntimeContext) -> List[data_manager.ProductRecord]:
    """Return products whose total stock is at or below their threshold."""
    return [record for record in list_products(context) if record.stock_qty <= record.low_stock_threshold]
