"""Transaction-scoped working copies of products and purchase orders.

Ledger engines read every product and purchase order they need through a
:class:`LedgerState`, apply stock and fulfillment changes to the in-memory
copies while validating, and only then call :meth:`LedgerState.flush` to
issue the product and PO writes. This keeps the read-validate-write ordering
required by the store in one place.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Set

from . import log, purchase_orders
from .constants import Collection
from .data_manager import (
    ProductRecord,
    PurchaseOrderRecord,
    deserialize_product,
    deserialize_purchase_order,
    round_stock,
    serialize_purchase_order_items,
    stock_fields,
)
from .document_store import DocumentStore, Transaction
from .errors import NotFoundError, ValidationError


class LedgerState:
    """Working set for one transaction attempt.

    Args:
        transaction: Transaction the documents are read through and written to.
        store: Store owning ``transaction``; used to build references.
        allow_negative_stock: When true, non-strict stock debits may take a
            location below zero.
    """

    def __init__(self, transaction: Transaction, store: DocumentStore, *, allow_negative_stock: bool = False) -> None:
        self.transaction = transaction
        self.store = store
        self.allow_negative_stock = allow_negative_stock
        self._products: Dict[str, ProductRecord] = {}
        self._locations: Dict[str, Dict[str, Decimal]] = {}
        self._orders: Dict[str, PurchaseOrderRecord] = {}
        self._dirty_products: Set[str] = set()
        self._dirty_orders: Set[str] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_products(
        self,
        product_ids: Iterable[str],
        *,
        required: bool = True,
        labels: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Read products into the working set.

        Raises:
            NotFoundError: If ``required`` and a product does not exist.
        """
        labels = labels or {}
        for product_id in dict.fromkeys(product_ids):
            if product_id in self._products:
                continue
            snapshot = self.transaction.get(self.store.ref(Collection.PRODUCTS, product_id))
            if not snapshot.exists:
                if required:
                    raise NotFoundError(f"Product not found: {labels.get(product_id) or product_id}")
                log.warning("Product '%s' no longer exists; its stock effects are skipped", product_id)
                continue
            record = deserialize_product(snapshot)
            self._products[product_id] = record
            self._locations[product_id] = dict(record.locations)

    def read_orders(self, po_ids: Iterable[str], *, required: bool = True) -> None:
        """Read purchase orders into the working set.

        Raises:
            NotFoundError: If ``required`` and a purchase order does not exist.
        """
        for po_id in dict.fromkeys(po_ids):
            if po_id in self._orders:
                continue
            snapshot = self.transaction.get(self.store.ref(Collection.PURCHASE_ORDERS, po_id))
            if not snapshot.exists:
                if required:
                    raise NotFoundError(f"Purchase order not found: {po_id}")
                log.warning("Purchase order '%s' no longer exists; its fulfillments are skipped", po_id)
                continue
            self._orders[po_id] = deserialize_purchase_order(snapshot)

    def has_product(self, product_id: str) -> bool:
        return product_id in self._products

    def has_order(self, po_id: str) -> bool:
        return po_id in self._orders

    def product(self, product_id: str) -> ProductRecord:
        return self._products[product_id]

    def order(self, po_id: str) -> PurchaseOrderRecord:
        return self._orders[po_id]

    def balance(self, product_id: str, location: str) -> Decimal:
        return Decimal(self._locations[product_id].get(location, Decimal("0")))

    # ------------------------------------------------------------------
    # Stock changes
    # ------------------------------------------------------------------

    def adjust_stock(
        self,
        product_id: str,
        location: str,
        delta: Decimal,
        *,
        label: str = "",
        enforce: bool = True,
        strict: bool = False,
    ) -> Decimal:
        """Apply ``delta`` to one location balance and return the new balance.

        A debit that would leave the location below zero is rejected when
        ``enforce`` is set, unless negative stock is allowed and the change is
        not ``strict``.

        Raises:
            ValidationError: Reporting the available and requested quantities.
        """
        current = self.balance(product_id, location)
        updated = round_stock(current + delta)
        may_go_negative = self.allow_negative_stock and not strict
        if enforce and delta < 0 and updated < 0 and not may_go_negative:
            label = label or self._products[product_id].name or product_id
            raise ValidationError(
                f'Insufficient stock at "{location}" for {label}. '
                f"Available: {current:.1f}, Requested: {-delta:.1f}"
            )
        self._locations[product_id][location] = updated
        self._dirty_products.add(product_id)
        return updated

    def set_stock(self, product_id: str, location: str, quantity: Decimal) -> Decimal:
        """Replace one location balance, returning the signed change applied."""
        current = self.balance(product_id, location)
        updated = round_stock(quantity)
        self._locations[product_id][location] = updated
        self._dirty_products.add(product_id)
        return round_stock(updated - current)

    # ------------------------------------------------------------------
    # Purchase order changes
    # ------------------------------------------------------------------

    def fulfil(self, po_id: str, product_id: str, quantity: Decimal, invoice_no: str, date: str, *, label: str = "") -> None:
        self._orders[po_id] = purchase_orders.apply_fulfillment(
            self._orders[po_id], product_id, quantity, invoice_no, date, label=label
        )
        self._dirty_orders.add(po_id)

    def unfulfil(self, po_id: str, product_id: str, quantity: Decimal, invoice_no: str) -> None:
        self._orders[po_id] = purchase_orders.reverse_fulfillment(self._orders[po_id], product_id, quantity, invoice_no)
        self._dirty_orders.add(po_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def flush(self, timestamp: str) -> None:
        """Issue the update for every product and purchase order that changed."""
        for product_id in sorted(self._dirty_products):
            self.transaction.update(
                self.store.ref(Collection.PRODUCTS, product_id),
                {**stock_fields(self._locations[product_id]), "updatedAt": timestamp},
            )
        for po_id in sorted(self._dirty_orders):
            self.transaction.update(
                self.store.ref(Collection.PURCHASE_ORDERS, po_id),
                {**serialize_purchase_order_items(self._orders[po_id]), "updatedAt": timestamp},
            )
        log.debug(
            "Flushed %d product and %d purchase order updates",
            len(self._dirty_products),
            len(self._dirty_orders),
        )
