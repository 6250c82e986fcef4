"""Expense ledger fed by stock-in side effects.

Imports and local purchases describe the expenses they imply as
:class:`ExpenseEvent` values instead of writing expense rows themselves.
:func:`record_expenses` turns a batch of events into ``expenses`` documents
in a single transaction of its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import log
from .constants import Collection, ExpenseCategory
from .core_logic import RuntimeContext, require_writer
from .data_manager import round_money


@dataclass(frozen=True)
class ExpenseEvent:
    """An expense implied by a committed stock-in document."""

    date: str
    category: ExpenseCategory
    amount: Decimal
    description: str
    mode: Optional[str] = None
    source_collection: Optional[Collection] = None
    source_id: Optional[str] = None

    def to_document(self, *, user_id: str, timestamp: str) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "date": self.date,
            "category": ExpenseCategory(self.category).value,
            "amount": round_money(self.amount),
            "description": self.description,
            "userId": user_id,
            "createdAt": timestamp,
        }
        if self.mode is not None:
            document["mode"] = self.mode
        if self.source_collection is not None:
            document["sourceCollection"] = Collection(self.source_collection).value
            document["sourceId"] = self.source_id
        return document


def record_expenses(context: RuntimeContext, events: Sequence[ExpenseEvent]) -> Tuple[str, ...]:
    """Write one ``expenses`` document per event, atomically.

    Returns:
        tuple[str, ...]: Ids of the new expense documents, in event order.
    """
    if not events:
        return ()
    require_writer(context)
    store = context.store
    refs = [store.new_ref(Collection.EXPENSES) for _ in events]

    def body(transaction):
        timestamp = store.server_timestamp()
        for ref, event in zip(refs, events):
            transaction.create(ref, event.to_document(user_id=context.caller.user_id, timestamp=timestamp))

    store.run_transaction(body)
    log.info("Recorded %d expense entries", len(refs))
    return tuple(ref.id for ref in refs)


def list_expenses(context: RuntimeContext, category: Optional[ExpenseCategory] = None) -> List[Dict[str, Any]]:
    """Return expense documents newest date first, optionally filtered by category."""
    filters = {"category": ExpenseCategory(category).value} if category is not None else {}
    expenses = [{"id": snapshot.id, **snapshot.to_dict()} for snapshot in context.store.query(Collection.EXPENSES, **filters)]
    return sorted(expenses, key=lambda expense: str(expense.get("date") or ""), reverse=True)
