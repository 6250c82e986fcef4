"""Transactional document store used by every ledger operation.

The store keeps schema-less documents grouped into named collections and
offers two kinds of access:

1. Planning reads (:meth:`DocumentStore.get` and :meth:`DocumentStore.query`)
   that observe the latest committed state without any isolation guarantee.
2. Atomic units of work via :meth:`DocumentStore.run_transaction`. The
   transaction body reads every document it needs, then issues buffered
   writes. Commit is optimistic: when any document read by the body has been
   modified by a concurrent commit, the buffered writes are discarded and the
   body is run again from scratch. Exhausting the attempt budget surfaces a
   :class:`~inventory_ledger.errors.ConflictError`.

Exceptions raised by the body abort the attempt before anything is applied,
so callers never observe partially committed state.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar, Union

from . import log
from .constants import DEFAULT_MAX_TRANSACTION_ATTEMPTS
from .errors import ConflictError, NotFoundError, TransactionUsageError


T = TypeVar("T")
CollectionName = Union[str, Enum]


def _collection_name(collection: CollectionName) -> str:
    return collection.value if isinstance(collection, Enum) else str(collection)


@dataclass(frozen=True)
class DocumentRef:
    """Address of a single document inside a collection."""

    collection: str
    id: str

    def __str__(self) -> str:
        return f"{self.collection}/{self.id}"


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time copy of a document as returned by a read."""

    ref: DocumentRef
    data: Optional[Dict[str, Any]]
    version: int

    @property
    def id(self) -> str:
        return self.ref.id

    @property
    def exists(self) -> bool:
        return self.data is not None

    def to_dict(self) -> Dict[str, Any]:
        """Return a private deep copy of the document body."""

        if self.data is None:
            raise NotFoundError(f"Document not found: {self.ref}")
        return copy.deepcopy(self.data)


@dataclass(frozen=True)
class StoredDocument:
    """Committed document body paired with the commit sequence that wrote it."""

    version: int
    data: Dict[str, Any]


@dataclass(frozen=True)
class _PendingWrite:
    kind: str
    ref: DocumentRef
    data: Optional[Dict[str, Any]] = None


class _StaleRead(Exception):
    """Internal signal that a read document changed before commit."""


@dataclass
class Transaction:
    """Buffered unit of work handed to a transaction body.

    Reads are tracked with the version observed so the commit can detect
    concurrent modification. Writes are only recorded here and applied by
    the store once the body has returned successfully.
    """

    store: "DocumentStore"
    _reads: Dict[DocumentRef, int] = field(default_factory=dict, repr=False)
    _writes: List[_PendingWrite] = field(default_factory=list, repr=False)

    def get(self, ref: DocumentRef) -> DocumentSnapshot:
        if self._writes:
            raise TransactionUsageError(
                f"Read of {ref} issued after a write; all reads must precede writes"
            )
        snapshot = self.store._read(ref)
        self._reads.setdefault(ref, snapshot.version)
        return snapshot

    def get_all(self, refs: Iterable[DocumentRef]) -> Dict[DocumentRef, DocumentSnapshot]:
        return {ref: self.get(ref) for ref in refs}

    def set(self, ref: DocumentRef, data: Mapping[str, Any]) -> None:
        self._writes.append(_PendingWrite("set", ref, copy.deepcopy(dict(data))))

    def create(self, ref: DocumentRef, data: Mapping[str, Any]) -> None:
        self._writes.append(_PendingWrite("create", ref, copy.deepcopy(dict(data))))

    def update(self, ref: DocumentRef, fields: Mapping[str, Any]) -> None:
        if not fields:
            raise TransactionUsageError(f"Empty update issued for {ref}")
        self._writes.append(_PendingWrite("update", ref, copy.deepcopy(dict(fields))))

    def delete(self, ref: DocumentRef) -> None:
        self._writes.append(_PendingWrite("delete", ref))

    @property
    def write_count(self) -> int:
        return len(self._writes)


class DocumentStore:
    """In-memory document database with optimistic transactions.

    Args:
        documents: Optional initial contents keyed by collection then
            document id, as produced by :meth:`dump`.
        max_attempts: Number of times a transaction body is run before
            contention is reported as :class:`ConflictError`.
        backoff_base: Seconds to wait before the second attempt; doubles on
            each further retry.
        clock: Callable returning the current time, used for server
            timestamps.
        id_factory: Callable producing new unique document ids.
    """

    def __init__(
        self,
        documents: Optional[Mapping[str, Mapping[str, StoredDocument]]] = None,
        *,
        max_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS,
        backoff_base: float = 0.05,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._clock = clock or (lambda: datetime.now(UTC))
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex[:20])
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, StoredDocument]] = {}
        self._sequence = 0

        for collection, docs in (documents or {}).items():
            bucket = self._collections.setdefault(_collection_name(collection), {})
            for doc_id, stored in docs.items():
                bucket[str(doc_id)] = StoredDocument(stored.version, copy.deepcopy(stored.data))
                self._sequence = max(self._sequence, stored.version)

    # ------------------------------------------------------------------
    # References, ids and clock
    # ------------------------------------------------------------------

    def ref(self, collection: CollectionName, doc_id: str) -> DocumentRef:
        return DocumentRef(_collection_name(collection), str(doc_id))

    def new_ref(self, collection: CollectionName) -> DocumentRef:
        """Allocate a reference carrying a fresh store-generated id."""

        return DocumentRef(_collection_name(collection), self._id_factory())

    def server_timestamp(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------
    # Planning reads
    # ------------------------------------------------------------------

    def get(self, ref: DocumentRef) -> DocumentSnapshot:
        return self._read(ref)

    def query(self, collection: CollectionName, **equals: Any) -> List[DocumentSnapshot]:
        """Return committed documents whose fields equal every given value.

        Results keep insertion order. The read is not isolated from
        concurrent commits and must not be trusted inside a transaction.
        """

        name = _collection_name(collection)
        with self._lock:
            bucket = self._collections.get(name, {})
            matches = [
                DocumentSnapshot(DocumentRef(name, doc_id), copy.deepcopy(stored.data), stored.version)
                for doc_id, stored in bucket.items()
                if all(stored.data.get(key) == value for key, value in equals.items())
            ]
        return matches

    def count(self, collection: CollectionName, **equals: Any) -> int:
        return len(self.query(collection, **equals))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def run_transaction(self, body: Callable[[Transaction], T], *, max_attempts: Optional[int] = None) -> T:
        """Run ``body`` atomically, retrying on concurrent modification.

        Returns:
            Whatever ``body`` returned on the attempt that committed.

        Raises:
            ConflictError: When every attempt lost a write conflict, or when a
                ``create`` targets an existing document.
            NotFoundError: When an ``update`` targets a missing document.
            Exception: Anything raised by ``body`` propagates unchanged and
                nothing is written.
        """

        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            transaction = Transaction(self)
            result = body(transaction)
            try:
                self._commit(transaction)
            except _StaleRead as exc:
                log.warning("Transaction attempt %d/%d aborted: %s", attempt, attempts, exc)
                if attempt < attempts and self.backoff_base > 0:
                    time.sleep(self.backoff_base * (2 ** (attempt - 1)))
                continue
            return result

        raise ConflictError(
            f"Transaction aborted after {attempts} attempts due to concurrent modification"
        )

    def _read(self, ref: DocumentRef) -> DocumentSnapshot:
        with self._lock:
            stored = self._collections.get(ref.collection, {}).get(ref.id)
            if stored is None:
                return DocumentSnapshot(ref, None, 0)
            return DocumentSnapshot(ref, copy.deepcopy(stored.data), stored.version)

    def _commit(self, transaction: Transaction) -> None:
        with self._lock:
            for ref, seen_version in transaction._reads.items():
                stored = self._collections.get(ref.collection, {}).get(ref.id)
                current_version = stored.version if stored is not None else 0
                if current_version != seen_version:
                    raise _StaleRead(f"{ref} changed (read v{seen_version}, now v{current_version})")

            staged: Dict[DocumentRef, Optional[Dict[str, Any]]] = {}
            for write in transaction._writes:
                if write.ref in staged:
                    current = staged[write.ref]
                else:
                    stored = self._collections.get(write.ref.collection, {}).get(write.ref.id)
                    current = copy.deepcopy(stored.data) if stored is not None else None

                if write.kind == "create":
                    if current is not None:
                        raise ConflictError(f"Document already exists: {write.ref}")
                    staged[write.ref] = write.data
                elif write.kind == "set":
                    staged[write.ref] = write.data
                elif write.kind == "update":
                    if current is None:
                        raise NotFoundError(f"Cannot update missing document: {write.ref}")
                    staged[write.ref] = {**current, **(write.data or {})}
                else:
                    staged[write.ref] = None

            if not staged:
                return

            self._sequence += 1
            for ref, data in staged.items():
                bucket = self._collections.setdefault(ref.collection, {})
                if data is None:
                    bucket.pop(ref.id, None)
                else:
                    bucket[ref.id] = StoredDocument(self._sequence, data)
            log.debug("Committed %d document writes at sequence %d", len(staged), self._sequence)

    # ------------------------------------------------------------------
    # Persistence support
    # ------------------------------------------------------------------

    def collections(self) -> List[str]:
        with self._lock:
            return list(self._collections)

    def dump(self) -> Dict[str, Dict[str, StoredDocument]]:
        """Return a deep copy of every committed document keyed by collection."""

        with self._lock:
            return {
                name: {
                    doc_id: StoredDocument(stored.version, copy.deepcopy(stored.data))
                    for doc_id, stored in bucket.items()
                }
                for name, bucket in self._collections.items()
            }
