"""Exception taxonomy surfaced by the ledger engines and the document store."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every domain failure reported to callers."""


class ValidationError(LedgerError):
    """Raised when input is malformed or would break a ledger invariant."""


class NotFoundError(LedgerError):
    """Raised when a referenced product, purchase order or invoice is unknown."""


class ConflictError(LedgerError):
    """Raised on duplicate keys or when store contention exhausts retries."""


class AuthorizationError(LedgerError):
    """Raised when the caller lacks the role required for an operation."""


class TransactionUsageError(RuntimeError):
    """Raised when a transaction body misuses the store API."""


__all__ = [
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AuthorizationError",
    "TransactionUsageError",
]
