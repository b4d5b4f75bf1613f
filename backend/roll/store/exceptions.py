"""Errors raised by document and object store backends."""

from __future__ import annotations


class StoreError(Exception):
    """Base class for storage failures surfaced to callers."""

    reason: str = "store_error"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


class DocumentNotFound(StoreError):
    reason = "document_not_found"


class StoreUnavailable(StoreError):
    reason = "unavailable"


class TransactionConflict(StoreError):
    """A document read inside a transaction changed before commit."""

    reason = "conflict"


class TransactionAborted(StoreError):
    """The transaction kept conflicting and ran out of attempts."""

    reason = "aborted"


class ObjectStoreError(StoreError):
    reason = "object_store_error"
