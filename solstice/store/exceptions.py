"""Custom exceptions for the document store layer."""

from __future__ import annotations


class StoreError(RuntimeError):
    """Base exception raised when a document store operation fails."""


class TransientStoreError(StoreError):
    """Raised for network / availability failures; callers may retry by hand."""


class PermissionDeniedError(StoreError):
    """Raised when the backend rejects the caller's credentials or access rights."""


class DocumentNotFoundError(StoreError):
    """Raised when an update targets a document that does not exist."""


class AlreadyExistsError(StoreError):
    """Raised by ``create`` when a document with the same id is already stored."""


class DocumentDecodeError(StoreError):
    """Raised when a stored document does not have the expected shape."""

    def __init__(self, collection: str, doc_id: str, reason: str) -> None:
        super().__init__(f"cannot decode {collection}/{doc_id}: {reason}")
        self.collection = collection
        self.doc_id = doc_id
        self.reason = reason


__all__ = [
    "AlreadyExistsError",
    "DocumentDecodeError",
    "DocumentNotFoundError",
    "PermissionDeniedError",
    "StoreError",
    "TransientStoreError",
]
