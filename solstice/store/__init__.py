from .base import (
    DOCUMENT_ID,
    ChangeType,
    DocumentChange,
    DocumentSnapshot,
    DocumentStore,
    ListenerRegistration,
    Query,
    QuerySnapshot,
    WriteBatch,
)
from .exceptions import (
    AlreadyExistsError,
    DocumentDecodeError,
    DocumentNotFoundError,
    PermissionDeniedError,
    StoreError,
    TransientStoreError,
)
from .fields import DELETE_FIELD, ArrayRemove, ArrayUnion, Increment
from .memory import MemoryDocumentStore

__all__ = [
    "AlreadyExistsError",
    "ArrayRemove",
    "ArrayUnion",
    "ChangeType",
    "DELETE_FIELD",
    "DOCUMENT_ID",
    "DocumentChange",
    "DocumentDecodeError",
    "DocumentNotFoundError",
    "DocumentSnapshot",
    "DocumentStore",
    "Increment",
    "ListenerRegistration",
    "MemoryDocumentStore",
    "PermissionDeniedError",
    "Query",
    "QuerySnapshot",
    "StoreError",
    "TransientStoreError",
    "WriteBatch",
]
