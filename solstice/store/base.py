"""Abstract document store with realtime listeners.

The store models a multi-writer, eventually consistent backend that offers
per-document atomic writes, single-call atomic batches and change listeners.
Every collaborator in the sync core talks to it through :class:`DocumentStore`.
"""

from __future__ import annotations

import abc
import copy
import enum
import functools
import inspect
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .fields import get_path, has_path

LOGGER = logging.getLogger(__name__)

# Pseudo field path that addresses the document id in filters and cursors
DOCUMENT_ID = "__id__"

FILTER_OPERATORS = (
    "==",
    "!=",
    "<",
    "<=",
    ">",
    ">=",
    "in",
    "not-in",
    "array-contains",
    "array-contains-any",
    "array-not-contains",
)


class ChangeType(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class DocumentSnapshot:
    collection: str
    id: str
    data: Optional[Dict[str, Any]] = None

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, path: str, default: Any = None) -> Any:
        if path == DOCUMENT_ID:
            return self.id
        if self.data is None:
            return default
        return get_path(self.data, path, default)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data) if self.data is not None else {}


@dataclass(frozen=True)
class DocumentChange:
    type: ChangeType
    document: DocumentSnapshot


@dataclass(frozen=True)
class QuerySnapshot:
    documents: Tuple[DocumentSnapshot, ...]
    changes: Tuple[DocumentChange, ...]

    def __len__(self) -> int:
        return len(self.documents)

    def __iter__(self):
        return iter(self.documents)


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Order:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Query:
    """Immutable query description, evaluated by a :class:`DocumentStore`."""

    collection: str
    filters: Tuple[FieldFilter, ...] = ()
    orders: Tuple[Order, ...] = ()
    limit_count: Optional[int] = None
    cursor: Optional[Tuple[Any, ...]] = None

    def where(self, field_path: str, op: str, value: Any) -> "Query":
        if op not in FILTER_OPERATORS:
            raise ValueError(f"unsupported filter operator: {op!r}")
        if op in ("in", "not-in", "array-contains-any"):
            value = tuple(value)
        return replace(self, filters=self.filters + (FieldFilter(field_path, op, value),))

    def order_by(self, field_path: str, *, descending: bool = False) -> "Query":
        return replace(self, orders=self.orders + (Order(field_path, descending),))

    def limit(self, count: int) -> "Query":
        if count <= 0:
            raise ValueError("limit must be positive")
        return replace(self, limit_count=count)

    def start_after(self, snapshot: DocumentSnapshot) -> "Query":
        """Resume after ``snapshot`` using its order-field values and id."""
        values = tuple(snapshot.get(order.field) for order in self.orders)
        return replace(self, cursor=values + (snapshot.id,))

    @property
    def id_descending(self) -> bool:
        # the implicit id tie-break follows the direction of the last explicit order
        return self.orders[-1].descending if self.orders else False

    # in-process evaluation, shared by the memory backend and by tests

    def matches(self, doc_id: str, data: Mapping[str, Any]) -> bool:
        snapshot = DocumentSnapshot(self.collection, doc_id, dict(data))
        for order in self.orders:
            if order.field != DOCUMENT_ID and not has_path(data, order.field):
                return False
        return all(_filter_matches(snapshot, flt) for flt in self.filters)

    def sort_values(self, snapshot: DocumentSnapshot) -> Tuple[Any, ...]:
        return tuple(snapshot.get(order.field) for order in self.orders) + (snapshot.id,)

    def compare(self, left: Sequence[Any], right: Sequence[Any]) -> int:
        directions = [order.descending for order in self.orders] + [self.id_descending]
        for a, b, descending in zip(left, right, directions):
            result = compare_values(a, b)
            if result:
                return -result if descending else result
        return 0

    def evaluate(self, snapshots: Sequence[DocumentSnapshot]) -> List[DocumentSnapshot]:
        matched = [snap for snap in snapshots if snap.data is not None and self.matches(snap.id, snap.data)]
        key = functools.cmp_to_key(lambda a, b: self.compare(self.sort_values(a), self.sort_values(b)))
        matched.sort(key=key)
        if self.cursor is not None:
            matched = [snap for snap in matched if self.compare(self.sort_values(snap), self.cursor) > 0]
        if self.limit_count is not None:
            matched = matched[: self.limit_count]
        return matched


_TYPE_RANK = (
    (type(None),),
    (bool,),
    (int, float),
    (str,),
    (datetime,),
    (list, tuple),
    (dict,),
)


def _rank(value: Any) -> int:
    for index, types in enumerate(_TYPE_RANK):
        if isinstance(value, types):
            return index
    return len(_TYPE_RANK)


def compare_values(a: Any, b: Any) -> int:
    rank_a, rank_b = _rank(a), _rank(b)
    if rank_a != rank_b:
        return -1 if rank_a < rank_b else 1
    try:
        if a == b:
            return 0
        return -1 if a < b else 1
    except TypeError:
        return 0


def _comparable(a: Any, b: Any) -> bool:
    return a is not None and b is not None and _rank(a) == _rank(b)


def _filter_matches(snapshot: DocumentSnapshot, flt: FieldFilter) -> bool:
    present = flt.field == DOCUMENT_ID or (snapshot.data is not None and has_path(snapshot.data, flt.field))
    value = snapshot.get(flt.field)
    op = flt.op
    if op == "==":
        return present and value == flt.value
    if op == "!=":
        return present and value != flt.value
    if op in ("<", "<=", ">", ">="):
        if not present or not _comparable(value, flt.value):
            return False
        result = compare_values(value, flt.value)
        return {
            "<": result < 0,
            "<=": result <= 0,
            ">": result > 0,
            ">=": result >= 0,
        }[op]
    if op == "in":
        return present and value in flt.value
    if op == "not-in":
        return present and value not in flt.value
    if op == "array-contains":
        return isinstance(value, list) and flt.value in value
    if op == "array-contains-any":
        return isinstance(value, list) and any(item in value for item in flt.value)
    if op == "array-not-contains":
        return not isinstance(value, list) or flt.value not in value
    raise ValueError(f"unsupported filter operator: {op!r}")


def diff_snapshots(
    previous: Sequence[DocumentSnapshot],
    current: Sequence[DocumentSnapshot],
) -> Tuple[DocumentChange, ...]:
    """Describe how ``current`` differs from ``previous`` as added/modified/removed changes."""
    before = {snap.id: snap for snap in previous}
    after_ids = {snap.id for snap in current}
    changes: List[DocumentChange] = []
    for snap in previous:
        if snap.id not in after_ids:
            changes.append(DocumentChange(ChangeType.REMOVED, snap))
    for snap in current:
        old = before.get(snap.id)
        if old is None:
            changes.append(DocumentChange(ChangeType.ADDED, snap))
        elif old.data != snap.data:
            changes.append(DocumentChange(ChangeType.MODIFIED, snap))
    return tuple(changes)


class WriteKind(str, enum.Enum):
    SET = "set"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class WriteOp:
    kind: WriteKind
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class WriteBatch:
    """Collects writes and commits them atomically through the owning store."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._ops: List[WriteOp] = []
        self._committed = False

    @property
    def operations(self) -> Tuple[WriteOp, ...]:
        return tuple(self._ops)

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False) -> "WriteBatch":
        self._ops.append(WriteOp(WriteKind.SET, collection, doc_id, dict(data), merge))
        return self

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> "WriteBatch":
        self._ops.append(WriteOp(WriteKind.CREATE, collection, doc_id, dict(data)))
        return self

    def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]) -> "WriteBatch":
        self._ops.append(WriteOp(WriteKind.UPDATE, collection, doc_id, dict(updates)))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(WriteOp(WriteKind.DELETE, collection, doc_id))
        return self

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("batch already committed")
        self._committed = True
        if self._ops:
            await self._store.commit(self._ops)


SnapshotCallback = Callable[[QuerySnapshot], Union[None, Awaitable[None]]]
DocumentCallback = Callable[[DocumentSnapshot], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Union[None, Awaitable[None]]]


async def invoke(callback: Callable[..., Any], *args: Any) -> None:
    """Call a sync or async callback."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ListenerRegistration(abc.ABC):
    @abc.abstractmethod
    def remove(self) -> None:
        """Detach the listener. Safe to call more than once."""

    @property
    @abc.abstractmethod
    def active(self) -> bool:
        ...


class DocumentStore(abc.ABC):
    """Async document store interface shared by the memory and MongoDB backends."""

    def collection(self, name: str) -> Query:
        return Query(name)

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    @abc.abstractmethod
    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        ...

    @abc.abstractmethod
    async def query(self, query: Query) -> List[DocumentSnapshot]:
        ...

    @abc.abstractmethod
    async def commit(self, ops: Sequence[WriteOp]) -> None:
        """Apply ``ops`` atomically: all of them or none."""

    @abc.abstractmethod
    def listen(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerRegistration:
        ...

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False) -> None:
        await self.commit([WriteOp(WriteKind.SET, collection, doc_id, dict(data), merge)])

    async def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Insert ``doc_id`` only if it is absent; raises ``AlreadyExistsError`` otherwise."""
        await self.commit([WriteOp(WriteKind.CREATE, collection, doc_id, dict(data))])

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = self.new_id()
        await self.create(collection, doc_id, data)
        return doc_id

    async def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]) -> None:
        await self.commit([WriteOp(WriteKind.UPDATE, collection, doc_id, dict(updates))])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.commit([WriteOp(WriteKind.DELETE, collection, doc_id)])

    def listen_document(
        self,
        collection: str,
        doc_id: str,
        on_snapshot: DocumentCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerRegistration:
        query = Query(collection).where(DOCUMENT_ID, "==", doc_id)

        async def _forward(snapshot: QuerySnapshot) -> None:
            document = snapshot.documents[0] if snapshot.documents else DocumentSnapshot(collection, doc_id, None)
            await invoke(on_snapshot, document)

        return self.listen(query, _forward, on_error)

    async def close(self) -> None:
        return None


__all__ = [
    "ChangeType",
    "DOCUMENT_ID",
    "DocumentChange",
    "DocumentSnapshot",
    "DocumentStore",
    "FieldFilter",
    "ListenerRegistration",
    "Order",
    "Query",
    "QuerySnapshot",
    "WriteBatch",
    "WriteKind",
    "WriteOp",
    "compare_values",
    "diff_snapshots",
    "invoke",
]
