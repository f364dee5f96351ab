"""MongoDB-backed document store built on motor.

Documents keep their id in ``_id``. Batches with more than one write run
inside a multi-document transaction (replica sets only); with
``transactions=False`` such batches are refused, never applied piecemeal.
Listeners re-run their query whenever a change stream reports activity on
the collection, falling back to polling when the deployment has no change
streams.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from .base import (
    DOCUMENT_ID,
    DocumentSnapshot,
    DocumentStore,
    ErrorCallback,
    FieldFilter,
    ListenerRegistration,
    Query,
    QuerySnapshot,
    SnapshotCallback,
    WriteKind,
    WriteOp,
    diff_snapshots,
    invoke,
)
from .exceptions import (
    AlreadyExistsError,
    DocumentNotFoundError,
    PermissionDeniedError,
    StoreError,
    TransientStoreError,
)
from .fields import flatten, resolve_document, to_mongo_update

LOGGER = logging.getLogger(__name__)

_UNAUTHORIZED_CODES = {13, 18, 8000}
# "The $changeStream stage is only supported on replica sets"
_NO_CHANGE_STREAM_CODES = {40573, 40324}


def translate_error(exc: Exception) -> StoreError:
    if isinstance(exc, StoreError):
        return exc
    if isinstance(exc, DuplicateKeyError):
        return AlreadyExistsError(str(exc))
    if isinstance(exc, (AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError)):
        return TransientStoreError(str(exc))
    if isinstance(exc, OperationFailure) and exc.code in _UNAUTHORIZED_CODES:
        return PermissionDeniedError(str(exc))
    return StoreError(str(exc))


def _mongo_field(path: str) -> str:
    return "_id" if path == DOCUMENT_ID else path


def _clause(flt: FieldFilter) -> Dict[str, Any]:
    name = _mongo_field(flt.field)
    op = flt.op
    if op == "==":
        return {name: flt.value}
    if op == "!=":
        return {name: {"$ne": flt.value, "$exists": True}}
    if op in ("<", "<=", ">", ">="):
        return {name: {{"<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte"}[op]: flt.value}}
    if op == "in":
        return {name: {"$in": list(flt.value)}}
    if op == "not-in":
        return {name: {"$nin": list(flt.value), "$exists": True}}
    if op == "array-contains":
        return {name: flt.value}
    if op == "array-contains-any":
        return {name: {"$in": list(flt.value)}}
    if op == "array-not-contains":
        return {name: {"$ne": flt.value}}
    raise ValueError(f"unsupported filter operator: {op!r}")


def build_filter(query: Query) -> Dict[str, Any]:
    clauses: List[Dict[str, Any]] = [_clause(flt) for flt in query.filters]
    for order in query.orders:
        if order.field != DOCUMENT_ID:
            clauses.append({order.field: {"$exists": True}})

    if query.cursor is not None:
        fields = [(_mongo_field(order.field), order.descending) for order in query.orders]
        fields.append(("_id", query.id_descending))
        alternatives: List[Dict[str, Any]] = []
        for index, (name, descending) in enumerate(fields):
            branch: Dict[str, Any] = {}
            for prev_index in range(index):
                branch[fields[prev_index][0]] = query.cursor[prev_index]
            branch[name] = {"$lt" if descending else "$gt": query.cursor[index]}
            alternatives.append(branch)
        clauses.append({"$or": alternatives})

    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def build_sort(query: Query) -> List[tuple]:
    sort = [(_mongo_field(order.field), DESCENDING if order.descending else ASCENDING) for order in query.orders]
    if not any(name == "_id" for name, _ in sort):
        sort.append(("_id", DESCENDING if query.id_descending else ASCENDING))
    return sort


def _to_snapshot(collection: str, document: Dict[str, Any]) -> DocumentSnapshot:
    doc = dict(document)
    doc_id = str(doc.pop("_id"))
    return DocumentSnapshot(collection, doc_id, doc)


class _MongoListener(ListenerRegistration):
    def __init__(
        self,
        store: "MongoDocumentStore",
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self._store = store
        self._query = query
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._last: List[DocumentSnapshot] = []
        self._primed = False
        self._active = True
        self._task = asyncio.create_task(self._run())

    @property
    def active(self) -> bool:
        return self._active

    async def _emit(self) -> None:
        current = await self._store.query(self._query)
        changes = diff_snapshots(self._last, current)
        if self._primed and not changes:
            return
        self._primed = True
        self._last = current
        await invoke(self._on_snapshot, QuerySnapshot(tuple(current), changes))

    async def _watch(self) -> bool:
        """Follow the change stream; returns False when change streams are unavailable."""
        collection = self._store.collection_for(self._query.collection)
        watch = getattr(collection, "watch", None)
        if watch is None or not self._store.change_streams:
            return False
        try:
            async with watch(full_document="updateLookup") as stream:
                async for _change in stream:
                    await self._emit()
        except (NotImplementedError, TypeError):
            return False
        except OperationFailure as exc:
            if exc.code in _NO_CHANGE_STREAM_CODES:
                return False
            raise
        return True

    async def _poll(self) -> None:
        interval = self._store.poll_interval
        while self._active:
            await asyncio.sleep(interval)
            await self._emit()

    async def _run(self) -> None:
        try:
            await self._emit()
            if not await self._watch():
                LOGGER.debug("Change streams unavailable for %s; polling", self._query.collection)
                await self._poll()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = translate_error(exc) if isinstance(exc, PyMongoError) else exc
            LOGGER.error("Mongo listener on %s stopped: %s", self._query.collection, error)
            self._active = False
            if self._on_error is not None:
                await invoke(self._on_error, error)

    def remove(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._listeners.discard(self)
        if asyncio.current_task() is not self._task:
            self._task.cancel()


class MongoDocumentStore(DocumentStore):
    """Thin :class:`DocumentStore` over a motor database."""

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        *,
        transactions: bool = True,
        change_streams: bool = True,
        poll_interval: float = 1.0,
    ) -> None:
        self._database = database
        self.transactions = transactions
        self.change_streams = change_streams
        self.poll_interval = poll_interval
        self._listeners: "set[_MongoListener]" = set()

    @property
    def database(self) -> AsyncIOMotorDatabase:
        return self._database

    def collection_for(self, name: str) -> AsyncIOMotorCollection:
        return self._database[name]

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        try:
            document = await self.collection_for(collection).find_one({"_id": doc_id})
        except PyMongoError as exc:
            raise translate_error(exc) from exc
        if document is None:
            return DocumentSnapshot(collection, doc_id, None)
        return _to_snapshot(collection, document)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        cursor = self.collection_for(query.collection).find(build_filter(query)).sort(build_sort(query))
        if query.limit_count is not None:
            cursor = cursor.limit(query.limit_count)
        try:
            return [_to_snapshot(query.collection, document) async for document in cursor]
        except PyMongoError as exc:
            raise translate_error(exc) from exc

    async def _apply(self, op: WriteOp, session=None) -> None:
        collection = self.collection_for(op.collection)
        if op.kind is WriteKind.CREATE:
            await collection.insert_one({**resolve_document(op.data), "_id": op.doc_id}, session=session)
        elif op.kind is WriteKind.SET:
            if op.merge:
                update = to_mongo_update(flatten(op.data))
                if update:
                    await collection.update_one({"_id": op.doc_id}, update, upsert=True, session=session)
            else:
                await collection.replace_one(
                    {"_id": op.doc_id},
                    resolve_document(op.data),
                    upsert=True,
                    session=session,
                )
        elif op.kind is WriteKind.UPDATE:
            update = to_mongo_update(op.data)
            if not update:
                return
            result = await collection.update_one({"_id": op.doc_id}, update, session=session)
            if result.matched_count == 0:
                raise DocumentNotFoundError(f"{op.collection}/{op.doc_id} not found")
        elif op.kind is WriteKind.DELETE:
            await collection.delete_one({"_id": op.doc_id}, session=session)

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        if len(ops) > 1 and not self.transactions:
            raise StoreError(
                f"refusing a {len(ops)}-write batch without transactions; enable MONGO_TRANSACTIONS on a replica set"
            )
        try:
            if len(ops) > 1:
                async with await self._database.client.start_session() as session:
                    async with session.start_transaction():
                        for op in ops:
                            await self._apply(op, session=session)
                return
            for op in ops:
                await self._apply(op)
        except PyMongoError as exc:
            raise translate_error(exc) from exc

    def listen(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerRegistration:
        listener = _MongoListener(self, query, on_snapshot, on_error)
        self._listeners.add(listener)
        return listener

    async def close(self) -> None:
        for listener in list(self._listeners):
            listener.remove()


__all__ = ["MongoDocumentStore", "build_filter", "build_sort", "translate_error"]
