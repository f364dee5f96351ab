"""In-process document store used by tests and local runs.

Each operation yields to the event loop (optionally sleeping ``latency``
seconds) before it touches state, so concurrent coroutines interleave the way
they would against a remote backend. Batches are validated in full before any
document changes, which keeps them atomic. Listener notifications are queued
per registration and delivered in commit order by a dedicated task.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from .base import (
    DocumentSnapshot,
    DocumentStore,
    ErrorCallback,
    ListenerRegistration,
    Query,
    QuerySnapshot,
    SnapshotCallback,
    WriteKind,
    WriteOp,
    diff_snapshots,
    invoke,
)
from .exceptions import AlreadyExistsError, DocumentNotFoundError
from .fields import apply_update, flatten, resolve_document

LOGGER = logging.getLogger(__name__)

FaultHook = Callable[[WriteOp], Optional[Exception]]


class _MemoryListener(ListenerRegistration):
    def __init__(
        self,
        store: "MemoryDocumentStore",
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self._store = store
        self.query = query
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._queue: "asyncio.Queue[QuerySnapshot]" = asyncio.Queue()
        self._last: List[DocumentSnapshot] = []
        self._primed = False
        self._delivering = False
        self._active = True
        self._task = asyncio.create_task(self._run())

    @property
    def active(self) -> bool:
        return self._active

    @property
    def busy(self) -> bool:
        return self._active and (not self._queue.empty() or self._delivering)

    def refresh(self) -> None:
        """Recompute the query and enqueue a snapshot when the result changed."""
        if not self._active:
            return
        current = self.query.evaluate(self._store._snapshots(self.query.collection))
        changes = diff_snapshots(self._last, current)
        if self._primed and not changes:
            return
        self._primed = True
        self._last = current
        self._queue.put_nowait(QuerySnapshot(tuple(current), changes))

    async def _run(self) -> None:
        while self._active:
            snapshot = await self._queue.get()
            self._delivering = True
            try:
                await invoke(self._on_snapshot, snapshot)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.error("Listener on %s failed handling snapshot: %s", self.query.collection, exc)
                if self._on_error is not None:
                    try:
                        await invoke(self._on_error, exc)
                    except Exception as nested:  # pragma: no cover - best-effort logging
                        LOGGER.error("Listener error handler failed: %s", nested)
            finally:
                self._delivering = False
                self._queue.task_done()

    async def idle(self) -> None:
        await self._queue.join()

    async def fail(self, exc: Exception) -> None:
        """Deliver ``exc`` to the error callback and detach, as a revoked backend listener does."""
        self.remove()
        if self._on_error is not None:
            await invoke(self._on_error, exc)

    def remove(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._listeners.discard(self)
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        # a callback may detach its own listener; let it finish instead of cancelling itself
        if asyncio.current_task() is not self._task:
            self._task.cancel()


class MemoryDocumentStore(DocumentStore):
    def __init__(self, *, latency: float = 0.0) -> None:
        self._latency = latency
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: "set[_MemoryListener]" = set()
        # Tests install a hook to make selected writes fail
        self.fault: Optional[FaultHook] = None
        self.commit_count = 0

    async def _tick(self) -> None:
        await asyncio.sleep(self._latency)

    def _snapshots(self, collection: str) -> List[DocumentSnapshot]:
        docs = self._collections.get(collection, {})
        return [DocumentSnapshot(collection, doc_id, copy.deepcopy(data)) for doc_id, data in docs.items()]

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        await self._tick()
        data = self._collections.get(collection, {}).get(doc_id)
        return DocumentSnapshot(collection, doc_id, copy.deepcopy(data) if data is not None else None)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        await self._tick()
        return query.evaluate(self._snapshots(query.collection))

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        await self._tick()
        if self.fault is not None:
            for op in ops:
                exc = self.fault(op)
                if exc is not None:
                    raise exc

        staged: Dict[tuple, Optional[Dict[str, Any]]] = {}

        def _current(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
            key = (collection, doc_id)
            if key in staged:
                return staged[key]
            return self._collections.get(collection, {}).get(doc_id)

        for op in ops:
            existing = _current(op.collection, op.doc_id)
            if op.kind is WriteKind.CREATE:
                if existing is not None:
                    raise AlreadyExistsError(f"{op.collection}/{op.doc_id} already exists")
                staged[(op.collection, op.doc_id)] = resolve_document(op.data)
            elif op.kind is WriteKind.SET:
                if op.merge:
                    staged[(op.collection, op.doc_id)] = apply_update(existing or {}, flatten(op.data))
                else:
                    staged[(op.collection, op.doc_id)] = resolve_document(op.data)
            elif op.kind is WriteKind.UPDATE:
                if existing is None:
                    raise DocumentNotFoundError(f"{op.collection}/{op.doc_id} not found")
                staged[(op.collection, op.doc_id)] = apply_update(existing, op.data)
            elif op.kind is WriteKind.DELETE:
                staged[(op.collection, op.doc_id)] = None

        touched = set()
        for (collection, doc_id), data in staged.items():
            docs = self._collections.setdefault(collection, {})
            if data is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = data
            touched.add(collection)
        self.commit_count += 1

        for listener in list(self._listeners):
            if listener.query.collection in touched:
                listener.refresh()

    def listen(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerRegistration:
        listener = _MemoryListener(self, query, on_snapshot, on_error)
        self._listeners.add(listener)
        listener.refresh()
        return listener

    async def settle(self, rounds: int = 50) -> None:
        """Wait until every listener has delivered all queued snapshots."""
        for _ in range(rounds):
            pending = [listener for listener in list(self._listeners) if listener.busy]
            if not pending:
                # let callbacks that scheduled follow-up work run once more
                await asyncio.sleep(0)
                if not any(listener.busy for listener in list(self._listeners)):
                    return
                continue
            await asyncio.gather(*(listener.idle() for listener in pending))
        LOGGER.warning("MemoryDocumentStore.settle gave up after %s rounds", rounds)

    async def revoke_listeners(self, exc: Exception) -> None:
        """Fail every active listener with ``exc``."""
        for listener in list(self._listeners):
            await listener.fail(exc)

    def dump(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._collections.get(collection, {}))

    async def close(self) -> None:
        for listener in list(self._listeners):
            listener.remove()


__all__ = ["MemoryDocumentStore"]
