from __future__ import annotations

from collections.abc import AsyncIterator
from typing import List

import pytest
import pytest_asyncio
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure

from conftest import wait_for
from solstice.config import get_settings
from solstice.db import close_mongo_connection, get_db, get_store
from solstice.db.collections import CHATS_COLLECTION, LIKES_COLLECTION, MESSAGES_COLLECTION, VIDEOS_COLLECTION
from solstice.db.mongo import ensure_chat_indexes, ensure_feed_indexes, ensure_match_indexes
from solstice.store import (
    DELETE_FIELD,
    AlreadyExistsError,
    ArrayRemove,
    ArrayUnion,
    DocumentNotFoundError,
    DocumentSnapshot,
    Increment,
    PermissionDeniedError,
    Query,
    QuerySnapshot,
    StoreError,
    TransientStoreError,
)
from solstice.store.mongo import MongoDocumentStore, build_filter, build_sort, translate_error


@pytest_asyncio.fixture
async def mongo_store(mongo_client) -> AsyncIterator[MongoDocumentStore]:
    store = MongoDocumentStore(
        mongo_client["solstice-test"], transactions=False, change_streams=False, poll_interval=0.01
    )
    yield store
    await store.close()


def test_filter_translation() -> None:
    query = (
        Query("videos")
        .where("creatorId", "in", ["a", "b"])
        .where("likes", ">=", 3)
        .where("tags", "array-contains", "fun")
    )
    assert build_filter(query) == {
        "$and": [
            {"creatorId": {"$in": ["a", "b"]}},
            {"likes": {"$gte": 3}},
            {"tags": "fun"},
        ]
    }
    assert build_filter(Query("videos")) == {}
    assert build_filter(Query("videos").where("__id__", "==", "v1")) == {"_id": "v1"}


def test_cursor_translation_follows_order_direction() -> None:
    query = Query("videos").order_by("score", descending=True).limit(2)
    query = query.start_after(_snapshot("v9", {"score": 7}))
    assert build_filter(query) == {
        "$and": [
            {"score": {"$exists": True}},
            {"$or": [{"score": {"$lt": 7}}, {"score": 7, "_id": {"$lt": "v9"}}]},
        ]
    }
    assert build_sort(query) == [("score", -1), ("_id", -1)]
    assert build_sort(Query("videos")) == [("_id", 1)]


def _snapshot(doc_id, data) -> DocumentSnapshot:
    return DocumentSnapshot("videos", doc_id, data)


def test_error_translation() -> None:
    assert isinstance(translate_error(DuplicateKeyError("dup")), AlreadyExistsError)
    assert isinstance(translate_error(AutoReconnect("down")), TransientStoreError)
    assert isinstance(translate_error(OperationFailure("nope", code=13)), PermissionDeniedError)
    assert type(translate_error(OperationFailure("other", code=2))) is StoreError
    original = TransientStoreError("kept")
    assert translate_error(original) is original


@pytest.mark.asyncio
async def test_crud_against_mongo(mongo_store) -> None:
    await mongo_store.create(LIKES_COLLECTION, "alice_bob", {"likerId": "alice", "likedId": "bob"})
    with pytest.raises(AlreadyExistsError):
        await mongo_store.create(LIKES_COLLECTION, "alice_bob", {"likerId": "alice", "likedId": "bob"})

    snapshot = await mongo_store.get(LIKES_COLLECTION, "alice_bob")
    assert snapshot.to_dict() == {"likerId": "alice", "likedId": "bob"}

    with pytest.raises(DocumentNotFoundError):
        await mongo_store.update(LIKES_COLLECTION, "ghost", {"x": 1})

    await mongo_store.delete(LIKES_COLLECTION, "alice_bob")
    await mongo_store.delete(LIKES_COLLECTION, "alice_bob")
    assert not (await mongo_store.get(LIKES_COLLECTION, "alice_bob")).exists


@pytest.mark.asyncio
async def test_sentinel_updates_against_mongo(mongo_store) -> None:
    await mongo_store.set(
        CHATS_COLLECTION,
        "chat_alice_bob",
        {"unreadCounts": {"alice": 0, "bob": 2}, "typingUsers": ["bob"], "deletedFor": ["x"], "note": "n"},
    )
    await mongo_store.update(
        CHATS_COLLECTION,
        "chat_alice_bob",
        {
            "unreadCounts.alice": Increment(),
            "typingUsers": ArrayUnion("alice", "bob"),
            "deletedFor": ArrayRemove("x"),
            "note": DELETE_FIELD,
        },
    )
    stored = (await mongo_store.get(CHATS_COLLECTION, "chat_alice_bob")).to_dict()
    assert stored == {"unreadCounts": {"alice": 1, "bob": 2}, "typingUsers": ["bob", "alice"], "deletedFor": []}

    await mongo_store.set(CHATS_COLLECTION, "chat_alice_bob", {"unreadCounts": {"bob": 0}}, merge=True)
    merged = (await mongo_store.get(CHATS_COLLECTION, "chat_alice_bob")).to_dict()
    assert merged["unreadCounts"] == {"alice": 1, "bob": 0}


@pytest.mark.asyncio
async def test_paged_query_against_mongo(mongo_store) -> None:
    for index in range(5):
        await mongo_store.set(VIDEOS_COLLECTION, f"v{index}", {"engagementScore": float(index % 3), "creatorId": "c"})

    query = mongo_store.collection(VIDEOS_COLLECTION).order_by("engagementScore", descending=True).limit(2)
    seen: List[str] = []
    page = await mongo_store.query(query)
    while page:
        seen.extend(snap.id for snap in page)
        page = await mongo_store.query(query.start_after(page[-1]))

    assert seen == ["v2", "v4", "v1", "v3", "v0"]


@pytest.mark.asyncio
async def test_multi_write_batch_is_refused_without_transactions(mongo_store) -> None:
    assert not mongo_store.transactions
    batch = mongo_store.batch()
    batch.create(MESSAGES_COLLECTION, "m1", {"chatId": "c-missing", "content": "hi"})
    batch.update(CHATS_COLLECTION, "c-missing", {"lastMessage": "hi"})
    with pytest.raises(StoreError):
        await batch.commit()
    assert not (await mongo_store.get(MESSAGES_COLLECTION, "m1")).exists

    single = mongo_store.batch()
    single.set(CHATS_COLLECTION, "c1", {"participantIds": ["alice", "bob"]})
    await single.commit()
    assert (await mongo_store.get(CHATS_COLLECTION, "c1")).get("participantIds") == ["alice", "bob"]


@pytest.mark.asyncio
async def test_transactions_are_on_by_default(mongo_client) -> None:
    assert get_settings().mongo_transactions is True
    assert MongoDocumentStore(mongo_client["solstice-test"]).transactions is True


@pytest.mark.asyncio
async def test_polling_listener_sees_new_documents(mongo_store) -> None:
    snapshots: List[QuerySnapshot] = []
    query = mongo_store.collection(CHATS_COLLECTION).where("participantIds", "array-contains", "alice")
    registration = mongo_store.listen(query, snapshots.append)

    await wait_for(lambda: len(snapshots) == 1)
    assert len(snapshots[0]) == 0

    await mongo_store.set(CHATS_COLLECTION, "c1", {"participantIds": ["alice", "bob"]})
    await mongo_store.set(CHATS_COLLECTION, "c2", {"participantIds": ["carol", "bob"]})
    await wait_for(lambda: len(snapshots) >= 2)
    assert [snap.id for snap in snapshots[-1]] == ["c1"]

    registration.remove()
    assert not registration.active


@pytest.mark.asyncio
async def test_indexes_can_be_created(mongo_client) -> None:
    db = mongo_client["solstice-test"]
    await ensure_match_indexes(db)
    await ensure_chat_indexes(db)
    await ensure_feed_indexes(db)
    info = await db[LIKES_COLLECTION].index_information()
    assert "likes_liked_id_idx" in info


@pytest.mark.asyncio
async def test_get_store_connects_to_mongo(monkeypatch: pytest.MonkeyPatch, mongo_client) -> None:
    monkeypatch.setenv("STORE_BACKEND", "mongo")
    get_settings.cache_clear()  # type: ignore[attr-defined]

    def _client_factory(*_args, **_kwargs):
        return mongo_client

    monkeypatch.setattr("solstice.db.AsyncIOMotorClient", _client_factory)
    store = await get_store()
    try:
        assert isinstance(store, MongoDocumentStore)
        assert get_db().name == "solstice-test"
        info = await get_db()[CHATS_COLLECTION].index_information()
        assert "chats_participant_type_activity_idx" in info
    finally:
        await store.close()
        await close_mongo_connection()
