from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Callable, List

import pytest
import pytest_asyncio

from conftest import EPOCH, seed_user
from solstice.db.collections import (
    CHAT_EVENTS_COLLECTION,
    CHATS_COLLECTION,
    LIKES_COLLECTION,
    MESSAGES_COLLECTION,
    SHOWN_MATCHES_COLLECTION,
    USERS_COLLECTION,
)
from solstice.events import MESSAGE_CREATED
from solstice.exceptions import (
    InvalidChatError,
    InvalidMessageError,
    InvalidParticipantsError,
    NotAuthenticatedError,
    NotChatOwnerError,
    NotMessageOwnerError,
    PartialDeletionError,
)
from solstice.models.chat import Chat, ChatType
from solstice.models.chat_event import ChatEventType
from solstice.models.message import Message, ReadStatus
from solstice.services.conversation_service import ConversationService
from solstice.services.likes_service import MatchEngine
from solstice.store.base import DocumentSnapshot, WriteKind
from solstice.store.exceptions import (
    AlreadyExistsError,
    DocumentNotFoundError,
    PermissionDeniedError,
    TransientStoreError,
)
from solstice.store.memory import MemoryDocumentStore


@pytest_asyncio.fixture
async def services(store, publisher, clock) -> AsyncIterator[Callable]:
    started: List[ConversationService] = []
    for user_id in ("alice", "bob", "carol", "dave"):
        await seed_user(store, user_id)

    async def _start(user_id: str, backend: MemoryDocumentStore = store) -> ConversationService:
        service = ConversationService(backend, publisher=publisher, clock=clock)
        await service.start(user_id)
        started.append(service)
        return service

    yield _start
    for service in started:
        await service.stop()


async def _settle(store: MemoryDocumentStore, *services: ConversationService) -> None:
    await store.settle()
    for service in services:
        await service.settle()


def _stored_chat(store: MemoryDocumentStore, chat_id: str) -> Chat:
    return Chat.from_document(DocumentSnapshot(CHATS_COLLECTION, chat_id, store.dump(CHATS_COLLECTION)[chat_id]))


@pytest.mark.asyncio
async def test_direct_chat_identity_is_canonical(store, services) -> None:
    alice = await services("alice")
    bob = await services("bob")

    first = await alice.find_or_create_chat(["bob"])
    second = await bob.find_or_create_chat(["alice"])
    third = await alice.find_or_create_chat(["bob", "alice", "bob"])

    assert first.id == second.id == third.id == "chat_alice_bob"
    assert list(store.dump(CHATS_COLLECTION)) == ["chat_alice_bob"]
    assert {p.username for p in first.participants} == {"alice-name", "bob-name"}


@pytest.mark.asyncio
async def test_reused_chat_refreshes_participant_details(store, services) -> None:
    alice = await services("alice")
    first = await alice.find_or_create_chat(["bob"])
    assert sorted(p.username for p in first.participants) == ["alice-name", "bob-name"]

    await store.update(USERS_COLLECTION, "bob", {"username": "bob-renamed", "profileImageURL": "https://cdn.test/b.png"})
    reused = await alice.find_or_create_chat(["bob"])

    assert reused.id == first.id
    bob = next(p for p in reused.participants if p.id == "bob")
    assert bob.username == "bob-renamed"
    assert bob.profile_image_url == "https://cdn.test/b.png"


@pytest.mark.asyncio
async def test_concurrent_creation_converges_on_one_document(services) -> None:
    slow = MemoryDocumentStore(latency=0.002)
    alice = await services("alice", slow)
    bob = await services("bob", slow)

    chats = await asyncio.gather(
        alice.find_or_create_chat(["bob"]),
        bob.find_or_create_chat(["alice"]),
        alice.find_or_create_chat(["bob"]),
    )

    assert {chat.id for chat in chats} == {"chat_alice_bob"}
    assert list(slow.dump(CHATS_COLLECTION)) == ["chat_alice_bob"]
    await alice.stop()
    await bob.stop()
    await slow.close()


@pytest.mark.asyncio
async def test_listeners_merge_all_categories(store, services) -> None:
    alice = await services("alice")
    direct = await alice.find_or_create_chat(["bob"])
    group = await alice.find_or_create_chat(["bob", "carol"], ChatType.GROUP, name="Trip")
    match = await alice.find_or_create_chat(["dave"], ChatType.MATCH)
    await _settle(store, alice)

    assert {chat.id for chat in alice.chats} == {direct.id, group.id, match.id}
    assert [chat.id for chat in alice.chats] == [match.id, group.id, direct.id]
    assert [chat.id for chat in alice.chats_of(ChatType.GROUP)] == [group.id]
    assert group.is_owner("alice")
    assert alice.get_chat(group.id).display_name("alice") == "Trip"


@pytest.mark.asyncio
async def test_unread_counts_follow_sends_and_reads(store, services, publisher) -> None:
    alice = await services("alice")
    bob = await services("bob")
    chat = await alice.find_or_create_chat(["bob"])

    for text in ("hi", "are you there?", "hello?"):
        await alice.send_message(chat, text)
    stored = _stored_chat(store, chat.id)
    assert stored.unread_counts == {"alice": 0, "bob": 3}
    assert stored.last_message.content == "hello?"
    assert publisher.topics() == [MESSAGE_CREATED] * 3

    reply = await bob.send_message(chat, "here!")
    stored = _stored_chat(store, chat.id)
    assert stored.unread_counts == {"alice": 1, "bob": 0}
    assert stored.last_message.id == reply.id

    marked = await bob.mark_chat_read(chat.id)
    assert marked == 3
    messages = [
        Message.from_document(DocumentSnapshot(MESSAGES_COLLECTION, doc_id, data))
        for doc_id, data in store.dump(MESSAGES_COLLECTION).items()
    ]
    from_alice = [m for m in messages if m.sender_id == "alice"]
    assert all(m.read_status(chat.participant_ids) == ReadStatus.READ for m in from_alice)
    assert _stored_chat(store, chat.id).unread_counts["bob"] == 0

    await _settle(store, alice, bob)
    assert alice.total_unread == 1
    assert bob.total_unread == 0


@pytest.mark.asyncio
async def test_resending_a_committed_message_id_is_rejected(store, services) -> None:
    alice = await services("alice")
    chat = await alice.find_or_create_chat(["bob"])
    message_id = alice.new_message_id()

    await alice.send_message(chat, "once", message_id=message_id)
    with pytest.raises(AlreadyExistsError):
        await alice.send_message(chat, "once", message_id=message_id)

    assert list(store.dump(MESSAGES_COLLECTION)) == [message_id]
    stored = _stored_chat(store, chat.id)
    assert stored.unread_counts == {"alice": 0, "bob": 1}
    assert stored.last_message.id == message_id


@pytest.mark.asyncio
async def test_failed_chat_update_leaves_no_message_behind(store, services) -> None:
    alice = await services("alice")
    ghost = Chat(id="chat_alice_ghost", participant_ids=["alice", "ghost"])

    with pytest.raises(DocumentNotFoundError):
        await alice.send_message(ghost, "hello?")
    assert store.dump(MESSAGES_COLLECTION) == {}


@pytest.mark.asyncio
async def test_invalid_sends_are_rejected(store, services) -> None:
    alice = await services("alice")
    chat = await alice.find_or_create_chat(["bob"])
    with pytest.raises(InvalidMessageError):
        await alice.send_message(chat, "   ")
    stranger_chat = Chat(id="chat_bob_carol", participant_ids=["bob", "carol"])
    with pytest.raises(InvalidChatError):
        await alice.send_message(stranger_chat, "hi")
    assert store.dump(MESSAGES_COLLECTION) == {}


@pytest.mark.asyncio
async def test_delivery_receipts(store, services) -> None:
    alice = await services("alice")
    bob = await services("bob")
    chat = await alice.find_or_create_chat(["bob"])
    message = await alice.send_message(chat, "ping")
    assert message.read_status(chat.participant_ids) == ReadStatus.SENT

    assert await bob.mark_chat_delivered(chat.id) == 1
    assert await bob.mark_chat_delivered(chat.id) == 0
    stored = Message.from_document(
        DocumentSnapshot(MESSAGES_COLLECTION, message.id, store.dump(MESSAGES_COLLECTION)[message.id])
    )
    assert stored.read_status(chat.participant_ids) == ReadStatus.DELIVERED


@pytest.mark.asyncio
async def test_soft_delete_hides_for_one_user_and_restores_on_reuse(store, services) -> None:
    alice = await services("alice")
    bob = await services("bob")
    chat = await alice.find_or_create_chat(["bob"])
    await _settle(store, alice, bob)

    await alice.delete_chat_for_me(chat.id)
    await _settle(store, alice, bob)
    assert alice.get_chat(chat.id) is None
    assert bob.get_chat(chat.id) is not None

    restored = await alice.find_or_create_chat(["bob"])
    await _settle(store, alice, bob)
    assert "alice" not in restored.deleted_for_users
    assert alice.get_chat(chat.id) is not None
    assert _stored_chat(store, chat.id).deleted_for_users == []


@pytest.mark.asyncio
async def test_owner_deletes_group_for_everyone(store, services) -> None:
    alice = await services("alice")
    bob = await services("bob")
    group = await alice.find_or_create_chat(["bob", "carol"], ChatType.GROUP)
    await alice.send_message(group, "welcome")
    await bob.send_message(group, "thanks")
    await alice.add_members(group, ["dave"])
    await _settle(store, alice, bob)

    with pytest.raises(NotChatOwnerError):
        await bob.delete_chat(bob.get_chat(group.id))

    await alice.delete_chat(group)
    await _settle(store, alice, bob)
    assert store.dump(CHATS_COLLECTION) == {}
    assert store.dump(MESSAGES_COLLECTION) == {}
    assert store.dump(CHAT_EVENTS_COLLECTION) == {}
    assert alice.get_chat(group.id) is None
    assert bob.get_chat(group.id) is None


@pytest.mark.asyncio
async def test_partial_deletion_reports_progress(store, services) -> None:
    alice = await services("alice")
    group = await alice.find_or_create_chat(["bob", "carol"], ChatType.GROUP)
    await alice.send_message(group, "one")
    await alice.send_message(group, "two")
    await alice.add_members(group, ["dave"])

    def _fail_event_deletes(op):
        if op.kind is WriteKind.DELETE and op.collection == CHAT_EVENTS_COLLECTION:
            return TransientStoreError("network down")
        return None

    store.fault = _fail_event_deletes
    with pytest.raises(PartialDeletionError) as excinfo:
        await alice.delete_chat(group)

    assert excinfo.value.messages_deleted == 2
    assert excinfo.value.events_deleted == 0
    assert not excinfo.value.chat_deleted
    assert isinstance(excinfo.value.cause, TransientStoreError)
    assert group.id in store.dump(CHATS_COLLECTION)
    assert len(store.dump(CHAT_EVENTS_COLLECTION)) == 1


@pytest.mark.asyncio
async def test_unmatch_removes_chat_like_and_marker(store, services) -> None:
    engine = MatchEngine(store)
    await engine.like("alice", "bob")
    event = await engine.like("bob", "alice")
    alice = await services("alice")
    await _settle(store, alice)
    chat = alice.get_chat(event.chat_id)
    assert chat is not None and chat.is_match

    await alice.unmatch(chat)

    assert store.dump(CHATS_COLLECTION) == {}
    assert list(store.dump(LIKES_COLLECTION)) == ["bob_alice"]
    assert store.dump(SHOWN_MATCHES_COLLECTION) == {}


@pytest.mark.asyncio
async def test_unmatch_needs_a_match_chat(services) -> None:
    alice = await services("alice")
    chat = await alice.find_or_create_chat(["bob"])
    with pytest.raises(InvalidChatError):
        await alice.unmatch(chat)


@pytest.mark.asyncio
async def test_group_membership_changes_write_audit_events(store, services) -> None:
    alice = await services("alice")
    bob = await services("bob")
    group = await alice.find_or_create_chat(["bob", "carol"], ChatType.GROUP)

    added = await alice.add_members(group, ["dave", "bob"])
    assert [event.user_id for event in added] == ["dave"]
    assert added[0].type == ChatEventType.MEMBER_ADDED
    stored = _stored_chat(store, group.id)
    assert stored.participant_ids == ["alice", "bob", "carol", "dave"]
    assert stored.unread_counts["dave"] == 0

    with pytest.raises(NotChatOwnerError):
        await bob.remove_member(stored, "carol")
    left = await bob.remove_member(stored, "bob")
    assert left.type == ChatEventType.MEMBER_REMOVED
    stored = _stored_chat(store, group.id)
    assert "bob" not in stored.participant_ids
    assert "bob" not in stored.unread_counts
    assert len(store.dump(CHAT_EVENTS_COLLECTION)) == 2

    with pytest.raises(InvalidChatError):
        await alice.add_members(await alice.find_or_create_chat(["bob"]), ["carol"])


@pytest.mark.asyncio
async def test_participant_rules(services) -> None:
    alice = await services("alice")
    with pytest.raises(InvalidParticipantsError):
        await alice.find_or_create_chat(["bob", "carol"])
    with pytest.raises(InvalidParticipantsError):
        await alice.find_or_create_chat([], ChatType.GROUP)
    with pytest.raises(InvalidParticipantsError):
        await alice.find_or_create_chat(["alice"])

    idle = ConversationService(MemoryDocumentStore())
    with pytest.raises(NotAuthenticatedError):
        await idle.find_or_create_chat(["bob"])


@pytest.mark.asyncio
async def test_message_level_actions(store, services) -> None:
    alice = await services("alice")
    bob = await services("bob")
    chat = await alice.find_or_create_chat(["bob"])
    message = await alice.send_message(chat, "react to me")

    assert await bob.toggle_reaction(message, "👍") is True
    stored = store.dump(MESSAGES_COLLECTION)[message.id]
    assert stored["reactions"] == {"👍": ["bob"]}
    reacted = Message.from_document(DocumentSnapshot(MESSAGES_COLLECTION, message.id, stored))
    assert await bob.toggle_reaction(reacted, "👍") is False
    assert store.dump(MESSAGES_COLLECTION)[message.id]["reactions"] == {"👍": []}

    with pytest.raises(NotMessageOwnerError):
        await bob.delete_message(message)

    await bob.hide_message(chat.id, message.id)
    assert _stored_chat(store, chat.id).hidden_message_ids("bob") == [message.id]
    assert _stored_chat(store, chat.id).hidden_message_ids("alice") == []

    await alice.send_message(chat, "second")
    assert await alice.clear_history(chat.id) == 2
    assert len(_stored_chat(store, chat.id).hidden_message_ids("alice")) == 2

    await alice.delete_message(message)
    assert message.id not in store.dump(MESSAGES_COLLECTION)


@pytest.mark.asyncio
async def test_typing_flags(store, services) -> None:
    alice = await services("alice")
    chat = await alice.find_or_create_chat(["bob"])
    await alice.set_typing(chat.id, True)
    await alice.set_typing(chat.id, True)
    assert _stored_chat(store, chat.id).typing_users == ["alice"]
    await alice.set_typing(chat.id, False)
    assert _stored_chat(store, chat.id).typing_users == []


@pytest.mark.asyncio
async def test_scalar_unread_count_is_migrated(store, services) -> None:
    await store.set(
        CHATS_COLLECTION,
        "chat_alice_carol",
        {"participantIds": ["alice", "carol"], "type": "direct", "unreadCount": 2, "lastActivity": EPOCH},
    )
    alice = await services("alice")
    await _settle(store, alice)

    chat = alice.get_chat("chat_alice_carol")
    assert chat.unread_count_for("alice") == 2
    stored = store.dump(CHATS_COLLECTION)["chat_alice_carol"]
    assert stored["unreadCounts"] == {"alice": 2, "carol": 2}
    assert "unreadCount" not in stored


def test_legacy_flags_decode_to_chat_type() -> None:
    dating = Chat.from_document(
        DocumentSnapshot(CHATS_COLLECTION, "x", {"participantIds": ["a", "b"], "isDatingChat": True})
    )
    group = Chat.from_document(
        DocumentSnapshot(CHATS_COLLECTION, "y", {"participantIds": ["a", "b", "c"], "isGroup": True})
    )
    plain = Chat.from_document(DocumentSnapshot(CHATS_COLLECTION, "z", {"participantIds": ["a", "b"]}))
    assert dating.type == ChatType.MATCH
    assert group.type == ChatType.GROUP
    assert plain.type == ChatType.DIRECT
    assert not plain.needs_unread_migration


@pytest.mark.asyncio
async def test_undecodable_chat_is_skipped(store, services) -> None:
    await store.set(
        CHATS_COLLECTION,
        "broken",
        {"participantIds": ["alice", "bob"], "type": "direct", "lastActivity": "not a date"},
    )
    await store.set(
        CHATS_COLLECTION,
        "chat_alice_bob",
        {"participantIds": ["alice", "bob"], "type": "direct", "lastActivity": EPOCH},
    )
    alice = await services("alice")
    await _settle(store, alice)
    assert [chat.id for chat in alice.chats] == ["chat_alice_bob"]


@pytest.mark.asyncio
async def test_permission_errors_reach_the_fatal_handler(store, services) -> None:
    alice = await services("alice")
    failures = []
    alice.on_fatal_error = failures.append

    await store.revoke_listeners(PermissionDeniedError("token revoked"))

    assert len(failures) == 3
    assert all(isinstance(exc, PermissionDeniedError) for exc in failures)


@pytest.mark.asyncio
async def test_observers_see_every_list_change(store, services) -> None:
    alice = await services("alice")
    seen = []
    remove = alice.add_observer(lambda chats: seen.append([chat.id for chat in chats]))
    chat = await alice.find_or_create_chat(["bob"])
    await _settle(store, alice)
    assert seen[-1] == [chat.id]
    remove()
    await alice.delete_chat_for_me(chat.id)
    await _settle(store, alice)
    assert seen[-1] == [chat.id]
