"""Conversation list synchronisation and conversation-level writes.

``ConversationService`` owns the merged list of a user's conversations. Three
live subscriptions (direct, group, match) feed changes through the pure
``apply_chat_change`` reducer, and every mutation of the merged list runs on a
``SerialExecutor`` so snapshots from different subscriptions never interleave.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..actor import SerialExecutor
from ..config import Settings, get_settings
from ..db.collections import (
    CHAT_EVENTS_COLLECTION,
    CHATS_COLLECTION,
    LIKES_COLLECTION,
    MESSAGES_COLLECTION,
    SHOWN_MATCHES_COLLECTION,
    USERS_COLLECTION,
)
from ..events import MESSAGE_CREATED, EventPublisher
from ..exceptions import (
    InvalidChatError,
    InvalidMessageError,
    InvalidParticipantsError,
    NotAuthenticatedError,
    NotChatOwnerError,
    NotMessageOwnerError,
    PartialDeletionError,
)
from ..models.chat import Chat, ChatType, LastMessage, ParticipantPreview
from ..models.chat_event import ChatEvent, ChatEventType
from ..models.identifiers import (
    direct_chat_id,
    like_record_id,
    match_chat_id,
    ordered_pair,
    shown_match_id,
    unique_participants,
    validate_user_id,
)
from ..models.message import Message, MessageMetadata, MessageType
from ..store.base import ChangeType, DocumentStore, ListenerRegistration, Query, QuerySnapshot, invoke
from ..store.exceptions import (
    AlreadyExistsError,
    DocumentDecodeError,
    PermissionDeniedError,
    StoreError,
)
from ..store.fields import DELETE_FIELD, ArrayRemove, ArrayUnion, Increment
from ..utils.clock import utcnow

LOGGER = logging.getLogger(__name__)

CHAT_CATEGORIES: Tuple[ChatType, ...] = (ChatType.DIRECT, ChatType.GROUP, ChatType.MATCH)


@dataclass(frozen=True)
class ChatChange:
    type: ChangeType
    chat_id: str
    chat: Optional[Chat] = None


def _sort_key(chat: Chat) -> Tuple[float, str]:
    return (-chat.last_activity.timestamp(), chat.id)


def apply_chat_change(chats: Sequence[Chat], change: ChatChange) -> Tuple[Chat, ...]:
    """Return ``chats`` with ``change`` applied: unique by id, newest activity first."""
    remaining = [chat for chat in chats if chat.id != change.chat_id]
    if change.type != ChangeType.REMOVED:
        if change.chat is None:
            raise ValueError(f"{change.type.value} change for {change.chat_id} carries no chat")
        remaining.append(change.chat)
    return tuple(sorted(remaining, key=_sort_key))


def chat_list_query(user_id: str, chat_type: ChatType, limit: int) -> Query:
    return (
        Query(CHATS_COLLECTION)
        .where("participantIds", "array-contains", user_id)
        .where("type", "==", ChatType(chat_type).value)
        .where("deletedForUsers", "array-not-contains", user_id)
        .order_by("lastActivity", descending=True)
        .limit(limit)
    )


def _new_chat(
    chat_id: str,
    chat_type: ChatType,
    participant_ids: Sequence[str],
    *,
    created_by: str,
    now: datetime,
    name: Optional[str] = None,
) -> Chat:
    return Chat(
        id=chat_id,
        participant_ids=list(participant_ids),
        type=chat_type,
        name=name,
        last_activity=now,
        unread_counts={uid: 0 for uid in participant_ids},
        owner_id=created_by if chat_type == ChatType.GROUP else None,
        created_by=created_by,
        created_at=now,
    )


async def ensure_pair_chat(
    store: DocumentStore,
    chat_type: ChatType,
    user_a: str,
    user_b: str,
    *,
    created_by: str,
    now: Optional[datetime] = None,
) -> Tuple[Chat, bool]:
    """Find or create the one direct / match chat for a pair; returns ``(chat, created)``.

    The id is derived from the pair, so a writer that loses the creation race
    gets ``AlreadyExistsError`` and reads the winner's document instead.
    """
    chat_type = ChatType(chat_type)
    if chat_type == ChatType.GROUP:
        raise InvalidChatError("group chats have no pair identity")
    chat_id = direct_chat_id(user_a, user_b) if chat_type == ChatType.DIRECT else match_chat_id(user_a, user_b)

    snapshot = await store.get(CHATS_COLLECTION, chat_id)
    if snapshot.exists:
        return Chat.from_document(snapshot), False

    first = validate_user_id(created_by)
    participants = [first] + [uid for uid in ordered_pair(user_a, user_b) if uid != first]
    chat = _new_chat(chat_id, chat_type, participants, created_by=first, now=now or utcnow())
    try:
        await store.create(CHATS_COLLECTION, chat_id, chat.to_document())
    except AlreadyExistsError:
        LOGGER.debug("Lost creation race for chat %s; reusing existing document", chat_id)
        snapshot = await store.get(CHATS_COLLECTION, chat_id)
        return Chat.from_document(snapshot), False
    LOGGER.info("Created %s chat %s", chat_type.value, chat_id)
    return chat, True


ChatsObserver = Callable[[Tuple[Chat, ...]], Any]
FatalErrorHandler = Callable[[Exception], Any]


class ConversationService:
    """Per-session owner of the merged conversation list and conversation writes."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._settings = settings or get_settings()
        self._clock = clock
        self._executor = SerialExecutor("conversations")
        self._user_id: Optional[str] = None
        self._chats: Tuple[Chat, ...] = ()
        self._listeners: List[ListenerRegistration] = []
        self._observers: List[ChatsObserver] = []
        self._participant_cache: Dict[str, ParticipantPreview] = {}
        self.on_fatal_error: Optional[FatalErrorHandler] = None

    # state

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def settings(self) -> Settings:
        return self._settings

    def now(self) -> datetime:
        return self._clock()

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def running(self) -> bool:
        return bool(self._listeners)

    @property
    def chats(self) -> Tuple[Chat, ...]:
        return self._chats

    def chats_of(self, chat_type: ChatType) -> Tuple[Chat, ...]:
        return tuple(chat for chat in self._chats if chat.type == ChatType(chat_type))

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        return next((chat for chat in self._chats if chat.id == chat_id), None)

    @property
    def total_unread(self) -> int:
        if self._user_id is None:
            return 0
        return sum(chat.unread_count_for(self._user_id) for chat in self._chats)

    def add_observer(self, observer: ChatsObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove

    def _require_user(self) -> str:
        if not self._user_id:
            raise NotAuthenticatedError("no signed-in user")
        return self._user_id

    # lifecycle

    async def start(self, user_id: str) -> None:
        user_id = validate_user_id(user_id)
        if self._user_id == user_id and self.running:
            return
        await self.stop()
        self._user_id = user_id
        self._executor.start()
        limit = self._settings.chat_list_limit
        for chat_type in CHAT_CATEGORIES:
            registration = self._store.listen(
                chat_list_query(user_id, chat_type, limit),
                self._on_snapshot,
                self._on_listener_error,
            )
            self._listeners.append(registration)
        LOGGER.info("Conversation sync started for %s", user_id)

    async def stop(self) -> None:
        for registration in self._listeners:
            registration.remove()
        self._listeners = []
        await self._executor.stop()
        if self._user_id is not None:
            LOGGER.info("Conversation sync stopped for %s", self._user_id)
        self._user_id = None
        self._chats = ()
        self._participant_cache = {}

    async def settle(self) -> None:
        await self._executor.drain()

    # listener plumbing

    async def _on_snapshot(self, snapshot: QuerySnapshot) -> None:
        changes: List[ChatChange] = []
        for change in snapshot.changes:
            document = change.document
            if change.type == ChangeType.REMOVED:
                changes.append(ChatChange(ChangeType.REMOVED, document.id))
                continue
            try:
                chat = Chat.from_document(document)
            except DocumentDecodeError as exc:
                LOGGER.warning("Skipping undecodable chat: %s", exc)
                continue
            if chat.needs_unread_migration:
                await self._migrate_unread(chat)
            chat = await self._hydrate(chat)
            changes.append(ChatChange(change.type, chat.id, chat))
        if changes:
            await self._executor.run(self._apply_changes, changes)

    async def _apply_changes(self, changes: Iterable[ChatChange]) -> None:
        chats = self._chats
        for change in changes:
            if change.chat is not None and self._user_id and not change.chat.is_visible_to(self._user_id):
                change = ChatChange(ChangeType.REMOVED, change.chat_id)
            chats = apply_chat_change(chats, change)
        self._chats = chats
        for observer in list(self._observers):
            try:
                await invoke(observer, chats)
            except Exception as exc:
                LOGGER.error("Chat list observer failed: %s", exc)

    async def _on_listener_error(self, exc: Exception) -> None:
        LOGGER.error("Conversation listener failed for %s: %s", self._user_id, exc)
        if isinstance(exc, PermissionDeniedError) and self.on_fatal_error is not None:
            await invoke(self.on_fatal_error, exc)

    async def _migrate_unread(self, chat: Chat) -> None:
        try:
            await self._store.update(
                CHATS_COLLECTION,
                chat.id,
                {"unreadCounts": dict(chat.unread_counts), "unreadCount": DELETE_FIELD},
            )
        except StoreError as exc:
            LOGGER.warning("Failed migrating unreadCount on chat %s: %s", chat.id, exc)

    async def _participant(self, user_id: str) -> Optional[ParticipantPreview]:
        cached = self._participant_cache.get(user_id)
        if cached is not None:
            return cached
        try:
            snapshot = await self._store.get(USERS_COLLECTION, user_id)
        except StoreError as exc:
            LOGGER.warning("Failed to fetch participant %s: %s", user_id, exc)
            return None
        if not snapshot.exists:
            return None
        preview = ParticipantPreview(
            id=user_id,
            username=snapshot.get("username") or "",
            profile_image_url=snapshot.get("profileImageURL"),
        )
        self._participant_cache[user_id] = preview
        return preview

    async def _hydrate(self, chat: Chat) -> Chat:
        participants = []
        for uid in chat.participant_ids:
            preview = await self._participant(uid)
            if preview is not None:
                participants.append(preview)
        return chat.model_copy(update={"participants": participants})

    # creation

    async def find_or_create_chat(
        self,
        participant_ids: Sequence[str],
        chat_type: ChatType = ChatType.DIRECT,
        name: Optional[str] = None,
    ) -> Chat:
        me = self._require_user()
        chat_type = ChatType(chat_type)
        participants = list(unique_participants([me, *participant_ids]))

        if chat_type == ChatType.GROUP:
            if len(participants) < 2:
                raise InvalidParticipantsError("a group needs at least one other participant")
            chat_id = self._store.new_id()
            chat = _new_chat(chat_id, chat_type, participants, created_by=me, now=self._clock(), name=name)
            await self._store.create(CHATS_COLLECTION, chat_id, chat.to_document())
            LOGGER.info("Created group chat %s with %s members", chat_id, len(participants))
            return await self._hydrate(chat)

        if len(participants) != 2:
            raise InvalidParticipantsError(
                f"a {chat_type.value} chat needs exactly two distinct participants, got {len(participants)}"
            )
        other = participants[1]
        chat, created = await ensure_pair_chat(
            self._store, chat_type, me, other, created_by=me, now=self._clock()
        )
        if not created and me in chat.deleted_for_users:
            await self._store.update(CHATS_COLLECTION, chat.id, {"deletedForUsers": ArrayRemove(me)})
            chat = chat.model_copy(
                update={"deleted_for_users": [uid for uid in chat.deleted_for_users if uid != me]}
            )
            LOGGER.info("Restored chat %s for %s", chat.id, me)
        for uid in chat.participant_ids:
            self._participant_cache.pop(uid, None)
        return await self._hydrate(chat)

    # messages

    def _require_member(self, chat: Chat) -> str:
        me = self._require_user()
        if me not in chat.participant_ids:
            raise InvalidChatError(f"{me} is not a participant of chat {chat.id}")
        return me

    def new_message_id(self) -> str:
        return self._store.new_id()

    async def send_message(
        self,
        chat: Chat,
        content: str,
        *,
        message_type: MessageType = MessageType.TEXT,
        metadata: Optional[MessageMetadata] = None,
        reply_to: Optional[Message] = None,
        message_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Message:
        """Write the message, the chat summary and every unread counter in one batch."""
        me = self._require_member(chat)
        message_type = MessageType(message_type)
        content = (content or "").strip()
        if not content and metadata is None:
            raise InvalidMessageError("message needs content or metadata")

        message = Message(
            id=message_id or self._store.new_id(),
            chat_id=chat.id,
            sender_id=me,
            content=content,
            timestamp=timestamp or self._clock(),
            type=message_type,
            metadata=metadata,
            reply_to=reply_to.id if reply_to is not None else None,
            reply_preview=reply_to.reply_preview_for() if reply_to is not None else None,
            read_by=[me],
            delivered_to=[me],
        )
        summary = LastMessage(
            id=message.id,
            sender_id=me,
            content=content,
            type=message_type.value,
            timestamp=message.timestamp,
        )
        chat_updates: Dict[str, Any] = {
            "lastMessage": summary.model_dump(by_alias=True),
            "lastActivity": message.timestamp,
            f"unreadCounts.{me}": 0,
        }
        for uid in chat.other_participant_ids(me):
            chat_updates[f"unreadCounts.{uid}"] = Increment(1)

        batch = self._store.batch()
        batch.create(MESSAGES_COLLECTION, message.id, message.to_document())
        batch.update(CHATS_COLLECTION, chat.id, chat_updates)
        await batch.commit()

        if self._publisher is not None:
            await self._publisher.publish(
                MESSAGE_CREATED,
                {
                    "chatId": chat.id,
                    "messageId": message.id,
                    "senderId": me,
                    "recipientIds": chat.other_participant_ids(me),
                    "type": message_type.value,
                },
            )
        return message

    async def mark_chat_read(self, chat_id: str) -> int:
        """Mark recent messages from others as read and zero the viewer's counter."""
        me = self._require_user()
        since = self._clock() - timedelta(days=self._settings.read_receipt_window_days)
        query = (
            Query(MESSAGES_COLLECTION)
            .where("chatId", "==", chat_id)
            .where("timestamp", ">=", since)
            .where("readBy", "array-not-contains", me)
        )
        unread = [snap for snap in await self._store.query(query) if snap.get("senderId") != me]

        batch = self._store.batch()
        for snap in unread:
            batch.update(MESSAGES_COLLECTION, snap.id, {"readBy": ArrayUnion(me), "deliveredTo": ArrayUnion(me)})
        batch.update(CHATS_COLLECTION, chat_id, {f"unreadCounts.{me}": 0})
        await batch.commit()
        return len(unread)

    async def mark_chat_delivered(self, chat_id: str) -> int:
        me = self._require_user()
        query = (
            Query(MESSAGES_COLLECTION)
            .where("chatId", "==", chat_id)
            .where("deliveredTo", "array-not-contains", me)
        )
        pending = [snap for snap in await self._store.query(query) if snap.get("senderId") != me]
        if not pending:
            return 0
        batch = self._store.batch()
        for snap in pending:
            batch.update(MESSAGES_COLLECTION, snap.id, {"deliveredTo": ArrayUnion(me)})
        await batch.commit()
        return len(pending)

    async def set_typing(self, chat_id: str, is_typing: bool) -> None:
        me = self._require_user()
        value = ArrayUnion(me) if is_typing else ArrayRemove(me)
        await self._store.update(CHATS_COLLECTION, chat_id, {"typingUsers": value})

    async def hide_message(self, chat_id: str, message_id: str) -> None:
        me = self._require_user()
        await self._store.update(
            CHATS_COLLECTION,
            chat_id,
            {f"hiddenMessagesForUsers.{me}": ArrayUnion(message_id)},
        )

    async def clear_history(self, chat_id: str) -> int:
        """Hide every current message in the chat for the viewer only."""
        me = self._require_user()
        snapshots = await self._store.query(Query(MESSAGES_COLLECTION).where("chatId", "==", chat_id))
        message_ids = [snap.id for snap in snapshots]
        await self._store.update(CHATS_COLLECTION, chat_id, {f"hiddenMessagesForUsers.{me}": message_ids})
        return len(message_ids)

    async def delete_message(self, message: Message) -> None:
        me = self._require_user()
        if message.sender_id != me:
            raise NotMessageOwnerError(f"message {message.id} was not sent by {me}")
        await self._store.delete(MESSAGES_COLLECTION, message.id)

    @staticmethod
    def _reaction_path(emoji: str) -> str:
        if not emoji or "." in emoji or emoji.strip() != emoji:
            raise InvalidMessageError(f"invalid reaction: {emoji!r}")
        return f"reactions.{emoji}"

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        me = self._require_user()
        await self._store.update(MESSAGES_COLLECTION, message_id, {self._reaction_path(emoji): ArrayUnion(me)})

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        me = self._require_user()
        await self._store.update(MESSAGES_COLLECTION, message_id, {self._reaction_path(emoji): ArrayRemove(me)})

    async def toggle_reaction(self, message: Message, emoji: str) -> bool:
        """Flip the viewer's reaction; returns True when it is now present."""
        me = self._require_user()
        if me in message.reactors(emoji):
            await self.remove_reaction(message.id, emoji)
            return False
        await self.add_reaction(message.id, emoji)
        return True

    # deletion

    async def delete_chat_for_me(self, chat_id: str) -> None:
        me = self._require_user()
        await self._store.update(
            CHATS_COLLECTION,
            chat_id,
            {"deletedForUsers": ArrayUnion(me), "typingUsers": ArrayRemove(me)},
        )
        if self.running:
            await self._executor.run(self._apply_changes, [ChatChange(ChangeType.REMOVED, chat_id)])

    async def delete_chat(self, chat: Chat) -> None:
        """Delete messages, then events, then the chat itself, for every participant.

        Runs as separate writes; a failure part way raises ``PartialDeletionError``
        and leaves the remainder in place.
        """
        me = self._require_user()
        if not chat.is_owner(me):
            raise NotChatOwnerError(f"{me} cannot delete chat {chat.id}")

        messages_deleted = 0
        events_deleted = 0
        try:
            for collection in (MESSAGES_COLLECTION, CHAT_EVENTS_COLLECTION):
                snapshots = await self._store.query(Query(collection).where("chatId", "==", chat.id))
                for snap in snapshots:
                    await self._store.delete(collection, snap.id)
                    if collection == MESSAGES_COLLECTION:
                        messages_deleted += 1
                    else:
                        events_deleted += 1
            await self._store.delete(CHATS_COLLECTION, chat.id)
        except StoreError as exc:
            LOGGER.error(
                "Partial deletion of chat %s: %s messages, %s events removed before failure: %s",
                chat.id,
                messages_deleted,
                events_deleted,
                exc,
            )
            raise PartialDeletionError(
                chat.id,
                messages_deleted=messages_deleted,
                events_deleted=events_deleted,
                cause=exc,
            ) from exc
        LOGGER.info("Deleted chat %s (%s messages, %s events)", chat.id, messages_deleted, events_deleted)
        if self.running:
            await self._executor.run(self._apply_changes, [ChatChange(ChangeType.REMOVED, chat.id)])

    async def unmatch(self, chat: Chat) -> None:
        """End a match: remove the match chat, the viewer's like and the pair's shown marker."""
        me = self._require_member(chat)
        if not chat.is_match:
            raise InvalidChatError(f"chat {chat.id} is not a match chat")
        others = chat.other_participant_ids(me)
        if len(others) != 1:
            raise InvalidChatError(f"match chat {chat.id} must have exactly two participants")
        other = others[0]
        await self.delete_chat(chat)
        await self._store.delete(LIKES_COLLECTION, like_record_id(me, other))
        await self._store.delete(SHOWN_MATCHES_COLLECTION, shown_match_id(me, other))
        LOGGER.info("User %s unmatched %s", me, other)

    # group membership

    async def add_members(self, chat: Chat, user_ids: Sequence[str]) -> List[ChatEvent]:
        me = self._require_member(chat)
        if not chat.is_group:
            raise InvalidChatError("members can only be added to group chats")
        new_ids = [uid for uid in unique_participants(user_ids) if uid not in chat.participant_ids]
        if not new_ids:
            return []
        now = self._clock()
        updates: Dict[str, Any] = {"participantIds": ArrayUnion(*new_ids)}
        events: List[ChatEvent] = []
        batch = self._store.batch()
        for uid in new_ids:
            updates[f"unreadCounts.{uid}"] = 0
            event = ChatEvent(
                id=self._store.new_id(),
                chat_id=chat.id,
                type=ChatEventType.MEMBER_ADDED,
                user_id=uid,
                performed_by=me,
                timestamp=now,
            )
            batch.create(CHAT_EVENTS_COLLECTION, event.id, event.to_document())
            events.append(event)
        batch.update(CHATS_COLLECTION, chat.id, updates)
        await batch.commit()
        return events

    async def remove_member(self, chat: Chat, user_id: str) -> ChatEvent:
        me = self._require_member(chat)
        if not chat.is_group:
            raise InvalidChatError("members can only be removed from group chats")
        user_id = validate_user_id(user_id)
        if user_id != me and not chat.is_owner(me):
            raise NotChatOwnerError(f"{me} cannot remove members from chat {chat.id}")
        if user_id not in chat.participant_ids:
            raise InvalidParticipantsError(f"{user_id} is not a member of chat {chat.id}")
        event = ChatEvent(
            id=self._store.new_id(),
            chat_id=chat.id,
            type=ChatEventType.MEMBER_REMOVED,
            user_id=user_id,
            performed_by=me,
            timestamp=self._clock(),
        )
        batch = self._store.batch()
        batch.update(
            CHATS_COLLECTION,
            chat.id,
            {
                "participantIds": ArrayRemove(user_id),
                "typingUsers": ArrayRemove(user_id),
                f"unreadCounts.{user_id}": DELETE_FIELD,
            },
        )
        batch.create(CHAT_EVENTS_COLLECTION, event.id, event.to_document())
        await batch.commit()
        return event


__all__ = [
    "CHAT_CATEGORIES",
    "ChatChange",
    "ConversationService",
    "apply_chat_change",
    "chat_list_query",
    "ensure_pair_chat",
]
