"""One open conversation: live messages, optimistic sends, receipts and typing."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence, Tuple

from ..actor import SerialExecutor
from ..db.collections import CHAT_EVENTS_COLLECTION, CHATS_COLLECTION, MESSAGES_COLLECTION
from ..exceptions import InvalidChatError, InvalidMessageError, NotAuthenticatedError
from ..integrations.cloudinary import MediaUploader
from ..models.chat import Chat
from ..models.chat_event import ChatEvent
from ..models.message import Message, MessageMetadata, MessageType
from ..store.base import ChangeType, DocumentSnapshot, ListenerRegistration, Query, QuerySnapshot, invoke
from ..store.exceptions import DocumentDecodeError, PermissionDeniedError, StoreError
from .conversation_service import ConversationService

LOGGER = logging.getLogger(__name__)


def _message_key(message: Message) -> Tuple[datetime, str]:
    return (message.timestamp, message.id)


def merge_message(messages: Sequence[Message], incoming: Message, *, authoritative: bool) -> Tuple[Message, ...]:
    """Insert or replace ``incoming`` by id, keeping the list time-ordered.

    Listener echoes are authoritative and always win. Local results only
    replace a copy that is still pending or failed, so an echo that landed
    first is never overwritten by the optimistic copy.
    """
    existing = next((m for m in messages if m.id == incoming.id), None)
    if existing is not None and not authoritative and not (existing.pending or existing.failed):
        return tuple(messages)
    merged = [m for m in messages if m.id != incoming.id]
    merged.append(incoming)
    return tuple(sorted(merged, key=_message_key))


def remove_message(messages: Sequence[Message], message_id: str) -> Tuple[Message, ...]:
    return tuple(m for m in messages if m.id != message_id)


@dataclass(frozen=True)
class ChatItem:
    """A message or a membership event, as rendered in the conversation timeline."""

    id: str
    timestamp: datetime
    message: Optional[Message] = None
    event: Optional[ChatEvent] = None


def merge_timeline(
    messages: Sequence[Message],
    events: Sequence[ChatEvent],
    hidden_ids: Sequence[str] = (),
) -> Tuple[ChatItem, ...]:
    hidden = set(hidden_ids)
    items = [ChatItem(m.id, m.timestamp, message=m) for m in messages if m.id not in hidden]
    items.extend(ChatItem(e.id, e.timestamp, event=e) for e in events)
    return tuple(sorted(items, key=lambda item: (item.timestamp, item.id)))


class ChatSession:
    def __init__(
        self,
        service: ConversationService,
        chat: Chat,
        *,
        typing_debounce: Optional[float] = None,
    ) -> None:
        self._service = service
        self._store = service.store
        self._chat = chat
        self._typing_debounce = (
            typing_debounce if typing_debounce is not None else service.settings.typing_debounce_seconds
        )
        self._executor = SerialExecutor(f"chat-{chat.id}")
        self._messages: Tuple[Message, ...] = ()
        self._events: Tuple[ChatEvent, ...] = ()
        self._listeners: List[ListenerRegistration] = []
        self._typing = False
        self._typing_task: Optional[asyncio.Task] = None
        self._visible = False
        self._deleted = False
        self._observers: List[Callable[["ChatSession"], Any]] = []

    # state

    @property
    def chat(self) -> Chat:
        return self._chat

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._messages

    @property
    def events(self) -> Tuple[ChatEvent, ...]:
        return self._events

    @property
    def items(self) -> Tuple[ChatItem, ...]:
        viewer = self._service.user_id
        hidden = self._chat.hidden_message_ids(viewer) if viewer else []
        return merge_timeline(self._messages, self._events, hidden)

    @property
    def typing_users(self) -> List[str]:
        viewer = self._service.user_id
        return [uid for uid in self._chat.typing_users if uid != viewer]

    @property
    def is_typing(self) -> bool:
        return self._typing

    @property
    def deleted(self) -> bool:
        return self._deleted

    @property
    def is_open(self) -> bool:
        return bool(self._listeners)

    def add_observer(self, observer: Callable[["ChatSession"], Any]) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self._observers.remove(observer) if observer in self._observers else None

    async def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                await invoke(observer, self)
            except Exception as exc:
                LOGGER.error("Chat session observer failed: %s", exc)

    # lifecycle

    async def open(self) -> None:
        viewer = self._service.user_id
        if viewer is None:
            raise InvalidChatError("open a chat session after the conversation service has started")
        if viewer not in self._chat.participant_ids:
            raise InvalidChatError(f"{viewer} is not a participant of chat {self._chat.id}")
        if self.is_open:
            return
        self._executor.start()
        chat_id = self._chat.id
        self._listeners = [
            self._store.listen(
                Query(MESSAGES_COLLECTION).where("chatId", "==", chat_id).order_by("timestamp"),
                self._on_messages,
                self._on_error,
            ),
            self._store.listen(
                Query(CHAT_EVENTS_COLLECTION).where("chatId", "==", chat_id).order_by("timestamp"),
                self._on_events,
                self._on_error,
            ),
            self._store.listen_document(CHATS_COLLECTION, chat_id, self._on_chat, self._on_error),
        ]

    async def close(self) -> None:
        """Detach listeners, cancel the typing timer and clear our typing flag."""
        for registration in self._listeners:
            registration.remove()
        self._listeners = []
        task, self._typing_task = self._typing_task, None
        if task is not None:
            task.cancel()
        if not self._deleted:
            await self._clear_typing()
        self._typing = False
        await self._executor.stop()

    async def settle(self) -> None:
        await self._executor.drain()

    # listener callbacks

    async def _on_error(self, exc: Exception) -> None:
        LOGGER.error("Chat session listener failed for chat %s: %s", self._chat.id, exc)
        if isinstance(exc, PermissionDeniedError) and self._service.on_fatal_error is not None:
            await invoke(self._service.on_fatal_error, exc)

    async def _on_messages(self, snapshot: QuerySnapshot) -> None:
        decoded: List[Tuple[ChangeType, str, Optional[Message]]] = []
        for change in snapshot.changes:
            if change.type == ChangeType.REMOVED:
                decoded.append((change.type, change.document.id, None))
                continue
            try:
                decoded.append((change.type, change.document.id, Message.from_document(change.document)))
            except DocumentDecodeError as exc:
                LOGGER.warning("Skipping undecodable message: %s", exc)
        if not decoded:
            return
        incoming_from_others = await self._executor.run(self._apply_messages, decoded)
        if incoming_from_others:
            await self._acknowledge()

    def _apply_messages(self, decoded: List[Tuple[ChangeType, str, Optional[Message]]]) -> bool:
        viewer = self._service.user_id
        from_others = False
        messages = self._messages
        for change_type, message_id, message in decoded:
            if message is None:
                messages = remove_message(messages, message_id)
                continue
            messages = merge_message(messages, message, authoritative=True)
            if message.sender_id != viewer and viewer not in message.read_by:
                from_others = True
        self._messages = messages
        return from_others

    async def _on_events(self, snapshot: QuerySnapshot) -> None:
        events: List[ChatEvent] = []
        for document in snapshot.documents:
            try:
                events.append(ChatEvent.from_document(document))
            except DocumentDecodeError as exc:
                LOGGER.warning("Skipping undecodable chat event: %s", exc)
        await self._executor.run(self._set_events, tuple(events))

    def _set_events(self, events: Tuple[ChatEvent, ...]) -> None:
        self._events = events

    async def _on_chat(self, document: DocumentSnapshot) -> None:
        if not document.exists:
            self._deleted = True
            LOGGER.info("Chat %s was deleted while open", self._chat.id)
            await self._notify()
            return
        try:
            chat = Chat.from_document(document)
        except DocumentDecodeError as exc:
            LOGGER.warning("Ignoring undecodable chat update: %s", exc)
            return
        await self._executor.run(self._set_chat, chat)

    def _set_chat(self, chat: Chat) -> None:
        self._chat = chat.model_copy(update={"participants": self._chat.participants})

    async def _acknowledge(self) -> None:
        try:
            await self._service.mark_chat_delivered(self._chat.id)
            if self._visible:
                await self._service.mark_chat_read(self._chat.id)
        except StoreError as exc:
            LOGGER.warning("Failed updating receipts for chat %s: %s", self._chat.id, exc)
        await self._notify()

    # user actions

    async def set_visible(self, visible: bool) -> None:
        """Track whether the conversation is on screen; becoming visible marks it read."""
        self._visible = visible
        if visible:
            await self._service.mark_chat_read(self._chat.id)

    async def send(
        self,
        content: str,
        *,
        message_type: MessageType = MessageType.TEXT,
        metadata: Optional[MessageMetadata] = None,
        reply_to: Optional[Message] = None,
    ) -> Message:
        """Show the message immediately, then write it; the echo replaces the local copy."""
        viewer = self._service.user_id
        if viewer is None:
            raise NotAuthenticatedError("no signed-in user")
        if not (content or "").strip() and metadata is None:
            raise InvalidMessageError("message needs content or metadata")
        local = Message(
            id=self._service.new_message_id(),
            chat_id=self._chat.id,
            sender_id=viewer,
            content=(content or "").strip(),
            timestamp=self._service.now(),
            type=message_type,
            metadata=metadata,
            reply_to=reply_to.id if reply_to is not None else None,
            reply_preview=reply_to.reply_preview_for() if reply_to is not None else None,
            read_by=[viewer],
            delivered_to=[viewer],
            pending=True,
        )
        return await self._deliver(local, reply_to)

    async def send_media(
        self,
        uploader: MediaUploader,
        data_url: str,
        *,
        message_type: MessageType = MessageType.IMAGE,
        caption: str = "",
    ) -> Message:
        """Upload an image or video attachment, then send it as a message."""
        message_type = MessageType(message_type)
        if message_type == MessageType.IMAGE:
            url = await uploader.upload(data_url, resource_type="image")
            metadata = MessageMetadata(image_url=url)
        elif message_type == MessageType.VIDEO:
            url = await uploader.upload(data_url, resource_type="video")
            metadata = MessageMetadata(video_url=url)
        else:
            raise InvalidMessageError(f"{message_type.value} messages carry no uploaded media")
        return await self.send(caption, message_type=message_type, metadata=metadata)

    async def retry(self, message_id: str) -> Message:
        failed = next((m for m in self._messages if m.id == message_id and m.failed), None)
        if failed is None:
            raise InvalidChatError(f"message {message_id} is not a failed send")
        reply_to = next((m for m in self._messages if m.id == failed.reply_to), None) if failed.reply_to else None
        return await self._deliver(failed.model_copy(update={"pending": True, "failed": False}), reply_to)

    async def _deliver(self, local: Message, reply_to: Optional[Message]) -> Message:
        await self._executor.run(self._merge_local, local)
        await self._stop_typing()
        try:
            sent = await self._service.send_message(
                self._chat,
                local.content,
                message_type=MessageType(local.type),
                metadata=local.metadata,
                reply_to=reply_to,
                message_id=local.id,
                timestamp=local.timestamp,
            )
        except Exception:
            LOGGER.warning("Send failed for message %s in chat %s", local.id, self._chat.id)
            await self._executor.run(self._merge_local, local.model_copy(update={"pending": False, "failed": True}))
            await self._notify()
            raise
        await self._executor.run(self._merge_local, sent)
        await self._notify()
        return sent

    def _merge_local(self, message: Message) -> None:
        self._messages = merge_message(self._messages, message, authoritative=False)

    async def discard_failed(self, message_id: str) -> None:
        await self._executor.run(self._drop_failed, message_id)

    def _drop_failed(self, message_id: str) -> None:
        self._messages = tuple(m for m in self._messages if not (m.id == message_id and m.failed))

    async def input_changed(self, text: str) -> None:
        """Debounced typing presence: set on input, cleared after a quiet period or on empty input."""
        if not text or not text.strip():
            await self._stop_typing()
            return
        if not self._typing:
            self._typing = True
            await self._service.set_typing(self._chat.id, True)
        if self._typing_task is not None:
            self._typing_task.cancel()
        self._typing_task = asyncio.create_task(self._typing_timeout())

    async def _typing_timeout(self) -> None:
        await asyncio.sleep(self._typing_debounce)
        self._typing_task = None
        await self._clear_typing()

    async def _stop_typing(self) -> None:
        task, self._typing_task = self._typing_task, None
        if task is not None:
            task.cancel()
        await self._clear_typing()

    async def _clear_typing(self) -> None:
        if not self._typing:
            return
        self._typing = False
        try:
            await self._service.set_typing(self._chat.id, False)
        except (StoreError, NotAuthenticatedError) as exc:
            LOGGER.warning("Failed clearing typing flag for chat %s: %s", self._chat.id, exc)

    async def hide(self, message_id: str) -> None:
        await self._service.hide_message(self._chat.id, message_id)

    async def delete(self, message: Message) -> None:
        await self._service.delete_message(message)
        await self._executor.run(self._remove, message.id)

    def _remove(self, message_id: str) -> None:
        self._messages = remove_message(self._messages, message_id)

    async def toggle_reaction(self, message: Message, emoji: str) -> bool:
        return await self._service.toggle_reaction(message, emoji)


__all__ = ["ChatItem", "ChatSession", "merge_message", "merge_timeline", "remove_message"]
