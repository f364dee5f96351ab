from __future__ import annotations

import enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from ..db.collections import CHATS_COLLECTION
from .base import DocumentModel
from .identifiers import UserId, UtcDatetime
from ..utils.clock import utcnow


class ChatType(str, enum.Enum):
    DIRECT = "direct"
    GROUP = "group"
    MATCH = "match"


class ParticipantPreview(BaseModel):
    """Locally joined participant details; never written back to the chat document."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    username: str = ""
    profile_image_url: Optional[str] = Field(None, alias="profileImageURL")


class LastMessage(BaseModel):
    """Denormalised copy of the newest message, kept on the chat for list rendering."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str
    sender_id: str = Field(..., alias="senderId")
    content: str = ""
    type: str = "text"
    timestamp: UtcDatetime


class Chat(DocumentModel):
    collection: ClassVar[str] = CHATS_COLLECTION

    participant_ids: List[UserId] = Field(..., alias="participantIds", min_length=1)
    type: ChatType = ChatType.DIRECT
    name: Optional[str] = None
    last_activity: UtcDatetime = Field(default_factory=utcnow, alias="lastActivity")
    last_message: Optional[LastMessage] = Field(None, alias="lastMessage")
    unread_counts: Dict[str, int] = Field(default_factory=dict, alias="unreadCounts")
    deleted_for_users: List[str] = Field(default_factory=list, alias="deletedForUsers")
    hidden_messages_for_users: Dict[str, List[str]] = Field(default_factory=dict, alias="hiddenMessagesForUsers")
    typing_users: List[str] = Field(default_factory=list, alias="typingUsers")
    owner_id: Optional[str] = Field(None, alias="ownerId")
    created_by: Optional[str] = Field(None, alias="createdBy")
    created_at: Optional[UtcDatetime] = Field(None, alias="createdAt")
    participants: List[ParticipantPreview] = Field(default_factory=list, exclude=True)

    _legacy_unread: bool = PrivateAttr(default=False)

    @model_validator(mode="wrap")
    @classmethod
    def _legacy_shape(cls, data: Any, handler: Any) -> "Chat":
        legacy_unread = False
        if isinstance(data, dict):
            data = cls._upgrade_legacy(data)
            legacy_unread = data.pop("_legacyUnread", False)
        chat = handler(data)
        chat._legacy_unread = legacy_unread
        return chat

    @staticmethod
    def _upgrade_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
        # older documents carry isGroup / isDatingChat flags and a scalar unreadCount
        data = dict(data)
        if "type" not in data:
            if data.get("isDatingChat"):
                data["type"] = ChatType.MATCH.value
            elif data.get("isGroup"):
                data["type"] = ChatType.GROUP.value
            else:
                data["type"] = ChatType.DIRECT.value
        if "unreadCounts" not in data and isinstance(data.get("unreadCount"), int):
            legacy = data["unreadCount"]
            data["unreadCounts"] = {uid: legacy for uid in data.get("participantIds") or [] if isinstance(uid, str)}
            data["_legacyUnread"] = True
        return data

    @property
    def needs_unread_migration(self) -> bool:
        return self._legacy_unread

    @property
    def is_group(self) -> bool:
        return self.type == ChatType.GROUP

    @property
    def is_match(self) -> bool:
        return self.type == ChatType.MATCH

    def is_owner(self, user_id: str) -> bool:
        if self.is_group:
            return user_id in (self.owner_id, self.created_by)
        return user_id in self.participant_ids

    def is_visible_to(self, user_id: str) -> bool:
        return user_id in self.participant_ids and user_id not in self.deleted_for_users

    def unread_count_for(self, user_id: str) -> int:
        return max(0, int(self.unread_counts.get(user_id, 0)))

    def hidden_message_ids(self, user_id: str) -> List[str]:
        return list(self.hidden_messages_for_users.get(user_id, []))

    def other_participant_ids(self, user_id: str) -> List[str]:
        return [uid for uid in self.participant_ids if uid != user_id]

    def display_name(self, viewer_id: str) -> str:
        others = [p for p in self.participants if p.id != viewer_id]
        if self.is_group:
            if self.name:
                return self.name
            names = [p.username for p in others]
            if len(names) <= 3:
                return ", ".join(names)
            return f"{names[0]}, {names[1]}, and {len(names) - 2} others"
        return others[0].username if others else ""


__all__ = ["Chat", "ChatType", "LastMessage", "ParticipantPreview"]
