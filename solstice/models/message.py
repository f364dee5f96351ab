from __future__ import annotations

import enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..db.collections import MESSAGES_COLLECTION
from .base import DocumentModel
from .identifiers import UtcDatetime
from ..utils.clock import utcnow

PREVIEW_CAPTION_LENGTH = 30


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    SHARED_POST = "sharedPost"
    SHARED_PROFILE = "sharedProfile"


class ReadStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


def truncate_caption(text: Optional[str], limit: int = PREVIEW_CAPTION_LENGTH) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "..."


class MessageMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_id: Optional[str] = Field(None, alias="videoId")
    video_thumbnail: Optional[str] = Field(None, alias="videoThumbnail")
    video_caption: Optional[str] = Field(None, alias="videoCaption")
    video_creator: Optional[str] = Field(None, alias="videoCreator")

    post_id: Optional[str] = Field(None, alias="postId")
    post_thumbnail: Optional[str] = Field(None, alias="postThumbnail")
    post_caption: Optional[str] = Field(None, alias="postCaption")
    post_creator: Optional[str] = Field(None, alias="postCreator")

    profile_id: Optional[str] = Field(None, alias="profileId")
    profile_image: Optional[str] = Field(None, alias="profileImage")
    profile_username: Optional[str] = Field(None, alias="profileUsername")
    profile_full_name: Optional[str] = Field(None, alias="profileFullName")
    profile_bio: Optional[str] = Field(None, alias="profileBio")

    image_url: Optional[str] = Field(None, alias="imageUrl")
    video_url: Optional[str] = Field(None, alias="videoUrl")

    @property
    def truncated_post_caption(self) -> Optional[str]:
        return truncate_caption(self.post_caption)

    @property
    def truncated_profile_bio(self) -> Optional[str]:
        return truncate_caption(self.profile_bio)


class ReplyPreview(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    message_id: str = Field(..., alias="messageId")
    content: str
    sender_id: str = Field(..., alias="senderId")
    type: MessageType = MessageType.TEXT


class Message(DocumentModel):
    collection: ClassVar[str] = MESSAGES_COLLECTION

    chat_id: str = Field(..., alias="chatId", min_length=1)
    sender_id: str = Field(..., alias="senderId", min_length=1)
    content: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    type: MessageType = MessageType.TEXT
    metadata: Optional[MessageMetadata] = None
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    reply_to: Optional[str] = Field(None, alias="replyTo")
    reply_preview: Optional[ReplyPreview] = Field(None, alias="replyPreview")
    read_by: List[str] = Field(default_factory=list, alias="readBy")
    delivered_to: List[str] = Field(default_factory=list, alias="deliveredTo")

    # local-only send state for optimistic inserts
    pending: bool = Field(False, exclude=True)
    failed: bool = Field(False, exclude=True)

    @field_validator("reply_preview", mode="before")
    @classmethod
    def _empty_preview(cls, value: Any) -> Any:
        # an empty map is written when a message is not a reply
        if isinstance(value, dict) and not value:
            return None
        return value

    def read_status(self, recipients: Optional[List[str]] = None) -> ReadStatus:
        """Receipt state as seen by the sender, ignoring the sender's own entries."""
        others = [uid for uid in (recipients or []) if uid != self.sender_id]
        readers = [uid for uid in self.read_by if uid != self.sender_id]
        deliveries = [uid for uid in self.delivered_to if uid != self.sender_id]
        if readers and (not others or any(uid in readers for uid in others)):
            return ReadStatus.READ
        if deliveries or readers:
            return ReadStatus.DELIVERED
        return ReadStatus.SENT

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by

    def reactors(self, emoji: str) -> List[str]:
        return list(self.reactions.get(emoji, []))

    def reply_preview_for(self) -> ReplyPreview:
        return ReplyPreview(
            message_id=self.id,
            content=truncate_caption(self.content, 80) or "",
            sender_id=self.sender_id,
            type=MessageType(self.type),
        )


__all__ = [
    "Message",
    "MessageMetadata",
    "MessageType",
    "ReadStatus",
    "ReplyPreview",
    "truncate_caption",
]
