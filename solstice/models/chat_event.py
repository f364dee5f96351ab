from __future__ import annotations

import enum
from typing import ClassVar

from pydantic import Field

from ..db.collections import CHAT_EVENTS_COLLECTION
from .base import DocumentModel
from .identifiers import UtcDatetime
from ..utils.clock import utcnow


class ChatEventType(str, enum.Enum):
    MEMBER_ADDED = "memberAdded"
    MEMBER_REMOVED = "memberRemoved"


class ChatEvent(DocumentModel):
    """Immutable audit record of a group membership change."""

    collection: ClassVar[str] = CHAT_EVENTS_COLLECTION

    chat_id: str = Field(..., alias="chatId", min_length=1)
    type: ChatEventType
    user_id: str = Field(..., alias="userId", min_length=1)
    performed_by: str = Field(..., alias="performedBy", min_length=1)
    timestamp: UtcDatetime = Field(default_factory=utcnow)

    def display_text(self) -> str:
        verb = "Added" if self.type == ChatEventType.MEMBER_ADDED else "Removed"
        return f"{verb} @{self.user_id}"


__all__ = ["ChatEvent", "ChatEventType"]
