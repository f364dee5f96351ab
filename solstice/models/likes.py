from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, List, Optional

from pydantic import Field

from ..db.collections import LIKES_COLLECTION, PASSES_COLLECTION, SHOWN_MATCHES_COLLECTION
from .base import DocumentModel
from .identifiers import UserId, UtcDatetime
from ..utils.clock import utcnow


class LikeRecord(DocumentModel):
    collection: ClassVar[str] = LIKES_COLLECTION

    liker_id: UserId = Field(..., alias="likerId")
    liked_id: UserId = Field(..., alias="likedId")
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class PassRecord(DocumentModel):
    collection: ClassVar[str] = PASSES_COLLECTION

    passer_id: UserId = Field(..., alias="passerId")
    passed_id: UserId = Field(..., alias="passedId")
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class ShownMatchRecord(DocumentModel):
    """One per matched pair; ``shown_to`` lists users whose notification was delivered."""

    collection: ClassVar[str] = SHOWN_MATCHES_COLLECTION

    user_id: UserId = Field(..., alias="userId")
    matched_user_id: UserId = Field(..., alias="matchedUserId")
    participant_ids: List[UserId] = Field(..., alias="participantIds", min_length=2, max_length=2)
    chat_id: Optional[str] = Field(None, alias="chatId")
    shown_to: List[str] = Field(default_factory=list, alias="shownTo")
    created_at: UtcDatetime = Field(default_factory=utcnow, alias="createdAt")

    def other(self, user_id: str) -> str:
        return self.matched_user_id if user_id == self.user_id else self.user_id


@dataclass(frozen=True)
class MatchEvent:
    user_id: str
    matched_user_id: str
    chat_id: str


__all__ = ["LikeRecord", "MatchEvent", "PassRecord", "ShownMatchRecord"]
