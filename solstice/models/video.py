from __future__ import annotations

import enum
from typing import ClassVar, List, Optional

from pydantic import Field

from ..db.collections import VIDEOS_COLLECTION
from .base import DocumentModel
from .identifiers import UtcDatetime
from ..utils.clock import utcnow


class VideoAspectRatio(str, enum.Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"
    SQUARE = "square"


class Video(DocumentModel):
    collection: ClassVar[str] = VIDEOS_COLLECTION

    creator_id: str = Field(..., alias="creatorId", min_length=1)
    caption: str = ""
    video_url: str = Field("", alias="videoURL")
    thumbnail_url: Optional[str] = Field(None, alias="thumbnailURL")
    likes: int = Field(0, ge=0)
    comments: int = Field(0, ge=0)
    shares: int = Field(0, ge=0)
    view_count: int = Field(0, alias="viewCount", ge=0)
    completion_rate: float = Field(0.0, alias="completionRate", ge=0.0, le=1.0)
    engagement_score: float = Field(0.0, alias="engagementScore")
    created_at: UtcDatetime = Field(default_factory=utcnow, alias="createdAt")
    duration: float = Field(0.0, ge=0.0)
    hashtags: List[str] = Field(default_factory=list)
    aspect_ratio: VideoAspectRatio = Field(VideoAspectRatio.PORTRAIT, alias="aspectRatio")


__all__ = ["Video", "VideoAspectRatio"]
