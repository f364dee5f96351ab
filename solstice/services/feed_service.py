"""Ranked, cursor-paginated video feed.

Scores are recomputed and persisted whenever a counter changes so the
``forYou`` query can sort on a stored field. Pages are fetched with the last
returned document as cursor; a short page ends the feed and a per-session
seen-id set drops any video a skewed index returns twice.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ..config import Settings, get_settings
from ..db.collections import FOLLOWS_COLLECTION, VIDEOS_COLLECTION
from ..exceptions import NotAuthenticatedError
from ..models.video import Video
from ..store.base import DocumentSnapshot, DocumentStore, Query
from ..store.exceptions import DocumentDecodeError
from ..store.fields import Increment
from ..utils.clock import ensure_utc, utcnow

LOGGER = logging.getLogger(__name__)

RECENCY_WINDOW_HOURS = 168.0


class FeedType(str, enum.Enum):
    FOLLOWING = "following"
    FOR_YOU = "forYou"


@dataclass(frozen=True)
class EngagementWeights:
    view: float = 1.0
    like: float = 2.0
    comment: float = 3.0
    share: float = 4.0
    recency: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngagementWeights":
        return cls(
            view=settings.engagement_weight_view,
            like=settings.engagement_weight_like,
            comment=settings.engagement_weight_comment,
            share=settings.engagement_weight_share,
            recency=settings.engagement_weight_recency,
        )


def recency_boost(created_at: datetime, now: datetime) -> float:
    hours = (ensure_utc(now) - ensure_utc(created_at)).total_seconds() / 3600.0
    return max(0.0, RECENCY_WINDOW_HOURS - hours) / RECENCY_WINDOW_HOURS


def engagement_score(
    *,
    views: int,
    likes: int,
    comments: int,
    shares: int,
    created_at: datetime,
    now: Optional[datetime] = None,
    weights: EngagementWeights = EngagementWeights(),
) -> float:
    base = views * weights.view + likes * weights.like + comments * weights.comment + shares * weights.share
    boost = recency_boost(created_at, now or utcnow())
    return base * (1.0 + boost * weights.recency)


def score_video(video: Video, now: Optional[datetime] = None, weights: EngagementWeights = EngagementWeights()) -> float:
    return engagement_score(
        views=video.view_count,
        likes=video.likes,
        comments=video.comments,
        shares=video.shares,
        created_at=video.created_at,
        now=now,
        weights=weights,
    )


class FeedPaginator:
    """Paginates one user's feed; ``refresh`` restarts it, discarding in-flight pages."""

    def __init__(
        self,
        store: DocumentStore,
        user_id: Optional[str],
        *,
        feed_type: FeedType = FeedType.FOR_YOU,
        page_size: Optional[int] = None,
        weights: Optional[EngagementWeights] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._user_id = user_id
        self._feed_type = FeedType(feed_type)
        self._page_size = page_size or settings.feed_page_size
        self._weights = weights or EngagementWeights.from_settings(settings)
        self._clock = clock

        self._videos: List[Video] = []
        self._seen_ids: Set[str] = set()
        self._cursor: Optional[DocumentSnapshot] = None
        self._has_more = True
        self._creator_ids: Optional[List[str]] = None
        self._generation = 0
        self._loading_generation: Optional[int] = None

    @property
    def feed_type(self) -> FeedType:
        return self._feed_type

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def weights(self) -> EngagementWeights:
        return self._weights

    @property
    def videos(self) -> List[Video]:
        return list(self._videos)

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def is_loading(self) -> bool:
        return self._loading_generation == self._generation

    @property
    def seen_ids(self) -> Set[str]:
        return set(self._seen_ids)

    @property
    def generation(self) -> int:
        return self._generation

    def _reset(self) -> None:
        self._generation += 1
        self._videos = []
        self._seen_ids = set()
        self._cursor = None
        self._has_more = True
        self._creator_ids = None
        self._loading_generation = None

    async def refresh(self, feed_type: Optional[FeedType] = None) -> List[Video]:
        if feed_type is not None:
            self._feed_type = FeedType(feed_type)
        self._reset()
        return await self.next_page()

    def close(self) -> None:
        """Drop local state; pages still in flight are discarded when they land."""
        self._reset()
        self._has_more = False

    async def _following_ids(self) -> List[str]:
        if self._creator_ids is None:
            query = Query(FOLLOWS_COLLECTION).where("followerId", "==", self._user_id)
            follows = await self._store.query(query)
            ids = [snap.get("followingId") for snap in follows if snap.get("followingId")]
            self._creator_ids = ids + [self._user_id]
        return self._creator_ids

    async def _build_query(self) -> Query:
        query = Query(VIDEOS_COLLECTION)
        if self._feed_type == FeedType.FOLLOWING:
            if not self._user_id:
                raise NotAuthenticatedError("the following feed needs a signed-in user")
            query = query.where("creatorId", "in", await self._following_ids()).order_by(
                "createdAt", descending=True
            )
        else:
            query = query.order_by("engagementScore", descending=True).order_by("createdAt", descending=True)
        query = query.limit(self._page_size)
        if self._cursor is not None:
            query = query.start_after(self._cursor)
        return query

    async def next_page(self) -> List[Video]:
        """Fetch the next page; returns only videos not seen earlier in this session."""
        if not self._has_more or self.is_loading:
            return []
        generation = self._generation
        self._loading_generation = generation
        try:
            query = await self._build_query()
            snapshots = await self._store.query(query)
        finally:
            if self._loading_generation == generation:
                self._loading_generation = None

        if generation != self._generation:
            LOGGER.debug("Discarding stale feed page (generation %s, now %s)", generation, self._generation)
            return []

        page: List[Video] = []
        for snapshot in snapshots:
            if snapshot.id in self._seen_ids:
                continue
            try:
                video = Video.from_document(snapshot)
            except DocumentDecodeError as exc:
                LOGGER.warning("Skipping undecodable video: %s", exc)
                continue
            self._seen_ids.add(snapshot.id)
            page.append(video)

        if snapshots:
            self._cursor = snapshots[-1]
        self._has_more = len(snapshots) == self._page_size
        self._videos.extend(page)
        return page

    async def record_view(self, video: Video) -> float:
        """Count a view and persist the score recomputed from the stored counters; returns the new score."""
        await self._store.update(VIDEOS_COLLECTION, video.id, {"viewCount": Increment(1)})
        return await self._rescore(video.id)

    async def record_engagement(
        self,
        video_id: str,
        *,
        likes: int = 0,
        comments: int = 0,
        shares: int = 0,
    ) -> float:
        """Apply like / comment / share counter deltas and persist the recomputed score.

        Negative deltas are clamped so no counter drops below zero.
        """
        current = Video.from_document(await self._store.get(VIDEOS_COLLECTION, video_id))
        updates: Dict[str, Any] = {}
        for field_name, delta in (("likes", likes), ("comments", comments), ("shares", shares)):
            delta = max(delta, -getattr(current, field_name))
            if delta:
                updates[field_name] = Increment(delta)
        if updates:
            await self._store.update(VIDEOS_COLLECTION, video_id, updates)
        return await self._rescore(video_id)

    async def _rescore(self, video_id: str) -> float:
        video = Video.from_document(await self._store.get(VIDEOS_COLLECTION, video_id))
        score = score_video(video, self._clock(), self._weights)
        await self._store.update(VIDEOS_COLLECTION, video_id, {"engagementScore": score})
        self._replace_local(video.model_copy(update={"engagement_score": score}))
        return score

    def _replace_local(self, video: Video) -> None:
        for index, existing in enumerate(self._videos):
            if existing.id == video.id:
                self._videos[index] = video
                return


__all__ = [
    "EngagementWeights",
    "FeedPaginator",
    "FeedType",
    "RECENCY_WINDOW_HOURS",
    "engagement_score",
    "recency_boost",
    "score_video",
]
