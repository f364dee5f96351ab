from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from solstice.config import get_settings
from solstice.db.collections import FOLLOWS_COLLECTION, USERS_COLLECTION, VIDEOS_COLLECTION
from solstice.models.identifiers import follow_record_id
from solstice.store.memory import MemoryDocumentStore

EPOCH = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("MONGO_URI", "mongodb://localhost:27017/test")
    monkeypatch.setenv("MONGO_DB_NAME", "solstice-test")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("REDIS_PUBSUB_ENABLED", "false")
    monkeypatch.delenv("CLOUDINARY_URL", raising=False)
    get_settings.cache_clear()  # type: ignore[attr-defined]


class FakeClock:
    """Deterministic clock; every read advances by ``step`` so timestamps stay distinct."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(milliseconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingPublisher:
    """Stands in for ``EventPublisher`` and keeps every published event."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.closed = False

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        self.events.append((topic, dict(event)))

    async def close(self) -> None:
        self.closed = True

    def topics(self) -> List[str]:
        return [topic for topic, _event in self.events]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest_asyncio.fixture
async def store() -> AsyncIterator[MemoryDocumentStore]:
    memory = MemoryDocumentStore()
    yield memory
    await memory.close()


@pytest_asyncio.fixture
async def mongo_client() -> AsyncIterator[AsyncMongoMockClient]:
    client = AsyncMongoMockClient(tz_aware=True)
    yield client
    client.close()


async def seed_user(
    store: MemoryDocumentStore,
    user_id: str,
    *,
    gender: str = "female",
    interested_in: Optional[List[str]] = None,
    location: Optional[Tuple[float, float]] = (40.7128, -74.0060),
    age_range: Tuple[int, int] = (18, 100),
    dating: bool = True,
    **extra: Any,
) -> None:
    data: Dict[str, Any] = {
        "username": f"{user_id}-name",
        "isDatingEnabled": dating,
        "gender": gender,
        "interestedIn": interested_in if interested_in is not None else ["male", "female"],
        "ageRange": {"min": age_range[0], "max": age_range[1]},
        "maxDistance": 50,
        **extra,
    }
    if location is not None:
        data["location"] = {"latitude": location[0], "longitude": location[1]}
    await store.set(USERS_COLLECTION, user_id, data)


async def seed_video(
    store: MemoryDocumentStore,
    video_id: str,
    *,
    creator_id: str = "creator",
    created_at: datetime = EPOCH,
    score: float = 0.0,
    **counters: int,
) -> None:
    await store.set(
        VIDEOS_COLLECTION,
        video_id,
        {
            "creatorId": creator_id,
            "caption": f"video {video_id}",
            "videoURL": f"https://cdn.test/{video_id}.mp4",
            "createdAt": created_at,
            "engagementScore": score,
            "likes": counters.get("likes", 0),
            "comments": counters.get("comments", 0),
            "shares": counters.get("shares", 0),
            "viewCount": counters.get("views", 0),
        },
    )


async def seed_follow(store: MemoryDocumentStore, follower: str, following: str) -> None:
    await store.set(
        FOLLOWS_COLLECTION,
        follow_record_id(follower, following),
        {"followerId": follower, "followingId": following, "createdAt": EPOCH},
    )
