from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from .collections import (
    CHAT_EVENTS_COLLECTION,
    CHATS_COLLECTION,
    FOLLOWS_COLLECTION,
    LIKES_COLLECTION,
    MESSAGES_COLLECTION,
    PASSES_COLLECTION,
    SHOWN_MATCHES_COLLECTION,
    USERS_COLLECTION,
    VIDEOS_COLLECTION,
)


async def ensure_match_indexes(db: AsyncIOMotorDatabase) -> None:
    # like / pass ids are deterministic, so _id already enforces one record per direction
    await db[LIKES_COLLECTION].create_index(
        [("likedId", ASCENDING), ("timestamp", DESCENDING)],
        name="likes_liked_id_idx",
    )
    await db[LIKES_COLLECTION].create_index(
        [("likerId", ASCENDING), ("timestamp", DESCENDING)],
        name="likes_liker_id_idx",
    )
    await db[PASSES_COLLECTION].create_index("passerId", name="passes_passer_id_idx")
    await db[SHOWN_MATCHES_COLLECTION].create_index("participantIds", name="shown_matches_participants_idx")
    await db[USERS_COLLECTION].create_index(
        [("isDatingEnabled", ASCENDING), ("gender", ASCENDING)],
        name="users_dating_gender_idx",
    )


async def ensure_chat_indexes(db: AsyncIOMotorDatabase) -> None:
    await db[CHATS_COLLECTION].create_index(
        [("participantIds", ASCENDING), ("type", ASCENDING), ("lastActivity", DESCENDING)],
        name="chats_participant_type_activity_idx",
    )
    await db[MESSAGES_COLLECTION].create_index(
        [("chatId", ASCENDING), ("timestamp", ASCENDING)],
        name="messages_chat_timestamp_idx",
    )
    await db[CHAT_EVENTS_COLLECTION].create_index(
        [("chatId", ASCENDING), ("timestamp", ASCENDING)],
        name="chat_events_chat_timestamp_idx",
    )


async def ensure_feed_indexes(db: AsyncIOMotorDatabase) -> None:
    await db[VIDEOS_COLLECTION].create_index(
        [("engagementScore", DESCENDING), ("createdAt", DESCENDING)],
        name="videos_engagement_idx",
    )
    await db[VIDEOS_COLLECTION].create_index(
        [("creatorId", ASCENDING), ("createdAt", DESCENDING)],
        name="videos_creator_created_idx",
    )
    await db[FOLLOWS_COLLECTION].create_index("followerId", name="follows_follower_idx")


__all__ = ["ensure_chat_indexes", "ensure_feed_indexes", "ensure_match_indexes"]
