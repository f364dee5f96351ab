from typing import Final

USERS_COLLECTION: Final[str] = "users"
FOLLOWS_COLLECTION: Final[str] = "follows"
VIDEOS_COLLECTION: Final[str] = "videos"
LIKES_COLLECTION: Final[str] = "likes"
PASSES_COLLECTION: Final[str] = "passes"
SHOWN_MATCHES_COLLECTION: Final[str] = "shown_matches"
CHATS_COLLECTION: Final[str] = "chats"
MESSAGES_COLLECTION: Final[str] = "messages"
CHAT_EVENTS_COLLECTION: Final[str] = "chat_events"

__all__ = [
    "CHATS_COLLECTION",
    "CHAT_EVENTS_COLLECTION",
    "FOLLOWS_COLLECTION",
    "LIKES_COLLECTION",
    "MESSAGES_COLLECTION",
    "PASSES_COLLECTION",
    "SHOWN_MATCHES_COLLECTION",
    "USERS_COLLECTION",
    "VIDEOS_COLLECTION",
]
