from .chat_session import ChatItem, ChatSession
from .conversation_service import ChatChange, ConversationService, apply_chat_change, ensure_pair_chat
from .feed_service import EngagementWeights, FeedPaginator, FeedType, engagement_score
from .likes_service import MatchEngine

__all__ = [
    "ChatChange",
    "ChatItem",
    "ChatSession",
    "ConversationService",
    "EngagementWeights",
    "FeedPaginator",
    "FeedType",
    "MatchEngine",
    "apply_chat_change",
    "engagement_score",
    "ensure_pair_chat",
]
