"""Document models shared by the sync engines."""

from .chat import Chat, ChatType, LastMessage, ParticipantPreview
from .chat_event import ChatEvent, ChatEventType
from .likes import LikeRecord, MatchEvent, PassRecord, ShownMatchRecord
from .message import Message, MessageMetadata, MessageType, ReadStatus, ReplyPreview
from .user import AgeRange, DatingFilters, Follow, Gender, GeoPoint, User
from .video import Video, VideoAspectRatio

__all__ = [
    "AgeRange",
    "Chat",
    "ChatEvent",
    "ChatEventType",
    "ChatType",
    "DatingFilters",
    "Follow",
    "Gender",
    "GeoPoint",
    "LastMessage",
    "LikeRecord",
    "MatchEvent",
    "Message",
    "MessageMetadata",
    "MessageType",
    "ParticipantPreview",
    "PassRecord",
    "ReadStatus",
    "ReplyPreview",
    "ShownMatchRecord",
    "User",
    "Video",
    "VideoAspectRatio",
]
