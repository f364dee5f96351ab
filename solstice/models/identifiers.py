"""Deterministic identifiers shared across models.

Every record whose creation can race (likes, passes, shown-match markers,
direct and match conversations) is addressed by an id derived from the user
ids involved, so concurrent writers converge on the same document.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Iterable, Tuple

from pydantic.functional_validators import AfterValidator, BeforeValidator

from ..exceptions import InvalidIdentifierError
from ..utils.clock import ensure_utc

SEPARATOR = "_"
DIRECT_CHAT_PREFIX = "chat_"
MATCH_CHAT_PREFIX = "match_"

# user ids are used as map keys in dotted field paths and joined with SEPARATOR
_FORBIDDEN = (SEPARATOR, ".", "/")


def validate_user_id(value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidIdentifierError(f"user id must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text or text != value:
        raise InvalidIdentifierError(f"user id must be non-empty and untrimmed: {value!r}")
    for char in _FORBIDDEN:
        if char in text:
            raise InvalidIdentifierError(f"user id {value!r} must not contain {char!r}")
    return text


def ordered_pair(a: str, b: str) -> Tuple[str, str]:
    first, second = validate_user_id(a), validate_user_id(b)
    if first == second:
        raise InvalidIdentifierError(f"a pair needs two distinct users, got {first!r} twice")
    return (first, second) if first < second else (second, first)


def pair_key(a: str, b: str) -> str:
    """Order-independent key for an unordered pair of users."""
    return SEPARATOR.join(ordered_pair(a, b))


def direct_chat_id(a: str, b: str) -> str:
    return DIRECT_CHAT_PREFIX + pair_key(a, b)


def match_chat_id(a: str, b: str) -> str:
    return MATCH_CHAT_PREFIX + pair_key(a, b)


def _directed(actor: str, target: str) -> str:
    actor_id, target_id = validate_user_id(actor), validate_user_id(target)
    if actor_id == target_id:
        raise InvalidIdentifierError(f"user {actor_id!r} cannot target itself")
    return f"{actor_id}{SEPARATOR}{target_id}"


def like_record_id(actor: str, target: str) -> str:
    return _directed(actor, target)


def pass_record_id(actor: str, target: str) -> str:
    return _directed(actor, target)


def follow_record_id(follower: str, following: str) -> str:
    return _directed(follower, following)


def shown_match_id(a: str, b: str) -> str:
    return pair_key(a, b)


def unique_participants(participants: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for participant in participants:
        user_id = validate_user_id(participant)
        if user_id not in seen:
            seen.append(user_id)
    return tuple(seen)


def _user_id_field(value: Any) -> str:
    # pydantic only turns ValueError into a ValidationError
    try:
        return validate_user_id(value)
    except InvalidIdentifierError as exc:
        raise ValueError(str(exc)) from exc


UserId = Annotated[str, AfterValidator(_user_id_field)]
UtcDatetime = Annotated[datetime, BeforeValidator(ensure_utc)]

__all__ = [
    "DIRECT_CHAT_PREFIX",
    "MATCH_CHAT_PREFIX",
    "SEPARATOR",
    "UserId",
    "UtcDatetime",
    "direct_chat_id",
    "follow_record_id",
    "like_record_id",
    "match_chat_id",
    "ordered_pair",
    "pair_key",
    "pass_record_id",
    "shown_match_id",
    "unique_participants",
    "validate_user_id",
]
