from __future__ import annotations

import pytest

from solstice.exceptions import InvalidIdentifierError, InvariantViolationError
from solstice.models.identifiers import (
    direct_chat_id,
    follow_record_id,
    like_record_id,
    match_chat_id,
    pair_key,
    pass_record_id,
    shown_match_id,
    unique_participants,
    validate_user_id,
)
from solstice.models.likes import LikeRecord
from solstice.store.base import DocumentSnapshot
from solstice.store.exceptions import DocumentDecodeError


def test_pair_key_is_order_independent() -> None:
    assert pair_key("alice", "bob") == "alice_bob"
    assert pair_key("bob", "alice") == "alice_bob"


def test_chat_ids_are_prefixed_pair_keys() -> None:
    assert direct_chat_id("zoe", "adam") == "chat_adam_zoe"
    assert match_chat_id("zoe", "adam") == "match_adam_zoe"
    assert direct_chat_id("adam", "zoe") == direct_chat_id("zoe", "adam")
    assert shown_match_id("zoe", "adam") == "adam_zoe"


def test_directed_ids_keep_actor_first() -> None:
    assert like_record_id("alice", "bob") == "alice_bob"
    assert like_record_id("bob", "alice") == "bob_alice"
    assert pass_record_id("alice", "bob") == "alice_bob"
    assert follow_record_id("viewer", "friend") == "viewer_friend"
    assert follow_record_id("friend", "viewer") == "friend_viewer"


@pytest.mark.parametrize("value", ["", " ", " bob", "a_b", "a.b", "a/b", None, 42])
def test_invalid_user_ids_are_rejected(value) -> None:
    with pytest.raises(InvalidIdentifierError):
        validate_user_id(value)


def test_pair_with_itself_is_an_invariant_violation() -> None:
    with pytest.raises(InvariantViolationError):
        pair_key("alice", "alice")
    with pytest.raises(InvalidIdentifierError):
        like_record_id("alice", "alice")


def test_unique_participants_keeps_first_occurrence_order() -> None:
    assert unique_participants(["bob", "alice", "bob", "carol"]) == ("bob", "alice", "carol")


def test_identity_fields_are_never_defaulted_on_decode() -> None:
    snapshot = DocumentSnapshot("likes", "x_y", {"likerId": "", "likedId": "y"})
    with pytest.raises(DocumentDecodeError):
        LikeRecord.from_document(snapshot)
