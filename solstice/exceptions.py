"""Domain exceptions raised by the sync engines."""

from __future__ import annotations

from typing import Optional


class SyncError(RuntimeError):
    """Base exception for domain-level failures in the sync core."""


class InvariantViolationError(SyncError):
    """Raised when a caller breaks a structural rule (bad ids, wrong chat type, ...)."""


class InvalidIdentifierError(InvariantViolationError):
    """Raised when an identifier is empty, malformed or pairs a user with itself."""


class InvalidParticipantsError(InvariantViolationError):
    """Raised when a conversation is requested with an unusable participant set."""


class InvalidChatError(InvariantViolationError):
    """Raised when an operation does not apply to the given conversation."""


class InvalidMessageError(InvariantViolationError):
    """Raised for empty or otherwise unusable message payloads."""


class NotAuthenticatedError(InvariantViolationError):
    """Raised when an operation needs a signed-in user and there is none."""


class NotChatOwnerError(InvariantViolationError):
    """Raised when a non-owner attempts an owner-only conversation operation."""


class NotMessageOwnerError(InvariantViolationError):
    """Raised when a user tries to delete a message they did not send."""


class UserNotFoundError(SyncError):
    """Raised when a referenced user document is missing."""


class InvalidUserDataError(SyncError):
    """Raised when a user document cannot be used for matching."""


class LocationError(SyncError):
    """Base exception for location lookups."""


class LocationUnavailableError(LocationError):
    """Raised when the device location cannot be determined."""


class LocationPermissionDeniedError(LocationError):
    """Raised when the user refused location access."""


class PartialDeletionError(SyncError):
    """Raised when a multi-step conversation deletion stops part way."""

    def __init__(
        self,
        chat_id: str,
        *,
        messages_deleted: int,
        events_deleted: int,
        chat_deleted: bool = False,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            f"deletion of chat {chat_id} stopped after {messages_deleted} messages "
            f"and {events_deleted} events: {cause}"
        )
        self.chat_id = chat_id
        self.messages_deleted = messages_deleted
        self.events_deleted = events_deleted
        self.chat_deleted = chat_deleted
        self.cause = cause


__all__ = [
    "InvalidChatError",
    "InvalidIdentifierError",
    "InvalidMessageError",
    "InvalidParticipantsError",
    "InvalidUserDataError",
    "InvariantViolationError",
    "LocationError",
    "LocationPermissionDeniedError",
    "LocationUnavailableError",
    "NotAuthenticatedError",
    "NotChatOwnerError",
    "NotMessageOwnerError",
    "PartialDeletionError",
    "SyncError",
    "UserNotFoundError",
]
