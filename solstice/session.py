"""Per-user wiring of the sync engines.

``UserSession`` follows the auth provider: signing in starts conversation
sync, the incoming-match listener and a fresh feed for that user; signing
out (or a permission error from a live subscription or from a call made
inside ``guard()``) stops them all and drops their local state.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from .config import Settings, get_settings
from .events import EventPublisher
from .integrations.auth import AuthProvider
from .integrations.location import LocationProvider
from .services.conversation_service import ConversationService
from .services.feed_service import FeedPaginator, FeedType
from .services.likes_service import MatchEngine
from .store.base import DocumentStore
from .store.exceptions import PermissionDeniedError
from .utils.clock import utcnow

LOGGER = logging.getLogger(__name__)


class UserSession:
    def __init__(
        self,
        store: DocumentStore,
        auth: AuthProvider,
        *,
        location_provider: Optional[LocationProvider] = None,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._auth = auth
        self._settings = settings or get_settings()
        self._clock = clock
        self._publisher = publisher
        self.conversations = ConversationService(store, publisher=publisher, settings=self._settings, clock=clock)
        self.matches = MatchEngine(
            store,
            location_provider=location_provider,
            publisher=publisher,
            settings=self._settings,
            clock=clock,
        )
        self.conversations.on_fatal_error = self._on_fatal_error
        self.matches.on_fatal_error = self._on_fatal_error
        self.feed: Optional[FeedPaginator] = None
        self._user_id: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def active(self) -> bool:
        return self._user_id is not None

    async def start(self) -> None:
        """Follow the auth provider, activating immediately if a user is already signed in."""
        if self._unsubscribe is None:
            self._unsubscribe = self._auth.add_listener(self._on_auth_change)
        await self._on_auth_change(self._auth.current_user_id)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._deactivate()
        if self._publisher is not None:
            await self._publisher.close()

    @asynccontextmanager
    async def guard(self) -> AsyncIterator["UserSession"]:
        """Wrap user-initiated calls so a permission error ends the session before it propagates.

        Usage::

            async with session.guard():
                await session.conversations.send_message(chat, "hi")
        """
        try:
            yield self
        except PermissionDeniedError as exc:
            await self._on_fatal_error(exc)
            raise

    async def _on_auth_change(self, user_id: Optional[str]) -> None:
        if user_id == self._user_id:
            return
        await self._deactivate()
        if user_id is not None:
            await self._activate(user_id)

    async def _activate(self, user_id: str) -> None:
        await self.conversations.start(user_id)
        self.matches.start(user_id)
        self.feed = FeedPaginator(
            self._store,
            user_id,
            feed_type=FeedType.FOR_YOU,
            page_size=self._settings.feed_page_size,
            settings=self._settings,
            clock=self._clock,
        )
        self._user_id = user_id
        LOGGER.info("Session started for %s", user_id)

    async def _deactivate(self) -> None:
        user_id, self._user_id = self._user_id, None
        if self.feed is not None:
            self.feed.close()
            self.feed = None
        self.matches.stop()
        await self.conversations.stop()
        if user_id is not None:
            LOGGER.info("Session ended for %s", user_id)

    async def _on_fatal_error(self, exc: Exception) -> None:
        if self._user_id is None:
            return
        LOGGER.error("Permission error for %s, signing out: %s", self._user_id, exc)
        await self._deactivate()
        await self._auth.sign_out()


__all__ = ["UserSession"]
