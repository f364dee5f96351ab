"""Likes, passes, match detection and candidate discovery.

Every record a tap can write is addressed by a deterministic id, and the
match chat plus the shown-match marker are created with the store's
create-if-absent primitive, so any number of interleaved likes between the
same two users yields exactly one chat and one ``MatchEvent``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Set

from ..config import Settings, get_settings
from ..db.collections import LIKES_COLLECTION, PASSES_COLLECTION, SHOWN_MATCHES_COLLECTION, USERS_COLLECTION
from ..events import MATCH_CREATED, EventPublisher
from ..exceptions import InvalidUserDataError, LocationUnavailableError, UserNotFoundError
from ..integrations.location import LocationProvider, distance_miles
from ..models.chat import ChatType
from ..models.identifiers import like_record_id, pass_record_id, shown_match_id, validate_user_id
from ..models.likes import LikeRecord, MatchEvent, PassRecord, ShownMatchRecord
from ..models.user import DatingFilters, GeoPoint, User
from ..store.base import DocumentStore, ListenerRegistration, Query, QuerySnapshot, invoke
from ..store.exceptions import AlreadyExistsError, DocumentDecodeError, PermissionDeniedError, StoreError
from ..store.fields import ArrayUnion
from ..utils.clock import utcnow
from .conversation_service import ensure_pair_chat

LOGGER = logging.getLogger(__name__)

MatchListener = Callable[[MatchEvent], Any]


class MatchEngine:
    """Per-session match state: outgoing likes, incoming match delivery and the seen-candidate set."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        location_provider: Optional[LocationProvider] = None,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._location_provider = location_provider
        self._publisher = publisher
        self._settings = settings or get_settings()
        self._clock = clock
        self._listeners: List[MatchListener] = []
        self._seen_ids: Set[str] = set()
        self._delivered: Set[str] = set()
        self._user_id: Optional[str] = None
        self._registration: Optional[ListenerRegistration] = None
        self.on_fatal_error: Optional[Callable[[Exception], Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def running(self) -> bool:
        return self._registration is not None and self._registration.active

    @property
    def seen_ids(self) -> Set[str]:
        return set(self._seen_ids)

    def add_match_listener(self, listener: MatchListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _notify(self, event: MatchEvent) -> None:
        for listener in list(self._listeners):
            try:
                await invoke(listener, event)
            except Exception as exc:
                LOGGER.error("Match listener failed for chat %s: %s", event.chat_id, exc)

    # likes and passes

    async def like(self, actor_id: str, target_id: str) -> Optional[MatchEvent]:
        """Record a like; returns the ``MatchEvent`` only for the call that completes a new match."""
        like_id = like_record_id(actor_id, target_id)
        record = LikeRecord(liker_id=actor_id, liked_id=target_id, timestamp=self._clock())
        try:
            await self._store.create(LIKES_COLLECTION, like_id, record.to_document())
        except AlreadyExistsError:
            LOGGER.debug("Like %s already recorded", like_id)

        reciprocal = await self._store.get(LIKES_COLLECTION, like_record_id(target_id, actor_id))
        if not reciprocal.exists:
            return None

        shown_id = shown_match_id(actor_id, target_id)
        shown = await self._store.get(SHOWN_MATCHES_COLLECTION, shown_id)
        if shown.exists:
            return None

        now = self._clock()
        chat, _created = await ensure_pair_chat(
            self._store, ChatType.MATCH, actor_id, target_id, created_by=actor_id, now=now
        )
        marker = ShownMatchRecord(
            id=shown_id,
            user_id=actor_id,
            matched_user_id=target_id,
            participant_ids=sorted([actor_id, target_id]),
            chat_id=chat.id,
            shown_to=[actor_id],
            created_at=now,
        )
        try:
            await self._store.create(SHOWN_MATCHES_COLLECTION, shown_id, marker.to_document())
        except AlreadyExistsError:
            LOGGER.debug("Match %s already announced by a concurrent like", shown_id)
            return None

        event = MatchEvent(user_id=actor_id, matched_user_id=target_id, chat_id=chat.id)
        LOGGER.info("Match between %s and %s (chat %s)", actor_id, target_id, chat.id)
        if actor_id == self._user_id:
            self._delivered.add(shown_id)
        await self._notify(event)
        if self._publisher is not None:
            await self._publisher.publish(
                MATCH_CREATED,
                {"userId": actor_id, "matchedUserId": target_id, "chatId": chat.id, "createdAt": now},
            )
        return event

    async def pass_profile(self, actor_id: str, target_id: str) -> None:
        record = PassRecord(passer_id=actor_id, passed_id=target_id, timestamp=self._clock())
        await self._store.set(PASSES_COLLECTION, pass_record_id(actor_id, target_id), record.to_document())

    async def unlike(self, actor_id: str, target_id: str) -> None:
        await self._store.delete(LIKES_COLLECTION, like_record_id(actor_id, target_id))

    async def _liked_ids(self, user_id: str) -> Set[str]:
        query = Query(LIKES_COLLECTION).where("likerId", "==", user_id)
        return {snap.get("likedId") for snap in await self._store.query(query) if snap.get("likedId")}

    async def _liker_ids(self, user_id: str) -> Set[str]:
        query = Query(LIKES_COLLECTION).where("likedId", "==", user_id)
        return {snap.get("likerId") for snap in await self._store.query(query) if snap.get("likerId")}

    async def _passed_ids(self, user_id: str) -> Set[str]:
        query = Query(PASSES_COLLECTION).where("passerId", "==", user_id)
        return {snap.get("passedId") for snap in await self._store.query(query) if snap.get("passedId")}

    async def matched_user_ids(self, user_id: str) -> Set[str]:
        user_id = validate_user_id(user_id)
        return await self._liked_ids(user_id) & await self._liker_ids(user_id)

    async def likes_received(self, user_id: str) -> Set[str]:
        """Users who liked ``user_id`` without being liked back yet."""
        user_id = validate_user_id(user_id)
        return await self._liker_ids(user_id) - await self._liked_ids(user_id)

    # candidates

    async def _load_user(self, user_id: str) -> User:
        snapshot = await self._store.get(USERS_COLLECTION, user_id)
        if not snapshot.exists:
            raise UserNotFoundError(f"user {user_id} not found")
        try:
            return User.from_document(snapshot)
        except DocumentDecodeError as exc:
            raise InvalidUserDataError(str(exc)) from exc

    async def _viewer_location(self, user: User) -> GeoPoint:
        if self._location_provider is not None:
            return await self._location_provider.current_location()
        if user.location is None:
            raise LocationUnavailableError(f"no location known for user {user.id}")
        return user.location

    def _candidate_query(self, viewer: User, filters: DatingFilters) -> Query:
        query = Query(USERS_COLLECTION).where("isDatingEnabled", "==", True)
        if filters.genders:
            query = query.where("gender", "in", sorted(filters.genders))
            if viewer.gender is not None:
                query = query.where("interestedIn", "array-contains", viewer.gender)
        return query.limit(self._settings.candidate_limit)

    async def fetch_candidates(self, user_id: str, filters: Optional[DatingFilters] = None) -> List[User]:
        """Return unseen, eligible profiles near the viewer; each is returned once per session."""
        user_id = validate_user_id(user_id)
        viewer = await self._load_user(user_id)
        if not viewer.is_dating_enabled:
            LOGGER.info("Dating disabled for %s; no candidates", user_id)
            return []
        filters = filters or DatingFilters.for_user(viewer)
        location = await self._viewer_location(viewer)

        excluded = await self._liked_ids(user_id) | await self._passed_ids(user_id)
        snapshots = await self._store.query(self._candidate_query(viewer, filters))

        candidates: List[User] = []
        for snapshot in snapshots:
            if snapshot.id == user_id or snapshot.id in excluded or snapshot.id in self._seen_ids:
                continue
            try:
                candidate = User.from_document(snapshot)
            except DocumentDecodeError as exc:
                LOGGER.warning("Skipping undecodable profile: %s", exc)
                continue
            if not candidate.age_range.overlaps(filters.age_range):
                continue
            # profiles without a stored location are not distance filtered
            if candidate.location is not None and distance_miles(location, candidate.location) > filters.max_distance_miles:
                continue
            self._seen_ids.add(snapshot.id)
            candidates.append(candidate)
        LOGGER.debug("Found %s candidates for %s out of %s profiles", len(candidates), user_id, len(snapshots))
        return candidates

    def reset_candidates(self) -> None:
        self._seen_ids.clear()

    # incoming matches

    def start(self, user_id: str) -> None:
        user_id = validate_user_id(user_id)
        if self._user_id == user_id and self.running:
            return
        self.stop()
        self._user_id = user_id
        query = (
            Query(SHOWN_MATCHES_COLLECTION)
            .where("participantIds", "array-contains", user_id)
            .where("shownTo", "array-not-contains", user_id)
        )
        self._registration = self._store.listen(query, self._on_snapshot, self._on_error)
        LOGGER.info("Match listener started for %s", user_id)

    def stop(self) -> None:
        if self._registration is not None:
            self._registration.remove()
            self._registration = None
        self._user_id = None
        self._delivered = set()
        self._seen_ids = set()

    async def _on_snapshot(self, snapshot: QuerySnapshot) -> None:
        me = self._user_id
        if me is None:
            return
        for document in snapshot.documents:
            if document.id in self._delivered:
                continue
            try:
                record = ShownMatchRecord.from_document(document)
            except DocumentDecodeError as exc:
                LOGGER.warning("Skipping undecodable match record: %s", exc)
                continue
            if me in record.shown_to or not record.chat_id:
                continue
            self._delivered.add(document.id)
            await self._notify(MatchEvent(user_id=me, matched_user_id=record.other(me), chat_id=record.chat_id))
            try:
                await self._store.update(SHOWN_MATCHES_COLLECTION, document.id, {"shownTo": ArrayUnion(me)})
            except StoreError as exc:
                LOGGER.warning("Failed marking match %s as shown to %s: %s", document.id, me, exc)

    async def _on_error(self, exc: Exception) -> None:
        LOGGER.error("Match listener failed for %s: %s", self._user_id, exc)
        if isinstance(exc, PermissionDeniedError) and self.on_fatal_error is not None:
            await invoke(self.on_fatal_error, exc)


__all__ = ["MatchEngine", "MatchListener"]
