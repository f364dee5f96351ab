"""Fire-and-forget event fan-out over Redis pub/sub.

Match and message events are published for the push-delivery worker. When
pub/sub is disabled or Redis is unreachable, publishing is a silent no-op:
sync correctness never depends on it.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from redis.asyncio import Redis

from .config import Settings, get_settings

LOGGER = logging.getLogger(__name__)

MATCH_CREATED = "match_created"
MESSAGE_CREATED = "message_created"


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class EventPublisher:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[Redis] = None) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._connect_failed = False

    @property
    def enabled(self) -> bool:
        return bool(self._settings.redis_pubsub_enabled) and (self._client is not None or bool(self._settings.redis_url))

    def channel(self, topic: str) -> str:
        prefix = (self._settings.redis_pubsub_prefix or "").strip()
        return f"{prefix}.{topic}" if prefix else topic

    async def _ensure_client(self) -> Optional[Redis]:
        if self._client is not None:
            return self._client
        if not self._settings.redis_url or self._connect_failed:
            return None
        try:
            client = Redis.from_url(
                self._settings.redis_url,
                encoding="utf-8",
                decode_responses=False,
            )
            await client.ping()
            self._client = client
        except Exception as exc:
            LOGGER.warning("Redis unavailable, events will not be published: %s", exc)
            self._connect_failed = True
            self._client = None
        return self._client

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        if not self._settings.redis_pubsub_enabled:
            return
        client = await self._ensure_client()
        if not client:
            return
        try:
            payload = json.dumps(event, separators=(",", ":"), default=_default).encode("utf-8")
            await client.publish(self.channel(topic), payload)
        except Exception as exc:
            LOGGER.warning("Failed publishing %s event: %s", topic, exc)

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as exc:  # pragma: no cover - best-effort logging
                LOGGER.debug("Error closing Redis client: %s", exc)
            self._client = None


__all__ = ["EventPublisher", "MATCH_CREATED", "MESSAGE_CREATED"]
