"""
Redis Event Publisher

Production transport. Each routing key maps to one Redis pub/sub channel
(``<prefix>restaurant:<id>``, ``<prefix>order:<id>``); the real-time
gateway process subscribes to those channels and forwards to sockets.

Requirements:
    - REDIS_URL must point at the same Redis the Celery worker uses

Author: Khalil Bannouri
Version: 4.0.0
"""

import json
import logging
from typing import Any, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tableside.core.config import get_settings
from tableside.services.events.base import BasePublisher, Event, Topic

logger = logging.getLogger(__name__)


class RedisPublisher(BasePublisher):
    """Publishes events over Redis pub/sub."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel_prefix: Optional[str] = None,
    ):
        settings = get_settings()

        self._client = aioredis.from_url(
            redis_url or settings.redis_url,
            socket_timeout=2,
        )
        self._prefix = (
            channel_prefix if channel_prefix is not None else settings.event_channel_prefix
        )

        logger.info(f"RedisPublisher initialized (prefix={self._prefix!r})")

    @property
    def provider_name(self) -> str:
        return "redis"

    async def publish(
        self,
        topic: Topic,
        payload: dict[str, Any],
        keys: Iterable[str],
    ) -> None:
        event = Event(topic=topic, payload=payload, keys=tuple(keys))
        message = json.dumps(event.to_dict(), default=str)

        for key in event.keys:
            receivers = await self._client.publish(f"{self._prefix}{key}", message)
            logger.debug(f"Redis: {topic.value} -> {key} ({receivers} subscribers)")

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.error(f"Redis: Health check failed - {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
