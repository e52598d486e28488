"""
Event Publisher Factory

Returns the in-memory or Redis publisher based on ENV_MODE.

Usage:
    from tableside.services.events import get_publisher, Topic, restaurant_key

    publisher = get_publisher()
    await publisher.publish(Topic.TABLE_UPDATED, table.to_dict(), [restaurant_key(1)])

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from tableside.core.config import get_settings
from tableside.services.events.base import (
    BasePublisher,
    Event,
    Topic,
    order_key,
    restaurant_key,
    safe_publish,
)
from tableside.services.events.memory import InMemoryPublisher
from tableside.services.events.redis import RedisPublisher

logger = logging.getLogger(__name__)


@lru_cache()
def get_publisher() -> BasePublisher:
    """Get the configured event publisher."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Event Publisher: Using InMemoryPublisher (development mode)")
        return InMemoryPublisher()
    else:
        logger.info(f"Event Publisher: Using RedisPublisher ({settings.env_mode.value} mode)")
        return RedisPublisher()


def reset_publisher() -> None:
    """Clear the cached publisher instance."""
    get_publisher.cache_clear()


__all__ = [
    "get_publisher",
    "reset_publisher",
    "BasePublisher",
    "Event",
    "Topic",
    "InMemoryPublisher",
    "RedisPublisher",
    "order_key",
    "restaurant_key",
    "safe_publish",
]
