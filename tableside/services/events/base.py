"""
Event Publisher Abstract Base Class

Defines the outbound contract by which the order engine announces state
changes to real-time subscribers (kitchen displays, staff dashboards, the
ordering customer's device). The core never addresses subscribers directly:
it publishes a topic, a JSON payload and the routing keys it belongs to.

Delivery expectations placed on the transport:
    - at-least-once
    - ordered per routing key, not globally
    - publish happens after the database commit it describes

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    """Every topic the order engine publishes."""
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status-changed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_PAYMENT_UPDATED = "order.payment-updated"
    INVENTORY_LOW_STOCK = "inventory.low-stock"
    INVENTORY_OUT_OF_STOCK = "inventory.out-of-stock"
    INVENTORY_BACK_IN_STOCK = "inventory.back-in-stock"
    TABLE_UPDATED = "table.updated"
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_CONFIRMED = "payment.confirmed"


def restaurant_key(restaurant_id: int) -> str:
    """Routing key for restaurant-scoped subscribers (dashboards, KDS)."""
    return f"restaurant:{restaurant_id}"


def order_key(order_id: int) -> str:
    """Routing key for the customer tracking one order."""
    return f"order:{order_id}"


@dataclass
class Event:
    """One published event, as handed to the transport."""
    topic: Topic
    payload: dict[str, Any]
    keys: tuple[str, ...]
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic.value,
            "payload": self.payload,
            "keys": list(self.keys),
            "published_at": self.published_at.isoformat(),
        }


class BasePublisher(ABC):
    """Abstract base class for event publishers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the transport name."""
        pass

    @abstractmethod
    async def publish(
        self,
        topic: Topic,
        payload: dict[str, Any],
        keys: Iterable[str],
    ) -> None:
        """
        Publish one event to every routing key.

        Raises whatever the transport raises; callers on the order path go
        through ``safe_publish`` so a broken bus never fails a committed change.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check transport connectivity."""
        pass


async def safe_publish(
    publisher: BasePublisher,
    topic: Topic,
    payload: dict[str, Any],
    keys: Iterable[str],
) -> bool:
    """
    Publish and log instead of raising.

    Returns:
        bool: True if the transport accepted the event
    """
    try:
        await publisher.publish(topic, payload, keys)
        return True
    except Exception as e:
        logger.exception(f"Failed to publish {topic.value} to {list(keys)}: {e}")
        return False
