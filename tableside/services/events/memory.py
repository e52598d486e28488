"""
In-Memory Event Publisher

Development and test transport. Events are kept in a list in publish
order, so tests can assert exactly what subscribers would have received.
"""

import logging
from typing import Any, Iterable

from tableside.services.events.base import BasePublisher, Event, Topic

logger = logging.getLogger(__name__)


class InMemoryPublisher(BasePublisher):
    """Records every event instead of broadcasting it."""

    def __init__(self):
        self.events: list[Event] = []
        logger.info("InMemoryPublisher initialized")

    @property
    def provider_name(self) -> str:
        return "memory"

    async def publish(
        self,
        topic: Topic,
        payload: dict[str, Any],
        keys: Iterable[str],
    ) -> None:
        event = Event(topic=topic, payload=payload, keys=tuple(keys))
        self.events.append(event)
        logger.debug(f"Event {topic.value} -> {list(event.keys)}")

    def for_topic(self, topic: Topic) -> list[Event]:
        """All recorded events of one topic, oldest first."""
        return [e for e in self.events if e.topic == topic]

    def topics(self) -> list[Topic]:
        return [e.topic for e in self.events]

    def clear(self) -> None:
        self.events.clear()

    async def health_check(self) -> bool:
        return True
