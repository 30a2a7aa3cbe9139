"""EventBus implementation for voice session pub/sub."""

import asyncio
import uuid
from typing import Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import BusMessage, VoiceTopic

logger = get_logger(__name__)


TopicHandler = Callable[[BusMessage], Awaitable[None]]


class IEventBus(Protocol):
    """In-memory pub/sub for exchanging BusMessages."""

    def subscribe(self, topic: VoiceTopic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        ...

    def unsubscribe(self, topic: VoiceTopic, handler: TopicHandler) -> None:
        """Remove a handler from a topic."""
        ...

    async def publish(self, message: BusMessage) -> None:
        """Publish BusMessage to subscriber callbacks."""
        ...


class EventBus:
    """In-memory pub/sub event bus, one per voice session."""

    def __init__(self):
        self._subscribers: dict[VoiceTopic, list[TopicHandler]] = {
            topic: [] for topic in VoiceTopic
        }

    def subscribe(self, topic: VoiceTopic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: VoiceTopic, handler: TopicHandler) -> None:
        """Remove a handler from a topic. Unknown handlers are ignored."""
        handlers = self._subscribers[topic]
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, topic: VoiceTopic) -> int:
        return len(self._subscribers[topic])

    async def publish(self, message: BusMessage) -> None:
        """Publish BusMessage: calls subscriber callbacks concurrently."""
        # Generate ID if not provided
        if not message.id:
            message.id = str(uuid.uuid4())

        # Copy so handlers may unsubscribe while running
        handlers = list(self._subscribers.get(message.topic, []))
        if not handlers:
            return

        results = await asyncio.gather(
            *[handler(message) for handler in handlers],
            return_exceptions=True,
        )

        # Log any exceptions
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error(
                    "Error in handler %s for %s: %s", i, message.topic.value, result
                )
