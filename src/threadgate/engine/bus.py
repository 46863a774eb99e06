"""In-process event bus for UI updates and Worker progress."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """
    Publish/subscribe fan-out.

    Subscribers may be sync or async. A failing subscriber is logged and
    never affects the publisher or other subscribers.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def publish(self, event: dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Event subscriber failed on {event.get('type')}: {e}", exc_info=True)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
