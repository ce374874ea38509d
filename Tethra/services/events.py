from __future__ import annotations

import asyncio
import logging
from typing import Optional

from Tethra.config import EVENT_QUEUE_SIZE
from Tethra.schemas.chat import ChatEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One live feed of chat events, optionally limited to a single conversation."""

    def __init__(self, bus: "EventBus", conversation_id: Optional[str], maxsize: int):
        self._bus = bus
        self.conversation_id = conversation_id
        self._queue: asyncio.Queue[ChatEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event: ChatEvent) -> bool:
        return self.conversation_id is None or event.conversation_id == self.conversation_id

    # Never blocks the producer: when the queue is full the oldest event is discarded
    def push(self, event: ChatEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self) -> ChatEvent:
        return await self._queue.get()

    def get_nowait(self) -> ChatEvent:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """Fan-out of chat events to live subscribers.

    `publish` is synchronous and non-blocking, so a slow or absent subscriber
    can never stall a streaming task. Losing a live event never loses the
    persisted text, which is built from the orchestrator's own buffer.
    """

    def __init__(self, maxsize: int = EVENT_QUEUE_SIZE):
        self.maxsize = maxsize
        self._subscribers: list[Subscription] = []

    def subscribe(self, conversation_id: Optional[str] = None) -> Subscription:
        sub = Subscription(self, conversation_id, self.maxsize)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            pass
        if sub.dropped:
            logger.info("events.subscriber.closed: conv=%s dropped=%d", sub.conversation_id, sub.dropped)

    def publish(self, event: ChatEvent) -> None:
        for sub in list(self._subscribers):
            if sub.wants(event):
                sub.push(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
