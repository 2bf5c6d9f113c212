"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import PipelineEvent
from .base import BaseTransport

RawEvent = Tuple[str, PipelineEvent]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Simple in-process queue for unit tests.

    Raw messages are ``(topic, event)`` pairs so a ``nack`` can requeue them.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawEvent]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.published: List[RawEvent] = []

    async def publish(self, topic: str, event: PipelineEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (topic, event)
        async with self._lock:
            self._queues[topic].append(raw)
            self.published.append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, PipelineEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            raw_message: Optional[RawEvent] = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawEvent) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        if not requeue:
            return
        topic, _ = raw_message
        async with self._lock:
            self._queues[topic].append(raw_message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    def events_of_type(self, event_type: str) -> List[PipelineEvent]:
        return [event for _, event in self.published if event.event_type == event_type]
