"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

from pydantic import ValidationError

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..config import RedisConfig
from ..contracts import PipelineEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawEvent = Tuple[str, str]


class RedisTransport(BaseTransport[RawEvent]):
    """Redis list based transport; each topic is a queue."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "stageline",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    @classmethod
    def from_config(cls, config: RedisConfig) -> RedisTransport:
        return cls(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            prefix=config.key_prefix,
        )

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: PipelineEvent) -> None:
        """Publish event to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, PipelineEvent]]:
        """Subscribe to events from a Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            # Blocking pop with timeout
            result = await self._redis.brpop(queue_name, timeout=1)

            if result:
                _, message_json = result
                try:
                    event = PipelineEvent.from_json(message_json)
                except ValidationError as e:
                    logger.warning(f"Dropping unparseable event on {queue_name}: {e}")
                    continue
                yield (topic, message_json), event

    async def ack(self, raw_message: RawEvent) -> None:
        """No-op acknowledgment (message already consumed by BRPOP)."""
        pass

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        """Push the message back on the consuming end of its queue."""
        if not requeue:
            return
        if not self._redis:
            await self.connect()
        topic, message_json = raw_message
        await self._redis.rpush(self._queue_name(topic), message_json)
