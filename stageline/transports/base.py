"""Base transport interface for pipeline events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import PipelineEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for event brokers.

    Workers nack with ``requeue=True`` when storage fails, so every transport
    must be able to redeliver a rejected message.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: PipelineEvent) -> None:
        """Send an event to a topic/queue."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, PipelineEvent]]:
        """Yield raw transport message and PipelineEvent pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a message; with ``requeue`` it is delivered again later."""
        raise NotImplementedError
