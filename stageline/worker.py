"""Consume inbound domain events and feed them to the orchestrator."""

from __future__ import annotations

import logging
from typing import List, Optional

from .contracts import PipelineEvent
from .errors import StoreError
from .models import ProcessEventResult
from .orchestrator import PipelineOrchestrator
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventWorker:
    """Listens on the inbound topic and applies each event in arrival order."""

    def __init__(
        self,
        transport: BaseTransport,
        orchestrator: PipelineOrchestrator,
        topic: str,
    ) -> None:
        self._transport = transport
        self._orchestrator = orchestrator
        self._topic = topic
        self.results: List[ProcessEventResult] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for domain events on the configured topic."""
        logger.info(f"Worker listening on {self._topic}")
        async for raw_message, event in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            try:
                result = await self.handle(event)
            except StoreError as e:
                logger.error(
                    f"Storage failure while handling {event.event_type} "
                    f"({event.event_id}): {e}; requeueing"
                )
                await self._transport.nack(raw_message, requeue=True)
                continue
            self.results.append(result)
            await self._transport.ack(raw_message)

    async def handle(self, event: PipelineEvent) -> ProcessEventResult:
        result = await self._orchestrator.process_event(event.event_type, event.data)
        if result.processed:
            logger.info(
                f"Event {event.event_type} ({event.event_id}) -> {result.action} "
                f"for instance {result.instance_id}"
            )
        else:
            logger.debug(
                f"Event {event.event_type} ({event.event_id}) ignored: {result.error or result.action}"
            )
        return result
