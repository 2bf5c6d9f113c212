"""Event envelope exchanged over the bus."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field


class PipelineEvent(BaseModel):
    """
    Envelope for inbound domain events and outbound pipeline events.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    subject: str = ""
    event_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)
    data_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "PipelineEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
