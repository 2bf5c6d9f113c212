"""Data models for persisted documents."""

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field


class StoredDocument(BaseModel):
    """A JSON document together with its concurrency token."""

    collection: str
    key: str
    etag: int = 1
    body: Dict[str, Any] = Field(default_factory=dict)
