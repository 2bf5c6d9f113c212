"""Store abstraction for pipeline state persistence."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol

from .models import StoredDocument


class DocumentStore(Protocol):
    """Protocol for document persistence backends.

    Every ``replace`` carries the etag the caller read; a mismatch raises
    :class:`~stageline.errors.ConcurrencyConflictError`. ``query`` filters are
    equality matches on top-level body fields, a list/tuple/set value matches
    any of its members and ``None`` values are ignored.
    """

    async def get(self, collection: str, key: str) -> StoredDocument | None:
        """Return the document or ``None``."""

    async def create(self, collection: str, key: str, body: dict) -> StoredDocument:
        """Insert a new document with etag 1."""

    async def replace(
        self, collection: str, key: str, body: dict, etag: int
    ) -> StoredDocument:
        """Overwrite the document if its etag still equals ``etag``."""

    async def delete(self, collection: str, key: str, etag: Optional[int] = None) -> None:
        """Remove the document, optionally checking the etag."""

    async def query(self, collection: str, **filters: Any) -> list[StoredDocument]:
        """Return documents whose fields equal the given filters."""


def plain(value: Any) -> Any:
    """Unwrap enums so filter values compare against stored JSON."""
    if isinstance(value, Enum):
        return value.value
    return value


def normalize_filters(filters: dict[str, Any]) -> dict[str, list[Any]]:
    """Drop ``None`` filters and turn every value into a list of candidates."""
    normalized: dict[str, list[Any]] = {}
    for field, value in filters.items():
        if value is None:
            continue
        if not field.isidentifier():
            raise ValueError(f"Invalid filter field: {field}")
        if isinstance(value, (list, tuple, set, frozenset)):
            normalized[field] = [plain(v) for v in value]
        else:
            normalized[field] = [plain(value)]
    return normalized
