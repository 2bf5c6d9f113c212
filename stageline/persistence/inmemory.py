"""In-memory implementation of the document store."""

from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from ..errors import ConcurrencyConflictError, DuplicateDocumentError
from .models import StoredDocument
from .store import DocumentStore, normalize_filters


class InMemoryDocumentStore(DocumentStore):
    """Store documents in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, StoredDocument]] = {}

    def _bucket(self, collection: str) -> Dict[str, StoredDocument]:
        return self._collections.setdefault(collection, {})

    # ------------------------------------------------------------------
    async def get(self, collection: str, key: str) -> StoredDocument | None:
        doc = self._bucket(collection).get(key)
        return doc.model_copy(deep=True) if doc else None

    async def create(self, collection: str, key: str, body: dict) -> StoredDocument:
        bucket = self._bucket(collection)
        if key in bucket:
            raise DuplicateDocumentError(collection, key)
        doc = StoredDocument(
            collection=collection, key=key, etag=1, body=copy.deepcopy(body)
        )
        bucket[key] = doc
        return doc.model_copy(deep=True)

    async def replace(
        self, collection: str, key: str, body: dict, etag: int
    ) -> StoredDocument:
        bucket = self._bucket(collection)
        current = bucket.get(key)
        if current is None or current.etag != etag:
            raise ConcurrencyConflictError(collection, key, etag)
        doc = StoredDocument(
            collection=collection, key=key, etag=etag + 1, body=copy.deepcopy(body)
        )
        bucket[key] = doc
        return doc.model_copy(deep=True)

    async def delete(self, collection: str, key: str, etag: Optional[int] = None) -> None:
        bucket = self._bucket(collection)
        current = bucket.get(key)
        if current is None:
            return
        if etag is not None and current.etag != etag:
            raise ConcurrencyConflictError(collection, key, etag)
        del bucket[key]

    async def query(self, collection: str, **filters: Any) -> list[StoredDocument]:
        criteria = normalize_filters(filters)
        results = []
        for doc in self._bucket(collection).values():
            if all(doc.body.get(field) in values for field, values in criteria.items()):
                results.append(doc.model_copy(deep=True))
        return results
