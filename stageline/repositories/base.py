"""Shared plumbing for repositories backed by a document store."""

from __future__ import annotations

from typing import Any, Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from ..persistence import DocumentStore, StoredDocument
from ..utils.clock import Clock, utcnow

ModelT = TypeVar("ModelT", bound=BaseModel)


class DocumentRepository(Generic[ModelT]):
    """Map pydantic models onto one collection of a :class:`DocumentStore`.

    The model's ``etag`` attribute mirrors the stored concurrency token and is
    never written into the document body.
    """

    collection: str
    model: Type[ModelT]

    def __init__(self, store: DocumentStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> DocumentStore:
        return self._store

    def now(self):
        return self._clock()

    # ------------------------------------------------------------------
    def _dump(self, item: ModelT) -> dict:
        return item.model_dump(mode="json", exclude={"etag"})

    def _load(self, doc: StoredDocument) -> ModelT:
        return self.model.model_validate({**doc.body, "etag": doc.etag})

    async def _fetch(self, key: str) -> Optional[ModelT]:
        doc = await self._store.get(self.collection, key)
        return self._load(doc) if doc else None

    async def _insert(self, key: str, item: ModelT) -> ModelT:
        doc = await self._store.create(self.collection, key, self._dump(item))
        return self._load(doc)

    async def _save(self, key: str, item: ModelT) -> ModelT:
        """Replace the stored document using the etag carried by ``item``."""
        doc = await self._store.replace(
            self.collection, key, self._dump(item), getattr(item, "etag") or 0
        )
        return self._load(doc)

    async def _find(self, **filters: Any) -> list[ModelT]:
        docs = await self._store.query(self.collection, **filters)
        return [self._load(doc) for doc in docs]
