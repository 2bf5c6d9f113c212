"""PostgreSQL implementation of the document store."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..errors import ConcurrencyConflictError, DuplicateDocumentError, StoreError
from .models import StoredDocument
from .store import DocumentStore, normalize_filters


def _text_value(value: Any) -> str:
    # ``->>`` renders JSON scalars as text
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class PostgresDocumentStore(DocumentStore):
    """Persist documents as JSONB rows in PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StoreError(f"Cannot connect to PostgreSQL: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                etag INTEGER NOT NULL,
                body JSONB NOT NULL,
                PRIMARY KEY (collection, key)
            )
            """
        )

    @staticmethod
    def _to_document(row: Any) -> StoredDocument:
        body = row["body"]
        if isinstance(body, str):
            body = json.loads(body)
        return StoredDocument(
            collection=row["collection"], key=row["key"], etag=row["etag"], body=body
        )

    # ------------------------------------------------------------------
    async def get(self, collection: str, key: str) -> StoredDocument | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT collection, key, etag, body FROM documents WHERE collection = $1 AND key = $2",
                collection,
                key,
            )
        except asyncpg.PostgresError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            await conn.close()
        return self._to_document(row) if row else None

    async def create(self, collection: str, key: str, body: dict) -> StoredDocument:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO documents (collection, key, etag, body) VALUES ($1, $2, 1, $3::jsonb)",
                collection,
                key,
                json.dumps(body),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateDocumentError(collection, key) from exc
        except asyncpg.PostgresError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            await conn.close()
        return StoredDocument(collection=collection, key=key, etag=1, body=body)

    async def replace(
        self, collection: str, key: str, body: dict, etag: int
    ) -> StoredDocument:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE documents
                SET body = $1::jsonb, etag = etag + 1
                WHERE collection = $2 AND key = $3 AND etag = $4
                RETURNING etag
                """,
                json.dumps(body),
                collection,
                key,
                etag,
            )
        except asyncpg.PostgresError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            await conn.close()
        if row is None:
            raise ConcurrencyConflictError(collection, key, etag)
        return StoredDocument(collection=collection, key=key, etag=row["etag"], body=body)

    async def delete(self, collection: str, key: str, etag: Optional[int] = None) -> None:
        conn = await self._connect()
        try:
            if etag is None:
                await conn.execute(
                    "DELETE FROM documents WHERE collection = $1 AND key = $2",
                    collection,
                    key,
                )
                return
            result = await conn.execute(
                "DELETE FROM documents WHERE collection = $1 AND key = $2 AND etag = $3",
                collection,
                key,
                etag,
            )
            if result == "DELETE 0":
                exists = await conn.fetchval(
                    "SELECT 1 FROM documents WHERE collection = $1 AND key = $2",
                    collection,
                    key,
                )
                if exists:
                    raise ConcurrencyConflictError(collection, key, etag)
        except asyncpg.PostgresError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            await conn.close()

    async def query(self, collection: str, **filters: Any) -> list[StoredDocument]:
        clauses = ["collection = $1"]
        params: list[Any] = [collection]
        for field, values in normalize_filters(filters).items():
            if not values:
                return []
            params.append([_text_value(v) for v in values])
            clauses.append(f"body->>'{field}' = ANY(${len(params)}::text[])")
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT collection, key, etag, body FROM documents WHERE "
                + " AND ".join(clauses),
                *params,
            )
        except asyncpg.PostgresError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            await conn.close()
        return [self._to_document(row) for row in rows]
