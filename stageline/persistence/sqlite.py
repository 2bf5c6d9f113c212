"""SQLite implementation of the document store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ..errors import ConcurrencyConflictError, DuplicateDocumentError, StoreError
from .models import StoredDocument
from .store import DocumentStore, normalize_filters


def _sql_value(value: Any) -> Any:
    # json_extract returns 0/1 for JSON booleans
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteDocumentStore(DocumentStore):
    """Persist documents as JSON text in a single SQLite table."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                etag INTEGER NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (collection, key)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
                return cur.rowcount
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"SQLite error: {exc}") from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as exc:
                raise StoreError(f"SQLite error: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"SQLite error: {exc}") from exc

    @staticmethod
    def _to_document(row: sqlite3.Row) -> StoredDocument:
        return StoredDocument(
            collection=row["collection"],
            key=row["key"],
            etag=row["etag"],
            body=json.loads(row["body"]),
        )

    # ------------------------------------------------------------------
    # Store API
    async def get(self, collection: str, key: str) -> StoredDocument | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT collection, key, etag, body FROM documents WHERE collection = ? AND key = ?",
            collection,
            key,
        )
        return self._to_document(row) if row else None

    async def create(self, collection: str, key: str, body: dict) -> StoredDocument:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO documents (collection, key, etag, body) VALUES (?, ?, ?, ?)",
                collection,
                key,
                1,
                json.dumps(body),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateDocumentError(collection, key) from exc
        return StoredDocument(collection=collection, key=key, etag=1, body=body)

    async def replace(
        self, collection: str, key: str, body: dict, etag: int
    ) -> StoredDocument:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE documents
            SET body = ?, etag = etag + 1
            WHERE collection = ? AND key = ? AND etag = ?
            """,
            json.dumps(body),
            collection,
            key,
            etag,
        )
        if updated == 0:
            raise ConcurrencyConflictError(collection, key, etag)
        return StoredDocument(collection=collection, key=key, etag=etag + 1, body=body)

    async def delete(self, collection: str, key: str, etag: Optional[int] = None) -> None:
        if etag is None:
            await asyncio.to_thread(
                self._execute,
                "DELETE FROM documents WHERE collection = ? AND key = ?",
                collection,
                key,
            )
            return
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM documents WHERE collection = ? AND key = ? AND etag = ?",
            collection,
            key,
            etag,
        )
        if deleted == 0 and await self.get(collection, key) is not None:
            raise ConcurrencyConflictError(collection, key, etag)

    async def query(self, collection: str, **filters: Any) -> list[StoredDocument]:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for field, values in normalize_filters(filters).items():
            if not values:
                return []
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"json_extract(body, '$.{field}') IN ({placeholders})")
            params.extend(_sql_value(v) for v in values)
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT collection, key, etag, body FROM documents WHERE "
            + " AND ".join(clauses),
            *params,
        )
        return [self._to_document(row) for row in rows]
