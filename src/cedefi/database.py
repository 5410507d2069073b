"""
Document store used by the ledger service.

Two implementations share one async interface: an in-memory store (tests and
single-process development) and a PostgreSQL store keeping each document as
JSONB. psycopg2 is blocking, so PostgreSQL calls run in a worker thread.
"""
import asyncio
import copy
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor
from starlette.concurrency import run_in_threadpool

from cedefi.errors import ConflictError, StoreUnavailableError
from cedefi.logger import get_logger

logger = get_logger(__name__)


def _matches(document: dict, filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(document.get(key) == value for key, value in filters.items())


class DocumentStore:
    """Async key/document store with simple equality queries."""

    async def get(self, collection: str, key: str) -> Optional[dict]:
        raise NotImplementedError

    async def insert(self, collection: str, key: str, document: dict) -> None:
        """Insert a new document; raises ConflictError if the key exists."""
        raise NotImplementedError

    async def upsert(self, collection: str, key: str, document: dict) -> None:
        raise NotImplementedError

    async def find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        sort_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[dict]:
        raise NotImplementedError

    async def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return len(await self.find(collection, filters))

    async def close(self) -> None:
        pass


class InMemoryDocumentStore(DocumentStore):
    """Process-local store. Documents are copied on the way in and out."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, key: str) -> Optional[dict]:
        document = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(document) if document is not None else None

    async def insert(self, collection: str, key: str, document: dict) -> None:
        async with self._lock:
            bucket = self._collections.setdefault(collection, {})
            if key in bucket:
                raise ConflictError(f"Document {collection}/{key} already exists")
            bucket[key] = copy.deepcopy(document)

    async def upsert(self, collection: str, key: str, document: dict) -> None:
        async with self._lock:
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    async def find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        sort_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[dict]:
        documents = [
            copy.deepcopy(doc)
            for doc in self._collections.get(collection, {}).values()
            if _matches(doc, filters)
        ]
        if sort_by:
            documents.sort(key=lambda doc: doc.get(sort_by) or "", reverse=descending)
        return documents


SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    key TEXT NOT NULL,
    body JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (collection, key)
)
"""


class PostgresDocumentStore(DocumentStore):
    """Documents stored as JSONB rows in a single `documents` table."""

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL environment variable not set")
        self.database_url = database_url

    def get_db_connection(self):
        """Get PostgreSQL connection from the configured DATABASE_URL."""
        try:
            return psycopg2.connect(self.database_url)
        except psycopg2.OperationalError as e:
            raise StoreUnavailableError(f"Document store unreachable: {e}") from e

    def _init_schema(self) -> None:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA)
                conn.commit()
        finally:
            conn.close()

    async def init_schema(self) -> None:
        await run_in_threadpool(self._init_schema)

    def _get(self, collection: str, key: str) -> Optional[dict]:
        conn = self.get_db_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT body FROM documents WHERE collection = %s AND key = %s",
                    (collection, key)
                )
                row = cur.fetchone()
                return dict(row["body"]) if row else None
        finally:
            conn.close()

    async def get(self, collection: str, key: str) -> Optional[dict]:
        return await run_in_threadpool(self._get, collection, key)

    def _insert(self, collection: str, key: str, document: dict) -> None:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO documents (collection, key, body)
                    VALUES (%s, %s, %s)
                    """,
                    (collection, key, Json(document))
                )
                conn.commit()
        except psycopg2.IntegrityError as e:
            conn.rollback()
            raise ConflictError(f"Document {collection}/{key} already exists") from e
        finally:
            conn.close()

    async def insert(self, collection: str, key: str, document: dict) -> None:
        await run_in_threadpool(self._insert, collection, key, document)

    def _upsert(self, collection: str, key: str, document: dict) -> None:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO documents (collection, key, body)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (collection, key)
                    DO UPDATE SET body = EXCLUDED.body, updated_at = NOW()
                    """,
                    (collection, key, Json(document))
                )
                conn.commit()
        finally:
            conn.close()

    async def upsert(self, collection: str, key: str, document: dict) -> None:
        await run_in_threadpool(self._upsert, collection, key, document)

    def _find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]],
        sort_by: Optional[str],
        descending: bool,
    ) -> List[dict]:
        query = "SELECT body FROM documents WHERE collection = %s"
        params: list = [collection]
        if filters:
            query += " AND body @> %s"
            params.append(Json(filters))
        if sort_by:
            # sort_by is a field name chosen by our own code, never user input
            query += f" ORDER BY body->>'{sort_by}' {'DESC' if descending else 'ASC'}"
        conn = self.get_db_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(row["body"]) for row in cur.fetchall()]
        finally:
            conn.close()

    async def find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        sort_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[dict]:
        return await run_in_threadpool(self._find, collection, filters, sort_by, descending)

    def _count(self, collection: str, filters: Optional[Dict[str, Any]]) -> int:
        query = "SELECT COUNT(*) FROM documents WHERE collection = %s"
        params: list = [collection]
        if filters:
            query += " AND body @> %s"
            params.append(Json(filters))
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchone()[0]
        finally:
            conn.close()

    async def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return await run_in_threadpool(self._count, collection, filters)


def create_store(database_url: Optional[str]) -> DocumentStore:
    """PostgreSQL when a DATABASE_URL is configured, in-memory otherwise."""
    if database_url:
        return PostgresDocumentStore(database_url)
    logger.warning("DATABASE_URL not set; using in-memory document store")
    return InMemoryDocumentStore()
