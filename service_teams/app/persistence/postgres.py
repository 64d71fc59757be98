"""
PostgreSQL persistence layer for the Teams service.

Each collection is a table of JSONB documents keyed by id. Unique indexes are
expression indexes over document fields. Top-level equality filters are
pushed down as JSONB containment; the full filter is re-checked in Python so
dotted paths and ``$in`` behave exactly as in the in-memory store.
"""

import json
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import asyncpg

from shared.logging import get_logger

from ..models import BACKUPS, PROJECTS, TEAMS, USERS
from .store import (
    UNIQUE_INDEXES,
    DuplicateKeyError,
    Filters,
    PersistenceError,
    Sort,
    match_document,
    sort_documents,
)

COLLECTIONS = (USERS, TEAMS, PROJECTS, BACKUPS)


def _table(collection: str) -> str:
    if collection not in COLLECTIONS:
        raise PersistenceError(f"Unknown collection: {collection}")
    return f"doc_{collection}"


def _containment(filters: Optional[Filters]) -> Dict[str, Any]:
    """Part of the filter expressible as top-level JSONB containment."""
    return {
        key: value for key, value in (filters or {}).items()
        if "." not in key and not isinstance(value, (dict, list))
    }


class PostgresDocumentStore:
    """asyncpg-backed document store."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("teams.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None
        self._connection: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"postgres_store_connection_{id(self)}", default=None
        )

    async def connect(self) -> None:
        """Open the pool and create tables and indexes."""
        self.pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=30
        )
        await self._create_tables()
        self.logger.info("PostgreSQL document store started")

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL document store stopped")

    async def ping(self) -> float:
        start = time.perf_counter()
        async with self._acquire() as conn:
            await conn.fetchval("SELECT 1")
        return (time.perf_counter() - start) * 1000

    async def _create_tables(self) -> None:
        async with self.pool.acquire() as conn:
            for collection in COLLECTIONS:
                table = _table(collection)
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id VARCHAR(64) PRIMARY KEY,
                        data JSONB NOT NULL,
                        inserted_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                    );
                """)
                await conn.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data ON {table} USING GIN (data);
                """)
                for fields in UNIQUE_INDEXES.get(collection, []):
                    columns = ", ".join(f"(data->>'{name}')" for name in fields)
                    await conn.execute(f"""
                        CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{'_'.join(fields)}
                        ON {table} ({columns});
                    """)

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        current = self._connection.get()
        if current is not None:
            yield current
            return
        if self.pool is None:
            raise PersistenceError("Document store is not connected")
        async with self.pool.acquire() as conn:
            yield conn

    @staticmethod
    def _duplicate(collection: str, error: asyncpg.UniqueViolationError) -> DuplicateKeyError:
        constraint = getattr(error, "constraint_name", None) or "id"
        return DuplicateKeyError(collection, (constraint,), (str(error),))

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        table = _table(collection)
        try:
            async with self._acquire() as conn:
                await conn.execute(
                    f"INSERT INTO {table} (id, data) VALUES ($1, $2::jsonb)",
                    document["id"], json.dumps(document)
                )
        except asyncpg.UniqueViolationError as e:
            raise self._duplicate(collection, e) from e
        return dict(document)

    async def insert_many(self, collection: str, documents: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        documents = list(documents)
        table = _table(collection)
        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(
                        f"INSERT INTO {table} (id, data) VALUES ($1, $2::jsonb)",
                        [(d["id"], json.dumps(d)) for d in documents]
                    )
        except asyncpg.UniqueViolationError as e:
            raise self._duplicate(collection, e) from e
        return [dict(d) for d in documents]

    async def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self._acquire() as conn:
            raw = await conn.fetchval(f"SELECT data FROM {_table(collection)} WHERE id = $1", doc_id)
        return json.loads(raw) if raw is not None else None

    async def _select(self, collection: str, filters: Optional[Filters]) -> List[Dict[str, Any]]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"SELECT data FROM {_table(collection)} WHERE data @> $1::jsonb ORDER BY inserted_at",
                json.dumps(_containment(filters))
            )
        documents = [json.loads(row["data"]) for row in rows]
        return [d for d in documents if match_document(d, filters)]

    async def find_one(self, collection: str, filters: Filters) -> Optional[Dict[str, Any]]:
        documents = await self._select(collection, filters)
        return documents[0] if documents else None

    async def find(
        self,
        collection: str,
        filters: Optional[Filters] = None,
        *,
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        documents = sort_documents(await self._select(collection, filters), sort)
        end = None if limit is None else skip + limit
        return documents[skip:end]

    async def count(self, collection: str, filters: Optional[Filters] = None) -> int:
        return len(await self._select(collection, filters))

    async def update_one(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        table = _table(collection)
        try:
            async with self._acquire() as conn:
                raw = await conn.fetchval(
                    f"UPDATE {table} SET data = data || $2::jsonb WHERE id = $1 RETURNING data",
                    doc_id, json.dumps(changes)
                )
        except asyncpg.UniqueViolationError as e:
            raise self._duplicate(collection, e) from e
        return json.loads(raw) if raw is not None else None

    async def delete_one(self, collection: str, doc_id: str) -> bool:
        async with self._acquire() as conn:
            result = await conn.execute(f"DELETE FROM {_table(collection)} WHERE id = $1", doc_id)
        return result.endswith(" 1")

    async def push(
        self,
        collection: str,
        doc_id: str,
        field: str,
        item: Dict[str, Any],
        *,
        unique_on: Optional[Dict[str, Any]] = None,
        max_length: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        # guards are evaluated against the row as locked by the UPDATE
        async with self._acquire() as conn:
            raw = await conn.fetchval(
                f"""
                UPDATE {_table(collection)}
                SET data = jsonb_set(
                    data, ARRAY[$2::text],
                    COALESCE(data->$2::text, '[]'::jsonb) || jsonb_build_array($3::jsonb)
                )
                WHERE id = $1
                  AND ($4::jsonb IS NULL
                       OR NOT COALESCE(data->$2::text, '[]'::jsonb) @> jsonb_build_array($4::jsonb))
                  AND ($5::int IS NULL
                       OR jsonb_array_length(COALESCE(data->$2::text, '[]'::jsonb)) < $5::int)
                RETURNING data
                """,
                doc_id, field, json.dumps(item),
                json.dumps(unique_on) if unique_on is not None else None,
                max_length
            )
        return json.loads(raw) if raw is not None else None

    async def pull(self, collection: str, filters: Filters, field: str, match: Dict[str, Any]) -> int:
        containment = _containment(filters)
        if len(containment) != len(filters or {}):
            raise PersistenceError("pull only supports top-level equality filters")

        async with self._acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {_table(collection)}
                SET data = jsonb_set(data, ARRAY[$1::text], COALESCE((
                    SELECT jsonb_agg(e.item ORDER BY e.idx)
                    FROM jsonb_array_elements(data->$1::text) WITH ORDINALITY AS e(item, idx)
                    WHERE NOT e.item @> $2::jsonb
                ), '[]'::jsonb))
                WHERE data @> $3::jsonb
                  AND COALESCE(data->$1::text, '[]'::jsonb) @> jsonb_build_array($2::jsonb)
                """,
                field, json.dumps(match), json.dumps(containment)
            )
        return int(result.split()[-1])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._connection.get() is not None:
            yield
            return
        if self.pool is None:
            raise PersistenceError("Document store is not connected")

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = self._connection.set(conn)
                try:
                    yield
                finally:
                    self._connection.reset(token)
