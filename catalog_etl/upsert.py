"""Idempotent record persistence keyed by the portal's external id."""
from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Protocol

import asyncpg
import psycopg2
from asyncpg import Pool
from psycopg2.extensions import connection as PGConnection

from catalog_etl.errors import PersistenceError
from catalog_etl.mapper import normalize_record
from catalog_etl.models import Record, Resource, SyncStatus, utcnow

LOGGER = logging.getLogger(__name__)

SOURCE_NAME = "open.data.gov.sa"

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS datasets (
    id BIGSERIAL PRIMARY KEY,
    external_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    name_ar TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    category TEXT,
    organization TEXT,
    source TEXT NOT NULL DEFAULT 'open.data.gov.sa',
    source_url TEXT,
    resources JSONB NOT NULL DEFAULT '[]'::jsonb,
    "columns" JSONB NOT NULL DEFAULT '[]'::jsonb,
    sync_status VARCHAR(10) NOT NULL DEFAULT 'PENDING',
    last_synced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

    CONSTRAINT uq_datasets_external_id UNIQUE (external_id)
);

CREATE INDEX IF NOT EXISTS idx_datasets_category ON datasets(category);
CREATE INDEX IF NOT EXISTS idx_datasets_sync_status ON datasets(sync_status);
"""

# Resources and columns are only replaced by a non-empty payload, so a
# listing refresh never erases what an enrichment pass gathered.
UPSERT_SQL = """
INSERT INTO datasets (
    external_id, name, name_ar, description, category, organization,
    source, source_url, resources, "columns", sync_status, last_synced_at
)
VALUES (
    $1, $2, $3, $4, $5, $6,
    $7, $8, COALESCE($9::jsonb, '[]'::jsonb), COALESCE($10::jsonb, '[]'::jsonb),
    'SYNCED', NOW()
)
ON CONFLICT (external_id) DO UPDATE
SET
    name = EXCLUDED.name,
    name_ar = EXCLUDED.name_ar,
    description = COALESCE(NULLIF(EXCLUDED.description, ''), datasets.description),
    category = COALESCE(NULLIF(EXCLUDED.category, ''), datasets.category),
    organization = COALESCE(EXCLUDED.organization, datasets.organization),
    source_url = COALESCE(NULLIF(EXCLUDED.source_url, ''), datasets.source_url),
    resources = CASE
        WHEN jsonb_array_length(EXCLUDED.resources) > 0 THEN EXCLUDED.resources
        ELSE datasets.resources
    END,
    "columns" = CASE
        WHEN jsonb_array_length(EXCLUDED."columns") > 0 THEN EXCLUDED."columns"
        ELSE datasets."columns"
    END,
    sync_status = 'SYNCED',
    last_synced_at = NOW(),
    updated_at = NOW()
RETURNING (xmax = 0) AS inserted;
"""

STATUS_COUNTS_SQL = "SELECT sync_status, COUNT(*) FROM datasets GROUP BY sync_status"

CATEGORY_COUNTS_SQL = """
SELECT COALESCE(category, ''), COUNT(*)
FROM datasets
GROUP BY 1
ORDER BY 2 DESC
"""

UNENRICHED_SQL = """
SELECT external_id
FROM datasets
WHERE resources IS NULL OR resources = '[]'::jsonb
ORDER BY external_id
"""


class RecordStore(Protocol):
    """Destination store with insert-or-update semantics keyed by external id."""

    async def ensure_schema(self) -> None:
        ...

    async def upsert(self, record: Record) -> bool:
        """Persist a normalized record.

        Returns
        -------
        bool
            True when a new row was inserted, False when an existing one was updated.
        """
        ...

    async def mark_failed(self, external_id: str) -> None:
        ...

    async def get(self, external_id: str) -> Optional[Record]:
        ...

    async def unenriched_ids(self) -> List[str]:
        """External ids of stored records that have no resources yet, sorted."""
        ...

    async def stats(self) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


def _non_empty(values: Optional[List[Any]]) -> bool:
    return bool(values)


def merge_records(existing: Optional[Record], incoming: Record) -> Record:
    """Merge an incoming record over the stored one with non-destructive rules."""
    now = utcnow()
    if existing is None:
        return incoming.model_copy(
            update={
                "resources": list(incoming.resources or []),
                "columns": list(incoming.columns or []),
                "sync_status": SyncStatus.SYNCED,
                "last_synced_at": now,
            }
        )

    return existing.model_copy(
        update={
            "name": incoming.name,
            "name_localized": incoming.name_localized,
            "description": incoming.description or existing.description,
            "category": incoming.category or existing.category,
            "organization": incoming.organization or existing.organization,
            "source_url": incoming.source_url or existing.source_url,
            "resources": (
                list(incoming.resources) if _non_empty(incoming.resources) else existing.resources
            ),
            "columns": list(incoming.columns) if _non_empty(incoming.columns) else existing.columns,
            "sync_status": SyncStatus.SYNCED,
            "last_synced_at": now,
        }
    )


class MemoryRecordStore:
    """In-process store applying the same merge rules as the Postgres store.

    Used by ``--dry-run`` runs and by the test-suite.
    """

    def __init__(self) -> None:
        self.records: Dict[str, Record] = {}
        self.writes = 0

    async def ensure_schema(self) -> None:
        return None

    async def upsert(self, record: Record) -> bool:
        existing = self.records.get(record.external_id)
        self.records[record.external_id] = merge_records(existing, record)
        self.writes += 1
        return existing is None

    async def mark_failed(self, external_id: str) -> None:
        existing = self.records.get(external_id)
        if existing is not None:
            self.records[external_id] = existing.model_copy(
                update={"sync_status": SyncStatus.FAILED}
            )

    async def get(self, external_id: str) -> Optional[Record]:
        return self.records.get(external_id)

    async def unenriched_ids(self) -> List[str]:
        return sorted(
            external_id for external_id, record in self.records.items() if not record.resources
        )

    async def stats(self) -> Dict[str, Any]:
        return {
            "total": len(self.records),
            "by_status": dict(Counter(r.sync_status.value for r in self.records.values())),
            "by_category": dict(Counter(r.category for r in self.records.values())),
        }

    async def close(self) -> None:
        return None


def _dump_json(values: Optional[List[Any]]) -> Optional[str]:
    if values is None:
        return None
    return json.dumps(
        [v.model_dump() if isinstance(v, Resource) else v for v in values],
        ensure_ascii=False,
    )


def _load_json(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


class PostgresRecordStore:
    """asyncpg-backed store; concurrency is resolved by the unique constraint."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 3) -> None:
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[Pool] = None

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn, min_size=self.min_size, max_size=self.max_size
            )
        return self._pool

    async def ensure_schema(self) -> None:
        """Create the datasets table if missing.

        Raises
        ------
        PersistenceError
            When the database is unreachable or rejects the DDL
        """
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
        except (asyncpg.UniqueViolationError, asyncpg.DuplicateObjectError) as exc:
            # another worker created the table at the same moment
            LOGGER.debug("datasets table created concurrently: %s", exc)
        except _STORE_ERRORS as exc:
            raise PersistenceError(None, f"schema setup failed: {exc}") from exc
        LOGGER.info("Ensured datasets table exists")

    async def upsert(self, record: Record) -> bool:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                inserted = await conn.fetchval(
                    UPSERT_SQL,
                    record.external_id,
                    record.name,
                    record.name_localized,
                    record.description,
                    record.category,
                    record.organization,
                    SOURCE_NAME,
                    record.source_url,
                    _dump_json(record.resources),
                    _dump_json(record.columns),
                )
        except _STORE_ERRORS as exc:
            raise PersistenceError(record.external_id, str(exc)) from exc
        return bool(inserted)

    async def mark_failed(self, external_id: str) -> None:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE datasets
                    SET sync_status = 'FAILED', updated_at = NOW()
                    WHERE external_id = $1
                    """,
                    external_id,
                )
        except _STORE_ERRORS as exc:
            raise PersistenceError(external_id, str(exc)) from exc

    async def get(self, external_id: str) -> Optional[Record]:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT external_id, name, name_ar, description, category, organization,
                           source_url, resources, "columns", sync_status, last_synced_at
                    FROM datasets
                    WHERE external_id = $1
                    """,
                    external_id,
                )
        except _STORE_ERRORS as exc:
            raise PersistenceError(external_id, str(exc)) from exc
        if row is None:
            return None
        return Record(
            external_id=row["external_id"],
            name=row["name"],
            name_localized=row["name_ar"],
            description=row["description"],
            category=row["category"] or "",
            organization=row["organization"],
            source_url=row["source_url"] or "",
            resources=[Resource.model_validate(r) for r in _load_json(row["resources"])],
            columns=[str(c) for c in _load_json(row["columns"])],
            sync_status=SyncStatus(row["sync_status"]),
            last_synced_at=row["last_synced_at"],
        )

    async def unenriched_ids(self) -> List[str]:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(UNENRICHED_SQL)
        except _STORE_ERRORS as exc:
            raise PersistenceError(None, str(exc)) from exc
        return [row["external_id"] for row in rows]

    async def stats(self) -> Dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval("SELECT COUNT(*) FROM datasets")
            status_rows = await conn.fetch(STATUS_COUNTS_SQL)
            category_rows = await conn.fetch(CATEGORY_COUNTS_SQL)
        return {
            "total": total,
            "by_status": {row[0]: row[1] for row in status_rows},
            "by_category": {row[0]: row[1] for row in category_rows},
        }

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class RecordUpserter:
    """Normalizes records and writes them through a ``RecordStore``."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self.inserted = 0
        self.updated = 0
        self.failed = 0

    async def upsert(self, record: Record) -> Record:
        """Insert or update one record.

        Raises
        ------
        PersistenceError
            When the store rejects the write; the record is marked FAILED
            and the caller is expected to carry on with the next one.
        """
        normalized = normalize_record(record)
        try:
            inserted = await self.store.upsert(normalized)
        except PersistenceError as exc:
            self.failed += 1
            LOGGER.warning("Failed to persist %s: %s", normalized.external_id, exc)
            try:
                await self.store.mark_failed(normalized.external_id)
            except PersistenceError as mark_exc:
                LOGGER.debug("Could not flag %s as failed: %s", normalized.external_id, mark_exc)
            record.sync_status = SyncStatus.FAILED
            raise

        if inserted:
            self.inserted += 1
        else:
            self.updated += 1
        return normalized.model_copy(
            update={"sync_status": SyncStatus.SYNCED, "last_synced_at": utcnow()}
        )


def get_db_connection(dsn: str) -> PGConnection:
    """Return a psycopg2 connection for one-off admin commands."""
    return psycopg2.connect(dsn)


def init_schema(conn: PGConnection) -> None:
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()


def fetch_stats(conn: PGConnection) -> Dict[str, Any]:
    """Record counts overall, by sync status and by category."""
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM datasets")
        total = cur.fetchone()[0]
        cur.execute(STATUS_COUNTS_SQL)
        by_status = dict(cur.fetchall())
        cur.execute(CATEGORY_COUNTS_SQL)
        by_category = dict(cur.fetchall())
    return {"total": total, "by_status": by_status, "by_category": by_category}
