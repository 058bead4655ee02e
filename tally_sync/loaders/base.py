"""
Document store on PostgreSQL.

Each collection is a table of JSONB documents keyed by tenant plus either
Tally's GUID or, for GUID-less records, a natural key (the name). Writes
merge shallowly: fields in the incoming document overwrite, fields it does
not carry survive.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional
import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from loguru import logger

from ..config import TallySyncConfig
from ..models import RecordFailure, WriteResult, utcnow

KEY_GUID = "guid"
KEY_NATURAL = "natural_key"

COLLECTION_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGSERIAL PRIMARY KEY,
    company_id TEXT NOT NULL,
    guid TEXT NOT NULL DEFAULT '',
    natural_key TEXT NOT NULL DEFAULT '',
    year INTEGER,
    doc JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    last_updated TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS {guid_index}
    ON {table} (company_id, guid) WHERE guid <> '';
CREATE UNIQUE INDEX IF NOT EXISTS {natural_index}
    ON {table} (company_id, natural_key) WHERE guid = '';
"""

CHECKPOINT_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    entity_name TEXT PRIMARY KEY,
    last_sync_at TIMESTAMPTZ,
    row_count INTEGER NOT NULL DEFAULT 0,
    status TEXT,
    error_message TEXT
);
"""

UPSERT_SQL = """
INSERT INTO {table} AS t (company_id, guid, natural_key, year, doc, last_updated)
VALUES (%(company_id)s, %(guid)s, %(natural_key)s, %(year)s, %(doc)s, %(last_updated)s)
ON CONFLICT {conflict}
DO UPDATE SET
    natural_key = EXCLUDED.natural_key,
    year = EXCLUDED.year,
    doc = t.doc || EXCLUDED.doc,
    last_updated = EXCLUDED.last_updated
"""

CONFLICT_TARGETS = {
    KEY_GUID: "(company_id, guid) WHERE guid <> ''",
    KEY_NATURAL: "(company_id, natural_key) WHERE guid = ''",
}


@dataclass
class StoredDocument:
    """One document ready to be written, with its upsert key."""

    company_id: str
    natural_key: str
    doc: dict
    last_updated: datetime
    guid: str = ""
    year: Optional[int] = None
    index: int = 0

    @property
    def key_kind(self) -> str:
        """GUID when Tally gave one, otherwise the natural key."""
        return KEY_GUID if self.guid else KEY_NATURAL

    @property
    def match(self) -> dict:
        """Column values identifying the stored document this write replaces."""
        if self.guid:
            return {"company_id": self.company_id, "guid": self.guid}
        return {"company_id": self.company_id, "guid": "", "natural_key": self.natural_key}

    def params(self) -> dict:
        return {
            "company_id": self.company_id,
            "guid": self.guid,
            "natural_key": self.natural_key,
            "year": self.year,
            "doc": Jsonb(self.doc),
            "last_updated": self.last_updated,
        }


def chunked(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def get_connection(config: Optional[TallySyncConfig] = None):
    """Create an autocommit psycopg connection returning dict rows."""
    config = config or TallySyncConfig.from_env()
    return psycopg.connect(config.db_url, autocommit=True, row_factory=dict_row)


def _row_to_document(row: dict) -> dict:
    return {**(row["doc"] or {}), "id": row["id"]}


class DocumentStore:
    """
    PostgreSQL-backed document collections.

    Provides:
    - Collection DDL
    - Bulk upserts keyed by GUID or natural key
    - Filtered, paginated reads
    - Regex matching for the relationship builder
    - Sync checkpoints
    """

    def __init__(self, config: Optional[TallySyncConfig] = None, conn=None):
        self.config = config or TallySyncConfig.from_env()
        self.schema = self.config.db_schema
        self._conn = conn

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = get_connection(self.config)
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def table(self, collection: str) -> sql.Identifier:
        return sql.Identifier(self.schema, collection)

    def ensure_schema(self, collections: Iterable[str]):
        """Create the schema, collection tables and checkpoint table."""
        with self.conn.cursor() as cur:
            cur.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(self.schema)))
            for collection in collections:
                cur.execute(
                    sql.SQL(COLLECTION_DDL).format(
                        table=self.table(collection),
                        guid_index=sql.Identifier(f"{collection}_guid_key"),
                        natural_index=sql.Identifier(f"{collection}_natural_key"),
                    )
                )
            cur.execute(sql.SQL(CHECKPOINT_DDL).format(table=self.table("sync_checkpoint")))
        logger.info(f"Schema {self.schema} ready")

    def upsert_many(self, collection: str, documents: list[StoredDocument]) -> WriteResult:
        """
        Bulk upsert documents.

        Each chunk goes out as one executemany; if a chunk fails, its rows
        are retried one at a time so a single bad row only fails itself.
        """
        result = WriteResult()
        for kind in (KEY_GUID, KEY_NATURAL):
            group = [d for d in documents if d.key_kind == kind]
            if not group:
                continue
            query = sql.SQL(UPSERT_SQL).format(
                table=self.table(collection),
                conflict=sql.SQL(CONFLICT_TARGETS[kind]),
            )
            for chunk in chunked(group, self.config.batch_size):
                try:
                    with self.conn.cursor() as cur:
                        cur.executemany(query, [d.params() for d in chunk])
                    result.written += len(chunk)
                except psycopg.Error as e:
                    logger.warning(
                        f"Bulk write to {collection} failed ({e}); retrying {len(chunk)} rows individually"
                    )
                    result.merge(self._upsert_each(collection, query, chunk))
        return result

    def _upsert_each(self, collection: str, query, documents: list[StoredDocument]) -> WriteResult:
        result = WriteResult()
        for document in documents:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(query, document.params())
                result.written += 1
            except psycopg.Error as e:
                logger.warning(f"Failed to write {collection} {document.natural_key!r}: {e}")
                result.failures.append(
                    RecordFailure(index=document.index, reason=str(e), name=document.natural_key)
                )
        return result

    def _where(
        self,
        company_id: str,
        filters: Optional[dict] = None,
        search: Optional[str] = None,
        search_fields: Iterable[str] = ("name",),
    ) -> tuple[sql.Composed, list]:
        clauses = [sql.SQL("company_id = %s")]
        params: list[Any] = [company_id]
        if filters:
            clauses.append(sql.SQL("doc @> %s"))
            params.append(Jsonb(filters))
        if search:
            fields = list(search_fields)
            clauses.append(
                sql.SQL("({})").format(
                    sql.SQL(" OR ").join(sql.SQL("doc->>(%s::text) ILIKE %s") for _ in fields)
                )
            )
            for field in fields:
                params.extend([field, f"%{search}%"])
        return sql.SQL(" AND ").join(clauses), params

    def find(
        self,
        collection: str,
        company_id: str,
        filters: Optional[dict] = None,
        search: Optional[str] = None,
        search_fields: Iterable[str] = ("name",),
        sort_field: str = "name",
        descending: bool = False,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """Documents matching equality filters and a substring search."""
        where, params = self._where(company_id, filters, search, search_fields)
        query = sql.SQL(
            "SELECT id, doc FROM {table} WHERE {where} ORDER BY doc->>(%s::text) {direction}, id"
        ).format(
            table=self.table(collection),
            where=where,
            direction=sql.SQL("DESC" if descending else "ASC"),
        )
        params.append(sort_field)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(limit)
        if skip:
            query = query + sql.SQL(" OFFSET %s")
            params.append(skip)
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return [_row_to_document(row) for row in cur.fetchall()]

    def count(
        self,
        collection: str,
        company_id: str,
        filters: Optional[dict] = None,
        search: Optional[str] = None,
        search_fields: Iterable[str] = ("name",),
    ) -> int:
        where, params = self._where(company_id, filters, search, search_fields)
        query = sql.SQL("SELECT COUNT(*) AS cnt FROM {table} WHERE {where}").format(
            table=self.table(collection), where=where
        )
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
            return row["cnt"] if row else 0

    def get(self, collection: str, company_id: str, doc_id: int) -> Optional[dict]:
        query = sql.SQL("SELECT id, doc FROM {table} WHERE company_id = %s AND id = %s").format(
            table=self.table(collection)
        )
        with self.conn.cursor() as cur:
            cur.execute(query, (company_id, doc_id))
            row = cur.fetchone()
            return _row_to_document(row) if row else None

    def find_matching(
        self,
        collection: str,
        company_id: str,
        clauses: list[tuple[str, str]],
    ) -> list[dict]:
        """
        Documents where any (field, regex) clause matches, case-insensitively.
        """
        if not clauses:
            return []
        query = sql.SQL("SELECT id, doc FROM {table} WHERE company_id = %s AND ({match})").format(
            table=self.table(collection),
            match=sql.SQL(" OR ").join(sql.SQL("doc->>(%s::text) ~* %s") for _ in clauses),
        )
        params: list[Any] = [company_id]
        for field, pattern in clauses:
            params.extend([field, pattern])
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return [_row_to_document(row) for row in cur.fetchall()]

    def update_document(self, collection: str, doc_id: int, fields: dict) -> None:
        """Merge fields into one document."""
        query = sql.SQL(
            "UPDATE {table} SET doc = doc || %s, last_updated = NOW() WHERE id = %s"
        ).format(table=self.table(collection))
        with self.conn.cursor() as cur:
            cur.execute(query, (Jsonb(fields), doc_id))

    def update_many(self, collection: str, company_id: str, fields: dict) -> int:
        """Merge fields into every document of a tenant."""
        query = sql.SQL(
            "UPDATE {table} SET doc = doc || %s, last_updated = NOW() WHERE company_id = %s"
        ).format(table=self.table(collection))
        with self.conn.cursor() as cur:
            cur.execute(query, (Jsonb(fields), company_id))
            return cur.rowcount

    def get_checkpoint(self, entity_name: str) -> dict | None:
        """Get sync checkpoint for an entity."""
        query = sql.SQL(
            "SELECT entity_name, last_sync_at, row_count, status, error_message "
            "FROM {table} WHERE entity_name = %s"
        ).format(table=self.table("sync_checkpoint"))
        with self.conn.cursor() as cur:
            cur.execute(query, (entity_name,))
            return cur.fetchone()

    def update_checkpoint(
        self,
        entity_name: str,
        row_count: int = 0,
        status: str = "completed",
        error_message: str | None = None,
        last_sync_at: Optional[datetime] = None,
    ):
        """Update sync checkpoint for an entity."""
        query = sql.SQL(
            """
            INSERT INTO {table} (entity_name, last_sync_at, row_count, status, error_message)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (entity_name) DO UPDATE SET
                last_sync_at = EXCLUDED.last_sync_at,
                row_count = EXCLUDED.row_count,
                status = EXCLUDED.status,
                error_message = EXCLUDED.error_message
            """
        ).format(table=self.table("sync_checkpoint"))
        with self.conn.cursor() as cur:
            cur.execute(
                query,
                (entity_name, last_sync_at or utcnow(), row_count, status, error_message),
            )


class DocumentLoader:
    """
    Base class for the entity loaders.

    Stamps tenant, year and timestamps onto normalized records, derives
    their upsert keys and hands them to the store in bulk.
    """

    def __init__(self, store: DocumentStore, company_id: str, clock=utcnow):
        self.store = store
        self.company_id = company_id
        self.clock = clock

    def stamp(self, record: dict, now: datetime, timestamp_fields: tuple[str, ...]) -> dict:
        doc = dict(record)
        doc["companyId"] = self.company_id
        doc["year"] = now.year
        for name in timestamp_fields:
            doc[name] = now.isoformat()
        return doc

    def load_documents(
        self,
        collection: str,
        records: list[dict],
        natural_key,
        timestamp_fields: tuple[str, ...] = ("lastUpdated",),
    ) -> WriteResult:
        """
        Write normalized records to a collection.

        `natural_key` maps a record to its fallback key. Records with neither
        a GUID nor a natural key cannot be matched and are rejected.
        """
        now = self.clock()
        documents = []
        rejected = WriteResult()
        for index, record in enumerate(records):
            key = (natural_key(record) or "").strip()
            guid = (record.get("guid") or "").strip()
            if not guid and not key:
                rejected.failures.append(
                    RecordFailure(index=index, reason="record has neither GUID nor name", raw=record)
                )
                continue
            documents.append(
                StoredDocument(
                    company_id=self.company_id,
                    guid=guid,
                    natural_key=key,
                    year=now.year,
                    doc=self.stamp(record, now, timestamp_fields),
                    last_updated=now,
                    index=index,
                )
            )

        if rejected.failures:
            logger.warning(f"Rejected {len(rejected.failures)} {collection} records without a key")
        if not documents:
            return rejected
        return rejected.merge(self.store.upsert_many(collection, documents))
