"""
Persistence for directory records and store metadata.

Each record is stored whole as a JSONB payload; the columns beside it are
the secondary indexes (normalized name, channel identifier, user id, flags,
timestamps). Index columns and payload are written by the same statement,
so lookups never need to scan payloads.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from identity_cache.db.helpers import (
    execute_many,
    execute_query,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from identity_cache.db.pool import DatabasePoolManager
from identity_cache.db.schema import SCHEMA_VERSION_KEY, apply_migrations
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.domain.record_domain import (
    ChannelRecord,
    PersonRecord,
    RecordBase,
    normalize_name,
    record_from_payload,
    record_to_payload,
)

logger = get_logger(__name__)

_UPSERT = """
    INSERT INTO directory_records (
        id, name, name_normalized, record_type, user_id, channel_identifier,
        is_pinned, is_recent, is_verified, is_unverified,
        last_seen, last_opened_time, pinned_at, payload, updated_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
    ON CONFLICT (id)
    DO UPDATE SET
        name = EXCLUDED.name,
        name_normalized = EXCLUDED.name_normalized,
        record_type = EXCLUDED.record_type,
        user_id = EXCLUDED.user_id,
        channel_identifier = EXCLUDED.channel_identifier,
        is_pinned = EXCLUDED.is_pinned,
        is_recent = EXCLUDED.is_recent,
        is_verified = EXCLUDED.is_verified,
        is_unverified = EXCLUDED.is_unverified,
        last_seen = EXCLUDED.last_seen,
        last_opened_time = EXCLUDED.last_opened_time,
        pinned_at = EXCLUDED.pinned_at,
        payload = EXCLUDED.payload,
        updated_at = NOW()
"""

_SELECT = "SELECT payload FROM directory_records"

Record = PersonRecord | ChannelRecord


def _row_params(record: RecordBase) -> tuple:
    return (
        record.id,
        record.name,
        normalize_name(record.name),
        record.type,
        record.user_id,
        record.channel_identifier,
        record.is_pinned,
        record.is_recent,
        record.verification.is_verified,
        record.verification.is_unverified,
        record.last_seen,
        record.last_opened_time,
        record.pinned_at,
        Jsonb(record_to_payload(record)),
    )


def _records(rows: list[dict[str, Any]]) -> list[Record]:
    return [record_from_payload(row["payload"]) for row in rows]


class DirectoryStore:
    """Explicit store handle; components receive it instead of reaching for a global."""

    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> int:
        """Apply pending schema migrations; returns the current schema version."""
        async with self.pool.connection() as conn:
            previous, current = await apply_migrations(conn)
        self._ready = True
        logger.info("Directory store ready", schema_version=current, previous_version=previous)
        return current

    async def close(self) -> None:
        # The pool is owned by the process entrypoint and closed there
        self._ready = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @with_db_retry()
    async def get(self, record_id: str) -> Record | None:
        async with self.pool.connection() as conn:
            row = await fetch_one(f"{_SELECT} WHERE id = %s", (record_id,), connection=conn)
        return record_from_payload(row["payload"]) if row else None

    @with_db_retry()
    async def find_by_channel_identifier(self, channel_identifier: str) -> list[Record]:
        async with self.pool.connection() as conn:
            rows = await fetch_all(
                f"{_SELECT} WHERE channel_identifier = %s ORDER BY updated_at DESC",
                (channel_identifier,),
                connection=conn,
            )
        return _records(rows)

    @with_db_retry()
    async def find_by_name(self, name: str) -> list[Record]:
        key = normalize_name(name)
        if not key:
            return []
        async with self.pool.connection() as conn:
            rows = await fetch_all(
                f"{_SELECT} WHERE name_normalized = %s ORDER BY updated_at DESC",
                (key,),
                connection=conn,
            )
        return _records(rows)

    @with_db_retry()
    async def list_all(self) -> list[Record]:
        async with self.pool.connection() as conn:
            rows = await fetch_all(f"{_SELECT} ORDER BY id", connection=conn)
        return _records(rows)

    @with_db_retry()
    async def list_pinned(self) -> list[Record]:
        async with self.pool.connection() as conn:
            rows = await fetch_all(
                f"{_SELECT} WHERE is_pinned ORDER BY last_opened_time DESC NULLS LAST",
                connection=conn,
            )
        return _records(rows)

    @with_db_retry()
    async def list_recent(self) -> list[Record]:
        """Records with an open timestamp, most recent first."""
        async with self.pool.connection() as conn:
            rows = await fetch_all(
                f"{_SELECT} WHERE last_opened_time IS NOT NULL ORDER BY last_opened_time DESC",
                connection=conn,
            )
        return _records(rows)

    @with_db_retry()
    async def list_unverified(self) -> list[Record]:
        async with self.pool.connection() as conn:
            rows = await fetch_all(
                f"""
                {_SELECT}
                WHERE is_unverified
                   OR (NOT is_verified AND channel_identifier IS NOT NULL)
                ORDER BY is_pinned DESC, id
                """,
                connection=conn,
            )
        return _records(rows)

    @with_db_retry()
    async def count(self) -> int:
        async with self.pool.connection() as conn:
            value = await fetch_val("SELECT COUNT(*) AS total FROM directory_records", connection=conn)
        return int(value or 0)

    @with_db_retry()
    async def count_pinned(self) -> int:
        async with self.pool.connection() as conn:
            value = await fetch_val(
                "SELECT COUNT(*) AS total FROM directory_records WHERE is_pinned", connection=conn
            )
        return int(value or 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @with_db_retry()
    async def put(self, record: RecordBase) -> None:
        async with self.pool.connection() as conn:
            await execute_query(_UPSERT, _row_params(record), connection=conn)

    @with_db_retry()
    async def put_many(self, records: Iterable[RecordBase]) -> None:
        params = [_row_params(record) for record in records]
        if not params:
            return
        async with self.pool.transaction() as conn:
            await execute_many(_UPSERT, params, connection=conn)

    @with_db_retry()
    async def replace(self, old_id: str, record: RecordBase) -> None:
        """Atomically move a record to a new primary key."""
        async with self.pool.transaction() as conn:
            if old_id != record.id:
                await execute_query(
                    "DELETE FROM directory_records WHERE id = %s", (old_id,), connection=conn
                )
            await execute_query(_UPSERT, _row_params(record), connection=conn)

    @with_db_retry()
    async def delete(self, record_id: str) -> bool:
        async with self.pool.connection() as conn:
            deleted = await execute_query(
                "DELETE FROM directory_records WHERE id = %s", (record_id,), connection=conn
            )
        return deleted > 0

    @with_db_retry()
    async def delete_many(self, record_ids: Iterable[str]) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        async with self.pool.connection() as conn:
            return await execute_query(
                "DELETE FROM directory_records WHERE id = ANY(%s)", (ids,), connection=conn
            )

    @with_db_retry()
    async def delete_expired(self, cutoff: datetime) -> int:
        """Remove unpinned records not seen since `cutoff`."""
        async with self.pool.connection() as conn:
            return await execute_query(
                "DELETE FROM directory_records WHERE last_seen < %s AND NOT is_pinned",
                (cutoff,),
                connection=conn,
            )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @with_db_retry()
    async def get_metadata(self, key: str) -> Any:
        async with self.pool.connection() as conn:
            row = await fetch_one(
                "SELECT value FROM directory_metadata WHERE key = %s", (key,), connection=conn
            )
        return row["value"] if row else None

    @with_db_retry()
    async def set_metadata(self, key: str, value: Any) -> None:
        async with self.pool.connection() as conn:
            await execute_query(
                """
                INSERT INTO directory_metadata (key, value, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                (key, Jsonb(value)),
                connection=conn,
            )

    @with_db_retry()
    async def delete_metadata(self, key: str) -> None:
        async with self.pool.connection() as conn:
            await execute_query(
                "DELETE FROM directory_metadata WHERE key = %s", (key,), connection=conn
            )

    @with_db_retry()
    async def increment_counter(self, key: str) -> int:
        async with self.pool.connection() as conn:
            value = await fetch_val(
                """
                INSERT INTO directory_metadata (key, value, updated_at)
                VALUES (%s, to_jsonb(1), NOW())
                ON CONFLICT (key)
                DO UPDATE SET
                    value = to_jsonb(COALESCE((directory_metadata.value #>> '{}')::bigint, 0) + 1),
                    updated_at = NOW()
                RETURNING value
                """,
                (key,),
                connection=conn,
            )
        return int(value or 0)

    async def schema_version(self) -> int:
        value = await self.get_metadata(SCHEMA_VERSION_KEY)
        return int(value) if value is not None else 0
