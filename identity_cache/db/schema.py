"""
Versioned DDL for the directory store.

Every step uses IF [NOT] EXISTS so the whole chain can be replayed safely
against a database at any earlier version. The applied version lives in the
directory_metadata table under SCHEMA_VERSION_KEY.
"""

import psycopg

from identity_cache.db.helpers import DatabaseError, execute_query, fetch_val
from identity_cache.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION_KEY = "schema_version"
FULL_VERIFICATION_FLAG_KEY = "needs_full_verification"

# version -> statements
MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS directory_records (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL DEFAULT '',
            record_type TEXT NOT NULL,
            user_id TEXT,
            channel_identifier TEXT,
            is_pinned BOOLEAN NOT NULL DEFAULT FALSE,
            is_recent BOOLEAN NOT NULL DEFAULT FALSE,
            is_verified BOOLEAN NOT NULL DEFAULT FALSE,
            is_unverified BOOLEAN NOT NULL DEFAULT FALSE,
            last_seen TIMESTAMPTZ,
            last_opened_time TIMESTAMPTZ,
            pinned_at TIMESTAMPTZ,
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS directory_metadata (
            key TEXT PRIMARY KEY,
            value JSONB,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS directory_keywords (
            keyword TEXT NOT NULL,
            record_id TEXT NOT NULL,
            PRIMARY KEY (keyword, record_id)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_directory_records_name ON directory_records (name)",
    ],
    2: [
        "CREATE INDEX IF NOT EXISTS idx_directory_records_last_seen ON directory_records (last_seen)",
        "CREATE INDEX IF NOT EXISTS idx_directory_records_is_pinned ON directory_records (is_pinned)",
        "CREATE INDEX IF NOT EXISTS idx_directory_records_is_recent ON directory_records (is_recent)",
        "CREATE INDEX IF NOT EXISTS idx_directory_records_last_opened ON directory_records (last_opened_time)",
        "CREATE INDEX IF NOT EXISTS idx_directory_records_pinned_at ON directory_records (pinned_at)",
    ],
    3: [
        """
        CREATE INDEX IF NOT EXISTS idx_directory_records_pinned_opened
        ON directory_records (is_pinned, last_opened_time)
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_directory_records_recent_opened
        ON directory_records (is_recent, last_opened_time)
        """,
    ],
    4: [
        "ALTER TABLE directory_records ADD COLUMN IF NOT EXISTS name_normalized TEXT NOT NULL DEFAULT ''",
        """
        UPDATE directory_records
        SET name_normalized = lower(regexp_replace(btrim(name), '\\s+', ' ', 'g'))
        WHERE name_normalized = '' AND name <> ''
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_directory_records_name_normalized
        ON directory_records (name_normalized)
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_directory_records_channel_identifier
        ON directory_records (channel_identifier)
        """,
        "CREATE INDEX IF NOT EXISTS idx_directory_records_user_id ON directory_records (user_id)",
    ],
    5: [
        # Keyword lookups moved into the record payload
        "DROP TABLE IF EXISTS directory_keywords",
    ],
}

CURRENT_SCHEMA_VERSION = max(MIGRATIONS)


async def _read_version(conn: psycopg.AsyncConnection) -> int:
    exists = await fetch_val(
        "SELECT to_regclass('directory_metadata') IS NOT NULL AS present", connection=conn
    )
    if not exists:
        return 0
    value = await fetch_val(
        "SELECT value FROM directory_metadata WHERE key = %s", (SCHEMA_VERSION_KEY,), connection=conn
    )
    return int(value) if value is not None else 0


async def apply_migrations(conn: psycopg.AsyncConnection) -> tuple[int, int]:
    """
    Bring the schema up to CURRENT_SCHEMA_VERSION.

    Each version runs in its own transaction together with the version bump.
    An upgrade from an existing (non-zero) version raises the
    full-verification flag so the next startup re-checks every record.

    Returns:
        (previous_version, current_version)
    """
    previous = await _read_version(conn)
    if previous >= CURRENT_SCHEMA_VERSION:
        return previous, previous

    for version in sorted(v for v in MIGRATIONS if v > previous):
        try:
            async with conn.transaction():
                for statement in MIGRATIONS[version]:
                    await execute_query(statement, connection=conn)
                await execute_query(
                    """
                    INSERT INTO directory_metadata (key, value, updated_at)
                    VALUES (%s, to_jsonb(%s::int), NOW())
                    ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                    """,
                    (SCHEMA_VERSION_KEY, version),
                    connection=conn,
                )
        except DatabaseError as e:
            logger.error("Schema migration failed", version=version, error=str(e))
            raise

        logger.info("Schema migration applied", version=version)

    if previous > 0:
        await execute_query(
            """
            INSERT INTO directory_metadata (key, value, updated_at)
            VALUES (%s, 'true'::jsonb, NOW())
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """,
            (FULL_VERIFICATION_FLAG_KEY,),
            connection=conn,
        )
        logger.info(
            "Schema upgraded, full verification scheduled",
            from_version=previous,
            to_version=CURRENT_SCHEMA_VERSION,
        )

    return previous, CURRENT_SCHEMA_VERSION
