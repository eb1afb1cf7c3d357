"""
Primary-key migration: every record ends up keyed by its channel identifier.

Records without a channel identifier are deleted unless pinned; pinned ones
are flagged unverified so the repair path can find their channel later.
Records whose identity fields contradict each other are left where they are.
Running the migration again over a migrated store changes nothing.
"""

import asyncio
from datetime import UTC, datetime

from identity_cache.config import settings
from identity_cache.db.helpers import DatabaseError
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.domain.record_domain import find_corruption
from identity_cache.repositories.directory_store import DirectoryStore
from identity_cache.services.upsert_pipeline import MISSING_CHANNEL_REASON

logger = get_logger(__name__)


async def _migrate_record(store: DirectoryStore, record, now: datetime) -> str:
    if not record.channel_identifier:
        if not record.is_pinned:
            await store.delete(record.id)
            return "deleted"
        if record.verification.unverification_reason != MISSING_CHANNEL_REASON:
            await store.put(record.unverified(now, MISSING_CHANNEL_REASON))
            return "flagged"
        return "skipped"

    if record.id == record.channel_identifier:
        return "skipped"

    reason = find_corruption(record, record.channel_identifier)
    if reason:
        logger.warning("Corrupted record left unmigrated", record_id=record.id, reason=reason)
        return "skipped"

    await store.replace(record.id, record.rekeyed())
    return "migrated"


async def migrate_primary_keys(
    store: DirectoryStore, batch_size: int | None = None, batch_delay: float | None = None
) -> dict[str, int]:
    batch_size = batch_size or settings.VERIFICATION_BATCH_SIZE
    batch_delay = settings.MIGRATION_BATCH_DELAY if batch_delay is None else batch_delay
    results = {"total": 0, "migrated": 0, "deleted": 0, "flagged": 0, "skipped": 0, "failed": 0}
    now = datetime.now(UTC)

    records = await store.list_all()
    results["total"] = len(records)

    for start in range(0, len(records), batch_size):
        for record in records[start : start + batch_size]:
            try:
                outcome = await _migrate_record(store, record, now)
            except DatabaseError as e:
                logger.error("Primary key migration failed for record", record_id=record.id, error=str(e))
                outcome = "failed"
            results[outcome] += 1

        if start + batch_size < len(records):
            await asyncio.sleep(batch_delay)

    if results["migrated"] or results["deleted"] or results["flagged"] or results["failed"]:
        logger.info("Primary key migration completed", **results)
    return results
