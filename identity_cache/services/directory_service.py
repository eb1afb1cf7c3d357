"""
Read and organization operations used by the UI layer: pins, recent and
important records, lookups, local search and statistics.

Every public method catches store failures and degrades to False, None or
an empty list, so callers never need their own error handling.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from identity_cache.config import settings
from identity_cache.db.helpers import DatabaseError
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.domain.record_domain import (
    ChannelRecord,
    PersonRecord,
    RecordBase,
    normalize_name,
)
from identity_cache.repositories.directory_store import DirectoryStore
from identity_cache.services.deduplication_service import select_keeper
from identity_cache.services.response_cache import ResponseCache
from identity_cache.services.search_ranker import RankedRecord, SearchRanker
from identity_cache.services.upsert_pipeline import TOTAL_SEARCHES_KEY

logger = get_logger(__name__)

Record = PersonRecord | ChannelRecord

ESTIMATED_BYTES_PER_RECORD = 2048


@dataclass(slots=True)
class ImportantRecord:
    result_type: Literal["pinned", "recent"]
    record: Record


def _pinned_sort_key(record: RecordBase) -> tuple:
    opened = record.last_opened_time.timestamp() if record.last_opened_time else 0.0
    if record.pinned_order is not None:
        return (0, record.pinned_order, 0.0)
    return (1, 0, -opened)


class DirectoryService:
    def __init__(
        self,
        store: DirectoryStore,
        ranker: SearchRanker | None = None,
        cache: ResponseCache | None = None,
        recent_limit: int | None = None,
    ):
        self.store = store
        self.ranker = ranker or SearchRanker()
        self.cache = cache
        self.recent_limit = recent_limit or settings.RECENT_LIMIT

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------

    async def pin(self, record_id: str) -> bool:
        """Pin a record at the end of the pinned list. Unnamed groups cannot be pinned."""
        try:
            record = await self.store.get(record_id)
            if record is None:
                logger.debug("Record not found for pinning", record_id=record_id)
                return False
            if isinstance(record, ChannelRecord) and record.is_no_name_group:
                logger.warning("Refusing to pin unnamed group", record_id=record_id)
                return False
            if record.is_pinned:
                return True

            pinned = await self.store.list_pinned()
            orders = [r.pinned_order for r in pinned if r.pinned_order is not None]
            now = datetime.now(UTC)
            await self.store.put(
                record.model_copy(
                    update={
                        "is_pinned": True,
                        "pinned_at": now,
                        "pinned_order": max(orders, default=-1) + 1,
                        "last_updated": now,
                    }
                )
            )
            logger.info("Record pinned", record_id=record_id)
            return True

        except DatabaseError as e:
            logger.error("Failed to pin record", record_id=record_id, error=str(e))
            return False

    async def unpin(self, record_id: str) -> bool:
        try:
            record = await self.store.get(record_id)
            if record is None:
                return False

            now = datetime.now(UTC)
            await self.store.put(
                record.model_copy(
                    update={
                        "is_pinned": False,
                        "pinned_at": None,
                        "pinned_order": None,
                        "last_updated": now,
                    }
                )
            )
            await self._densify_pin_orders()
            logger.info("Record unpinned", record_id=record_id)
            return True

        except DatabaseError as e:
            logger.error("Failed to unpin record", record_id=record_id, error=str(e))
            return False

    async def reorder_pins(self, ordered_ids: list[str]) -> bool:
        """Apply an explicit pin order; pinned records not listed keep their relative order after."""
        try:
            pinned = sorted(await self.store.list_pinned(), key=_pinned_sort_key)
            by_id = {r.id: r for r in pinned}
            listed = [by_id[i] for i in dict.fromkeys(ordered_ids) if i in by_id]
            rest = [r for r in pinned if r.id not in set(ordered_ids)]
            await self.store.put_many(
                r.model_copy(update={"pinned_order": position})
                for position, r in enumerate([*listed, *rest])
                if r.pinned_order != position
            )
            return True

        except DatabaseError as e:
            logger.error("Failed to reorder pins", error=str(e))
            return False

    async def _densify_pin_orders(self) -> None:
        pinned = sorted(await self.store.list_pinned(), key=_pinned_sort_key)
        await self.store.put_many(
            r.model_copy(update={"pinned_order": position})
            for position, r in enumerate(pinned)
            if r.pinned_order is not None and r.pinned_order != position
        )

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def pinned_records(self) -> list[Record]:
        try:
            pinned = [r for r in await self.store.list_pinned() if not r.has_placeholder_id]
        except DatabaseError as e:
            logger.error("Failed to load pinned records", error=str(e))
            return []
        return sorted(pinned, key=_pinned_sort_key)

    async def recent_records(self) -> list[Record]:
        """Most recently opened records, one per name."""
        try:
            candidates = await self.store.list_recent()
        except DatabaseError as e:
            logger.error("Failed to load recent records", error=str(e))
            return []

        seen_names: set[str] = set()
        recent: list[Record] = []
        for record in candidates:
            name_key = normalize_name(record.name)
            if record.has_placeholder_id or name_key in seen_names:
                continue
            seen_names.add(name_key)
            recent.append(record)
            if len(recent) >= self.recent_limit:
                break
        return recent

    async def important_records(self) -> list[ImportantRecord]:
        pinned = await self.pinned_records()
        recent = await self.recent_records()
        return [
            *(ImportantRecord("pinned", r) for r in pinned),
            *(ImportantRecord("recent", r) for r in recent),
        ]

    async def current_record(self) -> Record | None:
        recent = await self.recent_records()
        return recent[0] if recent else None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> Record | None:
        try:
            return await self.store.get(record_id)
        except DatabaseError as e:
            logger.error("Failed to load record", record_id=record_id, error=str(e))
            return None

    async def lookup_by_name(self, name: str) -> Record | None:
        """Best record for a display name when duplicates exist."""
        try:
            matches = await self.store.find_by_name(name)
        except DatabaseError as e:
            logger.error("Lookup by name failed", error=str(e))
            return None
        if len(matches) > 1:
            logger.warning("Duplicate records share a name", name=name, count=len(matches))
        return select_keeper(matches) if matches else None

    async def lookup_by_channel_identifier(self, channel_identifier: str) -> Record | None:
        try:
            matches = await self.store.find_by_channel_identifier(channel_identifier)
        except DatabaseError as e:
            logger.error("Lookup by channel identifier failed", error=str(e))
            return None
        return select_keeper(matches) if matches else None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query: str, limit: int | None = None) -> list[RankedRecord]:
        try:
            records = await self.store.list_all()
        except DatabaseError as e:
            logger.warning("Local search failed", error=str(e))
            return []
        return self.ranker.rank(records, query, limit=limit)

    async def has_good_coverage(self, query: str) -> bool:
        try:
            records = await self.store.list_all()
        except DatabaseError as e:
            logger.warning("Coverage check failed", error=str(e))
            return False
        return self.ranker.has_good_coverage(records, query)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def statistics(self) -> dict:
        try:
            total = await self.store.count()
            pinned = await self.store.count_pinned()
            searches = await self.store.get_metadata(TOTAL_SEARCHES_KEY)
            schema_version = await self.store.schema_version()
        except DatabaseError as e:
            logger.error("Failed to collect statistics", error=str(e))
            return {"error": str(e)}

        return {
            "total_records": total,
            "pinned_records": pinned,
            "total_searches": int(searches or 0),
            "database_size_estimate": total * ESTIMATED_BYTES_PER_RECORD,
            "cache_efficiency": self.cache.efficiency() if self.cache else 0.0,
            "cache": self.cache.stats() if self.cache else None,
            "schema_version": schema_version,
        }
