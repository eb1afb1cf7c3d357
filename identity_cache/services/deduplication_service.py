"""
Duplicate detection and consolidation.

Three passes, each safe to re-run:
    * by normalized display name (self channels keyed by channel identifier)
    * by channel identifier
    * one-to-one consolidation: several direct channels recorded for the same user

Within a group the keeper is chosen by strict priority (person over channel,
remote-issued id over placeholder, most recently updated); the others are
folded into it and deleted. Only non-identity fields of the keeper change.
"""

from datetime import UTC, datetime
from typing import Literal

from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.domain.record_domain import (
    ChannelRecord,
    PersonRecord,
    RecordBase,
    is_remote_id,
    is_self_channel,
    normalize_name,
)
from identity_cache.repositories.directory_store import DirectoryStore
from identity_cache.services import interaction_metrics

logger = get_logger(__name__)

Record = PersonRecord | ChannelRecord
_EPOCH = datetime.min.replace(tzinfo=UTC)


def _updated_at(record: RecordBase) -> datetime:
    return record.last_updated or record.last_opened_time or _EPOCH


def keeper_sort_key(record: RecordBase) -> tuple:
    """Lower sorts first: person, remote-issued id, most recently updated."""
    return (
        record.type != "user",
        not is_remote_id(record.id),
        -_updated_at(record).timestamp(),
    )


def select_keeper(group: list[Record]) -> Record:
    return sorted(group, key=keeper_sort_key)[0]


def name_group_key(record: RecordBase) -> str | None:
    if is_self_channel(record) and record.channel_identifier:
        return f"__self_channel__{record.channel_identifier}"
    key = normalize_name(record.name)
    return key or None


def merge_group(
    keeper: Record, others: list[Record], counts: Literal["max", "sum"], now: datetime
) -> Record:
    """Fold duplicates into the keeper: pins OR'd (earliest pin time), counts combined."""
    group = [keeper, *others]
    pinned = [r for r in group if r.is_pinned]

    if counts == "sum":
        interaction_count = sum(r.interaction_count for r in group)
    else:
        interaction_count = max(r.interaction_count for r in group)

    metrics = keeper.interaction_metrics
    for other in others:
        metrics = interaction_metrics.merge(metrics, other.interaction_metrics)

    update = {
        "interaction_count": interaction_count,
        "interaction_metrics": metrics,
        "last_updated": now,
    }
    if pinned:
        pin_times = [r.pinned_at for r in pinned if r.pinned_at]
        orders = [r.pinned_order for r in pinned if r.pinned_order is not None]
        update["is_pinned"] = True
        update["pinned_at"] = min(pin_times) if pin_times else keeper.pinned_at
        if keeper.pinned_order is None and orders:
            update["pinned_order"] = min(orders)

    opened = [r.last_opened_time for r in group if r.last_opened_time]
    if opened:
        update["last_opened_time"] = max(opened)
        update["is_recent"] = any(r.is_recent for r in group)

    return keeper.model_copy(update=update)


class DeduplicationService:
    def __init__(self, store: DirectoryStore):
        self.store = store

    async def _collapse(
        self,
        groups: dict[str, list[Record]],
        counts: Literal["max", "sum"],
        pass_name: str,
    ) -> int:
        removed = 0
        now = datetime.now(UTC)
        for key, group in groups.items():
            if len(group) < 2:
                continue
            keeper = select_keeper(group)
            others = [r for r in group if r.id != keeper.id]
            merged = merge_group(keeper, others, counts, now)
            await self.store.put(merged)
            removed += await self.store.delete_many(r.id for r in others)
            logger.info(
                "Duplicates consolidated",
                dedup_pass=pass_name,
                group_key=key,
                keeper_id=keeper.id,
                removed_ids=[r.id for r in others],
            )
        return removed

    async def dedupe_by_name(self) -> int:
        groups: dict[str, list[Record]] = {}
        for record in await self.store.list_all():
            key = name_group_key(record)
            if key is None:
                continue
            groups.setdefault(key, []).append(record)
        return await self._collapse(groups, "max", "name")

    async def dedupe_by_channel_identifier(self) -> int:
        groups: dict[str, list[Record]] = {}
        for record in await self.store.list_all():
            if record.channel_identifier:
                groups.setdefault(record.channel_identifier, []).append(record)
        return await self._collapse(groups, "sum", "channel_identifier")

    async def run_full_cleanup(self) -> dict[str, int]:
        by_name = await self.dedupe_by_name()
        by_channel = await self.dedupe_by_channel_identifier()
        if by_name or by_channel:
            logger.info("Duplicate cleanup removed records", by_name=by_name, by_channel=by_channel)
        return {"by_name": by_name, "by_channel_identifier": by_channel}

    async def consolidate_direct_channels(self) -> dict[str, int]:
        """Collapse person records of one user spread across several direct channels."""
        groups: dict[str, list[PersonRecord]] = {}
        for record in await self.store.list_all():
            if isinstance(record, PersonRecord) and record.user_id and record.channel_identifier:
                groups.setdefault(record.user_id, []).append(record)

        consolidated = 0
        removed = 0
        now = datetime.now(UTC)
        for user_id, group in groups.items():
            if len({r.channel_identifier for r in group}) < 2:
                continue

            ordered = sorted(
                group,
                key=lambda r: (
                    not r.is_pinned,
                    -(r.last_seen or _EPOCH).timestamp(),
                    -r.interaction_count,
                ),
            )
            keeper, others = ordered[0], ordered[1:]
            absorbed = [r.channel_identifier for r in others]
            seen = [r.last_seen for r in group if r.last_seen]
            merged = merge_group(keeper, others, "sum", now).model_copy(
                update={
                    "last_seen": max(seen) if seen else keeper.last_seen,
                    "consolidated_from": sorted({*keeper.consolidated_from, *absorbed}),
                    "consolidated_at": now,
                }
            )
            await self.store.put(merged)
            removed += await self.store.delete_many(r.id for r in others)
            consolidated += 1
            logger.info(
                "Direct channels consolidated",
                user_id=user_id,
                keeper_id=keeper.id,
                absorbed_channels=absorbed,
            )

        return {"users_consolidated": consolidated, "records_removed": removed}
