"""
Write path for directory records.

Search results and chat-opened events arrive from uncoordinated producers,
often partial and sometimes wrong. Both entry points merge the incoming data
with what is already stored, refuse input whose identity fields contradict
each other, and let the verification service decide before anything is
committed. Results are returned as values; store and remote failures are
logged and reported in the result instead of raised.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from identity_cache.config import settings
from identity_cache.db.helpers import DatabaseError
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.domain.record_domain import (
    ChannelRecord,
    IncomingEntry,
    PersonRecord,
    RecordIdentity,
    build_record,
    direct_channel_entry,
    find_corruption,
    is_group_channel_id,
    is_placeholder_id,
    is_remote_id,
    looks_like_no_name_group,
    placeholder_id_for,
    valid_user_id,
)
from identity_cache.repositories.directory_store import DirectoryStore
from identity_cache.services import interaction_metrics
from identity_cache.services.remote_authority_client import (
    RemoteAuthorityClient,
    RemoteAuthorityError,
)
from identity_cache.services.verification_service import Verdict, VerificationService

logger = get_logger(__name__)

TOTAL_SEARCHES_KEY = "total_searches"
MISSING_CHANNEL_REASON = "missing channel identifier"

Record = PersonRecord | ChannelRecord
InteractionStatus = Literal["recorded", "rejected", "suppressed", "discarded"]

# Copied from an incoming entry when present, otherwise kept from the stored record
_PROFILE_FIELDS = (
    "email",
    "job_title",
    "department_name",
    "location_name",
    "bio",
    "has_direct_chat",
    "has_shared_connection",
)


@dataclass(slots=True)
class InteractionResult:
    status: InteractionStatus
    record: Record | None = None
    reason: str | None = None
    needs_recovery: bool = False
    needs_repair: bool = False

    @property
    def recorded(self) -> bool:
        return self.status == "recorded"


def _merged_keywords(existing: list[str], incoming: list[str], term: str | None) -> list[str]:
    keywords = {k.strip().lower() for k in [*existing, *incoming] if k and k.strip()}
    if term and term.strip():
        keywords.add(term.strip().lower())
    return sorted(keywords)


class UpsertPipeline:
    def __init__(
        self,
        store: DirectoryStore,
        verifier: VerificationService,
        client: RemoteAuthorityClient | None = None,
        flood_window: timedelta | None = None,
    ):
        self.store = store
        self.verifier = verifier
        self.client = client
        self.flood_window = flood_window or timedelta(
            seconds=settings.INTERACTION_FLOOD_WINDOW_SECONDS
        )

    # ------------------------------------------------------------------
    # Shared lookups
    # ------------------------------------------------------------------

    async def _existing_for(self, channel_identifier: str | None, record_id: str) -> Record | None:
        if channel_identifier:
            matches = await self.store.find_by_channel_identifier(channel_identifier)
            if matches:
                return matches[0]
        return await self.store.get(record_id)

    async def _persist(self, existing: Record | None, record: Record) -> None:
        if existing is not None and existing.id != record.id:
            await self.store.replace(existing.id, record)
        else:
            await self.store.put(record)

    def _base_fields(self, existing: Record | None, entry: IncomingEntry) -> dict[str, Any]:
        """
        Stored fields overlaid with whatever the entry provides. Pins,
        interaction history and verification state only ever come from the
        stored record; verified channel metadata is kept as well.
        """
        fields: dict[str, Any] = {}
        overridable = list(_PROFILE_FIELDS)
        if existing is not None:
            fields.update(existing.model_dump(exclude={"identity", "type"}))
        if existing is None or not existing.is_frozen:
            overridable += ["member_count", "is_distinct", "custom_type"]

        for name in overridable:
            value = getattr(entry, name)
            if value is not None:
                fields[name] = value
        if entry.avatar:
            fields["avatar"] = entry.avatar
        if entry.shared_channels:
            fields["shared_channels"] = entry.shared_channels
        if entry.original_id:
            fields.setdefault("original_id", entry.original_id)
        return fields

    # ------------------------------------------------------------------
    # Search results
    # ------------------------------------------------------------------

    async def ingest_search_results(
        self, term: str, items: list[IncomingEntry], now: datetime | None = None
    ) -> list[Record]:
        """
        Merge search results into the store.

        Returns:
            The records that were accepted and persisted.
        """
        now = now or datetime.now(UTC)
        accepted: list[Record] = []

        for item in items:
            try:
                record = await self._ingest_item(term, item, now)
            except DatabaseError as e:
                logger.error("Failed to store search result", item_id=item.id, error=str(e))
                continue
            if record is not None:
                accepted.append(record)

        try:
            await self.store.increment_counter(TOTAL_SEARCHES_KEY)
        except DatabaseError as e:
            logger.warning("Failed to update search counter", error=str(e))

        logger.info(
            "Search results ingested", term=term, received=len(items), accepted=len(accepted)
        )
        return accepted

    async def _ingest_item(self, term: str, item: IncomingEntry, now: datetime) -> Record | None:
        channel_identifier = item.channel_identifier
        if not channel_identifier and is_group_channel_id(item.id):
            channel_identifier = item.id
        if not channel_identifier:
            logger.debug("Search result rejected, no channel identifier", item_id=item.id)
            return None

        existing = await self._existing_for(channel_identifier, item.id)

        fields = self._base_fields(existing, item)
        fields["search_keywords"] = _merged_keywords(
            existing.search_keywords if existing else [], item.search_keywords, term
        )
        fields["last_seen"] = now
        fields["last_updated"] = now
        if item.id != channel_identifier:
            fields["original_id"] = (existing.original_id if existing else None) or item.id

        if existing is not None and existing.is_frozen:
            identity = existing.identity
        else:
            identity = RecordIdentity(
                id=channel_identifier,
                name=item.name or (existing.name if existing else ""),
                user_id=valid_user_id(item.user_id, existing.user_id if existing else None),
                channel_identifier=channel_identifier,
            )
        candidate = build_record(identity, **fields)

        result = await self.verifier.verify_record(candidate, now)
        if result.verdict is Verdict.DELETE:
            logger.info(
                "Search result discarded by verification",
                item_id=item.id,
                reason=result.reason,
            )
            return None
        candidate = result.record

        await self._persist(existing, candidate)
        await self._purge_placeholder(candidate)
        return candidate

    async def _purge_placeholder(self, record: Record) -> None:
        if not record.name or is_placeholder_id(record.id):
            return
        placeholder_id = placeholder_id_for(record.name)
        if placeholder_id != record.id and await self.store.delete(placeholder_id):
            logger.info("Removed placeholder record", placeholder_id=placeholder_id, record_id=record.id)

    # ------------------------------------------------------------------
    # Chat-opened events
    # ------------------------------------------------------------------

    async def record_interaction(
        self, entry: IncomingEntry, now: datetime | None = None
    ) -> InteractionResult:
        now = now or datetime.now(UTC)
        try:
            return await self._record_interaction(entry, now)
        except DatabaseError as e:
            logger.error("Failed to record interaction", record_id=entry.id, error=str(e))
            return InteractionResult("rejected", reason=f"storage error: {e}")

    async def _resolve_alias(self, entry: IncomingEntry, channel_identifier: str | None) -> Record | None:
        """
        Find the stored record an event refers to under a different id,
        first by channel identifier, then by name (preferring people).
        """
        if not (is_remote_id(entry.id) or (entry.user_id and not is_placeholder_id(entry.id))):
            return None

        if channel_identifier:
            for match in await self.store.find_by_channel_identifier(channel_identifier):
                if match.id != entry.id:
                    return match

        if entry.name:
            matches = [m for m in await self.store.find_by_name(entry.name) if m.id != entry.id]
            with_user = [m for m in matches if m.user_id]
            if with_user:
                return with_user[0]
            if matches:
                return matches[0]
        return None

    def _resolve_channel_identifier(
        self, entry: IncomingEntry, existing: Record | None, provided: str | None
    ) -> str | None:
        if existing is not None and existing.is_frozen:
            return existing.channel_identifier
        if is_group_channel_id(entry.id):
            return entry.id
        direct = direct_channel_entry(entry.shared_channels)
        if direct is not None:
            return direct.channel_identifier
        return provided or (existing.channel_identifier if existing else None)

    async def _record_interaction(self, entry: IncomingEntry, now: datetime) -> InteractionResult:
        channel_identifier = entry.channel_identifier
        if not channel_identifier and is_group_channel_id(entry.id):
            channel_identifier = entry.id

        reason = find_corruption(entry, channel_identifier)
        if reason:
            logger.error("Corrupted interaction rejected", record_id=entry.id, reason=reason)
            return InteractionResult("rejected", reason=reason)

        no_name_group = looks_like_no_name_group(entry.id, entry.name, entry.is_distinct)
        record_id = entry.id
        user_id = None if no_name_group else entry.user_id

        alias = await self._resolve_alias(entry, channel_identifier)
        if alias is not None:
            logger.debug("Interaction resolved to stored record", event_id=entry.id, record_id=alias.id)
            record_id = alias.id
            user_id = user_id or alias.user_id
            channel_identifier = channel_identifier or alias.channel_identifier

        existing = await self._existing_for(channel_identifier, record_id)

        placeholder = None
        if entry.name and not is_placeholder_id(record_id):
            placeholder = await self.store.get(placeholder_id_for(entry.name))
            if placeholder is not None and existing is not None and placeholder.id == existing.id:
                placeholder = None

        if existing is not None and existing.last_opened_time is not None:
            if now - existing.last_opened_time < self.flood_window:
                logger.debug("Interaction suppressed by flood window", record_id=existing.id)
                return InteractionResult("suppressed", record=existing, reason="flood window")

        channel_identifier = self._resolve_channel_identifier(entry, existing, channel_identifier)

        if existing is not None and existing.is_frozen:
            identity = existing.identity
        else:
            resolved_user = None if no_name_group else valid_user_id(
                user_id, existing.user_id if existing else None
            )
            identity = RecordIdentity(
                id=channel_identifier or (existing.id if existing else record_id),
                name=entry.name or (existing.name if existing else ""),
                user_id=resolved_user,
                channel_identifier=channel_identifier,
            )

        fields = self._base_fields(existing, entry)
        count = (existing.interaction_count if existing else 0) + 1
        metrics = interaction_metrics.record_event(
            existing.interaction_metrics if existing else None, now
        )
        if placeholder is not None:
            count += placeholder.interaction_count
            metrics = interaction_metrics.merge(metrics, placeholder.interaction_metrics)
            if placeholder.is_pinned and not fields.get("is_pinned"):
                fields.update(
                    is_pinned=True,
                    pinned_at=placeholder.pinned_at,
                    pinned_order=placeholder.pinned_order,
                )
        fields.update(
            last_opened_time=now,
            last_seen=now,
            last_updated=now,
            is_recent=True,
            interaction_count=count,
            interaction_metrics=metrics,
        )
        if identity.id != record_id and not is_placeholder_id(record_id):
            fields["original_id"] = fields.get("original_id") or record_id

        was_no_name = isinstance(existing, ChannelRecord) and existing.is_no_name_group
        if no_name_group or was_no_name:
            fields["is_no_name_group"] = True

        candidate = build_record(identity, **fields)

        if not candidate.channel_identifier:
            if existing is not None and existing.is_pinned:
                candidate = candidate.unverified(now, MISSING_CHANNEL_REASON)
                await self._persist(existing, candidate)
                logger.warning("Pinned record kept without channel identifier", record_id=candidate.id)
                return InteractionResult(
                    "recorded", record=candidate, reason=MISSING_CHANNEL_REASON, needs_repair=True
                )
            logger.warning("Interaction rejected, no channel identifier", record_id=record_id)
            return InteractionResult("rejected", reason=MISSING_CHANNEL_REASON)

        result = await self.verifier.verify_record(candidate, now)
        if result.verdict is Verdict.DELETE:
            logger.info("Interaction discarded by verification", record_id=candidate.id, reason=result.reason)
            return InteractionResult("discarded", reason=result.reason)
        candidate = result.record

        await self._persist(existing, candidate)
        if placeholder is not None:
            await self.store.delete(placeholder.id)
            logger.info("Merged placeholder record", placeholder_id=placeholder.id, record_id=candidate.id)

        needs_recovery = (
            isinstance(candidate, ChannelRecord)
            and candidate.is_no_name_group
            and is_placeholder_id(entry.id)
            and not candidate.is_frozen
        )
        return InteractionResult("recorded", record=candidate, needs_recovery=needs_recovery)

    # ------------------------------------------------------------------
    # Background repair
    # ------------------------------------------------------------------

    async def recover_no_name_group(self, record_id: str) -> bool:
        """
        Look up the true channel of an unnamed group via its first member's
        name, re-key the record onto it and strip the channel from records
        that wrongly claimed it.
        """
        if self.client is None:
            return False
        try:
            record = await self.store.get(record_id)
            if not isinstance(record, ChannelRecord) or not record.name or record.is_frozen:
                return False

            first_member = record.name.split(",")[0].strip()
            if not first_member:
                return False

            channels = await self.client.search_channels_by_member(first_member)
            target = next(
                (c for c in channels if not c.name.strip() and c.is_distinct is False), None
            )
            if target is None:
                logger.info("No unnamed group found for recovery", record_id=record_id)
                return False

            recovered = record.with_identity(
                id=target.channel_identifier, channel_identifier=target.channel_identifier
            ).model_copy(
                update={
                    "is_no_name_group": True,
                    "is_distinct": False,
                    "member_count": target.member_count,
                    "last_updated": datetime.now(UTC),
                    "original_id": record.original_id or record.id,
                }
            )
            await self.store.replace(record.id, recovered)
            cleaned = await self._cleanup_zombie_references(target.channel_identifier, recovered.id)
            logger.info(
                "Unnamed group recovered",
                record_id=recovered.id,
                previous_id=record.id,
                zombies_cleaned=cleaned,
            )
            return True

        except (DatabaseError, RemoteAuthorityError) as e:
            logger.error("Unnamed group recovery failed", record_id=record_id, error=str(e))
            return False

    async def _cleanup_zombie_references(self, channel_identifier: str, keep_id: str) -> int:
        cleaned = 0
        now = datetime.now(UTC)
        for record in await self.store.list_all():
            if record.id == keep_id:
                continue

            updated = record
            if record.channel_identifier == channel_identifier and not record.is_frozen:
                updated = updated.with_identity(channel_identifier=None).unverified(
                    now, MISSING_CHANNEL_REASON
                )

            remaining = [
                c for c in updated.shared_channels if c.channel_identifier != channel_identifier
            ]
            if len(remaining) != len(updated.shared_channels):
                updated = updated.model_copy(update={"shared_channels": remaining})

            if updated is not record:
                await self.store.put(updated.model_copy(update={"last_updated": now}))
                cleaned += 1
        return cleaned

    async def repair_missing_channel_identifier(self, record_id: str) -> str | None:
        """Find the direct channel of a person record that lost its channel identifier."""
        if self.client is None:
            return None
        try:
            record = await self.store.get(record_id)
            if record is None:
                return None
            if record.channel_identifier:
                return record.channel_identifier
            if not record.name:
                return None

            channels = await self.client.search_channels_by_member(record.name)
            direct = [c for c in channels if c.is_distinct is True]
            if record.user_id:
                direct = [c for c in direct if c.member(record.user_id) is not None] or direct
            if not direct:
                logger.info("No direct channel found for repair", record_id=record_id)
                return None

            channel_identifier = direct[0].channel_identifier
            repaired = record.with_identity(
                id=channel_identifier, channel_identifier=channel_identifier
            ).model_copy(
                update={
                    "original_id": record.original_id or record.id,
                    "last_updated": datetime.now(UTC),
                }
            )
            result = await self.verifier.verify_record(repaired)
            if result.verdict is Verdict.DELETE:
                logger.warning("Repaired channel failed verification", record_id=record_id)
                return None
            await self.store.replace(record.id, result.record)
            logger.info("Channel identifier repaired", record_id=record_id, channel=channel_identifier)
            return channel_identifier

        except (DatabaseError, RemoteAuthorityError) as e:
            logger.error("Channel identifier repair failed", record_id=record_id, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Stored corruption
    # ------------------------------------------------------------------

    async def sweep_corrupted_records(self) -> dict[str, int]:
        """
        Apply the write-time corruption rules to records already stored.

        Corrupted unpinned records are deleted; pinned ones are flagged
        unverified with the reason and left for the user to resolve.
        Unpinned person records without a channel identifier get one repair
        attempt before the key migration would delete them.
        """
        results = {"checked": 0, "deleted": 0, "flagged": 0, "repaired": 0, "failed": 0}
        now = datetime.now(UTC)

        for record in await self.store.list_all():
            results["checked"] += 1
            try:
                if not record.channel_identifier:
                    if (
                        not record.is_pinned
                        and isinstance(record, PersonRecord)
                        and await self.repair_missing_channel_identifier(record.id)
                    ):
                        results["repaired"] += 1
                    continue

                reason = find_corruption(record, record.channel_identifier)
                if reason is None:
                    continue
                if not record.is_pinned:
                    await self.store.delete(record.id)
                    results["deleted"] += 1
                    logger.error("Corrupted record deleted", record_id=record.id, reason=reason)
                elif record.verification.unverification_reason != reason:
                    await self.store.put(record.unverified(now, reason))
                    results["flagged"] += 1
                    logger.error("Corrupted pinned record flagged", record_id=record.id, reason=reason)

            except DatabaseError as e:
                logger.error("Corruption sweep failed for record", record_id=record.id, error=str(e))
                results["failed"] += 1

        if results["deleted"] or results["flagged"] or results["repaired"] or results["failed"]:
            logger.info("Stored corruption sweep completed", **results)
        return results
