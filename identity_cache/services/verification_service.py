"""
Reconciles local records against the remote authority.

verify_record() turns one record into a VerificationResult carrying the
verdict and, for every verdict except delete/skip, the updated record.
Nothing is written there; apply_result() persists a verdict, and the two
sweeps (all records, unverified records) combine both.

Failure handling favours keeping what the user cares about: a pinned record
is never deleted by verification, it is marked unverified and its retry
counter grows. Unpinned records that cannot be confirmed are deleted.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from identity_cache.config import settings
from identity_cache.db.helpers import DatabaseError
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.domain.record_domain import (
    ChannelRecord,
    PersonRecord,
    RecordBase,
    RecordIdentity,
    find_corruption,
    retyped,
)
from identity_cache.models.domain.remote_domain import RemoteChannel
from identity_cache.repositories.directory_store import DirectoryStore
from identity_cache.services.remote_authority_client import (
    ChannelNotFoundError,
    RemoteAuthorityClient,
    RemoteAuthorityError,
)

logger = get_logger(__name__)

SOURCE_VERIFIED = "remote_authority"
SOURCE_FIXED = "remote_authority_fixed"


class Verdict(str, Enum):
    VERIFY = "verify"
    FIX_AND_VERIFY = "fix_and_verify"
    MARK_UNVERIFIED = "mark_unverified"
    DELETE = "delete"
    SKIP = "skip"


@dataclass(slots=True)
class VerificationResult:
    verdict: Verdict
    record: PersonRecord | ChannelRecord | None
    reason: str | None = None


@dataclass(slots=True)
class SweepSummary:
    total: int = 0
    verified: int = 0
    fixed: int = 0
    unverified: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def count(self, verdict: Verdict) -> None:
        if verdict is Verdict.VERIFY:
            self.verified += 1
        elif verdict is Verdict.FIX_AND_VERIFY:
            self.fixed += 1
        elif verdict is Verdict.MARK_UNVERIFIED:
            self.unverified += 1
        elif verdict is Verdict.DELETE:
            self.deleted += 1
        else:
            self.skipped += 1

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "verified": self.verified,
            "fixed": self.fixed,
            "unverified": self.unverified,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class VerificationService:
    def __init__(
        self,
        store: DirectoryStore,
        client: RemoteAuthorityClient | None,
        current_user_id: str | None = None,
        freshness: timedelta | None = None,
        batch_size: int | None = None,
        batch_delay: float | None = None,
        recheck_delay: float | None = None,
    ):
        self.store = store
        self.client = client
        self.current_user_id = current_user_id
        self.freshness = freshness or settings.verification_freshness()
        self.batch_size = batch_size or settings.VERIFICATION_BATCH_SIZE
        self.batch_delay = settings.VERIFICATION_BATCH_DELAY if batch_delay is None else batch_delay
        self.recheck_delay = (
            settings.UNVERIFIED_RECHECK_DELAY if recheck_delay is None else recheck_delay
        )

    # ------------------------------------------------------------------
    # Single record
    # ------------------------------------------------------------------

    async def verify_record(
        self, record: PersonRecord | ChannelRecord, now: datetime | None = None, force: bool = False
    ) -> VerificationResult:
        now = now or datetime.now(UTC)

        if not record.channel_identifier:
            return VerificationResult(Verdict.SKIP, record, "no channel identifier")

        if self.client is None:
            return VerificationResult(Verdict.SKIP, record, "remote authority not configured")

        corruption = find_corruption(record, record.channel_identifier)
        if corruption:
            logger.error("Corrupted record refused verification", record_id=record.id, reason=corruption)
            return self._hard_failure(record, now, corruption)

        verified_at = record.verification.verified_at
        if not force and record.is_frozen and verified_at and now - verified_at < self.freshness:
            return VerificationResult(Verdict.SKIP, record, "recently verified")

        try:
            channel = await self.client.get_channel(record.channel_identifier)
        except ChannelNotFoundError:
            return self._remote_failure(record, now, "Channel not found (404)")
        except RemoteAuthorityError as e:
            return self._remote_failure(record, now, f"Network error: {e}")

        return self._compare(record, channel, now)

    def _remote_failure(self, record: RecordBase, now: datetime, reason: str) -> VerificationResult:
        logger.warning(
            "Verification call failed",
            record_id=record.id,
            pinned=record.is_pinned,
            reason=reason,
        )
        if record.is_pinned:
            return VerificationResult(
                Verdict.MARK_UNVERIFIED,
                record.unverified(now, reason, increment_retry=True),
                reason,
            )
        return VerificationResult(Verdict.DELETE, None, reason)

    def _compare(
        self, record: PersonRecord | ChannelRecord, channel: RemoteChannel, now: datetime
    ) -> VerificationResult:
        channel_match = channel.channel_identifier == record.channel_identifier
        name_match = channel.name == record.name
        distinct_match = channel.is_distinct == record.is_distinct
        membership_valid = False
        type_match = False

        if isinstance(record, PersonRecord):
            member = channel.member(record.user_id)
            membership_valid = member is not None
            type_match = channel.is_direct
            if member is not None:
                name_match = member.nickname == record.name
        else:
            type_match = channel.is_distinct is False

        logger.debug(
            "Verification checks",
            record_id=record.id,
            channel_match=channel_match,
            name_match=name_match,
            type_match=type_match,
            distinct_match=distinct_match,
            membership_valid=membership_valid,
        )

        if (
            channel_match
            and name_match
            and type_match
            and (membership_valid or isinstance(record, ChannelRecord))
        ):
            return VerificationResult(Verdict.VERIFY, record.verified(now, SOURCE_VERIFIED))

        if not channel_match:
            logger.error(
                "Channel identifier mismatch", record_id=record.id, remote=channel.channel_identifier
            )
            return self._hard_failure(record, now, "identifier mismatch")

        if not (name_match and type_match and distinct_match):
            return VerificationResult(
                Verdict.FIX_AND_VERIFY, self._fixed(record, channel, now), "fixed from remote"
            )

        if isinstance(record, PersonRecord) and not membership_valid:
            logger.error("User not among channel members", record_id=record.id, user_id=record.user_id)
            return self._hard_failure(record, now, "User not in channel members")

        return VerificationResult(
            Verdict.MARK_UNVERIFIED,
            record.unverified(now, "Unknown verification failure"),
            "Unknown verification failure",
        )

    def _hard_failure(self, record: RecordBase, now: datetime, reason: str) -> VerificationResult:
        if record.is_pinned:
            return VerificationResult(Verdict.MARK_UNVERIFIED, record.unverified(now, reason), reason)
        return VerificationResult(Verdict.DELETE, None, reason)

    def _fixed(
        self, record: PersonRecord | ChannelRecord, channel: RemoteChannel, now: datetime
    ) -> PersonRecord | ChannelRecord:
        name = channel.name
        user_id = record.user_id
        avatar = record.avatar

        if channel.is_direct and channel.members:
            other = channel.other_member(self.current_user_id)
            if other is not None:
                name = other.nickname or name
                user_id = other.user_id
                avatar = other.profile_url or avatar
        elif channel.is_distinct is False:
            # Multi-party channels never carry a person's user id
            user_id = None

        identity = RecordIdentity(
            id=record.id,
            name=name,
            user_id=user_id,
            channel_identifier=record.channel_identifier,
        )
        fixed = record.verified(
            now,
            SOURCE_FIXED,
            identity=identity,
            avatar=avatar,
            is_distinct=channel.is_distinct,
            member_count=channel.member_count,
            custom_type=channel.custom_type,
        )
        corrected = retyped(fixed)
        if corrected.type != record.type:
            logger.warning(
                "Verification corrected record type",
                record_id=record.id,
                old_type=record.type,
                new_type=corrected.type,
            )
        return corrected

    # ------------------------------------------------------------------
    # Persisting verdicts
    # ------------------------------------------------------------------

    async def apply_result(self, original: RecordBase, result: VerificationResult) -> None:
        if result.verdict is Verdict.SKIP:
            return
        if result.verdict is Verdict.DELETE:
            await self.store.delete(original.id)
            logger.info("Record deleted by verification", record_id=original.id, reason=result.reason)
            return
        await self.store.put(result.record)

    async def _verify_and_apply(
        self, record: PersonRecord | ChannelRecord, summary: SweepSummary, force: bool
    ) -> None:
        try:
            result = await self.verify_record(record, force=force)
            await self.apply_result(record, result)
            summary.count(result.verdict)
        except DatabaseError as e:
            logger.error("Verification sweep failed for record", record_id=record.id, error=str(e))
            summary.errors.append(f"{record.id}: {e}")

    async def verify_all_records(self) -> dict:
        """Re-check every record in small concurrent batches."""
        summary = SweepSummary()
        records = await self.store.list_all()
        summary.total = len(records)
        logger.info("Full verification started", total=summary.total, batch_size=self.batch_size)

        for start in range(0, len(records), self.batch_size):
            batch = records[start : start + self.batch_size]
            await asyncio.gather(*(self._verify_and_apply(r, summary, force=True) for r in batch))
            if start + self.batch_size < len(records):
                await asyncio.sleep(self.batch_delay)

        logger.info("Full verification completed", **summary.as_dict())
        return summary.as_dict()

    async def verify_unverified_records(self) -> dict:
        """Re-check records flagged unverified or never verified, one at a time."""
        summary = SweepSummary()
        records = await self.store.list_unverified()
        summary.total = len(records)
        if records:
            logger.info("Verifying unverified records", total=summary.total)

        for index, record in enumerate(records):
            await self._verify_and_apply(record, summary, force=True)
            if index < len(records) - 1:
                await asyncio.sleep(self.recheck_delay)

        return summary.as_dict()
