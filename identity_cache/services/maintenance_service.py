"""
Maintenance scheduling: the startup sequence, opportunistic duplicate
cleanup and the expiry sweep.

Opportunistic cleanup never starts while a UI-critical operation is marked
in progress, and at most once per cooldown period. It yields to the event
loop before starting so pending interactive work runs first.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from identity_cache.config import settings
from identity_cache.db.helpers import DatabaseError
from identity_cache.db.schema import FULL_VERIFICATION_FLAG_KEY
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.repositories.directory_store import DirectoryStore
from identity_cache.services.deduplication_service import DeduplicationService
from identity_cache.services.key_migration_service import migrate_primary_keys
from identity_cache.services.upsert_pipeline import UpsertPipeline
from identity_cache.services.verification_service import VerificationService

logger = get_logger(__name__)


class MaintenanceCoordinator:
    def __init__(
        self,
        store: DirectoryStore,
        dedup: DeduplicationService,
        verifier: VerificationService,
        pipeline: UpsertPipeline,
        cooldown_seconds: float | None = None,
        record_ttl: timedelta | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.dedup = dedup
        self.verifier = verifier
        self.pipeline = pipeline
        self.cooldown_seconds = (
            settings.CLEANUP_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )
        self.record_ttl = record_ttl or settings.record_ttl()
        self._clock = clock
        self._ui_operations = 0
        self._last_cleanup: float | None = None
        self._cleanup_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # UI operation guard
    # ------------------------------------------------------------------

    @property
    def ui_operations_in_progress(self) -> int:
        return self._ui_operations

    def mark_ui_operation_start(self) -> None:
        self._ui_operations += 1

    def mark_ui_operation_end(self) -> None:
        self._ui_operations = max(0, self._ui_operations - 1)

    @asynccontextmanager
    async def ui_operation(self) -> AsyncIterator[None]:
        self.mark_ui_operation_start()
        try:
            yield
        finally:
            self.mark_ui_operation_end()

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _cleanup_skip_reason(self) -> str | None:
        if self._ui_operations > 0:
            return "UI operation in progress"
        now = self._clock()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cooldown_seconds:
            return f"Last cleanup was {round(now - self._last_cleanup)}s ago"
        if self._cleanup_lock.locked():
            return "Cleanup already running"
        return None

    async def maybe_run_cleanup(self) -> dict:
        reason = self._cleanup_skip_reason()
        if reason is None:
            # Defer until pending interactive work has had a turn
            await asyncio.sleep(0)
            reason = self._cleanup_skip_reason()
        if reason is not None:
            return {"skipped": True, "reason": reason}
        return await self.run_cleanup()

    async def run_cleanup(self) -> dict:
        async with self._cleanup_lock:
            self._last_cleanup = self._clock()
            try:
                result = await self.dedup.run_full_cleanup()
            except DatabaseError as e:
                logger.error("Duplicate cleanup failed", error=str(e))
                return {"skipped": False, "error": str(e)}
        return {"skipped": False, **result}

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete unpinned records not seen within the record TTL."""
        cutoff = (now or datetime.now(UTC)) - self.record_ttl
        try:
            removed = await self.store.delete_expired(cutoff)
        except DatabaseError as e:
            logger.error("Expiry sweep failed", error=str(e))
            return 0
        if removed:
            logger.info("Expired records removed", removed=removed, cutoff=cutoff.isoformat())
        return removed

    # ------------------------------------------------------------------
    # Verification entry points
    # ------------------------------------------------------------------

    async def request_full_verification(self) -> None:
        """Schedule a full pass for the next startup (or the next worker run)."""
        await self.store.set_metadata(FULL_VERIFICATION_FLAG_KEY, True)

    async def run_full_verification(self) -> dict:
        result = await self.verifier.verify_all_records()
        await self.store.delete_metadata(FULL_VERIFICATION_FLAG_KEY)
        return result

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def run_startup_sequence(self) -> dict:
        """
        Converge the store after (re)start. Steps run in this order and a
        failing step is logged without stopping the ones after it:

            1. sweep of stored records with contradicting identity fields
            2. duplicate cleanup
            3. primary-key migration to channel identifiers
            4. one-to-one direct channel consolidation
            5. full verification, if an upgrade requested it
            6. verification of unverified records
        """
        report: dict[str, dict] = {}

        async def step(name: str, operation) -> None:
            try:
                report[name] = await operation()
            except Exception as e:
                logger.exception("Startup step failed", step=name, error=str(e))
                report[name] = {"error": str(e)}

        await step("sweep_corrupted_records", self.pipeline.sweep_corrupted_records)
        await step("cleanup_duplicates", self.dedup.run_full_cleanup)
        await step("migrate_primary_keys", lambda: migrate_primary_keys(self.store))
        await step("consolidate_direct_channels", self.dedup.consolidate_direct_channels)

        async def full_verification_if_flagged() -> dict:
            if not await self.store.get_metadata(FULL_VERIFICATION_FLAG_KEY):
                return {"skipped": True}
            return await self.run_full_verification()

        await step("full_verification", full_verification_if_flagged)
        await step("verify_unverified", self.verifier.verify_unverified_records)

        logger.info("Startup sequence completed", steps=list(report))
        return report
