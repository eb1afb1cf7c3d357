"""
Directory maintenance jobs for the background worker.

Each job opens the database pool, builds an engine (schema migrations only,
no startup sequence), runs its operation and closes everything again. Run
them from cron or a platform scheduler:

    identity-cache-worker maintenance
    WORKER_JOB=expiry_sweep identity-cache-worker
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from identity_cache.db.pool import db_pool
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.services.engine import IdentityCacheEngine, build_engine

logger = get_logger(__name__)


class DirectoryMaintenanceJob:
    """
    Duplicate cleanup, direct channel consolidation and expiry sweep in one
    run. A failing step is recorded and the remaining steps still run.
    """

    def __init__(self, engine: IdentityCacheEngine):
        self.engine = engine
        self.is_running = False

    async def run(self) -> dict:
        """
        Returns:
            dict: {
                "success": bool,
                "duplicates_removed": int,
                "direct_channels_removed": int,
                "expired_removed": int,
                "errors": list,
            }
        """
        if self.is_running:
            logger.warning("Maintenance job already running, skipping")
            return {"success": False, "error": "Already running"}

        self.is_running = True
        start_time = datetime.now(UTC)
        logger.info("Starting directory maintenance job", timestamp=start_time.isoformat())

        result = {
            "success": True,
            "duplicates_removed": 0,
            "direct_channels_removed": 0,
            "expired_removed": 0,
            "errors": [],
        }

        try:
            try:
                cleanup = await self.engine.dedup.run_full_cleanup()
                result["duplicates_removed"] = sum(cleanup.values())
            except Exception as e:
                error_msg = f"Failed to clean up duplicates: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

            try:
                consolidation = await self.engine.dedup.consolidate_direct_channels()
                result["direct_channels_removed"] = consolidation["records_removed"]
            except Exception as e:
                error_msg = f"Failed to consolidate direct channels: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

            try:
                result["expired_removed"] = await self.engine.maintenance.sweep_expired()
            except Exception as e:
                error_msg = f"Failed to sweep expired records: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

        finally:
            self.is_running = False

        result["success"] = not result["errors"]
        duration = (datetime.now(UTC) - start_time).total_seconds()
        logger.info("Directory maintenance job completed", duration_seconds=duration, result=result)
        return result


@asynccontextmanager
async def engine_session() -> AsyncIterator[IdentityCacheEngine]:
    """Pool and engine for the lifetime of one job run."""
    await db_pool.initialize()
    engine = build_engine(db_pool)
    try:
        await engine.start(run_startup_sequence=False)
        yield engine
    finally:
        await engine.close()
        await db_pool.close()


async def run_maintenance_job() -> None:
    async with engine_session() as engine:
        await DirectoryMaintenanceJob(engine).run()


async def run_full_verification_job() -> None:
    async with engine_session() as engine:
        result = await engine.maintenance.run_full_verification()
        logger.info("Full verification job completed", result=result)


async def run_verify_unverified_job() -> None:
    async with engine_session() as engine:
        result = await engine.verifier.verify_unverified_records()
        logger.info("Unverified re-check job completed", result=result)


async def run_expiry_sweep_job() -> None:
    async with engine_session() as engine:
        removed = await engine.maintenance.sweep_expired()
        logger.info("Expiry sweep job completed", removed=removed)
