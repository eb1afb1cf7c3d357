from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from identity_cache.jobs.directory_maintenance_job import DirectoryMaintenanceJob
from identity_cache.services.engine import IdentityCacheEngine
from tests.fakes import FakeDirectoryStore, make_record


def _engine(records):
    return IdentityCacheEngine(FakeDirectoryStore(records))


@pytest.mark.asyncio
async def test_maintenance_job_runs_every_step():
    now = datetime.now(UTC)
    engine = _engine(
        [
            make_record("grp-1", "Design", channel_identifier="grp-1", last_seen=now),
            make_record("grp-2", "design", channel_identifier="grp-2", last_seen=now),
            make_record("grp-old", "Old", channel_identifier="grp-old", last_seen=now - timedelta(days=60)),
        ]
    )

    result = await DirectoryMaintenanceJob(engine).run()

    assert result["success"] is True
    assert result["duplicates_removed"] == 1
    assert result["direct_channels_removed"] == 0
    assert result["expired_removed"] == 1
    assert result["errors"] == []
    assert await engine.store.count() == 1


@pytest.mark.asyncio
async def test_failing_step_is_reported_and_others_still_run():
    engine = _engine([])
    engine.dedup.run_full_cleanup = AsyncMock(side_effect=RuntimeError("boom"))
    engine.maintenance.sweep_expired = AsyncMock(return_value=2)
    job = DirectoryMaintenanceJob(engine)

    result = await job.run()

    assert result["success"] is False
    assert result["errors"] == ["Failed to clean up duplicates: boom"]
    assert result["expired_removed"] == 2
    assert job.is_running is False


@pytest.mark.asyncio
async def test_job_refuses_concurrent_run():
    job = DirectoryMaintenanceJob(_engine([]))
    job.is_running = True

    assert await job.run() == {"success": False, "error": "Already running"}
