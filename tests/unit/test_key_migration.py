import pytest

from identity_cache.db.helpers import DatabaseError
from identity_cache.services.key_migration_service import migrate_primary_keys
from identity_cache.services.upsert_pipeline import MISSING_CHANNEL_REASON
from tests.fakes import FakeDirectoryStore, make_record


def _legacy_store():
    return FakeDirectoryStore(
        [
            make_record("name_Bob", "Bob"),
            make_record("legacy-pin", "Pinned", user_id="u-p", is_pinned=True, pinned_order=0),
            make_record("sendbird_user_c", "Carol", user_id="u-c", channel_identifier="dm-c"),
            make_record("dm-d", "Dave", user_id="u-d", channel_identifier="dm-d"),
        ]
    )


@pytest.mark.asyncio
async def test_records_are_rekeyed_by_channel_identifier():
    store = _legacy_store()

    result = await migrate_primary_keys(store, batch_size=2, batch_delay=0)

    assert result == {"total": 4, "migrated": 1, "deleted": 1, "flagged": 1, "skipped": 1, "failed": 0}
    assert set(store.records) == {"legacy-pin", "dm-c", "dm-d"}

    migrated = await store.get("dm-c")
    assert migrated.original_id == "sendbird_user_c"
    assert migrated.name == "Carol"

    flagged = await store.get("legacy-pin")
    assert flagged.verification.is_unverified
    assert flagged.verification.unverification_reason == MISSING_CHANNEL_REASON


@pytest.mark.asyncio
async def test_migration_is_idempotent():
    store = _legacy_store()
    await migrate_primary_keys(store, batch_size=2, batch_delay=0)
    writes = store.writes

    result = await migrate_primary_keys(store, batch_size=2, batch_delay=0)

    assert result == {"total": 3, "migrated": 0, "deleted": 0, "flagged": 0, "skipped": 3, "failed": 0}
    assert store.writes == writes


class FailingReplaceStore(FakeDirectoryStore):
    def __init__(self, records, failing_id):
        super().__init__(records)
        self.failing_id = failing_id

    async def replace(self, old_id, record):
        if old_id == self.failing_id:
            raise DatabaseError("Query failed: deadlock detected", operation="execute")
        await super().replace(old_id, record)


@pytest.mark.asyncio
async def test_failed_record_does_not_stop_migration():
    store = FailingReplaceStore(
        [
            make_record("sendbird_user_a", "Ann", user_id="u-a", channel_identifier="dm-a"),
            make_record("sendbird_user_b", "Ben", user_id="u-b", channel_identifier="dm-b"),
        ],
        failing_id="sendbird_user_a",
    )

    result = await migrate_primary_keys(store, batch_size=1, batch_delay=0)

    assert result["failed"] == 1
    assert result["migrated"] == 1
    assert set(store.records) == {"sendbird_user_a", "dm-b"}


@pytest.mark.asyncio
async def test_corrupted_record_is_not_rekeyed():
    store = FakeDirectoryStore(
        [
            make_record(
                "sendbird_group_channel_a",
                "Design",
                channel_identifier="sendbird_group_channel_b",
                is_pinned=True,
                pinned_order=0,
            )
        ]
    )

    result = await migrate_primary_keys(store, batch_delay=0)

    assert result["migrated"] == 0
    assert result["skipped"] == 1
    assert set(store.records) == {"sendbird_group_channel_a"}
