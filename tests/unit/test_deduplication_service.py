from datetime import timedelta

import pytest

from identity_cache.services.deduplication_service import (
    DeduplicationService,
    name_group_key,
    select_keeper,
)
from tests.fakes import NOW, FakeDirectoryStore, make_record


def _same_channel_trio():
    return [
        make_record(
            "sendbird_user_a",
            "Alice",
            user_id="u-a",
            channel_identifier="dm-a",
            interaction_count=2,
            last_updated=NOW - timedelta(days=1),
        ),
        make_record(
            "name_Alice",
            "Alice",
            channel_identifier="dm-a",
            interaction_count=3,
            is_pinned=True,
            pinned_at=NOW - timedelta(days=5),
            pinned_order=1,
            last_updated=NOW - timedelta(days=2),
        ),
        make_record(
            "dm-a",
            "Alice",
            user_id="u-a",
            channel_identifier="dm-a",
            interaction_count=4,
            last_updated=NOW,
        ),
    ]


def test_keeper_prefers_person_then_remote_id():
    trio = _same_channel_trio()

    assert select_keeper(trio).id == "sendbird_user_a"
    assert select_keeper(trio[1:]).id == "dm-a"


def test_self_channels_group_by_channel_identifier():
    notes = make_record(
        "self-1",
        "Jordan",
        channel_identifier="self-1",
        custom_type="self_channel",
        is_distinct=True,
        member_count=1,
    )

    assert name_group_key(notes) == "__self_channel__self-1"
    assert name_group_key(make_record("grp-1", "  Design   Team ")) == "design team"
    assert name_group_key(make_record("grp-2", "")) is None


@pytest.mark.asyncio
async def test_channel_pass_sums_counts_and_keeps_earliest_pin():
    store = FakeDirectoryStore(_same_channel_trio())

    removed = await DeduplicationService(store).dedupe_by_channel_identifier()

    assert removed == 2
    assert set(store.records) == {"sendbird_user_a"}
    keeper = await store.get("sendbird_user_a")
    assert keeper.interaction_count == 9
    assert keeper.is_pinned
    assert keeper.pinned_at == NOW - timedelta(days=5)
    assert keeper.pinned_order == 1
    assert keeper.name == "Alice"


@pytest.mark.asyncio
async def test_name_pass_takes_max_count():
    store = FakeDirectoryStore(
        [
            make_record("grp-1", "Design Team", channel_identifier="grp-1", interaction_count=5, last_updated=NOW),
            make_record(
                "grp-2",
                "design  team",
                channel_identifier="grp-2",
                interaction_count=3,
                last_updated=NOW - timedelta(hours=1),
            ),
        ]
    )

    removed = await DeduplicationService(store).dedupe_by_name()

    assert removed == 1
    assert set(store.records) == {"grp-1"}
    assert (await store.get("grp-1")).interaction_count == 5


@pytest.mark.asyncio
async def test_self_channels_with_same_name_are_kept():
    self_channels = [
        make_record(
            f"self-{i}",
            "Jordan",
            channel_identifier=f"self-{i}",
            custom_type="self_channel",
            is_distinct=True,
            member_count=1,
        )
        for i in (1, 2)
    ]
    store = FakeDirectoryStore(self_channels)

    assert await DeduplicationService(store).dedupe_by_name() == 0
    assert set(store.records) == {"self-1", "self-2"}


@pytest.mark.asyncio
async def test_full_cleanup_is_idempotent():
    store = FakeDirectoryStore(_same_channel_trio())
    service = DeduplicationService(store)

    first = await service.run_full_cleanup()
    second = await service.run_full_cleanup()

    assert first["by_name"] == 2
    assert second == {"by_name": 0, "by_channel_identifier": 0}
    assert len(store.records) == 1


@pytest.mark.asyncio
async def test_direct_channels_of_one_user_are_consolidated():
    store = FakeDirectoryStore(
        [
            make_record(
                "dm-1",
                "Alice",
                user_id="u-1",
                channel_identifier="dm-1",
                is_pinned=True,
                pinned_order=0,
                last_seen=NOW - timedelta(days=3),
                interaction_count=2,
            ),
            make_record(
                "dm-2",
                "Alice A.",
                user_id="u-1",
                channel_identifier="dm-2",
                last_seen=NOW,
                interaction_count=5,
            ),
            make_record("dm-3", "Bob", user_id="u-2", channel_identifier="dm-3"),
        ]
    )
    service = DeduplicationService(store)

    result = await service.consolidate_direct_channels()

    assert result == {"users_consolidated": 1, "records_removed": 1}
    assert set(store.records) == {"dm-1", "dm-3"}
    keeper = await store.get("dm-1")
    assert keeper.interaction_count == 7
    assert keeper.last_seen == NOW
    assert keeper.consolidated_from == ["dm-2"]
    assert keeper.consolidated_at is not None

    assert await service.consolidate_direct_channels() == {
        "users_consolidated": 0,
        "records_removed": 0,
    }
