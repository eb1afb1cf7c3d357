"""In-memory fakes and record factories shared by the test suite."""

from datetime import UTC, datetime
from itertools import count

from identity_cache.db.schema import CURRENT_SCHEMA_VERSION, SCHEMA_VERSION_KEY
from identity_cache.models.domain.record_domain import (
    RecordIdentity,
    SharedChannel,
    VerificationState,
    build_record,
    normalize_name,
)
from identity_cache.models.domain.remote_domain import RemoteChannel, RemoteMember
from identity_cache.services.remote_authority_client import (
    ChannelNotFoundError,
    RemoteAuthorityError,
)

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
CURRENT_USER_ID = "me-001"


class FakeDirectoryStore:
    """In-memory stand-in for DirectoryStore with the same query semantics."""

    def __init__(self, records=None):
        self.records: dict = {}
        self.metadata: dict = {}
        self._updated: dict[str, int] = {}
        self._seq = count()
        self._ready = False
        self.writes = 0
        for record in records or []:
            self._store(record)

    def _store(self, record) -> None:
        self.records[record.id] = record
        self._updated[record.id] = next(self._seq)

    def _newest_first(self, records):
        return sorted(records, key=lambda r: self._updated[r.id], reverse=True)

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> int:
        self.metadata.setdefault(SCHEMA_VERSION_KEY, CURRENT_SCHEMA_VERSION)
        self._ready = True
        return self.metadata[SCHEMA_VERSION_KEY]

    async def close(self) -> None:
        self._ready = False

    async def get(self, record_id):
        return self.records.get(record_id)

    async def find_by_channel_identifier(self, channel_identifier):
        return self._newest_first(
            r for r in self.records.values() if r.channel_identifier == channel_identifier
        )

    async def find_by_name(self, name):
        key = normalize_name(name)
        if not key:
            return []
        return self._newest_first(r for r in self.records.values() if normalize_name(r.name) == key)

    async def list_all(self):
        return [self.records[k] for k in sorted(self.records)]

    async def list_pinned(self):
        return [r for r in self.records.values() if r.is_pinned]

    async def list_recent(self):
        opened = [r for r in self.records.values() if r.last_opened_time is not None]
        return sorted(opened, key=lambda r: r.last_opened_time, reverse=True)

    async def list_unverified(self):
        return [
            r
            for r in await self.list_all()
            if r.verification.is_unverified
            or (not r.verification.is_verified and r.channel_identifier)
        ]

    async def count(self):
        return len(self.records)

    async def count_pinned(self):
        return len(await self.list_pinned())

    async def put(self, record):
        self.writes += 1
        self._store(record)

    async def put_many(self, records):
        for record in list(records):
            await self.put(record)

    async def replace(self, old_id, record):
        if old_id != record.id:
            self.records.pop(old_id, None)
        await self.put(record)

    async def delete(self, record_id):
        self._updated.pop(record_id, None)
        return self.records.pop(record_id, None) is not None

    async def delete_many(self, record_ids):
        return sum([await self.delete(record_id) for record_id in list(record_ids)])

    async def delete_expired(self, cutoff):
        expired = [
            r.id
            for r in self.records.values()
            if r.last_seen is not None and r.last_seen < cutoff and not r.is_pinned
        ]
        return await self.delete_many(expired)

    async def get_metadata(self, key):
        return self.metadata.get(key)

    async def set_metadata(self, key, value):
        self.metadata[key] = value

    async def delete_metadata(self, key):
        self.metadata.pop(key, None)

    async def increment_counter(self, key):
        self.metadata[key] = int(self.metadata.get(key) or 0) + 1
        return self.metadata[key]

    async def schema_version(self):
        return int(self.metadata.get(SCHEMA_VERSION_KEY) or 0)


class FakeRemoteAuthority:
    """Remote authority serving channels from a dict; unknown channels are 404s."""

    def __init__(self, channels=None, member_search=None):
        self.channels: dict[str, RemoteChannel] = {c.channel_identifier: c for c in channels or []}
        self.member_search: dict[str, list[RemoteChannel]] = member_search or {}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    async def get_channel(self, channel_identifier):
        self.calls.append(channel_identifier)
        if channel_identifier in self.failing:
            raise RemoteAuthorityError("Request failed: timeout")
        if channel_identifier not in self.channels:
            raise ChannelNotFoundError("get_channel: not found (404)", status_code=404)
        return self.channels[channel_identifier]

    async def search_channels_by_member(self, query):
        return self.member_search.get(query, [])

    async def close(self):
        return None


def make_record(
    record_id,
    name="",
    user_id=None,
    channel_identifier=None,
    verified=False,
    **fields,
):
    """Person when user_id is given, channel otherwise."""
    identity = RecordIdentity(
        id=record_id,
        name=name,
        user_id=user_id,
        channel_identifier=channel_identifier,
    )
    if verified:
        fields["verification"] = VerificationState(
            is_verified=True,
            verified_at=fields.pop("verified_at", NOW),
            verification_source="remote_authority",
        )
    return build_record(identity, **fields)


def direct_channel(channel_identifier, user_id, nickname, other_user_id=CURRENT_USER_ID):
    return RemoteChannel(
        channel_url=channel_identifier,
        name="",
        member_count=2,
        is_distinct=True,
        members=[
            RemoteMember(user_id=other_user_id, nickname="Me"),
            RemoteMember(user_id=user_id, nickname=nickname, profile_url=f"https://cdn/{user_id}.png"),
        ],
    )


def group_channel(channel_identifier, name, member_count=5):
    return RemoteChannel(
        channel_url=channel_identifier,
        name=name,
        member_count=member_count,
        is_distinct=False,
    )


def shared(channel_identifier, member_count=2, is_distinct=True, name=""):
    return SharedChannel(
        channel_identifier=channel_identifier,
        name=name,
        member_count=member_count,
        is_distinct=is_distinct,
    )
