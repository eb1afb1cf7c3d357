"""
Domain models for directory records.

A record is either a PersonRecord (a user reachable through a direct,
two-party channel) or a ChannelRecord (a multi-party conversation). Both
share the identity/interaction core defined on RecordBase.

Identity fields live in a frozen RecordIdentity. Once a record is verified,
with_identity() refuses to change them; the only way to re-identify a
verified record is verified(), which is called with data the remote
authority just returned.
"""

import re
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

REMOTE_ID_PREFIX = "sendbird_"
GROUP_CHANNEL_PREFIX = "sendbird_group_channel_"
PLACEHOLDER_ID_PREFIX = "name_"
SELF_CHANNEL_CUSTOM_TYPE = "self_channel"

RECENT_HISTORY_LIMIT = 10

_WHITESPACE = re.compile(r"\s+")


class FrozenIdentityError(Exception):
    """Raised when a routine write tries to change a verified record's identity."""

    def __init__(self, record_id: str, fields: list[str]):
        super().__init__(f"Identity of verified record {record_id} is frozen: {', '.join(fields)}")
        self.record_id = record_id
        self.fields = fields


class RecordIdentity(BaseModel):
    """The four fields that identify a record and freeze on verification."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    user_id: str | None = None
    channel_identifier: str | None = None


class VerificationState(BaseModel):
    is_verified: bool = False
    verified_at: datetime | None = None
    verification_source: str | None = None
    is_unverified: bool = False
    unverification_reason: str | None = None
    last_verification_attempt: datetime | None = None
    verification_retry_count: int = 0


class InteractionMetrics(BaseModel):
    """Rolling interaction frequency; see services.interaction_metrics for the decay rules."""

    count_last_7_days: int = 0
    count_last_30_days: int = 0
    last_interaction_time: datetime | None = None
    average_days_between: float | None = None
    recent_history: list[datetime] = Field(default_factory=list)
    last_updated: datetime | None = None


class SharedChannel(BaseModel):
    """Summary of a channel shared with a person, as delivered by search results."""

    model_config = ConfigDict(extra="ignore")

    channel_identifier: str
    name: str = ""
    member_count: int | None = None
    is_distinct: bool | None = None

    @property
    def is_direct(self) -> bool:
        return self.is_distinct is True and self.member_count == 2


class RecordBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    identity: RecordIdentity
    original_id: str | None = None

    # Channel metadata
    member_count: int | None = None
    is_distinct: bool | None = None
    custom_type: str | None = None

    # Signed, expiring reference; never frozen
    avatar: str | None = None

    shared_channels: list[SharedChannel] = Field(default_factory=list)

    # Interaction
    last_opened_time: datetime | None = None
    last_seen: datetime | None = None
    last_updated: datetime | None = None
    is_recent: bool = False
    interaction_count: int = 0
    interaction_metrics: InteractionMetrics | None = None

    # Organization
    is_pinned: bool = False
    pinned_at: datetime | None = None
    pinned_order: int | None = None

    search_keywords: list[str] = Field(default_factory=list)
    verification: VerificationState = Field(default_factory=VerificationState)

    # One-to-one consolidation trace
    consolidated_from: list[str] = Field(default_factory=list)
    consolidated_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def user_id(self) -> str | None:
        return self.identity.user_id

    @property
    def channel_identifier(self) -> str | None:
        return self.identity.channel_identifier

    @property
    def is_frozen(self) -> bool:
        return self.verification.is_verified

    @property
    def has_placeholder_id(self) -> bool:
        return is_placeholder_id(self.id)

    def with_identity(self, **changes: Any):
        """
        Return a copy with identity fields replaced.

        Raises:
            FrozenIdentityError: the record is verified and a field would change
        """
        current = self.identity.model_dump()
        changed = [key for key, value in changes.items() if current.get(key) != value]
        if not changed:
            return self
        if self.is_frozen:
            raise FrozenIdentityError(self.id, changed)
        return self.model_copy(update={"identity": self.identity.model_copy(update=changes)})

    def rekeyed(self):
        """Copy keyed by the channel identifier, keeping the old key as original_id."""
        if not self.channel_identifier:
            raise ValueError(f"Record {self.id} has no channel identifier to key on")
        if self.id == self.channel_identifier:
            return self
        identity = self.identity.model_copy(update={"id": self.channel_identifier})
        return self.model_copy(
            update={"identity": identity, "original_id": self.original_id or self.id}
        )

    def verified(
        self,
        at: datetime,
        source: str,
        identity: RecordIdentity | None = None,
        **fields: Any,
    ):
        """
        Mark the record verified, optionally replacing its identity with
        authoritative values. Extra keyword fields update non-identity data.
        """
        verification = self.verification.model_copy(
            update={
                "is_verified": True,
                "verified_at": at,
                "verification_source": source,
                "is_unverified": False,
                "unverification_reason": None,
                "last_verification_attempt": at,
                "verification_retry_count": 0,
            }
        )
        update = {"verification": verification, **fields}
        if identity is not None:
            update["identity"] = identity
        return self.model_copy(update=update)

    def unverified(self, at: datetime, reason: str, increment_retry: bool = False):
        """Flag the record as degraded-trust; identity stays as-is."""
        retries = self.verification.verification_retry_count
        verification = self.verification.model_copy(
            update={
                "is_unverified": True,
                "unverification_reason": reason,
                "last_verification_attempt": at,
                "verification_retry_count": retries + 1 if increment_retry else retries,
            }
        )
        return self.model_copy(update={"verification": verification})


class PersonRecord(RecordBase):
    type: Literal["user"] = "user"

    email: str | None = None
    job_title: str | None = None
    department_name: str | None = None
    location_name: str | None = None
    bio: str | None = None
    has_direct_chat: bool = False
    has_shared_connection: bool = False


class ChannelRecord(RecordBase):
    type: Literal["channel"] = "channel"

    is_no_name_group: bool = False


Record = Annotated[PersonRecord | ChannelRecord, Field(discriminator="type")]
RECORD_ADAPTER: TypeAdapter[PersonRecord | ChannelRecord] = TypeAdapter(Record)


class IncomingEntry(BaseModel):
    """
    Raw directory entry pushed by a collaborator, either as a search result
    or as a chat-opened event. Nothing here is trusted yet.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    type: Literal["user", "channel"] | None = None
    user_id: str | None = None
    channel_identifier: str | None = None
    original_id: str | None = None
    member_count: int | None = None
    is_distinct: bool | None = None
    custom_type: str | None = None
    avatar: str | None = None
    email: str | None = None
    job_title: str | None = None
    department_name: str | None = None
    location_name: str | None = None
    bio: str | None = None
    has_direct_chat: bool | None = None
    has_shared_connection: bool | None = None
    shared_channels: list[SharedChannel] = Field(default_factory=list)
    search_keywords: list[str] = Field(default_factory=list)


# =================================================================
# Helpers
# =================================================================


def normalize_name(name: str | None) -> str:
    """Case- and whitespace-insensitive key used by the name index."""
    if not name:
        return ""
    return _WHITESPACE.sub(" ", name.strip()).lower()


def placeholder_id_for(name: str) -> str:
    return f"{PLACEHOLDER_ID_PREFIX}{_WHITESPACE.sub('', name)}"


def is_placeholder_id(record_id: str | None) -> bool:
    return bool(record_id) and record_id.startswith(PLACEHOLDER_ID_PREFIX)


def is_remote_id(record_id: str | None) -> bool:
    return bool(record_id) and record_id.startswith(REMOTE_ID_PREFIX)


def is_group_channel_id(record_id: str | None) -> bool:
    return bool(record_id) and record_id.startswith(GROUP_CHANNEL_PREFIX)


def valid_user_id(*candidates: str | None) -> str | None:
    """First candidate that is a real user id (remote channel ids are not)."""
    for candidate in candidates:
        if candidate and not is_remote_id(candidate):
            return candidate
    return None


def is_self_channel(record: RecordBase) -> bool:
    return (
        record.custom_type == SELF_CHANNEL_CUSTOM_TYPE
        and record.is_distinct is True
        and record.member_count == 1
    )


def direct_channel_entry(shared_channels: list[SharedChannel]) -> SharedChannel | None:
    """The two-party entry among shared channels; distinct with unknown size as fallback."""
    for channel in shared_channels:
        if channel.is_direct:
            return channel
    for channel in shared_channels:
        if channel.is_distinct is True and channel.member_count is None:
            return channel
    return None


def looks_like_no_name_group(record_id: str, name: str, is_distinct: bool | None) -> bool:
    """
    Best-effort detection of an unnamed multi-party channel.

    The client synthesizes such names by joining member names with commas,
    sometimes with a trailing dash, under a placeholder id.
    """
    if is_distinct is True:
        return False
    stripped = (name or "").strip()
    if not stripped:
        return True
    return "," in stripped and is_placeholder_id(record_id)


def find_corruption(item: IncomingEntry | RecordBase, channel_identifier: str | None) -> str | None:
    """Reason the identity fields contradict each other, or None when consistent."""
    if is_group_channel_id(item.id) and channel_identifier != item.id:
        return "group channel identifier differs from id"

    if (item.type == "user" or item.user_id) and channel_identifier and item.shared_channels:
        direct = direct_channel_entry(item.shared_channels)
        if direct is not None and direct.channel_identifier != channel_identifier:
            return "channel identifier differs from direct shared channel"

    if is_placeholder_id(item.id) and item.name:
        if placeholder_id_for(item.name).lower() != item.id.lower():
            return "name does not match placeholder id"

    return None


def build_record(identity: RecordIdentity, **fields: Any) -> PersonRecord | ChannelRecord:
    """Create the variant implied by the identity: a resolved user id makes a person."""
    fields.pop("type", None)
    if identity.user_id:
        return PersonRecord(identity=identity, **fields)
    return ChannelRecord(identity=identity, **fields)


def retyped(record: RecordBase) -> PersonRecord | ChannelRecord:
    """Re-derive the variant after an identity change; variant-only fields may be dropped."""
    data = record.model_dump(exclude={"type", "identity"})
    return build_record(record.identity, **data)


def record_from_payload(payload: dict[str, Any]) -> PersonRecord | ChannelRecord:
    return RECORD_ADAPTER.validate_python(payload)


def record_to_payload(record: RecordBase) -> dict[str, Any]:
    return record.model_dump(mode="json")
