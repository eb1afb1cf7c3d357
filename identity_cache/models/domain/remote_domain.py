from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class RemoteMember(BaseModel):
    """A channel member as reported by the remote authority."""

    model_config = ConfigDict(extra="ignore")

    user_id: str | None = None
    nickname: str | None = None
    profile_url: str | None = None


class RemoteChannel(BaseModel):
    """Authoritative channel data; the remote API calls the identifier channel_url."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    channel_identifier: str = Field(
        validation_alias=AliasChoices("channel_identifier", "channel_url")
    )
    name: str = ""
    member_count: int | None = None
    is_distinct: bool | None = None
    custom_type: str | None = None
    members: list[RemoteMember] = Field(default_factory=list)

    @property
    def is_direct(self) -> bool:
        return self.is_distinct is True and self.member_count == 2

    def member(self, user_id: str | None) -> RemoteMember | None:
        if not user_id:
            return None
        return next((m for m in self.members if m.user_id == user_id), None)

    def other_member(self, current_user_id: str | None) -> RemoteMember | None:
        """The counterpart in a direct channel."""
        return next(
            (m for m in self.members if m.user_id is not None and m.user_id != current_user_id),
            None,
        )
