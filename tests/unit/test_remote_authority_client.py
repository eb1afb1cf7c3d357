import httpx
import pytest

from identity_cache.config import settings
from identity_cache.services import remote_authority_client
from identity_cache.services.remote_authority_client import (
    ChannelNotFoundError,
    RemoteAuthorityClient,
    RemoteAuthorityError,
    create_remote_authority_client,
)
from identity_cache.services.response_cache import ResponseCache

CHANNEL_PAYLOAD = {
    "channel_url": "sendbird_group_channel_1",
    "name": "Design",
    "member_count": 3,
    "is_distinct": False,
    "custom_type": "",
    "members": [{"user_id": "u-1", "nickname": "Alice", "profile_url": "https://cdn/a.png"}],
}


def _client(handler, cache=None):
    return RemoteAuthorityClient(
        "https://remote.test/",
        token="secret-token",
        cache=cache,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(remote_authority_client, "BACKOFF_FACTOR", 0)


@pytest.mark.asyncio
async def test_get_channel_parses_members():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["show_member"] = request.url.params.get("show_member")
        seen["token"] = request.headers.get("Api-Token")
        return httpx.Response(200, json=CHANNEL_PAYLOAD)

    client = _client(handler)
    channel = await client.get_channel("sendbird_group_channel_1")
    await client.close()

    assert seen == {
        "path": "/v3/group_channels/sendbird_group_channel_1",
        "show_member": "true",
        "token": "secret-token",
    }
    assert channel.channel_identifier == "sendbird_group_channel_1"
    assert channel.is_distinct is False
    assert channel.member("u-1").nickname == "Alice"


@pytest.mark.asyncio
async def test_missing_channel_raises_not_found():
    client = _client(lambda request: httpx.Response(404, json={"message": "not found"}))

    with pytest.raises(ChannelNotFoundError) as exc_info:
        await client.get_channel("gone")
    await client.close()

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_server_errors_are_retried():
    attempts = {"count": 0}

    def handler(request):
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=CHANNEL_PAYLOAD)

    client = _client(handler)
    channel = await client.get_channel("sendbird_group_channel_1")
    await client.close()

    assert attempts["count"] == 3
    assert channel.name == "Design"


@pytest.mark.asyncio
async def test_persistent_failure_raises_remote_error():
    client = _client(lambda request: httpx.Response(500))

    with pytest.raises(RemoteAuthorityError) as exc_info:
        await client.get_channel("sendbird_group_channel_1")
    await client.close()

    assert not isinstance(exc_info.value, ChannelNotFoundError)
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_transport_errors_become_remote_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(RemoteAuthorityError):
        await client.get_channel("sendbird_group_channel_1")
    await client.close()


@pytest.mark.asyncio
async def test_members_lookup_is_cached():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        assert request.url.params.get("query") == "Alice"
        return httpx.Response(200, json={"channels": [CHANNEL_PAYLOAD, {"name": "no identifier"}]})

    client = _client(handler, cache=ResponseCache())
    first = await client.search_channels_by_member("Alice")
    second = await client.search_channels_by_member("Alice")
    await client.close()

    assert calls["count"] == 1
    assert [c.channel_identifier for c in first] == ["sendbird_group_channel_1"]
    assert second == first


def test_no_client_without_configuration(monkeypatch):
    monkeypatch.setattr(settings, "REMOTE_AUTHORITY_BASE_URL", None)

    assert create_remote_authority_client() is None
