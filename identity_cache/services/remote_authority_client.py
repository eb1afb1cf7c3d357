"""
HTTP client for the remote messaging backend that owns the authoritative
user/channel directory.

Two calls are used:
    GET /v3/group_channels/{channel}?show_member=true  -> channel lookup
    GET /api/chat/search/channels/members?query=...    -> members lookup by name
"""

import asyncio
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from identity_cache.config import settings
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.domain.remote_domain import RemoteChannel
from identity_cache.services.response_cache import CHANNEL_MEMBERS_CACHE, ResponseCache

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class RemoteAuthorityError(Exception):
    """Custom exception for remote authority failures."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ChannelNotFoundError(RemoteAuthorityError):
    """The remote authority has no channel with this identifier (HTTP 404)."""


class RemoteAuthorityClient:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float | None = None,
        cache: ResponseCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache = cache
        headers = {"Accept": "application/json"}
        if token:
            headers["Api-Token"] = token
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout or settings.REMOTE_AUTHORITY_TIMEOUT),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Remote authority retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise RemoteAuthorityError(f"Request failed: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Remote authority request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RemoteAuthorityError("Remote authority retry loop exhausted")

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        if response.status_code == 404:
            raise ChannelNotFoundError(f"{operation}: not found (404)", status_code=404)

        if not response.is_success:
            logger.warning(
                "Remote authority call failed",
                operation=operation,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise RemoteAuthorityError(
                f"{operation} failed (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        try:
            return response.json() if response.text else {}
        except ValueError as e:
            raise RemoteAuthorityError(f"{operation}: invalid response format: {e}") from e

    async def get_channel(self, channel_identifier: str) -> RemoteChannel:
        """
        Fetch authoritative channel data including members.

        Raises:
            ChannelNotFoundError: the channel does not exist
            RemoteAuthorityError: any other failure
        """
        response = await self._request_with_retry(
            "GET",
            f"/v3/group_channels/{quote(channel_identifier, safe='')}",
            params={"show_member": "true"},
        )
        data = self._handle_api_response(response, "get_channel")
        try:
            return RemoteChannel.model_validate(data)
        except ValidationError as e:
            raise RemoteAuthorityError(f"get_channel: unexpected payload: {e}") from e

    async def search_channels_by_member(self, query: str) -> list[RemoteChannel]:
        """Channels whose members match a display name; cached per query."""
        if self.cache is not None:
            cached = self.cache.get(CHANNEL_MEMBERS_CACHE, query)
            if cached is not None:
                return cached

        response = await self._request_with_retry(
            "GET", "/api/chat/search/channels/members", params={"query": query}
        )
        data = self._handle_api_response(response, "search_channels_by_member")
        channels = []
        for raw in data.get("channels") or []:
            try:
                channels.append(RemoteChannel.model_validate(raw))
            except ValidationError as e:
                logger.debug("Skipping malformed channel in members lookup", error=str(e))

        if self.cache is not None:
            self.cache.set(CHANNEL_MEMBERS_CACHE, query, channels)
        return channels


def create_remote_authority_client(cache: ResponseCache | None = None) -> RemoteAuthorityClient | None:
    """Client from settings, or None when no remote authority is configured."""
    if not settings.remote_authority_configured():
        logger.warning("Remote authority not configured, verification will be skipped")
        return None
    return RemoteAuthorityClient(
        settings.REMOTE_AUTHORITY_BASE_URL,
        token=settings.REMOTE_AUTHORITY_TOKEN,
        cache=cache,
    )
