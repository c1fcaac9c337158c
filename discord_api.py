"""Discord REST client: guild directory, roles and channel messages (httpx)."""

import asyncio
import logging
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from config import (
    APPLICATION_LOG_CHANNEL_ID,
    DIRECTORY_PAGE_SIZE,
    DISCORD_API_BASE_URL,
    DISCORD_BOT_TOKEN,
    DISCORD_GUILD_ID,
    require_env_value,
)

logger = logging.getLogger(__name__)


class DiscordAPIError(Exception):
    """Custom exception for Discord API errors."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Discord API Error {status_code}: {message}")


class DiscordAPI:
    """Async client for the Discord bot API, scoped to one guild."""

    def __init__(self, guild_id: str | None = None):
        self._client: httpx.AsyncClient | None = None
        self._guild_id = guild_id

    @property
    def guild_id(self) -> str:
        return require_env_value("DISCORD_GUILD_ID", self._guild_id or DISCORD_GUILD_ID)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            token = require_env_value("DISCORD_BOT_TOKEN", DISCORD_BOT_TOKEN)
            self._client = httpx.AsyncClient(
                base_url=DISCORD_API_BASE_URL,
                headers={
                    "Authorization": f"Bot {token}",
                    "Accept": "application/json",
                },
                timeout=30.0,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """Make an API request and return the decoded JSON body (or None)."""
        client = await self._get_client()
        retry_statuses = {429, 502, 503, 504}
        max_attempts = 3

        for attempt in range(1, max_attempts + 1):
            try:
                response = await client.request(method, endpoint, json=payload)
            except httpx.RequestError as e:
                if attempt < max_attempts:
                    delay = 0.5 * (2 ** (attempt - 1))
                    logger.warning(
                        "HTTP request error (attempt %s/%s): %s",
                        attempt,
                        max_attempts,
                        e,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error("HTTP request error: %s", e)
                raise DiscordAPIError(0, f"Network error: {str(e)}")

            if 200 <= response.status_code < 300:
                if response.status_code == 204 or not response.content:
                    return None
                return response.json()
            if response.status_code == 404:
                raise DiscordAPIError(404, "Resource not found")
            if response.status_code == 403:
                raise DiscordAPIError(403, "Access denied - check bot permissions")
            if response.status_code == 401:
                raise DiscordAPIError(401, "Unauthorized - check bot token")
            if response.status_code in retry_statuses:
                if attempt < max_attempts:
                    delay = 0.5 * (2 ** (attempt - 1))
                    if response.status_code == 429:
                        retry_after = response.headers.get("Retry-After")
                        if retry_after:
                            try:
                                delay = min(max(float(retry_after), 0.0), 5.0)
                            except ValueError:
                                pass
                    logger.warning(
                        "Discord API retry (status %s) attempt %s/%s; sleeping %.1fs",
                        response.status_code,
                        attempt,
                        max_attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                if response.status_code == 429:
                    raise DiscordAPIError(429, "Rate limit exceeded")
                raise DiscordAPIError(
                    response.status_code,
                    f"API request failed: {response.text}",
                )
            raise DiscordAPIError(
                response.status_code,
                f"API request failed: {response.text}",
            )

    async def list_members_page(
        self, after: str = "0", limit: int = DIRECTORY_PAGE_SIZE
    ) -> list[dict[str, Any]]:
        """Fetch one page of guild members after the given user id."""
        query = urlencode({"limit": limit, "after": after})
        data = await self._request("GET", f"/guilds/{self.guild_id}/members?{query}")
        return data if isinstance(data, list) else []

    async def list_all_members(self) -> list[dict[str, Any]]:
        """
        Fetch every guild member, page by page.

        The cursor is the last user id seen. Paging stops on a short or empty
        page. An error on any page stops paging and the members collected so
        far are returned.
        """
        members: list[dict[str, Any]] = []
        after = "0"
        limit = DIRECTORY_PAGE_SIZE
        while True:
            try:
                page = await self.list_members_page(after=after, limit=limit)
            except DiscordAPIError as e:
                logger.warning(
                    "Guild member paging aborted after %s member(s): %s",
                    len(members),
                    e,
                )
                break
            if not page:
                break
            members.extend(page)
            if len(page) < limit:
                break
            after = str(page[-1].get("user", {}).get("id", ""))
            if not after:
                break
        return members

    async def get_member(self, user_id: str) -> dict[str, Any] | None:
        """Get a single guild member, or None if the user is not in the guild."""
        try:
            return await self._request(
                "GET", f"/guilds/{self.guild_id}/members/{quote(str(user_id))}"
            )
        except DiscordAPIError as e:
            if e.status_code == 404:
                return None
            raise

    async def assign_role(self, user_id: str, role_id: str) -> bool:
        try:
            await self._request(
                "PUT", f"/guilds/{self.guild_id}/members/{user_id}/roles/{role_id}"
            )
        except DiscordAPIError as e:
            logger.warning("Failed to assign role %s to %s: %s", role_id, user_id, e)
            return False
        return True

    async def remove_role(self, user_id: str, role_id: str) -> bool:
        try:
            await self._request(
                "DELETE", f"/guilds/{self.guild_id}/members/{user_id}/roles/{role_id}"
            )
        except DiscordAPIError as e:
            logger.warning("Failed to remove role %s from %s: %s", role_id, user_id, e)
            return False
        return True

    async def post_message(self, channel_id: str, content: str) -> bool:
        try:
            await self._request(
                "POST", f"/channels/{channel_id}/messages", {"content": content}
            )
        except DiscordAPIError as e:
            logger.error("postChannelMessage failed for %s: %s", channel_id, e)
            return False
        return True

    async def post_app_log(
        self, thread_id: str | None, application_id: str, content: str
    ) -> bool:
        """
        Post to an application's log thread.

        Falls back to the application log channel, prefixed with the
        application id, when the thread is missing or the post fails.
        """
        if thread_id and await self.post_message(thread_id, content):
            return True
        if not APPLICATION_LOG_CHANNEL_ID:
            logger.warning(
                "No log thread or fallback channel for application %s", application_id
            )
            return False
        return await self.post_message(
            APPLICATION_LOG_CHANNEL_ID, f"[Application {application_id}]\n{content}"
        )


# Global API client instance
_api_client: DiscordAPI | None = None


async def get_api_client() -> DiscordAPI:
    """Get or create the global API client instance."""
    global _api_client
    if _api_client is None:
        _api_client = DiscordAPI()
    return _api_client


async def close_api_client() -> None:
    """Close the global API client."""
    global _api_client
    if _api_client is not None:
        await _api_client.close()
        _api_client = None
