"""Discord REST client used to deliver notifications."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Sequence

import aiohttp

from .errors import ApiError, Err, ErrorKind, Ok, Result, error_from_status, io_error
from .models import ChannelInfo, MessageRef
from .utils import RateLimiter

_API_BASE = "https://discord.com/api/v10"
_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_ROLE_CACHE_TTL = 3600.0


logger = logging.getLogger(__name__)


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str | None = None,
        *,
        rate_per_second: float = 20.0,
    ):
        self._session = session
        self._token: str | None = None
        self._rate = RateLimiter(rate_per_second)
        self._role_cache: dict[str, tuple[float, set[str]]] = {}
        self.set_token(token)

    def set_token(self, token: str | None) -> None:
        value = token.strip() if token else ""
        if value and not value.lower().startswith("bot "):
            value = f"Bot {value}"
        self._token = value or None

    async def get_channel(self, channel_id: str) -> Result[ChannelInfo]:
        result = await self._request("GET", f"/channels/{channel_id}")
        if isinstance(result, Err):
            return result
        data = result.value
        if not isinstance(data, Mapping):
            return io_error("unexpected channel payload")
        return Ok(_parse_channel(data, channel_id))

    async def send_message(
        self,
        channel_id: str,
        content: str | None = None,
        *,
        embeds: Sequence[Mapping[str, Any]] = (),
    ) -> Result[MessageRef]:
        payload: dict[str, Any] = {
            "allowed_mentions": {"parse": ["roles", "users", "everyone"]},
        }
        if content:
            payload["content"] = content
        if embeds:
            payload["embeds"] = list(embeds)
        result = await self._request("POST", f"/channels/{channel_id}/messages", json=payload)
        if isinstance(result, Err):
            return result
        data = result.value
        message_id = str(data.get("id") or "") if isinstance(data, Mapping) else ""
        if not message_id:
            return io_error("message id missing in response")
        return Ok(MessageRef(channel_id=channel_id, message_id=message_id))

    async def edit_message(
        self,
        message: MessageRef,
        content: str | None = None,
        *,
        embeds: Sequence[Mapping[str, Any]] | None = None,
    ) -> Result[None]:
        payload: dict[str, Any] = {}
        if content is not None:
            payload["content"] = content
        if embeds is not None:
            payload["embeds"] = list(embeds)
        result = await self._request(
            "PATCH",
            f"/channels/{message.channel_id}/messages/{message.message_id}",
            json=payload,
        )
        if isinstance(result, Err):
            return result
        return Ok(None)

    async def delete_message(self, message: MessageRef) -> Result[None]:
        result = await self._request(
            "DELETE", f"/channels/{message.channel_id}/messages/{message.message_id}"
        )
        if isinstance(result, Err):
            return result
        return Ok(None)

    async def pin_message(self, message: MessageRef) -> Result[None]:
        result = await self._request(
            "PUT", f"/channels/{message.channel_id}/pins/{message.message_id}"
        )
        if isinstance(result, Err):
            return result
        return Ok(None)

    async def unpin_message(self, message: MessageRef) -> Result[None]:
        result = await self._request(
            "DELETE", f"/channels/{message.channel_id}/pins/{message.message_id}"
        )
        if isinstance(result, Err):
            return result
        return Ok(None)

    async def crosspost_message(self, message: MessageRef) -> Result[None]:
        result = await self._request(
            "POST",
            f"/channels/{message.channel_id}/messages/{message.message_id}/crosspost",
        )
        if isinstance(result, Err):
            return result
        return Ok(None)

    async def get_role(self, guild_id: str, role_id: str) -> Result[str]:
        """Confirm that ``role_id`` still exists in the guild."""

        cached = self._role_cache.get(guild_id)
        now = time.monotonic()
        if cached is not None and cached[0] > now and role_id in cached[1]:
            return Ok(role_id)

        result = await self._request("GET", f"/guilds/{guild_id}/roles")
        if isinstance(result, Err):
            return result
        roles: set[str] = set()
        if isinstance(result.value, Sequence):
            for item in result.value:
                if isinstance(item, Mapping) and item.get("id"):
                    roles.add(str(item["id"]))
        self._role_cache[guild_id] = (time.monotonic() + _ROLE_CACHE_TTL, roles)
        if role_id in roles:
            return Ok(role_id)
        return Err(ApiError(kind=ErrorKind.NOT_FOUND, status=404, message="role not found"))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
    ) -> Result[Any]:
        if not self._token:
            return Err(ApiError(kind=ErrorKind.UNAUTHORIZED, message="token not set"))

        headers = {
            "Authorization": self._token,
            "User-Agent": _DEFAULT_USER_AGENT,
            "Accept": "application/json",
        }
        url = f"{_API_BASE}{path}"

        await self._rate.wait()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.request(
                method,
                url,
                headers=headers,
                json=json,
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                if status == 204:
                    return Ok(None)
                if status >= 400:
                    reset_after = 0.0
                    if status == 429:
                        reset_after = _retry_after(resp.headers, await _safe_json(resp))
                    else:
                        await resp.read()
                    log = logger.info if status in {403, 404} else logger.warning
                    log("Discord ответил статусом %s на %s %s", status, method, path)
                    return Err(error_from_status(status, reset_after=reset_after))
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Не удалось выполнить запрос Discord %s %s: %s", method, path, exc)
            return io_error(str(exc) or exc.__class__.__name__)
        return Ok(data)


async def _safe_json(resp: aiohttp.ClientResponse) -> Any:
    try:
        return await resp.json(content_type=None)
    except (aiohttp.ClientError, ValueError):
        return None


def _retry_after(headers: Mapping[str, str], payload: Any) -> float:
    if isinstance(payload, Mapping) and payload.get("retry_after") is not None:
        try:
            return max(0.0, float(payload["retry_after"]))
        except (TypeError, ValueError):
            pass
    try:
        return max(0.0, float(headers.get("Retry-After", "0")))
    except ValueError:
        return 0.0


def _parse_channel(data: Mapping[str, Any], channel_id: str) -> ChannelInfo:
    channel_type_raw = data.get("type")
    try:
        channel_type = int(str(channel_type_raw))
    except (TypeError, ValueError):
        channel_type = 0

    return ChannelInfo(
        id=str(data.get("id") or channel_id),
        type=channel_type,
        guild_id=str(data.get("guild_id")) if data.get("guild_id") else None,
        name=str(data.get("name") or "") if data.get("name") else None,
        nsfw=bool(data.get("nsfw")),
    )
