"""Twitch Helix API client."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Iterable, Mapping, Sequence

import aiohttp

from .errors import ApiError, Err, ErrorKind, Ok, Result, error_from_status, io_error
from .models import StreamInfo, StreamUser
from .utils import RateLimiter, parse_timestamp, utcnow

_API_BASE = "https://api.twitch.tv/helix"
_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
_BATCH_SIZE = 100
_TOKEN_MARGIN = 300.0

logger = logging.getLogger(__name__)


class TwitchClient:
    """Rate limited access to the Twitch Helix endpoints used by the tracker."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        client_id: str,
        client_secret: str,
        *,
        call_delay: float = 0.4,
    ):
        self._session = session
        self._client_id = client_id
        self._client_secret = client_secret
        self._rate = RateLimiter.with_delay(call_delay)
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()
        self._games: dict[str, str | None] = {}

    async def fetch_streams(self, user_ids: Iterable[str]) -> dict[str, Result[StreamInfo | None]]:
        """Bulk lookup of live streams.

        Every requested id is present in the result: ``Ok(StreamInfo)`` when
        live, ``Ok(None)`` when offline, ``Err`` when its batch failed.
        """

        ids = sorted({str(user_id) for user_id in user_ids if str(user_id)})
        results: dict[str, Result[StreamInfo | None]] = {}
        for offset in range(0, len(ids), _BATCH_SIZE):
            chunk = ids[offset : offset + _BATCH_SIZE]
            params = [("user_id", user_id) for user_id in chunk]
            params.append(("first", str(_BATCH_SIZE)))
            response = await self._get("/streams", params)
            if isinstance(response, Err):
                for user_id in chunk:
                    results[user_id] = response
                if response.kind is ErrorKind.RATE_LIMITED:
                    # the limit is per client, later chunks would fail too
                    for user_id in ids[offset + _BATCH_SIZE :]:
                        results[user_id] = response
                    break
                continue
            live = {stream.user_id: stream for stream in parse_streams(response.value)}
            for user_id in chunk:
                results[user_id] = Ok(live.get(user_id))
        return results

    async def fetch_user(self, user_id: str) -> Result[StreamUser]:
        response = await self._get("/users", [("id", user_id)])
        return _single_user(response)

    async def lookup_user(self, login: str) -> Result[StreamUser]:
        response = await self._get("/users", [("login", login.strip().lower())])
        return _single_user(response)

    async def fetch_game_art(self, game_id: str) -> str | None:
        if not game_id:
            return None
        if game_id in self._games:
            return self._games[game_id]
        response = await self._get("/games", [("id", game_id)])
        art: str | None = None
        if isinstance(response, Ok):
            for entry in _data(response.value):
                raw = str(entry.get("box_art_url") or "")
                if raw:
                    art = raw.replace("{width}", "144").replace("{height}", "192")
                    break
            self._games[game_id] = art
        return art

    async def _ensure_token(self) -> Result[str]:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return Ok(self._token)
            data = {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "client_credentials",
            }
            try:
                timeout_cfg = aiohttp.ClientTimeout(total=15)
                async with self._session.post(
                    _TOKEN_URL, data=data, timeout=timeout_cfg
                ) as resp:
                    if resp.status != 200:
                        await resp.read()
                        logger.error("Не удалось получить токен Twitch: статус %s", resp.status)
                        status = resp.status if resp.status != 400 else 401
                        return Err(error_from_status(status))
                    payload = await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("Ошибка при получении токена Twitch: %s", exc)
                return io_error(str(exc) or exc.__class__.__name__)
            token = str(payload.get("access_token") or "")
            if not token:
                return io_error("access_token missing")
            expires_in = float(payload.get("expires_in") or 3600)
            self._token = token
            self._token_expires_at = time.monotonic() + max(60.0, expires_in - _TOKEN_MARGIN)
            return Ok(token)

    async def _get(self, path: str, params: Sequence[tuple[str, str]]) -> Result[Any]:
        token = await self._ensure_token()
        if isinstance(token, Err):
            return token

        headers = {
            "Client-ID": self._client_id,
            "Authorization": f"Bearer {token.value}",
            "Accept": "application/json",
        }
        await self._rate.wait()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.get(
                f"{_API_BASE}{path}",
                headers=headers,
                params=list(params),
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                if status >= 400:
                    await resp.read()
                    if status == 401:
                        self._token = None
                    reset_after = _reset_after(resp.headers.get("Ratelimit-Reset"))
                    logger.warning("Twitch ответил статусом %s на запрос %s", status, path)
                    return Err(error_from_status(status, reset_after=reset_after))
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Не удалось выполнить запрос Twitch %s: %s", path, exc)
            return io_error(str(exc) or exc.__class__.__name__)
        return Ok(payload)


def parse_streams(payload: Any) -> list[StreamInfo]:
    streams: list[StreamInfo] = []
    for entry in _data(payload):
        user_id = str(entry.get("user_id") or "")
        if not user_id:
            continue
        if entry.get("type") not in (None, "", "live"):
            continue
        try:
            viewers = int(entry.get("viewer_count") or 0)
        except (TypeError, ValueError):
            viewers = 0
        thumbnail = str(entry.get("thumbnail_url") or "")
        streams.append(
            StreamInfo(
                id=str(entry.get("id") or ""),
                user_id=user_id,
                user_login=str(entry.get("user_login") or ""),
                title=str(entry.get("title") or ""),
                game_id=str(entry.get("game_id") or ""),
                game_name=str(entry.get("game_name") or ""),
                viewers=viewers,
                started_at=parse_timestamp(entry.get("started_at")) or utcnow(),
                thumbnail_url=thumbnail or None,
            )
        )
    return streams


def parse_user(entry: Mapping[str, Any]) -> StreamUser:
    login = str(entry.get("login") or "")
    return StreamUser(
        id=str(entry.get("id") or ""),
        login=login,
        display_name=str(entry.get("display_name") or login),
        profile_image=str(entry.get("profile_image_url") or "") or None,
    )


def _single_user(response: Result[Any]) -> Result[StreamUser]:
    if isinstance(response, Err):
        return response
    for entry in _data(response.value):
        if entry.get("id"):
            return Ok(parse_user(entry))
    return Err(ApiError(kind=ErrorKind.NOT_FOUND, message="user not found"))


def _data(payload: Any) -> list[Mapping[str, Any]]:
    if not isinstance(payload, Mapping):
        return []
    entries = payload.get("data") or []
    return [entry for entry in entries if isinstance(entry, Mapping)]


def _reset_after(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return max(0.0, float(value) - time.time())
    except ValueError:
        return 0.0
