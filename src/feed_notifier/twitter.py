"""Twitter API v2 client for timeline polling."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping

import aiohttp

from .errors import ApiError, Err, ErrorKind, Ok, Result, error_from_status, io_error
from .models import PostMedia, SocialPost, SocialUser
from .utils import RateLimiter, parse_timestamp, utcnow

_API_BASE = "https://api.twitter.com/2"
_NOT_FOUND_PROBLEM = "https://api.twitter.com/2/problems/resource-not-found"
_USER_FIELDS = "name,username,profile_image_url"
_TWEET_FIELDS = "created_at,possibly_sensitive,referenced_tweets,attachments,author_id"
_EXPANSIONS = (
    "author_id,attachments.media_keys,referenced_tweets.id,referenced_tweets.id.author_id"
)
_REFERENCE_KINDS = {"retweeted": "retweet", "replied_to": "reply", "quoted": "quote"}

logger = logging.getLogger(__name__)


class TwitterClient:
    """Rate limited wrapper around the Twitter v2 timeline endpoints."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        bearer_token: str,
        *,
        call_delay: float = 1.1,
        max_results: int = 10,
    ):
        self._session = session
        self._bearer = bearer_token
        self._rate = RateLimiter.with_delay(call_delay)
        self._max_results = max(5, min(100, max_results))

    async def fetch_recent_posts(
        self,
        user_id: str,
        *,
        since_id: str | None = None,
        include_retweets: bool = False,
        include_replies: bool = False,
        include_quotes: bool = True,
    ) -> Result[tuple[SocialUser | None, list[SocialPost]]]:
        params: dict[str, str] = {
            "max_results": str(self._max_results),
            "tweet.fields": _TWEET_FIELDS,
            "user.fields": _USER_FIELDS,
            "media.fields": "type,url,preview_image_url",
            "expansions": _EXPANSIONS,
        }
        if since_id:
            params["since_id"] = since_id
        excluded = []
        if not include_retweets:
            excluded.append("retweets")
        if not include_replies:
            excluded.append("replies")
        if excluded:
            params["exclude"] = ",".join(excluded)

        response = await self._get(f"/users/{user_id}/tweets", params)
        if isinstance(response, Err):
            if response.kind is ErrorKind.IO and response.error.status == 400 and since_id:
                message = (response.error.message or "").lower()
                if "since_id" in message:
                    return Err(
                        ApiError(
                            kind=ErrorKind.INVALID_CURSOR,
                            status=400,
                            message=response.error.message,
                        )
                    )
            return response

        payload = response.value
        if _is_not_found(payload):
            return Err(ApiError(kind=ErrorKind.NOT_FOUND, message="user not found"))
        user, posts = parse_timeline(payload, user_id)
        if not include_quotes:
            posts = [post for post in posts if post.kind != "quote"]
        return Ok((user, posts))

    async def fetch_user(self, user_id: str) -> Result[SocialUser]:
        response = await self._get(f"/users/{user_id}", {"user.fields": _USER_FIELDS})
        return _single_user(response)

    async def lookup_user(self, username: str) -> Result[SocialUser]:
        name = username.strip().lstrip("@")
        response = await self._get(f"/users/by/username/{name}", {"user.fields": _USER_FIELDS})
        return _single_user(response)

    async def _get(self, path: str, params: Mapping[str, str]) -> Result[Any]:
        headers = {
            "Authorization": f"Bearer {self._bearer}",
            "Accept": "application/json",
        }
        await self._rate.wait()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.get(
                f"{_API_BASE}{path}",
                headers=headers,
                params=dict(params),
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                if status >= 400:
                    body = await resp.text()
                    reset_after = _reset_after(resp.headers.get("x-rate-limit-reset"))
                    logger.warning("Twitter ответил статусом %s на запрос %s", status, path)
                    return Err(error_from_status(status, reset_after=reset_after, message=body[:300]))
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Не удалось выполнить запрос Twitter %s: %s", path, exc)
            return io_error(str(exc) or exc.__class__.__name__)
        return Ok(payload)


def parse_timeline(payload: Any, user_id: str) -> tuple[SocialUser | None, list[SocialPost]]:
    if not isinstance(payload, Mapping):
        return None, []
    includes = payload.get("includes") or {}
    users = {
        str(entry.get("id")): _parse_user(entry)
        for entry in includes.get("users") or []
        if isinstance(entry, Mapping) and entry.get("id")
    }
    media = {
        str(entry.get("media_key")): PostMedia(
            type=str(entry.get("type") or "photo"),
            url=str(entry.get("url") or entry.get("preview_image_url") or "") or None,
        )
        for entry in includes.get("media") or []
        if isinstance(entry, Mapping) and entry.get("media_key")
    }
    referenced = {
        str(entry.get("id")): entry
        for entry in includes.get("tweets") or []
        if isinstance(entry, Mapping) and entry.get("id")
    }

    posts: list[SocialPost] = []
    for entry in payload.get("data") or []:
        if not isinstance(entry, Mapping) or not entry.get("id"):
            continue
        kind = "post"
        reference_author: SocialUser | None = None
        for reference in entry.get("referenced_tweets") or []:
            if not isinstance(reference, Mapping):
                continue
            reference_kind = _REFERENCE_KINDS.get(str(reference.get("type") or ""))
            if reference_kind is None:
                continue
            kind = reference_kind
            original = referenced.get(str(reference.get("id") or ""))
            if original is not None:
                reference_author = users.get(str(original.get("author_id") or ""))
            break
        attachments = entry.get("attachments")
        media_keys: list[str] = []
        if isinstance(attachments, Mapping):
            media_keys = [str(key) for key in attachments.get("media_keys") or []]
        posts.append(
            SocialPost(
                id=str(entry["id"]),
                author_id=str(entry.get("author_id") or user_id),
                text=str(entry.get("text") or ""),
                created_at=parse_timestamp(entry.get("created_at")) or utcnow(),
                kind=kind,
                sensitive=bool(entry.get("possibly_sensitive")),
                media=tuple(media[key] for key in media_keys if key in media),
                reference_author=reference_author,
            )
        )
    return users.get(str(user_id)), posts


def _parse_user(entry: Mapping[str, Any]) -> SocialUser:
    username = str(entry.get("username") or "")
    return SocialUser(
        id=str(entry.get("id") or ""),
        username=username,
        name=str(entry.get("name") or username),
        profile_image=str(entry.get("profile_image_url") or "") or None,
    )


def _single_user(response: Result[Any]) -> Result[SocialUser]:
    if isinstance(response, Err):
        return response
    payload = response.value
    data = payload.get("data") if isinstance(payload, Mapping) else None
    if isinstance(data, Mapping) and data.get("id"):
        return Ok(_parse_user(data))
    return Err(ApiError(kind=ErrorKind.NOT_FOUND, message="user not found"))


def _is_not_found(payload: Any) -> bool:
    if not isinstance(payload, Mapping) or payload.get("data"):
        return False
    for error in payload.get("errors") or []:
        if isinstance(error, Mapping) and error.get("type") == _NOT_FOUND_PROBLEM:
            return True
    return False


def _reset_after(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return max(0.0, float(value) - time.time())
    except ValueError:
        return 0.0
