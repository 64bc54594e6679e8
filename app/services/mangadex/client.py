from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Protocol

import httpx

from app.logging_utils import structured_log
from app.services.mangadex.errors import (
    MangaDexClientValidationError,
    MangaDexHttpError,
    MangaDexParseError,
)
from app.services.mangadex.types import (
    AggregateRecord,
    ChapterEvent,
    CoverRecord,
    FeedPage,
    MangaRecord,
)
from app.settings import settings

MANGADEX_MAX_PAGE_LIMIT = 100
MANGADEX_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"
_MANGA_INCLUDES = ("cover_art", "author", "artist")
_ORDER_ALLOWED = {"asc", "desc"}

MangaDexRequestFn = Callable[..., Awaitable[httpx.Response]]
logger = logging.getLogger(__name__)


class MangaDexSource(Protocol):
    async def list_manga(
        self,
        *,
        limit: int,
        offset: int,
        updated_at_since: datetime | None = None,
        order: str = "asc",
    ) -> FeedPage[MangaRecord]: ...

    async def list_chapters(
        self,
        *,
        limit: int,
        offset: int,
        updated_at_since: datetime | None = None,
        order: str = "asc",
    ) -> FeedPage[ChapterEvent]: ...

    async def get_manga(self, manga_id: str) -> MangaRecord: ...

    async def list_covers(
        self,
        manga_id: str,
        *,
        limit: int = MANGADEX_MAX_PAGE_LIMIT,
        offset: int = 0,
    ) -> FeedPage[CoverRecord]: ...

    async def get_aggregate(self, manga_id: str) -> AggregateRecord: ...

    async def fetch_binary(self, url: str) -> httpx.Response: ...


def format_upstream_timestamp(value: datetime) -> str:
    """Render a cursor timestamp for ``updatedAtSince``.

    The API only accepts whole seconds, so any sub-second remainder is rounded
    up. A bucket bumped by one millisecond therefore starts at the next second
    instead of re-reading the previous one.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    if value.microsecond:
        value = value.replace(microsecond=0) + timedelta(seconds=1)
    return value.strftime(MANGADEX_TIMESTAMP_FORMAT)


class MangaDexClient:
    def __init__(
        self,
        *,
        request_fn: MangaDexRequestFn | None = None,
        base_url: str | None = None,
        content_ratings: tuple[str, ...] | None = None,
    ) -> None:
        self._request_fn = request_fn or _request_mangadex
        self._base_url = (base_url or settings.mangadex_api_base_url).rstrip("/")
        self._content_ratings = content_ratings if content_ratings is not None else _configured_content_ratings()

    async def list_manga(
        self,
        *,
        limit: int,
        offset: int,
        updated_at_since: datetime | None = None,
        order: str = "asc",
    ) -> FeedPage[MangaRecord]:
        params = _list_params(limit=limit, offset=offset, updated_at_since=updated_at_since, order=order)
        params.extend(("includes[]", value) for value in _MANGA_INCLUDES)
        params.extend(("contentRating[]", rating) for rating in self._content_ratings)
        payload = await self._get_json("/manga", params=params)
        return _feed_page(payload, limit=limit, offset=offset, parse=MangaRecord.from_api_dict)

    async def list_chapters(
        self,
        *,
        limit: int,
        offset: int,
        updated_at_since: datetime | None = None,
        order: str = "asc",
    ) -> FeedPage[ChapterEvent]:
        params = _list_params(limit=limit, offset=offset, updated_at_since=updated_at_since, order=order)
        params.append(("includes[]", "manga"))
        params.extend(("contentRating[]", rating) for rating in self._content_ratings)
        payload = await self._get_json("/chapter", params=params)
        return _feed_page(payload, limit=limit, offset=offset, parse=ChapterEvent.from_api_dict)

    async def get_manga(self, manga_id: str) -> MangaRecord:
        clean_id = _validate_id(manga_id)
        params = [("includes[]", value) for value in _MANGA_INCLUDES]
        payload = await self._get_json(f"/manga/{clean_id}", params=params)
        data = payload.get("data")
        if not isinstance(data, Mapping):
            raise MangaDexParseError(f"manga {clean_id} payload has no data object")
        return MangaRecord.from_api_dict(data)

    async def list_covers(
        self,
        manga_id: str,
        *,
        limit: int = MANGADEX_MAX_PAGE_LIMIT,
        offset: int = 0,
    ) -> FeedPage[CoverRecord]:
        clean_id = _validate_id(manga_id)
        params: list[tuple[str, object]] = [
            ("limit", _validate_limit(limit)),
            ("offset", _validate_offset(offset)),
            ("order[volume]", "asc"),
            ("manga[]", clean_id),
        ]
        payload = await self._get_json("/cover", params=params)
        return _feed_page(payload, limit=limit, offset=offset, parse=CoverRecord.from_api_dict)

    async def get_aggregate(self, manga_id: str) -> AggregateRecord:
        clean_id = _validate_id(manga_id)
        payload = await self._get_json(f"/manga/{clean_id}/aggregate", params=[])
        return AggregateRecord.from_api_dict(payload)

    async def fetch_binary(self, url: str) -> httpx.Response:
        return await self._request_fn(
            method="GET",
            url=url,
            params=None,
            timeout_seconds=settings.mangadex_timeout_seconds,
        )

    async def _get_json(self, path: str, *, params: list[tuple[str, object]]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        response = await self._request_fn(
            method="GET",
            url=url,
            params=params,
            timeout_seconds=settings.mangadex_timeout_seconds,
        )
        if response.status_code >= 400:
            structured_log(
                logger,
                "warning",
                "mangadex.request_failed",
                path=path,
                status_code=response.status_code,
            )
            raise MangaDexHttpError(url=url, status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise MangaDexParseError(f"MangaDex returned non-JSON body for {path}") from exc
        if not isinstance(payload, dict):
            raise MangaDexParseError(f"MangaDex returned a non-object body for {path}")
        if payload.get("result") == "error":
            raise MangaDexHttpError(
                url=url,
                status_code=response.status_code,
                message=f"MangaDex reported an error for {path}: {payload.get('errors')!r}",
            )
        return payload


def _list_params(
    *,
    limit: int,
    offset: int,
    updated_at_since: datetime | None,
    order: str,
) -> list[tuple[str, object]]:
    params: list[tuple[str, object]] = [
        ("limit", _validate_limit(limit)),
        ("offset", _validate_offset(offset)),
        ("order[updatedAt]", _validate_order(order)),
    ]
    if updated_at_since is not None:
        params.append(("updatedAtSince", format_upstream_timestamp(updated_at_since)))
    return params


def _feed_page(
    payload: Mapping[str, Any],
    *,
    limit: int,
    offset: int,
    parse: Callable[[Mapping[str, Any]], Any],
) -> FeedPage[Any]:
    data = payload.get("data")
    if not isinstance(data, list):
        raise MangaDexParseError("MangaDex collection payload has no data list")
    items = [parse(item) for item in data if isinstance(item, Mapping)]
    total = payload.get("total")
    return FeedPage(
        items=items,
        total=int(total) if isinstance(total, int) and not isinstance(total, bool) else None,
        limit=_safe_int(payload.get("limit"), limit),
        offset=_safe_int(payload.get("offset"), offset),
    )


def _safe_int(value: object, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return default


def _validate_limit(value: int) -> int:
    limit = int(value)
    if limit < 1:
        raise MangaDexClientValidationError("limit must be >= 1")
    if limit > MANGADEX_MAX_PAGE_LIMIT:
        raise MangaDexClientValidationError(f"limit must be <= {MANGADEX_MAX_PAGE_LIMIT}")
    return limit


def _validate_offset(value: int) -> int:
    offset = int(value)
    if offset < 0:
        raise MangaDexClientValidationError("offset must be >= 0")
    return offset


def _validate_order(value: str) -> str:
    if value not in _ORDER_ALLOWED:
        raise MangaDexClientValidationError(f"order must be one of: {sorted(_ORDER_ALLOWED)!r}")
    return value


def _validate_id(value: str) -> str:
    clean_id = (value or "").strip()
    if not clean_id:
        raise MangaDexClientValidationError("manga id must not be empty")
    return clean_id


def _configured_content_ratings() -> tuple[str, ...]:
    return tuple(
        part.strip()
        for part in settings.mangadex_content_ratings.split(",")
        if part.strip()
    )


async def _request_mangadex(
    *,
    method: str,
    url: str,
    params: list[tuple[str, object]] | None,
    timeout_seconds: float | None,
) -> httpx.Response:
    timeout_value = max(float(timeout_seconds or settings.mangadex_timeout_seconds), 0.5)
    headers = {"User-Agent": settings.mangadex_user_agent}
    async with httpx.AsyncClient(timeout=timeout_value, follow_redirects=True, headers=headers) as client:
        return await client.request(method, url, params=params)
