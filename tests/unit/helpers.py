from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import FeedKind
from app.services.mangadex.errors import MangaDexHttpError
from app.services.mangadex.types import (
    AggregateRecord,
    ChapterEvent,
    CoverRecord,
    FeedPage,
    MangaRecord,
)
from app.services.sync import state_store
from app.services.sync.cursor import CursorState

BASE_TS = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def ts(seconds: int) -> datetime:
    return BASE_TS + timedelta(seconds=seconds)


def iso(value: datetime) -> str:
    return value.isoformat()


def manga_payload(
    md_id: str,
    *,
    updated_at: datetime,
    title: str | None = None,
    cover_file: str | None = None,
    genres: tuple[str, ...] = ("Action",),
    description: str = "A story.",
    status: str = "ongoing",
) -> dict[str, Any]:
    relationships: list[dict[str, Any]] = [
        {"id": f"author-{md_id}", "type": "author", "attributes": {"name": "Author Name"}},
    ]
    if cover_file:
        relationships.append(
            {"id": f"cover-{md_id}", "type": "cover_art", "attributes": {"fileName": cover_file}}
        )
    return {
        "id": md_id,
        "type": "manga",
        "attributes": {
            "title": {"en": title or f"Title {md_id}"},
            "altTitles": [{"ja": f"タイトル {md_id}"}],
            "description": {"en": description},
            "status": status,
            "year": 2020,
            "originalLanguage": "ja",
            "contentRating": "safe",
            "tags": [
                {"attributes": {"group": "genre", "name": {"en": name}}}
                for name in genres
            ],
            "updatedAt": iso(updated_at),
        },
        "relationships": relationships,
    }


def chapter_payload(chapter_id: str, *, manga_id: str | None, updated_at: datetime) -> dict[str, Any]:
    relationships = [{"id": manga_id, "type": "manga"}] if manga_id else []
    return {
        "id": chapter_id,
        "type": "chapter",
        "attributes": {
            "chapter": "1",
            "volume": "1",
            "translatedLanguage": "en",
            "updatedAt": iso(updated_at),
        },
        "relationships": relationships,
    }


def cover_payload(cover_id: str, *, file_name: str, volume: str | None, locale: str = "ja") -> dict[str, Any]:
    return {
        "id": cover_id,
        "type": "cover_art",
        "attributes": {"fileName": file_name, "volume": volume, "locale": locale},
    }


class FakeMangaDexSource:
    """In-memory stand-in for the MangaDex API, ordered by updatedAt ascending."""

    def __init__(
        self,
        *,
        manga: list[dict[str, Any]] | None = None,
        chapters: list[dict[str, Any]] | None = None,
        covers: dict[str, list[dict[str, Any]]] | None = None,
        aggregates: dict[str, dict[str, Any]] | None = None,
        binaries: dict[str, tuple[int, bytes, str]] | None = None,
        total_override: int | None = None,
    ) -> None:
        self.manga = list(manga or [])
        self.chapters = list(chapters or [])
        self.covers = dict(covers or {})
        self.aggregates = dict(aggregates or {})
        self.binaries = dict(binaries or {})
        self.total_override = total_override
        self.list_calls: list[dict[str, Any]] = []
        self.fetched_urls: list[str] = []
        self.get_calls: list[str] = []
        self.fail_list_on_call: int | None = None
        self.missing_ids: set[str] = set()

    def _page(
        self,
        items: list[dict[str, Any]],
        *,
        limit: int,
        offset: int,
        updated_at_since: datetime | None,
        parse,
    ) -> FeedPage[Any]:
        self.list_calls.append(
            {"limit": limit, "offset": offset, "updated_at_since": updated_at_since}
        )
        if self.fail_list_on_call is not None and len(self.list_calls) == self.fail_list_on_call:
            raise MangaDexHttpError(url="https://api.test/manga", status_code=503)
        selected = items
        if updated_at_since is not None:
            selected = [
                item
                for item in items
                if datetime.fromisoformat(item["attributes"]["updatedAt"]) >= updated_at_since
            ]
        window = selected[offset : offset + limit]
        total = self.total_override if self.total_override is not None else len(selected)
        return FeedPage(
            items=[parse(item) for item in window],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def list_manga(
        self,
        *,
        limit: int,
        offset: int,
        updated_at_since: datetime | None = None,
        order: str = "asc",
    ) -> FeedPage[MangaRecord]:
        return self._page(
            self.manga,
            limit=limit,
            offset=offset,
            updated_at_since=updated_at_since,
            parse=MangaRecord.from_api_dict,
        )

    async def list_chapters(
        self,
        *,
        limit: int,
        offset: int,
        updated_at_since: datetime | None = None,
        order: str = "asc",
    ) -> FeedPage[ChapterEvent]:
        return self._page(
            self.chapters,
            limit=limit,
            offset=offset,
            updated_at_since=updated_at_since,
            parse=ChapterEvent.from_api_dict,
        )

    async def get_manga(self, manga_id: str) -> MangaRecord:
        self.get_calls.append(manga_id)
        if manga_id in self.missing_ids:
            raise MangaDexHttpError(url=f"https://api.test/manga/{manga_id}", status_code=404)
        for item in self.manga:
            if item["id"] == manga_id:
                return MangaRecord.from_api_dict(item)
        raise MangaDexHttpError(url=f"https://api.test/manga/{manga_id}", status_code=404)

    async def list_covers(self, manga_id: str, *, limit: int = 100, offset: int = 0) -> FeedPage[CoverRecord]:
        items = self.covers.get(manga_id, [])
        window = items[offset : offset + limit]
        return FeedPage(
            items=[CoverRecord.from_api_dict(item) for item in window],
            total=len(items),
            limit=limit,
            offset=offset,
        )

    async def get_aggregate(self, manga_id: str) -> AggregateRecord:
        if manga_id not in self.aggregates:
            raise MangaDexHttpError(url=f"https://api.test/manga/{manga_id}/aggregate", status_code=404)
        return AggregateRecord.from_api_dict(self.aggregates[manga_id])

    async def fetch_binary(self, url: str) -> httpx.Response:
        self.fetched_urls.append(url)
        status_code, content, content_type = self.binaries.get(url, (404, b"", "text/plain"))
        return httpx.Response(
            status_code,
            content=content,
            headers={"content-type": content_type},
            request=httpx.Request("GET", url),
        )


class MemoryObjectStore:
    def __init__(self, *, public_base_url: str = "/media/covers") -> None:
        self.public_base_url = public_base_url
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def put(self, path: str, data: bytes, *, content_type: str) -> str:
        self.objects[path] = (data, content_type)
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"


async def seed_state(
    db_session: AsyncSession,
    *,
    state_id: str = "catalog",
    feed: FeedKind = FeedKind.MANGA,
    page_limit: int = 2,
) -> CursorState:
    return await state_store.reset_state(
        db_session,
        state_id=state_id,
        feed=feed,
        page_limit=page_limit,
    )
