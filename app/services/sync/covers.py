from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import Any
from urllib.parse import urlparse

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import MANGADEX_SOURCE, Manga, MangaCover
from app.logging_utils import structured_log
from app.services.mangadex.client import MANGADEX_MAX_PAGE_LIMIT, MangaDexSource
from app.services.mangadex.normalize import cover_candidates, safe_part
from app.services.mangadex.types import CoverRecord
from app.services.storage import ObjectStore
from app.services.sync.candidates import (
    CandidateAttempt,
    CandidateRejected,
    CandidatesExhaustedError,
    resolve_first,
)
from app.services.sync.errors import CoverCandidatesExhaustedError
from app.settings import settings

DEFAULT_CONTENT_TYPE = "image/jpeg"
_MAX_COVER_PAGES = 20

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadedImage:
    data: bytes
    content_type: str
    source_url: str
    attempts: list[CandidateAttempt] = field(default_factory=list)

    @property
    def extension(self) -> str:
        return image_extension(self.source_url, self.content_type)


@dataclass(frozen=True)
class CachedCover:
    public_url: str
    source_url: str
    storage_path: str
    content_type: str
    attempts: list[CandidateAttempt] = field(default_factory=list)


@dataclass
class ArtCacheSummary:
    listed: int = 0
    cached: int = 0
    skipped: int = 0
    failed: int = 0
    main_cover_url: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)


def image_extension(url: str, content_type: str | None) -> str:
    path = urlparse(url).path.lower()
    normalized_type = (content_type or "").split(";")[0].strip().lower()
    if ".png" in path or normalized_type == "image/png":
        return "png"
    if normalized_type == "image/webp":
        return "webp"
    return "jpg"


def main_cover_path(slug: str, extension: str) -> str:
    return f"{slug}/cover.{extension}"


def art_cover_path(
    slug: str,
    *,
    volume: str | None,
    locale: str | None,
    cover_id: str,
    extension: str,
) -> str:
    return (
        f"{slug}/art/vol-{safe_part(volume)}/loc-{safe_part(locale)}/"
        f"{safe_part(cover_id)}.{extension}"
    )


def volume_sort_key(volume: str | None) -> float:
    try:
        value = float(str(volume if volume is not None else "").strip())
    except ValueError:
        return math.inf
    return value if math.isfinite(value) else math.inf


class CoverCacheLoader:
    def __init__(self, *, source: MangaDexSource, store: ObjectStore) -> None:
        self._source = source
        self._store = store

    async def download(self, candidates: list[str]) -> DownloadedImage:
        try:
            resolution = await resolve_first(candidates, self._fetch_candidate)
        except CandidatesExhaustedError as exc:
            raise CoverCandidatesExhaustedError(
                last_url=exc.last_candidate,
                last_status=exc.last_status,
            ) from exc
        data, content_type = resolution.value
        return DownloadedImage(
            data=data,
            content_type=content_type,
            source_url=resolution.candidate,
            attempts=resolution.attempts,
        )

    async def _fetch_candidate(self, url: str) -> tuple[tuple[bytes, str], int]:
        try:
            response = await self._source.fetch_binary(url)
        except httpx.HTTPError as exc:
            structured_log(logger, "debug", "covers.candidate_failed", url=url, error=str(exc))
            raise CandidateRejected(str(exc) or type(exc).__name__) from exc
        if response.status_code >= 400:
            structured_log(
                logger, "debug", "covers.candidate_failed", url=url, status_code=response.status_code
            )
            raise CandidateRejected(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
        return (response.content, content_type), response.status_code

    async def cache_main_cover(
        self,
        db_session: AsyncSession,
        *,
        manga_id: int,
        candidates: list[str],
    ) -> CachedCover | None:
        """Store the title cover unless the row already points at a cached copy."""
        manga = await db_session.get(Manga, manga_id)
        if manga is None or manga.image_url or not candidates:
            return None

        image = await self.download(candidates)
        path = main_cover_path(manga.slug, image.extension)
        public_url = await self._store.put(path, image.data, content_type=image.content_type)
        manga.image_url = public_url
        await db_session.flush()
        structured_log(
            logger,
            "info",
            "covers.cached",
            manga_id=manga_id,
            source_url=image.source_url,
            storage_path=path,
            attempts=len(image.attempts),
        )
        return CachedCover(
            public_url=public_url,
            source_url=image.source_url,
            storage_path=path,
            content_type=image.content_type,
            attempts=image.attempts,
        )

    async def cache_all_covers(
        self,
        db_session: AsyncSession,
        *,
        manga: Manga,
        mangadex_id: str,
    ) -> ArtCacheSummary:
        """Cache every volume cover of one title, skipping ids cached earlier."""
        summary = ArtCacheSummary()
        covers = await self._list_all_covers(mangadex_id)
        summary.listed = len(covers)

        cached_ids = await existing_cover_ids(db_session, [cover.id for cover in covers])
        for cover in covers:
            if cover.id in cached_ids:
                summary.skipped += 1
                continue
            candidates = cover_candidates(
                uploads_base_url=settings.mangadex_uploads_base_url,
                manga_id=mangadex_id,
                file_name=cover.file_name,
            )
            try:
                image = await self.download(candidates)
            except CoverCandidatesExhaustedError as exc:
                summary.failed += 1
                summary.errors.append({"cover_id": cover.id, "error": str(exc)})
                structured_log(
                    logger,
                    "warning",
                    "covers.art_cover_failed",
                    manga_id=manga.id,
                    cover_id=cover.id,
                    error=str(exc),
                )
                continue
            path = art_cover_path(
                manga.slug,
                volume=cover.volume,
                locale=cover.locale,
                cover_id=cover.id,
                extension=image.extension,
            )
            public_url = await self._store.put(path, image.data, content_type=image.content_type)
            db_session.add(
                MangaCover(
                    manga_id=manga.id,
                    source=MANGADEX_SOURCE,
                    external_cover_id=cover.id,
                    volume=cover.volume,
                    locale=cover.locale,
                    source_url=image.source_url,
                    cached_url=public_url,
                    storage_path=path,
                    content_type=image.content_type,
                )
            )
            await db_session.flush()
            cached_ids.add(cover.id)
            summary.cached += 1

        summary.main_cover_url = await earliest_volume_cover_url(db_session, manga_id=manga.id)
        if summary.main_cover_url and not manga.image_url:
            manga.image_url = summary.main_cover_url
            await db_session.flush()
        return summary

    async def _list_all_covers(self, mangadex_id: str) -> list[CoverRecord]:
        covers: list[CoverRecord] = []
        offset = 0
        for _ in range(_MAX_COVER_PAGES):
            page = await self._source.list_covers(
                mangadex_id,
                limit=MANGADEX_MAX_PAGE_LIMIT,
                offset=offset,
            )
            covers.extend(page.items)
            offset += len(page.items)
            if not page.items or page.total is None or offset >= page.total:
                break
        return covers


async def existing_cover_ids(db_session: AsyncSession, cover_ids: list[str]) -> set[str]:
    if not cover_ids:
        return set()
    result = await db_session.execute(
        select(MangaCover.external_cover_id).where(MangaCover.external_cover_id.in_(cover_ids))
    )
    return set(result.scalars())


async def earliest_volume_cover_url(db_session: AsyncSession, *, manga_id: int) -> str | None:
    result = await db_session.execute(
        select(MangaCover.volume, MangaCover.cached_url, MangaCover.id).where(
            MangaCover.manga_id == manga_id
        )
    )
    rows = [row for row in result.all() if row.cached_url]
    if not rows:
        return None
    best = min(rows, key=lambda row: (volume_sort_key(row.volume), row.id))
    return best.cached_url
