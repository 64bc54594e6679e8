from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import MANGADEX_SOURCE, DeltaAction, Manga, MangaExternalId
from app.logging_utils import structured_log
from app.services.mangadex.normalize import NormalizedManga, slugify

MAX_SLUG_LENGTH = 200

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertResult:
    manga_id: int
    action: DeltaAction
    slug: str


async def find_linked_manga(
    db_session: AsyncSession,
    *,
    external_id: str,
    source: str = MANGADEX_SOURCE,
) -> Manga | None:
    result = await db_session.execute(
        select(Manga)
        .join(MangaExternalId, MangaExternalId.manga_id == Manga.id)
        .where(
            MangaExternalId.source == source,
            MangaExternalId.external_id == external_id,
        )
    )
    return result.scalar_one_or_none()


def canonical_values(normalized: NormalizedManga, *, source: str) -> dict[str, Any]:
    return {
        "title": normalized.titles.title,
        "title_english": normalized.titles.title_english,
        "title_native": normalized.titles.title_native,
        "title_preferred": normalized.titles.title_preferred,
        "description": normalized.description,
        "status": normalized.status,
        "publication_year": normalized.publication_year,
        "original_language": normalized.original_language,
        "content_rating": normalized.content_rating,
        "genres": normalized.merged_genres,
        "cover_image_url": normalized.cover_url,
        "source": source,
        "external_id": normalized.external_id,
        "source_snapshot": normalized.snapshot,
    }


async def upsert_manga(
    db_session: AsyncSession,
    normalized: NormalizedManga,
    *,
    source: str = MANGADEX_SOURCE,
) -> UpsertResult:
    """Insert or update the canonical row linked to ``normalized.external_id``.

    The row and its external-id link are flushed but not committed; the caller
    owns the transaction so the delta log and job enqueue land with it.

    Losing an insert race on the external-id link rolls the session back and
    updates the row the other writer linked.
    """
    values = canonical_values(normalized, source=source)
    manga = await find_linked_manga(db_session, external_id=normalized.external_id, source=source)
    if manga is not None:
        _assign_changed(manga, values)
        await db_session.flush()
        return UpsertResult(manga_id=manga.id, action=DeltaAction.UPDATE, slug=manga.slug)

    slug = await unique_slug(db_session, slugify(normalized.slug_source))
    manga = Manga(slug=slug, **values)
    db_session.add(manga)
    try:
        await db_session.flush()
        db_session.add(
            MangaExternalId(
                manga_id=manga.id,
                source=source,
                external_id=normalized.external_id,
            )
        )
        await db_session.flush()
    except IntegrityError:
        await db_session.rollback()
        linked = await find_linked_manga(db_session, external_id=normalized.external_id, source=source)
        if linked is None:
            raise
        structured_log(
            logger,
            "warning",
            "sync.upsert_conflict_retried",
            external_id=normalized.external_id,
            manga_id=linked.id,
        )
        _assign_changed(linked, values)
        await db_session.flush()
        return UpsertResult(manga_id=linked.id, action=DeltaAction.UPDATE, slug=linked.slug)
    return UpsertResult(manga_id=manga.id, action=DeltaAction.INSERT, slug=slug)


async def unique_slug(db_session: AsyncSession, base_slug: str) -> str:
    base = base_slug[:MAX_SLUG_LENGTH].strip("-") or "untitled"
    result = await db_session.execute(
        select(Manga.slug).where(or_(Manga.slug == base, Manga.slug.like(f"{base}-%")))
    )
    taken = set(result.scalars())
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


def _assign_changed(manga: Manga, values: dict[str, Any]) -> None:
    # Untouched rows keep their updated_at.
    for key, value in values.items():
        if getattr(manga, key) != value:
            setattr(manga, key, value)
