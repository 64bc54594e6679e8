from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import MANGADEX_SOURCE, Manga
from app.logging_utils import structured_log
from app.services.mangadex.normalize import normalize_manga
from app.services.mangadex.types import MangaRecord
from app.services.sync.art_jobs import enqueue_art_job
from app.services.sync.covers import CoverCacheLoader
from app.services.sync.delta_log import append_delta, comparable_row
from app.services.sync.types import CoverOutcome, ItemOutcome
from app.services.sync.upsert import find_linked_manga, upsert_manga
from app.settings import settings

logger = logging.getLogger(__name__)


async def process_record(
    db_session: AsyncSession,
    record: MangaRecord,
    *,
    state_id: str,
    covers: CoverCacheLoader,
) -> ItemOutcome:
    """Upsert one upstream record and log its diff before touching covers.

    The canonical row, delta entry and art job commit together. Main cover
    caching runs afterwards in its own commit, so a failed download never
    loses the delta entry.
    """
    normalized = normalize_manga(record, uploads_base_url=settings.mangadex_uploads_base_url)
    existing = await find_linked_manga(
        db_session,
        external_id=normalized.external_id,
        source=MANGADEX_SOURCE,
    )
    before = comparable_row(existing)
    upserted = await upsert_manga(db_session, normalized, source=MANGADEX_SOURCE)
    manga = await db_session.get(Manga, upserted.manga_id)
    after = comparable_row(manga)
    entry = await append_delta(
        db_session,
        state_id=state_id,
        source=MANGADEX_SOURCE,
        external_id=normalized.external_id,
        manga_id=upserted.manga_id,
        external_updated_at=normalized.updated_at,
        action=upserted.action,
        before=before,
        after=after,
    )
    changed_fields = sorted(entry.changed_fields)
    await enqueue_art_job(db_session, manga_id=upserted.manga_id)
    await db_session.commit()

    cover = CoverOutcome.PRESENT
    if not (after or {}).get("image_url"):
        cached = await covers.cache_main_cover(
            db_session,
            manga_id=upserted.manga_id,
            candidates=normalized.cover_candidates,
        )
        await db_session.commit()
        cover = CoverOutcome.CACHED if cached is not None else CoverOutcome.NONE

    structured_log(
        logger,
        "debug",
        "sync.item_processed",
        external_id=normalized.external_id,
        manga_id=upserted.manga_id,
        action=upserted.action.value,
        changed_count=len(changed_fields),
        cover=cover.value,
    )
    return ItemOutcome(
        external_id=normalized.external_id,
        manga_id=upserted.manga_id,
        action=upserted.action,
        changed_fields=changed_fields,
        updated_at=normalized.updated_at,
        cover=cover.value,
    )
