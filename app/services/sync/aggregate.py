from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    MANGADEX_SOURCE,
    DeltaAction,
    Manga,
    MangaExternalId,
    WorkerRunTrigger,
)
from app.logging_utils import structured_log
from app.services.mangadex.client import MangaDexSource
from app.services.mangadex.types import AggregateRecord
from app.services.sync.delta_log import append_delta, comparable_row
from app.services.sync.telemetry import (
    RunReport,
    log_run_summary,
    record_worker_run,
    record_worker_run_best_effort,
)

AGGREGATE_JOB_NAME = "aggregate"
AGGREGATE_STATE_ID = "aggregate"
_UNNUMBERED_VOLUMES = {"", "none", "null"}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregateTotals:
    total_chapters: int
    total_volumes: int


@dataclass(frozen=True)
class AggregateRunResult:
    picked: int
    updated: int
    error_count: int
    run_id: int | None


def compute_totals(record: AggregateRecord) -> AggregateTotals:
    volumes = [
        volume
        for volume in record.volumes
        if volume.volume.strip().lower() not in _UNNUMBERED_VOLUMES
    ]
    chapters = {
        chapter.strip()
        for volume in record.volumes
        for chapter in volume.chapters
        if chapter and chapter.strip()
    }
    return AggregateTotals(total_chapters=len(chapters), total_volumes=len(volumes))


async def pick_missing_totals(db_session: AsyncSession, *, limit: int) -> list[tuple[int, str]]:
    result = await db_session.execute(
        select(Manga.id, MangaExternalId.external_id)
        .join(MangaExternalId, MangaExternalId.manga_id == Manga.id)
        .where(
            MangaExternalId.source == MANGADEX_SOURCE,
            or_(Manga.total_chapters.is_(None), Manga.total_volumes.is_(None)),
        )
        .order_by(Manga.id.asc())
        .limit(max(1, int(limit)))
    )
    return [(int(row.id), str(row.external_id)) for row in result.all()]


async def apply_totals(
    db_session: AsyncSession,
    *,
    manga_id: int,
    external_id: str,
    totals: AggregateTotals,
) -> None:
    manga = await db_session.get(Manga, manga_id)
    if manga is None:
        raise LookupError(f"Manga {manga_id} disappeared.")
    before = comparable_row(manga)
    manga.total_chapters = totals.total_chapters
    manga.total_volumes = totals.total_volumes
    await db_session.flush()
    await append_delta(
        db_session,
        state_id=AGGREGATE_STATE_ID,
        source=MANGADEX_SOURCE,
        external_id=external_id,
        manga_id=manga_id,
        external_updated_at=None,
        action=DeltaAction.UPDATE,
        before=before,
        after=comparable_row(manga),
    )
    await db_session.commit()


async def run_aggregate_totals(
    db_session: AsyncSession,
    *,
    source: MangaDexSource,
    batch_size: int,
    trigger: WorkerRunTrigger = WorkerRunTrigger.MANUAL,
) -> AggregateRunResult:
    report = RunReport(job=AGGREGATE_JOB_NAME, trigger=trigger)
    report.descriptor = {"batch_size": batch_size}
    try:
        work = await pick_missing_totals(db_session, limit=batch_size)
        report.claimed = len(work)
        for manga_id, external_id in work:
            report.unique_ids.add(external_id)
            try:
                totals = compute_totals(await source.get_aggregate(external_id))
                await apply_totals(
                    db_session,
                    manga_id=manga_id,
                    external_id=external_id,
                    totals=totals,
                )
            except Exception as exc:
                await db_session.rollback()
                message = str(exc) or type(exc).__name__
                report.record_error(external_id=external_id, message=message, manga_id=manga_id)
                structured_log(
                    logger,
                    "warning",
                    "aggregate.item_failed",
                    manga_id=manga_id,
                    external_id=external_id,
                    error=message,
                )
                continue
            report.record_ok(
                {
                    "manga_id": manga_id,
                    "external_id": external_id,
                    "total_chapters": totals.total_chapters,
                    "total_volumes": totals.total_volumes,
                }
            )
    except Exception as exc:
        await record_worker_run_best_effort(db_session, report, fatal_error=exc)
        raise

    run = await record_worker_run(db_session, report)
    log_run_summary(report, event="aggregate.run_completed")
    return AggregateRunResult(
        picked=report.claimed,
        updated=report.ok_count,
        error_count=report.error_count,
        run_id=run.id,
    )
