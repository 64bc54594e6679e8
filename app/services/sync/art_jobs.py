from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    MANGADEX_SOURCE,
    ArtJobStatus,
    Manga,
    MangaArtJob,
    MangaExternalId,
    WorkerRunTrigger,
)
from app.logging_utils import structured_log
from app.services.sync.covers import CoverCacheLoader
from app.services.sync.telemetry import (
    RunReport,
    log_run_summary,
    record_worker_run,
    record_worker_run_best_effort,
)

ART_JOBS_JOB_NAME = "art_jobs"
MAX_LAST_ERROR_LENGTH = 1000

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtJobsResult:
    claimed: int
    done: int
    failed: int
    requeued: int
    covers_cached: int
    run_id: int | None


async def enqueue_art_job(db_session: AsyncSession, *, manga_id: int) -> MangaArtJob:
    """Insert or refresh the art job for ``manga_id``; one row per manga."""
    now = datetime.now(timezone.utc)
    result = await db_session.execute(select(MangaArtJob).where(MangaArtJob.manga_id == manga_id))
    job = result.scalar_one_or_none()
    if job is None:
        job = MangaArtJob(
            manga_id=manga_id,
            status=ArtJobStatus.PENDING.value,
            attempt_count=0,
            last_error=None,
            created_at=now,
            updated_at=now,
        )
        db_session.add(job)
        await db_session.flush()
        return job

    if job.status == ArtJobStatus.FAILED.value:
        job.attempt_count = 0
    if job.status != ArtJobStatus.RUNNING.value:
        job.status = ArtJobStatus.PENDING.value
        job.last_error = None
    job.updated_at = now
    await db_session.flush()
    return job


async def claim_pending_jobs(db_session: AsyncSession, *, limit: int) -> list[int]:
    now = datetime.now(timezone.utc)
    result = await db_session.execute(
        select(MangaArtJob)
        .where(MangaArtJob.status == ArtJobStatus.PENDING.value)
        .order_by(MangaArtJob.updated_at.asc(), MangaArtJob.manga_id.asc())
        .limit(max(1, int(limit)))
    )
    jobs = list(result.scalars())
    for job in jobs:
        job.status = ArtJobStatus.RUNNING.value
        job.attempt_count = int(job.attempt_count or 0) + 1
        job.last_attempt_at = now
        job.updated_at = now
    await db_session.commit()
    return [job.manga_id for job in jobs]


async def mangadex_id_for(db_session: AsyncSession, *, manga_id: int) -> str | None:
    result = await db_session.execute(
        select(MangaExternalId.external_id).where(
            MangaExternalId.manga_id == manga_id,
            MangaExternalId.source == MANGADEX_SOURCE,
        )
    )
    return result.scalars().first()


async def _finish_job(
    db_session: AsyncSession,
    *,
    manga_id: int,
    error: str | None,
    max_attempts: int,
) -> str:
    job = await db_session.get(MangaArtJob, manga_id)
    if job is None:
        return ArtJobStatus.DONE.value
    now = datetime.now(timezone.utc)
    if error is None:
        job.status = ArtJobStatus.DONE.value
        job.last_error = None
    elif int(job.attempt_count or 0) >= max_attempts:
        job.status = ArtJobStatus.FAILED.value
        job.last_error = error[:MAX_LAST_ERROR_LENGTH]
    else:
        job.status = ArtJobStatus.PENDING.value
        job.last_error = error[:MAX_LAST_ERROR_LENGTH]
    job.updated_at = now
    await db_session.commit()
    return job.status


async def run_art_jobs(
    db_session: AsyncSession,
    *,
    loader: CoverCacheLoader,
    batch_size: int,
    max_attempts: int,
    trigger: WorkerRunTrigger = WorkerRunTrigger.MANUAL,
) -> ArtJobsResult:
    report = RunReport(job=ART_JOBS_JOB_NAME, trigger=trigger)
    report.descriptor = {"batch_size": batch_size, "max_attempts": max_attempts}
    done = failed = requeued = covers_cached = 0
    try:
        manga_ids = await claim_pending_jobs(db_session, limit=batch_size)
        report.claimed = len(manga_ids)
        for manga_id in manga_ids:
            error: str | None = None
            external_id: str | None = None
            try:
                external_id = await mangadex_id_for(db_session, manga_id=manga_id)
                manga = await db_session.get(Manga, manga_id)
                if manga is None or external_id is None:
                    raise LookupError(f"Manga {manga_id} has no MangaDex link.")
                report.unique_ids.add(external_id)
                summary = await loader.cache_all_covers(
                    db_session,
                    manga=manga,
                    mangadex_id=external_id,
                )
                await db_session.commit()
                covers_cached += summary.cached
                if summary.failed:
                    error = "; ".join(entry["error"] for entry in summary.errors)
            except Exception as exc:
                await db_session.rollback()
                error = str(exc) or type(exc).__name__
                structured_log(
                    logger,
                    "warning",
                    "art_jobs.job_failed",
                    manga_id=manga_id,
                    error=error,
                )

            status = await _finish_job(
                db_session,
                manga_id=manga_id,
                error=error,
                max_attempts=max_attempts,
            )
            if error is None:
                done += 1
                report.record_ok({"manga_id": manga_id, "external_id": external_id})
            else:
                report.record_error(external_id=external_id, message=error, manga_id=manga_id)
                if status == ArtJobStatus.FAILED.value:
                    failed += 1
                else:
                    requeued += 1
    except Exception as exc:
        await record_worker_run_best_effort(db_session, report, fatal_error=exc)
        raise

    run = await record_worker_run(db_session, report)
    log_run_summary(report, event="art_jobs.run_completed")
    return ArtJobsResult(
        claimed=report.claimed,
        done=done,
        failed=failed,
        requeued=requeued,
        covers_cached=covers_cached,
        run_id=run.id,
    )
