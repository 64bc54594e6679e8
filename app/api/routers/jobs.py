from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_admin_secret
from app.api.responses import success_payload
from app.api.routers.serializers import serialize_worker_run
from app.api.runtime_deps import get_mangadex_source, get_sync_service
from app.api.schemas import (
    AggregateRunEnvelope,
    AggregateRunRequest,
    ArtJobsRunEnvelope,
    ArtJobsRunRequest,
    WorkerRunsEnvelope,
)
from app.db.session import get_db_session
from app.services.mangadex.client import MangaDexSource
from app.services.sync import aggregate as aggregate_service
from app.services.sync import art_jobs as art_jobs_service
from app.services.sync import telemetry as telemetry_service
from app.services.sync.application import CatalogSyncService
from app.settings import settings

router = APIRouter(
    prefix="/admin",
    tags=["api-admin-jobs"],
    dependencies=[Depends(require_admin_secret)],
)


@router.get(
    "/worker-runs",
    response_model=WorkerRunsEnvelope,
)
async def list_worker_runs(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    job: str | None = Query(default=None, max_length=32),
    state_id: str | None = Query(default=None, max_length=64),
    db_session: AsyncSession = Depends(get_db_session),
):
    runs = await telemetry_service.list_worker_runs(
        db_session,
        limit=limit,
        job=job,
        state_id=state_id,
    )
    return success_payload(
        request,
        data={"runs": [serialize_worker_run(run) for run in runs]},
    )


@router.post(
    "/art-jobs/run",
    response_model=ArtJobsRunEnvelope,
)
async def run_art_jobs(
    request: Request,
    payload: ArtJobsRunRequest | None = None,
    db_session: AsyncSession = Depends(get_db_session),
    service: CatalogSyncService = Depends(get_sync_service),
):
    batch_size = (payload.batch_size if payload else None) or settings.art_jobs_batch_size
    result = await art_jobs_service.run_art_jobs(
        db_session,
        loader=service.covers,
        batch_size=batch_size,
        max_attempts=settings.art_jobs_max_attempts,
    )
    return success_payload(
        request,
        data={
            "ok": True,
            "claimed": result.claimed,
            "done": result.done,
            "failed": result.failed,
            "requeued": result.requeued,
            "covers_cached": result.covers_cached,
            "run_id": result.run_id,
        },
    )


@router.post(
    "/aggregates/run",
    response_model=AggregateRunEnvelope,
)
async def run_aggregates(
    request: Request,
    payload: AggregateRunRequest | None = None,
    db_session: AsyncSession = Depends(get_db_session),
    source: MangaDexSource = Depends(get_mangadex_source),
):
    batch_size = (payload.batch_size if payload else None) or settings.aggregate_batch_size
    result = await aggregate_service.run_aggregate_totals(
        db_session,
        source=source,
        batch_size=batch_size,
    )
    return success_payload(
        request,
        data={
            "ok": True,
            "picked": result.picked,
            "updated": result.updated,
            "error_count": result.error_count,
            "run_id": result.run_id,
        },
    )
