from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_admin_secret
from app.api.responses import success_payload
from app.api.routers.serializers import (
    serialize_peek,
    serialize_run_result,
    serialize_state,
)
from app.api.runtime_deps import get_sync_service
from app.api.schemas import (
    ApiErrorEnvelope,
    CrawlStateEnvelope,
    CrawlStateResetRequest,
    CrawlStatesEnvelope,
    SyncRunEnvelope,
    SyncRunRequest,
)
from app.db.models import FeedKind, WorkerRunTrigger
from app.db.session import get_db_session
from app.services.sync import state_store
from app.services.sync.application import CatalogSyncService
from app.services.sync.types import SyncBudget

STATE_ID_PATTERN = r"^[A-Za-z0-9_.-]{1,64}$"
RUN_ERROR_RESPONSES = {
    status_code: {"model": ApiErrorEnvelope} for status_code in (401, 404, 409, 422, 502, 503)
}

router = APIRouter(
    prefix="/admin/sync",
    tags=["api-admin-sync"],
    dependencies=[Depends(require_admin_secret)],
)


async def execute_sync_request(
    db_session: AsyncSession,
    *,
    service: CatalogSyncService,
    state_id: str,
    payload: SyncRunRequest,
    trigger: WorkerRunTrigger,
) -> dict:
    if payload.peek:
        peek = await service.peek(db_session, state_id=state_id, page_limit=payload.page_limit)
        return serialize_peek(peek)
    if payload.md_id:
        result = await service.refresh_one(
            db_session,
            external_id=payload.md_id,
            state_id=state_id,
        )
        return serialize_run_result(result)
    result = await service.run(
        db_session,
        state_id=state_id,
        budget=SyncBudget.from_settings(
            page_limit=payload.page_limit,
            max_pages=payload.max_pages,
            time_budget_seconds=payload.time_budget_seconds,
            hard_cap=payload.hard_cap,
        ),
        trigger=trigger,
        force=payload.force,
    )
    return serialize_run_result(result)


@router.get(
    "/states",
    response_model=CrawlStatesEnvelope,
)
async def list_crawl_states(
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
):
    states = await state_store.list_states(db_session)
    return success_payload(
        request,
        data={"states": [serialize_state(state) for state in states]},
    )


@router.post(
    "/states/{state_id}/reset",
    response_model=CrawlStateEnvelope,
)
async def reset_crawl_state(
    request: Request,
    payload: CrawlStateResetRequest | None = None,
    state_id: str = Path(pattern=STATE_ID_PATTERN),
    db_session: AsyncSession = Depends(get_db_session),
):
    payload = payload or CrawlStateResetRequest()
    state = await state_store.reset_state(
        db_session,
        state_id=state_id,
        feed=FeedKind(payload.feed) if payload.feed else None,
        page_limit=payload.page_limit,
        rewind_to=payload.rewind_to,
    )
    return success_payload(request, data=serialize_state(state))


@router.post(
    "/{state_id}",
    response_model=SyncRunEnvelope,
    responses=RUN_ERROR_RESPONSES,
)
async def run_sync(
    request: Request,
    payload: SyncRunRequest | None = None,
    state_id: str = Path(pattern=STATE_ID_PATTERN),
    db_session: AsyncSession = Depends(get_db_session),
    service: CatalogSyncService = Depends(get_sync_service),
):
    data = await execute_sync_request(
        db_session,
        service=service,
        state_id=state_id,
        payload=payload or SyncRunRequest(),
        trigger=WorkerRunTrigger.MANUAL,
    )
    return success_payload(request, data=data)
