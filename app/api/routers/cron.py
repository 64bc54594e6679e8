from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_cron_token
from app.api.responses import success_payload
from app.api.routers.sync import RUN_ERROR_RESPONSES, STATE_ID_PATTERN, execute_sync_request
from app.api.runtime_deps import get_sync_service
from app.api.schemas import SyncRunEnvelope, SyncRunRequest
from app.db.models import WorkerRunTrigger
from app.db.session import get_db_session
from app.services.sync.application import CatalogSyncService

router = APIRouter(
    prefix="/cron",
    tags=["api-cron"],
    dependencies=[Depends(require_cron_token)],
)


@router.api_route(
    "/sync/{state_id}",
    methods=["GET", "POST"],
    response_model=SyncRunEnvelope,
    responses=RUN_ERROR_RESPONSES,
)
async def cron_sync(
    request: Request,
    state_id: str = Path(pattern=STATE_ID_PATTERN),
    db_session: AsyncSession = Depends(get_db_session),
    service: CatalogSyncService = Depends(get_sync_service),
):
    data = await execute_sync_request(
        db_session,
        service=service,
        state_id=state_id,
        payload=SyncRunRequest(),
        trigger=WorkerRunTrigger.CRON,
    )
    return success_payload(request, data=data)
