from __future__ import annotations

import logging
import re
import secrets

from fastapi import Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import ApiException
from app.db.models import WorkerRunTrigger
from app.db.session import get_db_session
from app.logging_utils import structured_log
from app.services.sync.telemetry import RunReport, record_worker_run_best_effort
from app.services.sync.types import SYNC_JOB_NAME
from app.settings import settings

ADMIN_SECRET_HEADER = "X-Admin-Secret"
CRON_TOKEN_HEADER = "X-Cron-Token"

# /api/v1/admin/sync/{id} and /api/v1/cron/sync/{id}; state management paths excluded.
_SYNC_RUN_PATH_RE = re.compile(r"^/api/v1/(?:admin|cron)/sync/(?P<state_id>[A-Za-z0-9_.-]{1,64})$")
_STATES_COLLECTION = "states"

logger = logging.getLogger(__name__)


def _matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def sync_run_state_id(path: str) -> str | None:
    match = _SYNC_RUN_PATH_RE.match(path)
    if match is None or match.group("state_id") == _STATES_COLLECTION:
        return None
    return match.group("state_id")


async def _record_rejected_run(
    request: Request,
    db_session: AsyncSession,
    *,
    error: ApiException,
    auth: str,
    trigger: WorkerRunTrigger,
) -> None:
    """Leave a failed sync run behind when a guard turns a sync request away."""
    state_id = sync_run_state_id(request.url.path)
    if state_id is None:
        return
    report = RunReport(
        job=SYNC_JOB_NAME,
        trigger=trigger,
        state_id=state_id,
        descriptor={
            "path": request.url.path,
            "method": request.method,
            "auth": auth,
            "status_code": error.status_code,
            "code": error.code,
        },
    )
    report.stop_reason = "error"
    await record_worker_run_best_effort(db_session, report, fatal_error=error)


def _reject(request: Request, *, kind: str) -> ApiException:
    structured_log(
        logger,
        "warning",
        "api.auth_rejected",
        kind=kind,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
    )
    return ApiException(
        status_code=401,
        code="auth_required",
        message="Unauthorized.",
    )


async def require_admin_secret(
    request: Request,
    x_admin_secret: str | None = Header(default=None, alias=ADMIN_SECRET_HEADER),
    db_session: AsyncSession = Depends(get_db_session),
) -> None:
    error: ApiException | None = None
    if not settings.admin_secret:
        error = ApiException(
            status_code=503,
            code="admin_secret_not_configured",
            message="ADMIN_SECRET is not configured.",
        )
    elif not _matches(x_admin_secret, settings.admin_secret):
        error = _reject(request, kind="admin_secret")
    if error is not None:
        await _record_rejected_run(
            request,
            db_session,
            error=error,
            auth="admin_secret",
            trigger=WorkerRunTrigger.MANUAL,
        )
        raise error


async def require_cron_token(
    request: Request,
    x_cron_token: str | None = Header(default=None, alias=CRON_TOKEN_HEADER),
    token: str | None = Query(default=None),
    db_session: AsyncSession = Depends(get_db_session),
) -> None:
    error: ApiException | None = None
    if not settings.cron_token:
        error = ApiException(
            status_code=503,
            code="cron_token_not_configured",
            message="CRON_TOKEN is not configured.",
        )
    elif not _matches(x_cron_token or token, settings.cron_token):
        error = _reject(request, kind="cron_token")
    if error is not None:
        await _record_rejected_run(
            request,
            db_session,
            error=error,
            auth="cron_token",
            trigger=WorkerRunTrigger.CRON,
        )
        raise error
