from __future__ import annotations

from secrets import token_urlsafe
import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.logging_context import set_request_id, set_sync_state_id
from app.logging_utils import structured_log

REQUEST_ID_HEADER = "X-Request-ID"
CACHE_CONTROL_HEADER = "Cache-Control"
COVER_CACHE_CONTROL = "public, max-age=86400"

# /api/v1/admin/sync/{id}, /api/v1/cron/sync/{id}, /api/v1/admin/sync/states/{id}/reset
_SYNC_PATH_RE = re.compile(
    r"^/api/v1/(?:admin|cron)/sync/(?:states/)?(?P<state_id>[A-Za-z0-9_.-]{1,64})(?:/reset)?$"
)
_STATES_COLLECTION = "states"

logger = logging.getLogger(__name__)


def state_id_from_path(path: str) -> str | None:
    match = _SYNC_PATH_RE.match(path)
    if match is None or match.group("state_id") == _STATES_COLLECTION:
        return None
    return match.group("state_id")


def cache_control_for(path: str, *, status_code: int) -> str | None:
    if path.startswith("/api/"):
        return "no-store"
    if path.startswith("/media/covers/") and status_code < 400:
        return COVER_CACHE_CONTROL
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and its crawl state, and log its outcome."""

    def __init__(
        self,
        app,
        *,
        log_requests: bool = True,
        skip_paths: tuple[str, ...] = (),
    ) -> None:
        super().__init__(app)
        self._log_requests = log_requests
        self._skip_paths = tuple(path for path in skip_paths if path)

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        request_id = request.headers.get(REQUEST_ID_HEADER) or token_urlsafe(12)
        request.state.request_id = request_id
        set_request_id(request_id)
        set_sync_state_id(state_id_from_path(path))

        should_log = self._log_requests and not any(path.startswith(prefix) for prefix in self._skip_paths)
        start = time.perf_counter()
        if should_log:
            structured_log(logger, "debug", "request.started", method=request.method, path=path)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request.failed",
                extra={
                    "method": request.method,
                    "path": path,
                    "duration_ms": _elapsed_ms(start),
                },
            )
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            cache_control = cache_control_for(path, status_code=response.status_code)
            if cache_control:
                response.headers.setdefault(CACHE_CONTROL_HEADER, cache_control)
            if should_log:
                structured_log(
                    logger,
                    "info" if response.status_code >= 400 else "debug",
                    "request.completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    duration_ms=_elapsed_ms(start),
                )
            return response
        finally:
            set_request_id(None)
            set_sync_state_id(None)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def parse_skip_paths(raw_value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw_value.split(",") if part.strip())
