from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import (
    http_exception_handler as fastapi_http_exception_handler,
)
from fastapi.exception_handlers import (
    request_validation_exception_handler as fastapi_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError

from app.api.responses import error_response
from app.logging_utils import structured_log
from app.services.mangadex.errors import (
    MangaDexClientValidationError,
    MangaDexError,
    MangaDexHttpError,
)
from app.services.sync.errors import (
    CrawlStateConflictError,
    CrawlStateNotFoundError,
    SyncError,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/"
UPSTREAM_FAILED_CODE = "upstream_fetch_failed"

_HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "auth_required",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    502: "upstream_error",
    503: "service_unavailable",
}


class ApiException(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


def status_code_to_error_code(status_code: int) -> str:
    return _HTTP_ERROR_CODES.get(status_code, "error")


def api_error_for(exc: Exception) -> ApiException | None:
    """Translate a sync or upstream failure into its API error, or None if unknown."""
    if isinstance(exc, CrawlStateNotFoundError):
        return ApiException(status_code=404, code="crawl_state_not_found", message=str(exc))
    if isinstance(exc, CrawlStateConflictError):
        return ApiException(status_code=409, code="crawl_state_conflict", message=str(exc))
    if isinstance(exc, MangaDexClientValidationError):
        return ApiException(status_code=422, code="validation_error", message=str(exc))
    if isinstance(exc, MangaDexHttpError):
        return ApiException(
            status_code=502,
            code=UPSTREAM_FAILED_CODE,
            message=str(exc),
            details={"status_code": exc.status_code},
        )
    if isinstance(exc, (MangaDexError, httpx.HTTPError)):
        return ApiException(
            status_code=502,
            code=UPSTREAM_FAILED_CODE,
            message=str(exc) or type(exc).__name__,
        )
    return None


def _render(request: Request, exc: ApiException):
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def register_api_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiException)
    async def _handle_api_exception(request: Request, exc: ApiException):
        return _render(request, exc)

    async def _handle_domain_exception(request: Request, exc: Exception):
        api_error = api_error_for(exc) or ApiException(
            status_code=500,
            code="internal_error",
            message=str(exc) or type(exc).__name__,
        )
        structured_log(
            logger,
            "warning",
            "api.domain_error",
            path=request.url.path,
            error_code=api_error.code,
            error_type=type(exc).__name__,
        )
        return _render(request, api_error)

    for exc_class in (SyncError, MangaDexError, httpx.HTTPError):
        app.add_exception_handler(exc_class, _handle_domain_exception)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(request: Request, exc: HTTPException):
        if not request.url.path.startswith(API_PREFIX):
            return await fastapi_http_exception_handler(request, exc)
        return error_response(
            request,
            status_code=exc.status_code,
            code=status_code_to_error_code(exc.status_code),
            message=str(exc.detail) if exc.detail is not None else "Request failed.",
            details=exc.detail if isinstance(exc.detail, (dict, list)) else None,
        )

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_exception(request: Request, exc: RequestValidationError):
        if not request.url.path.startswith(API_PREFIX):
            return await fastapi_validation_exception_handler(request, exc)
        return error_response(
            request,
            status_code=422,
            code="validation_error",
            message="Request validation failed.",
            details=exc.errors(),
        )
