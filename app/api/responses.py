from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.settings import settings


def response_meta(request: Request) -> dict[str, Any]:
    return {
        "request_id": getattr(getattr(request, "state", None), "request_id", None),
        "build_stamp": settings.sync_build_stamp,
    }


def success_payload(request: Request, *, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": response_meta(request)}


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    payload = {
        "error": {"code": code, "message": message, "details": details},
        "meta": response_meta(request),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))
