from __future__ import annotations

import mimetypes

from fastapi import APIRouter
from fastapi.responses import FileResponse

from app.api.errors import ApiException
from app.services.storage import resolve_stored_file_path
from app.services.sync.errors import StorageError
from app.settings import settings

router = APIRouter(tags=["media"])


def _cover_not_found() -> ApiException:
    return ApiException(
        status_code=404,
        code="cover_not_found",
        message="Cover not found.",
    )


@router.get("/media/covers/{path:path}")
async def get_cached_cover(path: str):
    try:
        image_path = resolve_stored_file_path(
            storage_dir=settings.cover_storage_dir,
            relative_path=path,
        )
    except StorageError as exc:
        raise _cover_not_found() from exc

    if not image_path.exists() or not image_path.is_file():
        raise _cover_not_found()

    media_type = mimetypes.guess_type(str(image_path))[0] or "application/octet-stream"
    return FileResponse(path=image_path, media_type=media_type)
