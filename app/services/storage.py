from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from app.services.sync.errors import StorageError
from app.settings import settings


class ObjectStore(Protocol):
    async def put(self, path: str, data: bytes, *, content_type: str) -> str: ...

    def public_url(self, path: str) -> str: ...


def _ensure_storage_root(storage_dir: str, *, create: bool) -> Path:
    root = Path(storage_dir).expanduser().resolve()
    if create:
        root.mkdir(parents=True, exist_ok=True)
    return root


def _resolve_storage_path(storage_root: Path, relative_path: str) -> Path:
    candidate = (storage_root / relative_path.lstrip("/")).resolve()
    if storage_root != candidate and storage_root not in candidate.parents:
        raise StorageError(f"Invalid storage path: {relative_path!r}")
    return candidate


def resolve_stored_file_path(*, storage_dir: str, relative_path: str) -> Path:
    root = _ensure_storage_root(storage_dir, create=False)
    return _resolve_storage_path(root, relative_path)


class LocalObjectStore:
    """Filesystem-backed store; files are served by the media router."""

    def __init__(self, *, storage_dir: str, public_base_url: str) -> None:
        self._storage_dir = storage_dir
        self._public_base_url = public_base_url.rstrip("/")

    async def put(self, path: str, data: bytes, *, content_type: str) -> str:
        root = _ensure_storage_root(self._storage_dir, create=True)
        target = _resolve_storage_path(root, path)
        try:
            await asyncio.to_thread(_write_file, target, data)
        except OSError as exc:
            raise StorageError(f"Could not write {path!r}: {exc}") from exc
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        return f"{self._public_base_url}/{path.lstrip('/')}"


def _write_file(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f".{target.name}.tmp")
    tmp_path.write_bytes(data)
    tmp_path.replace(target)


_object_store: ObjectStore | None = None


def get_object_store() -> ObjectStore:
    global _object_store
    if _object_store is None:
        _object_store = LocalObjectStore(
            storage_dir=settings.cover_storage_dir,
            public_base_url=settings.cover_public_base_url,
        )
    return _object_store


def set_object_store(store: ObjectStore | None) -> None:
    global _object_store
    _object_store = store
