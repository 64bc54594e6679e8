from __future__ import annotations

from fastapi import Depends

from app.services.mangadex.client import MangaDexClient, MangaDexSource
from app.services.storage import ObjectStore, get_object_store
from app.services.sync.application import CatalogSyncService


def get_mangadex_source() -> MangaDexSource:
    return MangaDexClient()


def get_cover_store() -> ObjectStore:
    return get_object_store()


def get_sync_service(
    source: MangaDexSource = Depends(get_mangadex_source),
    store: ObjectStore = Depends(get_cover_store),
) -> CatalogSyncService:
    return CatalogSyncService(source=source, store=store)
