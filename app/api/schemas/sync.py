from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.api.schemas.common import ApiMeta
from app.services.mangadex.client import MANGADEX_MAX_PAGE_LIMIT


class SyncRunRequest(BaseModel):
    page_limit: int | None = Field(default=None, ge=1, le=MANGADEX_MAX_PAGE_LIMIT)
    max_pages: int | None = Field(default=None, ge=1, le=200)
    time_budget_seconds: float | None = Field(default=None, gt=0, le=900)
    hard_cap: int | None = Field(default=None, ge=1, le=20_000)
    force: bool = False
    peek: bool = False
    md_id: str | None = Field(default=None, min_length=1, max_length=64)

    model_config = ConfigDict(extra="forbid")


class CursorSnapshotData(BaseModel):
    mode: str
    offset: int
    updated_at: datetime | None = None
    last_id: str | None = None
    page_limit: int
    total: int | None = None
    processed_count: int

    model_config = ConfigDict(extra="forbid")


class SyncItemData(BaseModel):
    external_id: str
    manga_id: int
    action: str
    changed_fields: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None
    cover: str

    model_config = ConfigDict(extra="forbid")


class SyncItemErrorData(BaseModel):
    external_id: str | None = None
    error: str

    model_config = ConfigDict(extra="forbid")


class SyncRunData(BaseModel):
    ok: bool
    state_id: str
    trigger: str
    force: bool
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    processed: int
    refreshed: int
    skipped: int
    error_count: int
    pages: int
    mode: str
    mode_switched: bool
    stop_reason: str | None = None
    cursor_before: CursorSnapshotData | None = None
    cursor_after: CursorSnapshotData | None = None
    sample: list[SyncItemData] = Field(default_factory=list)
    errors: list[SyncItemErrorData] = Field(default_factory=list)
    run_id: int | None = None

    model_config = ConfigDict(extra="forbid")


class PeekItemData(BaseModel):
    external_id: str
    updated_at: datetime | None = None
    title: str | None = None
    manga_id: str | None = None

    model_config = ConfigDict(extra="forbid")


class SyncPeekData(BaseModel):
    ok: bool = True
    peek: bool = True
    state_id: str
    feed: str
    mode: str
    request: dict[str, Any]
    total: int | None = None
    cursor: CursorSnapshotData
    items: list[PeekItemData]

    model_config = ConfigDict(extra="forbid")


class SyncRunEnvelope(BaseModel):
    data: SyncRunData | SyncPeekData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class CrawlStateData(BaseModel):
    id: str
    feed: str
    cursor: CursorSnapshotData
    version: int

    model_config = ConfigDict(extra="forbid")


class CrawlStatesData(BaseModel):
    states: list[CrawlStateData]

    model_config = ConfigDict(extra="forbid")


class CrawlStatesEnvelope(BaseModel):
    data: CrawlStatesData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class CrawlStateResetRequest(BaseModel):
    feed: str | None = Field(default=None, pattern="^(manga|chapter)$")
    page_limit: int | None = Field(default=None, ge=1, le=MANGADEX_MAX_PAGE_LIMIT)
    rewind_to: datetime | None = None

    model_config = ConfigDict(extra="forbid")


class CrawlStateEnvelope(BaseModel):
    data: CrawlStateData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")
