from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from app.db.models import DeltaAction
from app.services.mangadex.client import MANGADEX_MAX_PAGE_LIMIT
from app.settings import settings

SYNC_JOB_NAME = "sync"


class StopReason(StrEnum):
    EXHAUSTED = "exhausted"
    MAX_PAGES = "max_pages"
    TIME_BUDGET = "time_budget"
    HARD_CAP = "hard_cap"


class CoverOutcome(StrEnum):
    CACHED = "cached"
    PRESENT = "present"
    NONE = "none"


@dataclass(frozen=True)
class SyncBudget:
    page_limit: int | None
    max_pages: int
    time_budget_seconds: float
    hard_cap: int

    @classmethod
    def from_settings(
        cls,
        *,
        page_limit: int | None = None,
        max_pages: int | None = None,
        time_budget_seconds: float | None = None,
        hard_cap: int | None = None,
    ) -> SyncBudget:
        if page_limit is not None:
            page_limit = max(1, min(int(page_limit), MANGADEX_MAX_PAGE_LIMIT))
        return cls(
            page_limit=page_limit,
            max_pages=max(1, int(max_pages if max_pages is not None else settings.sync_default_max_pages)),
            time_budget_seconds=max(
                0.0,
                float(
                    time_budget_seconds
                    if time_budget_seconds is not None
                    else settings.sync_default_time_budget_seconds
                ),
            ),
            hard_cap=max(1, int(hard_cap if hard_cap is not None else settings.sync_default_hard_cap)),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "page_limit": self.page_limit,
            "max_pages": self.max_pages,
            "time_budget_seconds": self.time_budget_seconds,
            "hard_cap": self.hard_cap,
        }


@dataclass(frozen=True)
class ItemOutcome:
    external_id: str
    manga_id: int
    action: DeltaAction
    changed_fields: list[str]
    updated_at: datetime | None
    cover: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "manga_id": self.manga_id,
            "action": self.action.value,
            "changed_fields": self.changed_fields,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "cover": self.cover,
        }


@dataclass
class SyncRunResult:
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
    stop_reason: str | None
    cursor_before: dict[str, Any] | None
    cursor_after: dict[str, Any] | None
    sample: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    run_id: int | None = None


@dataclass(frozen=True)
class PeekItem:
    external_id: str
    updated_at: datetime | None
    title: str | None
    manga_id: str | None = None


@dataclass(frozen=True)
class PeekResult:
    state_id: str
    feed: str
    mode: str
    request: dict[str, Any]
    total: int | None
    cursor: dict[str, Any]
    items: list[PeekItem]
