from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import DeltaAction, FeedKind, WorkerRunTrigger
from app.logging_context import set_sync_state_id
from app.logging_utils import structured_log
from app.services.mangadex.client import MangaDexSource
from app.services.mangadex.normalize import normalize_titles
from app.services.mangadex.types import ChapterEvent, FeedPage, MangaRecord
from app.services.storage import ObjectStore
from app.services.sync.covers import CoverCacheLoader
from app.services.sync.cursor import (
    CursorState,
    PageMark,
    PageRequest,
    advance,
    is_behind_cursor,
    plan_request,
    prepare_for_fetch,
)
from app.services.sync.items import process_record
from app.services.sync.state_store import load_state, save_state
from app.services.sync.telemetry import (
    RunReport,
    log_run_summary,
    record_worker_run,
    record_worker_run_best_effort,
)
from app.services.sync.types import (
    SYNC_JOB_NAME,
    ItemOutcome,
    PeekItem,
    PeekResult,
    StopReason,
    SyncBudget,
    SyncRunResult,
)
from app.settings import settings

logger = logging.getLogger(__name__)


def _request_descriptor(request: PageRequest) -> dict[str, Any]:
    return {
        "mode": request.mode.value,
        "limit": request.limit,
        "offset": request.offset,
        "updated_at_since": request.updated_at_since.isoformat()
        if request.updated_at_since
        else None,
        "order": request.order,
    }


def _marks_for(page: FeedPage[Any]) -> list[PageMark]:
    return [PageMark(external_id=item.id, updated_at=item.updated_at) for item in page.items]


class CatalogSyncService:
    def __init__(self, *, source: MangaDexSource, store: ObjectStore) -> None:
        self._source = source
        self._covers = CoverCacheLoader(source=source, store=store)

    @property
    def covers(self) -> CoverCacheLoader:
        return self._covers

    async def _fetch_page(self, feed: FeedKind, request: PageRequest) -> FeedPage[Any]:
        fetch = self._source.list_manga if feed is FeedKind.MANGA else self._source.list_chapters
        return await fetch(
            limit=request.limit,
            offset=request.offset,
            updated_at_since=request.updated_at_since,
            order=request.order,
        )

    def _should_skip(self, request: PageRequest, updated_at: datetime | None, *, force: bool) -> bool:
        if force:
            return False
        if updated_at is None:
            return True
        return is_behind_cursor(request, updated_at)

    async def _process_one(
        self,
        db_session: AsyncSession,
        record: MangaRecord,
        *,
        state_id: str,
        report: RunReport,
    ) -> ItemOutcome | None:
        report.unique_ids.add(record.id)
        try:
            outcome = await process_record(
                db_session,
                record,
                state_id=state_id,
                covers=self._covers,
            )
        except Exception as exc:
            await db_session.rollback()
            self._record_item_error(report, external_id=record.id, exc=exc)
            return None
        report.enqueued += 1
        report.record_ok(outcome.as_dict())
        return outcome

    def _record_item_error(self, report: RunReport, *, external_id: str, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        report.record_error(external_id=external_id, message=message)
        structured_log(
            logger,
            "warning",
            "sync.item_failed",
            state_id=report.state_id,
            external_id=external_id,
            error_type=type(exc).__name__,
            error=message,
        )

    async def _process_manga_page(
        self,
        db_session: AsyncSession,
        page: FeedPage[MangaRecord],
        request: PageRequest,
        *,
        state_id: str,
        report: RunReport,
        force: bool,
    ) -> tuple[int, int]:
        refreshed = skipped = 0
        for record in page.items:
            if self._should_skip(request, record.updated_at, force=force):
                skipped += 1
                continue
            outcome = await self._process_one(db_session, record, state_id=state_id, report=report)
            if outcome is not None and outcome.action is DeltaAction.UPDATE:
                refreshed += 1
        return refreshed, skipped

    async def _process_chapter_page(
        self,
        db_session: AsyncSession,
        page: FeedPage[ChapterEvent],
        request: PageRequest,
        *,
        state_id: str,
        report: RunReport,
        force: bool,
    ) -> tuple[int, int]:
        refreshed = skipped = 0
        parent_ids: list[str] = []
        for event in page.items:
            if self._should_skip(request, event.updated_at, force=force) or not event.manga_id:
                skipped += 1
                continue
            if event.manga_id not in parent_ids:
                parent_ids.append(event.manga_id)

        for manga_id in parent_ids:
            try:
                record = await self._source.get_manga(manga_id)
            except Exception as exc:
                report.unique_ids.add(manga_id)
                self._record_item_error(report, external_id=manga_id, exc=exc)
                continue
            outcome = await self._process_one(db_session, record, state_id=state_id, report=report)
            if outcome is not None and outcome.action is DeltaAction.UPDATE:
                refreshed += 1
        return refreshed, skipped

    async def run(
        self,
        db_session: AsyncSession,
        *,
        state_id: str,
        budget: SyncBudget,
        trigger: WorkerRunTrigger = WorkerRunTrigger.MANUAL,
        force: bool = False,
    ) -> SyncRunResult:
        set_sync_state_id(state_id)
        started_at = datetime.now(timezone.utc)
        report = RunReport(job=SYNC_JOB_NAME, trigger=trigger, state_id=state_id)
        report.descriptor = {"budget": budget.as_dict(), "force": force}
        window_cap = settings.mangadex_window_cap

        refreshed = skipped = items_seen = 0
        mode_switched = False
        stop_reason: StopReason | None = None
        before: CursorState | None = None
        state: CursorState | None = None
        unsaved_progress = False

        try:
            before = await load_state(db_session, state_id=state_id)
            state = before
            if budget.page_limit is not None:
                state = replace(state, page_limit=budget.page_limit)
            report.descriptor.update({"feed": state.feed.value, "cursor": before.snapshot()})
            structured_log(
                logger,
                "info",
                "sync.run_started",
                state_id=state_id,
                feed=state.feed.value,
                mode=state.mode.value,
                offset=state.offset,
                trigger=trigger.value,
                force=force,
            )

            while True:
                if report.pages >= budget.max_pages:
                    stop_reason = StopReason.MAX_PAGES
                    break
                if report.elapsed_seconds() >= budget.time_budget_seconds:
                    stop_reason = StopReason.TIME_BUDGET
                    break
                remaining = budget.hard_cap - items_seen
                if remaining <= 0:
                    stop_reason = StopReason.HARD_CAP
                    break

                state, switched = prepare_for_fetch(state, window_cap=window_cap)
                if switched:
                    mode_switched = True
                    unsaved_progress = True
                    self._log_mode_switch(state)
                request = plan_request(state, item_budget=remaining)
                page = await self._fetch_page(state.feed, request)
                report.pages += 1
                items_seen += len(page.items)
                structured_log(
                    logger,
                    "info",
                    "sync.page_fetched",
                    state_id=state_id,
                    mode=request.mode.value,
                    offset=request.offset,
                    limit=request.limit,
                    item_count=len(page.items),
                    total=page.total,
                )

                if state.feed is FeedKind.MANGA:
                    page_refreshed, page_skipped = await self._process_manga_page(
                        db_session, page, request, state_id=state_id, report=report, force=force
                    )
                else:
                    page_refreshed, page_skipped = await self._process_chapter_page(
                        db_session, page, request, state_id=state_id, report=report, force=force
                    )
                refreshed += page_refreshed
                skipped += page_skipped

                step = advance(
                    state,
                    request,
                    _marks_for(page),
                    total=page.total,
                    window_cap=window_cap,
                    force=force,
                )
                state = step.state
                unsaved_progress = True
                if step.mode_switched:
                    mode_switched = True
                    self._log_mode_switch(state)
                if step.bucket_overflow:
                    structured_log(
                        logger,
                        "warning",
                        "sync.bucket_overflow",
                        state_id=state_id,
                        bucket=state.updated_at.isoformat() if state.updated_at else None,
                    )
                if step.exhausted:
                    stop_reason = StopReason.EXHAUSTED
                    break

            report.stop_reason = stop_reason.value if stop_reason else None
            unsaved_progress = False
            state = await save_state(db_session, state, processed_delta=report.processed)
        except Exception as exc:
            report.stop_reason = "error"
            if unsaved_progress and state is not None:
                await self._save_partial_progress(db_session, state, report=report)
            await record_worker_run_best_effort(db_session, report, fatal_error=exc)
            structured_log(
                logger,
                "error",
                "sync.run_failed",
                state_id=state_id,
                error_type=type(exc).__name__,
                error=str(exc),
                pages=report.pages,
                processed=report.processed,
            )
            raise

        run = await record_worker_run(db_session, report)
        log_run_summary(report, event="sync.run_completed")
        finished_at = datetime.now(timezone.utc)
        return SyncRunResult(
            ok=True,
            state_id=state_id,
            trigger=trigger.value,
            force=force,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=report.duration_ms(),
            processed=report.processed,
            refreshed=refreshed,
            skipped=skipped,
            error_count=report.error_count,
            pages=report.pages,
            mode=state.mode.value,
            mode_switched=mode_switched,
            stop_reason=report.stop_reason,
            cursor_before=before.snapshot() if before else None,
            cursor_after=state.snapshot(),
            sample=list(report.sample),
            errors=list(report.errors),
            run_id=run.id,
        )

    async def _save_partial_progress(
        self,
        db_session: AsyncSession,
        state: CursorState,
        *,
        report: RunReport,
    ) -> None:
        try:
            await db_session.rollback()
            await save_state(db_session, state, processed_delta=report.processed)
        except Exception:
            logger.exception(
                "sync.progress_save_failed",
                extra={
                    "event": "sync.progress_save_failed",
                    "state_id": state.state_id,
                },
            )

    def _log_mode_switch(self, state: CursorState) -> None:
        structured_log(
            logger,
            "info",
            "sync.mode_switched",
            state_id=state.state_id,
            mode=state.mode.value,
            bucket=state.updated_at.isoformat() if state.updated_at else None,
        )

    async def refresh_one(
        self,
        db_session: AsyncSession,
        *,
        external_id: str,
        state_id: str,
    ) -> SyncRunResult:
        """Re-process a single MangaDex id without moving any cursor."""
        set_sync_state_id(state_id)
        started_at = datetime.now(timezone.utc)
        report = RunReport(job=SYNC_JOB_NAME, trigger=WorkerRunTrigger.REFRESH, state_id=state_id)
        report.descriptor = {"external_id": external_id}
        try:
            record = await self._source.get_manga(external_id)
            report.pages = 1
        except Exception as exc:
            await record_worker_run_best_effort(db_session, report, fatal_error=exc)
            raise

        outcome = await self._process_one(db_session, record, state_id=state_id, report=report)
        run = await record_worker_run(db_session, report)
        log_run_summary(report, event="sync.refresh_completed")
        return SyncRunResult(
            ok=True,
            state_id=state_id,
            trigger=WorkerRunTrigger.REFRESH.value,
            force=True,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration_ms=report.duration_ms(),
            processed=report.processed,
            refreshed=1 if outcome is not None else 0,
            skipped=0,
            error_count=report.error_count,
            pages=report.pages,
            mode="single",
            mode_switched=False,
            stop_reason=None,
            cursor_before=None,
            cursor_after=None,
            sample=list(report.sample),
            errors=list(report.errors),
            run_id=run.id,
        )

    async def peek(
        self,
        db_session: AsyncSession,
        *,
        state_id: str,
        page_limit: int | None = None,
    ) -> PeekResult:
        """Fetch the page the next run would start with; nothing is written."""
        state = await load_state(db_session, state_id=state_id)
        if page_limit is not None:
            state = replace(state, page_limit=page_limit)
        state, _ = prepare_for_fetch(state, window_cap=settings.mangadex_window_cap)
        request = plan_request(state)
        page = await self._fetch_page(state.feed, request)

        items: list[PeekItem] = []
        for item in page.items:
            if isinstance(item, MangaRecord):
                items.append(
                    PeekItem(
                        external_id=item.id,
                        updated_at=item.updated_at,
                        title=normalize_titles(item).title,
                    )
                )
            else:
                items.append(
                    PeekItem(
                        external_id=item.id,
                        updated_at=item.updated_at,
                        title=None,
                        manga_id=item.manga_id,
                    )
                )
        return PeekResult(
            state_id=state_id,
            feed=state.feed.value,
            mode=state.mode.value,
            request=_request_descriptor(request),
            total=page.total,
            cursor=state.snapshot(),
            items=items,
        )
