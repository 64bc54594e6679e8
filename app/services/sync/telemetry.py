from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import WorkerRun, WorkerRunStatus, WorkerRunTrigger
from app.logging_utils import structured_log
from app.settings import settings

MAX_ERROR_TEXT_LENGTH = 2000

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Mutable per-invocation accumulator, flushed into one worker_runs row."""

    job: str
    trigger: WorkerRunTrigger
    state_id: str | None = None
    sample_size: int = field(default_factory=lambda: max(1, int(settings.sync_sample_size)))
    descriptor: dict[str, Any] = field(default_factory=dict)
    unique_ids: set[str] = field(default_factory=set)
    enqueued: int = 0
    claimed: int = 0
    processed: int = 0
    ok_count: int = 0
    error_count: int = 0
    pages: int = 0
    stop_reason: str | None = None
    sample: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_monotonic: float = field(default_factory=time.monotonic)

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic

    def duration_ms(self) -> int:
        return int(self.elapsed_seconds() * 1000)

    def record_ok(self, entry: dict[str, Any]) -> None:
        self.processed += 1
        self.ok_count += 1
        if len(self.sample) < self.sample_size:
            self.sample.append(entry)

    def record_error(self, *, external_id: str | None, message: str, **extra: Any) -> None:
        self.error_count += 1
        if len(self.errors) < self.sample_size:
            self.errors.append({"external_id": external_id, "error": message, **extra})

    def status(self, *, fatal: bool = False) -> WorkerRunStatus:
        if fatal:
            return WorkerRunStatus.FAILED
        if self.error_count:
            return WorkerRunStatus.PARTIAL_FAILURE
        return WorkerRunStatus.SUCCESS


async def record_worker_run(
    db_session: AsyncSession,
    report: RunReport,
    *,
    fatal_error: BaseException | None = None,
) -> WorkerRun:
    error_text = None
    if fatal_error is not None:
        error_text = f"{type(fatal_error).__name__}: {fatal_error}"[:MAX_ERROR_TEXT_LENGTH]
    run = WorkerRun(
        job=report.job,
        state_id=report.state_id,
        trigger=report.trigger.value,
        status=report.status(fatal=fatal_error is not None).value,
        build_stamp=settings.sync_build_stamp,
        descriptor=report.descriptor,
        unique_ids=len(report.unique_ids),
        enqueued=report.enqueued,
        claimed=report.claimed,
        processed=report.processed,
        ok_count=report.ok_count,
        error_count=report.error_count,
        pages=report.pages,
        stop_reason=report.stop_reason,
        duration_ms=report.duration_ms(),
        sample=report.sample,
        errors=report.errors,
        error_text=error_text,
    )
    db_session.add(run)
    await db_session.commit()
    return run


async def record_worker_run_best_effort(
    db_session: AsyncSession,
    report: RunReport,
    *,
    fatal_error: BaseException,
) -> WorkerRun | None:
    """Record a failed run without ever replacing ``fatal_error``."""
    try:
        await db_session.rollback()
        return await record_worker_run(db_session, report, fatal_error=fatal_error)
    except Exception:
        logger.exception(
            "sync.telemetry_write_failed",
            extra={
                "event": "sync.telemetry_write_failed",
                "job": report.job,
                "state_id": report.state_id,
            },
        )
        return None


async def list_worker_runs(
    db_session: AsyncSession,
    *,
    limit: int,
    job: str | None = None,
    state_id: str | None = None,
) -> list[WorkerRun]:
    stmt = select(WorkerRun)
    if job:
        stmt = stmt.where(WorkerRun.job == job)
    if state_id:
        stmt = stmt.where(WorkerRun.state_id == state_id)
    result = await db_session.execute(stmt.order_by(WorkerRun.id.desc()).limit(max(1, int(limit))))
    return list(result.scalars())


def log_run_summary(report: RunReport, *, event: str) -> None:
    structured_log(
        logger,
        "info",
        event,
        job=report.job,
        state_id=report.state_id,
        trigger=report.trigger.value,
        pages=report.pages,
        processed=report.processed,
        error_count=report.error_count,
        stop_reason=report.stop_reason,
        duration_ms=report.duration_ms(),
    )
