from __future__ import annotations

from dataclasses import asdict
from typing import Any

from app.db.models import WorkerRun
from app.services.sync.cursor import CursorState
from app.services.sync.types import PeekResult, SyncRunResult


def serialize_state(state: CursorState) -> dict[str, Any]:
    return {
        "id": state.state_id,
        "feed": state.feed.value,
        "cursor": state.snapshot(),
        "version": state.version,
    }


def serialize_run_result(result: SyncRunResult) -> dict[str, Any]:
    return asdict(result)


def serialize_peek(result: PeekResult) -> dict[str, Any]:
    return {"ok": True, "peek": True, **asdict(result)}


def serialize_worker_run(run: WorkerRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "job": run.job,
        "state_id": run.state_id,
        "trigger": run.trigger,
        "status": run.status,
        "build_stamp": run.build_stamp,
        "descriptor": run.descriptor or {},
        "unique_ids": run.unique_ids,
        "enqueued": run.enqueued,
        "claimed": run.claimed,
        "processed": run.processed,
        "ok_count": run.ok_count,
        "error_count": run.error_count,
        "pages": run.pages,
        "stop_reason": run.stop_reason,
        "duration_ms": run.duration_ms,
        "sample": run.sample or [],
        "errors": run.errors or [],
        "error_text": run.error_text,
        "created_at": run.created_at,
    }
