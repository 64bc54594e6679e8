from __future__ import annotations

import pytest

from app.db.models import WorkerRunStatus, WorkerRunTrigger
from app.services.scheduler import SchedulerService, parse_feed_ids
from app.services.sync.telemetry import list_worker_runs
from tests.unit.helpers import manga_payload, seed_state, ts


def _scheduler(fake_source, memory_store, *, state_ids: list[str]) -> SchedulerService:
    return SchedulerService(
        enabled=True,
        tick_seconds=60,
        state_ids=state_ids,
        art_jobs_enabled=True,
        art_jobs_batch_size=5,
        art_jobs_max_attempts=3,
        source=fake_source,
        store=memory_store,
    )


def test_parse_feed_ids_dedupes_in_order() -> None:
    assert parse_feed_ids(" catalog, activity,,catalog ") == ["catalog", "activity"]


@pytest.mark.asyncio
async def test_tick_runs_every_feed_and_drains_art_jobs(
    monkeypatch,
    session_factory,
    db_session,
    fake_source,
    memory_store,
) -> None:
    fake_source.manga = [manga_payload("md-1", updated_at=ts(1))]
    await seed_state(db_session, page_limit=10)
    monkeypatch.setattr("app.services.scheduler.get_session_factory", lambda: session_factory)

    await _scheduler(fake_source, memory_store, state_ids=["catalog", "missing"])._tick_once()

    runs = await list_worker_runs(db_session, limit=10)
    by_state = {(run.job, run.state_id): run for run in runs}
    assert by_state[("sync", "catalog")].status == WorkerRunStatus.SUCCESS.value
    assert by_state[("sync", "catalog")].trigger == WorkerRunTrigger.SCHEDULED.value
    assert by_state[("sync", "missing")].status == WorkerRunStatus.FAILED.value
    art_runs = [run for run in runs if run.job == "art_jobs"]
    assert len(art_runs) == 1
    assert art_runs[0].claimed == 1


@pytest.mark.asyncio
async def test_disabled_scheduler_never_starts(fake_source, memory_store) -> None:
    scheduler = SchedulerService(
        enabled=False,
        tick_seconds=60,
        state_ids=["catalog"],
        art_jobs_enabled=False,
        art_jobs_batch_size=1,
        art_jobs_max_attempts=1,
        source=fake_source,
        store=memory_store,
    )

    await scheduler.start()

    assert scheduler._task is None
    await scheduler.stop()
