from __future__ import annotations

from collections.abc import Iterator

import pytest
from sqlalchemy import func, select

from app.db.models import (
    ArtJobStatus,
    CrawlMode,
    FeedKind,
    Manga,
    MangaArtJob,
    MangaDeltaLog,
    WorkerRun,
    WorkerRunStatus,
    WorkerRunTrigger,
)
from app.services.mangadex.errors import MangaDexHttpError
from app.services.mangadex.normalize import cover_candidates
from app.services.sync import items, state_store
from app.services.sync.application import CatalogSyncService
from app.services.sync.cursor import BUCKET_INCREMENT
from app.services.sync.errors import CrawlStateNotFoundError
from app.services.sync.telemetry import list_worker_runs
from app.services.sync.types import SyncBudget
from app.settings import settings
from tests.unit.helpers import (
    FakeMangaDexSource,
    MemoryObjectStore,
    chapter_payload,
    manga_payload,
    seed_state,
    ts,
)


def _catalog(count: int) -> list[dict]:
    return [manga_payload(f"md-{index:02d}", updated_at=ts(index)) for index in range(1, count + 1)]


def _service(source: FakeMangaDexSource, store: MemoryObjectStore | None = None) -> CatalogSyncService:
    return CatalogSyncService(source=source, store=store or MemoryObjectStore())


async def _count(db_session, model) -> int:
    return (await db_session.execute(select(func.count()).select_from(model))).scalar_one()


async def _delta_entries(db_session) -> list[MangaDeltaLog]:
    result = await db_session.execute(select(MangaDeltaLog).order_by(MangaDeltaLog.id.asc()))
    return list(result.scalars())


@pytest.fixture
def small_window() -> Iterator[int]:
    previous = settings.mangadex_window_cap
    object.__setattr__(settings, "mangadex_window_cap", 4)
    try:
        yield 4
    finally:
        object.__setattr__(settings, "mangadex_window_cap", previous)


@pytest.mark.asyncio
async def test_first_run_inserts_page_and_learns_total(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(3))
    await seed_state(db_session, page_limit=2)

    result = await _service(source).run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(max_pages=1),
    )

    assert result.ok is True
    assert result.processed == 2
    assert result.refreshed == 0
    assert result.pages == 1
    assert result.stop_reason == "max_pages"
    assert result.cursor_before["offset"] == 0
    assert result.cursor_after["offset"] == 2
    assert result.cursor_after["total"] == 3
    assert [entry["action"] for entry in result.sample] == ["insert", "insert"]
    assert "title" in result.sample[0]["changed_fields"]

    state = await state_store.load_state(db_session, state_id="catalog")
    assert state.offset == 2
    assert state.total == 3
    assert state.processed_count == 2

    entries = await _delta_entries(db_session)
    assert [(entry.external_id, entry.action) for entry in entries] == [
        ("md-01", "insert"),
        ("md-02", "insert"),
    ]
    assert entries[0].before_row is None
    jobs = (await db_session.execute(select(MangaArtJob))).scalars().all()
    assert {job.status for job in jobs} == {ArtJobStatus.PENDING.value}
    assert len(jobs) == 2

    run = (await list_worker_runs(db_session, limit=5))[0]
    assert run.id == result.run_id
    assert run.status == WorkerRunStatus.SUCCESS.value
    assert run.trigger == WorkerRunTrigger.MANUAL.value
    assert run.processed == 2
    assert run.unique_ids == 2
    assert run.descriptor["budget"]["max_pages"] == 1


@pytest.mark.asyncio
async def test_second_run_resumes_and_exhausts_feed(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(3))
    await seed_state(db_session, page_limit=2)
    service = _service(source)
    budget = SyncBudget.from_settings(max_pages=1)

    await service.run(db_session, state_id="catalog", budget=budget)
    result = await service.run(db_session, state_id="catalog", budget=budget)

    assert [call["offset"] for call in source.list_calls] == [0, 2]
    assert result.processed == 1
    assert result.stop_reason == "exhausted"
    assert result.mode_switched is True
    assert result.cursor_after["mode"] == CrawlMode.UPDATED_AT.value
    assert result.cursor_after["offset"] == 0
    assert result.cursor_after["updated_at"] == ts(3).isoformat()
    assert (await state_store.load_state(db_session, state_id="catalog")).processed_count == 3


@pytest.mark.asyncio
async def test_edit_after_exhausted_offset_pass_is_picked_up(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(3))
    await seed_state(db_session, page_limit=2)
    service = _service(source)
    budget = SyncBudget.from_settings(max_pages=10)
    first = await service.run(db_session, state_id="catalog", budget=budget)
    assert first.stop_reason == "exhausted"

    edited = manga_payload("md-01", updated_at=ts(100), title="Edited")
    source.manga = [source.manga[1], source.manga[2], edited]
    second = await service.run(db_session, state_id="catalog", budget=budget)

    assert source.list_calls[2]["updated_at_since"] == ts(3)
    assert "md-01" in [entry["external_id"] for entry in second.sample]
    manga = (
        await db_session.execute(select(Manga).where(Manga.title == "Edited"))
    ).scalar_one_or_none()
    assert manga is not None
    entry = (await _delta_entries(db_session))[-1]
    assert entry.external_id == "md-01"
    assert entry.changed_fields["title"] == {"from": "Title md-01", "to": "Edited"}


@pytest.mark.asyncio
async def test_failed_item_is_recorded_and_the_rest_still_land(db_session, monkeypatch) -> None:
    source = FakeMangaDexSource(manga=_catalog(10))
    await seed_state(db_session, page_limit=10)
    original = items.append_delta

    async def flaky_append_delta(session, **kwargs):
        if kwargs["external_id"] == "md-05":
            raise RuntimeError("delta write exploded")
        return await original(session, **kwargs)

    monkeypatch.setattr(items, "append_delta", flaky_append_delta)

    result = await _service(source).run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(),
    )

    assert result.ok is True
    assert result.processed == 9
    assert result.error_count == 1
    assert result.errors == [{"external_id": "md-05", "error": "delta write exploded"}]
    assert result.cursor_after["updated_at"] == ts(10).isoformat()
    assert result.stop_reason == "exhausted"
    assert await _count(db_session, MangaDeltaLog) == 9
    assert await _count(db_session, Manga) == 9

    run = await db_session.get(WorkerRun, result.run_id)
    assert run.status == WorkerRunStatus.PARTIAL_FAILURE.value
    assert run.error_count == 1
    assert run.unique_ids == 10


@pytest.mark.asyncio
async def test_reprocessing_unchanged_records_logs_empty_diffs(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(2))
    await seed_state(db_session, page_limit=5)
    service = _service(source)

    await service.run(db_session, state_id="catalog", budget=SyncBudget.from_settings())
    await state_store.reset_state(db_session, state_id="catalog")
    result = await service.run(db_session, state_id="catalog", budget=SyncBudget.from_settings())

    assert result.processed == 2
    assert result.refreshed == 2
    assert [entry["changed_fields"] for entry in result.sample] == [[], []]
    entries = await _delta_entries(db_session)
    assert [entry.action for entry in entries] == ["insert", "insert", "update", "update"]
    assert entries[2].changed_fields == {}
    assert entries[2].before_row == entries[2].after_row
    assert await _count(db_session, Manga) == 2
    assert await _count(db_session, MangaArtJob) == 2


@pytest.mark.asyncio
async def test_changed_upstream_field_appears_in_diff(db_session) -> None:
    source = FakeMangaDexSource(manga=[manga_payload("md-01", updated_at=ts(1), status="ongoing")])
    await seed_state(db_session, page_limit=5)
    service = _service(source)
    await service.run(db_session, state_id="catalog", budget=SyncBudget.from_settings())

    source.manga = [manga_payload("md-01", updated_at=ts(2), status="completed")]
    await state_store.reset_state(db_session, state_id="catalog")
    result = await service.run(db_session, state_id="catalog", budget=SyncBudget.from_settings())

    assert result.sample[0]["changed_fields"] == ["status"]
    entry = (await _delta_entries(db_session))[-1]
    assert entry.changed_fields == {"status": {"from": "ongoing", "to": "completed"}}


@pytest.mark.asyncio
async def test_bucket_mode_stays_put_when_nothing_is_new(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(3))
    await seed_state(db_session, page_limit=5)
    await state_store.reset_state(db_session, state_id="catalog", rewind_to=ts(0))
    service = _service(source)

    first = await service.run(db_session, state_id="catalog", budget=SyncBudget.from_settings())
    second = await service.run(db_session, state_id="catalog", budget=SyncBudget.from_settings())

    assert first.mode == CrawlMode.UPDATED_AT.value
    assert first.processed == 3
    assert first.cursor_after["updated_at"] == (ts(3) + BUCKET_INCREMENT).isoformat()
    assert second.processed == 0
    assert second.stop_reason == "exhausted"
    assert second.cursor_after == second.cursor_before


@pytest.mark.asyncio
async def test_forced_rerun_reprocesses_with_empty_diffs(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(3))
    await seed_state(db_session, page_limit=5)
    await state_store.reset_state(db_session, state_id="catalog", rewind_to=ts(0))
    service = _service(source)
    await service.run(db_session, state_id="catalog", budget=SyncBudget.from_settings())

    await state_store.reset_state(db_session, state_id="catalog", rewind_to=ts(0))
    result = await service.run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(),
        force=True,
    )

    assert result.force is True
    assert result.processed == 3
    assert result.refreshed == 3
    assert all(entry["changed_fields"] == [] for entry in result.sample)
    assert await _count(db_session, MangaDeltaLog) == 6


@pytest.mark.asyncio
async def test_run_switches_to_buckets_at_the_window_edge(db_session, small_window) -> None:
    source = FakeMangaDexSource(manga=_catalog(6))
    await seed_state(db_session, page_limit=2)

    result = await _service(source).run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(max_pages=10),
    )

    assert result.mode_switched is True
    assert result.mode == CrawlMode.UPDATED_AT.value
    assert result.pages == 4
    assert result.processed == 7
    assert result.refreshed == 1
    assert result.stop_reason == "exhausted"
    assert source.list_calls[2] == {"limit": 2, "offset": 0, "updated_at_since": ts(4)}
    assert all(call["offset"] + call["limit"] <= small_window for call in source.list_calls)
    assert result.cursor_after["updated_at"] == (ts(6) + BUCKET_INCREMENT).isoformat()
    assert await _count(db_session, Manga) == 6


@pytest.mark.asyncio
async def test_hard_cap_trims_the_last_request(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(5))
    await seed_state(db_session, page_limit=2)

    result = await _service(source).run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(hard_cap=3, max_pages=10),
    )

    assert [call["limit"] for call in source.list_calls] == [2, 1]
    assert result.processed == 3
    assert result.stop_reason == "hard_cap"
    assert result.cursor_after["offset"] == 3


@pytest.mark.asyncio
async def test_zero_time_budget_stops_before_fetching(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(2))
    await seed_state(db_session, page_limit=2)

    result = await _service(source).run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(time_budget_seconds=0),
    )

    assert source.list_calls == []
    assert result.stop_reason == "time_budget"
    assert result.pages == 0


@pytest.mark.asyncio
async def test_upstream_failure_keeps_completed_pages(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(4))
    source.fail_list_on_call = 2
    await seed_state(db_session, page_limit=2)

    with pytest.raises(MangaDexHttpError):
        await _service(source).run(
            db_session,
            state_id="catalog",
            budget=SyncBudget.from_settings(max_pages=5),
        )

    state = await state_store.load_state(db_session, state_id="catalog")
    assert state.offset == 2
    assert state.processed_count == 2
    runs = await list_worker_runs(db_session, limit=5, job="sync")
    assert len(runs) == 1
    assert runs[0].status == WorkerRunStatus.FAILED.value
    assert runs[0].stop_reason == "error"
    assert runs[0].processed == 2
    assert runs[0].error_text.startswith("MangaDexHttpError")


@pytest.mark.asyncio
async def test_missing_state_is_fatal(db_session) -> None:
    with pytest.raises(CrawlStateNotFoundError):
        await _service(FakeMangaDexSource()).run(
            db_session,
            state_id="catalog",
            budget=SyncBudget.from_settings(),
        )

    runs = await list_worker_runs(db_session, limit=5)
    assert [run.status for run in runs] == [WorkerRunStatus.FAILED.value]


@pytest.mark.asyncio
async def test_chapter_feed_hydrates_each_parent_once(db_session) -> None:
    source = FakeMangaDexSource(
        manga=[manga_payload("md-01", updated_at=ts(1))],
        chapters=[
            chapter_payload("ch-1", manga_id="md-01", updated_at=ts(10)),
            chapter_payload("ch-2", manga_id="md-01", updated_at=ts(11)),
            chapter_payload("ch-3", manga_id=None, updated_at=ts(12)),
            chapter_payload("ch-4", manga_id="md-gone", updated_at=ts(13)),
        ],
    )
    source.missing_ids.add("md-gone")
    await seed_state(db_session, state_id="activity", feed=FeedKind.CHAPTER, page_limit=10)

    result = await _service(source).run(
        db_session,
        state_id="activity",
        budget=SyncBudget.from_settings(),
    )

    assert source.get_calls == ["md-01", "md-gone"]
    assert result.processed == 1
    assert result.skipped == 1
    assert result.error_count == 1
    assert result.errors[0]["external_id"] == "md-gone"
    assert result.cursor_after["mode"] == CrawlMode.UPDATED_AT.value
    assert result.cursor_after["updated_at"] == ts(13).isoformat()
    entries = await _delta_entries(db_session)
    assert [(entry.state_id, entry.external_id) for entry in entries] == [("activity", "md-01")]


@pytest.mark.asyncio
async def test_main_cover_is_cached_after_delta_entry(db_session) -> None:
    payload = manga_payload("md-01", updated_at=ts(1), title="Blue Period", cover_file="bp.jpg")
    candidates = cover_candidates(
        uploads_base_url=settings.mangadex_uploads_base_url,
        manga_id="md-01",
        file_name="bp.jpg",
    )
    source = FakeMangaDexSource(manga=[payload], binaries={candidates[1]: (200, b"img", "image/jpeg")})
    store = MemoryObjectStore()
    await seed_state(db_session, page_limit=5)

    result = await _service(source, store).run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(),
    )

    assert result.sample[0]["cover"] == "cached"
    assert source.fetched_urls == candidates[:2]
    manga = (await db_session.execute(select(Manga))).scalar_one()
    assert manga.slug == "blue-period"
    assert manga.cover_image_url == candidates[0]
    assert manga.image_url == "/media/covers/blue-period/cover.jpg"
    assert "blue-period/cover.jpg" in store.objects


@pytest.mark.asyncio
async def test_cover_failure_keeps_delta_entry(db_session) -> None:
    payload = manga_payload("md-01", updated_at=ts(1), cover_file="missing.jpg")
    source = FakeMangaDexSource(manga=[payload])
    await seed_state(db_session, page_limit=5)

    result = await _service(source).run(
        db_session,
        state_id="catalog",
        budget=SyncBudget.from_settings(),
    )

    assert result.processed == 0
    assert result.error_count == 1
    assert "Failed to download cover" in result.errors[0]["error"]
    assert await _count(db_session, MangaDeltaLog) == 1
    assert await _count(db_session, MangaArtJob) == 1
    assert result.cursor_after["updated_at"] == ts(1).isoformat()


@pytest.mark.asyncio
async def test_peek_reads_without_writing(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(3))
    seeded = await seed_state(db_session, page_limit=2)

    peek = await _service(source).peek(db_session, state_id="catalog")

    assert peek.feed == "manga"
    assert peek.mode == "offset"
    assert peek.total == 3
    assert peek.request["limit"] == 2
    assert [(item.external_id, item.title) for item in peek.items] == [
        ("md-01", "Title md-01"),
        ("md-02", "Title md-02"),
    ]
    assert (await state_store.load_state(db_session, state_id="catalog")).version == seeded.version
    assert await _count(db_session, Manga) == 0
    assert await _count(db_session, WorkerRun) == 0


@pytest.mark.asyncio
async def test_refresh_one_reprocesses_a_single_title(db_session) -> None:
    source = FakeMangaDexSource(manga=_catalog(3))
    seeded = await seed_state(db_session, page_limit=2)

    result = await _service(source).refresh_one(db_session, external_id="md-03", state_id="catalog")

    assert result.mode == "single"
    assert result.trigger == WorkerRunTrigger.REFRESH.value
    assert result.processed == 1
    assert result.refreshed == 1
    assert result.sample[0]["external_id"] == "md-03"
    assert source.list_calls == []
    assert (await state_store.load_state(db_session, state_id="catalog")).version == seeded.version
    run = await db_session.get(WorkerRun, result.run_id)
    assert run.trigger == WorkerRunTrigger.REFRESH.value


@pytest.mark.asyncio
async def test_refresh_one_unknown_id_records_failed_run(db_session) -> None:
    source = FakeMangaDexSource()

    with pytest.raises(MangaDexHttpError):
        await _service(source).refresh_one(db_session, external_id="md-404", state_id="catalog")

    runs = await list_worker_runs(db_session, limit=5)
    assert runs[0].status == WorkerRunStatus.FAILED.value
    assert runs[0].descriptor == {"external_id": "md-404"}
