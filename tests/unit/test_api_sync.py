from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import httpx
import pytest

from app.api.runtime_deps import get_mangadex_source, get_sync_service
from app.db.models import FeedKind, WorkerRunStatus, WorkerRunTrigger
from app.db.session import get_db_session
from app.main import app
from app.services.sync.application import CatalogSyncService
from app.services.sync.telemetry import list_worker_runs
from app.settings import settings
from tests.unit.helpers import manga_payload, seed_state, ts

ADMIN_HEADERS = {"X-Admin-Secret": "admin-pass"}


def _configure_secrets(admin_secret: str, cron_token: str) -> tuple[str, str]:
    previous = (settings.admin_secret, settings.cron_token)
    object.__setattr__(settings, "admin_secret", admin_secret)
    object.__setattr__(settings, "cron_token", cron_token)
    return previous


@pytest.fixture
def configured_secrets() -> Iterator[None]:
    previous = _configure_secrets("admin-pass", "cron-pass")
    yield
    _configure_secrets(*previous)


@pytest.fixture
def missing_secrets() -> Iterator[None]:
    previous = _configure_secrets("", "")
    yield
    _configure_secrets(*previous)


@pytest.fixture
async def api_client(session_factory, fake_source, memory_store) -> AsyncIterator[httpx.AsyncClient]:
    async def _db_session() -> AsyncIterator:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _db_session
    app.dependency_overrides[get_mangadex_source] = lambda: fake_source
    app.dependency_overrides[get_sync_service] = lambda: CatalogSyncService(
        source=fake_source,
        store=memory_store,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_admin_routes_require_configured_secret(api_client, missing_secrets) -> None:
    response = await api_client.post("/api/v1/admin/sync/catalog", headers=ADMIN_HEADERS)

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "admin_secret_not_configured"


@pytest.mark.asyncio
async def test_wrong_admin_secret_is_rejected(api_client, configured_secrets) -> None:
    response = await api_client.post(
        "/api/v1/admin/sync/catalog",
        headers={"X-Admin-Secret": "guess"},
    )

    assert response.status_code == 401
    assert response.json()["error"] == {
        "code": "auth_required",
        "message": "Unauthorized.",
        "details": None,
    }


@pytest.mark.asyncio
async def test_manual_sync_returns_counts(api_client, configured_secrets, db_session, fake_source) -> None:
    fake_source.manga = [manga_payload(f"md-{index}", updated_at=ts(index)) for index in range(1, 4)]
    await seed_state(db_session, page_limit=10)

    response = await api_client.post(
        "/api/v1/admin/sync/catalog",
        headers=ADMIN_HEADERS,
        json={"page_limit": 2, "max_pages": 1},
    )

    assert response.status_code == 200
    assert response.json()["meta"]["build_stamp"] == settings.sync_build_stamp
    data = response.json()["data"]
    assert data["ok"] is True
    assert data["processed"] == 2
    assert data["error_count"] == 0
    assert data["stop_reason"] == "max_pages"
    assert data["cursor_after"]["offset"] == 2
    assert data["cursor_after"]["page_limit"] == 2
    assert [item["external_id"] for item in data["sample"]] == ["md-1", "md-2"]


@pytest.mark.asyncio
async def test_unknown_state_is_not_found(api_client, configured_secrets) -> None:
    response = await api_client.post("/api/v1/admin/sync/nowhere", headers=ADMIN_HEADERS)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "crawl_state_not_found"


@pytest.mark.asyncio
async def test_unknown_request_fields_are_rejected(api_client, configured_secrets) -> None:
    response = await api_client.post(
        "/api/v1/admin/sync/catalog",
        headers=ADMIN_HEADERS,
        json={"pages": 3},
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_upstream_failure_maps_to_bad_gateway(
    api_client,
    configured_secrets,
    db_session,
    fake_source,
) -> None:
    fake_source.manga = [manga_payload("md-1", updated_at=ts(1))]
    fake_source.fail_list_on_call = 1
    await seed_state(db_session, page_limit=10)

    response = await api_client.post("/api/v1/admin/sync/catalog", headers=ADMIN_HEADERS)

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "upstream_fetch_failed"
    assert error["details"] == {"status_code": 503}


@pytest.mark.asyncio
async def test_peek_returns_next_page(api_client, configured_secrets, db_session, fake_source) -> None:
    fake_source.manga = [manga_payload("md-1", updated_at=ts(1), title="Vinland Saga")]
    await seed_state(db_session, page_limit=10)

    response = await api_client.post(
        "/api/v1/admin/sync/catalog",
        headers=ADMIN_HEADERS,
        json={"peek": True},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["peek"] is True
    assert data["feed"] == "manga"
    assert data["items"][0]["title"] == "Vinland Saga"


@pytest.mark.asyncio
async def test_single_refresh_by_id(api_client, configured_secrets, fake_source) -> None:
    fake_source.manga = [manga_payload("md-7", updated_at=ts(7))]

    response = await api_client.post(
        "/api/v1/admin/sync/catalog",
        headers=ADMIN_HEADERS,
        json={"md_id": "md-7"},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["mode"] == "single"
    assert data["trigger"] == "refresh"
    assert data["refreshed"] == 1


@pytest.mark.asyncio
async def test_cron_accepts_query_token(api_client, configured_secrets, db_session, fake_source) -> None:
    fake_source.chapters = []
    await seed_state(db_session, state_id="activity", feed=FeedKind.CHAPTER)

    rejected = await api_client.get("/api/v1/cron/sync/activity")
    accepted = await api_client.get("/api/v1/cron/sync/activity", params={"token": "cron-pass"})

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["data"]["trigger"] == "cron"
    assert accepted.json()["data"]["stop_reason"] == "exhausted"


@pytest.mark.asyncio
async def test_state_reset_and_listing(api_client, configured_secrets) -> None:
    created = await api_client.post(
        "/api/v1/admin/sync/states/catalog/reset",
        headers=ADMIN_HEADERS,
        json={"feed": "manga", "page_limit": 25, "rewind_to": "2024-05-01T12:00:00Z"},
    )
    listing = await api_client.get("/api/v1/admin/sync/states", headers=ADMIN_HEADERS)

    assert created.status_code == 200
    cursor = created.json()["data"]["cursor"]
    assert cursor["mode"] == "updatedat"
    assert cursor["page_limit"] == 25
    states = listing.json()["data"]["states"]
    assert [state["id"] for state in states] == ["catalog"]


@pytest.mark.asyncio
async def test_worker_runs_listing_filters_by_job(
    api_client,
    configured_secrets,
    db_session,
    fake_source,
) -> None:
    fake_source.manga = [manga_payload("md-1", updated_at=ts(1))]
    await seed_state(db_session, page_limit=10)
    await api_client.post("/api/v1/admin/sync/catalog", headers=ADMIN_HEADERS)
    await api_client.post("/api/v1/admin/aggregates/run", headers=ADMIN_HEADERS)

    response = await api_client.get(
        "/api/v1/admin/worker-runs",
        headers=ADMIN_HEADERS,
        params={"job": "sync"},
    )

    assert response.status_code == 200
    runs = response.json()["data"]["runs"]
    assert [run["job"] for run in runs] == ["sync"]
    assert runs[0]["processed"] == 1
    assert runs[0]["status"] == "success"


@pytest.mark.asyncio
async def test_rejected_sync_request_leaves_a_failed_run(api_client, configured_secrets, db_session) -> None:
    response = await api_client.post(
        "/api/v1/admin/sync/catalog",
        headers={"X-Admin-Secret": "guess"},
    )

    assert response.status_code == 401
    runs = await list_worker_runs(db_session, limit=5, job="sync")
    assert len(runs) == 1
    assert runs[0].status == WorkerRunStatus.FAILED.value
    assert runs[0].trigger == WorkerRunTrigger.MANUAL.value
    assert runs[0].state_id == "catalog"
    assert runs[0].descriptor["path"] == "/api/v1/admin/sync/catalog"
    assert runs[0].descriptor["auth"] == "admin_secret"
    assert runs[0].descriptor["status_code"] == 401
    assert runs[0].error_text == "ApiException: Unauthorized."


@pytest.mark.asyncio
async def test_unconfigured_cron_token_leaves_a_failed_run(api_client, missing_secrets, db_session) -> None:
    response = await api_client.get("/api/v1/cron/sync/activity", params={"token": "anything"})

    assert response.status_code == 503
    runs = await list_worker_runs(db_session, limit=5)
    assert [(run.job, run.state_id, run.trigger) for run in runs] == [
        ("sync", "activity", WorkerRunTrigger.CRON.value)
    ]
    assert runs[0].status == WorkerRunStatus.FAILED.value
    assert runs[0].descriptor["code"] == "cron_token_not_configured"
    assert runs[0].descriptor["auth"] == "cron_token"


@pytest.mark.asyncio
async def test_rejected_state_listing_records_no_run(api_client, configured_secrets, db_session) -> None:
    response = await api_client.get("/api/v1/admin/sync/states")

    assert response.status_code == 401
    assert await list_worker_runs(db_session, limit=5) == []
