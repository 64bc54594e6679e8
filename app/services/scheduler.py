from __future__ import annotations

import asyncio
import logging

from app.db.models import WorkerRunTrigger
from app.db.session import get_session_factory
from app.logging_context import set_sync_state_id
from app.services.mangadex.client import MangaDexClient, MangaDexSource
from app.services.storage import ObjectStore, get_object_store
from app.services.sync import art_jobs as art_jobs_service
from app.services.sync.application import CatalogSyncService
from app.services.sync.types import SyncBudget

logger = logging.getLogger(__name__)


def parse_feed_ids(value: str) -> list[str]:
    feed_ids: list[str] = []
    for part in value.split(","):
        cleaned = part.strip()
        if cleaned and cleaned not in feed_ids:
            feed_ids.append(cleaned)
    return feed_ids


class SchedulerService:
    def __init__(
        self,
        *,
        enabled: bool,
        tick_seconds: int,
        state_ids: list[str],
        art_jobs_enabled: bool,
        art_jobs_batch_size: int,
        art_jobs_max_attempts: int,
        source: MangaDexSource | None = None,
        store: ObjectStore | None = None,
    ) -> None:
        self._enabled = enabled
        self._tick_seconds = max(5, int(tick_seconds))
        self._state_ids = list(state_ids)
        self._art_jobs_enabled = bool(art_jobs_enabled)
        self._art_jobs_batch_size = max(1, int(art_jobs_batch_size))
        self._art_jobs_max_attempts = max(1, int(art_jobs_max_attempts))
        self._source = source
        self._store = store
        self._task: asyncio.Task[None] | None = None

    def _service(self) -> CatalogSyncService:
        return CatalogSyncService(
            source=self._source or MangaDexClient(),
            store=self._store or get_object_store(),
        )

    async def start(self) -> None:
        if not self._enabled:
            logger.info(
                "scheduler.disabled",
                extra={
                    "event": "scheduler.disabled",
                },
            )
            return
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="mangasync-scheduler")
        logger.info(
            "scheduler.started",
            extra={
                "event": "scheduler.started",
                "tick_seconds": self._tick_seconds,
                "state_ids": self._state_ids,
                "art_jobs_enabled": self._art_jobs_enabled,
                "art_jobs_batch_size": self._art_jobs_batch_size,
            },
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("scheduler.stopped", extra={"event": "scheduler.stopped"})

    async def _run_loop(self) -> None:
        while True:
            try:
                await self._tick_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "scheduler.tick_failed",
                    extra={
                        "event": "scheduler.tick_failed",
                    },
                )
            await asyncio.sleep(float(self._tick_seconds))

    async def _tick_once(self) -> None:
        service = self._service()
        for state_id in self._state_ids:
            await self._run_feed(service, state_id)
        if self._art_jobs_enabled:
            await self._drain_art_jobs(service)

    async def _run_feed(self, service: CatalogSyncService, state_id: str) -> None:
        session_factory = get_session_factory()
        async with session_factory() as session:
            try:
                result = await service.run(
                    session,
                    state_id=state_id,
                    budget=SyncBudget.from_settings(),
                    trigger=WorkerRunTrigger.SCHEDULED,
                )
            except Exception:
                await session.rollback()
                logger.exception(
                    "scheduler.sync_failed",
                    extra={
                        "event": "scheduler.sync_failed",
                        "state_id": state_id,
                    },
                )
                return
            finally:
                set_sync_state_id(None)

        logger.info(
            "scheduler.sync_completed",
            extra={
                "event": "scheduler.sync_completed",
                "state_id": state_id,
                "run_id": result.run_id,
                "processed": result.processed,
                "error_count": result.error_count,
                "stop_reason": result.stop_reason,
            },
        )

    async def _drain_art_jobs(self, service: CatalogSyncService) -> None:
        session_factory = get_session_factory()
        async with session_factory() as session:
            try:
                result = await art_jobs_service.run_art_jobs(
                    session,
                    loader=service.covers,
                    batch_size=self._art_jobs_batch_size,
                    max_attempts=self._art_jobs_max_attempts,
                    trigger=WorkerRunTrigger.SCHEDULED,
                )
            except Exception:
                await session.rollback()
                logger.exception(
                    "scheduler.art_jobs_failed",
                    extra={
                        "event": "scheduler.art_jobs_failed",
                    },
                )
                return

        if result.claimed:
            logger.info(
                "scheduler.art_jobs_completed",
                extra={
                    "event": "scheduler.art_jobs_completed",
                    "claimed": result.claimed,
                    "done": result.done,
                    "failed": result.failed,
                    "requeued": result.requeued,
                },
            )
