from __future__ import annotations

from fastapi import APIRouter

from app.api.routers import cron, jobs, sync

router = APIRouter(prefix="/api/v1")
router.include_router(sync.router)
router.include_router(jobs.router)
router.include_router(cron.router)
