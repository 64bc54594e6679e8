from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.api.schemas.common import ApiMeta


class WorkerRunData(BaseModel):
    id: int
    job: str
    state_id: str | None = None
    trigger: str
    status: str
    build_stamp: str | None = None
    descriptor: dict[str, Any] = Field(default_factory=dict)
    unique_ids: int
    enqueued: int
    claimed: int
    processed: int
    ok_count: int
    error_count: int
    pages: int
    stop_reason: str | None = None
    duration_ms: int
    sample: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    error_text: str | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(extra="forbid")


class WorkerRunsData(BaseModel):
    runs: list[WorkerRunData]

    model_config = ConfigDict(extra="forbid")


class WorkerRunsEnvelope(BaseModel):
    data: WorkerRunsData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class ArtJobsRunRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=200)

    model_config = ConfigDict(extra="forbid")


class ArtJobsRunData(BaseModel):
    ok: bool = True
    claimed: int
    done: int
    failed: int
    requeued: int
    covers_cached: int
    run_id: int | None = None

    model_config = ConfigDict(extra="forbid")


class ArtJobsRunEnvelope(BaseModel):
    data: ArtJobsRunData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class AggregateRunRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=200)

    model_config = ConfigDict(extra="forbid")


class AggregateRunData(BaseModel):
    ok: bool = True
    picked: int
    updated: int
    error_count: int
    run_id: int | None = None

    model_config = ConfigDict(extra="forbid")


class AggregateRunEnvelope(BaseModel):
    data: AggregateRunData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")
