from app.api.schemas.common import (
    ApiErrorData,
    ApiErrorEnvelope,
    ApiMeta,
)
from app.api.schemas.jobs import (
    AggregateRunData,
    AggregateRunEnvelope,
    AggregateRunRequest,
    ArtJobsRunData,
    ArtJobsRunEnvelope,
    ArtJobsRunRequest,
    WorkerRunData,
    WorkerRunsData,
    WorkerRunsEnvelope,
)
from app.api.schemas.sync import (
    CrawlStateData,
    CrawlStateEnvelope,
    CrawlStateResetRequest,
    CrawlStatesData,
    CrawlStatesEnvelope,
    CursorSnapshotData,
    PeekItemData,
    SyncItemData,
    SyncItemErrorData,
    SyncPeekData,
    SyncRunData,
    SyncRunEnvelope,
    SyncRunRequest,
)

__all__ = [
    "AggregateRunData",
    "AggregateRunEnvelope",
    "AggregateRunRequest",
    "ApiErrorData",
    "ApiErrorEnvelope",
    "ApiMeta",
    "ArtJobsRunData",
    "ArtJobsRunEnvelope",
    "ArtJobsRunRequest",
    "CrawlStateData",
    "CrawlStateEnvelope",
    "CrawlStateResetRequest",
    "CrawlStatesData",
    "CrawlStatesEnvelope",
    "CursorSnapshotData",
    "PeekItemData",
    "SyncItemData",
    "SyncItemErrorData",
    "SyncPeekData",
    "SyncRunData",
    "SyncRunEnvelope",
    "SyncRunRequest",
    "WorkerRunData",
    "WorkerRunsData",
    "WorkerRunsEnvelope",
]
