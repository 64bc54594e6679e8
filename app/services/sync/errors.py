from __future__ import annotations


class SyncError(Exception):
    """Base error for the catalog sync pipeline."""


class CrawlStateNotFoundError(SyncError):
    def __init__(self, state_id: str) -> None:
        self.state_id = state_id
        super().__init__(f"Crawl state {state_id!r} does not exist.")


class CrawlStateConflictError(SyncError):
    def __init__(self, state_id: str, *, expected_version: int) -> None:
        self.state_id = state_id
        self.expected_version = expected_version
        super().__init__(
            f"Crawl state {state_id!r} changed while this run held version {expected_version}."
        )


class CoverCandidatesExhaustedError(SyncError):
    def __init__(self, *, last_url: str | None, last_status: int | None) -> None:
        self.last_url = last_url
        self.last_status = last_status
        super().__init__(
            f"Failed to download cover from all candidates. Last: {last_url} (status {last_status})"
        )


class StorageError(SyncError):
    """Object storage rejected a write or a path."""
