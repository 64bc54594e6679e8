"""Dual-mode feed cursor.

Offset pagination on the catalog API stops working once ``offset + limit``
passes a fixed window. The cursor walks the feed by offset until that window
is reached and then continues in ``updatedat`` mode: items ordered by
modification time, addressed as ``(bucket timestamp, offset inside bucket)``.
Finishing the offset walk also hands over to ``updatedat`` mode, seeded with
the newest timestamp seen, so later runs pick up edits instead of re-reading
the end of the catalog.

Every function here is pure. Callers pass a ``CursorState`` in and receive a
new one back; persisting it is the state store's job.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Sequence

from app.db.models import CrawlMode, FeedKind

BUCKET_INCREMENT = timedelta(milliseconds=1)


@dataclass(frozen=True)
class CursorState:
    state_id: str
    feed: FeedKind
    mode: CrawlMode
    offset: int
    updated_at: datetime | None
    last_id: str | None
    page_limit: int
    total: int | None
    processed_count: int
    version: int = 0

    def position(self) -> tuple[datetime | None, int]:
        return (self.updated_at, self.offset)

    def snapshot(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "offset": self.offset,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_id": self.last_id,
            "page_limit": self.page_limit,
            "total": self.total,
            "processed_count": self.processed_count,
        }


@dataclass(frozen=True)
class PageRequest:
    mode: CrawlMode
    limit: int
    offset: int
    updated_at_since: datetime | None
    order: str = "asc"


@dataclass(frozen=True)
class PageMark:
    """The two facts about a fetched item that move the cursor."""

    external_id: str
    updated_at: datetime | None


@dataclass(frozen=True)
class CursorAdvance:
    state: CursorState
    exhausted: bool
    mode_switched: bool = False
    bucket_overflow: bool = False


def exceeds_window(*, offset: int, limit: int, window_cap: int) -> bool:
    return offset + limit > window_cap


def prepare_for_fetch(state: CursorState, *, window_cap: int) -> tuple[CursorState, bool]:
    """Switch to bucket mode before a fetch that would leave the offset window."""
    if state.mode is CrawlMode.OFFSET and exceeds_window(
        offset=state.offset,
        limit=state.page_limit,
        window_cap=window_cap,
    ):
        return _switch_to_buckets(state, seed=state.updated_at), True
    return state, False


def plan_request(state: CursorState, *, item_budget: int | None = None) -> PageRequest:
    limit = state.page_limit
    if item_budget is not None:
        limit = max(1, min(limit, item_budget))
    if state.mode is CrawlMode.OFFSET:
        return PageRequest(
            mode=state.mode,
            limit=limit,
            offset=state.offset,
            updated_at_since=None,
        )
    return PageRequest(
        mode=state.mode,
        limit=limit,
        offset=state.offset,
        updated_at_since=state.updated_at,
    )


def advance(
    state: CursorState,
    request: PageRequest,
    marks: Sequence[PageMark],
    *,
    total: int | None,
    window_cap: int,
    force: bool = False,
) -> CursorAdvance:
    if state.mode is CrawlMode.OFFSET:
        return _advance_offset(state, request, marks, total=total, window_cap=window_cap)
    return _advance_bucket(state, request, marks, window_cap=window_cap, force=force)


def reset_cursor(state: CursorState, *, rewind_to: datetime | None = None) -> CursorState:
    if rewind_to is None:
        return replace(
            state,
            mode=CrawlMode.OFFSET,
            offset=0,
            updated_at=None,
            last_id=None,
            total=None,
        )
    return replace(
        state,
        mode=CrawlMode.UPDATED_AT,
        offset=0,
        updated_at=rewind_to,
        last_id=None,
    )


def is_behind_cursor(request: PageRequest, updated_at: datetime | None) -> bool:
    """True for items older than the bucket being read (stale upstream data)."""
    if request.mode is not CrawlMode.UPDATED_AT or request.updated_at_since is None:
        return False
    if updated_at is None:
        return False
    return updated_at < request.updated_at_since


def _switch_to_buckets(state: CursorState, *, seed: datetime | None) -> CursorState:
    return replace(state, mode=CrawlMode.UPDATED_AT, offset=0, updated_at=seed)


def _last_timestamp(marks: Sequence[PageMark]) -> datetime | None:
    for mark in reversed(marks):
        if mark.updated_at is not None:
            return mark.updated_at
    return None


def _advance_offset(
    state: CursorState,
    request: PageRequest,
    marks: Sequence[PageMark],
    *,
    total: int | None,
    window_cap: int,
) -> CursorAdvance:
    known_total = total if total is not None else state.total
    if not marks:
        return _finish_offset_pass(replace(state, total=known_total), seed=state.updated_at)

    next_offset = request.offset + request.limit
    last_seen = _last_timestamp(marks) or state.updated_at
    next_state = replace(
        state,
        offset=next_offset,
        updated_at=last_seen,
        last_id=marks[-1].external_id,
        total=known_total,
    )
    exhausted = (known_total is not None and known_total > 0 and next_offset >= known_total) or (
        len(marks) < request.limit
    )
    if not exhausted and exceeds_window(
        offset=next_offset,
        limit=state.page_limit,
        window_cap=window_cap,
    ):
        return CursorAdvance(
            state=_switch_to_buckets(next_state, seed=last_seen),
            exhausted=False,
            mode_switched=True,
        )
    if exhausted:
        return _finish_offset_pass(next_state, seed=last_seen)
    return CursorAdvance(state=next_state, exhausted=False)


def _finish_offset_pass(state: CursorState, *, seed: datetime | None) -> CursorAdvance:
    """End of the offset walk: follow later edits from the newest item seen.

    Without any timestamp to seed a bucket the walk wraps back to offset 0.
    """
    if seed is None:
        return CursorAdvance(state=replace(state, offset=0), exhausted=True)
    return CursorAdvance(
        state=_switch_to_buckets(state, seed=seed),
        exhausted=True,
        mode_switched=True,
    )


def _advance_bucket(
    state: CursorState,
    request: PageRequest,
    marks: Sequence[PageMark],
    *,
    window_cap: int,
    force: bool,
) -> CursorAdvance:
    if not marks:
        return CursorAdvance(state=state, exhausted=True)

    bucket = request.updated_at_since
    last_ts = _last_timestamp(marks)
    short_page = len(marks) < request.limit
    overflow = False

    if last_ts is None:
        next_bucket, next_offset = bucket, request.offset + len(marks)
    elif short_page:
        next_bucket, next_offset = last_ts + BUCKET_INCREMENT, 0
    elif bucket is not None and last_ts == bucket:
        next_bucket, next_offset = bucket, request.offset + request.limit
    else:
        trailing = 0
        for mark in reversed(marks):
            if mark.updated_at != last_ts:
                break
            trailing += 1
        next_bucket, next_offset = last_ts, trailing

    if (
        next_bucket is not None
        and not short_page
        and exceeds_window(offset=next_offset, limit=state.page_limit, window_cap=window_cap)
    ):
        # A single instant holds more items than the window can address.
        next_bucket, next_offset = next_bucket + BUCKET_INCREMENT, 0
        overflow = True

    if not force and _position_before((next_bucket, next_offset), state.position()):
        next_bucket, next_offset = state.position()

    next_state = replace(
        state,
        offset=next_offset,
        updated_at=next_bucket,
        last_id=marks[-1].external_id,
    )
    return CursorAdvance(state=next_state, exhausted=short_page, bucket_overflow=overflow)


def _position_before(
    candidate: tuple[datetime | None, int],
    current: tuple[datetime | None, int],
) -> bool:
    candidate_ts, candidate_offset = candidate
    current_ts, current_offset = current
    if current_ts is None:
        return candidate_ts is None and candidate_offset < current_offset
    if candidate_ts is None:
        return True
    if candidate_ts != current_ts:
        return candidate_ts < current_ts
    return candidate_offset < current_offset
