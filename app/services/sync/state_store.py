from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import CrawlMode, CrawlState, FeedKind
from app.services.sync.cursor import CursorState, reset_cursor
from app.services.sync.errors import CrawlStateConflictError, CrawlStateNotFoundError
from app.settings import settings


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def cursor_from_row(row: CrawlState) -> CursorState:
    return CursorState(
        state_id=row.id,
        feed=FeedKind(row.feed),
        mode=CrawlMode(row.mode),
        offset=int(row.cursor_offset or 0),
        updated_at=as_utc(row.cursor_updated_at),
        last_id=row.cursor_last_id,
        page_limit=max(1, int(row.page_limit or 1)),
        total=row.total,
        processed_count=int(row.processed_count or 0),
        version=int(row.version or 0),
    )


async def load_state(db_session: AsyncSession, *, state_id: str) -> CursorState:
    result = await db_session.execute(
        select(CrawlState)
        .where(CrawlState.id == state_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise CrawlStateNotFoundError(state_id)
    return cursor_from_row(row)


async def list_states(db_session: AsyncSession) -> list[CursorState]:
    result = await db_session.execute(
        select(CrawlState).order_by(CrawlState.id.asc()).execution_options(populate_existing=True)
    )
    return [cursor_from_row(row) for row in result.scalars()]


async def save_state(
    db_session: AsyncSession,
    state: CursorState,
    *,
    processed_delta: int,
    ran_at: datetime | None = None,
) -> CursorState:
    """Write the cursor back if nobody else moved it since it was loaded."""
    now = ran_at or datetime.now(timezone.utc)
    processed_count = state.processed_count + max(0, processed_delta)
    result = await db_session.execute(
        update(CrawlState)
        .where(CrawlState.id == state.state_id, CrawlState.version == state.version)
        .values(
            mode=state.mode.value,
            cursor_offset=state.offset,
            cursor_updated_at=state.updated_at,
            cursor_last_id=state.last_id,
            page_limit=state.page_limit,
            total=state.total,
            processed_count=processed_count,
            version=CrawlState.version + 1,
            last_run_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db_session.rollback()
        raise CrawlStateConflictError(state.state_id, expected_version=state.version)
    await db_session.commit()
    return replace(state, processed_count=processed_count, version=state.version + 1)


async def reset_state(
    db_session: AsyncSession,
    *,
    state_id: str,
    feed: FeedKind | None = None,
    page_limit: int | None = None,
    rewind_to: datetime | None = None,
) -> CursorState:
    """Create a state row or rewind an existing one; an explicit operator action."""
    result = await db_session.execute(
        select(CrawlState)
        .where(CrawlState.id == state_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = CrawlState(
            id=state_id,
            feed=(feed or FeedKind.MANGA).value,
            mode=CrawlMode.OFFSET.value,
            cursor_offset=0,
            page_limit=page_limit or settings.sync_default_page_limit,
            processed_count=0,
            version=0,
        )
        db_session.add(row)
        await db_session.flush()

    current = cursor_from_row(row)
    rewound = reset_cursor(current, rewind_to=as_utc(rewind_to))
    row.feed = (feed or current.feed).value
    row.mode = rewound.mode.value
    row.cursor_offset = rewound.offset
    row.cursor_updated_at = rewound.updated_at
    row.cursor_last_id = rewound.last_id
    row.total = rewound.total
    if page_limit is not None:
        row.page_limit = page_limit
    row.version = current.version + 1
    await db_session.commit()
    await db_session.refresh(row)
    return cursor_from_row(row)
