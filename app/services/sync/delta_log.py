from __future__ import annotations

from datetime import datetime
import json
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import DeltaAction, Manga, MangaDeltaLog

COMPARABLE_FIELDS = (
    "id",
    "slug",
    "title",
    "title_english",
    "title_native",
    "title_preferred",
    "description",
    "status",
    "publication_year",
    "genres",
    "total_chapters",
    "total_volumes",
    "cover_image_url",
    "image_url",
    "external_id",
    "source",
)


def comparable_row(manga: Manga | None) -> dict[str, Any] | None:
    if manga is None:
        return None
    row: dict[str, Any] = {}
    for field_name in COMPARABLE_FIELDS:
        value = getattr(manga, field_name)
        row[field_name] = list(value) if isinstance(value, (list, tuple)) else value
    return row


def _normalized(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = sorted(value, key=lambda item: json.dumps(item, sort_keys=True, default=str))
    return json.dumps(value, sort_keys=True, default=str)


def diff_rows(
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> dict[str, dict[str, Any]]:
    before = before or {}
    after = after or {}
    changes: dict[str, dict[str, Any]] = {}
    for key in sorted(set(before) | set(after)):
        before_value = before.get(key)
        after_value = after.get(key)
        if _normalized(before_value) != _normalized(after_value):
            changes[key] = {"from": before_value, "to": after_value}
    return changes


async def append_delta(
    db_session: AsyncSession,
    *,
    state_id: str,
    source: str,
    external_id: str,
    manga_id: int,
    external_updated_at: datetime | None,
    action: DeltaAction,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> MangaDeltaLog:
    """Append one delta entry; an empty diff is still recorded."""
    entry = MangaDeltaLog(
        state_id=state_id,
        source=source,
        external_id=external_id,
        manga_id=manga_id,
        external_updated_at=external_updated_at,
        action=action.value,
        changed_fields=diff_rows(before, after),
        before_row=before,
        after_row=after,
    )
    db_session.add(entry)
    await db_session.flush()
    return entry
