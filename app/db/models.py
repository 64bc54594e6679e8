from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONDocument

MANGADEX_SOURCE = "mangadex"


class CrawlMode(StrEnum):
    OFFSET = "offset"
    UPDATED_AT = "updatedat"


class FeedKind(StrEnum):
    MANGA = "manga"
    CHAPTER = "chapter"


class DeltaAction(StrEnum):
    INSERT = "insert"
    UPDATE = "update"


class ArtJobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class WorkerRunStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


class WorkerRunTrigger(StrEnum):
    MANUAL = "manual"
    CRON = "cron"
    SCHEDULED = "scheduled"
    REFRESH = "refresh"


class CrawlState(Base):
    __tablename__ = "crawl_states"
    __table_args__ = (
        CheckConstraint("mode IN ('offset', 'updatedat')", name="mode_valid"),
        CheckConstraint("feed IN ('manga', 'chapter')", name="feed_valid"),
        CheckConstraint("cursor_offset >= 0", name="cursor_offset_non_negative"),
        CheckConstraint("page_limit >= 1", name="page_limit_positive"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    feed: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text("'manga'"),
    )
    mode: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text("'offset'"),
    )
    cursor_offset: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    cursor_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cursor_last_id: Mapped[str | None] = mapped_column(String(64))
    page_limit: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("100"))
    total: Mapped[int | None] = mapped_column(Integer)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Manga(Base):
    __tablename__ = "manga"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_manga_slug"),
        Index("ix_manga_source_external_id", "source", "external_id"),
        Index("ix_manga_updated_at", "updated_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    title_english: Mapped[str | None] = mapped_column(Text)
    title_native: Mapped[str | None] = mapped_column(Text)
    title_preferred: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str | None] = mapped_column(String(32))
    publication_year: Mapped[int | None] = mapped_column(Integer)
    original_language: Mapped[str | None] = mapped_column(String(16))
    content_rating: Mapped[str | None] = mapped_column(String(32))
    genres: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    cover_image_url: Mapped[str | None] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(Text)
    source: Mapped[str | None] = mapped_column(String(32))
    external_id: Mapped[str | None] = mapped_column(String(64))
    total_chapters: Mapped[int | None] = mapped_column(Integer)
    total_volumes: Mapped[int | None] = mapped_column(Integer)
    source_snapshot: Mapped[dict[str, Any]] = mapped_column(
        JSONDocument,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class MangaExternalId(Base):
    __tablename__ = "manga_external_ids"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_manga_external_ids_source_external_id"),
        Index("ix_manga_external_ids_manga_id", "manga_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    manga_id: Mapped[int] = mapped_column(
        ForeignKey("manga.id", ondelete="CASCADE"),
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class MangaDeltaLog(Base):
    __tablename__ = "manga_delta_log"
    __table_args__ = (
        CheckConstraint("action IN ('insert', 'update')", name="action_valid"),
        Index("ix_manga_delta_log_state_logged", "state_id", "logged_at"),
        Index("ix_manga_delta_log_external_id", "external_id"),
        Index("ix_manga_delta_log_manga_id", "manga_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    state_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    manga_id: Mapped[int] = mapped_column(
        ForeignKey("manga.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_fields: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    before_row: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument)
    after_row: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument)
    logged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class MangaCover(Base):
    __tablename__ = "manga_covers"
    __table_args__ = (
        UniqueConstraint("external_cover_id", name="uq_manga_covers_external_cover_id"),
        Index("ix_manga_covers_manga_id", "manga_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    manga_id: Mapped[int] = mapped_column(
        ForeignKey("manga.id", ondelete="CASCADE"),
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    external_cover_id: Mapped[str] = mapped_column(String(64), nullable=False)
    volume: Mapped[str | None] = mapped_column(String(32))
    locale: Mapped[str | None] = mapped_column(String(16))
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    cached_url: Mapped[str] = mapped_column(Text, nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class MangaArtJob(Base):
    __tablename__ = "manga_art_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="status_valid",
        ),
        Index("ix_manga_art_jobs_status_updated", "status", "updated_at"),
    )

    manga_id: Mapped[int] = mapped_column(
        ForeignKey("manga.id", ondelete="CASCADE"),
        primary_key=True,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text("'pending'"),
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class WorkerRun(Base):
    __tablename__ = "worker_runs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('success', 'partial_failure', 'failed')",
            name="status_valid",
        ),
        Index("ix_worker_runs_job_created", "job", "created_at"),
        Index("ix_worker_runs_state_id", "state_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    job: Mapped[str] = mapped_column(String(32), nullable=False)
    state_id: Mapped[str | None] = mapped_column(String(64))
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    build_stamp: Mapped[str | None] = mapped_column(String(64))
    descriptor: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    unique_ids: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    enqueued: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    claimed: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    processed: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    ok_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    pages: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    stop_reason: Mapped[str | None] = mapped_column(String(32))
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    sample: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False, default=list)
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False, default=list)
    error_text: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
