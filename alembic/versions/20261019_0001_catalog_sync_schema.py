"""Catalog sync schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

SEEDED_STATES = (
    ("catalog", "manga"),
    ("activity", "chapter"),
)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text("0"))


def _create_crawl_states() -> None:
    op.create_table(
        "crawl_states",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("feed", sa.String(length=16), nullable=False, server_default=sa.text("'manga'")),
        sa.Column("mode", sa.String(length=16), nullable=False, server_default=sa.text("'offset'")),
        _counter("cursor_offset"),
        sa.Column("cursor_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cursor_last_id", sa.String(length=64), nullable=True),
        sa.Column("page_limit", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("total", sa.Integer(), nullable=True),
        _counter("processed_count"),
        _counter("version"),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("mode IN ('offset', 'updatedat')", name=op.f("ck_crawl_states_mode_valid")),
        sa.CheckConstraint("feed IN ('manga', 'chapter')", name=op.f("ck_crawl_states_feed_valid")),
        sa.CheckConstraint(
            "cursor_offset >= 0",
            name=op.f("ck_crawl_states_cursor_offset_non_negative"),
        ),
        sa.CheckConstraint("page_limit >= 1", name=op.f("ck_crawl_states_page_limit_positive")),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_crawl_states")),
    )


def _create_manga() -> None:
    op.create_table(
        "manga",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("title_english", sa.Text(), nullable=True),
        sa.Column("title_native", sa.Text(), nullable=True),
        sa.Column("title_preferred", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("publication_year", sa.Integer(), nullable=True),
        sa.Column("original_language", sa.String(length=16), nullable=True),
        sa.Column("content_rating", sa.String(length=32), nullable=True),
        sa.Column(
            "genres",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("cover_image_url", sa.Text(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=True),
        sa.Column("external_id", sa.String(length=64), nullable=True),
        sa.Column("total_chapters", sa.Integer(), nullable=True),
        sa.Column("total_volumes", sa.Integer(), nullable=True),
        sa.Column(
            "source_snapshot",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_manga")),
        sa.UniqueConstraint("slug", name="uq_manga_slug"),
    )
    op.create_index("ix_manga_source_external_id", "manga", ["source", "external_id"], unique=False)
    op.create_index("ix_manga_updated_at", "manga", ["updated_at"], unique=False)


def _create_manga_external_ids() -> None:
    op.create_table(
        "manga_external_ids",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("manga_id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(
            ["manga_id"],
            ["manga.id"],
            name="fk_manga_external_ids_manga_id_manga",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_manga_external_ids")),
        sa.UniqueConstraint(
            "source",
            "external_id",
            name="uq_manga_external_ids_source_external_id",
        ),
    )
    op.create_index(
        "ix_manga_external_ids_manga_id",
        "manga_external_ids",
        ["manga_id"],
        unique=False,
    )


def _create_manga_delta_log() -> None:
    op.create_table(
        "manga_delta_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("state_id", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("manga_id", sa.Integer(), nullable=False),
        sa.Column("external_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column(
            "changed_fields",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("before_row", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("after_row", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp("logged_at"),
        sa.CheckConstraint(
            "action IN ('insert', 'update')",
            name=op.f("ck_manga_delta_log_action_valid"),
        ),
        sa.ForeignKeyConstraint(
            ["manga_id"],
            ["manga.id"],
            name="fk_manga_delta_log_manga_id_manga",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_manga_delta_log")),
    )
    op.create_index(
        "ix_manga_delta_log_state_logged",
        "manga_delta_log",
        ["state_id", "logged_at"],
        unique=False,
    )
    op.create_index("ix_manga_delta_log_external_id", "manga_delta_log", ["external_id"], unique=False)
    op.create_index("ix_manga_delta_log_manga_id", "manga_delta_log", ["manga_id"], unique=False)


def _create_manga_covers() -> None:
    op.create_table(
        "manga_covers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("manga_id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("external_cover_id", sa.String(length=64), nullable=False),
        sa.Column("volume", sa.String(length=32), nullable=True),
        sa.Column("locale", sa.String(length=16), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=False),
        sa.Column("cached_url", sa.Text(), nullable=False),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(length=64), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(
            ["manga_id"],
            ["manga.id"],
            name="fk_manga_covers_manga_id_manga",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_manga_covers")),
        sa.UniqueConstraint("external_cover_id", name="uq_manga_covers_external_cover_id"),
    )
    op.create_index("ix_manga_covers_manga_id", "manga_covers", ["manga_id"], unique=False)


def _create_manga_art_jobs() -> None:
    op.create_table(
        "manga_art_jobs",
        sa.Column("manga_id", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        _counter("attempt_count"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name=op.f("ck_manga_art_jobs_status_valid"),
        ),
        sa.ForeignKeyConstraint(
            ["manga_id"],
            ["manga.id"],
            name="fk_manga_art_jobs_manga_id_manga",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("manga_id", name=op.f("pk_manga_art_jobs")),
    )
    op.create_index(
        "ix_manga_art_jobs_status_updated",
        "manga_art_jobs",
        ["status", "updated_at"],
        unique=False,
    )


def _create_worker_runs() -> None:
    op.create_table(
        "worker_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job", sa.String(length=32), nullable=False),
        sa.Column("state_id", sa.String(length=64), nullable=True),
        sa.Column("trigger", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("build_stamp", sa.String(length=64), nullable=True),
        sa.Column(
            "descriptor",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _counter("unique_ids"),
        _counter("enqueued"),
        _counter("claimed"),
        _counter("processed"),
        _counter("ok_count"),
        _counter("error_count"),
        _counter("pages"),
        sa.Column("stop_reason", sa.String(length=32), nullable=True),
        _counter("duration_ms"),
        sa.Column(
            "sample",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "errors",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("error_text", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "status IN ('success', 'partial_failure', 'failed')",
            name=op.f("ck_worker_runs_status_valid"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_worker_runs")),
    )
    op.create_index("ix_worker_runs_job_created", "worker_runs", ["job", "created_at"], unique=False)
    op.create_index("ix_worker_runs_state_id", "worker_runs", ["state_id"], unique=False)


def _seed_states() -> None:
    crawl_states = sa.table(
        "crawl_states",
        sa.column("id", sa.String),
        sa.column("feed", sa.String),
    )
    op.bulk_insert(
        crawl_states,
        [{"id": state_id, "feed": feed} for state_id, feed in SEEDED_STATES],
    )


def upgrade() -> None:
    _create_crawl_states()
    _create_manga()
    _create_manga_external_ids()
    _create_manga_delta_log()
    _create_manga_covers()
    _create_manga_art_jobs()
    _create_worker_runs()
    _seed_states()


def downgrade() -> None:
    op.drop_index("ix_worker_runs_state_id", table_name="worker_runs")
    op.drop_index("ix_worker_runs_job_created", table_name="worker_runs")
    op.drop_table("worker_runs")
    op.drop_index("ix_manga_art_jobs_status_updated", table_name="manga_art_jobs")
    op.drop_table("manga_art_jobs")
    op.drop_index("ix_manga_covers_manga_id", table_name="manga_covers")
    op.drop_table("manga_covers")
    op.drop_index("ix_manga_delta_log_manga_id", table_name="manga_delta_log")
    op.drop_index("ix_manga_delta_log_external_id", table_name="manga_delta_log")
    op.drop_index("ix_manga_delta_log_state_logged", table_name="manga_delta_log")
    op.drop_table("manga_delta_log")
    op.drop_index("ix_manga_external_ids_manga_id", table_name="manga_external_ids")
    op.drop_table("manga_external_ids")
    op.drop_index("ix_manga_updated_at", table_name="manga")
    op.drop_index("ix_manga_source_external_id", table_name="manga")
    op.drop_table("manga")
    op.drop_table("crawl_states")
