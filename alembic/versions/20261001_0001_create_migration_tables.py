"""Create migration run, catalog, decision, log and archive tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Create every table used by the migration pipeline and the archive."""

    alembic_op.create_table(
        "migrations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source_filename", sa.String(length=255), nullable=False),
        sa.Column("source_file_path", sa.String(length=1024), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="uploaded"),
        sa.Column("policy", sa.JSON(), nullable=False),
        sa.Column("analysis_data", sa.JSON(), nullable=True),
        sa.Column("total_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("task_id", sa.String(length=255), nullable=True),
        sa.Column("execution_token", sa.String(length=64), nullable=True),
        _timestamp("heartbeat_at", nullable=True),
        sa.Column("checkpoint", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("approved_by", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("analyzed_at", nullable=True),
        _timestamp("approved_at", nullable=True),
        _timestamp("execution_started_at", nullable=True),
        _timestamp("execution_completed_at", nullable=True),
    )
    alembic_op.create_index("ix_migrations_status", "migrations", ["status"])

    alembic_op.create_table(
        "migration_source_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "migration_id",
            sa.Integer(),
            sa.ForeignKey("migrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_code", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("teacher_names", sa.String(length=512), nullable=True),
        sa.Column("place", sa.String(length=512), nullable=True),
        sa.Column("expected_tracks", sa.JSON(), nullable=False),
        sa.Column("track_names", sa.JSON(), nullable=False),
        sa.Column("storage_prefix", sa.String(length=1024), nullable=False),
        sa.Column("row_number", sa.Integer(), nullable=False),
        sa.UniqueConstraint("migration_id", "event_code", name="uq_source_event_code"),
    )
    alembic_op.create_index(
        "ix_migration_source_events_migration_id", "migration_source_events", ["migration_id"]
    )

    alembic_op.create_table(
        "migration_file_catalogs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "migration_id",
            sa.Integer(),
            sa.ForeignKey("migrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_code", sa.String(length=64), nullable=False),
        sa.Column("source_directory", sa.String(length=1024), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("file_type", sa.String(length=32), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("extension", sa.String(length=16), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("suggested_action", sa.String(length=16), nullable=False),
        sa.Column("suggested_category", sa.String(length=32), nullable=True),
        sa.Column("conflicts", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        _timestamp("created_at"),
    )
    alembic_op.create_index(
        "ix_migration_file_catalogs_migration_id", "migration_file_catalogs", ["migration_id"]
    )
    alembic_op.create_index(
        "ix_migration_file_catalogs_event_code", "migration_file_catalogs", ["event_code"]
    )

    alembic_op.create_table(
        "migration_file_decisions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "migration_id",
            sa.Integer(),
            sa.ForeignKey("migrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "catalog_id",
            sa.Integer(),
            sa.ForeignKey("migration_file_catalogs.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("new_filename", sa.String(length=512), nullable=True),
        sa.Column("target_category", sa.String(length=32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("decided_by", sa.String(length=255), nullable=True),
        _timestamp("decided_at"),
        _timestamp("updated_at"),
    )
    alembic_op.create_index(
        "ix_migration_file_decisions_migration_id", "migration_file_decisions", ["migration_id"]
    )

    alembic_op.create_table(
        "migration_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "migration_id",
            sa.Integer(),
            sa.ForeignKey("migrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("level", sa.String(length=8), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("event_code", sa.String(length=64), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
        _timestamp("timestamp"),
    )
    alembic_op.create_index("ix_migration_logs_migration_id", "migration_logs", ["migration_id"])
    alembic_op.create_index("ix_migration_logs_level", "migration_logs", ["level"])

    alembic_op.create_table(
        "archive_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("title", sa.String(length=512), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("teacher", sa.String(length=512), nullable=True),
        sa.Column("place", sa.String(length=512), nullable=True),
        sa.Column("migration_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
    )
    alembic_op.create_index("ix_archive_events_migration_id", "archive_events", ["migration_id"])

    alembic_op.create_table(
        "tracks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("archive_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("track_number", sa.Integer(), nullable=True),
        sa.Column("speaker", sa.String(length=16), nullable=True),
        sa.Column("language", sa.String(length=16), nullable=True),
        sa.Column("is_translation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_legacy", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("bucket", sa.String(length=255), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("migrated_from", sa.String(length=1024), nullable=False),
        sa.Column("migration_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("migration_id", "object_key", name="uq_track_object"),
    )
    alembic_op.create_index("ix_tracks_event_id", "tracks", ["event_id"])
    alembic_op.create_index("ix_tracks_migration_id", "tracks", ["migration_id"])

    alembic_op.create_table(
        "transcripts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("archive_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("language", sa.String(length=16), nullable=True),
        sa.Column("bucket", sa.String(length=255), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("migrated_from", sa.String(length=1024), nullable=False),
        sa.Column("migration_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("migration_id", "object_key", name="uq_transcript_object"),
    )
    alembic_op.create_index("ix_transcripts_event_id", "transcripts", ["event_id"])
    alembic_op.create_index("ix_transcripts_migration_id", "transcripts", ["migration_id"])

    alembic_op.create_table(
        "media_files",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("archive_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("file_type", sa.String(length=32), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("bucket", sa.String(length=255), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("migrated_from", sa.String(length=1024), nullable=False),
        sa.Column("migration_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("migration_id", "object_key", name="uq_media_file_object"),
    )
    alembic_op.create_index("ix_media_files_event_id", "media_files", ["event_id"])
    alembic_op.create_index("ix_media_files_migration_id", "media_files", ["migration_id"])


def downgrade() -> None:
    """Drop every pipeline and archive table."""

    for table in (
        "media_files",
        "transcripts",
        "tracks",
        "archive_events",
        "migration_logs",
        "migration_file_decisions",
        "migration_file_catalogs",
        "migration_source_events",
        "migrations",
    ):
        alembic_op.drop_table(table)
