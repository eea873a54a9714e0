"""SQLAlchemy models for migration runs and their per-run rows."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class MigrationRun(Base):
    """One import job and the authoritative counters of its execution."""

    __tablename__ = "migrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    source_file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True, default="uploaded")
    policy: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False)
    analysis_data: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    execution_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checkpoint: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    execution_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<MigrationRun id={self.id} status={self.status} title={self.title!r}>"


class SourceEvent(Base):
    """Event record imported from one valid spreadsheet row."""

    __tablename__ = "migration_source_events"
    __table_args__ = (UniqueConstraint("migration_id", "event_code", name="uq_source_event_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[int] = mapped_column(
        ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_code: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    teacher_names: Mapped[str | None] = mapped_column(String(512), nullable=True)
    place: Mapped[str | None] = mapped_column(String(512), nullable=True)
    expected_tracks: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    track_names: Mapped[dict[str, list[str]]] = mapped_column(JSON, nullable=False, default=dict)
    storage_prefix: Mapped[str] = mapped_column(String(1024), nullable=False)
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)


class CatalogedFile(Base):
    """Object discovered in the store for one event of a run."""

    __tablename__ = "migration_file_catalogs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[int] = mapped_column(
        ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_directory: Mapped[str] = mapped_column(String(1024), nullable=False)
    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_type: Mapped[str] = mapped_column(String(32), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    extension: Mapped[str] = mapped_column(String(16), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    suggested_action: Mapped[str] = mapped_column(String(16), nullable=False)
    suggested_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    conflicts: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    file_metadata: Mapped[dict[str, object]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    @property
    def target_key(self) -> str | None:
        value = (self.file_metadata or {}).get("target_key")
        return str(value) if value else None


class FileDecision(Base):
    """Operator decision for exactly one cataloged file."""

    __tablename__ = "migration_file_decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[int] = mapped_column(
        ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    catalog_id: Mapped[int] = mapped_column(
        ForeignKey("migration_file_catalogs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    new_filename: Mapped[str | None] = mapped_column(String(512), nullable=True)
    target_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class MigrationLog(Base):
    """Append-only log entry scoped to a run."""

    __tablename__ = "migration_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[int] = mapped_column(
        ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    level: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    event_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    context: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
