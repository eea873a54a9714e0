"""Repository helpers for migration persistence models."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..exceptions import MigrationNotFoundError
from .migration import CatalogedFile, FileDecision, MigrationLog, MigrationRun, SourceEvent

LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass(slots=True)
class MigrationRunCreate:
    """Value object capturing required fields to persist a new run."""

    title: str
    source_filename: str
    source_file_path: str
    row_count: int
    policy: dict[str, Any]
    notes: str | None = None
    created_by: str | None = None
    analysis_data: dict[str, Any] | None = None


@dataclass(slots=True)
class CatalogedFileCreate:
    """Classified object ready to be written to the catalog."""

    event_code: str
    source_directory: str
    filename: str
    object_key: str
    file_type: str
    category: str
    extension: str
    size: int
    mime_type: str | None
    suggested_action: str
    suggested_category: str | None = None
    conflicts: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class MigrationRepository:
    """Data access helpers for runs and their catalog, decision and log rows."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def create_run(self, data: MigrationRunCreate) -> MigrationRun:
        run = MigrationRun(
            title=data.title,
            notes=data.notes,
            source_filename=data.source_filename,
            source_file_path=data.source_file_path,
            row_count=data.row_count,
            status="uploaded",
            policy=data.policy,
            analysis_data=data.analysis_data,
            created_by=data.created_by,
        )
        self._session.add(run)
        self._session.flush()
        return run

    def get_run(self, migration_id: int, *, refresh: bool = False) -> MigrationRun:
        """Return the run or raise :class:`MigrationNotFoundError`."""

        run = self._session.get(MigrationRun, migration_id, populate_existing=refresh)
        if run is None:
            raise MigrationNotFoundError(migration_id)
        return run

    def list_runs(self, *, limit: int = 100) -> Sequence[MigrationRun]:
        statement = select(MigrationRun).order_by(MigrationRun.id.desc()).limit(limit)
        return self._session.scalars(statement).all()

    def add_source_events(self, migration_id: int, events: Iterable[SourceEvent]) -> None:
        for event in events:
            event.migration_id = migration_id
            self._session.add(event)
        self._session.flush()

    def list_source_events(self, migration_id: int) -> Sequence[SourceEvent]:
        statement = (
            select(SourceEvent)
            .where(SourceEvent.migration_id == migration_id)
            .order_by(SourceEvent.row_number)
        )
        return self._session.scalars(statement).all()

    def add_catalog_files(
        self, migration_id: int, files: Iterable[CatalogedFileCreate]
    ) -> list[CatalogedFile]:
        rows = [
            CatalogedFile(
                migration_id=migration_id,
                event_code=item.event_code,
                source_directory=item.source_directory,
                filename=item.filename,
                object_key=item.object_key,
                file_type=item.file_type,
                category=item.category,
                extension=item.extension,
                size=item.size,
                mime_type=item.mime_type,
                suggested_action=item.suggested_action,
                suggested_category=item.suggested_category,
                conflicts=list(item.conflicts),
                file_metadata=dict(item.metadata),
            )
            for item in files
        ]
        self._session.add_all(rows)
        self._session.flush()
        return rows

    def list_catalog(self, migration_id: int) -> Sequence[CatalogedFile]:
        statement = (
            select(CatalogedFile)
            .where(CatalogedFile.migration_id == migration_id)
            .order_by(CatalogedFile.event_code, CatalogedFile.object_key)
        )
        return self._session.scalars(statement).all()

    def count_catalog(self, migration_id: int) -> int:
        statement = select(func.count(CatalogedFile.id)).where(
            CatalogedFile.migration_id == migration_id
        )
        return int(self._session.scalar(statement) or 0)

    def get_catalog_files(self, catalog_ids: Iterable[int]) -> dict[int, CatalogedFile]:
        ids = list(catalog_ids)
        if not ids:
            return {}
        statement = select(CatalogedFile).where(CatalogedFile.id.in_(ids))
        return {row.id: row for row in self._session.scalars(statement)}

    def list_decisions(self, migration_id: int) -> Sequence[FileDecision]:
        statement = (
            select(FileDecision)
            .where(FileDecision.migration_id == migration_id)
            .order_by(FileDecision.catalog_id)
        )
        return self._session.scalars(statement).all()

    def get_decisions_by_catalog(self, catalog_ids: Iterable[int]) -> dict[int, FileDecision]:
        ids = list(catalog_ids)
        if not ids:
            return {}
        statement = select(FileDecision).where(FileDecision.catalog_id.in_(ids))
        return {row.catalog_id: row for row in self._session.scalars(statement)}

    def list_executable_files(
        self, migration_id: int
    ) -> list[tuple[FileDecision, CatalogedFile]]:
        """Return include/rename decisions joined to their catalog rows."""

        statement = (
            select(FileDecision, CatalogedFile)
            .join(CatalogedFile, CatalogedFile.id == FileDecision.catalog_id)
            .where(
                FileDecision.migration_id == migration_id,
                CatalogedFile.migration_id == migration_id,
                FileDecision.action.in_(("include", "rename")),
            )
            .order_by(CatalogedFile.event_code, CatalogedFile.object_key)
        )
        return [(decision, catalog) for decision, catalog in self._session.execute(statement)]

    def add_log(
        self,
        migration_id: int,
        level: str,
        message: str,
        *,
        event_code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> MigrationLog:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unsupported log level '{level}'")
        entry = MigrationLog(
            migration_id=migration_id,
            level=level,
            message=message,
            event_code=event_code,
            context=context,
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    def query_logs(
        self,
        migration_id: int,
        *,
        level: str | None = None,
        limit: int = 100,
    ) -> Sequence[MigrationLog]:
        """Return the newest log entries of a run, optionally filtered by level."""

        statement = select(MigrationLog).where(MigrationLog.migration_id == migration_id)
        if level is not None:
            statement = statement.where(MigrationLog.level == level)
        statement = statement.order_by(MigrationLog.timestamp.desc(), MigrationLog.id.desc()).limit(
            limit
        )
        return self._session.scalars(statement).all()
