"""Pydantic models for migration runs, catalog entries, issues and API payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Severity = Literal["error", "warning", "info"]
DecisionAction = Literal["include", "ignore", "rename", "review"]
LogLevel = Literal["debug", "info", "warn", "error"]


class Issue(BaseModel):
    """Structured finding produced during import, analysis or execution."""

    key: str = ""
    severity: Severity
    category: str
    message: str
    event_code: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _default_key(self) -> Issue:
        if not self.key:
            self.key = f"{self.category}:{self.event_code or '*'}"
        return self


class DedupSummary(BaseModel):
    """Outcome of collection deduplication for one event."""

    event_code: str
    canonical: str | None
    collections: dict[str, int] = Field(default_factory=dict)
    main_tracks: list[str] = Field(default_factory=list)
    legacy_tracks: list[str] = Field(default_factory=list)
    duplicate_tracks: list[str] = Field(default_factory=list)
    tie_break: str | None = None


class AnalysisSummary(BaseModel):
    """Typed shape of ``MigrationRun.analysis_data``."""

    events_total: int = 0
    events_with_files: int = 0
    files_total: int = 0
    files_by_type: dict[str, int] = Field(default_factory=dict)
    files_by_category: dict[str, int] = Field(default_factory=dict)
    suggested_actions: dict[str, int] = Field(default_factory=dict)
    conflicts: int = 0
    issues: list[Issue] = Field(default_factory=list)
    dedup: list[DedupSummary] = Field(default_factory=list)
    resolved_issue_keys: list[str] = Field(default_factory=list)
    analyzed_at: datetime | None = None

    def count_by_severity(self) -> dict[str, int]:
        counts = {"error": 0, "warning": 0, "info": 0}
        for issue in self.issues:
            counts[issue.severity] += 1
        return counts


class MigrationRead(BaseModel):
    """API representation of a migration run."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    notes: str | None = None
    source_filename: str
    row_count: int
    status: str
    total_events: int
    processed_events: int
    successful_events: int
    failed_events: int
    skipped_events: int
    progress_percentage: int
    cancel_requested: bool
    task_id: str | None = None
    created_by: str | None = None
    approved_by: str | None = None
    analysis_data: dict[str, Any] | None = None
    policy: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    analyzed_at: datetime | None = None
    approved_at: datetime | None = None
    execution_started_at: datetime | None = None
    execution_completed_at: datetime | None = None


class CatalogedFileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_code: str
    source_directory: str
    filename: str
    object_key: str
    file_type: str
    category: str
    extension: str
    size: int
    mime_type: str | None = None
    suggested_action: str
    suggested_category: str | None = None
    conflicts: list[str] = Field(default_factory=list)
    file_metadata: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")


class EventCatalog(BaseModel):
    event_code: str
    title: str | None = None
    files: list[CatalogedFileRead] = Field(default_factory=list)


class MigrationDetail(BaseModel):
    migration: MigrationRead
    events: list[EventCatalog] = Field(default_factory=list)


class FileDecisionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    catalog_id: int
    action: str
    new_filename: str | None = None
    target_category: str | None = None
    notes: str | None = None
    decided_by: str | None = None
    decided_at: datetime
    updated_at: datetime


class DecisionUpsertItem(BaseModel):
    """One group of catalog ids receiving the same decision fields."""

    model_config = ConfigDict(extra="forbid")

    catalog_ids: list[int] = Field(min_length=1)
    action: DecisionAction | None = None
    new_filename: str | None = None
    target_category: str | None = None
    notes: str | None = None

    @field_validator("new_filename")
    @classmethod
    def _reject_path_separators(cls, value: str | None) -> str | None:
        if value is None:
            return value
        stripped = value.strip()
        if not stripped or "/" in stripped or "\\" in stripped:
            raise ValueError("new_filename must be a bare file name")
        return stripped

    def supplied_fields(self) -> dict[str, Any]:
        """Return only the decision fields the caller explicitly set."""

        return {
            name: getattr(self, name)
            for name in ("action", "new_filename", "target_category", "notes")
            if name in self.model_fields_set
        }


class DecisionUpsertRequest(BaseModel):
    decisions: list[DecisionUpsertItem] = Field(min_length=1)


class DecisionProgressRead(BaseModel):
    decided: int
    total: int
    percentage: int
    status: str


class UndecidedFile(BaseModel):
    catalog_id: int
    event_code: str
    filename: str
    suggested_action: str


class ReadinessRead(BaseModel):
    ready: bool
    decided: int
    total: int
    undecided: list[UndecidedFile] = Field(default_factory=list)
    review_pending: list[UndecidedFile] = Field(default_factory=list)
    blocking_issues: list[Issue] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    advisory: dict[str, Any] = Field(default_factory=dict)


class IssueResolveRequest(BaseModel):
    keys: list[str] = Field(min_length=1)


class ProgressSnapshot(BaseModel):
    """Counters published to progress subscribers."""

    migration_id: int
    status: str
    percentage: int
    processed_events: int
    successful_events: int
    failed_events: int
    skipped_events: int
    total_events: int


class MigrationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    level: str
    message: str
    event_code: str | None = None
    context: dict[str, Any] | None = None
    timestamp: datetime


class TaskAccepted(BaseModel):
    migration_id: int
    status: str
    task_id: str | None = None
    message: str


class ReportIssue(Issue):
    resolved: bool = False


class ReportFile(BaseModel):
    catalog_id: int
    filename: str
    object_key: str
    category: str
    action: str
    decided: bool
    target_key: str | None = None


class ReportFolder(BaseModel):
    folder: str
    files: list[ReportFile] = Field(default_factory=list)


class ReportEvent(BaseModel):
    event_code: str
    title: str | None = None
    folders: list[ReportFolder] = Field(default_factory=list)
    issues: list[ReportIssue] = Field(default_factory=list)


class MigrationReport(BaseModel):
    """Static description of a run: plan tree, issues, dedup and counters."""

    migration_id: int
    title: str
    status: str
    final: bool
    progress: ProgressSnapshot
    events: list[ReportEvent] = Field(default_factory=list)
    issues: list[ReportIssue] = Field(default_factory=list)
    dedup: list[DedupSummary] = Field(default_factory=list)
    generated_at: datetime
