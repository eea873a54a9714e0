"""Prometheus metrics definitions for the mediateca migrator."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

STATUS_TRANSITIONS = Counter(
    "migration_status_transitions_total",
    "Total lifecycle transitions by source and target status.",
    labelnames=("from_status", "to_status"),
)

REJECTED_TRANSITIONS = Counter(
    "migration_rejected_transitions_total",
    "Lifecycle transitions rejected by the state machine.",
    labelnames=("target",),
)

CATALOGED_FILES = Counter(
    "migration_cataloged_files_total",
    "Objects cataloged during analysis by file type and suggested action.",
    labelnames=("file_type", "suggested_action"),
)

ANALYSIS_ISSUES = Counter(
    "migration_analysis_issues_total",
    "Issues raised during import and analysis.",
    labelnames=("severity", "category"),
)

EVENTS_PROCESSED = Counter(
    "migration_events_processed_total",
    "Events processed during execution by outcome.",
    labelnames=("outcome",),
)

OBJECT_COPIES = Counter(
    "migration_object_copies_total",
    "Object copies attempted during execution by outcome.",
    labelnames=("outcome",),
)

OBJECT_COPY_DURATION = Histogram(
    "migration_object_copy_duration_seconds",
    "Distribution of object copy durations in seconds.",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)

ARCHIVE_EXTRACTIONS = Counter(
    "migration_archive_extractions_total",
    "Zip archives unpacked into the target bucket during execution by outcome.",
    labelnames=("outcome",),
)

EXTRACTED_FILES = Counter(
    "migration_extracted_files_total",
    "Files written to the target bucket from unpacked archives.",
)

PHASE_DURATION = Histogram(
    "migration_phase_duration_seconds",
    "Distribution of analysis and execution phase durations in seconds.",
    labelnames=("phase",),
    buckets=(1, 5, 15, 30, 60, 300, 900, 1800, 3600, 7200),
)

ACTIVE_EXECUTIONS = Gauge(
    "migration_active_executions",
    "Number of executions currently running in this process.",
)


def record_transition(from_status: str, to_status: str) -> None:
    """Increment the transition counter for the supplied statuses."""

    STATUS_TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc()


def record_rejected_transition(target: str) -> None:
    REJECTED_TRANSITIONS.labels(target=target).inc()


def record_cataloged_file(file_type: str, suggested_action: str) -> None:
    CATALOGED_FILES.labels(file_type=file_type, suggested_action=suggested_action).inc()


def record_issue(severity: str, category: str) -> None:
    ANALYSIS_ISSUES.labels(severity=severity, category=category).inc()


def record_event_outcome(outcome: str) -> None:
    """Increment the processed events counter for an outcome."""

    EVENTS_PROCESSED.labels(outcome=outcome).inc()


def record_object_copy(outcome: str, duration_seconds: float) -> None:
    """Record one object copy attempt and its duration."""

    OBJECT_COPIES.labels(outcome=outcome).inc()
    OBJECT_COPY_DURATION.observe(max(duration_seconds, 0.0))


def record_archive_extraction(outcome: str, files: int = 0) -> None:
    ARCHIVE_EXTRACTIONS.labels(outcome=outcome).inc()
    if files:
        EXTRACTED_FILES.inc(files)


def observe_phase_duration(phase: str, duration_seconds: float) -> None:
    PHASE_DURATION.labels(phase=phase).observe(max(duration_seconds, 0.0))


def increment_active_executions() -> None:
    ACTIVE_EXECUTIONS.inc()


def decrement_active_executions() -> None:
    ACTIVE_EXECUTIONS.dec()
