"""Catalog building: discover, classify and deduplicate every event's objects.

Analysis only reads from the object store. All catalog rows of a run are
written in a single transaction once every event has been examined, so an
outage part-way through leaves the database untouched.
"""

from __future__ import annotations

import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from sqlalchemy.orm import Session

from ..models.base import utcnow
from ..models.migration import MigrationRun, SourceEvent
from ..models.repository import CatalogedFileCreate, MigrationRepository
from ..monitoring.metrics import observe_phase_duration, record_cataloged_file, record_issue
from ..schemas.migration import AnalysisSummary, DedupSummary, Issue
from ..schemas.policy import MismatchStrategy, MigrationPolicy, NoAudioStrategy
from ..storage.object_store import ObjectStore, StoredObject
from ..utils.logging import log_phase_outcome, setup_logger
from . import state_machine
from .classifier import build_target_key, classify_object, flag_target_collisions, target_folder
from .decisions import seed_decisions
from .dedup import legacy_placement, resolve_collections
from .state_machine import MigrationStatus
from .tracks import parse_track_filename

logger = setup_logger(__name__, context={"phase": "analysis"})

AUTO_DECIDER = "analyzer"


@dataclass(slots=True)
class EventAnalysis:
    """Catalog drafts and issues produced for one event."""

    event_code: str
    entries: list[CatalogedFileCreate] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    dedup: DedupSummary | None = None


def _draft(
    obj: StoredObject,
    event: SourceEvent,
    policy: MigrationPolicy,
    csv_names: set[str],
) -> CatalogedFileCreate:
    classification = classify_object(
        obj.key,
        event_prefix=event.storage_prefix,
        discover_transcripts=policy.content.auto_discover_transcripts,
    )
    metadata: dict[str, Any] = {
        "target_key": build_target_key(
            policy.storage.folder_pattern,
            event_code=event.event_code,
            folder=target_folder(classification.category),
            filename=classification.filename,
        ),
        "collection": classification.collection,
        "language": classification.language,
        "source_type": "system_file" if classification.is_system_file else "loose_file",
        "matched_in_csv": classification.filename.lower() in csv_names,
    }
    if classification.file_type == "audio":
        info = parse_track_filename(classification.filename)
        metadata["track_number"] = info.track_number
        metadata["speaker"] = info.speaker
    return CatalogedFileCreate(
        event_code=event.event_code,
        source_directory=classification.source_directory,
        filename=classification.filename,
        object_key=obj.key,
        file_type=classification.file_type,
        category=classification.category,
        extension=classification.extension,
        size=obj.size,
        mime_type=classification.mime_type,
        suggested_action=classification.suggested_action,
        suggested_category=classification.category,
        metadata=metadata,
    )


def _apply_dedup(
    analysis: EventAnalysis, event: SourceEvent, policy: MigrationPolicy
) -> None:
    audio = [
        entry
        for entry in analysis.entries
        if entry.file_type == "audio" and entry.suggested_action != "ignore"
    ]
    if not audio:
        return

    collections: dict[str, list[str]] = defaultdict(list)
    for entry in audio:
        collections[entry.metadata.get("collection") or "main"].append(entry.object_key)
    result = resolve_collections(dict(collections))

    legacy_category, legacy_folder = legacy_placement(policy.tracks.legacy_strategy)
    for entry in audio:
        role = result.role_of(entry.object_key)
        entry.metadata["dedup_role"] = role
        if role == "duplicate":
            entry.suggested_action = "ignore"
        elif role == "legacy":
            # Translations keep their category and only move with the legacy placement.
            if entry.category != "audio_translation":
                entry.category = legacy_category
                entry.suggested_category = legacy_category
            entry.metadata["target_key"] = build_target_key(
                policy.storage.folder_pattern,
                event_code=event.event_code,
                folder=legacy_folder,
                filename=entry.filename,
            )

    analysis.dedup = DedupSummary(
        event_code=event.event_code,
        canonical=result.canonical,
        collections=result.collections,
        main_tracks=[PurePosixPath(key).name for key in result.main],
        legacy_tracks=[PurePosixPath(key).name for key in result.legacy],
        duplicate_tracks=[PurePosixPath(key).name for key in result.duplicates],
        tie_break=result.tie_break,
    )
    if result.legacy:
        analysis.issues.append(
            Issue(
                severity="info",
                category="dedup",
                message=(
                    f"{len(result.legacy)} legacy track(s) kept next to canonical collection "
                    f"'{result.canonical}', {len(result.duplicates)} duplicate(s) ignored"
                ),
                event_code=event.event_code,
                details={
                    "main": analysis.dedup.main_tracks,
                    "legacy": analysis.dedup.legacy_tracks,
                    "duplicates": analysis.dedup.duplicate_tracks,
                    "tie_break": result.tie_break,
                },
            )
        )


def _check_track_counts(
    analysis: EventAnalysis, event: SourceEvent, policy: MigrationPolicy
) -> None:
    audio = [entry for entry in analysis.entries if entry.file_type == "audio"]
    expected_by_collection = dict(event.expected_tracks or {})
    expected = sum(expected_by_collection.values())
    parsed = len(audio)
    if expected <= 0 or expected == parsed:
        return

    parsed_by_collection = Counter(entry.metadata.get("collection") or "main" for entry in audio)
    names = sorted(set(expected_by_collection) | set(parsed_by_collection))
    analysis.issues.append(
        Issue(
            severity="warning",
            category="count",
            message=f"Expected {expected} track(s) from the export, found {parsed} audio file(s)",
            event_code=event.event_code,
            details={
                "expected": expected,
                "parsed": parsed,
                "collections": {
                    name: {
                        "expected": expected_by_collection.get(name, 0),
                        "parsed": parsed_by_collection.get(name, 0),
                    }
                    for name in names
                },
            },
        )
    )

    strategy = policy.tracks.mismatch_strategy
    if strategy is MismatchStrategy.MANUAL_REVIEW:
        for entry in audio:
            if entry.suggested_action != "ignore":
                entry.suggested_action = "review"
    elif strategy is MismatchStrategy.TRUST_CSV and any(event.track_names.values()):
        for entry in audio:
            if entry.suggested_action != "ignore" and not entry.metadata.get("matched_in_csv"):
                entry.suggested_action = "review"


def _check_content(
    analysis: EventAnalysis, event: SourceEvent, policy: MigrationPolicy, csv_names: set[str]
) -> None:
    audio = [entry for entry in analysis.entries if entry.file_type == "audio"]
    archives = [entry for entry in analysis.entries if entry.file_type == "archive"]
    videos = [entry for entry in analysis.entries if entry.file_type == "video"]

    if not audio:
        strategy = policy.content.no_audio_strategy
        if strategy is NoAudioStrategy.CREATE_PLACEHOLDER:
            analysis.issues.append(
                Issue(
                    severity="info",
                    category="no_audio",
                    message="No audio found; the event will be created without tracks",
                    event_code=event.event_code,
                )
            )
        else:
            analysis.issues.append(
                Issue(
                    severity="error",
                    category="no_audio",
                    message=f"No audio found for event (no_audio_strategy={strategy.value})",
                    event_code=event.event_code,
                    details={"strategy": strategy.value},
                )
            )
            if strategy is NoAudioStrategy.SKIP:
                for entry in analysis.entries:
                    entry.suggested_action = "ignore"

    if archives and not audio:
        analysis.issues.append(
            Issue(
                severity="info",
                category="zip",
                message=f"Archive-only event: {len(archives)} archive(s) need extraction",
                event_code=event.event_code,
                details={"archives": [entry.filename for entry in archives]},
            )
        )

    if csv_names and not archives:
        found = {entry.filename.lower() for entry in audio}
        missing = sorted(name for name in csv_names if name not in found)
        if missing:
            analysis.issues.append(
                Issue(
                    severity="warning",
                    category="missing",
                    message=f"{len(missing)} track(s) listed in the export were not found",
                    event_code=event.event_code,
                    details={"missing_tracks": missing},
                )
            )

    if videos:
        analysis.issues.append(
            Issue(
                severity="info",
                category="video",
                message=f"Found {len(videos)} video file(s)",
                event_code=event.event_code,
                details={"videos": [entry.filename for entry in videos]},
            )
        )


def analyze_event(
    event: SourceEvent,
    objects: list[StoredObject],
    policy: MigrationPolicy,
) -> EventAnalysis:
    """Classify, deduplicate and check the objects listed for one event."""

    analysis = EventAnalysis(event_code=event.event_code)
    if not objects:
        analysis.issues.append(
            Issue(
                severity="warning",
                category="storage",
                message=f"No files found under {event.storage_prefix}",
                event_code=event.event_code,
                details={"prefix": event.storage_prefix},
            )
        )
        return analysis

    csv_names = {
        name.lower() for names in (event.track_names or {}).values() for name in names
    }
    analysis.entries = [_draft(obj, event, policy, csv_names) for obj in objects]
    _apply_dedup(analysis, event, policy)
    _check_track_counts(analysis, event, policy)
    _check_content(analysis, event, policy, csv_names)
    return analysis


def _summarize(
    run: MigrationRun,
    events: list[SourceEvent],
    analyses: list[EventAnalysis],
    conflicts: int,
) -> AnalysisSummary:
    previous = AnalysisSummary.model_validate(run.analysis_data or {})
    entries = [entry for analysis in analyses for entry in analysis.entries]
    issues = [issue for issue in previous.issues if issue.category == "import"]
    for analysis in analyses:
        issues.extend(analysis.issues)
    return AnalysisSummary(
        events_total=len(events),
        events_with_files=sum(1 for analysis in analyses if analysis.entries),
        files_total=len(entries),
        files_by_type=dict(Counter(entry.file_type for entry in entries)),
        files_by_category=dict(Counter(entry.category for entry in entries)),
        suggested_actions=dict(Counter(entry.suggested_action for entry in entries)),
        conflicts=conflicts,
        issues=issues,
        dedup=[analysis.dedup for analysis in analyses if analysis.dedup is not None],
        resolved_issue_keys=list(previous.resolved_issue_keys),
        analyzed_at=utcnow(),
    )


def analyze_run(
    session: Session,
    run: MigrationRun,
    store: ObjectStore,
    policy: MigrationPolicy,
    *,
    source_bucket: str,
) -> AnalysisSummary:
    """Build the catalog of an ``analyzing`` run and move it to ``analyzed``.

    Raises :class:`ObjectStoreUnavailableError` when a listing cannot be
    completed; nothing is written in that case.
    """

    started = time.perf_counter()
    repository = MigrationRepository(session)
    events = list(repository.list_source_events(run.id))
    run_logger = logger.bind(migration_id=run.id)
    run_logger.info("Analyzing %s event(s) in bucket %s", len(events), source_bucket)

    analyses: list[EventAnalysis] = []
    for event in events:
        objects = store.list_objects(source_bucket, event.storage_prefix)
        analysis = analyze_event(event, objects, policy)
        run_logger.debug(
            "Cataloged %s object(s)",
            len(analysis.entries),
            extra={"event_code": event.event_code},
        )
        analyses.append(analysis)

    all_entries = [entry for analysis in analyses for entry in analysis.entries]
    conflicts = flag_target_collisions(all_entries)
    summary = _summarize(run, events, analyses, conflicts)

    rows = repository.add_catalog_files(run.id, all_entries)
    for row in rows:
        record_cataloged_file(row.file_type, row.suggested_action)
    for issue in summary.issues:
        record_issue(issue.severity, issue.category)
    if policy.validation.auto_accept_suggestions:
        seeded = seed_decisions(session, run, rows, decided_by=AUTO_DECIDER)
        run_logger.info("Seeded %s decision(s) from suggestions", seeded)

    state_machine.transition(
        session,
        run,
        MigrationStatus.ANALYZED,
        values={
            "analysis_data": summary.model_dump(mode="json"),
            "analyzed_at": summary.analyzed_at,
            "total_events": len(events),
        },
    )

    duration = time.perf_counter() - started
    observe_phase_duration("analysis", duration)
    log_phase_outcome(
        run_logger,
        migration_id=run.id,
        phase="analysis",
        status=run.status,
        duration_ms=int(duration * 1000),
        files=summary.files_total,
        issues=summary.count_by_severity(),
        conflicts=conflicts,
    )
    return summary
