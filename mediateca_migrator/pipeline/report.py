"""Static migration report assembled from persisted run state."""

from __future__ import annotations

from collections import defaultdict
from pathlib import PurePosixPath

from sqlalchemy.orm import Session

from ..models.base import utcnow
from ..models.migration import MigrationRun
from ..models.repository import MigrationRepository
from ..schemas.migration import (
    AnalysisSummary,
    MigrationReport,
    ProgressSnapshot,
    ReportEvent,
    ReportFile,
    ReportFolder,
    ReportIssue,
)
from ..schemas.policy import MigrationPolicy
from .executor import resolve_target
from .progress import snapshot
from .state_machine import FINAL_STATUSES, MigrationStatus

IGNORED_FOLDER = "(ignored)"
ROOT_FOLDER = "/"
EXECUTION_LOG_LIMIT = 1000

_LOG_SEVERITY = {"warn": "warning", "error": "error"}


def _folder_of(target_key: str | None) -> str:
    if not target_key:
        return ROOT_FOLDER
    parent = str(PurePosixPath(target_key).parent)
    return ROOT_FOLDER if parent in ("", ".") else parent


def build_report(session: Session, run: MigrationRun) -> MigrationReport:
    """Describe the plan, issues and outcome of ``run``.

    Files are grouped per event under the folder of their target key; ignored
    files are listed under ``(ignored)``. Issues combine analysis findings
    with warnings and errors logged during execution.
    """

    repository = MigrationRepository(session)
    summary = AnalysisSummary.model_validate(run.analysis_data or {})
    resolved = set(summary.resolved_issue_keys)
    policy = MigrationPolicy.model_validate(run.policy)
    decisions = {row.catalog_id: row for row in repository.list_decisions(run.id)}

    issues = [
        ReportIssue(**issue.model_dump(), resolved=issue.key in resolved)
        for issue in summary.issues
    ]
    for entry in reversed(repository.query_logs(run.id, limit=EXECUTION_LOG_LIMIT)):
        severity = _LOG_SEVERITY.get(entry.level)
        if severity is None:
            continue
        issues.append(
            ReportIssue(
                key=f"execution:{entry.event_code or '*'}:{entry.id}",
                severity=severity,
                category="execution",
                message=entry.message,
                event_code=entry.event_code,
                details=dict(entry.context or {}),
            )
        )

    by_event_issues: dict[str, list[ReportIssue]] = defaultdict(list)
    run_issues: list[ReportIssue] = []
    for issue in issues:
        if issue.event_code:
            by_event_issues[issue.event_code].append(issue)
        else:
            run_issues.append(issue)

    folders: dict[str, dict[str, list[ReportFile]]] = defaultdict(lambda: defaultdict(list))
    for entry in repository.list_catalog(run.id):
        decision = decisions.get(entry.id)
        if decision is not None:
            action = decision.action
            target, category = resolve_target(decision, entry, policy)
        else:
            action, target, category = entry.suggested_action, entry.target_key, entry.category
        folder = IGNORED_FOLDER if action == "ignore" else _folder_of(target)
        folders[entry.event_code][folder].append(
            ReportFile(
                catalog_id=entry.id,
                filename=entry.filename,
                object_key=entry.object_key,
                category=category,
                action=action,
                decided=decision is not None,
                target_key=None if action == "ignore" else target,
            )
        )

    events = []
    for event in repository.list_source_events(run.id):
        event_folders = folders.get(event.event_code, {})
        events.append(
            ReportEvent(
                event_code=event.event_code,
                title=event.title,
                folders=[
                    ReportFolder(folder=name, files=event_folders[name])
                    for name in sorted(event_folders, key=lambda name: (name == IGNORED_FOLDER, name))
                ],
                issues=by_event_issues.pop(event.event_code, []),
            )
        )
    for leftover in by_event_issues.values():
        run_issues.extend(leftover)

    return MigrationReport(
        migration_id=run.id,
        title=run.title,
        status=run.status,
        final=MigrationStatus(run.status) in FINAL_STATUSES,
        progress=ProgressSnapshot(**snapshot(run)),
        events=events,
        issues=run_issues,
        dedup=summary.dedup,
        generated_at=utcnow(),
    )
