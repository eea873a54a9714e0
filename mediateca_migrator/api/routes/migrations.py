"""Migration lifecycle endpoints."""

from __future__ import annotations

import uuid
from collections import defaultdict
from pathlib import PurePath

import yaml
from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from sse_starlette.sse import EventSourceResponse

from ...exceptions import PolicyError
from ...models.base import session_scope
from ...models.migration import SourceEvent
from ...models.repository import MigrationRepository, MigrationRunCreate
from ...pipeline import decisions as decision_store
from ...pipeline import state_machine
from ...pipeline.importer import parse_tabular
from ...pipeline.progress import RunLogger, query_logs, stream_progress
from ...pipeline.report import build_report
from ...schemas.migration import (
    AnalysisSummary,
    CatalogedFileRead,
    DecisionProgressRead,
    DecisionUpsertRequest,
    EventCatalog,
    FileDecisionRead,
    IssueResolveRequest,
    LogLevel,
    MigrationDetail,
    MigrationLogRead,
    MigrationRead,
    MigrationReport,
    ReadinessRead,
    TaskAccepted,
)
from ...schemas.policy import MigrationPolicy, parse_policy
from ...tasks.migration import TaskDispatcher, new_task_id, record_dispatch_failure
from ...utils.config import get_default_policy_document, get_settings, merge_policy_documents
from ...utils.logging import setup_logger
from ..dependencies import get_dispatcher, get_operator

logger = setup_logger(__name__, context={"phase": "api"})
router = APIRouter()


def _resolve_policy(policy_text: str | None) -> MigrationPolicy:
    """Overlay an uploaded YAML document on the default policy and validate it."""

    base = get_default_policy_document()
    if not policy_text or not policy_text.strip():
        return parse_policy(base)
    try:
        override = yaml.safe_load(policy_text)
    except yaml.YAMLError as exc:
        raise PolicyError(f"Invalid YAML in policy document: {exc}") from exc
    if not isinstance(override, dict):
        raise PolicyError("Policy document must be a mapping of sections")
    return parse_policy(merge_policy_documents(base, override))


def _store_upload(content: bytes, filename: str) -> str:
    settings = get_settings()
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    safe_name = PurePath(filename).name or "upload"
    path = settings.upload_dir / f"{uuid.uuid4().hex}_{safe_name}"
    path.write_bytes(content)
    return str(path)


def _enqueue_execution(
    dispatcher: TaskDispatcher, migration_id: int, token: str, task_id: str
) -> None:
    try:
        dispatcher.enqueue_execution(migration_id, token, task_id=task_id)
    except Exception as exc:
        raise record_dispatch_failure(
            exc, migration_id=migration_id, phase="execution", token=token
        ) from exc


@router.get("", response_model=list[MigrationRead])
def list_migrations(limit: int = Query(100, ge=1, le=1000)) -> list[MigrationRead]:
    with session_scope() as session:
        runs = MigrationRepository(session).list_runs(limit=limit)
        return [MigrationRead.model_validate(run) for run in runs]


@router.post("/upload", response_model=MigrationRead, status_code=status.HTTP_201_CREATED)
def upload_migration(
    title: str = Form(..., min_length=1),
    file: UploadFile = File(...),
    notes: str | None = Form(None),
    policy: str | None = Form(None),
    operator: str = Depends(get_operator),
) -> MigrationRead:
    """Import a metadata export and create a run in ``uploaded``."""

    settings = get_settings()
    filename = file.filename or "upload.csv"
    content = file.file.read()

    resolved_policy = _resolve_policy(policy)
    result = parse_tabular(content, filename, source_prefix=settings.object_store.source_prefix)
    stored_path = _store_upload(content, filename)

    with session_scope() as session:
        repository = MigrationRepository(session)
        run = repository.create_run(
            MigrationRunCreate(
                title=title,
                notes=notes,
                source_filename=filename,
                source_file_path=stored_path,
                row_count=result.row_count,
                policy=resolved_policy.snapshot(),
                created_by=operator,
                analysis_data=AnalysisSummary(
                    events_total=len(result.events), issues=result.issues
                ).model_dump(mode="json"),
            )
        )
        repository.add_source_events(
            run.id,
            [
                SourceEvent(
                    event_code=event.event_code,
                    title=event.title,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    teacher_names=event.teacher_names,
                    place=event.place,
                    expected_tracks=event.expected_tracks,
                    track_names=event.track_names,
                    storage_prefix=event.storage_prefix,
                    row_number=event.row_number,
                )
                for event in result.events
            ],
        )
        run.total_events = len(result.events)
        RunLogger(session, run.id, log=logger).info(
            f"Imported {len(result.events)} event(s) from {result.row_count} row(s)",
            filename=filename,
            row_issues=len(result.issues),
        )
        session.flush()
        return MigrationRead.model_validate(run)


@router.post(
    "/{migration_id}/analyze",
    response_model=TaskAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def analyze_migration(
    migration_id: int,
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
) -> TaskAccepted:
    task_id = new_task_id()
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        state_machine.begin_analysis(session, run, task_id=task_id)
    try:
        dispatcher.enqueue_analysis(migration_id, task_id=task_id)
    except Exception as exc:
        raise record_dispatch_failure(exc, migration_id=migration_id, phase="analysis") from exc
    return TaskAccepted(
        migration_id=migration_id,
        status=state_machine.MigrationStatus.ANALYZING.value,
        task_id=task_id,
        message="Analysis queued",
    )


@router.get("/{migration_id}", response_model=MigrationDetail)
def get_migration(migration_id: int) -> MigrationDetail:
    """Return the run and its catalog grouped by event."""

    with session_scope() as session:
        repository = MigrationRepository(session)
        run = repository.get_run(migration_id)
        titles = {event.event_code: event.title for event in repository.list_source_events(run.id)}
        grouped: dict[str, list[CatalogedFileRead]] = defaultdict(list)
        for entry in repository.list_catalog(run.id):
            grouped[entry.event_code].append(CatalogedFileRead.model_validate(entry))
        events = [
            EventCatalog(event_code=code, title=titles.get(code), files=grouped.get(code, []))
            for code in titles
        ]
        return MigrationDetail(migration=MigrationRead.model_validate(run), events=events)


@router.post("/{migration_id}/decisions", response_model=DecisionProgressRead)
def upsert_decisions(
    migration_id: int,
    request: DecisionUpsertRequest,
    operator: str = Depends(get_operator),
) -> DecisionProgressRead:
    changes = [
        decision_store.DecisionChange(catalog_ids=item.catalog_ids, fields=item.supplied_fields())
        for item in request.decisions
    ]
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        progress = decision_store.upsert_decisions(session, run, changes, decided_by=operator)
        return DecisionProgressRead(
            decided=progress.decided,
            total=progress.total,
            percentage=progress.percentage,
            status=progress.status,
        )


@router.get("/{migration_id}/decisions", response_model=list[FileDecisionRead])
def list_decisions(migration_id: int) -> list[FileDecisionRead]:
    with session_scope() as session:
        MigrationRepository(session).get_run(migration_id)
        return [
            FileDecisionRead.model_validate(row)
            for row in decision_store.get_decisions(session, migration_id)
        ]


@router.get("/{migration_id}/readiness", response_model=ReadinessRead)
def get_readiness(migration_id: int) -> ReadinessRead:
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        return decision_store.readiness_for(session, run)


@router.post("/{migration_id}/issues/resolve", response_model=ReadinessRead)
def resolve_issues(migration_id: int, request: IssueResolveRequest) -> ReadinessRead:
    """Mark error issues resolved and return the updated readiness."""

    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        decision_store.resolve_issues(session, run, request.keys)
        return decision_store.readiness_for(session, run)


@router.post("/{migration_id}/approve", response_model=MigrationRead)
def approve_migration(
    migration_id: int,
    operator: str = Depends(get_operator),
) -> MigrationRead:
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        decision_store.approve_run(session, run, approved_by=operator)
        return MigrationRead.model_validate(run)


@router.post(
    "/{migration_id}/execute",
    response_model=TaskAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def execute_migration(
    migration_id: int,
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
) -> TaskAccepted:
    task_id = new_task_id()
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        token = state_machine.begin_execution(session, run, task_id=task_id)
    _enqueue_execution(dispatcher, migration_id, token, task_id)
    return TaskAccepted(
        migration_id=migration_id,
        status=state_machine.MigrationStatus.EXECUTING.value,
        task_id=task_id,
        message="Execution queued",
    )


@router.post(
    "/{migration_id}/resume",
    response_model=TaskAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def resume_migration(
    migration_id: int,
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
) -> TaskAccepted:
    """Resume a failed run from its checkpoint or take over an abandoned one."""

    task_id = new_task_id()
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        token = state_machine.resume_execution(
            session,
            run,
            lease_seconds=get_settings().execution_lease_seconds,
            task_id=task_id,
        )
    _enqueue_execution(dispatcher, migration_id, token, task_id)
    return TaskAccepted(
        migration_id=migration_id,
        status=state_machine.MigrationStatus.EXECUTING.value,
        task_id=task_id,
        message="Execution resumed",
    )


@router.post("/{migration_id}/cancel", response_model=MigrationRead)
def cancel_migration(migration_id: int) -> MigrationRead:
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        state_machine.request_cancellation(session, run)
        return MigrationRead.model_validate(run)


@router.get("/{migration_id}/progress")
async def migration_progress(migration_id: int, request: Request) -> EventSourceResponse:
    """Stream progress snapshots as server-sent events."""

    with session_scope() as session:
        MigrationRepository(session).get_run(migration_id)

    return EventSourceResponse(
        stream_progress(
            migration_id,
            poll_interval=get_settings().progress_poll_seconds,
            is_disconnected=request.is_disconnected,
        )
    )


@router.get("/{migration_id}/logs", response_model=list[MigrationLogRead])
def get_logs(
    migration_id: int,
    level: LogLevel | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
) -> list[MigrationLogRead]:
    with session_scope() as session:
        return [
            MigrationLogRead.model_validate(entry)
            for entry in query_logs(session, migration_id, level=level, limit=limit)
        ]


@router.get("/{migration_id}/report", response_model=MigrationReport)
def get_report(migration_id: int) -> MigrationReport:
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        return build_report(session, run)


@router.delete("/{migration_id}", response_model=MigrationRead)
def delete_migration(migration_id: int) -> MigrationRead:
    """Soft-cancel a run; running executions must be cancelled instead."""

    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        state_machine.soft_delete(session, run)
        return MigrationRead.model_validate(run)