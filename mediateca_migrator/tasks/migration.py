"""Celery tasks running the analysis and execution phases of a migration."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, cast

from celery import Task

from ..exceptions import ExecutionLeaseLostError, TaskExecutionError
from ..models.base import session_scope, utcnow
from ..models.repository import MigrationRepository
from ..pipeline import state_machine
from ..pipeline.analyzer import analyze_run
from ..pipeline.executor import MigrationExecutor
from ..pipeline.progress import RunLogger
from ..pipeline.state_machine import MigrationStatus
from ..schemas.migration import AnalysisSummary, Issue
from ..schemas.policy import MigrationPolicy
from ..storage.object_store import ObjectStore, build_object_store
from ..utils.config import get_settings
from ..utils.logging import setup_logger
from .celery_app import celery_app
from .error_handling import TaskErrorReport, build_error_report

logger = setup_logger(__name__, context={"phase": "tasks"})

ANALYZE_TASK_NAME = "migrations.analyze"
EXECUTE_TASK_NAME = "migrations.execute"


def _record_failure(
    report: TaskErrorReport, *, token: str | None = None, resumable: bool = False
) -> None:
    """Move the run to ``failed`` and persist the report as an error log.

    ``resumable`` gives an execution that never started an empty checkpoint so
    it can be resumed.
    """

    with session_scope() as session:
        repository = MigrationRepository(session)
        run = repository.get_run(report.migration_id)
        RunLogger(session, run.id, log=logger).error(
            f"{report.phase.capitalize()} failed: {report.message}",
            report=report.to_dict(),
        )
        values: dict[str, Any] = {}
        if report.phase == "analysis":
            summary = AnalysisSummary.model_validate(run.analysis_data or {})
            summary.issues.append(
                Issue(
                    severity="error",
                    category=report.phase,
                    message=report.message,
                    details={"classification": report.classification},
                )
            )
            values["analysis_data"] = summary.model_dump(mode="json")
        else:
            values["execution_completed_at"] = utcnow()
            if resumable and not run.checkpoint:
                values["checkpoint"] = {
                    "completed": [],
                    "failed": [],
                    "skipped": [],
                    "saved_at": utcnow().isoformat(),
                }

        expected = MigrationStatus.ANALYZING if report.phase == "analysis" else MigrationStatus.EXECUTING
        if run.status != expected.value:
            return
        state_machine.transition(
            session, run, MigrationStatus.FAILED, values=values, expected_token=token
        )


def record_dispatch_failure(
    exc: Exception, *, migration_id: int, phase: str, token: str | None = None
) -> TaskExecutionError:
    """Fail a run whose phase task could not be queued and return the error to raise."""

    report = build_error_report(
        exc, migration_id=migration_id, phase=phase, extra_details={"stage": "dispatch"}
    )
    logger.error(
        f"Could not queue the {phase} task",
        extra={"migration_id": migration_id, "status": "failed", "error_type": report.error_type},
    )
    _record_failure(report, token=token, resumable=True)
    return TaskExecutionError(report, original_error=exc)


def run_analysis(migration_id: int, *, store: ObjectStore | None = None) -> dict[str, Any]:
    """Analyze an ``analyzing`` run synchronously."""

    settings = get_settings()
    store = store or build_object_store(settings)
    try:
        with session_scope() as session:
            run = MigrationRepository(session).get_run(migration_id)
            policy = MigrationPolicy.model_validate(run.policy)
            summary = analyze_run(
                session,
                run,
                store,
                policy,
                source_bucket=settings.object_store.source_bucket,
            )
            status = run.status
    except Exception as exc:
        report = build_error_report(exc, migration_id=migration_id, phase="analysis")
        logger.exception(
            "Analysis task failed",
            extra={"migration_id": migration_id, "status": "failed"},
        )
        _record_failure(report)
        raise TaskExecutionError(report, original_error=exc) from exc

    return {
        "migration_id": migration_id,
        "status": status,
        "files": summary.files_total,
        "issues": len(summary.issues),
    }


def run_execution(
    migration_id: int, token: str, *, store: ObjectStore | None = None
) -> dict[str, Any]:
    """Execute an ``executing`` run synchronously under ``token``."""

    settings = get_settings()
    executor = MigrationExecutor(
        migration_id,
        store or build_object_store(settings),
        token=token,
        source_bucket=settings.object_store.source_bucket,
    )
    try:
        status = asyncio.run(executor.run())
    except ExecutionLeaseLostError as exc:
        report = build_error_report(exc, migration_id=migration_id, phase="execution")
        logger.warning(
            "Execution superseded by another worker",
            extra={"migration_id": migration_id, "status": "superseded"},
        )
        raise TaskExecutionError(report, original_error=exc) from exc
    except Exception as exc:
        report = build_error_report(exc, migration_id=migration_id, phase="execution")
        logger.exception(
            "Execution task failed",
            extra={"migration_id": migration_id, "status": "failed"},
        )
        _record_failure(report, token=token)
        raise TaskExecutionError(report, original_error=exc) from exc

    return {"migration_id": migration_id, "status": status}


@celery_app.task(name=ANALYZE_TASK_NAME, bind=True)
def analyze_migration_task(self, migration_id: int) -> dict[str, Any]:
    """Run the analysis phase for a migration."""

    return run_analysis(migration_id)


@celery_app.task(name=EXECUTE_TASK_NAME, bind=True)
def execute_migration_task(self, migration_id: int, token: str) -> dict[str, Any]:
    """Run the execution phase for a migration."""

    return run_execution(migration_id, token)


MIGRATION_TASKS: dict[str, Task] = {
    ANALYZE_TASK_NAME: cast(Task, analyze_migration_task),
    EXECUTE_TASK_NAME: cast(Task, execute_migration_task),
}


def new_task_id() -> str:
    return uuid.uuid4().hex


class TaskDispatcher:
    """Queues phase tasks; the API records the task id on the run first."""

    def enqueue_analysis(self, migration_id: int, *, task_id: str) -> str:
        analyze_migration_task.apply_async(args=[migration_id], task_id=task_id)
        return task_id

    def enqueue_execution(self, migration_id: int, token: str, *, task_id: str) -> str:
        execute_migration_task.apply_async(args=[migration_id, token], task_id=task_id)
        return task_id


__all__ = [
    "ANALYZE_TASK_NAME",
    "EXECUTE_TASK_NAME",
    "MIGRATION_TASKS",
    "TaskDispatcher",
    "analyze_migration_task",
    "execute_migration_task",
    "new_task_id",
    "record_dispatch_failure",
    "run_analysis",
    "run_execution",
]
