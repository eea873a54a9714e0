"""Lifecycle states of a migration run and the rules between them.

Every transition is a compare-and-set ``UPDATE ... WHERE status = <current>``
committed together with the counters it changes, so two callers racing for
the same transition cannot both win.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Final

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..exceptions import InvalidTransitionError
from ..models.base import as_utc, utcnow
from ..models.migration import MigrationRun
from ..monitoring.metrics import record_rejected_transition, record_transition


class MigrationStatus(str, Enum):
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    DECISIONS_PENDING = "decisions_pending"
    DECISIONS_COMPLETE = "decisions_complete"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


S = MigrationStatus

ALLOWED_TRANSITIONS: Final[dict[MigrationStatus, frozenset[MigrationStatus]]] = {
    S.UPLOADED: frozenset({S.ANALYZING, S.CANCELLED}),
    S.ANALYZING: frozenset({S.ANALYZED, S.FAILED, S.CANCELLED}),
    S.ANALYZED: frozenset({S.DECISIONS_PENDING, S.DECISIONS_COMPLETE, S.APPROVED, S.CANCELLED}),
    S.DECISIONS_PENDING: frozenset(
        {S.DECISIONS_PENDING, S.DECISIONS_COMPLETE, S.APPROVED, S.CANCELLED}
    ),
    S.DECISIONS_COMPLETE: frozenset(
        {S.DECISIONS_PENDING, S.DECISIONS_COMPLETE, S.APPROVED, S.CANCELLED}
    ),
    S.APPROVED: frozenset({S.EXECUTING, S.CANCELLED}),
    # executing -> cancelled is only taken by the engine after a cancel request.
    S.EXECUTING: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.COMPLETED: frozenset({S.CANCELLED}),
    # failed -> executing resumes from a checkpoint.
    S.FAILED: frozenset({S.EXECUTING, S.CANCELLED}),
    S.CANCELLED: frozenset(),
}

DECISION_STATUSES: Final = frozenset({S.ANALYZED, S.DECISIONS_PENDING, S.DECISIONS_COMPLETE})
FINAL_STATUSES: Final = frozenset({S.COMPLETED, S.FAILED, S.CANCELLED})


def is_allowed(current: MigrationStatus, target: MigrationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def rejection_reason(current: MigrationStatus, target: MigrationStatus) -> str:
    """Return the operator-facing reason a transition is refused."""

    if current is S.CANCELLED:
        return "Migration has been cancelled"
    if target is S.ANALYZING:
        if current is S.ANALYZING:
            return "Migration is already being analyzed"
        return "Migration already analyzed"
    if target is S.APPROVED:
        if current is S.APPROVED:
            return "Migration is already approved"
        return "Migration must have decisions before approval"
    if target is S.EXECUTING:
        if current is S.EXECUTING:
            return "Migration is already executing"
        return "Migration must be approved before execution"
    if target is S.CANCELLED and current is S.EXECUTING:
        return "Cannot delete a running migration"
    if target in (S.DECISIONS_PENDING, S.DECISIONS_COMPLETE):
        return f"Decisions cannot be recorded while migration is '{current.value}'"
    return f"Cannot transition migration from '{current.value}' to '{target.value}'"


def _reject(current: MigrationStatus, target: MigrationStatus, message: str | None = None) -> None:
    record_rejected_transition(target.value)
    raise InvalidTransitionError(
        message or rejection_reason(current, target),
        current=current.value,
        target=target.value,
    )


def transition(
    session: Session,
    run: MigrationRun,
    target: MigrationStatus,
    *,
    values: dict[str, Any] | None = None,
    expected_token: str | None = None,
) -> MigrationRun:
    """Move ``run`` to ``target`` atomically, or raise leaving it unchanged.

    ``expected_token`` additionally requires the run's execution lease to
    still belong to the caller.
    """

    current = MigrationStatus(run.status)
    if not is_allowed(current, target):
        _reject(current, target)

    statement = update(MigrationRun).where(
        MigrationRun.id == run.id,
        MigrationRun.status == current.value,
    )
    if expected_token is not None:
        statement = statement.where(MigrationRun.execution_token == expected_token)

    payload: dict[str, Any] = {"status": target.value, "updated_at": utcnow()}
    if values:
        payload.update(values)

    result = session.execute(
        statement.values(**payload).execution_options(synchronize_session=False)
    )
    session.refresh(run)
    if result.rowcount != 1:
        _reject(
            current,
            target,
            f"Migration {run.id} changed concurrently (now '{run.status}'); transition to "
            f"'{target.value}' was not applied",
        )

    record_transition(current.value, target.value)
    return run


def begin_analysis(session: Session, run: MigrationRun, *, task_id: str | None = None) -> MigrationRun:
    """Enter ``analyzing``; analysis runs once per run."""

    return transition(session, run, S.ANALYZING, values={"task_id": task_id})


def record_decision_progress(session: Session, run: MigrationRun, *, decided: int, total: int) -> MigrationRun:
    """Hold or advance the run between ``decisions_pending`` and ``decisions_complete``."""

    target = S.DECISIONS_COMPLETE if total > 0 and decided >= total else S.DECISIONS_PENDING
    if run.status == target.value:
        return run
    return transition(session, run, target)


def approve(session: Session, run: MigrationRun, *, approved_by: str | None) -> MigrationRun:
    """Enter ``approved``; callers check readiness first."""

    current = MigrationStatus(run.status)
    if current not in DECISION_STATUSES:
        _reject(current, S.APPROVED)
    return transition(
        session,
        run,
        S.APPROVED,
        values={"approved_by": approved_by, "approved_at": utcnow()},
    )


def begin_execution(
    session: Session,
    run: MigrationRun,
    *,
    task_id: str | None = None,
) -> str:
    """Enter ``executing`` from ``approved`` and return the new execution token."""

    current = MigrationStatus(run.status)
    if current is not S.APPROVED:
        _reject(current, S.EXECUTING)

    token = uuid.uuid4().hex
    now = utcnow()
    transition(
        session,
        run,
        S.EXECUTING,
        values={
            "execution_token": token,
            "heartbeat_at": now,
            "task_id": task_id,
            "progress_percentage": 0,
            "processed_events": 0,
            "successful_events": 0,
            "failed_events": 0,
            "skipped_events": 0,
            "cancel_requested": False,
            "checkpoint": None,
            "execution_started_at": now,
            "execution_completed_at": None,
        },
    )
    return token


def resume_execution(
    session: Session,
    run: MigrationRun,
    *,
    lease_seconds: int,
    task_id: str | None = None,
) -> str:
    """Take over execution of a failed or abandoned run and return the new token.

    A failed run resumes only when it holds an execution checkpoint. An
    executing run is taken over only when its heartbeat is older than
    ``lease_seconds``.
    """

    current = MigrationStatus(run.status)
    token = uuid.uuid4().hex
    now = utcnow()

    if current is S.FAILED:
        if not run.checkpoint:
            _reject(current, S.EXECUTING, "Migration has no execution checkpoint to resume from")
        transition(
            session,
            run,
            S.EXECUTING,
            values={
                "execution_token": token,
                "heartbeat_at": now,
                "task_id": task_id,
                "cancel_requested": False,
                "execution_completed_at": None,
            },
        )
        return token

    if current is S.EXECUTING:
        heartbeat = as_utc(run.heartbeat_at)
        if heartbeat is not None and heartbeat > now - timedelta(seconds=lease_seconds):
            _reject(current, S.EXECUTING, "Migration is already executing")
        result = session.execute(
            update(MigrationRun)
            .where(
                MigrationRun.id == run.id,
                MigrationRun.status == S.EXECUTING.value,
                MigrationRun.execution_token == run.execution_token,
            )
            .values(execution_token=token, heartbeat_at=now, task_id=task_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.refresh(run)
        if result.rowcount != 1:
            _reject(current, S.EXECUTING, "Execution lease was taken over concurrently")
        return token

    if current is S.APPROVED:
        return begin_execution(session, run, task_id=task_id)

    _reject(current, S.EXECUTING, f"Migration cannot be resumed while '{current.value}'")
    raise AssertionError("unreachable")


def soft_delete(session: Session, run: MigrationRun) -> MigrationRun:
    """Cancel a run that is not executing."""

    current = MigrationStatus(run.status)
    if current is S.EXECUTING:
        _reject(current, S.CANCELLED)
    return transition(session, run, S.CANCELLED)


def request_cancellation(session: Session, run: MigrationRun) -> MigrationRun:
    """Ask the executing engine to stop at its next event boundary."""

    if run.status != S.EXECUTING.value:
        _reject(
            MigrationStatus(run.status),
            S.CANCELLED,
            "Only an executing migration can be cancelled cooperatively; use DELETE instead",
        )
    session.execute(
        update(MigrationRun)
        .where(MigrationRun.id == run.id, MigrationRun.status == S.EXECUTING.value)
        .values(cancel_requested=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.refresh(run)
    return run
