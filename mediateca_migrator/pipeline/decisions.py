"""Operator decisions, readiness and approval for analyzed runs."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from ..exceptions import DecisionError, InvalidTransitionError, NotReadyError
from ..models.base import utcnow
from ..models.migration import FileDecision, MigrationRun
from ..models.repository import MigrationRepository
from ..schemas.migration import AnalysisSummary, ReadinessRead
from ..schemas.policy import MigrationPolicy
from ..utils.logging import setup_logger
from . import state_machine
from .classifier import CATEGORIES
from .readiness import describe_blockers, evaluate_readiness
from .state_machine import DECISION_STATUSES, MigrationStatus

logger = setup_logger(__name__, context={"phase": "decisions"})

ACTIONS = frozenset({"include", "ignore", "rename", "review"})
DECISION_FIELDS = ("action", "new_filename", "target_category", "notes")


@dataclass(slots=True)
class DecisionChange:
    """Fields to apply to a group of catalog entries."""

    catalog_ids: list[int]
    fields: dict[str, Any]


@dataclass(slots=True)
class DecisionProgress:
    decided: int
    total: int
    status: str

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100
        return self.decided * 100 // self.total


def _require_decision_status(run: MigrationRun) -> None:
    current = MigrationStatus(run.status)
    if current not in DECISION_STATUSES:
        raise InvalidTransitionError(
            f"Decisions cannot be recorded while migration is '{current.value}'",
            current=current.value,
            target=MigrationStatus.DECISIONS_PENDING.value,
        )


def _validate_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - set(DECISION_FIELDS)
    if unknown:
        raise DecisionError(
            f"Unknown decision fields: {', '.join(sorted(unknown))}",
            details={"fields": sorted(unknown)},
        )
    action = fields.get("action")
    if "action" in fields and action is None:
        raise DecisionError("Decision action cannot be null", details={"action": None})
    if action is not None and action not in ACTIONS:
        raise DecisionError(f"Unknown decision action '{action}'", details={"action": action})
    category = fields.get("target_category")
    if category is not None and category not in CATEGORIES:
        raise DecisionError(
            f"Unknown target category '{category}'", details={"target_category": category}
        )


def decision_progress(repository: MigrationRepository, run: MigrationRun) -> DecisionProgress:
    """Count non-review decisions against the run's catalog size."""

    decided = sum(1 for row in repository.list_decisions(run.id) if row.action != "review")
    total = repository.count_catalog(run.id)
    return DecisionProgress(decided=decided, total=total, status=run.status)


def upsert_decisions(
    session: Session,
    run: MigrationRun,
    changes: Sequence[DecisionChange],
    *,
    decided_by: str | None,
) -> DecisionProgress:
    """Create or merge decisions for the given catalog entries.

    New entries start from the catalog's suggested action; existing entries
    only receive the fields supplied in the change. Replaying the same batch
    yields the same stored state. The whole batch is rejected when any id is
    unknown or belongs to another run.
    """

    _require_decision_status(run)
    repository = MigrationRepository(session)

    requested_ids: list[int] = []
    for change in changes:
        _validate_fields(change.fields)
        requested_ids.extend(change.catalog_ids)

    catalog = repository.get_catalog_files(requested_ids)
    invalid = sorted(
        {
            catalog_id
            for catalog_id in requested_ids
            if catalog_id not in catalog or catalog[catalog_id].migration_id != run.id
        }
    )
    if invalid:
        raise DecisionError(
            f"Catalog ids do not belong to migration {run.id}: {', '.join(map(str, invalid))}",
            details={"catalog_ids": invalid},
        )

    existing = repository.get_decisions_by_catalog(requested_ids)
    now = utcnow()
    for change in changes:
        for catalog_id in change.catalog_ids:
            decision = existing.get(catalog_id)
            if decision is None:
                decision = FileDecision(
                    migration_id=run.id,
                    catalog_id=catalog_id,
                    action=catalog[catalog_id].suggested_action,
                    decided_at=now,
                )
                session.add(decision)
                existing[catalog_id] = decision
            for name, value in change.fields.items():
                setattr(decision, name, value)
            decision.decided_by = decided_by
            decision.updated_at = now
            if decision.action == "rename" and not decision.new_filename:
                raise DecisionError(
                    f"Catalog id {catalog_id}: action 'rename' requires new_filename",
                    details={"catalog_ids": [catalog_id]},
                )

    session.flush()
    progress = decision_progress(repository, run)
    state_machine.record_decision_progress(
        session, run, decided=progress.decided, total=progress.total
    )
    progress.status = run.status
    logger.info(
        "Recorded %s decision(s); %s/%s decided",
        len(requested_ids),
        progress.decided,
        progress.total,
        extra={"migration_id": run.id, "status": run.status},
    )
    return progress


def get_decisions(session: Session, migration_id: int) -> Sequence[FileDecision]:
    return MigrationRepository(session).list_decisions(migration_id)


def seed_decisions(
    session: Session,
    run: MigrationRun,
    catalog: Iterable[Any],
    *,
    decided_by: str,
) -> int:
    """Accept every ``include``/``ignore`` suggestion as a decision."""

    count = 0
    now = utcnow()
    for entry in catalog:
        if entry.suggested_action not in ("include", "ignore"):
            continue
        session.add(
            FileDecision(
                migration_id=run.id,
                catalog_id=entry.id,
                action=entry.suggested_action,
                decided_by=decided_by,
                decided_at=now,
                updated_at=now,
            )
        )
        count += 1
    session.flush()
    return count


def readiness_for(session: Session, run: MigrationRun) -> ReadinessRead:
    """Evaluate readiness from the persisted catalog, decisions and summary."""

    repository = MigrationRepository(session)
    summary = AnalysisSummary.model_validate(run.analysis_data or {})
    policy = MigrationPolicy.model_validate(run.policy)
    decisions = {row.catalog_id: row.action for row in repository.list_decisions(run.id)}
    return evaluate_readiness(
        repository.list_catalog(run.id),
        decisions,
        summary.issues,
        summary.resolved_issue_keys,
        min_success_rate=policy.validation.min_success_rate,
    )


def resolve_issues(session: Session, run: MigrationRun, keys: Iterable[str]) -> AnalysisSummary:
    """Mark error issues resolved so they stop blocking approval."""

    _require_decision_status(run)
    summary = AnalysisSummary.model_validate(run.analysis_data or {})
    errors = {issue.key for issue in summary.issues if issue.severity == "error"}
    requested = list(dict.fromkeys(keys))
    unknown = [key for key in requested if key not in errors]
    if unknown:
        raise DecisionError(
            f"Only existing error issues can be resolved: {', '.join(unknown)}",
            details={"keys": unknown},
        )
    resolved = list(summary.resolved_issue_keys)
    for key in requested:
        if key not in resolved:
            resolved.append(key)
    summary.resolved_issue_keys = resolved
    run.analysis_data = summary.model_dump(mode="json")
    session.flush()
    return summary


def approve_run(session: Session, run: MigrationRun, *, approved_by: str | None) -> MigrationRun:
    """Approve the run when the readiness check passes."""

    current = MigrationStatus(run.status)
    if current not in DECISION_STATUSES:
        state_machine.approve(session, run, approved_by=approved_by)

    report = readiness_for(session, run)
    if not report.ready:
        raise NotReadyError(
            describe_blockers(report),
            details={
                "undecided": [item.model_dump() for item in report.undecided],
                "blocking_issues": [issue.model_dump() for issue in report.blocking_issues],
            },
        )
    state_machine.approve(session, run, approved_by=approved_by)
    logger.info("Migration approved", extra={"migration_id": run.id, "status": run.status})
    return run
