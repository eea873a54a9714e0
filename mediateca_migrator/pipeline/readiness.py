"""Approval readiness check over a run's catalog, decisions and issues."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol

from ..schemas.migration import Issue, ReadinessRead, UndecidedFile


class CatalogEntry(Protocol):
    id: int
    event_code: str
    filename: str
    suggested_action: str


def evaluate_readiness(
    catalog: Iterable[CatalogEntry],
    decisions: Mapping[int, str],
    issues: Iterable[Issue],
    resolved_issue_keys: Iterable[str] = (),
    *,
    min_success_rate: float | None = None,
) -> ReadinessRead:
    """Decide whether a run may be approved.

    ``decisions`` maps catalog ids to their decided action. A decision that is
    still ``review`` does not count as decided. The run is ready when every
    entry not suggested for review is decided and no error issue remains
    unresolved.
    """

    entries = list(catalog)
    all_issues = list(issues)
    resolved = set(resolved_issue_keys)

    undecided: list[UndecidedFile] = []
    review_pending: list[UndecidedFile] = []
    decided = 0
    for entry in entries:
        action = decisions.get(entry.id)
        if action is not None and action != "review":
            decided += 1
            continue
        item = UndecidedFile(
            catalog_id=entry.id,
            event_code=entry.event_code,
            filename=entry.filename,
            suggested_action=entry.suggested_action,
        )
        if entry.suggested_action == "review":
            review_pending.append(item)
        else:
            undecided.append(item)

    blocking = [
        issue for issue in all_issues if issue.severity == "error" and issue.key not in resolved
    ]

    advisory: dict[str, object] = {}
    if min_success_rate is not None:
        advisory["min_success_rate"] = min_success_rate

    return ReadinessRead(
        ready=not undecided and not blocking,
        decided=decided,
        total=len(entries),
        undecided=undecided,
        review_pending=review_pending,
        blocking_issues=blocking,
        issues=all_issues,
        advisory=advisory,
    )


def describe_blockers(report: ReadinessRead, *, limit: int = 10) -> str:
    """Render a rejection message naming undecided files and blocking issues."""

    parts: list[str] = []
    if report.undecided:
        names = ", ".join(
            f"{item.event_code}/{item.filename} (#{item.catalog_id})"
            for item in report.undecided[:limit]
        )
        more = len(report.undecided) - limit
        suffix = f" and {more} more" if more > 0 else ""
        parts.append(f"{len(report.undecided)} file(s) without a decision: {names}{suffix}")
    if report.blocking_issues:
        keys = ", ".join(issue.key for issue in report.blocking_issues[:limit])
        parts.append(f"{len(report.blocking_issues)} unresolved error issue(s): {keys}")
    return "Migration is not ready for approval: " + "; ".join(parts)
