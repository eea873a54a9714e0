"""Tests for the approval readiness check."""

from __future__ import annotations

import random
from dataclasses import dataclass

from mediateca_migrator.pipeline.readiness import describe_blockers, evaluate_readiness
from mediateca_migrator.schemas.migration import Issue


@dataclass
class Entry:
    id: int
    event_code: str
    filename: str
    suggested_action: str


def _entries(*suggestions: str) -> list[Entry]:
    return [
        Entry(id=index + 1, event_code="EV-001", filename=f"{index + 1:03d}.mp3", suggested_action=action)
        for index, action in enumerate(suggestions)
    ]


def test_all_decided_without_errors_is_ready() -> None:
    """Full coverage and no errors make a run ready."""
    report = evaluate_readiness(
        _entries("include", "ignore"),
        {1: "include", 2: "ignore"},
        [Issue(severity="warning", category="count", message="Mismatch", event_code="EV-001")],
        min_success_rate=0.9,
    )

    assert report.ready is True
    assert report.decided == report.total == 2
    assert report.undecided == []
    assert report.blocking_issues == []
    assert len(report.issues) == 1
    assert report.advisory == {"min_success_rate": 0.9}


def test_review_decision_does_not_count() -> None:
    """A decision still set to review is not a decision."""
    report = evaluate_readiness(_entries("include"), {1: "review"}, [])

    assert report.ready is False
    assert report.decided == 0
    assert [item.catalog_id for item in report.undecided] == [1]


def test_review_suggestions_are_reported_separately() -> None:
    """Undecided files suggested for review are listed as review pending."""
    report = evaluate_readiness(_entries("review", "include"), {2: "include"}, [])

    assert report.ready is True
    assert [item.catalog_id for item in report.review_pending] == [1]
    assert report.undecided == []


def test_unresolved_errors_block() -> None:
    """Error issues block until resolved."""
    error = Issue(severity="error", category="no_audio", message="No audio", event_code="EV-002")
    entries = _entries("include")

    blocked = evaluate_readiness(entries, {1: "include"}, [error])
    resolved = evaluate_readiness(entries, {1: "include"}, [error], [error.key])

    assert blocked.ready is False
    assert [issue.key for issue in blocked.blocking_issues] == ["no_audio:EV-002"]
    assert resolved.ready is True


def test_describe_blockers_names_files_and_issues() -> None:
    """The rejection message lists what is missing."""
    error = Issue(severity="error", category="no_audio", message="No audio", event_code="EV-002")
    report = evaluate_readiness(_entries(*["include"] * 12), {}, [error])

    message = describe_blockers(report)

    assert message.startswith("Migration is not ready for approval: 12 file(s) without a decision")
    assert "EV-001/001.mp3 (#1)" in message
    assert "and 2 more" in message
    assert "1 unresolved error issue(s): no_audio:EV-002" in message


def test_readiness_matches_definition_on_random_runs() -> None:
    """Ready exactly when every non-review entry is decided and no error is open."""
    rng = random.Random(20261017)
    actions = ["include", "ignore", "rename", "review"]

    for _ in range(200):
        entries = _entries(*(rng.choice(["include", "ignore", "review"]) for _ in range(rng.randint(0, 8))))
        decisions = {
            entry.id: rng.choice(actions) for entry in entries if rng.random() < 0.7
        }
        issues = [
            Issue(
                severity=rng.choice(["error", "warning", "info"]),
                category=f"cat{index}",
                message="finding",
            )
            for index in range(rng.randint(0, 3))
        ]
        resolved = [issue.key for issue in issues if rng.random() < 0.5]

        report = evaluate_readiness(entries, decisions, issues, resolved)

        undecided_required = [
            entry
            for entry in entries
            if decisions.get(entry.id) in (None, "review") and entry.suggested_action != "review"
        ]
        open_errors = [
            issue for issue in issues if issue.severity == "error" and issue.key not in resolved
        ]
        assert report.ready == (not undecided_required and not open_errors)
        assert report.decided == sum(
            1 for entry in entries if decisions.get(entry.id) not in (None, "review")
        )
        assert report.total == len(entries)
