"""Tests for the static migration report."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from mediateca_migrator.models.base import session_scope
from mediateca_migrator.models.repository import MigrationRepository
from mediateca_migrator.pipeline.decisions import DecisionChange, resolve_issues, upsert_decisions
from mediateca_migrator.pipeline.report import IGNORED_FOLDER, build_report
from mediateca_migrator.schemas.migration import AnalysisSummary, MigrationReport
from mediateca_migrator.testing import InMemoryObjectStore


def _report(run_id: int) -> MigrationReport:
    with session_scope() as session:
        return build_report(session, MigrationRepository(session).get_run(run_id))


@pytest.fixture
def analyzed_run(
    create_run: Callable[..., int],
    put_objects: Callable[..., None],
    analyze: Callable[[int], AnalysisSummary],
) -> int:
    run_id = create_run(
        [{"event_code": "E1", "title": "Spring retreat"}, {"event_code": "E2", "title": "Summer retreat"}]
    )
    put_objects(
        "mediateca/E1",
        "audio2/001 JKR - Opening [ENG+POR].mp3",
        "audio2/002 JKR - Teaching [ENG+POR].mp3",
        "legacy/001 Opening.mp3",
        "legacy/003 Closing.mp3",
        "Transcricoes/opening.pdf",
    )
    put_objects("mediateca/E2", "notes.pdf")
    analyze(run_id)
    return run_id


def test_plan_tree_groups_files_by_target_folder(analyzed_run: int) -> None:
    """Undecided files fall back to suggestions; ignored ones sit apart."""
    report = _report(analyzed_run)

    assert report.status == "analyzed"
    assert report.final is False
    event = report.events[0]
    assert (event.event_code, event.title) == ("E1", "Spring retreat")
    folders = {folder.folder: [item.filename for item in folder.files] for folder in event.folders}
    assert folders == {
        "events/E1": ["001 JKR - Opening [ENG+POR].mp3", "002 JKR - Teaching [ENG+POR].mp3"],
        "events/E1/legacy": ["003 Closing.mp3"],
        "events/E1/transcripts": ["opening.pdf"],
        IGNORED_FOLDER: ["001 Opening.mp3"],
    }
    assert [folder.folder for folder in event.folders][-1] == IGNORED_FOLDER
    ignored = event.folders[-1].files[0]
    assert ignored.target_key is None
    assert ignored.decided is False
    assert [item.event_code for item in report.dedup] == ["E1"]


def test_decisions_change_the_tree(analyzed_run: int) -> None:
    """Renames and recategorizations appear at their new target."""
    with session_scope() as session:
        repository = MigrationRepository(session)
        run = repository.get_run(analyzed_run)
        ids = {row.filename: row.id for row in repository.list_catalog(analyzed_run)}
        upsert_decisions(
            session,
            run,
            [
                DecisionChange(
                    catalog_ids=[ids["notes.pdf"]],
                    fields={"action": "include", "target_category": "transcript"},
                ),
                DecisionChange(
                    catalog_ids=[ids["opening.pdf"]], fields={"action": "rename", "new_filename": "opening-eng.pdf"}
                ),
            ],
            decided_by="operator",
        )

    report = _report(analyzed_run)

    e1_files = {item.filename: item for folder in report.events[0].folders for item in folder.files}
    assert e1_files["opening.pdf"].target_key == "events/E1/transcripts/opening-eng.pdf"
    assert e1_files["opening.pdf"].action == "rename"
    assert e1_files["opening.pdf"].decided is True
    e2 = report.events[1]
    assert [folder.folder for folder in e2.folders] == ["events/E2/transcripts"]
    assert e2.folders[0].files[0].category == "transcript"


def test_issues_carry_resolution_state(analyzed_run: int) -> None:
    """Event issues are attached to their event and marked when resolved."""
    with session_scope() as session:
        repository = MigrationRepository(session)
        run = repository.get_run(analyzed_run)
        resolve_issues(session, run, ["no_audio:E2"])

    report = _report(analyzed_run)

    e1_issues = [(issue.category, issue.resolved) for issue in report.events[0].issues]
    e2_issues = [(issue.key, issue.resolved) for issue in report.events[1].issues]
    assert e1_issues == [("dedup", False)]
    assert e2_issues == [("no_audio:E2", True)]
    assert report.issues == []


@pytest.mark.asyncio
async def test_execution_problems_join_the_report(
    create_run: Callable[..., int],
    make_policy: Callable[..., Any],
    put_objects: Callable[..., None],
    analyze: Callable[[int], AnalysisSummary],
    start_execution: Callable[[int], str],
    execute: Callable[[int, str], Awaitable[str]],
    store: InMemoryObjectStore,
) -> None:
    """Errors logged while executing appear as execution issues of their event."""
    policy = make_policy(execution={"batch_delay_ms": 0}, validation={"min_success_rate": 0.5})
    run_id = create_run(
        [{"event_code": "E1", "teacher_names": "JKR"}, {"event_code": "E2", "teacher_names": "JKR"}],
        policy=policy,
    )
    put_objects("mediateca/E1", "001 JKR - Talk.mp3")
    put_objects("mediateca/E2", "001 JKR - Talk.mp3")
    analyze(run_id)
    store.failing_keys.add("mediateca/E2/001 JKR - Talk.mp3")

    assert await execute(run_id, start_execution(run_id)) == "completed"

    report = _report(run_id)
    assert report.final is True
    assert report.progress.successful_events == 1
    assert report.progress.failed_events == 1
    execution_issues = [issue for issue in report.events[1].issues if issue.category == "execution"]
    assert len(execution_issues) == 1
    assert execution_issues[0].severity == "error"
    assert execution_issues[0].key.startswith("execution:E2:")
