"""Shared fixtures for pipeline tests that analyze and execute runs."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest

from mediateca_migrator.models.base import session_scope
from mediateca_migrator.models.repository import MigrationRepository
from mediateca_migrator.pipeline import state_machine
from mediateca_migrator.pipeline.analyzer import analyze_run
from mediateca_migrator.pipeline.decisions import DecisionChange, approve_run, upsert_decisions
from mediateca_migrator.pipeline.executor import MigrationExecutor
from mediateca_migrator.schemas.migration import AnalysisSummary
from mediateca_migrator.schemas.policy import MigrationPolicy
from mediateca_migrator.testing import InMemoryObjectStore
from mediateca_migrator.utils.config import get_settings


@pytest.fixture
def source_bucket() -> str:
    return get_settings().object_store.source_bucket


@pytest.fixture
def put_objects(store: InMemoryObjectStore, source_bucket: str) -> Callable[..., None]:
    """Place objects under an event prefix in the source bucket."""

    def _put(prefix: str, *relative_keys: str, size: int = 2048) -> None:
        for key in relative_keys:
            store.put(source_bucket, f"{prefix}/{key}", size)

    return _put


@pytest.fixture
def analyze(store: InMemoryObjectStore, source_bucket: str) -> Callable[[int], AnalysisSummary]:
    """Move a run through analysis against the in-memory store."""

    def _analyze(run_id: int) -> AnalysisSummary:
        with session_scope() as session:
            run = MigrationRepository(session).get_run(run_id)
            state_machine.begin_analysis(session, run)
            policy = MigrationPolicy.model_validate(run.policy)
            return analyze_run(session, run, store, policy, source_bucket=source_bucket)

    return _analyze


@pytest.fixture
def start_execution() -> Callable[[int], str]:
    """Decide every entry from its suggestion, approve and enter ``executing``.

    Entries suggested for review are included. Returns the execution token.
    """

    def _start(run_id: int) -> str:
        with session_scope() as session:
            repository = MigrationRepository(session)
            run = repository.get_run(run_id)
            catalog = repository.list_catalog(run_id)
            include = [row.id for row in catalog if row.suggested_action != "ignore"]
            ignore = [row.id for row in catalog if row.suggested_action == "ignore"]
            changes = [
                DecisionChange(catalog_ids=ids, fields={"action": action})
                for ids, action in ((include, "include"), (ignore, "ignore"))
                if ids
            ]
            if changes:
                upsert_decisions(session, run, changes, decided_by="operator")
            approve_run(session, run, approved_by="lead")
            return state_machine.begin_execution(session, run)

    return _start


@pytest.fixture
def execute(
    store: InMemoryObjectStore, source_bucket: str
) -> Callable[[int, str], Awaitable[str]]:
    """Run the executor for a run under the given token."""

    async def _execute(run_id: int, token: str) -> str:
        executor = MigrationExecutor(run_id, store, token=token, source_bucket=source_bucket)
        return await executor.run()

    return _execute
