"""Pytest configuration - no path manipulation, rely on proper package installation."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from mediateca_migrator.models.base import reset_engine, session_scope
from mediateca_migrator.models.migration import SourceEvent
from mediateca_migrator.models.repository import MigrationRepository, MigrationRunCreate
from mediateca_migrator.schemas.policy import MigrationPolicy
from mediateca_migrator.testing import InMemoryObjectStore
from mediateca_migrator.utils.config import (
    get_default_policy_document,
    get_settings,
    merge_policy_documents,
    reset_config_caches,
)

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
SOURCE_BUCKET = "mediateca-legacy"


@pytest.fixture(autouse=True)
def _isolated_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[None]:
    """Give every test its own SQLite database and upload directory."""

    db_path = tmp_path_factory.mktemp("sqlite-db") / "migrator.sqlite"
    monkeypatch.setenv("MIGRATOR_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("MIGRATOR_CONFIG_DIR", str(CONFIG_DIR))
    monkeypatch.setenv("MIGRATOR_UPLOAD_DIR", str(tmp_path_factory.mktemp("uploads")))
    monkeypatch.setenv("MIGRATOR_OBJECT_STORE__SOURCE_BUCKET", SOURCE_BUCKET)
    monkeypatch.delenv("MIGRATOR_ENVIRONMENT", raising=False)
    monkeypatch.delenv("MIGRATOR_CONFIG_PROFILE", raising=False)

    reset_engine()
    get_settings(reload=True)
    get_default_policy_document(reload=True)
    yield
    reset_engine()
    reset_config_caches()


@pytest.fixture
def make_policy() -> Callable[..., MigrationPolicy]:
    """Build a policy from the default document with section overrides."""

    def _make(**sections: dict[str, Any]) -> MigrationPolicy:
        document = merge_policy_documents(get_default_policy_document(), sections)
        return MigrationPolicy.model_validate(document)

    return _make


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def create_run(make_policy: Callable[..., MigrationPolicy]) -> Callable[..., int]:
    """Persist a run in ``uploaded`` with the given source events."""

    def _create(
        events: list[dict[str, Any]],
        *,
        policy: MigrationPolicy | None = None,
        title: str = "Test migration",
    ) -> int:
        policy = policy or make_policy()
        with session_scope() as session:
            repository = MigrationRepository(session)
            run = repository.create_run(
                MigrationRunCreate(
                    title=title,
                    source_filename="export.csv",
                    source_file_path="/tmp/export.csv",
                    row_count=len(events),
                    policy=policy.snapshot(),
                    created_by="tester",
                )
            )
            repository.add_source_events(
                run.id,
                [
                    SourceEvent(
                        event_code=event["event_code"],
                        title=event.get("title"),
                        teacher_names=event.get("teacher_names"),
                        place=event.get("place"),
                        expected_tracks=event.get("expected_tracks", {}),
                        track_names=event.get("track_names", {}),
                        storage_prefix=event.get(
                            "storage_prefix", f"mediateca/{event['event_code']}"
                        ),
                        row_number=index + 2,
                    )
                    for index, event in enumerate(events)
                ],
            )
            run.total_events = len(events)
            return run.id

    return _create
