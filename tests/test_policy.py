"""Tests for migration policy validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from mediateca_migrator.exceptions import PolicyError
from mediateca_migrator.schemas.policy import (
    LegacyStrategy,
    NoAudioStrategy,
    RollbackStrategy,
    UnmappedStrategy,
    load_policy_file,
    parse_policy,
    parse_policy_yaml,
)

MINIMAL: dict[str, Any] = {
    "storage": {"strategy": "in_place"},
    "tracks": {"legacy_strategy": "merge_main", "mismatch_strategy": "trust_csv"},
    "content": {"no_audio_strategy": "skip"},
}


def _with(section: str, **values: Any) -> dict[str, Any]:
    document = {key: dict(value) for key, value in MINIMAL.items()}
    document.setdefault(section, {}).update(values)
    return document


def test_minimal_policy_fills_defaults() -> None:
    """Optional sections take their documented defaults."""
    policy = parse_policy(MINIMAL)

    assert policy.tracks.legacy_strategy is LegacyStrategy.MERGE_MAIN
    assert policy.content.no_audio_strategy is NoAudioStrategy.SKIP
    assert policy.mapping.unmapped_strategy is UnmappedStrategy.CREATE_NULL
    assert policy.validation.min_success_rate == 0.95
    assert policy.execution.state_save_interval == 10
    assert policy.rollback.on_failure is RollbackStrategy.KEEP_PARTIAL
    assert policy.target_bucket("mediateca-legacy") == "mediateca-legacy"


def test_snapshot_is_json_compatible() -> None:
    """Snapshots store enum values as plain strings."""
    snapshot = parse_policy(MINIMAL).snapshot()

    assert snapshot["storage"]["strategy"] == "in_place"
    assert snapshot["metadata"]["decision_date"] is None
    assert parse_policy(snapshot) == parse_policy(MINIMAL)


def test_missing_sections_are_named() -> None:
    """Every absent required section is listed."""
    with pytest.raises(PolicyError, match="missing required sections: tracks, content"):
        parse_policy({"storage": {"strategy": "in_place"}})


def test_document_must_be_a_mapping() -> None:
    with pytest.raises(PolicyError, match="must be a mapping"):
        parse_policy(["storage"])


@pytest.mark.parametrize(
    "document",
    [
        _with("storage", strategy="new_bucket"),
        _with("storage", folder_pattern="events/{event_code}/{folder}"),
        _with("storage", folder_pattern="{folder}/{filename}"),
        _with("storage", folder_pattern="{event_code}/{year}/{filename}"),
        _with("storage", folder_pattern="{event_code}/{}/{filename}"),
        _with("storage", region="eu"),
        _with("tracks", legacy_strategy="shred"),
        _with("validation", min_success_rate=1.5),
        _with("execution", s3_concurrency=0),
        _with("rollback", on_failure="pray"),
        _with("notifications", enabled=True),
    ],
    ids=[
        "new-bucket-without-target",
        "pattern-without-filename",
        "pattern-without-event-code",
        "pattern-with-unknown-placeholder",
        "pattern-with-positional-placeholder",
        "unknown-storage-key",
        "unknown-legacy-strategy",
        "success-rate-above-one",
        "zero-concurrency",
        "unknown-rollback",
        "unknown-section",
    ],
)
def test_invalid_policies_are_rejected(document: dict[str, Any]) -> None:
    """Unknown keys, unknown strategies and out-of-range values all fail."""
    with pytest.raises(PolicyError, match="Invalid migration policy"):
        parse_policy(document)


def test_new_bucket_targets_the_configured_bucket() -> None:
    policy = parse_policy(_with("storage", strategy="new_bucket", target_bucket="mediateca-v2"))

    assert policy.target_bucket("mediateca-legacy") == "mediateca-v2"


def test_yaml_policies(tmp_path: Path) -> None:
    """YAML text and files go through the same validation."""
    with pytest.raises(PolicyError, match="Invalid YAML"):
        parse_policy_yaml("storage: [in_place")
    with pytest.raises(PolicyError, match="must be a mapping"):
        parse_policy_yaml("")
    with pytest.raises(PolicyError, match="not found"):
        load_policy_file(tmp_path / "absent.yaml")

    path = tmp_path / "policy.yaml"
    path.write_text(
        "storage:\n  strategy: in_place\n"
        "tracks:\n  legacy_strategy: separate_audio1\n  mismatch_strategy: manual_review\n"
        "content:\n  no_audio_strategy: create_placeholder\n"
        "metadata:\n  decided_by: archive team\n  decision_date: 2024-03-01\n",
        encoding="utf-8",
    )

    policy = load_policy_file(path)

    assert policy.tracks.legacy_strategy is LegacyStrategy.SEPARATE_AUDIO1
    assert policy.metadata.decided_by == "archive team"
    assert policy.metadata.decision_date.isoformat() == "2024-03-01"


def test_unknown_folder_placeholder_is_named() -> None:
    """The error lists the placeholder the key builder could not fill."""
    with pytest.raises(PolicyError, match="year"):
        parse_policy(_with("storage", folder_pattern="{event_code}/{year}/{filename}"))
