"""Tests for global configuration settings powered by Pydantic."""

import shutil
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from mediateca_migrator.schemas.policy import MismatchStrategy, StorageStrategy
from mediateca_migrator.utils.config import (
    ConfigurationError,
    ensure_runtime_configuration,
    get_default_policy,
    get_default_policy_document,
    get_settings,
    load_yaml_config,
    merge_policy_documents,
    reset_config_caches,
)

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A writable copy of the shipped configuration directory."""

    directory = tmp_path / "config"
    directory.mkdir()
    shutil.copy(CONFIG_DIR / "migration-policy.yaml", directory / "migration-policy.yaml")
    monkeypatch.setenv("MIGRATOR_CONFIG_DIR", str(directory))
    return directory


def test_global_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    """Default settings should reflect development-friendly values."""

    monkeypatch.delenv("MIGRATOR_LOG_LEVEL", raising=False)
    monkeypatch.delenv("MIGRATOR_AWS__REGION", raising=False)
    monkeypatch.delenv("MIGRATOR_OBJECT_STORE__SOURCE_BUCKET", raising=False)

    settings = get_settings(reload=True)

    assert settings.environment == "development"
    assert settings.log_level == "INFO"
    assert settings.aws.region is None
    assert settings.object_store.source_bucket == "mediateca-legacy"
    assert settings.object_store.source_prefix == "mediateca"
    assert settings.object_store.retry.enabled is True
    assert settings.progress_poll_seconds == 1.0
    assert settings.celery_always_eager is False


def test_global_settings_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Environment variables should override default configuration values."""

    monkeypatch.setenv("MIGRATOR_ENVIRONMENT", "production")
    monkeypatch.setenv("MIGRATOR_LOG_LEVEL", "debug")
    monkeypatch.setenv("MIGRATOR_AWS__REGION", "eu-west-1")
    monkeypatch.setenv("MIGRATOR_OBJECT_STORE__SOURCE_PREFIX", "/archive/2019/")
    monkeypatch.setenv("MIGRATOR_OBJECT_STORE__RETRY__MAX_ATTEMPTS", "2")
    monkeypatch.setenv("MIGRATOR_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("MIGRATOR_CONFIG_PROFILE", "  Staging ")

    settings = get_settings(reload=True)

    assert settings.environment == "production"
    assert settings.log_level == "DEBUG"
    assert settings.aws.region == "eu-west-1"
    assert settings.object_store.source_prefix == "archive/2019"
    assert settings.object_store.retry.max_attempts == 2
    assert settings.upload_dir == tmp_path / "uploads"
    assert settings.config_profile == "staging"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("MIGRATOR_PROGRESS_POLL_SECONDS", "5"),
        ("MIGRATOR_EXECUTION_LEASE_SECONDS", "1"),
        ("MIGRATOR_CONFIG_PROFILE", "   "),
    ],
)
def test_invalid_settings_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    """Out-of-range values fail when settings load."""

    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        get_settings(reload=True)


def test_default_policy_merges_profile_override(
    monkeypatch: pytest.MonkeyPatch, config_dir: Path
) -> None:
    """A profile document overrides only the keys it names."""

    (config_dir / "migration-policy.staging.yaml").write_text(
        yaml.safe_dump(
            {
                "storage": {"strategy": "new_bucket", "target_bucket": "mediateca-staging"},
                "tracks": {"mismatch_strategy": "manual_review"},
            }
        )
    )
    monkeypatch.setenv("MIGRATOR_CONFIG_PROFILE", "staging")

    policy = get_default_policy(get_settings(reload=True), reload=True)

    assert policy.storage.strategy is StorageStrategy.NEW_BUCKET
    assert policy.storage.folder_pattern == "events/{event_code}/{folder}/{filename}"
    assert policy.tracks.mismatch_strategy is MismatchStrategy.MANUAL_REVIEW
    assert policy.tracks.legacy_strategy.value == "legacy_folder"
    assert policy.target_bucket("mediateca-legacy") == "mediateca-staging"


def test_default_policy_without_profile_file(config_dir: Path) -> None:
    """The base document is used when no profile override exists."""

    document = get_default_policy_document(get_settings(reload=True), reload=True)

    assert document["execution"]["state_save_interval"] == 10
    assert document["rollback"]["on_failure"] == "keep_partial"


def test_missing_default_policy_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """A config directory without the base policy is a configuration error."""

    monkeypatch.setenv("MIGRATOR_CONFIG_DIR", str(tmp_path))

    with pytest.raises(ConfigurationError, match="Missing default migration policy"):
        get_default_policy_document(get_settings(reload=True), reload=True)


def test_merge_policy_documents_is_deep_and_pure() -> None:
    """Overrides replace leaves without mutating the base document."""

    base = {"storage": {"strategy": "in_place", "folder_pattern": "{event_code}/{filename}"}}

    merged = merge_policy_documents(base, {"storage": {"strategy": "new_bucket"}})

    assert merged == {"storage": {"strategy": "new_bucket", "folder_pattern": "{event_code}/{filename}"}}
    assert base["storage"]["strategy"] == "in_place"
    assert merge_policy_documents(base, None) == base


def test_load_yaml_config_errors(tmp_path: Path) -> None:
    """Missing files and broken YAML raise ConfigurationError."""

    broken = tmp_path / "broken.yaml"
    broken.write_text("storage: [unclosed\n")

    with pytest.raises(ConfigurationError, match="not found"):
        load_yaml_config(tmp_path / "absent.yaml")
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_yaml_config(broken)


def test_ensure_runtime_configuration_requires_database(monkeypatch: pytest.MonkeyPatch) -> None:
    """The database URL must be configured before the service starts."""

    monkeypatch.delenv("MIGRATOR_DATABASE_URL", raising=False)

    with pytest.raises(ConfigurationError, match="MIGRATOR_DATABASE_URL"):
        ensure_runtime_configuration(get_settings(reload=True))


def test_ensure_runtime_configuration_requires_redis_in_production(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Production deployments also need a broker URL."""

    monkeypatch.setenv("MIGRATOR_ENVIRONMENT", "production")
    monkeypatch.delenv("MIGRATOR_REDIS_URL", raising=False)

    with pytest.raises(ConfigurationError, match="MIGRATOR_REDIS_URL"):
        ensure_runtime_configuration(get_settings(reload=True))


def test_ensure_runtime_configuration_creates_upload_dir(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """A valid environment passes and the upload directory exists afterwards."""

    upload_dir = tmp_path / "incoming" / "exports"
    monkeypatch.setenv("MIGRATOR_UPLOAD_DIR", str(upload_dir))

    settings = ensure_runtime_configuration(get_settings(reload=True))

    assert settings.upload_dir == upload_dir
    assert upload_dir.is_dir()


def test_reset_config_caches_defers_loading(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Clearing the caches never reads an invalid environment; the next access does."""

    get_settings(reload=True)
    monkeypatch.setenv("MIGRATOR_PROGRESS_POLL_SECONDS", "5")
    monkeypatch.setenv("MIGRATOR_CONFIG_DIR", str(tmp_path))

    reset_config_caches()

    with pytest.raises(ValidationError):
        get_settings()
