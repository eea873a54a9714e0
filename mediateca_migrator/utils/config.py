"""Configuration loader and settings helpers for the mediateca migrator."""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError
from ..schemas.policy import MigrationPolicy, parse_policy
from .retry import RetryConfig


logger = logging.getLogger(__name__)

POLICY_BASENAME = "migration-policy"


def load_yaml_config(config_path: str | Path) -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If file not found or invalid YAML
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
            return config if config else {}
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")


class AWSSettings(BaseModel):
    """AWS-specific configuration options derived from global settings."""

    model_config = ConfigDict(extra="forbid")

    region: str | None = None
    profile: str | None = None


class ObjectStoreSettings(BaseModel):
    """Location of the legacy media and how calls against it are retried."""

    model_config = ConfigDict(extra="forbid")

    source_bucket: str = "mediateca-legacy"
    source_prefix: str = "mediateca"
    endpoint_url: str | None = None
    retry: RetryConfig = RetryConfig()

    @field_validator("source_prefix")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        return value.strip("/")


class DatabasePoolSettings(BaseModel):
    """Connection pooling configuration for the SQLAlchemy engine."""

    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    recycle_seconds: int = Field(default=1800, ge=0)
    pre_ping: bool = True


class GlobalSettings(BaseSettings):
    """Global application settings sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MIGRATOR_",
        env_nested_delimiter="__",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    config_profile: str | None = None
    log_level: str = "INFO"
    redis_url: str | None = None
    database_url: str | None = None
    database: DatabasePoolSettings = DatabasePoolSettings()
    config_dir: Path = Path("config")
    upload_dir: Path = Path("uploads")
    aws: AWSSettings = AWSSettings()
    object_store: ObjectStoreSettings = ObjectStoreSettings()
    progress_poll_seconds: float = Field(default=1.0, gt=0, le=1.0)
    execution_lease_seconds: int = Field(default=300, ge=10)
    celery_always_eager: bool = False
    default_operator: str = "operator"

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        """Ensure log level values are uppercase for logging config."""

        return value.upper()

    @field_validator("config_dir", "upload_dir", mode="before")
    @classmethod
    def _expand_paths(cls, value: Any) -> Any:
        """Allow string paths and expand user markers."""

        if isinstance(value, Path):
            return value
        if isinstance(value, str):
            return Path(value).expanduser()
        return value

    @field_validator("config_profile", mode="before")
    @classmethod
    def _normalize_config_profile(cls, value: Any) -> Any:
        if value is None:
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValueError("config_profile must be a non-empty string if provided")
        return value.strip().lower()


def _deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries without mutating the inputs."""

    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def merge_policy_documents(base: dict[str, Any], override: dict[str, Any] | None) -> dict[str, Any]:
    """Overlay a partial policy document on top of a complete one."""

    if not override:
        return dict(base)
    return _deep_merge_dicts(base, override)


@lru_cache(maxsize=8)
def _load_policy_document_cached(config_dir: str, profile: str) -> dict[str, Any]:
    """Load and cache the merged default policy document for a profile."""

    directory = Path(config_dir)
    base_path = directory / f"{POLICY_BASENAME}.yaml"
    if not base_path.exists():
        raise ConfigurationError(
            f"Missing default migration policy at '{base_path}'. "
            "Create this file to define the shared strategies."
        )

    base_document = load_yaml_config(base_path)

    profile_path = directory / f"{POLICY_BASENAME}.{profile}.yaml"
    profile_document: dict[str, Any] = {}
    if profile_path.exists():
        profile_document = load_yaml_config(profile_path)
    else:
        logger.debug("No policy override found for profile '%s'", profile)

    return _deep_merge_dicts(base_document, profile_document)


def get_default_policy_document(
    settings: GlobalSettings | None = None,
    *,
    reload: bool = False,
) -> dict[str, Any]:
    """Return the merged default policy document for the active profile."""

    if settings is None:
        settings = get_settings()

    profile = settings.config_profile or settings.environment

    if reload:
        _load_policy_document_cached.cache_clear()

    return dict(_load_policy_document_cached(str(settings.config_dir), profile.lower()))


def get_default_policy(
    settings: GlobalSettings | None = None,
    *,
    reload: bool = False,
) -> MigrationPolicy:
    """Return the validated default policy for the active profile."""

    return parse_policy(get_default_policy_document(settings, reload=reload))


def ensure_runtime_configuration(settings: GlobalSettings | None = None) -> GlobalSettings:
    """Validate the default policy and ensure required env vars are present."""

    settings = settings or get_settings()

    get_default_policy(settings, reload=True)

    required_env = {"MIGRATOR_DATABASE_URL"}
    if settings.environment == "production":
        required_env.add("MIGRATOR_REDIS_URL")

    missing = sorted(var for var in required_env if not os.environ.get(var))

    if missing:
        joined = ", ".join(missing)
        raise ConfigurationError(
            "Missing required environment variables: "
            f"{joined}. Configure them via the environment or .env files."
        )

    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    return settings


@lru_cache(maxsize=1)
def _get_settings_cached() -> GlobalSettings:
    return GlobalSettings()


def get_settings(*, reload: bool = False) -> GlobalSettings:
    """Return cached settings, optionally forcing a reload."""

    if reload:
        _get_settings_cached.cache_clear()
    return _get_settings_cached()


def reset_config_caches() -> None:
    """Drop cached settings and policy documents without reloading them (useful for testing)."""

    _get_settings_cached.cache_clear()
    _load_policy_document_cached.cache_clear()
