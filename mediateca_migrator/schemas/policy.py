"""Declarative migration policy document.

Every strategy is an enumerated choice and every section rejects unknown keys,
so a policy either validates completely at load time or the triggering call
fails before any phase runs.
"""

from __future__ import annotations

import string
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import PolicyError

REQUIRED_SECTIONS = ("storage", "tracks", "content")
FOLDER_PATTERN_FIELDS = frozenset({"event_code", "folder", "filename"})


class StorageStrategy(str, Enum):
    IN_PLACE = "in_place"
    NEW_BUCKET = "new_bucket"


class LegacyStrategy(str, Enum):
    LEGACY_FOLDER = "legacy_folder"
    MERGE_MAIN = "merge_main"
    SEPARATE_AUDIO1 = "separate_audio1"


class MismatchStrategy(str, Enum):
    TRUST_FILES = "trust_files"
    TRUST_CSV = "trust_csv"
    MANUAL_REVIEW = "manual_review"


class NoAudioStrategy(str, Enum):
    SKIP = "skip"
    CREATE_PLACEHOLDER = "create_placeholder"
    MANUAL_REVIEW = "manual_review"


class UnmappedStrategy(str, Enum):
    SKIP_EVENT = "skip_event"
    CREATE_NULL = "create_null"
    INFER = "infer"


class RollbackStrategy(str, Enum):
    KEEP_PARTIAL = "keep_partial"
    ROLLBACK_ALL = "rollback_all"
    MANUAL = "manual"


class StoragePolicy(BaseModel):
    """Where migrated objects are written."""

    model_config = ConfigDict(extra="forbid")

    strategy: StorageStrategy
    target_bucket: str | None = None
    folder_pattern: str = "events/{event_code}/{folder}/{filename}"
    delete_archives_after_extraction: bool = False

    @field_validator("folder_pattern")
    @classmethod
    def _require_known_placeholders(cls, value: str) -> str:
        fields = {name for _, name, _, _ in string.Formatter().parse(value) if name is not None}
        unknown = sorted(fields - FOLDER_PATTERN_FIELDS)
        if unknown:
            raise ValueError(
                f"folder_pattern uses unknown placeholders {unknown}; "
                f"allowed: {sorted(FOLDER_PATTERN_FIELDS)}"
            )
        if "filename" not in fields:
            raise ValueError("folder_pattern must contain the {filename} placeholder")
        if "event_code" not in fields:
            raise ValueError("folder_pattern must contain the {event_code} placeholder")
        return value

    @model_validator(mode="after")
    def _require_target_bucket(self) -> StoragePolicy:
        if self.strategy is StorageStrategy.NEW_BUCKET and not self.target_bucket:
            raise ValueError("storage.target_bucket is required when strategy is 'new_bucket'")
        return self


class TracksPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    legacy_strategy: LegacyStrategy
    mismatch_strategy: MismatchStrategy


class ContentPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    no_audio_strategy: NoAudioStrategy
    auto_discover_transcripts: bool = True


class MappingPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    unmapped_strategy: UnmappedStrategy = UnmappedStrategy.CREATE_NULL


class ValidationPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_success_rate: float = Field(default=0.95, ge=0.0, le=1.0)
    fail_fast: bool = False
    auto_accept_suggestions: bool = False


class ExecutionPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_size: int = Field(default=50, ge=1)
    batch_delay_ms: int = Field(default=100, ge=0)
    s3_concurrency: int = Field(default=5, ge=1)
    save_state: bool = True
    state_save_interval: int = Field(default=10, ge=1)


class RollbackPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    on_failure: RollbackStrategy = RollbackStrategy.KEEP_PARTIAL


class PolicyMetadata(BaseModel):
    """Free-form audit fields recorded alongside the decisions."""

    model_config = ConfigDict(extra="forbid")

    decided_by: str | None = None
    decision_date: date | None = None
    approved_by: str | None = None
    notes: str | None = None


class MigrationPolicy(BaseModel):
    """Validated policy document driving analysis and execution."""

    model_config = ConfigDict(extra="forbid")

    storage: StoragePolicy
    tracks: TracksPolicy
    content: ContentPolicy
    mapping: MappingPolicy = Field(default_factory=MappingPolicy)
    validation: ValidationPolicy = Field(default_factory=ValidationPolicy)
    execution: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    rollback: RollbackPolicy = Field(default_factory=RollbackPolicy)
    metadata: PolicyMetadata = Field(default_factory=PolicyMetadata)

    def target_bucket(self, source_bucket: str) -> str:
        """Return the bucket migrated objects are copied into."""

        if self.storage.strategy is StorageStrategy.NEW_BUCKET:
            assert self.storage.target_bucket is not None
            return self.storage.target_bucket
        return source_bucket

    def snapshot(self) -> dict[str, Any]:
        """Return the JSON-compatible document persisted on a run."""

        return self.model_dump(mode="json")


def parse_policy(document: Any) -> MigrationPolicy:
    """Validate a policy mapping, raising :class:`PolicyError` on any problem."""

    if not isinstance(document, dict):
        raise PolicyError("Policy document must be a mapping of sections")

    missing = [section for section in REQUIRED_SECTIONS if section not in document]
    if missing:
        raise PolicyError(f"Policy document is missing required sections: {', '.join(missing)}")

    try:
        return MigrationPolicy.model_validate(document)
    except PydanticValidationError as exc:
        raise PolicyError(f"Invalid migration policy: {exc}") from exc


def parse_policy_yaml(text: str | bytes) -> MigrationPolicy:
    """Parse and validate a YAML policy document."""

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PolicyError(f"Invalid YAML in policy document: {exc}") from exc
    return parse_policy(document)


def load_policy_file(path: str | Path) -> MigrationPolicy:
    """Load and validate a policy document from disk."""

    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise PolicyError(f"Policy file not found: {path}") from exc
    return parse_policy_yaml(text)
