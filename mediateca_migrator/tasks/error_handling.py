"""Structured error handling utilities for migration Celery tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import (
    ConfigurationError,
    DecisionError,
    ExecutionLeaseLostError,
    ImportFormatError,
    InvalidTransitionError,
    MigrationNotFoundError,
    MigratorError,
    ObjectStoreError,
    ObjectStoreUnavailableError,
)


@dataclass(slots=True)
class TaskErrorReport:
    """Structured payload describing a failed analysis or execution attempt."""

    migration_id: int
    phase: str
    error_type: str
    message: str
    classification: str
    retryable: bool
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a serializable dictionary representation of the error report."""

        payload: dict[str, Any] = {
            "migration_id": self.migration_id,
            "phase": self.phase,
            "error_type": self.error_type,
            "message": self.message,
            "classification": self.classification,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def build_error_report(
    exc: Exception,
    *,
    migration_id: int,
    phase: str,
    extra_details: dict[str, Any] | None = None,
) -> TaskErrorReport:
    """Construct a :class:`TaskErrorReport` describing the supplied exception."""

    classification, retryable = _classify_exception(exc)

    details: dict[str, Any] = {
        "args": [repr(arg) for arg in getattr(exc, "args", ())],
        "exception_module": exc.__class__.__module__,
    }
    key = getattr(exc, "key", None)
    if key:
        details["key"] = key
    if extra_details:
        details.update(extra_details)

    return TaskErrorReport(
        migration_id=migration_id,
        phase=phase,
        error_type=exc.__class__.__name__,
        message=str(exc) if str(exc) else exc.__class__.__name__,
        classification=classification,
        retryable=retryable,
        timestamp=datetime.now(timezone.utc).isoformat(),
        details=details,
    )


def _classify_exception(exc: Exception) -> tuple[str, bool]:
    """Return a tuple of (classification, retryable) for a given exception."""

    if isinstance(exc, (ImportFormatError, ConfigurationError)):
        return "structural", False
    if isinstance(exc, ObjectStoreUnavailableError):
        return "phase_fatal", True
    if isinstance(exc, ObjectStoreError):
        return "per_item", False
    if isinstance(exc, ExecutionLeaseLostError):
        return "superseded", False
    if isinstance(exc, (InvalidTransitionError, DecisionError, MigrationNotFoundError)):
        return "rejected", False
    if isinstance(exc, MigratorError):
        return "application", False
    if isinstance(exc, (BotoCoreError, ClientError)):
        return "transient", True
    return "unexpected", False
