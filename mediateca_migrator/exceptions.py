"""Custom exceptions for the mediateca migrator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:  # pragma: no cover - type checking only
    from mediateca_migrator.tasks.error_handling import TaskErrorReport


class MigratorError(Exception):
    """Base exception for all migrator errors."""

    pass


class ConfigurationError(MigratorError):
    """Raised when configuration is invalid or missing."""

    pass


class PolicyError(ConfigurationError):
    """Raised when a migration policy document fails validation."""

    pass


class ImportFormatError(MigratorError):
    """Raised when an uploaded metadata export cannot be parsed at all."""

    pass


class MigrationNotFoundError(MigratorError):
    """Raised when a migration run does not exist."""

    def __init__(self, migration_id: int) -> None:
        super().__init__(f"Migration {migration_id} not found")
        self.migration_id = migration_id


class InvalidTransitionError(MigratorError):
    """Raised when a lifecycle transition is not permitted from the current status."""

    def __init__(self, message: str, *, current: str | None = None, target: str | None = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class NotReadyError(InvalidTransitionError):
    """Raised when approval is requested for a run that fails the readiness check."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, target="approved")
        self.details = details or {}


class DecisionError(MigratorError):
    """Raised when an operator decision batch cannot be applied."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ObjectStoreError(MigratorError):
    """Raised when an object-store operation fails for a single object."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class ObjectStoreUnavailableError(ObjectStoreError):
    """Raised when the object store stays unreachable after retries."""

    pass


class ExecutionLeaseLostError(MigratorError):
    """Raised when another worker has taken over a run's execution lease."""

    pass


class TaskExecutionError(MigratorError):
    """Raised when a Celery task fails after structured reporting."""

    def __init__(self, report: TaskErrorReport, *, original_error: Exception | None = None) -> None:
        super().__init__(report.message)
        self.report = report
        self.original_error = original_error

    def as_dict(self) -> dict[str, Any]:
        """Return a serializable representation of the task error for logging/tests."""

        return {
            "message": self.report.message,
            "error_type": self.report.error_type,
            "classification": self.report.classification,
            "phase": self.report.phase,
        }
