"""Celery task package exposing the configured app and migration tasks."""

from __future__ import annotations

from .celery_app import celery_app as app
from .migration import MIGRATION_TASKS, TaskDispatcher, run_analysis, run_execution

__all__ = [
    "app",
    "MIGRATION_TASKS",
    "TaskDispatcher",
    "run_analysis",
    "run_execution",
]
