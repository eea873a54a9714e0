"""Progress snapshots, server-sent progress streams and run logs.

Progress is read from the persisted counter row of a run. Subscribers poll it
instead of sharing in-process state with the worker, so any API replica can
serve any run.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

from sqlalchemy.orm import Session

from ..models.base import session_scope
from ..models.migration import MigrationLog, MigrationRun
from ..models.repository import MigrationRepository
from ..utils.logging import StructuredLoggerAdapter, setup_logger
from .state_machine import FINAL_STATUSES, MigrationStatus

logger = setup_logger(__name__, context={"phase": "progress"})

_LOG_METHODS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}


def snapshot(run: MigrationRun) -> dict[str, Any]:
    """Return the counters of ``run`` as a JSON-compatible mapping."""

    return {
        "migration_id": run.id,
        "status": run.status,
        "percentage": run.progress_percentage,
        "processed_events": run.processed_events,
        "successful_events": run.successful_events,
        "failed_events": run.failed_events,
        "skipped_events": run.skipped_events,
        "total_events": run.total_events,
    }


def load_snapshot(migration_id: int) -> dict[str, Any]:
    with session_scope() as session:
        run = MigrationRepository(session).get_run(migration_id)
        return snapshot(run)


async def stream_progress(
    migration_id: int,
    *,
    poll_interval: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[dict[str, str]]:
    """Yield ``progress`` events until the run is final, then one ``complete``.

    Stops silently when the client disconnects.
    """

    while True:
        if await is_disconnected():
            logger.debug("Progress subscriber disconnected", extra={"migration_id": migration_id})
            return
        data = await asyncio.to_thread(load_snapshot, migration_id)
        if MigrationStatus(data["status"]) in FINAL_STATUSES:
            yield {"event": "complete", "data": json.dumps(data)}
            return
        yield {"event": "progress", "data": json.dumps(data)}
        await asyncio.sleep(poll_interval)


def query_logs(
    session: Session,
    migration_id: int,
    *,
    level: str | None = None,
    limit: int = 100,
) -> Sequence[MigrationLog]:
    repository = MigrationRepository(session)
    repository.get_run(migration_id)
    return repository.query_logs(migration_id, level=level, limit=limit)


class RunLogger:
    """Writes a run log row and the matching structured log line."""

    def __init__(
        self,
        session: Session,
        migration_id: int,
        *,
        log: StructuredLoggerAdapter | None = None,
    ) -> None:
        self._repository = MigrationRepository(session)
        self._migration_id = migration_id
        self._log = (log or logger).bind(migration_id=migration_id)

    def log(
        self,
        level: str,
        message: str,
        *,
        event_code: str | None = None,
        **context: Any,
    ) -> MigrationLog:
        entry = self._repository.add_log(
            self._migration_id,
            level,
            message,
            event_code=event_code,
            context=context or None,
        )
        method = getattr(self._log, _LOG_METHODS[level])
        extra: dict[str, Any] = {}
        if event_code:
            extra["event_code"] = event_code
        if "status" in context:
            extra["status"] = context["status"]
        method(message, extra=extra)
        return entry

    def info(self, message: str, **kwargs: Any) -> MigrationLog:
        return self.log("info", message, **kwargs)

    def warn(self, message: str, **kwargs: Any) -> MigrationLog:
        return self.log("warn", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> MigrationLog:
        return self.log("error", message, **kwargs)
