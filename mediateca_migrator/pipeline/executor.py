"""Execution of an approved migration plan against the store and the archive.

Every imported event is one unit of work. Events run in batches, a bounded
number at a time, and each finished event is reflected immediately in the
run's counter row through one token-guarded ``UPDATE``. A worker whose token
has been replaced stops at its next update.
"""

from __future__ import annotations

import asyncio
import io
import time
import zipfile
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date
from pathlib import PurePosixPath
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import ExecutionLeaseLostError, ObjectStoreError
from ..models.archive import ArchiveEvent, MediaFile, Track, Transcript
from ..models.base import session_scope, utcnow
from ..models.migration import CatalogedFile, FileDecision, MigrationRun
from ..models.repository import MigrationRepository
from ..monitoring.metrics import (
    decrement_active_executions,
    increment_active_executions,
    observe_phase_duration,
    record_archive_extraction,
    record_event_outcome,
    record_object_copy,
)
from ..schemas.policy import MigrationPolicy, RollbackStrategy, UnmappedStrategy
from ..storage.object_store import ObjectStore
from ..utils.logging import log_phase_outcome, setup_logger
from . import state_machine
from .classifier import build_target_key, classify_object, target_folder
from .progress import RunLogger
from .state_machine import MigrationStatus
from .tracks import parse_track_filename

logger = setup_logger(__name__, context={"phase": "execution"})

SUCCESSFUL = "successful"
FAILED = "failed"
SKIPPED = "skipped"

_COUNTER_COLUMNS = {
    SUCCESSFUL: MigrationRun.successful_events,
    FAILED: MigrationRun.failed_events,
    SKIPPED: MigrationRun.skipped_events,
}
_CHECKPOINT_KEYS = {SUCCESSFUL: "completed", FAILED: "failed", SKIPPED: "skipped"}
# Raised by zipfile for corrupt, oversized, encrypted or unsupported archives.
_ARCHIVE_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, NotImplementedError, RuntimeError)


@dataclass(slots=True)
class PlannedFile:
    catalog_id: int
    source_key: str
    target_key: str
    filename: str
    file_type: str
    category: str
    mime_type: str | None
    size: int
    metadata: dict[str, Any]

    @property
    def is_zip(self) -> bool:
        return self.file_type == "archive" and PurePosixPath(self.source_key).suffix.lower() == ".zip"


@dataclass(slots=True)
class EventPlan:
    event_code: str
    title: str | None
    start_date: date | None
    end_date: date | None
    teacher_names: str | None
    place: str | None
    storage_prefix: str = ""
    files: list[PlannedFile] = field(default_factory=list)


@dataclass(slots=True)
class EventOutcome:
    event_code: str
    outcome: str
    message: str
    copied: list[tuple[str, str]] = field(default_factory=list)


def resolve_target(
    decision: FileDecision, catalog: CatalogedFile, policy: MigrationPolicy
) -> tuple[str, str]:
    """Return ``(target_key, category)`` for one decided file."""

    category = decision.target_category or catalog.category
    if decision.target_category and decision.target_category != catalog.category:
        target = build_target_key(
            policy.storage.folder_pattern,
            event_code=catalog.event_code,
            folder=target_folder(category),
            filename=catalog.filename,
        )
    else:
        target = catalog.target_key or build_target_key(
            policy.storage.folder_pattern,
            event_code=catalog.event_code,
            folder=target_folder(category),
            filename=catalog.filename,
        )
    if decision.action == "rename" and decision.new_filename:
        target = str(PurePosixPath(target).with_name(decision.new_filename))
    return target, category


def infer_teacher(files: list[PlannedFile]) -> str | None:
    """Return the most common speaker tag among an event's audio files."""

    speakers = Counter(
        str(item.metadata["speaker"])
        for item in files
        if item.file_type == "audio" and item.metadata.get("speaker")
    )
    if not speakers:
        return None
    return speakers.most_common(1)[0][0]


def _chunks(items: list[EventPlan], size: int) -> list[list[EventPlan]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


class MigrationExecutor:
    """Runs the decided plan of one ``executing`` run under an execution token."""

    def __init__(
        self,
        migration_id: int,
        store: ObjectStore,
        *,
        token: str,
        source_bucket: str,
    ) -> None:
        self.migration_id = migration_id
        self.store = store
        self.token = token
        self.source_bucket = source_bucket
        self._log = logger.bind(migration_id=migration_id)
        self._db_lock = asyncio.Lock()
        self._stop_reason: str | None = None
        self._checkpoint: dict[str, list[str]] = {"completed": [], "failed": [], "skipped": []}
        self._since_checkpoint = 0
        self._copied: list[tuple[str, str]] = []
        self._archives: dict[str, list[str]] = {}
        self.policy: MigrationPolicy | None = None
        self.target_bucket = source_bucket

    async def run(self) -> str:
        """Execute the plan and return the final status of the run."""

        increment_active_executions()
        started = time.perf_counter()
        try:
            plans = await self._db(self._load)
            await self._execute(plans)
            status = await self._db(self._finish)
        except ExecutionLeaseLostError:
            self._log.warning("Execution lease lost; stopping without finalizing")
            raise
        finally:
            decrement_active_executions()

        duration = time.perf_counter() - started
        observe_phase_duration("execution", duration)
        log_phase_outcome(
            self._log,
            migration_id=self.migration_id,
            phase="execution",
            status=status,
            duration_ms=int(duration * 1000),
        )
        return status

    async def _db(self, func: Any, *args: Any) -> Any:
        async with self._db_lock:
            return await asyncio.to_thread(func, *args)

    def _load(self) -> list[EventPlan]:
        with session_scope() as session:
            repository = MigrationRepository(session)
            run = repository.get_run(self.migration_id)
            if run.status != MigrationStatus.EXECUTING.value or run.execution_token != self.token:
                raise ExecutionLeaseLostError(
                    f"Migration {self.migration_id} is not executing under this token"
                )
            policy = MigrationPolicy.model_validate(run.policy)
            self.policy = policy
            self.target_bucket = policy.target_bucket(self.source_bucket)

            grouped: dict[str, list[PlannedFile]] = defaultdict(list)
            for decision, catalog in repository.list_executable_files(run.id):
                target_key, category = resolve_target(decision, catalog, policy)
                grouped[catalog.event_code].append(
                    PlannedFile(
                        catalog_id=catalog.id,
                        source_key=catalog.object_key,
                        target_key=target_key,
                        filename=PurePosixPath(target_key).name,
                        file_type=catalog.file_type,
                        category=category,
                        mime_type=catalog.mime_type,
                        size=catalog.size,
                        metadata=dict(catalog.file_metadata or {}),
                    )
                )

            plans = [
                EventPlan(
                    event_code=event.event_code,
                    title=event.title,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    teacher_names=event.teacher_names,
                    place=event.place,
                    storage_prefix=event.storage_prefix,
                    files=grouped.get(event.event_code, []),
                )
                for event in repository.list_source_events(run.id)
            ]

            snapshot = run.checkpoint or {}
            completed = list(snapshot.get("completed", []))
            skipped = list(snapshot.get("skipped", []))
            self._checkpoint = {"completed": completed, "failed": [], "skipped": skipped}
            done = set(completed) | set(skipped)
            processed = len(completed) + len(skipped)
            # Counters restart from the snapshot; anything a dead worker counted after it is redone.
            self._guarded_update(
                session,
                {
                    "total_events": len(plans),
                    "heartbeat_at": utcnow(),
                    "processed_events": processed,
                    "successful_events": len(completed),
                    "skipped_events": len(skipped),
                    "failed_events": 0,
                    "progress_percentage": processed * 100 // len(plans) if plans else 0,
                },
            )

            self._archives = {
                plan.event_code: [item.source_key for item in plan.files if item.is_zip]
                for plan in plans
                if any(item.is_zip for item in plan.files)
            }
            pending = [plan for plan in plans if plan.event_code not in done]
            RunLogger(session, run.id, log=logger).info(
                f"Executing {len(pending)} of {len(plans)} event(s)",
                resumed=bool(done),
                target_bucket=self.target_bucket,
            )
            return pending

    def _guarded_update(self, session: Session, values: dict[str, Any]) -> None:
        result = session.execute(
            update(MigrationRun)
            .where(
                MigrationRun.id == self.migration_id,
                MigrationRun.status == MigrationStatus.EXECUTING.value,
                MigrationRun.execution_token == self.token,
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ExecutionLeaseLostError(
                f"Execution lease of migration {self.migration_id} was taken over"
            )

    async def _execute(self, plans: list[EventPlan]) -> None:
        assert self.policy is not None
        execution = self.policy.execution
        event_slots = asyncio.Semaphore(execution.s3_concurrency)
        copy_slots = asyncio.Semaphore(execution.s3_concurrency)

        async def guarded(plan: EventPlan) -> None:
            async with event_slots:
                if self._stop_reason is not None:
                    return
                await self._db(self._check_stop)
                if self._stop_reason is not None:
                    return
                outcome = await self._process_event(plan, copy_slots)
                await self._db(self._record_outcome, outcome)
                if outcome.outcome == FAILED and self.policy.validation.fail_fast:
                    self._stop_reason = "fail_fast"

        batches = _chunks(plans, execution.batch_size)
        for index, batch in enumerate(batches):
            try:
                async with asyncio.TaskGroup() as group:
                    for plan in batch:
                        group.create_task(guarded(plan))
            except ExceptionGroup as failure:
                # A lost lease wins over any other failure in the batch.
                lost = failure.subgroup(ExecutionLeaseLostError)
                raise (lost or failure).exceptions[0] from failure
            if self._stop_reason is not None:
                break
            if index < len(batches) - 1 and execution.batch_delay_ms:
                await asyncio.sleep(execution.batch_delay_ms / 1000)

    def _check_stop(self) -> None:
        with session_scope() as session:
            row = session.execute(
                select(MigrationRun.cancel_requested, MigrationRun.execution_token).where(
                    MigrationRun.id == self.migration_id
                )
            ).one()
        if row.execution_token != self.token:
            raise ExecutionLeaseLostError(
                f"Execution lease of migration {self.migration_id} was taken over"
            )
        if row.cancel_requested and self._stop_reason is None:
            self._stop_reason = "cancelled"

    async def _process_event(self, plan: EventPlan, copy_slots: asyncio.Semaphore) -> EventOutcome:
        assert self.policy is not None
        if not plan.files:
            return EventOutcome(plan.event_code, SKIPPED, "No files with an include or rename decision")

        teacher = plan.teacher_names
        if not teacher:
            strategy = self.policy.mapping.unmapped_strategy
            if strategy is UnmappedStrategy.SKIP_EVENT:
                return EventOutcome(plan.event_code, SKIPPED, "Event has no teacher (skip_event)")
            if strategy is UnmappedStrategy.INFER:
                teacher = infer_teacher(plan.files)

        loose = [item for item in plan.files if not item.is_zip]
        archives = [item for item in plan.files if item.is_zip]

        async def copy(item: PlannedFile) -> str | None:
            async with copy_slots:
                started = time.perf_counter()
                try:
                    await asyncio.to_thread(
                        self.store.copy_object,
                        self.source_bucket,
                        item.source_key,
                        self.target_bucket,
                        item.target_key,
                    )
                except ObjectStoreError as exc:
                    record_object_copy("failed", time.perf_counter() - started)
                    return str(exc)
                record_object_copy("copied", time.perf_counter() - started)
                return None

        async def extract(item: PlannedFile) -> tuple[list[PlannedFile], str | None]:
            async with copy_slots:
                uploaded: list[PlannedFile] = []
                try:
                    await asyncio.to_thread(self._extract_archive, plan, item, uploaded)
                except ObjectStoreError as exc:
                    record_archive_extraction("failed", len(uploaded))
                    return uploaded, str(exc)
                except _ARCHIVE_ERRORS as exc:
                    record_archive_extraction("failed", len(uploaded))
                    return uploaded, f"Archive {item.filename} could not be extracted: {exc}"
                record_archive_extraction("extracted", len(uploaded))
                return uploaded, None

        errors = await asyncio.gather(*(copy(item) for item in loose))
        extractions = await asyncio.gather(*(extract(item) for item in archives))

        written = [item for item, error in zip(loose, errors) if error is None]
        for extracted, _ in extractions:
            written.extend(extracted)
        copied = [(item.source_key, item.target_key) for item in written]
        failures = [error for error in errors if error is not None]
        failures.extend(error for _, error in extractions if error is not None)
        if failures:
            return EventOutcome(
                plan.event_code,
                FAILED,
                f"{len(failures)} of {len(plan.files)} copies failed: {failures[0]}",
                copied=copied,
            )

        try:
            await self._db(self._write_records, plan, written, teacher)
        except SQLAlchemyError as exc:
            return EventOutcome(
                plan.event_code, FAILED, f"Archive records could not be written: {exc}", copied
            )
        message = f"Migrated {len(loose)} file(s)"
        if archives:
            message += f" and {len(written) - len(loose)} file(s) from {len(archives)} archive(s)"
        return EventOutcome(plan.event_code, SUCCESSFUL, message, copied)

    def _extract_archive(
        self, plan: EventPlan, archive: PlannedFile, uploaded: list[PlannedFile]
    ) -> None:
        """Unpack a zip archive into the event's target folders.

        Each member is classified as if it had been stored next to the archive
        and written under the folder of its category. Written members are
        appended to ``uploaded`` as they land, so a partial extraction can still
        be rolled back.
        """

        assert self.policy is not None
        body = self.store.get_object(self.source_bucket, archive.source_key)
        folder = str(PurePosixPath(archive.source_key).parent)
        with zipfile.ZipFile(io.BytesIO(body)) as bundle:
            for member in bundle.infolist():
                if member.is_dir():
                    continue
                classification = classify_object(
                    f"{folder}/{member.filename}",
                    event_prefix=plan.storage_prefix,
                    discover_transcripts=self.policy.content.auto_discover_transcripts,
                )
                if classification.is_system_file:
                    continue
                target_key = build_target_key(
                    self.policy.storage.folder_pattern,
                    event_code=plan.event_code,
                    folder=target_folder(classification.category),
                    filename=classification.filename,
                )
                self.store.put_object(self.target_bucket, target_key, bundle.read(member))
                uploaded.append(
                    PlannedFile(
                        catalog_id=archive.catalog_id,
                        source_key=f"{archive.source_key}/{member.filename}",
                        target_key=target_key,
                        filename=classification.filename,
                        file_type=classification.file_type,
                        category=classification.category,
                        mime_type=classification.mime_type,
                        size=member.file_size,
                        metadata={
                            "language": classification.language,
                            "collection": classification.collection,
                            "extracted_from": archive.source_key,
                        },
                    )
                )

    def _write_records(self, plan: EventPlan, files: list[PlannedFile], teacher: str | None) -> None:
        with session_scope() as session:
            event = session.scalar(
                select(ArchiveEvent).where(ArchiveEvent.event_code == plan.event_code)
            )
            if event is None:
                event = ArchiveEvent(
                    event_code=plan.event_code,
                    title=plan.title,
                    start_date=plan.start_date,
                    end_date=plan.end_date,
                    teacher=teacher,
                    place=plan.place,
                    migration_id=self.migration_id,
                )
                session.add(event)
                session.flush()

            for item in files:
                self._write_file_record(session, event, item)

    def _write_file_record(self, session: Session, event: ArchiveEvent, item: PlannedFile) -> None:
        if item.file_type == "audio":
            model: type[Track] | type[Transcript] | type[MediaFile] = Track
        elif item.category == "transcript":
            model = Transcript
        else:
            model = MediaFile

        existing = session.scalar(
            select(model.id).where(
                model.migration_id == self.migration_id, model.object_key == item.target_key
            )
        )
        if existing is not None:
            return

        common = {
            "event_id": event.id,
            "bucket": self.target_bucket,
            "object_key": item.target_key,
            "migrated_from": item.source_key,
            "migration_id": self.migration_id,
        }
        if model is Track:
            info = parse_track_filename(item.filename)
            session.add(
                Track(
                    title=info.title,
                    track_number=info.track_number,
                    speaker=item.metadata.get("speaker") or info.speaker,
                    language=item.metadata.get("language") or info.language,
                    is_translation=item.category == "audio_translation",
                    is_legacy=item.category == "audio_legacy"
                    or item.metadata.get("dedup_role") == "legacy",
                    size=item.size,
                    **common,
                )
            )
        elif model is Transcript:
            session.add(Transcript(language=item.metadata.get("language"), **common))
        else:
            session.add(
                MediaFile(
                    file_type=item.file_type,
                    category=item.category,
                    filename=item.filename,
                    mime_type=item.mime_type,
                    size=item.size,
                    **common,
                )
            )

    def _record_outcome(self, outcome: EventOutcome) -> None:
        assert self.policy is not None
        self._copied.extend(outcome.copied)
        self._checkpoint[_CHECKPOINT_KEYS[outcome.outcome]].append(outcome.event_code)
        self._since_checkpoint += 1

        column = _COUNTER_COLUMNS[outcome.outcome]
        values: dict[str, Any] = {
            "processed_events": MigrationRun.processed_events + 1,
            column.key: column + 1,
            "progress_percentage": (MigrationRun.processed_events + 1) * 100
            // MigrationRun.total_events,
            "heartbeat_at": utcnow(),
        }
        execution = self.policy.execution
        if execution.save_state and self._since_checkpoint >= execution.state_save_interval:
            values["checkpoint"] = self._checkpoint_document()
            self._since_checkpoint = 0

        with session_scope() as session:
            self._guarded_update(session, values)
            level = "error" if outcome.outcome == FAILED else "info"
            RunLogger(session, self.migration_id, log=logger).log(
                level,
                outcome.message,
                event_code=outcome.event_code,
                status=outcome.outcome,
                files=len(outcome.copied),
            )
        record_event_outcome(outcome.outcome)

    def _checkpoint_document(self) -> dict[str, Any]:
        return {
            "completed": list(self._checkpoint["completed"]),
            "failed": list(self._checkpoint["failed"]),
            "skipped": list(self._checkpoint["skipped"]),
            "saved_at": utcnow().isoformat(),
        }

    def _final_status(self, run: MigrationRun) -> MigrationStatus:
        assert self.policy is not None
        if self._stop_reason == "cancelled":
            return MigrationStatus.CANCELLED
        if self._stop_reason == "fail_fast":
            return MigrationStatus.FAILED
        attempted = run.successful_events + run.failed_events
        rate = run.successful_events / attempted if attempted else 1.0
        if rate >= self.policy.validation.min_success_rate:
            return MigrationStatus.COMPLETED
        return MigrationStatus.FAILED

    def _finish(self) -> str:
        assert self.policy is not None
        with session_scope() as session:
            repository = MigrationRepository(session)
            run = repository.get_run(self.migration_id, refresh=True)
            if run.execution_token != self.token:
                raise ExecutionLeaseLostError(
                    f"Execution lease of migration {self.migration_id} was taken over"
                )
            final = self._final_status(run)
            run_log = RunLogger(session, run.id, log=logger)

            checkpoint = run.checkpoint
            if self.policy.execution.save_state:
                checkpoint = self._checkpoint_document()

            if (
                final is MigrationStatus.COMPLETED
                and self.policy.storage.delete_archives_after_extraction
            ):
                self._delete_extracted_archives(run_log)

            if final is not MigrationStatus.COMPLETED:
                strategy = self.policy.rollback.on_failure
                if strategy is RollbackStrategy.ROLLBACK_ALL:
                    self._rollback(session, run_log)
                    checkpoint = None
                elif strategy is RollbackStrategy.MANUAL and self._copied:
                    run_log.warn(
                        f"Run ended {final.value}; {len(self._copied)} migrated object(s) "
                        "left in place for manual rollback",
                        bucket=self.target_bucket,
                        keys=[target for _, target in self._copied],
                    )

            state_machine.transition(
                session,
                run,
                final,
                values={"execution_completed_at": utcnow(), "checkpoint": checkpoint},
                expected_token=self.token,
            )
            run_log.info(
                f"Execution finished with status {final.value}",
                status=final.value,
                successful=run.successful_events,
                failed=run.failed_events,
                skipped=run.skipped_events,
            )
            return final.value

    def _delete_extracted_archives(self, run_log: RunLogger) -> None:
        keys = [
            key for code in self._checkpoint["completed"] for key in self._archives.get(code, [])
        ]
        deleted: list[str] = []
        for key in keys:
            try:
                self.store.delete_object(self.source_bucket, key)
            except ObjectStoreError as exc:
                run_log.error(f"Could not delete extracted archive {key}: {exc}")
                continue
            deleted.append(key)
        if deleted:
            run_log.info(
                f"Deleted {len(deleted)} extracted archive(s) from the source bucket",
                bucket=self.source_bucket,
                keys=deleted,
            )

    def _rollback(self, session: Session, run_log: RunLogger) -> None:
        deleted = 0
        for source_key, target_key in self._copied:
            if self.target_bucket == self.source_bucket and source_key == target_key:
                continue
            try:
                self.store.delete_object(self.target_bucket, target_key)
                deleted += 1
            except ObjectStoreError as exc:
                run_log.error(f"Rollback could not delete {target_key}: {exc}")

        for model in (Track, Transcript, MediaFile, ArchiveEvent):
            session.execute(delete(model).where(model.migration_id == self.migration_id))
        run_log.warn(
            f"Rolled back {deleted} migrated object(s) and archive records of this run",
            deleted=deleted,
        )
