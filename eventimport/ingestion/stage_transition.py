"""
Stage Transition Engine.

The engine is the single writer of import job state. Stage handlers never
touch the job record; they emit a ``StageCompleted`` event that the engine
folds into the job before it enqueues the next task. Every write is a
compare-and-set on the job's ``(stage, batch_number)`` cursor, which makes
``advance`` idempotent under at-least-once task delivery and makes approval
a single atomic update.

Stage graph::

    analyze-duplicates -> detect-schema -> validate-schema -> [await-approval]
        -> create-schema-version -> geocode-batch -> create-events -> completed

``failed`` is reachable from every non-terminal stage. ``completed`` is
immutable except through ``override_stage``, which is audited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from eventimport.errors import (
    ApprovalStateError,
    InvalidRecoveryStage,
    JobNotFoundError,
    StageTransitionError,
    TerminalStateViolation,
)
from eventimport.ingestion import progress as progress_tracker
from eventimport.ingestion.retry import RECOVERY_STAGES, RetryPolicy, default_recovery_stage
from eventimport.monitoring.logging import with_context
from eventimport.schemas.dataset import ImportSource, ImportSourceStatus
from eventimport.schemas.import_job import (
    AuditEntry,
    DuplicateAnalysis,
    ImportJob,
    ImportResults,
    ProcessingStage,
    RowError,
    SchemaValidation,
    StageHistoryEntry,
)
from eventimport.storage.base import DocumentStore, TaskQueue

logger = logging.getLogger(__name__)

JOBS_KIND = "import-jobs"
IMPORT_SOURCES_KIND = "import-sources"


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# STAGE GRAPH
# ============================================================================

PIPELINE_ORDER = [
    ProcessingStage.ANALYZE_DUPLICATES,
    ProcessingStage.DETECT_SCHEMA,
    ProcessingStage.VALIDATE_SCHEMA,
    ProcessingStage.AWAIT_APPROVAL,
    ProcessingStage.CREATE_SCHEMA_VERSION,
    ProcessingStage.GEOCODE_BATCH,
    ProcessingStage.CREATE_EVENTS,
]

TRANSITIONS: dict[ProcessingStage, frozenset[ProcessingStage]] = {
    ProcessingStage.ANALYZE_DUPLICATES: frozenset({ProcessingStage.DETECT_SCHEMA}),
    ProcessingStage.DETECT_SCHEMA: frozenset({ProcessingStage.VALIDATE_SCHEMA}),
    ProcessingStage.VALIDATE_SCHEMA: frozenset({ProcessingStage.AWAIT_APPROVAL, ProcessingStage.CREATE_SCHEMA_VERSION}),
    ProcessingStage.AWAIT_APPROVAL: frozenset({ProcessingStage.CREATE_SCHEMA_VERSION}),
    ProcessingStage.CREATE_SCHEMA_VERSION: frozenset({ProcessingStage.GEOCODE_BATCH}),
    ProcessingStage.GEOCODE_BATCH: frozenset({ProcessingStage.CREATE_EVENTS}),
    ProcessingStage.CREATE_EVENTS: frozenset({ProcessingStage.COMPLETED}),
    ProcessingStage.COMPLETED: frozenset(),
    ProcessingStage.FAILED: RECOVERY_STAGES,
}

# Stages whose work is driven by tasks; await-approval and the terminal stages are not.
TASK_STAGES = frozenset(
    {
        ProcessingStage.ANALYZE_DUPLICATES,
        ProcessingStage.DETECT_SCHEMA,
        ProcessingStage.VALIDATE_SCHEMA,
        ProcessingStage.CREATE_SCHEMA_VERSION,
        ProcessingStage.GEOCODE_BATCH,
        ProcessingStage.CREATE_EVENTS,
    }
)

# Job fields a stage handler may write through StageCompleted.output
OUTPUT_FIELDS = frozenset(
    {
        "progress",
        "detected_schema",
        "schema_builder_state",
        "schema_validation",
        "dataset_schema_version",
        "duplicates",
        "geocoding_candidate",
        "geocoding_results",
        "geocoding_pending",
        "results",
        "errors",
    }
)


def can_transition(from_stage: ProcessingStage, to_stage: ProcessingStage) -> bool:
    """True when ``from_stage -> to_stage`` is an edge of the stage graph."""
    if to_stage == ProcessingStage.FAILED:
        return not from_stage.is_terminal
    return to_stage in TRANSITIONS[from_stage]


@dataclass(frozen=True)
class StageCompleted:
    """
    Event emitted by a stage handler when it finishes one unit of work.

    Args:
        job_id: Job the work belongs to
        stage: Stage that ran
        batch_number: Batch cursor the handler ran against
        has_more: True when the stage needs another batch
        rows_processed: Rows consumed by this unit, for progress tracking
        skipped: The stage had nothing to do (e.g. schema handling disabled)
        output: Job fields to persist, restricted to OUTPUT_FIELDS
    """

    job_id: str
    stage: ProcessingStage
    batch_number: int = 0
    has_more: bool = False
    rows_processed: int = 0
    skipped: bool = False
    output: dict[str, Any] = field(default_factory=dict)


def next_stage(job: ImportJob, event: StageCompleted) -> tuple[ProcessingStage, int]:
    """
    Compute the job's next ``(stage, batch_number)`` from a completion event.

    ``job`` must already carry the event's output: the validate-schema branch
    reads the freshly written ``schema_validation``.
    """
    if event.has_more:
        return event.stage, event.batch_number + 1

    if event.stage == ProcessingStage.VALIDATE_SCHEMA:
        validation = job.schema_validation
        if validation.requires_approval and not validation.approved:
            return ProcessingStage.AWAIT_APPROVAL, 0
        return ProcessingStage.CREATE_SCHEMA_VERSION, 0

    if event.stage == ProcessingStage.AWAIT_APPROVAL:
        raise ApprovalStateError(
            "A job awaiting approval only advances through an approval",
            job_id=job.id,
            from_stage=event.stage.value,
        )

    position = PIPELINE_ORDER.index(event.stage)
    following = PIPELINE_ORDER[position + 1 :]
    for stage in following:
        if stage != ProcessingStage.AWAIT_APPROVAL:
            return stage, 0
    return ProcessingStage.COMPLETED, 0


def _stages_from(stage: ProcessingStage) -> list[ProcessingStage]:
    return PIPELINE_ORDER[PIPELINE_ORDER.index(stage) :]


def _reset_outputs(job: ImportJob, from_stage: ProcessingStage) -> dict[str, Any]:
    """
    Field values that re-running the pipeline from ``from_stage`` starts over with.

    Resolved geocoding results are kept; they are reused instead of queried again.
    """
    stages = set(_stages_from(from_stage))
    reset: dict[str, Any] = {}
    if ProcessingStage.ANALYZE_DUPLICATES in stages:
        reset["duplicates"] = DuplicateAnalysis()
    if ProcessingStage.DETECT_SCHEMA in stages:
        reset.update(detected_schema=None, schema_builder_state=None, geocoding_candidate=None)
    if ProcessingStage.VALIDATE_SCHEMA in stages:
        reset.update(schema_validation=SchemaValidation(), dataset_schema_version=None, awaiting_approval_since=None)
    if ProcessingStage.GEOCODE_BATCH in stages:
        reset["geocoding_pending"] = []
    if ProcessingStage.CREATE_EVENTS in stages:
        reset["results"] = ImportResults(total_rows=job.progress.total_rows)
        reset["errors"] = [e for e in job.errors if e.row is None]
    reset["progress"] = progress_tracker.reset_stages(job.progress, [s for s in stages])
    return reset


# ============================================================================
# ENGINE
# ============================================================================


class StageTransitionEngine:
    """
    Sequence import jobs through the processing stages.

    Args:
        store: Document store holding jobs and import sources
        queue: Task queue receiving one task per scheduled stage
        retry_policy: Backoff and attempt limit for automated recovery
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: DocumentStore,
        queue: TaskQueue,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.queue = queue
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> ImportJob:
        doc = self.store.find_by_id(JOBS_KIND, job_id)
        if doc is None:
            raise JobNotFoundError(job_id)
        return ImportJob.from_document(doc)

    def jobs_for_source(self, import_source_id: str) -> list[ImportJob]:
        docs = self.store.find(JOBS_KIND, {"import_source": import_source_id}, sort="sheet_index")
        return [ImportJob.from_document(d) for d in docs]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _enqueue(self, job: ImportJob) -> None:
        if job.stage in TASK_STAGES:
            self.queue.enqueue(job.stage.value, {"job_id": job.id, "batch_number": job.batch_number})

    def _write(self, job: ImportJob, expected: dict[str, Any], updated: ImportJob) -> bool:
        """Compare-and-set the job document; False when ``expected`` no longer holds."""
        condition = {"id": job.id, **expected}
        return self.store.update(JOBS_KIND, condition, updated.to_document()) == 1

    def create_job(self, source: ImportSource, sheet_index: int | None = None, total_rows: int = 0) -> ImportJob:
        """
        Create the job for one sheet of an import source and schedule its first stage.

        Creating the same (source, sheet) twice returns the existing job.
        """
        existing = self.store.find(JOBS_KIND, {"import_source": source.id, "sheet_index": sheet_index}, limit=1)
        if existing:
            return ImportJob.from_document(existing[0])

        now = self.clock()
        job = ImportJob(
            import_source=source.id,
            dataset=source.dataset,
            sheet_index=sheet_index,
            progress=progress_tracker.init_progress(total_rows),
            results=ImportResults(total_rows=total_rows),
            stage_history=[StageHistoryEntry(stage=ProcessingStage.ANALYZE_DUPLICATES, at=now)],
            created_at=now,
            updated_at=now,
        )
        self.store.create(JOBS_KIND, job.to_document())
        self.store.update(IMPORT_SOURCES_KIND, source.id, {"status": ImportSourceStatus.PROCESSING.value})
        self._enqueue(job)
        with_context(logger, job_id=job.id).info(
            f"Created import job for source {source.id} sheet {sheet_index} ({total_rows} rows)"
        )
        return job

    def advance(self, event: StageCompleted) -> ImportJob:
        """
        Persist a stage's output, move the job on and enqueue exactly one task.

        A completion event that does not match the stored ``(stage,
        batch_number)`` is a redelivery or a stale task: the stored job is
        returned unchanged and nothing is enqueued.
        """
        log = with_context(logger, job_id=event.job_id, stage=event.stage.value, batch=event.batch_number)
        job = self.get_job(event.job_id)
        if job.stage != event.stage or job.batch_number != event.batch_number:
            log.info(f"Ignoring completion event; job is at {job.stage.value} batch {job.batch_number}")
            return job

        unknown = set(event.output) - OUTPUT_FIELDS
        if unknown:
            raise StageTransitionError(
                f"Stage output may not write {sorted(unknown)}",
                job_id=job.id,
                from_stage=job.stage.value,
            )

        now = self.clock()
        updated = ImportJob.model_validate({**job.model_dump(), **event.output})
        stage, batch = next_stage(updated, event)
        if stage != job.stage and not can_transition(job.stage, stage):
            raise StageTransitionError(
                f"Invalid transition {job.stage.value} -> {stage.value}",
                job_id=job.id,
                from_stage=job.stage.value,
                to_stage=stage.value,
            )

        progress = updated.progress
        if event.rows_processed:
            progress = progress_tracker.record_batch(progress, event.stage, event.rows_processed, now, job.created_at)
        if not event.has_more:
            progress = progress_tracker.complete_stage(progress, event.stage, now, job.created_at, skipped=event.skipped)
            updated.last_successful_stage = event.stage
        updated.progress = progress
        updated.stage = stage
        updated.batch_number = batch
        updated.updated_at = now

        if stage != job.stage:
            updated.stage_history.append(StageHistoryEntry(stage=stage, at=now))
        if stage == ProcessingStage.AWAIT_APPROVAL:
            updated.awaiting_approval_since = now
        if stage == ProcessingStage.COMPLETED:
            updated.completed_at = now
            updated.progress.overall_percentage = 100.0
            updated.progress.estimated_completion_time = now

        expected = {"stage": job.stage.value, "batch_number": job.batch_number}
        if not self._write(job, expected, updated):
            log.info("Job changed concurrently; completion already applied")
            return self.get_job(job.id)

        if stage != job.stage:
            log.info(f"Stage {job.stage.value} -> {stage.value}")
        self._enqueue(updated)
        if stage.is_terminal:
            self.aggregate_import_source(updated.import_source)
        return updated

    def approve(self, job_id: str, approved_by: str | None = None) -> ImportJob:
        """
        Approve the pending schema change and advance to create-schema-version.

        ``approved = True`` and the stage change are one compare-and-set
        update; no reader can observe an approved job still awaiting approval.
        """
        job = self.get_job(job_id)
        if job.stage == ProcessingStage.COMPLETED:
            raise TerminalStateViolation(
                "Cannot approve a completed job", job_id=job.id, from_stage=job.stage.value
            )
        if job.stage != ProcessingStage.AWAIT_APPROVAL:
            raise ApprovalStateError(
                f"Job is not awaiting approval (stage {job.stage.value})",
                job_id=job.id,
                from_stage=job.stage.value,
                to_stage=ProcessingStage.CREATE_SCHEMA_VERSION.value,
            )

        now = self.clock()
        updated = job.model_copy(deep=True)
        updated.schema_validation.approved = True
        updated.schema_validation.approved_by = approved_by
        updated.schema_validation.approved_at = now
        updated.stage = ProcessingStage.CREATE_SCHEMA_VERSION
        updated.batch_number = 0
        updated.awaiting_approval_since = None
        updated.updated_at = now
        updated.stage_history.append(StageHistoryEntry(stage=updated.stage, at=now))
        updated.audit_log.append(
            AuditEntry(
                kind="approval",
                from_stage=job.stage,
                to_stage=updated.stage,
                actor=approved_by,
                at=now,
            )
        )

        expected = {"stage": ProcessingStage.AWAIT_APPROVAL.value, "schema_validation.approved": False}
        if not self._write(job, expected, updated):
            raise ApprovalStateError(
                "Job left await-approval before the approval was applied",
                job_id=job.id,
                from_stage=job.stage.value,
            )

        with_context(
            logger, job_id=job.id, from_stage=job.stage.value, to_stage=updated.stage.value, actor=approved_by
        ).info("Schema change approved")
        self._enqueue(updated)
        return updated

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        stage: ProcessingStage | None = None,
        retryable: bool = True,
        row_errors: list[RowError] | None = None,
    ) -> ImportJob:
        """
        Drive a job to ``failed`` and schedule an automated retry when allowed.

        Args:
            job_id: Job to fail
            error: Job-level error message
            stage: Stage the failing task ran for; a job that has already moved
                on is left untouched
            retryable: False when re-running cannot change the outcome
            row_errors: Per-row errors to record alongside the failure
        """
        job = self.get_job(job_id)
        log = with_context(logger, job_id=job.id, stage=job.stage.value)
        if job.stage == ProcessingStage.COMPLETED:
            raise TerminalStateViolation("Cannot fail a completed job", job_id=job.id, from_stage=job.stage.value)
        if job.stage == ProcessingStage.FAILED:
            return job
        if stage is not None and job.stage != stage:
            log.info(f"Ignoring failure of stale {stage.value} task")
            return job

        now = self.clock()
        updated = job.model_copy(deep=True)
        updated.stage = ProcessingStage.FAILED
        updated.failed_stage = job.stage
        updated.updated_at = now
        updated.errors.extend(row_errors or [])
        updated.errors.append(RowError(error=error))
        updated.next_retry_at = self.retry_policy.next_retry_at(job.retry_attempts, now) if retryable else None
        updated.stage_history.append(StageHistoryEntry(stage=ProcessingStage.FAILED, at=now))
        updated.audit_log.append(
            AuditEntry(kind="failure", from_stage=job.stage, to_stage=ProcessingStage.FAILED, reason=error, at=now)
        )

        if not self._write(job, {"stage": job.stage.value}, updated):
            log.info("Job changed concurrently; failure not applied")
            return self.get_job(job.id)

        if updated.next_retry_at:
            log.error(f"Job failed in {job.stage.value}: {error}; retry scheduled at {updated.next_retry_at.isoformat()}")
        else:
            log.error(f"Job failed in {job.stage.value}: {error}; no automated retry")
        self.aggregate_import_source(updated.import_source)
        return updated

    def recover(
        self,
        job_id: str,
        to_stage: ProcessingStage,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ImportJob:
        """
        Move a failed job back into a recovery stage and schedule it.

        ``actor=None`` marks an automated retry and counts against the retry
        budget.
        """
        job = self.get_job(job_id)
        if job.stage == ProcessingStage.COMPLETED:
            raise TerminalStateViolation(
                "Cannot recover a completed job", job_id=job.id, from_stage=job.stage.value, to_stage=to_stage.value
            )
        if job.stage != ProcessingStage.FAILED:
            raise StageTransitionError(
                f"Only failed jobs can be recovered (stage {job.stage.value})",
                job_id=job.id,
                from_stage=job.stage.value,
                to_stage=to_stage.value,
            )
        if to_stage not in RECOVERY_STAGES:
            raise InvalidRecoveryStage(
                f"Cannot recover into {to_stage.value}; allowed: {sorted(s.value for s in RECOVERY_STAGES)}",
                job_id=job.id,
                from_stage=job.stage.value,
                to_stage=to_stage.value,
            )

        now = self.clock()
        automated = actor is None
        updated = ImportJob.model_validate({**job.model_dump(), **_reset_outputs(job, to_stage)})
        updated.stage = to_stage
        updated.batch_number = 0
        updated.failed_stage = None
        updated.next_retry_at = None
        updated.completed_at = None
        updated.updated_at = now
        if automated:
            updated.retry_attempts += 1
            updated.last_retry_at = now
        updated.stage_history.append(StageHistoryEntry(stage=to_stage, at=now))
        updated.audit_log.append(
            AuditEntry(
                kind="retry" if automated else "recovery",
                from_stage=ProcessingStage.FAILED,
                to_stage=to_stage,
                actor=actor,
                reason=reason or ("automated retry" if automated else None),
                at=now,
            )
        )

        if not self._write(job, {"stage": ProcessingStage.FAILED.value}, updated):
            raise StageTransitionError(
                "Job left failed before the recovery was applied",
                job_id=job.id,
                from_stage=job.stage.value,
                to_stage=to_stage.value,
            )

        self.store.update(IMPORT_SOURCES_KIND, job.import_source, {"status": ImportSourceStatus.PROCESSING.value, "completed_at": None})
        with_context(logger, job_id=job.id, from_stage=job.stage.value, to_stage=to_stage.value, actor=actor or "automated").info(
            f"Recovered job (attempt={updated.retry_attempts})"
        )
        self._enqueue(updated)
        return updated

    def override_stage(self, job_id: str, to_stage: ProcessingStage, actor: str, reason: str) -> ImportJob:
        """
        Administrative stage change, allowed from any stage including ``completed``.

        The caller is responsible for the override policy check; the change is
        always written to the audit log.
        """
        job = self.get_job(job_id)
        now = self.clock()
        updated = job.model_copy(deep=True)
        if not to_stage.is_terminal and to_stage != ProcessingStage.AWAIT_APPROVAL:
            updated = ImportJob.model_validate({**job.model_dump(), **_reset_outputs(job, to_stage)})
        updated.stage = to_stage
        updated.batch_number = 0
        updated.updated_at = now
        updated.completed_at = now if to_stage == ProcessingStage.COMPLETED else None
        updated.awaiting_approval_since = now if to_stage == ProcessingStage.AWAIT_APPROVAL else None
        updated.stage_history.append(StageHistoryEntry(stage=to_stage, at=now))
        updated.audit_log.append(
            AuditEntry(kind="override", from_stage=job.stage, to_stage=to_stage, actor=actor, reason=reason, at=now)
        )

        if not self._write(job, {"stage": job.stage.value, "batch_number": job.batch_number}, updated):
            raise StageTransitionError(
                "Job changed concurrently; override not applied",
                job_id=job.id,
                from_stage=job.stage.value,
                to_stage=to_stage.value,
            )

        with_context(logger, job_id=job.id, from_stage=job.stage.value, to_stage=to_stage.value, actor=actor).warning(
            f"Stage override: {reason}"
        )
        self._enqueue(updated)
        if to_stage.is_terminal:
            self.aggregate_import_source(updated.import_source)
        elif job.stage.is_terminal:
            self.store.update(IMPORT_SOURCES_KIND, job.import_source, {"status": ImportSourceStatus.PROCESSING.value, "completed_at": None})
        return updated

    # ------------------------------------------------------------------
    # Aggregation and maintenance
    # ------------------------------------------------------------------

    def aggregate_import_source(self, import_source_id: str) -> ImportSourceStatus | None:
        """
        Mark the import source terminal once every sibling job is terminal.

        Sibling state is re-read from the store on each call so concurrent
        terminal transitions converge on the same result.
        """
        jobs = self.jobs_for_source(import_source_id)
        if not jobs or not all(j.stage.is_terminal for j in jobs):
            return None

        failed = any(j.stage == ProcessingStage.FAILED for j in jobs)
        status = ImportSourceStatus.FAILED if failed else ImportSourceStatus.COMPLETED
        updated = self.store.update(
            IMPORT_SOURCES_KIND,
            import_source_id,
            {"status": status.value, "completed_at": self.clock().isoformat()},
        )
        if not updated:
            logger.warning(f"Import source {import_source_id} not found; cannot record status {status.value}")
            return status
        logger.info(f"Import source {import_source_id} {status.value} ({len(jobs)} job(s))")
        return status

    def process_due_retries(self, now: datetime | None = None) -> int:
        """Recover failed jobs whose ``next_retry_at`` has passed. Returns the number recovered."""
        now = now or self.clock()
        docs = self.store.find(
            JOBS_KIND,
            {"stage": ProcessingStage.FAILED.value, "next_retry_at": {"less_than_equal": now}},
            sort="next_retry_at",
        )
        recovered = 0
        for doc in docs:
            job = ImportJob.from_document(doc)
            try:
                self.recover(job.id, default_recovery_stage(job.failed_stage))
                recovered += 1
            except StageTransitionError as e:
                logger.warning(f"Automated retry of job {job.id} skipped: {e}")
        return recovered

    def cleanup_stale_approvals(self, timeout: timedelta, now: datetime | None = None) -> int:
        """Fail jobs that have waited for approval longer than ``timeout``."""
        now = now or self.clock()
        docs = self.store.find(
            JOBS_KIND,
            {"stage": ProcessingStage.AWAIT_APPROVAL.value, "awaiting_approval_since": {"less_than": now - timeout}},
        )
        released = 0
        for doc in docs:
            hours = timeout.total_seconds() / 3600
            job = self.fail(
                doc["id"],
                f"Schema approval not given within {hours:g} hours",
                stage=ProcessingStage.AWAIT_APPROVAL,
                retryable=False,
            )
            if job.stage == ProcessingStage.FAILED:
                released += 1
        if released:
            logger.info(f"Released {released} stale approval lock(s)")
        return released
