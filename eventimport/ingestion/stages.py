"""
Stage task handlers.

Each pipeline stage is a task handler registered under the stage's task name.
A handler reads the job, does one unit of work (usually one batch of rows)
and returns a ``StageCompleted`` event; it never writes the job itself. The
worker hands the event to the Stage Transition Engine.

Maintenance tasks (stale approval locks, location cache sweep, due retries)
are registered the same way and return a small report dict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Union

from eventimport.configs.config import PipelineConfig
from eventimport.errors import EventImportError, SchemaIncompatible, StrictValidationFailed, UniqueKeyError
from eventimport.geocoding.cache import LocationCache
from eventimport.geocoding.service import GeocodingService
from eventimport.ingestion.deduplication import DuplicateAnalyzer
from eventimport.ingestion.event_writer import EventWriter, provided_coordinates, row_address
from eventimport.ingestion.row_validation import RowValidator
from eventimport.ingestion.schema_builder import GeoFieldDetection, ProgressiveSchemaBuilder, SchemaBuilderState
from eventimport.ingestion.schema_comparison import (
    add_type_conflicts,
    check_compatibility,
    compare_schemas,
    evaluate_approval,
    generate_change_summary,
)
from eventimport.ingestion.schema_versioning import create_schema_version, get_latest_version, get_version
from eventimport.ingestion.stage_transition import IMPORT_SOURCES_KIND, StageCompleted, StageTransitionEngine
from eventimport.monitoring.logging import with_context
from eventimport.schemas.dataset import Dataset, ImportSource
from eventimport.schemas.import_job import GeocodingCandidate, ImportJob, ProcessingStage, RowError, SchemaValidation
from eventimport.storage.base import DocumentStore, TaskQueue
from eventimport.storage.rows import RowReader

logger = logging.getLogger(__name__)

DATASETS_KIND = "datasets"


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class PipelineContext:
    """Collaborators shared by every task handler."""

    store: DocumentStore
    queue: TaskQueue
    rows: RowReader
    engine: StageTransitionEngine
    config: PipelineConfig = field(default_factory=PipelineConfig)
    geocoder: GeocodingService | None = None
    cache: LocationCache | None = None
    clock: Callable[[], datetime] = _utc_now


HandlerResult = Union[StageCompleted, dict, None]
TaskHandler = Callable[[PipelineContext, dict], Union[HandlerResult, Awaitable[HandlerResult]]]
TASK_REGISTRY: dict[str, TaskHandler] = {}


def register_task(name: str):
    """
    Decorator to register a task handler.

    Usage:
        @register_task("detect-schema")
        def detect_schema(ctx: PipelineContext, task_input: dict) -> StageCompleted | None:
            ...
    """

    def decorator(handler: TaskHandler) -> TaskHandler:
        TASK_REGISTRY[name] = handler
        return handler

    return decorator


# ============================================================================
# LOADING
# ============================================================================


def load_dataset(store: DocumentStore, dataset_id: str) -> Dataset:
    doc = store.find_by_id(DATASETS_KIND, dataset_id)
    if doc is None:
        raise EventImportError(f"Dataset '{dataset_id}' not found")
    return Dataset.model_validate(doc)


def load_import_source(store: DocumentStore, source_id: str) -> ImportSource:
    doc = store.find_by_id(IMPORT_SOURCES_KIND, source_id)
    if doc is None:
        raise EventImportError(f"Import source '{source_id}' not found")
    return ImportSource.model_validate(doc)


def _current_job(ctx: PipelineContext, stage: ProcessingStage, task_input: dict) -> ImportJob | None:
    """The job a stage task is for, or None when the task is stale."""
    job = ctx.engine.get_job(task_input["job_id"])
    batch = task_input.get("batch_number", 0)
    if job.stage != stage or job.batch_number != batch:
        with_context(logger, job_id=job.id, stage=stage.value, batch=batch).info(
            f"Skipping stale task; job is at {job.stage.value} batch {job.batch_number}"
        )
        return None
    return job


def _read_batch(ctx: PipelineContext, job: ImportJob, batch_size: int) -> tuple[int, list[dict[str, Any]], bool]:
    """Return ``(start_row, rows, has_more)`` for the job's current batch."""
    source = load_import_source(ctx.store, job.import_source)
    start = job.batch_number * batch_size
    rows = ctx.rows.read_batch(source, job.sheet_index, start, batch_size)
    total = job.progress.total_rows
    has_more = len(rows) == batch_size and (total == 0 or start + len(rows) < total)
    return start, rows, has_more


def _geocoding_candidate(dataset: Dataset, detected: GeoFieldDetection) -> GeocodingCandidate | None:
    mapping = dataset.geo_field_mapping
    if mapping.is_configured:
        return GeocodingCandidate(
            address_path=mapping.address_path,
            latitude_path=mapping.latitude_path,
            longitude_path=mapping.longitude_path,
            confidence=1.0,
            source="configured",
        )
    if detected.found:
        return GeocodingCandidate(
            address_path=detected.address_path,
            latitude_path=detected.latitude_path,
            longitude_path=detected.longitude_path,
            confidence=detected.confidence,
            source="detected",
        )
    return None


# ============================================================================
# PIPELINE STAGES
# ============================================================================


@register_task(ProcessingStage.ANALYZE_DUPLICATES.value)
def analyze_duplicates(ctx: PipelineContext, task_input: dict) -> StageCompleted | None:
    stage = ProcessingStage.ANALYZE_DUPLICATES
    job = _current_job(ctx, stage, task_input)
    if job is None:
        return None

    dataset = load_dataset(ctx.store, job.dataset)
    start, rows, has_more = _read_batch(ctx, job, ctx.config.batch_sizes.duplicate_analysis)
    state, _ = DuplicateAnalyzer(dataset, ctx.store).analyze_batch(rows, start, job.duplicates)
    return StageCompleted(
        job.id,
        stage,
        job.batch_number,
        has_more=has_more,
        rows_processed=len(rows),
        output={"duplicates": state},
    )


@register_task(ProcessingStage.DETECT_SCHEMA.value)
def detect_schema(ctx: PipelineContext, task_input: dict) -> StageCompleted | None:
    """Fold one batch into the schema builder state; geo fields are detected here too."""
    stage = ProcessingStage.DETECT_SCHEMA
    job = _current_job(ctx, stage, task_input)
    if job is None:
        return None

    dataset = load_dataset(ctx.store, job.dataset)
    start, rows, has_more = _read_batch(ctx, job, ctx.config.batch_sizes.schema_detection)
    builder = ProgressiveSchemaBuilder(job.schema_builder_state, dataset.schema_config)
    changes = builder.process_batch(rows)
    conflicts = [c for c in changes if c["type"] == "type_conflict"]
    if conflicts:
        with_context(logger, job_id=job.id, stage=stage.value, batch=job.batch_number).warning(
            f"Type conflicts in rows {start}-{start + len(rows) - 1}: {[c['path'] for c in conflicts]}"
        )

    state = builder.get_state()
    return StageCompleted(
        job.id,
        stage,
        job.batch_number,
        has_more=has_more,
        rows_processed=len(rows),
        output={
            "schema_builder_state": state.model_dump(mode="json"),
            "detected_schema": builder.build_schema(),
            "geocoding_candidate": _geocoding_candidate(dataset, state.detected_geo_fields),
        },
    )


@register_task(ProcessingStage.VALIDATE_SCHEMA.value)
def validate_schema(ctx: PipelineContext, task_input: dict) -> StageCompleted | None:
    """
    Compare the detected schema with the latest approved version.

    Breaking changes on a locked or strict dataset are not an error here: the
    job is routed to await-approval with the incompatibility as the reason.
    """
    stage = ProcessingStage.VALIDATE_SCHEMA
    job = _current_job(ctx, stage, task_input)
    if job is None:
        return None

    log = with_context(logger, job_id=job.id, stage=stage.value)
    dataset = load_dataset(ctx.store, job.dataset)
    config = dataset.schema_config
    if not config.enabled:
        return StageCompleted(job.id, stage, job.batch_number, skipped=True, output={"schema_validation": SchemaValidation()})

    latest = get_latest_version(ctx.store, dataset.id)
    comparison = compare_schemas(latest.json_schema if latest else None, job.detected_schema or {}, config)
    state = SchemaBuilderState.model_validate(job.schema_builder_state or {})
    add_type_conflicts(comparison, [c.model_dump() for c in state.type_conflicts])
    decision = evaluate_approval(comparison, config)

    reason = decision.reason
    try:
        check_compatibility(comparison, config)
    except SchemaIncompatible as e:
        log.warning(f"Schema incompatible: {e.reason}; approval required")
        reason = e.reason

    validation = SchemaValidation(
        is_compatible=not comparison.is_breaking,
        breaking_changes=[c.to_dict() for c in comparison.breaking_changes],
        new_fields=[c.to_dict() for c in comparison.new_fields],
        enum_changes=[c.to_dict() for c in comparison.enum_changes],
        change_summary=generate_change_summary(comparison),
        requires_approval=decision.requires_approval,
        approval_reason=reason if decision.requires_approval else None,
    )
    log.info(
        f"Schema validated against version {latest.version_number if latest else 'none'}: "
        f"{len(comparison.changes)} change(s), approval {'required' if decision.requires_approval else 'not required'}"
    )
    return StageCompleted(
        job.id,
        stage,
        job.batch_number,
        rows_processed=job.progress.total_rows,
        output={"schema_validation": validation},
    )


@register_task(ProcessingStage.CREATE_SCHEMA_VERSION.value)
def create_version(ctx: PipelineContext, task_input: dict) -> StageCompleted | None:
    """Create the accepted schema version, or link the latest one when nothing changed."""
    stage = ProcessingStage.CREATE_SCHEMA_VERSION
    job = _current_job(ctx, stage, task_input)
    if job is None:
        return None

    dataset = load_dataset(ctx.store, job.dataset)
    config = dataset.schema_config
    if not config.enabled or job.detected_schema is None:
        return StageCompleted(job.id, stage, job.batch_number, skipped=True)

    latest = get_latest_version(ctx.store, dataset.id)
    state = SchemaBuilderState.model_validate(job.schema_builder_state or {})
    if latest is not None and latest.created_by_job != job.id:
        comparison = compare_schemas(latest.json_schema, job.detected_schema, config)
        add_type_conflicts(comparison, [c.model_dump() for c in state.type_conflicts])
        if not comparison.has_changes:
            return StageCompleted(
                job.id, stage, job.batch_number, skipped=True, output={"dataset_schema_version": latest.id}
            )

    builder = ProgressiveSchemaBuilder(state, config)
    validation = job.schema_validation
    version = create_schema_version(
        ctx.store,
        dataset_id=dataset.id,
        json_schema=job.detected_schema,
        job_id=job.id,
        import_source=job.import_source,
        field_metadata=builder.field_metadata(),
        schema_summary=builder.summary(),
        approval_required=validation.requires_approval,
        approved_by=validation.approved_by,
        auto_approved=not validation.requires_approval,
        conflicts=[c.model_dump(mode="json") for c in state.type_conflicts],
    )
    return StageCompleted(job.id, stage, job.batch_number, output={"dataset_schema_version": version.id})


@register_task(ProcessingStage.GEOCODE_BATCH.value)
async def geocode_batch(ctx: PipelineContext, task_input: dict) -> StageCompleted | None:
    """
    Resolve the addresses of one batch.

    Failed addresses do not fail the stage; they stay in ``geocoding_pending``.
    Rows with valid coordinates of their own are not geocoded.
    """
    stage = ProcessingStage.GEOCODE_BATCH
    job = _current_job(ctx, stage, task_input)
    if job is None:
        return None

    candidate = job.geocoding_candidate
    if (
        ctx.geocoder is None
        or not ctx.config.geocoding.enabled
        or candidate is None
        or not candidate.address_path
    ):
        return StageCompleted(job.id, stage, job.batch_number, skipped=True)

    start, rows, has_more = _read_batch(ctx, job, ctx.config.batch_sizes.geocoding)
    addresses = []
    for row in rows:
        if provided_coordinates(row, candidate) is not None:
            continue
        address = row_address(row, candidate)
        if address and address not in job.geocoding_results and address not in addresses:
            addresses.append(address)

    results = dict(job.geocoding_results)
    pending = set(job.geocoding_pending)
    if addresses:
        batch = await ctx.geocoder.batch_geocode(addresses, ctx.config.geocoding.batch_size)
        results.update(batch.successful)
        pending -= set(batch.successful)
        pending |= set(batch.failed)
        log = with_context(logger, job_id=job.id, stage=stage.value, batch=job.batch_number)
        for address, error in batch.failed.items():
            log.warning(f"Geocoding failed for '{address}': {error.code}")
        log.info(
            f"Geocoded {batch.summary.successful}/{batch.summary.total} address(es) "
            f"({batch.summary.cached} from cache)"
        )

    return StageCompleted(
        job.id,
        stage,
        job.batch_number,
        has_more=has_more,
        rows_processed=len(rows),
        output={"geocoding_results": results, "geocoding_pending": sorted(pending)},
    )


def _row_validator(ctx: PipelineContext, job: ImportJob, dataset: Dataset) -> RowValidator | None:
    if not dataset.schema_config.enabled:
        return None
    version = get_version(ctx.store, job.dataset_schema_version) if job.dataset_schema_version else None
    schema = version.json_schema if version else job.detected_schema
    return RowValidator(schema) if schema else None


def _strict_prescan(ctx: PipelineContext, job: ImportJob, validator: RowValidator) -> None:
    """Validate every row of the sheet before the first event is written."""
    batch_size = ctx.config.batch_sizes.event_creation
    source = load_import_source(ctx.store, job.import_source)
    errors: list[dict[str, Any]] = []
    start = 0
    while True:
        rows = ctx.rows.read_batch(source, job.sheet_index, start, batch_size)
        for offset, row in enumerate(rows):
            messages = validator.errors(row)
            if messages:
                errors.append({"row": start + offset, "error": "; ".join(messages)})
        if len(rows) < batch_size:
            break
        start += batch_size
    if errors:
        raise StrictValidationFailed(errors)


@register_task(ProcessingStage.CREATE_EVENTS.value)
def create_events(ctx: PipelineContext, task_input: dict) -> StageCompleted | None:
    stage = ProcessingStage.CREATE_EVENTS
    job = _current_job(ctx, stage, task_input)
    if job is None:
        return None

    dataset = load_dataset(ctx.store, job.dataset)
    validator = _row_validator(ctx, job, dataset)
    if validator is not None and dataset.schema_config.strict_validation and job.batch_number == 0:
        _strict_prescan(ctx, job, validator)

    start, rows, has_more = _read_batch(ctx, job, ctx.config.batch_sizes.event_creation)
    analyzer = DuplicateAnalyzer(dataset, ctx.store)
    internal = {d.row_number for d in job.duplicates.internal}

    to_write: list[tuple[int, dict[str, Any], str | None]] = []
    row_errors: list[RowError] = []
    internal_skipped = 0
    for offset, row in enumerate(rows):
        row_number = start + offset
        if row_number in internal:
            internal_skipped += 1
            continue

        key = None
        if analyzer.enabled:
            try:
                key = analyzer.unique_key(row)
            except UniqueKeyError as e:
                row_errors.append(RowError(row=row_number, error=str(e)))
                continue

        messages = validator.errors(row) if validator is not None else []
        if messages:
            row_errors.append(RowError(row=row_number, error="; ".join(messages)))
            continue
        to_write.append((row_number, row, key))

    summary = EventWriter(ctx.store, dataset, job, ctx.clock).write_batch(to_write)

    results = job.results.model_copy()
    results.events_created += summary.created
    results.events_updated += summary.updated
    results.events_versioned += summary.versioned
    results.duplicates_skipped += summary.skipped + internal_skipped
    results.invalid_rows += len(row_errors)
    results.geocoded += summary.geocoded
    results.geocoding_failed += summary.geocoding_failed

    with_context(logger, job_id=job.id, stage=stage.value, batch=job.batch_number).info(
        f"Rows {start}-{start + len(rows) - 1}: {summary.created} created, {summary.updated} updated, "
        f"{summary.versioned} versioned, {summary.skipped + internal_skipped} skipped, "
        f"{len(row_errors) + len(summary.errors)} error(s)"
    )
    return StageCompleted(
        job.id,
        stage,
        job.batch_number,
        has_more=has_more,
        rows_processed=len(rows),
        output={"results": results, "errors": [*job.errors, *row_errors, *summary.errors]},
    )


# ============================================================================
# MAINTENANCE
# ============================================================================


@register_task("cleanup-approval-locks")
def cleanup_approval_locks(ctx: PipelineContext, task_input: dict) -> dict:
    hours = task_input.get("timeout_hours", ctx.config.approval.lock_timeout_hours)
    return {"released": ctx.engine.cleanup_stale_approvals(timedelta(hours=hours), ctx.clock())}


@register_task("cleanup-location-cache")
def cleanup_location_cache(ctx: PipelineContext, task_input: dict) -> dict:
    """Eviction sweep; failures are logged inside the cache and retried on the next run."""
    if ctx.cache is None:
        return {"removed": 0}
    return {"removed": ctx.cache.cleanup()}


@register_task("process-retries")
def process_retries(ctx: PipelineContext, task_input: dict) -> dict:
    return {"recovered": ctx.engine.process_due_retries(ctx.clock())}


MAINTENANCE_TASKS = ("cleanup-approval-locks", "cleanup-location-cache", "process-retries")
