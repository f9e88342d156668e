"""
Import job record.

One job drives one sheet of one import source through the processing stages.
The record is written only by the Stage Transition Engine; its ``stage``,
``progress``, ``schema_validation``, ``duplicates``, ``results`` and
``errors`` fields are the public read surface for progress displays and the
approval workflow.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from eventimport.schemas.geocoding import GeocodingResult


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# STAGES
# ============================================================================


class ProcessingStage(str, Enum):
    """Stages of the import pipeline, in processing order."""

    ANALYZE_DUPLICATES = "analyze-duplicates"
    DETECT_SCHEMA = "detect-schema"
    VALIDATE_SCHEMA = "validate-schema"
    AWAIT_APPROVAL = "await-approval"
    CREATE_SCHEMA_VERSION = "create-schema-version"
    GEOCODE_BATCH = "geocode-batch"
    CREATE_EVENTS = "create-events"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStage.COMPLETED, ProcessingStage.FAILED)


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


# ============================================================================
# NESTED STRUCTURES
# ============================================================================


class StageProgress(BaseModel):
    status: StageStatus = StageStatus.PENDING
    rows_total: int = 0
    rows_processed: int = 0
    batches_processed: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rows_per_second: float | None = None


class JobProgress(BaseModel):
    """Per-stage counters plus the weighted overall percentage."""

    total_rows: int = 0
    stages: dict[str, StageProgress] = Field(default_factory=dict)
    overall_percentage: float = 0.0
    estimated_completion_time: datetime | None = None


class SchemaValidation(BaseModel):
    """Outcome of comparing the detected schema with the approved one."""

    is_compatible: bool = True
    breaking_changes: list[dict[str, Any]] = Field(default_factory=list)
    new_fields: list[dict[str, Any]] = Field(default_factory=list)
    enum_changes: list[dict[str, Any]] = Field(default_factory=list)
    change_summary: str | None = None
    requires_approval: bool = False
    approval_reason: str | None = None
    approved: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None


class DuplicateRecord(BaseModel):
    row_number: int
    unique_key: str
    first_occurrence: int | None = None
    existing_event_id: str | None = None


class DuplicateSummary(BaseModel):
    total_rows: int = 0
    unique_rows: int = 0
    internal_duplicates: int = 0
    external_duplicates: int = 0
    invalid_rows: int = 0


class DuplicateAnalysis(BaseModel):
    """
    Cumulative duplicate analysis state.

    ``seen_keys`` maps every unique key observed so far to the row that first
    produced it, so internal duplicates are detected across batch boundaries.
    """

    strategy: str = "auto"
    internal: list[DuplicateRecord] = Field(default_factory=list)
    external: list[DuplicateRecord] = Field(default_factory=list)
    summary: DuplicateSummary = Field(default_factory=DuplicateSummary)
    seen_keys: dict[str, int] = Field(default_factory=dict)

    def duplicate_rows(self) -> set[int]:
        return {d.row_number for d in self.internal} | {d.row_number for d in self.external}

    def external_match(self, row_number: int) -> DuplicateRecord | None:
        for record in self.external:
            if record.row_number == row_number:
                return record
        return None


class GeocodingCandidate(BaseModel):
    """Where a row's location lives."""

    address_path: str | None = None
    latitude_path: str | None = None
    longitude_path: str | None = None
    confidence: float = 0.0
    source: str = "detected"


class RowError(BaseModel):
    """A per-row error; ``row`` is None for errors that concern the whole job."""

    row: int | None = None
    error: str


class ImportResults(BaseModel):
    total_rows: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_versioned: int = 0
    duplicates_skipped: int = 0
    invalid_rows: int = 0
    geocoded: int = 0
    geocoding_failed: int = 0


class StageHistoryEntry(BaseModel):
    stage: ProcessingStage
    at: datetime = Field(default_factory=_utc_now)


class AuditEntry(BaseModel):
    """Who moved a job from where to where, and why."""

    kind: str
    from_stage: ProcessingStage
    to_stage: ProcessingStage
    actor: str | None = None
    reason: str | None = None
    at: datetime = Field(default_factory=_utc_now)


# ============================================================================
# IMPORT JOB
# ============================================================================


class ImportJob(BaseModel):
    """Persistent state of one import job."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    import_source: str
    dataset: str
    sheet_index: int | None = None

    stage: ProcessingStage = ProcessingStage.ANALYZE_DUPLICATES
    batch_number: int = Field(default=0, ge=0, description="Batch cursor within the current stage")
    progress: JobProgress = Field(default_factory=JobProgress)

    detected_schema: dict[str, Any] | None = None
    schema_builder_state: dict[str, Any] | None = None
    schema_validation: SchemaValidation = Field(default_factory=SchemaValidation)
    dataset_schema_version: str | None = None
    awaiting_approval_since: datetime | None = None

    duplicates: DuplicateAnalysis = Field(default_factory=DuplicateAnalysis)

    geocoding_candidate: GeocodingCandidate | None = None
    geocoding_results: dict[str, GeocodingResult] = Field(default_factory=dict)
    geocoding_pending: list[str] = Field(default_factory=list)

    results: ImportResults = Field(default_factory=ImportResults)
    errors: list[RowError] = Field(default_factory=list)

    retry_attempts: int = 0
    last_retry_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_successful_stage: ProcessingStage | None = None
    failed_stage: ProcessingStage | None = None

    stage_history: list[StageHistoryEntry] = Field(default_factory=list)
    audit_log: list[AuditEntry] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        """Serialize for the document store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "ImportJob":
        return cls.model_validate(doc)
