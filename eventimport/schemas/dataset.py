"""
Dataset configuration and schema version models.

The dataset configuration is read-only to the pipeline: it decides how unique
keys are derived, how duplicates are handled, how schema changes are approved
and where geocoding fields live in a row.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================


class IdStrategyType(str, Enum):
    """How a row's unique key is derived."""

    EXTERNAL = "external"
    COMPUTED = "computed"
    AUTO = "auto"
    HYBRID = "hybrid"


class DuplicateHandling(str, Enum):
    """What event creation does with a row matching a stored event."""

    SKIP = "skip"
    UPDATE = "update"
    VERSION = "version"


class EnumMode(str, Enum):
    """How the enum threshold is interpreted."""

    COUNT = "count"
    PERCENTAGE = "percentage"


# ============================================================================
# CONFIGURATION BLOCKS
# ============================================================================


class IdStrategy(BaseModel):
    """Unique key configuration."""

    type: IdStrategyType = IdStrategyType.AUTO
    external_id_path: str | None = None
    computed_id_fields: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_parameters(self):
        if self.type in (IdStrategyType.EXTERNAL, IdStrategyType.HYBRID) and not self.external_id_path:
            raise ValueError(f"id strategy '{self.type.value}' requires external_id_path")
        if self.type in (IdStrategyType.COMPUTED, IdStrategyType.HYBRID) and not self.computed_id_fields:
            raise ValueError(f"id strategy '{self.type.value}' requires computed_id_fields")
        return self


class DeduplicationConfig(BaseModel):
    enabled: bool = True
    strategy: DuplicateHandling = DuplicateHandling.SKIP


class SchemaConfig(BaseModel):
    """Schema inference and approval flags."""

    enabled: bool = True
    locked: bool = False
    auto_grow: bool = True
    auto_approve_non_breaking: bool = False
    strict_validation: bool = False
    max_schema_depth: int = Field(default=3, ge=1, le=10)
    enum_threshold: int = Field(default=50, ge=1)
    enum_mode: EnumMode = EnumMode.COUNT


class GeoFieldMapping(BaseModel):
    """Dotted paths overriding automatic geo field detection."""

    address_path: str | None = None
    latitude_path: str | None = None
    longitude_path: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.address_path or (self.latitude_path and self.longitude_path))


class Dataset(BaseModel):
    """Target dataset of an import."""

    id: str
    name: str = ""
    id_strategy: IdStrategy = Field(default_factory=IdStrategy)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    schema_config: SchemaConfig = Field(default_factory=SchemaConfig)
    geo_field_mapping: GeoFieldMapping = Field(default_factory=GeoFieldMapping)


# ============================================================================
# PERSISTED RECORDS
# ============================================================================


class ImportSourceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportSource(BaseModel):
    """An uploaded file or fetched URL; one import job is created per sheet."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    dataset: str
    location: str = Field(description="File path or URL of the source data")
    file_type: str = "csv"
    sheets: list[int] = Field(default_factory=lambda: [0])
    status: ImportSourceStatus = ImportSourceStatus.PENDING
    completed_at: datetime | None = None


class DatasetSchemaVersion(BaseModel):
    """
    Immutable schema snapshot for a dataset.

    Created once per accepted schema change and superseded by later versions.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    dataset: str
    version_number: int = Field(ge=1)
    json_schema: dict[str, Any]
    field_metadata: dict[str, Any] = Field(default_factory=dict)
    schema_summary: dict[str, Any] = Field(default_factory=dict)
    import_sources: list[str] = Field(default_factory=list)
    approval_required: bool = False
    approved_by: str | None = None
    auto_approved: bool = False
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
    created_by_job: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
