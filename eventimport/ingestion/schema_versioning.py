"""
Dataset schema versions.

Versions are immutable snapshots: a new one is created when a schema change
is accepted and the previous one is left in place, superseded.
"""

from __future__ import annotations

import logging
from typing import Any

from eventimport.schemas.dataset import DatasetSchemaVersion
from eventimport.storage.base import DocumentStore

logger = logging.getLogger(__name__)

SCHEMA_VERSIONS_KIND = "dataset-schemas"


def get_latest_version(store: DocumentStore, dataset_id: str) -> DatasetSchemaVersion | None:
    """Return the highest-numbered schema version of a dataset."""
    docs = store.find(SCHEMA_VERSIONS_KIND, {"dataset": dataset_id}, sort="-version_number", limit=1)
    return DatasetSchemaVersion.model_validate(docs[0]) if docs else None


def get_version(store: DocumentStore, version_id: str) -> DatasetSchemaVersion | None:
    doc = store.find_by_id(SCHEMA_VERSIONS_KIND, version_id)
    return DatasetSchemaVersion.model_validate(doc) if doc else None


def create_schema_version(
    store: DocumentStore,
    *,
    dataset_id: str,
    json_schema: dict[str, Any],
    job_id: str,
    import_source: str | None = None,
    field_metadata: dict[str, Any] | None = None,
    schema_summary: dict[str, Any] | None = None,
    approval_required: bool = False,
    approved_by: str | None = None,
    auto_approved: bool = False,
    conflicts: list[dict[str, Any]] | None = None,
) -> DatasetSchemaVersion:
    """
    Create the next schema version for a dataset.

    Creation is idempotent per import job: when the job already produced a
    version (task redelivery) that version is returned unchanged.
    """
    existing = store.find(SCHEMA_VERSIONS_KIND, {"dataset": dataset_id, "created_by_job": job_id}, limit=1)
    if existing:
        logger.info(f"Schema version already created by job {job_id}, reusing it")
        return DatasetSchemaVersion.model_validate(existing[0])

    latest = get_latest_version(store, dataset_id)
    version = DatasetSchemaVersion(
        dataset=dataset_id,
        version_number=(latest.version_number + 1) if latest else 1,
        json_schema=json_schema,
        field_metadata=field_metadata or {},
        schema_summary=schema_summary or {},
        import_sources=[import_source] if import_source else [],
        approval_required=approval_required,
        approved_by=approved_by,
        auto_approved=auto_approved,
        conflicts=conflicts or [],
        created_by_job=job_id,
    )
    store.create(SCHEMA_VERSIONS_KIND, version.model_dump(mode="json"))
    logger.info(f"Created schema version {version.version_number} for dataset {dataset_id}")
    return version
