"""
Event materialization.

Turns validated rows into stored events. Rows matching an event stored by an
earlier import are handled per the dataset's duplicate strategy:

- skip: leave the stored event untouched
- update: overwrite the stored event's data in place
- version: mark the stored event superseded and store a new latest version

Each row is written on its own; a failing row is recorded and the rest of
the batch continues.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from eventimport.schemas.dataset import Dataset, DuplicateHandling
from eventimport.schemas.geocoding import GeocodingResult, is_valid_coordinate
from eventimport.schemas.import_job import GeocodingCandidate, ImportJob, RowError
from eventimport.schemas.values import NumberValue, StringValue, from_python, get_path, to_python
from eventimport.storage.base import DocumentStore

logger = logging.getLogger(__name__)

EVENTS_KIND = "events"
LOOKUP_CHUNK_SIZE = 1000


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# LOCATION HELPERS
# ============================================================================


def row_address(row: dict[str, Any], candidate: GeocodingCandidate | None) -> str | None:
    """Address text of a row, or None when the row has none."""
    if candidate is None or not candidate.address_path:
        return None
    value = get_path(from_python(row), candidate.address_path)
    if isinstance(value, StringValue):
        return value.value.strip() or None
    if isinstance(value, NumberValue):
        return str(value.value)
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, NumberValue):
        return float(value.value)
    if isinstance(value, StringValue):
        try:
            return float(value.value.strip())
        except ValueError:
            return None
    return None


def provided_coordinates(row: dict[str, Any], candidate: GeocodingCandidate | None) -> tuple[float, float] | None:
    """Coordinates carried by the row itself, when present and valid."""
    if candidate is None or not (candidate.latitude_path and candidate.longitude_path):
        return None
    record = from_python(row)
    lat = _as_float(get_path(record, candidate.latitude_path))
    lng = _as_float(get_path(record, candidate.longitude_path))
    if lat is None or lng is None or not is_valid_coordinate(lat, lng):
        return None
    return lat, lng


# ============================================================================
# WRITER
# ============================================================================


@dataclass
class WriteSummary:
    created: int = 0
    updated: int = 0
    versioned: int = 0
    skipped: int = 0
    geocoded: int = 0
    geocoding_failed: int = 0
    errors: list[RowError] = field(default_factory=list)


class EventWriter:
    """
    Persist the events of one import job.

    Args:
        store: Document store holding events
        dataset: Target dataset (duplicate strategy)
        job: Import job providing geocoding results and the geocoding candidate
        clock: Returns the current UTC time
    """

    def __init__(self, store: DocumentStore, dataset: Dataset, job: ImportJob, clock: Callable[[], datetime] = _utc_now):
        self.store = store
        self.dataset = dataset
        self.job = job
        self.clock = clock

    @property
    def strategy(self) -> DuplicateHandling:
        return self.dataset.deduplication.strategy

    def _existing(self, keys: list[str]) -> dict[str, dict[str, Any]]:
        existing: dict[str, dict[str, Any]] = {}
        unique = sorted(set(keys))
        for start in range(0, len(unique), LOOKUP_CHUNK_SIZE):
            docs = self.store.find(
                EVENTS_KIND,
                {"dataset": self.dataset.id, "unique_key": {"in": unique[start : start + LOOKUP_CHUNK_SIZE]}, "is_latest": True},
            )
            for doc in docs:
                existing[doc["unique_key"]] = doc
        return existing

    def location_for(self, row: dict[str, Any], summary: WriteSummary) -> dict[str, Any] | None:
        candidate = self.job.geocoding_candidate
        coords = provided_coordinates(row, candidate)
        if coords is not None:
            return {"latitude": coords[0], "longitude": coords[1], "confidence": 1.0, "source": "provided"}

        address = row_address(row, candidate)
        if address is None:
            return None
        result: GeocodingResult | None = self.job.geocoding_results.get(address)
        if result is None:
            summary.geocoding_failed += 1
            return None
        summary.geocoded += 1
        return {
            "latitude": result.latitude,
            "longitude": result.longitude,
            "confidence": result.confidence,
            "source": "geocoded",
            "provider": result.provider,
            "formatted_address": result.formatted_address,
            "address": address,
        }

    def write_batch(self, rows: list[tuple[int, dict[str, Any], str | None]]) -> WriteSummary:
        """
        Write ``(row_number, row, unique_key)`` triples.

        Rows with ``unique_key=None`` are always created as new events.
        """
        summary = WriteSummary()
        existing = self._existing([key for _, _, key in rows if key])

        for row_number, row, key in rows:
            try:
                action = self._write_row(row, key, existing.get(key) if key else None, summary)
            except Exception as e:
                logger.error(f"Failed to persist row {row_number} of job {self.job.id}: {e}")
                summary.errors.append(RowError(row=row_number, error=f"Failed to persist event: {e}"))
                continue
            if action == "created":
                summary.created += 1
            elif action == "updated":
                summary.updated += 1
            elif action == "versioned":
                summary.versioned += 1
            else:
                summary.skipped += 1
        return summary

    def _write_row(self, row: dict[str, Any], key: str | None, stored: dict[str, Any] | None, summary: WriteSummary) -> str:
        if stored is not None and stored.get("import_job") == self.job.id:
            # written by an earlier delivery of this same task
            self.location_for(row, summary)
            return stored.get("import_action", "created")
        if stored is not None and self.strategy == DuplicateHandling.SKIP:
            return "skipped"

        now = self.clock().isoformat()
        data = to_python(from_python(row))
        location = self.location_for(row, summary)

        if stored is None:
            self.store.create(EVENTS_KIND, self._new_event(key, data, location, now))
            return "created"

        if self.strategy == DuplicateHandling.UPDATE:
            self.store.update(
                EVENTS_KIND,
                stored["id"],
                {
                    "data": data,
                    "location": location or stored.get("location"),
                    "import_job": self.job.id,
                    "import_source": self.job.import_source,
                    "import_action": "updated",
                    "updated_at": now,
                },
            )
            return "updated"

        superseded = self.store.update(EVENTS_KIND, {"id": stored["id"], "is_latest": True}, {"is_latest": False, "updated_at": now})
        if not superseded:
            raise RuntimeError(f"event {stored['id']} was superseded concurrently")
        event = self._new_event(key, data, location or stored.get("location"), now)
        event.update(version=stored.get("version", 1) + 1, previous_version=stored["id"], import_action="versioned")
        self.store.create(EVENTS_KIND, event)
        return "versioned"

    def _new_event(self, key: str | None, data: Any, location: dict[str, Any] | None, now: str) -> dict[str, Any]:
        return {
            "id": uuid.uuid4().hex,
            "dataset": self.dataset.id,
            "import_job": self.job.id,
            "import_source": self.job.import_source,
            "import_action": "created",
            "unique_key": key,
            "data": data,
            "location": location,
            "version": 1,
            "is_latest": True,
            "previous_version": None,
            "created_at": now,
            "updated_at": now,
        }
