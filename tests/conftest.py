"""
Shared pytest fixtures for the event import test suite.

Provides an in-memory store and task queue, a controllable clock, factories
for datasets and import sources, and a pipeline context wired from them.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from geopy.location import Location

from eventimport.configs.config import BatchSizes, PipelineConfig
from eventimport.errors import AllProvidersFailed
from eventimport.geocoding.service import BatchGeocodingResult
from eventimport.ingestion.retry import RetryPolicy
from eventimport.ingestion.stage_transition import IMPORT_SOURCES_KIND, StageTransitionEngine
from eventimport.ingestion.stages import DATASETS_KIND, PipelineContext
from eventimport.ingestion.worker import PipelineWorker
from eventimport.schemas.dataset import Dataset, ImportSource
from eventimport.schemas.geocoding import BatchSummary, GeocodingResult, GeocodingSettings
from eventimport.storage.base import DocumentTaskQueue, InMemoryDocumentStore
from eventimport.storage.rows import InMemoryRowReader


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# STORAGE
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def queue(store, clock):
    return DocumentTaskQueue(store, clock=clock)


@pytest.fixture
def rows():
    return InMemoryRowReader()


@pytest.fixture
def engine(store, queue, clock):
    """Engine with a deterministic retry policy (60s, 120s, 240s)."""
    return StageTransitionEngine(store, queue, RetryPolicy(max_attempts=3, base_delay_s=60, jitter=0), clock=clock)


# =============================================================================
# FACTORIES
# =============================================================================


@pytest.fixture
def create_dataset(store):
    """
    Return a function that stores a Dataset and returns it.

    Example:
        dataset = create_dataset(id_strategy={"type": "external", "external_id_path": "id"})
    """

    def _create_dataset(dataset_id: str = "concerts", **kwargs) -> Dataset:
        dataset = Dataset.model_validate({"id": dataset_id, "name": dataset_id.title(), **kwargs})
        store.create(DATASETS_KIND, dataset.model_dump(mode="json"))
        return dataset

    return _create_dataset


@pytest.fixture
def create_source(store, rows):
    """
    Return a function that stores an ImportSource and registers its rows.

    ``sheets`` maps sheet index to rows; ``data`` is shorthand for sheet 0.
    """

    def _create_source(
        dataset: str = "concerts",
        data: Optional[list[dict[str, Any]]] = None,
        sheets: Optional[dict[int, list[dict[str, Any]]]] = None,
        register: bool = True,
    ) -> ImportSource:
        sheets = sheets if sheets is not None else {0: data or []}
        source = ImportSource(dataset=dataset, location="upload.csv", sheets=sorted(sheets))
        if register:
            store.create(IMPORT_SOURCES_KIND, source.model_dump(mode="json"))
        for index, sheet_rows in sheets.items():
            rows.add(source.id, sheet_rows, sheet_index=index)
        return source

    return _create_source


@pytest.fixture
def make_location():
    """Return a function building geopy Location answers."""

    def _make_location(address: str = "Passeig de Gracia 92, Barcelona", lat: float = 41.3954, lng: float = 2.1619, raw: Optional[dict] = None) -> Location:
        return Location(address, (lat, lng, 0.0), raw or {})

    return _make_location


@pytest.fixture
def fake_geocoder():
    """
    Return a geocoding service double.

    ``resolved`` maps address to (lat, lng); every other address fails.
    """
    def _fake_geocoder(resolved: dict[str, tuple[float, float]]):
        async def batch_geocode(addresses, batch_size=None):
            outcome = BatchGeocodingResult(summary=BatchSummary(total=len(addresses)))
            for address in addresses:
                if address in resolved:
                    lat, lng = resolved[address]
                    outcome.results[address] = GeocodingResult(
                        latitude=lat, longitude=lng, confidence=0.9, provider="fake", normalized_address=address.lower()
                    )
                    outcome.summary.successful += 1
                else:
                    outcome.results[address] = AllProvidersFailed(address)
                    outcome.summary.failed += 1
            return outcome

        geocoder = MagicMock()
        geocoder.batch_geocode = MagicMock(side_effect=batch_geocode)
        return geocoder

    return _fake_geocoder


# =============================================================================
# PIPELINE
# =============================================================================


@pytest.fixture
def pipeline_config():
    """Small batches so multi-batch paths run on a handful of rows."""
    return PipelineConfig(
        batch_sizes=BatchSizes(duplicate_analysis=2, schema_detection=2, geocoding=2, event_creation=2),
        geocoding=GeocodingSettings(batch_delay_s=0),
    )


@pytest.fixture
def ctx(store, queue, rows, engine, pipeline_config, clock):
    return PipelineContext(store=store, queue=queue, rows=rows, engine=engine, config=pipeline_config, clock=clock)


@pytest.fixture
def worker(ctx):
    return PipelineWorker(ctx)
