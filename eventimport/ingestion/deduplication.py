"""
Module for unique keys and duplicate analysis.

Unique key generators follow the Strategy pattern, one per dataset id
strategy:
- ExternalIdGenerator: value at a configured path of the row
- ComputedHashGenerator: SHA-256 over an ordered list of field paths
- ContentHashGenerator: SHA-256 over the whole normalized row
- HybridIdGenerator: external id, falling back to the computed hash

The DuplicateAnalyzer classifies each row of a batch as unique, internal
duplicate (key already seen earlier in the same import) or external duplicate
(key already stored for the dataset). Its state is cumulative across batches.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from eventimport.errors import UniqueKeyError
from eventimport.schemas.dataset import Dataset, IdStrategyType
from eventimport.schemas.import_job import DuplicateAnalysis, DuplicateRecord
from eventimport.schemas.values import (
    NumberValue,
    ObjectValue,
    StringValue,
    canonical_json,
    from_python,
    get_path,
    is_missing,
    to_python,
)
from eventimport.storage.base import DocumentStore

logger = logging.getLogger(__name__)

EXTERNAL_ID_PATTERN = re.compile(r"^[\w\-.:]+$")
_INVALID_ID_CHARS = re.compile(r"[^\w\-.:]+")
MAX_EXTERNAL_ID_LENGTH = 255
COMPUTED_HASH_LENGTH = 16


class RowClassification(str, Enum):
    """Duplicate status of a row."""

    UNIQUE = "unique"
    INTERNAL_DUPLICATE = "internal-duplicate"
    EXTERNAL_DUPLICATE = "external-duplicate"
    INVALID = "invalid"


@dataclass(frozen=True)
class UniqueKey:
    value: str
    source: str


# ============================================================================
# KEY GENERATORS
# ============================================================================


class UniqueKeyGenerator(ABC):
    """Abstract base for unique key strategies."""

    def __init__(self, dataset_id: str):
        self.dataset_id = dataset_id

    @abstractmethod
    def generate(self, row: ObjectValue) -> UniqueKey:
        """Return the row's unique key or raise UniqueKeyError."""
        pass


class ExternalIdGenerator(UniqueKeyGenerator):
    """Use an identifier supplied by the source data."""

    def __init__(self, dataset_id: str, path: str):
        super().__init__(dataset_id)
        self.path = path

    @staticmethod
    def _scalar_text(value: Any) -> str:
        if isinstance(value, NumberValue):
            # spreadsheets turn integer ids into floats
            return str(int(value.value)) if value.is_integer else str(value.value)
        if isinstance(value, StringValue):
            return value.value
        return json.dumps(to_python(value), sort_keys=True)

    def generate(self, row: ObjectValue) -> UniqueKey:
        value = get_path(row, self.path)
        if is_missing(value):
            raise UniqueKeyError(f"Missing external id at '{self.path}'")

        sanitized = _INVALID_ID_CHARS.sub("_", self._scalar_text(value).strip()).strip("_")
        if not sanitized or len(sanitized) > MAX_EXTERNAL_ID_LENGTH or not EXTERNAL_ID_PATTERN.match(sanitized):
            raise UniqueKeyError(f"Invalid external id at '{self.path}'")
        return UniqueKey(f"{self.dataset_id}:ext:{sanitized}", "external")


class ComputedHashGenerator(UniqueKeyGenerator):
    """Hash the configured fields, in the configured order."""

    def __init__(self, dataset_id: str, fields: list[str]):
        super().__init__(dataset_id)
        if not fields:
            raise ValueError("ComputedHashGenerator requires at least one field")
        self.fields = list(fields)

    def generate(self, row: ObjectValue) -> UniqueKey:
        parts = []
        for path in self.fields:
            value = get_path(row, path)
            if is_missing(value):
                raise UniqueKeyError(f"Missing field '{path}' required for computed id")
            parts.append(f"{path}:{canonical_json(value)}")

        digest = hashlib.sha256(f"{self.dataset_id}:{'|'.join(parts)}".encode("utf-8")).hexdigest()
        return UniqueKey(f"{self.dataset_id}:comp:{digest[:COMPUTED_HASH_LENGTH]}", "computed")


class ContentHashGenerator(UniqueKeyGenerator):
    """Hash the whole row with keys sorted."""

    def generate(self, row: ObjectValue) -> UniqueKey:
        digest = hashlib.sha256(canonical_json(row).encode("utf-8")).hexdigest()
        return UniqueKey(f"{self.dataset_id}:auto:{digest}", "auto")


class HybridIdGenerator(UniqueKeyGenerator):
    """Prefer the external id; rows without one fall back to the computed hash."""

    def __init__(self, dataset_id: str, external: ExternalIdGenerator, computed: ComputedHashGenerator):
        super().__init__(dataset_id)
        self.external = external
        self.computed = computed

    def generate(self, row: ObjectValue) -> UniqueKey:
        if not is_missing(get_path(row, self.external.path)):
            return self.external.generate(row)
        return self.computed.generate(row)


def get_key_generator(dataset: Dataset) -> UniqueKeyGenerator:
    """Return the unique key generator configured for a dataset."""
    strategy = dataset.id_strategy
    if strategy.type == IdStrategyType.EXTERNAL:
        return ExternalIdGenerator(dataset.id, strategy.external_id_path)
    if strategy.type == IdStrategyType.COMPUTED:
        return ComputedHashGenerator(dataset.id, strategy.computed_id_fields)
    if strategy.type == IdStrategyType.HYBRID:
        return HybridIdGenerator(
            dataset.id,
            ExternalIdGenerator(dataset.id, strategy.external_id_path),
            ComputedHashGenerator(dataset.id, strategy.computed_id_fields),
        )
    return ContentHashGenerator(dataset.id)


# ============================================================================
# DUPLICATE ANALYSIS
# ============================================================================


@dataclass
class RowAnalysis:
    """Per-row outcome of duplicate analysis."""

    row_number: int
    classification: RowClassification
    unique_key: str | None = None
    first_occurrence: int | None = None
    existing_event_id: str | None = None
    error: str | None = None


class DuplicateAnalyzer:
    """
    Classify rows of an import against earlier rows and stored events.

    Args:
        dataset: Target dataset (id strategy and deduplication flags)
        store: Document store holding previously created events
    """

    EVENTS_KIND = "events"
    LOOKUP_CHUNK_SIZE = 1000

    def __init__(self, dataset: Dataset, store: DocumentStore):
        self.dataset = dataset
        self.store = store
        self.generator = get_key_generator(dataset)

    @property
    def enabled(self) -> bool:
        return self.dataset.deduplication.enabled

    @property
    def strategy_name(self) -> str:
        return self.dataset.id_strategy.type.value if self.enabled else "disabled"

    def unique_key(self, row: dict[str, Any]) -> str:
        """Unique key of a raw row; raises UniqueKeyError when it cannot be derived."""
        return self.generator.generate(from_python(row)).value

    def find_existing(self, keys: list[str]) -> dict[str, str]:
        """Map unique keys already stored for the dataset to their event id."""
        existing: dict[str, str] = {}
        for start in range(0, len(keys), self.LOOKUP_CHUNK_SIZE):
            chunk = keys[start : start + self.LOOKUP_CHUNK_SIZE]
            docs = self.store.find(
                self.EVENTS_KIND,
                {"dataset": self.dataset.id, "unique_key": {"in": chunk}, "is_latest": True},
            )
            for doc in docs:
                existing.setdefault(doc["unique_key"], doc["id"])
        return existing

    def analyze_batch(
        self,
        rows: list[dict[str, Any]],
        start_row: int,
        state: DuplicateAnalysis | None = None,
    ) -> tuple[DuplicateAnalysis, list[RowAnalysis]]:
        """
        Analyze one batch and fold it into the cumulative state.

        Args:
            rows: Raw rows of the batch
            start_row: Sheet row number of the first row in the batch
            state: Cumulative state from earlier batches (None for the first)

        Returns:
            Updated state and the per-row analysis of this batch
        """
        state = state.model_copy(deep=True) if state is not None else DuplicateAnalysis()
        state.strategy = self.strategy_name
        analyses: list[RowAnalysis] = []

        if not self.enabled:
            for offset, row in enumerate(rows):
                try:
                    key = self.unique_key(row)
                except UniqueKeyError:
                    key = None
                analyses.append(RowAnalysis(start_row + offset, RowClassification.UNIQUE, key))
            state.summary.total_rows += len(rows)
            state.summary.unique_rows += len(rows)
            return state, analyses

        # Pass 1: keys and internal duplicates
        candidates: list[RowAnalysis] = []
        for offset, row in enumerate(rows):
            row_number = start_row + offset
            try:
                key = self.unique_key(row)
            except UniqueKeyError as e:
                analyses.append(RowAnalysis(row_number, RowClassification.INVALID, error=str(e)))
                continue

            if key in state.seen_keys:
                analysis = RowAnalysis(
                    row_number,
                    RowClassification.INTERNAL_DUPLICATE,
                    key,
                    first_occurrence=state.seen_keys[key],
                )
                state.internal.append(
                    DuplicateRecord(row_number=row_number, unique_key=key, first_occurrence=state.seen_keys[key])
                )
                analyses.append(analysis)
                continue

            state.seen_keys[key] = row_number
            analysis = RowAnalysis(row_number, RowClassification.UNIQUE, key)
            candidates.append(analysis)
            analyses.append(analysis)

        # Pass 2: keys already stored for the dataset
        existing = self.find_existing([a.unique_key for a in candidates])
        for analysis in candidates:
            event_id = existing.get(analysis.unique_key)
            if event_id is None:
                continue
            analysis.classification = RowClassification.EXTERNAL_DUPLICATE
            analysis.existing_event_id = event_id
            state.external.append(
                DuplicateRecord(row_number=analysis.row_number, unique_key=analysis.unique_key, existing_event_id=event_id)
            )

        counts = {c: 0 for c in RowClassification}
        for analysis in analyses:
            counts[analysis.classification] += 1

        summary = state.summary
        summary.total_rows += len(rows)
        summary.unique_rows += counts[RowClassification.UNIQUE]
        summary.internal_duplicates += counts[RowClassification.INTERNAL_DUPLICATE]
        summary.external_duplicates += counts[RowClassification.EXTERNAL_DUPLICATE]
        summary.invalid_rows += counts[RowClassification.INVALID]

        logger.debug(
            f"Analyzed rows {start_row}-{start_row + len(rows) - 1}: "
            f"{counts[RowClassification.INTERNAL_DUPLICATE]} internal, "
            f"{counts[RowClassification.EXTERNAL_DUPLICATE]} external duplicate(s)"
        )
        return state, sorted(analyses, key=lambda a: a.row_number)
