"""
Row readers.

Stages never hold a whole import in memory: they ask a reader for the rows of
one batch (``start_row``/``limit``) of one sheet. ``FileRowReader`` reads CSV
and Excel files with pandas; ``InMemoryRowReader`` serves rows registered by
tests and by callers that already parsed their data.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import pandas as pd

from eventimport.schemas.dataset import ImportSource

logger = logging.getLogger(__name__)


class RowReader(Protocol):
    def read_batch(self, source: ImportSource, sheet_index: int | None, start_row: int, limit: int) -> list[dict[str, Any]]: ...

    def count_rows(self, source: ImportSource, sheet_index: int | None) -> int: ...


class InMemoryRowReader:
    """Rows keyed by ``(import_source_id, sheet_index)``."""

    def __init__(self) -> None:
        self._rows: dict[tuple[str, int], list[dict[str, Any]]] = {}

    def add(self, source_id: str, rows: list[dict[str, Any]], sheet_index: int = 0) -> None:
        self._rows[(source_id, sheet_index)] = list(rows)

    def read_batch(self, source: ImportSource, sheet_index: int | None, start_row: int, limit: int) -> list[dict[str, Any]]:
        rows = self._rows.get((source.id, sheet_index or 0), [])
        return [dict(r) for r in rows[start_row : start_row + limit]]

    def count_rows(self, source: ImportSource, sheet_index: int | None) -> int:
        return len(self._rows.get((source.id, sheet_index or 0), []))


class FileRowReader:
    """
    Read CSV/XLSX sources with pandas.

    Only the requested window is parsed: the header row is kept and the
    preceding data rows are skipped. Empty cells come back as ``None``.
    """

    EXCEL_TYPES = {"xlsx", "xls"}

    def __init__(self, base_dir: Path | None = None) -> None:
        self.base_dir = base_dir

    def _resolve(self, source: ImportSource) -> str:
        location = source.location
        if "://" in location or self.base_dir is None:
            return location
        return str(self.base_dir / location)

    def _read(self, source: ImportSource, sheet_index: int | None, **kwargs) -> pd.DataFrame:
        path = self._resolve(source)
        if source.file_type.lower() in self.EXCEL_TYPES:
            return pd.read_excel(path, sheet_name=sheet_index or 0, engine="openpyxl", **kwargs)
        return pd.read_csv(path, **kwargs)

    @staticmethod
    def _records(df: pd.DataFrame) -> list[dict[str, Any]]:
        cleaned = df.astype(object).where(df.notna(), None)
        return [{str(k): v for k, v in record.items()} for record in cleaned.to_dict(orient="records")]

    def read_batch(self, source: ImportSource, sheet_index: int | None, start_row: int, limit: int) -> list[dict[str, Any]]:
        skip = range(1, start_row + 1) if start_row > 0 else None
        df = self._read(source, sheet_index, skiprows=skip, nrows=limit)
        logger.debug(f"Read {len(df)} row(s) from {source.location} starting at row {start_row}")
        return self._records(df)

    def count_rows(self, source: ImportSource, sheet_index: int | None) -> int:
        return len(self._read(source, sheet_index))
