"""
SQLAlchemy document store.

All kinds share one ``documents`` table holding the document body in a JSON
column. The id and string equality conditions of a filter are pushed into the
WHERE clause; the full filter is then evaluated in Python over the selected
rows, which keeps the filter language identical to the in-memory store.
Filtered updates run inside a single transaction and lock only the selected
rows where the backend supports ``SELECT ... FOR UPDATE``, which makes them
usable as compare-and-set writes that never block other jobs.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

from eventimport.storage.base import OPERATORS, Filter, matches_filter, sort_documents

logger = logging.getLogger(__name__)

metadata = MetaData()

documents = Table(
    "documents",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), nullable=False, unique=True),
    Column("kind", String(64), nullable=False, index=True),
    Column("data", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _string_operand(value: Any) -> str | None:
    if isinstance(value, Enum):
        value = value.value
    return value if isinstance(value, str) else None


def _sql_conditions(filter: Filter) -> list[Any]:
    """
    Translate the string-valued ``equals``/``in`` conditions of a filter to SQL.

    The result narrows the selected (and locked) rows; the Python matcher
    still runs over them, so conditions left out here stay exact.
    """
    clauses = []
    for path, condition in filter.items():
        if isinstance(condition, dict) and condition and set(condition) <= OPERATORS:
            operators = condition
        else:
            operators = {"equals": condition}

        column = documents.c.id if path == "id" else documents.c.data[tuple(path.split("."))].as_string()
        for op, operand in operators.items():
            if op == "equals" and _string_operand(operand) is not None:
                clauses.append(column == _string_operand(operand))
            elif op == "in" and operand and all(_string_operand(o) is not None for o in operand):
                clauses.append(column.in_([_string_operand(o) for o in operand]))
    return clauses


class SqlDocumentStore:
    """Document store backed by any SQLAlchemy-supported database."""

    def __init__(self, url_or_engine: str | Engine, create_tables: bool = True) -> None:
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            self.engine = create_engine(url_or_engine, future=True)
        if create_tables:
            metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _rows(self, conn: Connection, kind: str, id_or_filter: str | Filter | None, lock: bool = False) -> list[tuple[str, dict[str, Any]]]:
        stmt = select(documents.c.id, documents.c.data).where(documents.c.kind == kind).order_by(documents.c.seq)
        if isinstance(id_or_filter, str):
            stmt = stmt.where(documents.c.id == id_or_filter)
        else:
            conditions = _sql_conditions(id_or_filter or {})
            if conditions:
                stmt = stmt.where(*conditions)
        if lock:
            stmt = stmt.with_for_update()
        rows = conn.execute(stmt).all()
        if isinstance(id_or_filter, str):
            return [(row.id, row.data) for row in rows]
        return [(row.id, row.data) for row in rows if matches_filter(row.data, id_or_filter)]

    # ------------------------------------------------------------------
    # DocumentStore
    # ------------------------------------------------------------------

    def find(self, kind: str, filter: Filter | None = None, sort: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            docs = [data for _, data in self._rows(conn, kind, filter or {})]
        docs = sort_documents(docs, sort)
        return docs[:limit] if limit is not None else docs

    def find_by_id(self, kind: str, id: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            rows = self._rows(conn, kind, id)
        return rows[0][1] if rows else None

    def create(self, kind: str, data: dict[str, Any]) -> dict[str, Any]:
        doc = dict(data)
        doc.setdefault("id", uuid.uuid4().hex)
        now = _utc_now()
        with self.engine.begin() as conn:
            conn.execute(
                insert(documents).values(id=doc["id"], kind=kind, data=doc, created_at=now, updated_at=now)
            )
        return doc

    def update(self, kind: str, id_or_filter: str | Filter, data: dict[str, Any]) -> int:
        now = _utc_now()
        with self.engine.begin() as conn:
            matched = self._rows(conn, kind, id_or_filter, lock=True)
            for doc_id, body in matched:
                merged = {**body, **data}
                conn.execute(
                    update(documents)
                    .where(documents.c.id == doc_id)
                    .values(data=merged, updated_at=now)
                )
        return len(matched)

    def delete(self, kind: str, id_or_filter: str | Filter) -> int:
        with self.engine.begin() as conn:
            matched = self._rows(conn, kind, id_or_filter, lock=True)
            ids = [doc_id for doc_id, _ in matched]
            if ids:
                conn.execute(delete(documents).where(documents.c.id.in_(ids)))
        if ids:
            logger.debug(f"Deleted {len(ids)} document(s) from '{kind}'")
        return len(ids)

    def dispose(self) -> None:
        self.engine.dispose()
