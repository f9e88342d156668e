"""
Storage collaborators of the pipeline.

The pipeline treats persistence as a document store (``find``, ``find_by_id``,
``create``, ``update``, ``delete``) and scheduling as a task queue with
at-least-once delivery. Both are expressed as protocols; this module also
ships the filter evaluator shared by every store, an in-memory store and a
task queue that keeps its tasks in any document store.

Filters are dictionaries mapping a dotted field path to either a plain value
(equality) or an operator dictionary::

    {"stage": "completed", "unique_key": {"in": [...]}, "last_used": {"less_than": cutoff}}
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable

Filter = dict[str, Any]

OPERATORS = frozenset({"equals", "not_equals", "in", "not_in", "less_than", "less_than_equal", "greater_than", "greater_than_equal", "exists"})

_MISSING = object()


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# PROTOCOLS
# ============================================================================


@runtime_checkable
class DocumentStore(Protocol):
    """Minimal document persistence used by the pipeline."""

    def find(self, kind: str, filter: Filter | None = None, sort: str | None = None, limit: int | None = None) -> list[dict[str, Any]]: ...

    def find_by_id(self, kind: str, id: str) -> dict[str, Any] | None: ...

    def create(self, kind: str, data: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, kind: str, id_or_filter: str | Filter, data: dict[str, Any]) -> int:
        """
        Merge ``data`` into every matching document.

        Returns the number of documents updated. With a filter this is a
        compare-and-set: zero means the expected state no longer holds.
        """
        ...

    def delete(self, kind: str, id_or_filter: str | Filter) -> int: ...


@runtime_checkable
class TaskQueue(Protocol):
    """Work queue with at-least-once delivery."""

    def enqueue(self, name: str, input: dict[str, Any]) -> "Task": ...

    def claim(self) -> "Task | None": ...

    def complete(self, task: "Task", error: str | None = None) -> None: ...


# ============================================================================
# FILTER EVALUATION
# ============================================================================


def get_field(doc: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path in a document, returning a sentinel when absent."""
    current: Any = doc
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Make stored ISO strings comparable with datetime operands."""
    if isinstance(right, datetime) and isinstance(left, str):
        try:
            parsed = datetime.fromisoformat(left)
        except ValueError:
            return left, right
        if parsed.tzinfo is None and right.tzinfo is not None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed, right
    if isinstance(right, date) and not isinstance(right, datetime) and isinstance(left, str):
        try:
            return date.fromisoformat(left[:10]), right
        except ValueError:
            return left, right
    return left, right


def _compare(value: Any, operator: str, operand: Any) -> bool:
    operand = _normalize(operand)
    if operator == "exists":
        return (value is not _MISSING and value is not None) == bool(operand)
    if value is _MISSING:
        value = None
    if operator == "equals":
        return _coerce_pair(value, operand)[0] == operand
    if operator == "not_equals":
        return _coerce_pair(value, operand)[0] != operand
    if operator == "in":
        return value in [_normalize(o) for o in operand]
    if operator == "not_in":
        return value not in [_normalize(o) for o in operand]
    if value is None:
        return False
    left, right = _coerce_pair(value, operand)
    try:
        if operator == "less_than":
            return left < right
        if operator == "less_than_equal":
            return left <= right
        if operator == "greater_than":
            return left > right
        if operator == "greater_than_equal":
            return left >= right
    except TypeError:
        return False
    raise ValueError(f"Unknown filter operator: {operator}")


def matches_filter(doc: dict[str, Any], filter: Filter | None) -> bool:
    """Return True when ``doc`` satisfies every condition of ``filter``."""
    if not filter:
        return True
    for path, condition in filter.items():
        value = get_field(doc, path)
        if isinstance(condition, dict) and condition and set(condition) <= OPERATORS:
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif not _compare(value, "equals", condition):
            return False
    return True


def sort_documents(docs: list[dict[str, Any]], sort: str | None) -> list[dict[str, Any]]:
    """Sort by a single field; a leading ``-`` sorts descending, missing values last."""
    if not sort:
        return docs
    descending = sort.startswith("-")
    path = sort.lstrip("-")

    present = [d for d in docs if get_field(d, path) not in (_MISSING, None)]
    missing = [d for d in docs if get_field(d, path) in (_MISSING, None)]
    present.sort(key=lambda d: get_field(d, path), reverse=descending)
    return present + missing


# ============================================================================
# IN-MEMORY STORE
# ============================================================================


class InMemoryDocumentStore:
    """
    Thread-safe document store kept in process memory.

    Every read returns deep copies so callers can never mutate stored state
    outside ``update``.
    """

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, kind: str) -> dict[str, dict[str, Any]]:
        return self._docs.setdefault(kind, {})

    def _select(self, kind: str, id_or_filter: str | Filter) -> list[dict[str, Any]]:
        collection = self._collection(kind)
        if isinstance(id_or_filter, str):
            doc = collection.get(id_or_filter)
            return [doc] if doc is not None else []
        return [doc for doc in collection.values() if matches_filter(doc, id_or_filter)]

    def find(self, kind: str, filter: Filter | None = None, sort: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._select(kind, filter or {})]
        docs = sort_documents(docs, sort)
        return docs[:limit] if limit is not None else docs

    def find_by_id(self, kind: str, id: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._collection(kind).get(id)
            return copy.deepcopy(doc) if doc is not None else None

    def create(self, kind: str, data: dict[str, Any]) -> dict[str, Any]:
        doc = copy.deepcopy(data)
        doc.setdefault("id", uuid.uuid4().hex)
        with self._lock:
            collection = self._collection(kind)
            if doc["id"] in collection:
                raise ValueError(f"Document '{doc['id']}' already exists in '{kind}'")
            collection[doc["id"]] = doc
        return copy.deepcopy(doc)

    def update(self, kind: str, id_or_filter: str | Filter, data: dict[str, Any]) -> int:
        with self._lock:
            matched = self._select(kind, id_or_filter)
            for doc in matched:
                doc.update(copy.deepcopy(data))
            return len(matched)

    def delete(self, kind: str, id_or_filter: str | Filter) -> int:
        with self._lock:
            collection = self._collection(kind)
            matched = self._select(kind, id_or_filter)
            for doc in matched:
                del collection[doc["id"]]
            return len(matched)


# ============================================================================
# TASK QUEUE
# ============================================================================


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Task:
    """One unit of queued work."""

    name: str
    input: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    enqueued_at: datetime = field(default_factory=_utc_now)
    claimed_at: datetime | None = None
    error: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "status": self.status.value,
            "attempts": self.attempts,
            "enqueued_at": self.enqueued_at.isoformat(),
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "error": self.error,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Task":
        claimed = doc.get("claimed_at")
        return cls(
            id=doc["id"],
            name=doc["name"],
            input=doc.get("input") or {},
            status=TaskStatus(doc.get("status", "pending")),
            attempts=doc.get("attempts", 0),
            enqueued_at=datetime.fromisoformat(doc["enqueued_at"]),
            claimed_at=datetime.fromisoformat(claimed) if claimed else None,
            error=doc.get("error"),
        )


class DocumentTaskQueue:
    """
    Task queue persisted in a document store.

    ``claim`` flips a task from pending to running with a compare-and-set
    update, so two workers never claim the same delivery. Tasks whose worker
    died stay running until ``release_stale`` hands them out again, which is
    what makes delivery at-least-once.
    """

    KIND = "tasks"

    def __init__(self, store: DocumentStore, clock=_utc_now) -> None:
        self.store = store
        self.clock = clock

    def enqueue(self, name: str, input: dict[str, Any]) -> Task:
        task = Task(name=name, input=dict(input), enqueued_at=self.clock())
        self.store.create(self.KIND, task.to_document())
        return task

    def claim(self) -> Task | None:
        for doc in self.store.find(self.KIND, {"status": TaskStatus.PENDING.value}, sort="enqueued_at"):
            claimed_at = self.clock()
            updated = self.store.update(
                self.KIND,
                {"id": doc["id"], "status": TaskStatus.PENDING.value},
                {
                    "status": TaskStatus.RUNNING.value,
                    "attempts": doc.get("attempts", 0) + 1,
                    "claimed_at": claimed_at.isoformat(),
                },
            )
            if updated:
                task = Task.from_document(doc)
                task.status = TaskStatus.RUNNING
                task.attempts += 1
                task.claimed_at = claimed_at
                return task
        return None

    def complete(self, task: Task, error: str | None = None) -> None:
        status = TaskStatus.FAILED if error else TaskStatus.DONE
        self.store.update(self.KIND, task.id, {"status": status.value, "error": error})
        task.status = status
        task.error = error

    def release_stale(self, older_than: timedelta) -> int:
        """Return running tasks claimed before ``now - older_than`` to the pending pool."""
        cutoff = self.clock() - older_than
        return self.store.update(
            self.KIND,
            {"status": TaskStatus.RUNNING.value, "claimed_at": {"less_than": cutoff}},
            {"status": TaskStatus.PENDING.value, "claimed_at": None},
        )

    def pending(self, name: str | None = None) -> list[Task]:
        filter: Filter = {"status": TaskStatus.PENDING.value}
        if name:
            filter["name"] = name
        return [Task.from_document(d) for d in self.store.find(self.KIND, filter, sort="enqueued_at")]
