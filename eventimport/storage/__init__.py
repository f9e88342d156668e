from eventimport.storage.base import (
    DocumentStore,
    DocumentTaskQueue,
    InMemoryDocumentStore,
    Task,
    TaskQueue,
    TaskStatus,
    matches_filter,
)
from eventimport.storage.rows import FileRowReader, InMemoryRowReader, RowReader
from eventimport.storage.sql import SqlDocumentStore

__all__ = [
    "DocumentStore",
    "DocumentTaskQueue",
    "FileRowReader",
    "InMemoryDocumentStore",
    "InMemoryRowReader",
    "RowReader",
    "SqlDocumentStore",
    "Task",
    "TaskQueue",
    "TaskStatus",
    "matches_filter",
]
