"""
Unit tests for the in-memory document store and the shared filter evaluator.
"""

from datetime import datetime, timedelta, timezone

import pytest

from eventimport.storage.base import InMemoryDocumentStore, matches_filter, sort_documents

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def events_store(store):
    """Store pre-filled with three events."""
    store.create("events", {"id": "e1", "dataset": "concerts", "unique_key": "k1", "is_latest": True, "version": 1})
    store.create("events", {"id": "e2", "dataset": "concerts", "unique_key": "k2", "is_latest": False, "version": 2})
    store.create("events", {"id": "e3", "dataset": "talks", "unique_key": "k3", "is_latest": True, "version": 3})
    return store


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestMatchesFilter:
    """Tests for the filter operators."""

    def test_empty_filter_matches(self):
        """An empty filter should match every document."""
        assert matches_filter({"a": 1}, None)
        assert matches_filter({"a": 1}, {})

    def test_plain_equality(self):
        """A plain value should mean equality."""
        assert matches_filter({"stage": "completed"}, {"stage": "completed"})
        assert not matches_filter({"stage": "failed"}, {"stage": "completed"})

    def test_dotted_path(self):
        """Dotted paths should reach nested fields."""
        doc = {"schema_validation": {"approved": False}}
        assert matches_filter(doc, {"schema_validation.approved": False})
        assert not matches_filter(doc, {"schema_validation.approved": True})

    def test_in_and_not_in(self):
        """in / not_in should test membership."""
        assert matches_filter({"k": "b"}, {"k": {"in": ["a", "b"]}})
        assert matches_filter({"k": "c"}, {"k": {"not_in": ["a", "b"]}})

    def test_comparisons(self):
        """Ordering operators should compare numbers."""
        doc = {"hits": 3}
        assert matches_filter(doc, {"hits": {"less_than": 4}})
        assert matches_filter(doc, {"hits": {"less_than_equal": 3}})
        assert matches_filter(doc, {"hits": {"greater_than": 2, "less_than": 5}})
        assert not matches_filter(doc, {"hits": {"greater_than_equal": 4}})

    def test_iso_strings_compare_with_datetimes(self):
        """Stored ISO strings should compare with datetime operands."""
        now = datetime(2024, 6, 15, tzinfo=timezone.utc)
        doc = {"last_used": (now - timedelta(days=40)).isoformat()}
        assert matches_filter(doc, {"last_used": {"less_than": now - timedelta(days=30)}})
        assert not matches_filter(doc, {"last_used": {"greater_than": now - timedelta(days=30)}})

    def test_missing_field(self):
        """Missing fields should only match exists=False and equality with None."""
        assert matches_filter({}, {"x": {"exists": False}})
        assert not matches_filter({}, {"x": {"exists": True}})
        assert not matches_filter({}, {"x": {"less_than": 3}})
        assert matches_filter({}, {"x": None})

    def test_unknown_operator(self):
        """Dict values with unknown keys should be compared as plain values."""
        assert matches_filter({"meta": {"a": 1}}, {"meta": {"a": 1}})


class TestSortDocuments:
    """Tests for sort_documents."""

    def test_descending_with_missing_last(self):
        """Descending sort should keep documents without the field last."""
        docs = [{"v": 1}, {}, {"v": 3}]
        assert sort_documents(docs, "-v") == [{"v": 3}, {"v": 1}, {}]


class TestInMemoryDocumentStore:
    """Tests for InMemoryDocumentStore."""

    def test_create_assigns_id(self, store):
        """create should assign an id when none is given."""
        doc = store.create("events", {"title": "x"})
        assert doc["id"]
        assert store.find_by_id("events", doc["id"])["title"] == "x"

    def test_create_duplicate_id(self, store):
        """Creating an existing id should fail."""
        store.create("events", {"id": "a"})
        with pytest.raises(ValueError):
            store.create("events", {"id": "a"})

    def test_find_with_filter_sort_limit(self, events_store):
        """find should filter, sort and limit."""
        docs = events_store.find("events", {"is_latest": True}, sort="-version", limit=1)
        assert [d["id"] for d in docs] == ["e3"]

    def test_reads_are_copies(self, events_store):
        """Mutating a returned document should not change the store."""
        doc = events_store.find_by_id("events", "e1")
        doc["version"] = 99
        assert events_store.find_by_id("events", "e1")["version"] == 1

    def test_update_by_id(self, events_store):
        """Updating by id should merge fields and return 1."""
        assert events_store.update("events", "e1", {"version": 5}) == 1
        assert events_store.find_by_id("events", "e1") == {
            "id": "e1",
            "dataset": "concerts",
            "unique_key": "k1",
            "is_latest": True,
            "version": 5,
        }

    def test_compare_and_set(self, events_store):
        """A filtered update should apply only while the condition holds."""
        assert events_store.update("events", {"id": "e1", "is_latest": True}, {"is_latest": False}) == 1
        assert events_store.update("events", {"id": "e1", "is_latest": True}, {"is_latest": False}) == 0

    def test_update_missing(self, store):
        """Updating an unknown id should return 0."""
        assert store.update("events", "nope", {"a": 1}) == 0

    def test_delete(self, events_store):
        """delete should remove matching documents and return the count."""
        assert events_store.delete("events", {"dataset": "concerts"}) == 2
        assert [d["id"] for d in events_store.find("events")] == ["e3"]
        assert events_store.delete("events", "e3") == 1
        assert events_store.find("events") == []

    def test_kinds_are_separate(self, store):
        """Documents of different kinds should not mix."""
        store.create("a", {"id": "1"})
        assert store.find("b") == []
        assert isinstance(store, InMemoryDocumentStore)
