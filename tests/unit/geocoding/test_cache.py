"""
Unit tests for the location cache.

Tests lookup by normalized address, hit bookkeeping, TTL eviction and
failure tolerance.
"""

from unittest.mock import MagicMock

import pytest

from eventimport.geocoding.cache import LocationCache
from eventimport.schemas.geocoding import CacheSettings, GeocodingResult

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def cache(store, clock):
    return LocationCache(store, CacheSettings(ttl_days=30), clock=clock)


@pytest.fixture
def result():
    return GeocodingResult(
        latitude=41.3979,
        longitude=2.1915,
        confidence=0.95,
        provider="google",
        normalized_address="carrer de pallars 122, barcelona",
        formatted_address="Carrer de Pallars, 122, 08018 Barcelona, Spain",
    )


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestLookup:
    """Tests for put and get."""

    def test_miss(self, cache):
        """An unknown address should miss."""
        assert cache.get("Carrer de Pallars 122, Barcelona") is None

    def test_hit_after_put(self, cache, result):
        """A stored address should hit and be flagged from_cache."""
        cache.put("Carrer de Pallars 122, Barcelona", result)
        cached = cache.get("Carrer de Pallars 122, Barcelona")
        assert cached.from_cache is True
        assert (cached.latitude, cached.longitude) == (41.3979, 2.1915)
        assert cached.provider == "google"

    def test_variant_spelling_hits(self, cache, result):
        """Variants with the same normalized form should share the entry."""
        cache.put("Carrer de Pallars 122, Barcelona", result)
        assert cache.get("  CARRER DE PALLARS 122,, Barcelona ") is not None

    def test_hit_updates_bookkeeping(self, cache, result, store, clock):
        """A hit should bump hit_count and last_used."""
        cache.put("Carrer de Pallars 122, Barcelona", result)
        clock.advance(hours=1)
        cache.get("Carrer de Pallars 122, Barcelona")
        cache.get("Carrer de Pallars 122, Barcelona")
        doc = store.find(LocationCache.KIND)[0]
        assert doc["hit_count"] == 2
        assert doc["last_used"] == clock().isoformat()

    def test_put_same_address_refreshes(self, cache, result, store):
        """Storing the same raw address twice should keep one entry."""
        cache.put("Carrer de Pallars 122, Barcelona", result)
        cache.put("Carrer de Pallars 122, Barcelona", result.model_copy(update={"latitude": 41.4}))
        docs = store.find(LocationCache.KIND)
        assert len(docs) == 1
        assert docs[0]["latitude"] == 41.4

    def test_expired_entry_is_evicted(self, cache, result, store, clock):
        """Entries older than the TTL should miss and be deleted."""
        cache.put("Carrer de Pallars 122, Barcelona", result)
        clock.advance(days=31)
        assert cache.get("Carrer de Pallars 122, Barcelona") is None
        assert store.find(LocationCache.KIND) == []

    def test_disabled_cache(self, store, result):
        """A disabled cache should neither store nor return entries."""
        cache = LocationCache(store, CacheSettings(enabled=False))
        cache.put("Carrer de Pallars 122, Barcelona", result)
        assert store.find(LocationCache.KIND) == []
        assert cache.get("Carrer de Pallars 122, Barcelona") is None

    def test_blank_address(self, cache):
        """A blank address should miss without touching the store."""
        assert cache.get("  ") is None


class TestFailureTolerance:
    """Cache failures should degrade to misses."""

    def test_lookup_failure_is_a_miss(self, result):
        """A store error during lookup should return None."""
        store = MagicMock()
        store.find.side_effect = RuntimeError("database down")
        assert LocationCache(store).get("Somewhere 1") is None

    def test_write_failure_is_swallowed(self, result):
        """A store error during put should not raise."""
        store = MagicMock()
        store.update.side_effect = RuntimeError("database down")
        LocationCache(store).put("Somewhere 1", result)

    def test_corrupt_entry_is_ignored(self, cache, store):
        """An entry that fails validation should be treated as a miss."""
        store.create(LocationCache.KIND, {"normalized_address": "somewhere 1", "latitude": "north"})
        assert cache.get("Somewhere 1") is None


class TestCleanup:
    """Tests for the eviction sweep."""

    def test_removes_only_expired(self, cache, result, store, clock):
        """Only entries last used before the cutoff should be removed."""
        cache.put("Old Street 1", result)
        clock.advance(days=20)
        cache.put("New Street 2", result)
        clock.advance(days=15)
        assert cache.cleanup() == 1
        assert [d["original_address"] for d in store.find(LocationCache.KIND)] == ["New Street 2"]

    def test_recently_used_entry_survives(self, cache, result, store, clock):
        """An old entry that is still being hit should not be swept."""
        cache.put("Busy Street 1", result)
        clock.advance(days=25)
        assert cache.get("Busy Street 1") is not None
        clock.advance(days=10)

        assert cache.cleanup() == 0
        assert len(store.find(LocationCache.KIND)) == 1

    def test_low_hit_entries_removed_after_ttl(self, store, result, clock):
        """With min_hit_count set, rarely hit entries older than the TTL should go."""
        cache = LocationCache(store, CacheSettings(ttl_days=30, min_hit_count=2), clock=clock)
        cache.put("Quiet Street 1", result)
        cache.put("Busy Street 2", result)
        clock.advance(days=10)
        cache.get("Quiet Street 1")
        cache.get("Busy Street 2")
        cache.get("Busy Street 2")
        clock.advance(days=21)

        assert cache.cleanup() == 1
        assert [d["original_address"] for d in store.find(LocationCache.KIND)] == ["Busy Street 2"]

    def test_sweep_limit(self, store, result, clock):
        """At most sweep_limit entries should be removed per sweep."""
        cache = LocationCache(store, CacheSettings(ttl_days=1, sweep_limit=2), clock=clock)
        for n in range(3):
            cache.put(f"Street {n}", result)
        clock.advance(days=2)
        assert cache.cleanup() == 2
        assert cache.cleanup() == 1

    def test_failure_returns_zero(self):
        """A store error during cleanup should return 0."""
        store = MagicMock()
        store.find.side_effect = RuntimeError("database down")
        assert LocationCache(store).cleanup() == 0

    def test_stats(self, cache, result):
        """stats should count entries and hits."""
        cache.put("Street 1", result)
        cache.get("Street 1")
        assert cache.stats() == {"entries": 1, "total_hits": 1}
