"""
Location cache.

Previously resolved addresses are kept in the document store under the
``location-cache`` kind, looked up by normalized address. Every failure in
here is non-fatal: lookups degrade to a miss, writes and sweeps are logged
and retried by the next caller or the next scheduled sweep.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from eventimport.geocoding.normalizer import normalize_address
from eventimport.schemas.geocoding import CacheSettings, GeocodingResult, LocationCacheEntry
from eventimport.storage.base import DocumentStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class LocationCache:
    """Address → coordinates cache with hit bookkeeping and TTL eviction."""

    KIND = "location-cache"

    def __init__(self, store: DocumentStore, settings: CacheSettings | None = None, clock=_utc_now) -> None:
        self.store = store
        self.settings = settings or CacheSettings()
        self.clock = clock

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.settings.ttl_days)

    def _is_expired(self, entry: LocationCacheEntry) -> bool:
        return entry.created_at < self.clock() - self.ttl

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, address: str) -> GeocodingResult | None:
        """
        Return the cached result for an address, or None on a miss.

        Expired entries are deleted and reported as misses. A hit bumps
        ``hit_count`` and ``last_used``; the bump only touches those two
        fields so a crash mid-write cannot damage the coordinates.
        """
        if not self.settings.enabled:
            return None
        normalized = normalize_address(address)
        if not normalized:
            return None

        try:
            docs = self.store.find(self.KIND, {"normalized_address": normalized}, sort="-last_used", limit=1)
        except Exception as e:
            logger.warning(f"Location cache lookup failed for '{normalized}': {e}")
            return None
        if not docs:
            return None

        try:
            entry = LocationCacheEntry.model_validate(docs[0])
        except ValidationError as e:
            logger.warning(f"Ignoring corrupt location cache entry {docs[0].get('id')}: {e}")
            return None

        if self._is_expired(entry):
            self._evict(entry)
            return None

        self._record_hit(entry)
        return entry.to_result()

    def _record_hit(self, entry: LocationCacheEntry) -> None:
        # read-increment-write; concurrent hits may drop an increment
        try:
            self.store.update(
                self.KIND,
                entry.id,
                {"hit_count": entry.hit_count + 1, "last_used": self.clock().isoformat()},
            )
        except Exception as e:
            logger.warning(f"Failed to update hit count for cache entry {entry.id}: {e}")

    def _evict(self, entry: LocationCacheEntry) -> None:
        try:
            self.store.delete(self.KIND, entry.id)
            logger.debug(f"Evicted expired cache entry for '{entry.normalized_address}'")
        except Exception as e:
            logger.warning(f"Failed to evict expired cache entry {entry.id}: {e}")

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put(self, address: str, result: GeocodingResult) -> None:
        """Store a freshly geocoded address; an existing raw address is refreshed."""
        if not self.settings.enabled:
            return
        now = self.clock()
        try:
            entry = LocationCacheEntry(
                original_address=address,
                normalized_address=normalize_address(address),
                latitude=result.latitude,
                longitude=result.longitude,
                provider=result.provider,
                confidence=result.confidence,
                formatted_address=result.formatted_address,
                components=result.components,
                hit_count=0,
                last_used=now,
                created_at=now,
                metadata=result.metadata,
            )
            data = entry.model_dump(mode="json", exclude={"id"})
            if not self.store.update(self.KIND, {"original_address": address}, data):
                self.store.create(self.KIND, data)
        except Exception as e:
            logger.warning(f"Failed to cache geocoding result for '{address}': {e}")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """
        Delete stale entries.

        An entry is stale when it was last used before the TTL cutoff, or when
        it has fewer than ``min_hit_count`` hits and was created before the
        cutoff. At most ``sweep_limit`` entries are removed per sweep. Lookups
        still expire entries by creation age, so coordinates are refreshed at
        least once per TTL.
        """
        cutoff = self.clock() - self.ttl
        try:
            expired = self.store.find(self.KIND, {"last_used": {"less_than": cutoff}}, limit=self.settings.sweep_limit)
            ids = {doc["id"] for doc in expired}
            if self.settings.min_hit_count > 0 and len(ids) < self.settings.sweep_limit:
                idle = self.store.find(
                    self.KIND,
                    {"hit_count": {"less_than": self.settings.min_hit_count}, "created_at": {"less_than": cutoff}},
                    limit=self.settings.sweep_limit - len(ids),
                )
                ids.update(doc["id"] for doc in idle)
            deleted = sum(self.store.delete(self.KIND, doc_id) for doc_id in ids)
        except Exception as e:
            logger.error(f"Location cache cleanup failed: {e}", exc_info=True)
            return 0

        logger.info(f"Location cache cleanup removed {deleted} entr{'y' if deleted == 1 else 'ies'}")
        return deleted

    def stats(self) -> dict[str, int]:
        docs = self.store.find(self.KIND)
        return {
            "entries": len(docs),
            "total_hits": sum(d.get("hit_count", 0) for d in docs),
        }
