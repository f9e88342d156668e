"""
Unit tests for the GeocodingService.

Tests cache-first resolution, provider fallback, result acceptance, batch
geocoding and the provider diagnostics.
"""

import asyncio
import threading
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from geopy.exc import GeocoderUnavailable

from eventimport.errors import AllProvidersFailed, GeocodingError, ProviderError
from eventimport.geocoding.cache import LocationCache
from eventimport.geocoding.providers import ProviderPool, create_provider
from eventimport.geocoding.service import GeocodingService
from eventimport.schemas.geocoding import CacheSettings, GeocodingSettings, ProviderConfig, ProviderSettings, ProviderType

# =============================================================================
# FIXTURES
# =============================================================================

ROOFTOP = {
    "geometry": {"location_type": "ROOFTOP"},
    "address_components": [
        {"long_name": "122", "types": ["street_number"]},
        {"long_name": "Carrer de Pallars", "types": ["route"]},
    ],
}


@pytest.fixture
def provider_factory():
    """Return a function building a Google-type provider with a mocked geocoder."""

    def _provider(name: str, priority: int, answer=None, side_effect=None, enabled: bool = True):
        geocoder = MagicMock()
        geocoder.geocode.return_value = answer
        if side_effect is not None:
            geocoder.geocode.side_effect = side_effect
        settings = ProviderSettings(
            name=name,
            type=ProviderType.GOOGLE,
            priority=priority,
            enabled=enabled,
            rate_limit=100,
            config=ProviderConfig(api_key="key"),
        )
        return create_provider(settings, geocoder=geocoder)

    return _provider


@pytest.fixture
def settings():
    return GeocodingSettings(min_confidence=0.3, batch_delay_s=0)


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestGeocode:
    """Tests for single-address geocoding."""

    def test_first_provider_wins(self, provider_factory, make_location, settings):
        """The highest-priority provider's accepted answer should be returned."""
        primary = provider_factory("primary", 1, make_location(raw=ROOFTOP))
        secondary = provider_factory("secondary", 5, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([secondary, primary]), settings=settings)

        result = asyncio.run(service.geocode("Passeig de Gracia 92, Barcelona"))

        assert result.provider == "primary"
        assert result.normalized_address == "passeig de gracia 92, barcelona"
        secondary.geocoder.geocode.assert_not_called()

    def test_disabled_provider_skipped(self, provider_factory, make_location, settings):
        """Disabled providers should never be called."""
        disabled = provider_factory("disabled", 1, make_location(raw=ROOFTOP), enabled=False)
        active = provider_factory("active", 5, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([disabled, active]), settings=settings)

        assert asyncio.run(service.geocode("Carrer de Pallars 122")).provider == "active"
        disabled.geocoder.geocode.assert_not_called()

    def test_disabled_google_uses_nominatim(self, make_location, settings):
        """With Google disabled the Nominatim answer should be returned."""
        google_geocoder, nominatim_geocoder = MagicMock(), MagicMock()
        nominatim_geocoder.geocode.return_value = make_location(
            "Google Building 41, 1600, Amphitheatre Parkway, Mountain View, California, United States",
            37.4224,
            -122.0842,
            {
                "importance": 0.7,
                "address": {"house_number": "1600", "road": "Amphitheatre Parkway", "city": "Mountain View", "country": "United States"},
            },
        )
        google = create_provider(
            ProviderSettings(name="google", type=ProviderType.GOOGLE, priority=1, enabled=False, config=ProviderConfig(api_key="k")),
            geocoder=google_geocoder,
        )
        nominatim = create_provider(
            ProviderSettings(name="nominatim", type=ProviderType.NOMINATIM, priority=10, rate_limit=100),
            geocoder=nominatim_geocoder,
        )
        service = GeocodingService(ProviderPool([google, nominatim]), settings=settings)

        result = asyncio.run(service.geocode("1600 Amphitheatre Parkway, Mountain View, CA"))

        assert result.provider == "nominatim"
        assert result.components.city == "Mountain View"
        google_geocoder.geocode.assert_not_called()

    def test_fallback_on_provider_error(self, provider_factory, make_location, settings):
        """A failing provider should fall through to the next one."""
        broken = provider_factory("broken", 1, side_effect=GeocoderUnavailable("down"))
        backup = provider_factory("backup", 5, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([broken, backup]), settings=settings)

        assert asyncio.run(service.geocode("Carrer de Pallars 122")).provider == "backup"

    def test_no_fallback(self, provider_factory, make_location):
        """With fallback disabled the first provider's error should surface."""
        broken = provider_factory("broken", 1, side_effect=GeocoderUnavailable("down"))
        backup = provider_factory("backup", 5, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([broken, backup]), settings=GeocodingSettings(fallback_enabled=False))

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(service.geocode("Carrer de Pallars 122"))
        assert exc_info.value.code == "UNAVAILABLE"
        backup.geocoder.geocode.assert_not_called()

    def test_fallback_on_unexpected_error(self, provider_factory, make_location, settings):
        """A non-geopy exception should fall through to the next provider."""
        bad = provider_factory("bad", 1, side_effect=ValueError("malformed payload"))
        good = provider_factory("good", 2, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([bad, good]), settings=settings)

        assert asyncio.run(service.geocode("Carrer de Pallars 122")).provider == "good"

    def test_fallback_on_timeout(self, provider_factory, make_location):
        """A provider exceeding the timeout should be skipped for the next one."""

        def slow(address, **kwargs):
            time.sleep(0.3)

        sluggish = provider_factory("sluggish", 1, side_effect=slow)
        backup = provider_factory("backup", 5, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([sluggish, backup]), settings=GeocodingSettings(provider_timeout_s=0.05))

        assert asyncio.run(service.geocode("Carrer de Pallars 122")).provider == "backup"

    def test_timeout_without_fallback(self, provider_factory, make_location):
        """With fallback disabled the timeout should surface as TIMEOUT."""

        def slow(address, **kwargs):
            time.sleep(0.3)

        service = GeocodingService(
            ProviderPool([provider_factory("sluggish", 1, side_effect=slow)]),
            settings=GeocodingSettings(provider_timeout_s=0.05, fallback_enabled=False),
        )
        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(service.geocode("Carrer de Pallars 122"))
        assert exc_info.value.code == "TIMEOUT"

    def test_low_confidence_rejected(self, provider_factory, make_location):
        """Answers below the confidence floor should be rejected."""
        vague = provider_factory("vague", 1, make_location(raw={"geometry": {"location_type": "APPROXIMATE"}}))
        service = GeocodingService(ProviderPool([vague]), settings=GeocodingSettings(min_confidence=0.5))

        with pytest.raises(AllProvidersFailed) as exc_info:
            asyncio.run(service.geocode("Somewhere"))
        assert exc_info.value.code == "ALL_PROVIDERS_FAILED"
        assert "confidence" in exc_info.value.attempts[0]

    def test_null_island_rejected(self, provider_factory, make_location, settings):
        """A (0, 0) answer should never be accepted."""
        broken = provider_factory("zero", 1, make_location(lat=0.0, lng=0.0, raw=ROOFTOP))
        service = GeocodingService(ProviderPool([broken]), settings=settings)

        with pytest.raises(AllProvidersFailed) as exc_info:
            asyncio.run(service.geocode("Somewhere"))
        assert "invalid coordinates" in exc_info.value.attempts[0]

    def test_no_match_everywhere(self, provider_factory, settings):
        """No provider match should raise AllProvidersFailed."""
        service = GeocodingService(ProviderPool([provider_factory("p", 1, None)]), settings=settings)
        with pytest.raises(AllProvidersFailed):
            asyncio.run(service.geocode("Atlantis"))

    def test_blank_address(self, provider_factory, settings):
        """A blank address should be rejected before any provider call."""
        provider = provider_factory("p", 1)
        service = GeocodingService(ProviderPool([provider]), settings=settings)
        with pytest.raises(GeocodingError) as exc_info:
            asyncio.run(service.geocode("  ;  "))
        assert exc_info.value.code == "INVALID_ADDRESS"
        provider.geocoder.geocode.assert_not_called()

    def test_disabled_service(self, provider_factory):
        """A disabled service should refuse to geocode."""
        service = GeocodingService(ProviderPool([provider_factory("p", 1)]), settings=GeocodingSettings(enabled=False))
        with pytest.raises(GeocodingError) as exc_info:
            asyncio.run(service.geocode("Carrer de Pallars 122"))
        assert exc_info.value.code == "DISABLED"


class TestCaching:
    """Tests for the cache-first path."""

    def test_second_call_is_served_from_cache(self, provider_factory, make_location, settings, store, clock):
        """A resolved address should be cached and reused."""
        provider = provider_factory("p", 1, make_location(raw=ROOFTOP))
        cache = LocationCache(store, CacheSettings(), clock=clock)
        service = GeocodingService(ProviderPool([provider]), cache, settings)

        first = asyncio.run(service.geocode("Passeig de Gracia 92, Barcelona"))
        second = asyncio.run(service.geocode("passeig de gracia 92,  BARCELONA"))

        assert first.from_cache is False
        assert second.from_cache is True
        assert (second.latitude, second.longitude) == (first.latitude, first.longitude)
        provider.geocoder.geocode.assert_called_once()

    def test_failures_are_not_cached(self, provider_factory, settings, store, clock):
        """Failed lookups should leave the cache empty."""
        cache = LocationCache(store, CacheSettings(), clock=clock)
        service = GeocodingService(ProviderPool([provider_factory("p", 1, None)]), cache, settings)
        with pytest.raises(AllProvidersFailed):
            asyncio.run(service.geocode("Atlantis"))
        assert store.find(LocationCache.KIND) == []


class TestBatchGeocode:
    """Tests for batch_geocode."""

    def test_summary(self, provider_factory, make_location, settings):
        """Results and counters should cover every distinct address."""

        def answer(address, **kwargs):
            return None if address == "Atlantis" else make_location(address, raw=ROOFTOP)

        provider = provider_factory("p", 1, side_effect=answer)
        service = GeocodingService(ProviderPool([provider]), settings=settings)

        outcome = asyncio.run(
            service.batch_geocode(["Carrer de Pallars 122", "Atlantis", "Carrer de Pallars 122", "", "Rambla 1"], batch_size=2)
        )

        assert outcome.summary.total == 3
        assert outcome.summary.successful == 2
        assert outcome.summary.failed == 1
        assert set(outcome.successful) == {"Carrer de Pallars 122", "Rambla 1"}
        assert isinstance(outcome.failed["Atlantis"], AllProvidersFailed)
        assert provider.geocoder.geocode.call_count == 3

    def test_cached_counter(self, provider_factory, make_location, settings, store, clock):
        """Cache hits should be counted in the summary."""
        provider = provider_factory("p", 1, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([provider]), LocationCache(store, clock=clock), settings)
        asyncio.run(service.geocode("Rambla 1"))

        outcome = asyncio.run(service.batch_geocode(["Rambla 1", "Rambla 2"]))

        assert outcome.summary.cached == 1
        assert outcome.summary.successful == 2


class TestProviderDiagnostics:
    """Tests for test_providers."""

    def test_report(self, provider_factory, make_location, settings, store):
        """Every enabled provider should be reported, bypassing the cache."""
        good = provider_factory("good", 1, make_location(lat=37.422, lng=-122.084, raw=ROOFTOP))
        bad = provider_factory("bad", 2, side_effect=GeocoderUnavailable("down"))
        cache = MagicMock()
        service = GeocodingService(ProviderPool([good, bad]), cache, settings)

        report = asyncio.run(service.test_providers())

        assert report["good"]["success"] is True
        assert report["good"]["latitude"] == 37.422
        assert report["bad"]["success"] is False
        assert report["bad"]["code"] == "UNAVAILABLE"
        good.geocoder.geocode.assert_called_once_with(GeocodingService.DEFAULT_TEST_ADDRESS, exactly_one=True)
        cache.get.assert_not_called()


class TestBatchScheduling:
    """Tests for batch splitting, concurrency and the courtesy delay."""

    def test_delay_between_batches(self, provider_factory, make_location):
        """The courtesy delay should run between batches, never before the first."""
        provider = provider_factory("p", 1, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([provider]), settings=GeocodingSettings(batch_delay_s=0.5))

        with patch("eventimport.geocoding.service.asyncio.sleep", new_callable=AsyncMock) as sleep:
            asyncio.run(service.batch_geocode(["Rambla 1", "Rambla 2", "Rambla 3"], batch_size=2))

        sleep.assert_awaited_once_with(0.5)

    def test_single_batch_has_no_delay(self, provider_factory, make_location):
        """A batch that fits in one round should never sleep."""
        provider = provider_factory("p", 1, make_location(raw=ROOFTOP))
        service = GeocodingService(ProviderPool([provider]), settings=GeocodingSettings(batch_delay_s=0.5))

        with patch("eventimport.geocoding.service.asyncio.sleep", new_callable=AsyncMock) as sleep:
            asyncio.run(service.batch_geocode(["Rambla 1", "Rambla 2"], batch_size=2))

        sleep.assert_not_awaited()

    def test_requests_within_a_batch_run_concurrently(self, provider_factory, make_location, settings):
        """Every address of a batch should be in flight at the same time."""
        barrier = threading.Barrier(3, timeout=2)

        def answer(address, **kwargs):
            barrier.wait()
            return make_location(address, raw=ROOFTOP)

        provider = provider_factory("p", 1, side_effect=answer)
        service = GeocodingService(ProviderPool([provider]), settings=settings)

        outcome = asyncio.run(service.batch_geocode(["Rambla 1", "Rambla 2", "Rambla 3"], batch_size=3))

        assert outcome.summary.successful == 3

    def test_one_unexpected_failure_keeps_the_batch(self, provider_factory, make_location, settings):
        """An unexpected error for one address should not lose the others."""

        def answer(address, **kwargs):
            if address == "boom":
                raise KeyError("lat")
            return make_location(address, raw=ROOFTOP)

        service = GeocodingService(ProviderPool([provider_factory("p", 1, side_effect=answer)]), settings=settings)

        outcome = asyncio.run(service.batch_geocode(["Carrer de Pallars 122, Barcelona", "boom"]))

        assert set(outcome.successful) == {"Carrer de Pallars 122, Barcelona"}
        assert isinstance(outcome.failed["boom"], GeocodingError)
        assert outcome.summary.failed == 1

    def test_error_outside_providers_is_captured(self, provider_factory, make_location, settings):
        """An exception escaping geocode itself should be reported for that address only."""
        provider = provider_factory("p", 1, make_location(raw=ROOFTOP))

        def lookup(address):
            if address == "boom":
                raise RuntimeError("store gone")
            return None

        cache = MagicMock()
        cache.get.side_effect = lookup
        service = GeocodingService(ProviderPool([provider]), cache, settings)

        outcome = asyncio.run(service.batch_geocode(["Rambla 1", "boom"]))

        assert "Rambla 1" in outcome.successful
        assert outcome.failed["boom"].code == "UNEXPECTED_ERROR"
        assert isinstance(outcome.failed["boom"].__cause__, RuntimeError)
