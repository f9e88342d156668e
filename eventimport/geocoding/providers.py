"""
Geocoding providers.

Each provider wraps a geopy geocoder, scores its answers on a common
``[0, 1]`` confidence scale and extracts structured address components from
the provider's raw payload. Blocking geopy calls run in a worker thread under
an asyncio timeout and the provider's rate limiter.

Providers are registered per type with ``@register_provider`` and assembled
into a ``ProviderPool`` from configuration.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from geopy.exc import (
    GeocoderAuthenticationFailure,
    GeocoderQuotaExceeded,
    GeocoderRateLimited,
    GeocoderTimedOut,
    GeocoderUnavailable,
)
from geopy.geocoders import GoogleV3, Nominatim, OpenCage
from geopy.location import Location

from eventimport.configs.settings import Settings
from eventimport.errors import ProviderError
from eventimport.schemas.geocoding import (
    AddressComponents,
    GeocodingResult,
    GeocodingSettings,
    ProviderConfig,
    ProviderSettings,
    ProviderType,
)
from eventimport.geocoding.rate_limiter import ProviderRateLimiter

logger = logging.getLogger(__name__)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# ============================================================================
# BASE PROVIDER
# ============================================================================


class GeocodingProvider(ABC):
    """
    Abstract base for geocoding backends.

    Subclasses build the geopy geocoder, the per-request keyword arguments,
    the confidence score and the component extraction. ``geocoder`` may be
    injected (tests, custom transports); otherwise it is built lazily.
    """

    provider_type: ProviderType

    def __init__(self, settings: ProviderSettings, timeout_s: float = 10.0, geocoder: Any = None) -> None:
        self.settings = settings
        self.name = settings.name
        self.priority = settings.priority
        self.enabled = settings.enabled
        self.timeout_s = timeout_s
        self.rate_limiter = ProviderRateLimiter(rps=settings.rate_limit)
        self._geocoder = geocoder

    @property
    def config(self) -> ProviderConfig:
        return self.settings.config

    @property
    def geocoder(self):
        if self._geocoder is None:
            self._geocoder = self._build_geocoder()
        return self._geocoder

    def is_configured(self) -> bool:
        """Return False when mandatory provider settings (API keys) are missing."""
        return True

    @abstractmethod
    def _build_geocoder(self):
        """Create the geopy geocoder instance."""

    def _query_kwargs(self) -> dict[str, Any]:
        return {"exactly_one": True}

    @abstractmethod
    def score_confidence(self, location: Location) -> float:
        """Return a confidence in [0, 1] for a provider answer."""

    @abstractmethod
    def extract_components(self, location: Location) -> AddressComponents:
        """Return structured address parts from the raw payload."""

    def extract_metadata(self, location: Location) -> dict[str, Any]:
        return {}

    async def geocode(self, address: str, normalized_address: str, timeout_s: float | None = None) -> GeocodingResult | None:
        """
        Resolve one address.

        Returns None when the provider has no match. Every other failure,
        including an answer that cannot be parsed, raises ``ProviderError``.
        """
        timeout = timeout_s or self.timeout_s
        try:
            async with self.rate_limiter.slot():
                location = await asyncio.wait_for(
                    asyncio.to_thread(self.geocoder.geocode, address, **self._query_kwargs()),
                    timeout=timeout,
                )
        except (asyncio.TimeoutError, GeocoderTimedOut) as e:
            raise ProviderError(f"{self.name} timed out after {timeout}s", code="TIMEOUT", retryable=True, provider=self.name) from e
        except (GeocoderQuotaExceeded, GeocoderRateLimited) as e:
            raise ProviderError(f"{self.name} rate limit or quota exceeded", code="RATE_LIMITED", retryable=True, provider=self.name) from e
        except GeocoderUnavailable as e:
            raise ProviderError(f"{self.name} unavailable: {e}", code="UNAVAILABLE", retryable=True, provider=self.name) from e
        except GeocoderAuthenticationFailure as e:
            raise ProviderError(f"{self.name} rejected credentials", code="AUTHENTICATION_FAILED", provider=self.name) from e
        except Exception as e:
            raise ProviderError(f"{self.name} failed: {e}", code="PROVIDER_ERROR", provider=self.name) from e

        if location is None:
            return None

        try:
            return GeocodingResult(
                latitude=location.latitude,
                longitude=location.longitude,
                confidence=round(clamp(self.score_confidence(location)), 4),
                provider=self.name,
                normalized_address=normalized_address,
                formatted_address=location.address,
                components=self.extract_components(location),
                metadata=self.extract_metadata(location),
            )
        except Exception as e:
            raise ProviderError(
                f"{self.name} returned an unreadable answer: {e}", code="INVALID_RESPONSE", provider=self.name
            ) from e


# ============================================================================
# REGISTRY
# ============================================================================

PROVIDER_REGISTRY: dict[ProviderType, type[GeocodingProvider]] = {}


def register_provider(provider_type: ProviderType):
    """
    Decorate a provider class to register it for a provider type.

    Usage:
        @register_provider(ProviderType.NOMINATIM)
        class NominatimProvider(GeocodingProvider): ...
    """

    def decorator(cls: type[GeocodingProvider]) -> type[GeocodingProvider]:
        cls.provider_type = provider_type
        PROVIDER_REGISTRY[provider_type] = cls
        return cls

    return decorator


# ============================================================================
# PROVIDERS
# ============================================================================


def _first(mapping: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = mapping.get(key)
        if value:
            return str(value)
    return None


@register_provider(ProviderType.GOOGLE)
class GoogleProvider(GeocodingProvider):
    """Google Maps Geocoding API."""

    LOCATION_TYPE_SCORES = {
        "ROOFTOP": 0.95,
        "RANGE_INTERPOLATED": 0.85,
        "GEOMETRIC_CENTER": 0.7,
        "APPROXIMATE": 0.5,
    }

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def _build_geocoder(self):
        return GoogleV3(api_key=self.config.api_key, timeout=self.timeout_s)

    def _query_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"exactly_one": True}
        if self.config.region:
            kwargs["region"] = self.config.region
        if self.config.language:
            kwargs["language"] = self.config.language
        if self.config.bounds:
            b = self.config.bounds
            kwargs["bounds"] = [(b.south, b.west), (b.north, b.east)]
        return kwargs

    def score_confidence(self, location: Location) -> float:
        raw = location.raw or {}
        location_type = (raw.get("geometry") or {}).get("location_type")
        score = self.LOCATION_TYPE_SCORES.get(location_type, 0.6)
        if raw.get("partial_match"):
            score -= 0.15
        if not self.extract_components(location).has_street:
            score -= 0.1
        return clamp(score)

    def extract_components(self, location: Location) -> AddressComponents:
        parts: dict[str, str] = {}
        for component in (location.raw or {}).get("address_components", []):
            for kind in component.get("types", []):
                if kind == "administrative_area_level_1":
                    parts.setdefault(kind, component.get("short_name") or component.get("long_name"))
                else:
                    parts.setdefault(kind, component.get("long_name"))
        return AddressComponents(
            street_number=parts.get("street_number"),
            street_name=parts.get("route"),
            city=parts.get("locality") or parts.get("postal_town"),
            region=parts.get("administrative_area_level_1"),
            postal_code=parts.get("postal_code"),
            country=parts.get("country"),
        )

    def extract_metadata(self, location: Location) -> dict[str, Any]:
        raw = location.raw or {}
        return {
            "place_id": raw.get("place_id"),
            "location_type": (raw.get("geometry") or {}).get("location_type"),
            "types": raw.get("types", []),
        }


@register_provider(ProviderType.NOMINATIM)
class NominatimProvider(GeocodingProvider):
    """OpenStreetMap Nominatim (free, 1 request/second on the public instance)."""

    def _build_geocoder(self):
        kwargs: dict[str, Any] = {
            "user_agent": self.config.user_agent or "eventimport-geocoder",
            "timeout": self.timeout_s,
        }
        if self.config.domain:
            kwargs["domain"] = self.config.domain
        return Nominatim(**kwargs)

    def _query_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"exactly_one": True, "addressdetails": True}
        if self.config.country_codes:
            kwargs["country_codes"] = self.config.country_codes
        if self.config.language:
            kwargs["language"] = self.config.language
        if self.config.bounds:
            b = self.config.bounds
            kwargs["viewbox"] = [(b.south, b.west), (b.north, b.east)]
        return kwargs

    def score_confidence(self, location: Location) -> float:
        raw = location.raw or {}
        components = self.extract_components(location)
        score = 0.5
        if components.has_street:
            score += 0.2
        if components.city and (components.region or components.country):
            score += 0.1
        try:
            importance = float(raw.get("importance") or 0.0)
        except (TypeError, ValueError):
            importance = 0.0
        score += clamp(importance) * 0.15
        return clamp(score)

    def extract_components(self, location: Location) -> AddressComponents:
        address = (location.raw or {}).get("address") or {}
        return AddressComponents(
            street_number=_first(address, "house_number"),
            street_name=_first(address, "road", "pedestrian", "street"),
            city=_first(address, "city", "town", "village", "hamlet", "municipality"),
            region=_first(address, "state", "region", "county"),
            postal_code=_first(address, "postcode"),
            country=_first(address, "country"),
        )

    def extract_metadata(self, location: Location) -> dict[str, Any]:
        raw = location.raw or {}
        return {
            "place_id": raw.get("place_id"),
            "osm_type": raw.get("osm_type"),
            "osm_id": raw.get("osm_id"),
            "importance": raw.get("importance"),
        }


@register_provider(ProviderType.OPENCAGE)
class OpenCageProvider(GeocodingProvider):
    """OpenCage Data geocoder; its own confidence runs 0-10 by bounding-box precision."""

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def _build_geocoder(self):
        return OpenCage(api_key=self.config.api_key, timeout=self.timeout_s)

    def _query_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"exactly_one": True}
        if self.config.country_codes:
            kwargs["country"] = self.config.country_codes
        if self.config.language:
            kwargs["language"] = self.config.language
        if self.config.bounds:
            b = self.config.bounds
            kwargs["bounds"] = [(b.south, b.west), (b.north, b.east)]
        return kwargs

    def score_confidence(self, location: Location) -> float:
        raw = location.raw or {}
        reported = raw.get("confidence")
        score = float(reported) / 10.0 if isinstance(reported, (int, float)) else 0.7
        if self.extract_components(location).has_street:
            score += 0.05
        return clamp(score)

    def extract_components(self, location: Location) -> AddressComponents:
        components = (location.raw or {}).get("components") or {}
        return AddressComponents(
            street_number=_first(components, "house_number"),
            street_name=_first(components, "road", "street", "pedestrian"),
            city=_first(components, "city", "town", "village", "hamlet"),
            region=_first(components, "state", "state_code", "county"),
            postal_code=_first(components, "postcode"),
            country=_first(components, "country"),
        )

    def extract_metadata(self, location: Location) -> dict[str, Any]:
        raw = location.raw or {}
        return {"confidence": raw.get("confidence"), "type": (raw.get("components") or {}).get("_type")}


# ============================================================================
# PROVIDER POOL
# ============================================================================


def default_provider_settings(settings: Settings | None = None) -> list[ProviderSettings]:
    """Minimal pool: keyed commercial providers when keys exist, Nominatim always."""
    providers: list[ProviderSettings] = []
    google_key = settings.secret("GEOCODING_GOOGLE_MAPS_API_KEY") if settings else None
    opencage_key = settings.secret("GEOCODING_OPENCAGE_API_KEY") if settings else None

    if google_key:
        providers.append(
            ProviderSettings(name="google", type=ProviderType.GOOGLE, priority=1, rate_limit=50, config=ProviderConfig(api_key=google_key))
        )
    if opencage_key:
        providers.append(
            ProviderSettings(name="opencage", type=ProviderType.OPENCAGE, priority=5, rate_limit=1, config=ProviderConfig(api_key=opencage_key))
        )
    providers.append(
        ProviderSettings(
            name="nominatim",
            type=ProviderType.NOMINATIM,
            priority=10,
            rate_limit=1,
            config=ProviderConfig(
                domain=settings.NOMINATIM_DOMAIN if settings else None,
                user_agent=settings.GEOCODING_USER_AGENT if settings else None,
            ),
        )
    )
    return providers


def create_provider(provider_settings: ProviderSettings, timeout_s: float = 10.0, geocoder: Any = None) -> GeocodingProvider:
    provider_cls = PROVIDER_REGISTRY.get(provider_settings.type)
    if provider_cls is None:
        raise ValueError(f"Unsupported provider type: {provider_settings.type}")
    return provider_cls(provider_settings, timeout_s=timeout_s, geocoder=geocoder)


class ProviderPool:
    """Ordered set of geocoding providers."""

    def __init__(self, providers: list[GeocodingProvider]) -> None:
        self.providers = sorted(providers, key=lambda p: p.priority)

    @classmethod
    def from_settings(cls, geocoding: GeocodingSettings, settings: Settings | None = None) -> "ProviderPool":
        """
        Build the pool from configuration.

        Entries missing mandatory credentials are skipped with a warning. When
        nothing usable remains, the default pool is synthesized so the service
        never runs without providers.
        """
        providers: list[GeocodingProvider] = []
        for provider_settings in geocoding.providers:
            provider = create_provider(provider_settings, timeout_s=geocoding.provider_timeout_s)
            if not provider.is_configured():
                logger.warning(f"Skipping geocoding provider '{provider.name}': missing credentials")
                continue
            providers.append(provider)

        if not any(p.enabled for p in providers):
            logger.info("No geocoding providers configured, using default provider pool")
            providers = [
                create_provider(s, timeout_s=geocoding.provider_timeout_s)
                for s in default_provider_settings(settings)
            ]
        return cls(providers)

    def enabled(self) -> list[GeocodingProvider]:
        """Enabled providers in ascending priority order."""
        return [p for p in self.providers if p.enabled]

    def get(self, name: str) -> GeocodingProvider | None:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    def __len__(self) -> int:
        return len(self.providers)
