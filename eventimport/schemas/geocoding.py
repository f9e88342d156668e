"""
Geocoding models.

Provider configuration, the geocoding result returned to callers and the
persistent location cache entry.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def is_valid_coordinate(latitude: float | None, longitude: float | None) -> bool:
    """Return True when the pair is inside WGS84 bounds and not the (0, 0) null island."""
    if latitude is None or longitude is None:
        return False
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        return False
    return not (latitude == 0 and longitude == 0)


# ============================================================================
# PROVIDER CONFIGURATION
# ============================================================================


class ProviderType(str, Enum):
    """Supported geocoding backends."""

    GOOGLE = "google"
    NOMINATIM = "nominatim"
    OPENCAGE = "opencage"


class BoundingBox(BaseModel):
    """Region bias expressed as a south-west / north-east box."""

    south: float = Field(ge=-90, le=90)
    west: float = Field(ge=-180, le=180)
    north: float = Field(ge=-90, le=90)
    east: float = Field(ge=-180, le=180)


class ProviderConfig(BaseModel):
    """Provider-type specific settings; unused keys are ignored per type."""

    model_config = ConfigDict(extra="ignore")

    api_key: str | None = None
    region: str | None = None
    language: str | None = None
    country_codes: list[str] = Field(default_factory=list)
    bounds: BoundingBox | None = None
    domain: str | None = None
    user_agent: str | None = None

    @field_validator("api_key", "domain", "user_agent", "region", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        # unset ${VAR} placeholders arrive as empty strings
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ProviderSettings(BaseModel):
    """One entry of the provider pool."""

    name: str
    type: ProviderType
    enabled: bool = True
    priority: int = Field(default=10, ge=0)
    rate_limit: float = Field(default=1.0, gt=0, description="Requests per second")
    config: ProviderConfig = Field(default_factory=ProviderConfig)


class CacheSettings(BaseModel):
    """Location cache behaviour."""

    enabled: bool = True
    ttl_days: int = Field(default=30, ge=1)
    min_hit_count: int = Field(default=0, ge=0)
    sweep_limit: int = Field(default=1000, ge=1)


class GeocodingSettings(BaseModel):
    """Geocoding service configuration."""

    enabled: bool = True
    fallback_enabled: bool = True
    min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    provider_timeout_s: float = Field(default=10.0, gt=0)
    batch_size: int = Field(default=10, ge=1)
    batch_delay_s: float = Field(default=1.0, ge=0)
    caching: CacheSettings = Field(default_factory=CacheSettings)
    providers: list[ProviderSettings] = Field(default_factory=list)


# ============================================================================
# RESULTS
# ============================================================================


class AddressComponents(BaseModel):
    """Structured address parts reported by a provider."""

    street_number: str | None = None
    street_name: str | None = None
    city: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None

    @property
    def has_street(self) -> bool:
        return bool(self.street_number and self.street_name)


class GeocodingResult(BaseModel):
    """A provider answer; the service accepts it only after validation."""

    latitude: float
    longitude: float
    confidence: float = Field(ge=0.0, le=1.0)
    provider: str
    normalized_address: str
    formatted_address: str | None = None
    components: AddressComponents = Field(default_factory=AddressComponents)
    metadata: dict[str, Any] = Field(default_factory=dict)
    from_cache: bool = False


class LocationCacheEntry(BaseModel):
    """
    Persistent cache record.

    ``original_address`` is unique; several raw strings may share the same
    ``normalized_address``.
    """

    id: str | None = None
    original_address: str
    normalized_address: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    provider: str
    confidence: float = Field(ge=0.0, le=1.0)
    formatted_address: str | None = None
    components: AddressComponents = Field(default_factory=AddressComponents)
    hit_count: int = Field(default=0, ge=0)
    last_used: datetime = Field(default_factory=_utc_now)
    created_at: datetime = Field(default_factory=_utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def reject_null_island(self):
        if self.latitude == 0 and self.longitude == 0:
            raise ValueError("Coordinates (0, 0) are not a valid cached location")
        return self

    def to_result(self) -> GeocodingResult:
        """Build the caller-facing result for a cache hit."""
        return GeocodingResult(
            latitude=self.latitude,
            longitude=self.longitude,
            confidence=self.confidence,
            provider=self.provider,
            normalized_address=self.normalized_address,
            formatted_address=self.formatted_address,
            components=self.components,
            metadata=self.metadata,
            from_cache=True,
        )


class BatchSummary(BaseModel):
    """Counters reported by ``batch_geocode``."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    cached: int = 0
