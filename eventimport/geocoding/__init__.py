from eventimport.geocoding.cache import LocationCache
from eventimport.geocoding.normalizer import normalize_address
from eventimport.geocoding.providers import (
    GeocodingProvider,
    GoogleProvider,
    NominatimProvider,
    OpenCageProvider,
    ProviderPool,
    create_provider,
)
from eventimport.geocoding.service import BatchGeocodingResult, GeocodingService

__all__ = [
    "BatchGeocodingResult",
    "GeocodingProvider",
    "GeocodingService",
    "GoogleProvider",
    "LocationCache",
    "NominatimProvider",
    "OpenCageProvider",
    "ProviderPool",
    "create_provider",
    "normalize_address",
]
