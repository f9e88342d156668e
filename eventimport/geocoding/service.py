"""
Geocoding Service.

Resolves addresses through the location cache first, then through the
enabled providers in ascending priority order. A provider answer is accepted
only when its confidence reaches the configured minimum and its coordinates
are valid and not ``(0, 0)``. Accepted answers are written back to the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from eventimport.errors import AllProvidersFailed, GeocodingError, ResultRejected
from eventimport.geocoding.cache import LocationCache
from eventimport.geocoding.normalizer import normalize_address
from eventimport.geocoding.providers import GeocodingProvider, ProviderPool
from eventimport.monitoring.logging import with_context
from eventimport.schemas.geocoding import (
    BatchSummary,
    GeocodingResult,
    GeocodingSettings,
    is_valid_coordinate,
)

logger = logging.getLogger(__name__)


@dataclass
class BatchGeocodingResult:
    """Outcome of ``batch_geocode``: one entry per distinct input address."""

    results: dict[str, GeocodingResult | GeocodingError] = field(default_factory=dict)
    summary: BatchSummary = field(default_factory=BatchSummary)

    @property
    def successful(self) -> dict[str, GeocodingResult]:
        return {a: r for a, r in self.results.items() if isinstance(r, GeocodingResult)}

    @property
    def failed(self) -> dict[str, GeocodingError]:
        return {a: r for a, r in self.results.items() if isinstance(r, GeocodingError)}


class GeocodingService:
    """Cache-first, multi-provider geocoder."""

    DEFAULT_TEST_ADDRESS = "1600 Amphitheatre Parkway, Mountain View, CA"
    TEST_TIMEOUT_S = 5.0

    def __init__(
        self,
        pool: ProviderPool,
        cache: LocationCache | None = None,
        settings: GeocodingSettings | None = None,
    ) -> None:
        self.pool = pool
        self.cache = cache
        self.settings = settings or GeocodingSettings()

    # ========================================================================
    # ACCEPTANCE
    # ========================================================================

    def rejection_reason(self, result: GeocodingResult) -> str | None:
        """Return why a provider answer is unacceptable, or None when it passes."""
        if result.confidence < self.settings.min_confidence:
            return f"confidence {result.confidence:.2f} below minimum {self.settings.min_confidence:.2f}"
        if not is_valid_coordinate(result.latitude, result.longitude):
            return f"invalid coordinates ({result.latitude}, {result.longitude})"
        return None

    # ========================================================================
    # SINGLE ADDRESS
    # ========================================================================

    async def geocode(self, address: str) -> GeocodingResult:
        """
        Resolve one address.

        Raises
        ------
        GeocodingError
            ``INVALID_ADDRESS`` for blank input, ``DISABLED`` when geocoding
            is switched off, or the first provider's error when fallback is
            disabled.
        AllProvidersFailed
            When every enabled provider failed or was rejected.
        """
        if not self.settings.enabled:
            raise GeocodingError("Geocoding is disabled", code="DISABLED")

        normalized = normalize_address(address)
        if not normalized:
            raise GeocodingError("Address is empty", code="INVALID_ADDRESS")

        if self.cache is not None:
            cached = await asyncio.to_thread(self.cache.get, address)
            if cached is not None:
                logger.debug(f"Cache hit for '{normalized}'")
                return cached

        result = await self._geocode_with_providers(address, normalized)

        if self.cache is not None:
            await asyncio.to_thread(self.cache.put, address, result)
        return result

    async def _try_provider(self, provider: GeocodingProvider, address: str, normalized: str, timeout_s: float | None = None) -> GeocodingResult:
        result = await provider.geocode(address, normalized, timeout_s=timeout_s or self.settings.provider_timeout_s)
        if result is None:
            raise ResultRejected(f"{provider.name} returned no match", code="NO_RESULT", provider=provider.name)
        reason = self.rejection_reason(result)
        if reason:
            raise ResultRejected(f"{provider.name} result rejected: {reason}", code="VALIDATION_FAILED", provider=provider.name)
        return result

    async def _geocode_with_providers(self, address: str, normalized: str) -> GeocodingResult:
        providers = self.pool.enabled()
        attempts: list[str] = []

        for provider in providers:
            log = with_context(logger, provider=provider.name)
            try:
                result = await self._try_provider(provider, address, normalized)
            except GeocodingError as e:
                attempts.append(f"{provider.name}: {e}")
                if not self.settings.fallback_enabled:
                    raise
                log.info(f"Provider failed for '{normalized}', trying next: {e}")
                continue

            log.debug(f"Geocoded '{normalized}' with confidence {result.confidence}")
            return result

        raise AllProvidersFailed(address, attempts)

    # ========================================================================
    # BATCH
    # ========================================================================

    async def _geocode_captured(self, address: str) -> GeocodingResult | GeocodingError:
        try:
            return await self.geocode(address)
        except GeocodingError as e:
            return e
        except Exception as e:
            logger.error(f"Unexpected geocoding failure for '{address}': {e}", exc_info=True)
            error = GeocodingError(f"Geocoding failed for address: {address}: {e}", code="UNEXPECTED_ERROR")
            error.__cause__ = e
            return error

    async def batch_geocode(self, addresses: list[str], batch_size: int | None = None) -> BatchGeocodingResult:
        """
        Resolve many addresses.

        Distinct addresses are processed in fixed-size batches; requests inside
        a batch run concurrently and batches are separated by the configured
        courtesy delay. Failures are reported per address and never abort the
        remaining work.
        """
        batch_size = batch_size or self.settings.batch_size
        unique = list(dict.fromkeys(a for a in addresses if a))
        outcome = BatchGeocodingResult(summary=BatchSummary(total=len(unique)))

        for start in range(0, len(unique), batch_size):
            if start > 0 and self.settings.batch_delay_s > 0:
                await asyncio.sleep(self.settings.batch_delay_s)

            batch = unique[start : start + batch_size]
            answers = await asyncio.gather(*(self._geocode_captured(a) for a in batch))
            for address, answer in zip(batch, answers):
                outcome.results[address] = answer
                if isinstance(answer, GeocodingResult):
                    outcome.summary.successful += 1
                    if answer.from_cache:
                        outcome.summary.cached += 1
                else:
                    outcome.summary.failed += 1

        logger.info(
            f"Batch geocoding finished: {outcome.summary.successful}/{outcome.summary.total} resolved "
            f"({outcome.summary.cached} from cache, {outcome.summary.failed} failed)"
        )
        return outcome

    # ========================================================================
    # DIAGNOSTICS
    # ========================================================================

    async def test_providers(self, address: str | None = None) -> dict[str, dict]:
        """
        Geocode a fixed address with every enabled provider, bypassing the cache.

        Returns a report per provider with success flag, coordinates,
        confidence, latency and error message.
        """
        address = address or self.DEFAULT_TEST_ADDRESS
        normalized = normalize_address(address)
        report: dict[str, dict] = {}

        for provider in self.pool.enabled():
            started = time.monotonic()
            try:
                result = await self._try_provider(provider, address, normalized, timeout_s=self.TEST_TIMEOUT_S)
            except GeocodingError as e:
                report[provider.name] = {
                    "success": False,
                    "error": str(e),
                    "code": e.code,
                    "latency_ms": round((time.monotonic() - started) * 1000, 1),
                }
                continue

            report[provider.name] = {
                "success": True,
                "latitude": result.latitude,
                "longitude": result.longitude,
                "confidence": result.confidence,
                "formatted_address": result.formatted_address,
                "latency_ms": round((time.monotonic() - started) * 1000, 1),
            }
        return report
