"""Synchronous, cache-backed execution for deterministic calculations.

Runs on the caller's thread. Cache errors propagate immediately and are
not retried.
"""

from __future__ import annotations

import json
import logging

from ockham.cache import CacheStore, sync_result_key
from ockham.calc import PipelineEngine, ProgressSink
from ockham.hashing import FingerprintGenerator
from ockham.models import CalculationInput, CalculationResult

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 3600


class InteractiveStrategy:
    """Cache-first deterministic execution keyed by fingerprint."""

    def __init__(
        self,
        engine: PipelineEngine,
        cache: CacheStore,
        fingerprints: FingerprintGenerator | None = None,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._fingerprints = fingerprints or FingerprintGenerator()
        self._ttl_seconds = ttl_seconds

    def cached_result(self, calc_input: CalculationInput) -> CalculationResult | None:
        """Stored result for this input, or None on a miss.

        The entry is returned as it was written, without re-validation.
        """
        fingerprint = self._fingerprints.generate(calc_input)
        raw = self._cache.get(sync_result_key(fingerprint))
        if raw is None:
            return None
        logger.info("Interactive cache hit", extra={"fingerprint": fingerprint[:16]})
        return CalculationResult.model_construct(**json.loads(raw))

    def execute(
        self, calc_input: CalculationInput, progress: ProgressSink | None = None
    ) -> CalculationResult:
        """Return the cached result or compute, cache and return a new one."""
        cached = self.cached_result(calc_input)
        if cached is not None:
            return cached

        result = self._engine.run_deterministic(calc_input, progress)
        self._cache.set(
            sync_result_key(result.fingerprint), result.model_dump_json(), self._ttl_seconds
        )
        logger.info(
            "Interactive calculation cached",
            extra={"fingerprint": result.fingerprint[:16], "case_id": calc_input.case_id},
        )
        return result

    def invalidate_cache(self, calc_input: CalculationInput) -> None:
        fingerprint = self._fingerprints.generate(calc_input)
        self._cache.delete(sync_result_key(fingerprint))
        logger.info("Interactive cache invalidated", extra={"fingerprint": fingerprint[:16]})

    def should_persist(self) -> bool:
        return False

    def should_cache(self) -> bool:
        return True

    def name(self) -> str:
        return "interactive"
